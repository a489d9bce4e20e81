"""Domain models for telemetry, commands and twin updates."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Hashable, Mapping


@dataclass(frozen=True, slots=True)
class TelemetryReading:
    temperature: float
    humidity: float
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc), compare=False
    )


@dataclass(frozen=True, slots=True)
class OutboundMessage:
    payload: bytes
    properties: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class InboundMessage:
    """A device-bound message awaiting acknowledgement via ``delivery_handle``."""

    payload: bytes
    delivery_handle: Hashable
    properties: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class TwinDelta:
    property_path: str
    value: Any
