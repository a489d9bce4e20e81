"""Core primitives for simdevice."""

from .models import InboundMessage, OutboundMessage, TelemetryReading, TwinDelta
from .protocols import (
    DisconnectHandler,
    ManagementSession,
    TransportSession,
    TwinCallback,
)
from .utils import FieldLookup, lookup_field, nest_value, split_path

__all__ = [
    "DisconnectHandler",
    "FieldLookup",
    "InboundMessage",
    "ManagementSession",
    "OutboundMessage",
    "TelemetryReading",
    "TransportSession",
    "TwinCallback",
    "TwinDelta",
    "lookup_field",
    "nest_value",
    "split_path",
]
