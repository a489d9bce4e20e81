"""Synthetic sensor readings and their wire encoding."""

from __future__ import annotations

import json
import math
import random
from typing import Optional

from . import constants
from .core import OutboundMessage, TelemetryReading


class TelemetryDecodeError(ValueError):
    """Raised when a payload is not a telemetry JSON object."""


def _uniform(rng: random.Random, low: float, span: float) -> float:
    value = low + rng.random() * span
    # low + u*span can round up to exactly low + span for u close to 1.
    return min(value, math.nextafter(low + span, low))


class TelemetryGenerator:
    """Produces fresh temperature/humidity readings from a uniform distribution."""

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._rng = rng or random.Random()

    def next_reading(self) -> TelemetryReading:
        return TelemetryReading(
            temperature=_uniform(
                self._rng, constants.TEMPERATURE_MIN, constants.TEMPERATURE_SPAN
            ),
            humidity=_uniform(
                self._rng, constants.HUMIDITY_MIN, constants.HUMIDITY_SPAN
            ),
        )


def encode_reading(reading: TelemetryReading) -> bytes:
    document = {"temperature": reading.temperature, "humidity": reading.humidity}
    return json.dumps(document).encode(constants.CONTENT_ENCODING_UTF8)


def decode_reading(payload: bytes) -> TelemetryReading:
    try:
        document = json.loads(payload.decode(constants.CONTENT_ENCODING_UTF8))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise TelemetryDecodeError(f"Telemetry payload is not JSON: {exc}") from exc

    if not isinstance(document, dict):
        raise TelemetryDecodeError("Telemetry payload must be a JSON object")

    try:
        return TelemetryReading(
            temperature=float(document["temperature"]),
            humidity=float(document["humidity"]),
        )
    except KeyError as exc:
        raise TelemetryDecodeError(f"Telemetry payload missing {exc}") from exc
    except (TypeError, ValueError) as exc:
        raise TelemetryDecodeError(f"Telemetry value is not numeric: {exc}") from exc


def temperature_alert(
    temperature: float, threshold: float = constants.DEFAULT_ALERT_THRESHOLD
) -> str:
    """Return the alert property value; the threshold itself does not alert."""

    return "true" if temperature > threshold else "false"


def build_message(
    reading: TelemetryReading,
    *,
    alert_threshold: float = constants.DEFAULT_ALERT_THRESHOLD,
) -> OutboundMessage:
    return OutboundMessage(
        payload=encode_reading(reading),
        properties={
            constants.TEMPERATURE_ALERT_PROPERTY: temperature_alert(
                reading.temperature, alert_threshold
            )
        },
    )
