"""Device-to-cloud telemetry loop."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from . import constants
from .adapters import TransportError
from .core import TransportSession
from .telemetry import TelemetryGenerator, build_message

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class UplinkStats:
    sent: int = 0
    failed: int = 0


class UplinkLoop:
    """Sends one synthetic reading per interval until stopped.

    Telemetry is lossy: a failed or timed-out send is logged and the loop
    carries on with the next cycle instead of retrying the dropped sample.
    """

    def __init__(
        self,
        session: TransportSession,
        *,
        generator: Optional[TelemetryGenerator] = None,
        interval: float = 1.0,
        send_timeout: float = 10.0,
        alert_threshold: float = constants.DEFAULT_ALERT_THRESHOLD,
    ) -> None:
        self._session = session
        self._generator = generator or TelemetryGenerator()
        self._interval = max(0.0, interval)
        self._send_timeout = send_timeout
        self._alert_threshold = alert_threshold
        self.stats = UplinkStats()

    async def run(self, stop_event: asyncio.Event) -> None:
        LOGGER.info("Uplink loop started (interval=%.3fs)", self._interval)
        while not stop_event.is_set():
            await self.send_once()

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
        LOGGER.info(
            "Uplink loop stopped (sent=%d, failed=%d)",
            self.stats.sent,
            self.stats.failed,
        )

    async def send_once(self) -> bool:
        reading = self._generator.next_reading()
        message = build_message(reading, alert_threshold=self._alert_threshold)
        payload_text = message.payload.decode(constants.CONTENT_ENCODING_UTF8)

        try:
            await asyncio.wait_for(
                self._session.send(message), timeout=self._send_timeout
            )
        except asyncio.TimeoutError:
            self.stats.failed += 1
            LOGGER.warning(
                "Telemetry send timed out after %.1fs; dropping %s",
                self._send_timeout,
                payload_text,
            )
            return False
        except TransportError as exc:
            self.stats.failed += 1
            LOGGER.warning("Telemetry send failed: %s; dropping %s", exc, payload_text)
            return False
        except Exception:  # pragma: no cover
            self.stats.failed += 1
            LOGGER.exception("Unexpected error sending telemetry; dropping sample")
            return False

        self.stats.sent += 1
        LOGGER.info(
            "%s > Sending message: %s",
            reading.created_at.isoformat(timespec="milliseconds"),
            payload_text,
        )
        return True
