"""Cloud-to-device message drain loop."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from . import constants
from .core import InboundMessage, TransportSession

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class DownlinkStats:
    received: int = 0
    acknowledged: int = 0
    ack_failures: int = 0


class DownlinkLoop:
    """Logs each device-bound message and acknowledges it, in delivery order."""

    def __init__(
        self, session: TransportSession, *, receive_timeout: float = 1.0
    ) -> None:
        self._session = session
        self._receive_timeout = receive_timeout
        self.stats = DownlinkStats()

    async def run(self, stop_event: asyncio.Event) -> None:
        LOGGER.info("Downlink loop started")
        while not stop_event.is_set():
            message = await self._session.receive(timeout=self._receive_timeout)
            if message is None:
                continue
            await self.process(message)
        LOGGER.info(
            "Downlink loop stopped (received=%d, acknowledged=%d)",
            self.stats.received,
            self.stats.acknowledged,
        )

    async def process(self, message: InboundMessage) -> None:
        """Log ``message`` and acknowledge it exactly once, even if decoding fails."""

        self.stats.received += 1
        try:
            text = message.payload.decode(constants.CONTENT_ENCODING_UTF8)
        except UnicodeDecodeError as exc:
            LOGGER.warning(
                "Received message %s with undecodable payload (%s): %r",
                message.delivery_handle,
                exc,
                message.payload,
            )
        else:
            LOGGER.info("Received message: %s", text)
        finally:
            await self._acknowledge(message)

    async def _acknowledge(self, message: InboundMessage) -> None:
        try:
            await self._session.ack(message.delivery_handle)
        except Exception as exc:
            self.stats.ack_failures += 1
            LOGGER.warning(
                "Acknowledging message %s failed: %s; the broker may redeliver it",
                message.delivery_handle,
                exc,
            )
        else:
            self.stats.acknowledged += 1
