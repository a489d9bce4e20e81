"""Protocol definitions for transport and management sessions."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Hashable, Mapping, Optional, Protocol

from .models import InboundMessage, OutboundMessage

TwinCallback = Callable[[Mapping[str, Any]], Awaitable[None] | None]
DisconnectHandler = Callable[[int], None]


class TransportSession(Protocol):
    """Connected device-plane session shared by the uplink, downlink and twin loops.

    Implementations must tolerate concurrent use from independent tasks on
    the same event loop.
    """

    @property
    def pending_acks(self) -> int:
        """Number of handed-out inbound messages not yet acknowledged."""
        ...

    async def connect(self) -> None:
        """Open the connection, raising ``TransportConnectionError`` on failure."""
        ...

    async def disconnect(self) -> None:
        """Close the connection and release background resources."""
        ...

    async def send(self, message: OutboundMessage) -> None:
        """Submit one device-to-cloud message with its application properties."""
        ...

    async def receive(self, timeout: Optional[float] = None) -> Optional[InboundMessage]:
        """Wait for the next device-bound message.

        Returns None when nothing arrived within ``timeout`` seconds.
        """
        ...

    async def ack(self, handle: Hashable) -> None:
        """Acknowledge a message previously returned from ``receive``.

        Raises:
            AcknowledgementError: If the handle is unknown or already acknowledged.
        """
        ...

    async def subscribe_twin_updates(self, callback: TwinCallback) -> None:
        """Route desired-property patches to ``callback``."""
        ...

    async def update_reported_properties(self, document: Mapping[str, Any]) -> None:
        """Publish a reported-properties patch."""
        ...

    def register_disconnect_handler(self, handler: DisconnectHandler) -> None:
        """Invoke ``handler(rc)`` on the event loop when the connection drops."""
        ...


class ManagementSession(Protocol):
    """Service-plane session used to address commands to devices."""

    async def open(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def send_to_device(
        self,
        device_id: str,
        payload: bytes,
        properties: Optional[Mapping[str, str]] = None,
    ) -> None:
        """Send one cloud-to-device message to ``device_id``."""
        ...
