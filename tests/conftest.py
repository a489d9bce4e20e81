import asyncio
import collections
from configparser import ConfigParser
from pathlib import Path
from typing import Any, Callable, Hashable, Mapping, Optional

import pytest

from simdevice.adapters import AcknowledgementError, TransportSendError
from simdevice.config import (
    DeviceConfig,
    LoggingConfig,
    LoopsConfig,
    ResilienceConfig,
    ServiceConfig,
    TelemetryConfig,
    TransportConfig,
    TwinConfig,
)
from simdevice.core import InboundMessage, OutboundMessage


class FakeTransportSession:
    """In-memory transport session recording every call."""

    def __init__(
        self,
        *,
        send_error: Optional[Exception] = None,
        connect_error: Optional[Exception] = None,
        update_error: Optional[Exception] = None,
    ) -> None:
        self.send_error = send_error
        self.connect_error = connect_error
        self.update_error = update_error

        self.sent: list[OutboundMessage] = []
        self.acked: list[Hashable] = []
        self.reported: list[Mapping[str, Any]] = []
        self.twin_callbacks: list[Callable[..., Any]] = []
        self.disconnect_handlers: list[Callable[[int], None]] = []
        self.connect_calls = 0
        self.disconnect_calls = 0

        self._inbound: collections.deque[InboundMessage] = collections.deque()
        self._pending: set[Hashable] = set()
        self._next_handle = 0

    @property
    def pending_acks(self) -> int:
        return len(self._pending)

    def push(self, payload: bytes, **properties: str) -> Hashable:
        self._next_handle += 1
        handle = f"handle-{self._next_handle}"
        self._inbound.append(
            InboundMessage(payload=payload, delivery_handle=handle, properties=properties)
        )
        return handle

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error

    async def disconnect(self) -> None:
        self.disconnect_calls += 1

    async def send(self, message: OutboundMessage) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(message)

    async def receive(self, timeout: Optional[float] = None) -> Optional[InboundMessage]:
        if self._inbound:
            message = self._inbound.popleft()
            self._pending.add(message.delivery_handle)
            return message
        await asyncio.sleep(min(timeout or 0.01, 0.01))
        return None

    async def ack(self, handle: Hashable) -> None:
        self.acked.append(handle)
        if handle not in self._pending:
            raise AcknowledgementError(f"unknown handle {handle!r}")
        self._pending.discard(handle)

    async def subscribe_twin_updates(self, callback: Callable[..., Any]) -> None:
        self.twin_callbacks.append(callback)

    async def update_reported_properties(self, document: Mapping[str, Any]) -> None:
        if self.update_error is not None:
            raise self.update_error
        self.reported.append(document)

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None:
        self.disconnect_handlers.append(handler)

    def drop_connection(self, rc: int = 1) -> None:
        for handler in self.disconnect_handlers:
            handler(rc)


@pytest.fixture
def fake_session() -> FakeTransportSession:
    return FakeTransportSession()


@pytest.fixture
def session_factory() -> Callable[..., FakeTransportSession]:
    return FakeTransportSession


@pytest.fixture
def failing_send_session() -> FakeTransportSession:
    return FakeTransportSession(send_error=TransportSendError("broker unavailable"))


def build_config(
    *,
    uplink: bool = True,
    downlink: bool = True,
    twin: bool = True,
    interval: float = 0.001,
    health_port: int = 0,
) -> DeviceConfig:
    return DeviceConfig(
        transport=TransportConfig(
            kind="mqtt",
            device_id="device-123",
            broker_host="broker.example.net",
            broker_port=1883,
        ),
        service=ServiceConfig(),
        telemetry=TelemetryConfig(interval_seconds=interval, send_timeout_seconds=1.0),
        twin=TwinConfig(),
        loops=LoopsConfig(
            uplink=uplink,
            downlink=downlink,
            twin=twin,
            receive_timeout_seconds=0.01,
            shutdown_timeout_seconds=1.0,
        ),
        logging=LoggingConfig(),
        resilience=ResilienceConfig(
            reconnect_initial_seconds=0.01,
            reconnect_max_seconds=0.05,
            reconnect_jitter_ratio=0.0,
            reconnect_max_attempts=3,
            health_enabled=health_port > 0,
            health_port=health_port,
        ),
        raw=ConfigParser(),
        path=Path("simdevice.cfg"),
    )


@pytest.fixture
def config_factory() -> Callable[..., DeviceConfig]:
    return build_config
