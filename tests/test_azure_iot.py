"""Tests for the Azure IoT Hub sessions using fake SDK clients."""

import asyncio
import threading
from types import SimpleNamespace

import pytest

from simdevice.adapters import (
    AzureDeviceSession,
    AzureManagementSession,
    TransportConnectionError,
    TransportSendError,
)
from simdevice.adapters.azure_iot import CONNECTION_DROPPED_RC
from simdevice.config import ConfigurationError, ServiceConfig, TransportConfig
from simdevice.core import OutboundMessage


class FakeDeviceClient:
    def __init__(self, *, connect_error=None, connect_delay=0.0, send_error=None):
        self.connect_error = connect_error
        self.connect_delay = connect_delay
        self.send_error = send_error
        self.connected = False
        self.sent = []
        self.patches = []
        self.shutdown_calls = 0

        self.on_message_received = None
        self.on_connection_state_change = None
        self.on_twin_desired_properties_patch_received = None

    async def connect(self):
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def shutdown(self):
        self.shutdown_calls += 1
        self.connected = False

    async def send_message(self, message):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(message)

    async def patch_twin_reported_properties(self, patch):
        self.patches.append(patch)


def _config(**overrides):
    values = dict(
        kind="azure",
        connection_string="HostName=hub.example.net;DeviceId=iot-dev1;SharedAccessKey=a2V5",
        connect_timeout_seconds=1.0,
    )
    values.update(overrides)
    return TransportConfig(**values)


def _session(client):
    created = []

    def factory(config):
        created.append(config)
        return client

    return AzureDeviceSession(_config(), client_factory=factory), created


@pytest.mark.asyncio
async def test_connect_installs_sdk_handlers():
    client = FakeDeviceClient()
    session, created = _session(client)
    await session.subscribe_twin_updates(lambda patch: None)

    await session.connect()

    assert created and client.connected
    assert client.on_message_received is not None
    assert client.on_connection_state_change is not None
    assert client.on_twin_desired_properties_patch_received is not None


@pytest.mark.asyncio
async def test_connect_failure_is_wrapped():
    session, _ = _session(FakeDeviceClient(connect_error=OSError("unreachable")))

    with pytest.raises(TransportConnectionError, match="unreachable"):
        await session.connect()


@pytest.mark.asyncio
async def test_connect_timeout_is_wrapped():
    client = FakeDeviceClient(connect_delay=5.0)
    session = AzureDeviceSession(
        _config(connect_timeout_seconds=0.01), client_factory=lambda config: client
    )

    with pytest.raises(TransportConnectionError, match="Timed out"):
        await session.connect()


@pytest.mark.asyncio
async def test_send_builds_sdk_message_with_properties():
    client = FakeDeviceClient()
    session, _ = _session(client)
    await session.connect()

    await session.send(
        OutboundMessage(
            payload=b'{"temperature": 25.0, "humidity": 65.0}',
            properties={"temperatureAlert": "false"},
        )
    )

    message = client.sent[0]
    assert message.data == b'{"temperature": 25.0, "humidity": 65.0}'
    assert message.custom_properties == {"temperatureAlert": "false"}
    assert message.content_type == "application/json"
    assert message.content_encoding == "utf-8"


@pytest.mark.asyncio
async def test_send_failure_raises_send_error():
    session, _ = _session(FakeDeviceClient(send_error=RuntimeError("throttled")))
    await session.connect()

    with pytest.raises(TransportSendError, match="throttled"):
        await session.send(OutboundMessage(payload=b"{}"))


@pytest.mark.asyncio
async def test_send_before_connect_raises_send_error():
    session, _ = _session(FakeDeviceClient())

    with pytest.raises(TransportSendError):
        await session.send(OutboundMessage(payload=b"{}"))


@pytest.mark.asyncio
async def test_messages_from_sdk_thread_are_received():
    client = FakeDeviceClient()
    session, _ = _session(client)
    await session.connect()

    sdk_message = SimpleNamespace(data=b"This is my c2d message", custom_properties={"a": "b"})
    thread = threading.Thread(target=client.on_message_received, args=(sdk_message,))
    thread.start()
    thread.join()

    message = await session.receive(timeout=1.0)
    assert message.payload == b"This is my c2d message"
    assert message.properties == {"a": "b"}

    await session.ack(message.delivery_handle)
    assert session.pending_acks == 0


@pytest.mark.asyncio
async def test_twin_patch_from_sdk_thread_reaches_callback():
    client = FakeDeviceClient()
    session, _ = _session(client)
    received = asyncio.Queue()

    async def on_patch(patch):
        await received.put(patch)

    await session.connect()
    await session.subscribe_twin_updates(on_patch)

    thread = threading.Thread(
        target=client.on_twin_desired_properties_patch_received,
        args=({"FPS": 30, "$version": 2},),
    )
    thread.start()
    thread.join()

    assert await asyncio.wait_for(received.get(), timeout=1.0) == {
        "FPS": 30,
        "$version": 2,
    }


@pytest.mark.asyncio
async def test_reported_properties_are_patched():
    client = FakeDeviceClient()
    session, _ = _session(client)
    await session.connect()

    await session.update_reported_properties({"weather": {"FPS": 30}})

    assert client.patches == [{"weather": {"FPS": 30}}]


@pytest.mark.asyncio
async def test_connection_drop_notifies_disconnect_handlers():
    client = FakeDeviceClient()
    session, _ = _session(client)
    codes = []
    session.register_disconnect_handler(codes.append)
    await session.connect()

    client.connected = False
    client.on_connection_state_change()
    await asyncio.sleep(0)

    assert codes == [CONNECTION_DROPPED_RC]


@pytest.mark.asyncio
async def test_disconnect_shuts_down_without_notifying():
    client = FakeDeviceClient()
    session, _ = _session(client)
    codes = []
    session.register_disconnect_handler(codes.append)
    await session.connect()

    await session.disconnect()
    await asyncio.sleep(0)

    assert client.shutdown_calls == 1
    assert codes == []


class FakeRegistryManager:
    def __init__(self):
        self.messages = []

    def send_c2d_message(self, device_id, message, properties=None):
        self.messages.append((device_id, message, properties))


@pytest.mark.asyncio
async def test_management_session_sends_c2d_message():
    registry = FakeRegistryManager()
    connection_strings = []

    def factory(connection_string):
        connection_strings.append(connection_string)
        return registry

    session = AzureManagementSession(
        ServiceConfig(connection_string="HostName=hub;SharedAccessKeyName=service"),
        registry_factory=factory,
    )
    await session.open()
    await session.send_to_device("iot-dev1", b"hello", {"k": "v"})
    await session.close()

    assert connection_strings == ["HostName=hub;SharedAccessKeyName=service"]
    assert registry.messages == [("iot-dev1", b"hello", {"k": "v"})]


@pytest.mark.asyncio
async def test_management_session_requires_connection_string():
    session = AzureManagementSession(
        ServiceConfig(), registry_factory=lambda value: FakeRegistryManager()
    )

    with pytest.raises(ConfigurationError):
        await session.open()


@pytest.mark.asyncio
async def test_failed_connect_shuts_down_client():
    clients = [FakeDeviceClient(connect_error=OSError("unreachable")), FakeDeviceClient()]
    session = AzureDeviceSession(_config(), client_factory=lambda config: clients.pop(0))
    first = clients[0]

    with pytest.raises(TransportConnectionError):
        await session.connect()

    assert first.shutdown_calls == 1

    await session.connect()
    await session.send(OutboundMessage(payload=b"{}"))
    assert clients == []


@pytest.mark.asyncio
async def test_app_releases_client_when_startup_connect_fails(config_factory):
    from simdevice.app import DeviceApp

    client = FakeDeviceClient(connect_error=OSError("unreachable"))
    session = AzureDeviceSession(_config(), client_factory=lambda config: client)
    app = DeviceApp(config_factory(), session=session)

    with pytest.raises(TransportConnectionError):
        await app.run()

    assert client.shutdown_calls == 1
    assert session._client is None
