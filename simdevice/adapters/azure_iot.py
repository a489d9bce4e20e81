"""Azure IoT Hub sessions built on the azure-iot-device and azure-iot-hub SDKs."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Hashable, List, Mapping, Optional

from azure.iot.device import Message
from azure.iot.device.aio import IoTHubDeviceClient

from .. import constants
from ..config import ConfigurationError, ServiceConfig, TransportConfig
from ..core import InboundMessage, OutboundMessage, TwinCallback
from .base import (
    InboundBuffer,
    TransportConnectionError,
    TransportSendError,
    dispatch_twin_patch,
)

LOGGER = logging.getLogger(__name__)

# Reported by disconnect handlers when the SDK signals a dropped connection;
# the SDK does not expose a numeric reason code.
CONNECTION_DROPPED_RC = 1


def create_device_client(config: TransportConfig) -> IoTHubDeviceClient:
    """Create the SDK client for the configured credentials and protocol.

    Automatic SDK reconnection is disabled so that the connection coordinator
    is the single owner of reconnect timing.
    """

    if not config.connection_string:
        raise ConfigurationError("Azure transport needs a device connection string")

    return IoTHubDeviceClient.create_from_connection_string(
        config.connection_string,
        websockets=config.protocol == constants.PROTOCOL_MQTT_WS,
        connection_retry=False,
    )


class AzureDeviceSession:
    """Transport session over an Azure IoT Hub device identity.

    The SDK completes cloud-to-device messages itself when they arrive over
    MQTT, so :meth:`ack` settles the local delivery bookkeeping only.
    """

    def __init__(
        self,
        config: TransportConfig,
        *,
        client_factory: Callable[[TransportConfig], Any] = create_device_client,
    ) -> None:
        self.config = config
        self._client_factory = client_factory
        self._client: Optional[Any] = None
        self._inbound = InboundBuffer()
        self._send_lock = asyncio.Lock()
        self._twin_callback: Optional[TwinCallback] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._disconnect_handlers: List[Callable[[int], None]] = []
        self._closing = False

    @property
    def pending_acks(self) -> int:
        return self._inbound.pending_count

    async def connect(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._inbound.bind(self._loop)
        self._closing = False

        if self._client is None:
            self._client = self._client_factory(self.config)
            self._client.on_message_received = self._on_message_received
            self._client.on_connection_state_change = self._on_connection_state_change
            if self._twin_callback is not None:
                self._client.on_twin_desired_properties_patch_received = (
                    self._on_twin_patch_received
                )

        LOGGER.info("Connecting to Azure IoT Hub (protocol=%s)", self.config.protocol)
        try:
            await asyncio.wait_for(
                self._client.connect(), timeout=self.config.connect_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            await self._discard_client()
            raise TransportConnectionError(
                "Timed out connecting to Azure IoT Hub"
            ) from exc
        except Exception as exc:
            await self._discard_client()
            raise TransportConnectionError(
                f"Azure IoT Hub connection failed: {exc}"
            ) from exc
        LOGGER.info("Connected to Azure IoT Hub")

    async def _discard_client(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        self._closing = True
        try:
            await client.shutdown()
        except Exception as exc:
            LOGGER.warning("Error shutting down Azure IoT Hub client: %s", exc)

    async def disconnect(self) -> None:
        client = self._client
        if client is None:
            return

        self._closing = True
        try:
            await client.shutdown()
        finally:
            self._client = None
            self._inbound.drain()

    async def send(self, message: OutboundMessage) -> None:
        client = self._require_client()
        sdk_message = Message(
            message.payload,
            content_encoding=constants.CONTENT_ENCODING_UTF8,
            content_type=constants.CONTENT_TYPE_JSON,
        )
        sdk_message.custom_properties.update(message.properties)

        async with self._send_lock:
            try:
                await client.send_message(sdk_message)
            except Exception as exc:
                raise TransportSendError(f"send_message failed: {exc}") from exc

    async def receive(self, timeout: Optional[float] = None) -> Optional[InboundMessage]:
        return await self._inbound.get(timeout)

    async def ack(self, handle: Hashable) -> None:
        self._inbound.complete(handle)

    async def subscribe_twin_updates(self, callback: TwinCallback) -> None:
        self._twin_callback = callback
        if self._client is not None:
            self._client.on_twin_desired_properties_patch_received = (
                self._on_twin_patch_received
            )
        LOGGER.info("Subscribed to desired property changes")

    async def update_reported_properties(self, document: Mapping[str, Any]) -> None:
        client = self._require_client()
        async with self._send_lock:
            try:
                await client.patch_twin_reported_properties(dict(document))
            except Exception as exc:
                raise TransportSendError(
                    f"patch_twin_reported_properties failed: {exc}"
                ) from exc

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None:
        self._disconnect_handlers.append(handler)

    def _require_client(self) -> Any:
        if self._client is None:
            raise TransportSendError("Azure IoT Hub session not connected")
        return self._client

    # ------------------------------------------------------------------
    # SDK handlers; the SDK may invoke these from its own handler threads
    # ------------------------------------------------------------------
    def _on_message_received(self, message: Message) -> None:
        payload = message.data
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        self._inbound.put_threadsafe(payload or b"", message.custom_properties)

    def _on_twin_patch_received(self, patch: Mapping[str, Any]) -> None:
        callback = self._twin_callback
        loop = self._loop
        if callback is None or loop is None:
            return
        asyncio.run_coroutine_threadsafe(dispatch_twin_patch(callback, patch), loop)

    def _on_connection_state_change(self) -> None:
        client = self._client
        loop = self._loop
        if client is None or loop is None or client.connected or self._closing:
            return

        LOGGER.warning("Azure IoT Hub connection dropped")
        for handler in self._disconnect_handlers:
            loop.call_soon_threadsafe(handler, CONNECTION_DROPPED_RC)


def create_registry_manager(connection_string: str) -> Any:
    # azure-iot-hub ships in the optional "service" extra.
    from azure.iot.hub import IoTHubRegistryManager

    return IoTHubRegistryManager.from_connection_string(connection_string)


class AzureManagementSession:
    """Service-plane session backed by ``IoTHubRegistryManager``.

    The registry manager is blocking, so its calls run in a worker thread.
    """

    def __init__(
        self,
        config: ServiceConfig,
        *,
        registry_factory: Callable[[str], Any] = create_registry_manager,
    ) -> None:
        self.config = config
        self._registry_factory = registry_factory
        self._registry: Optional[Any] = None

    async def open(self) -> None:
        if not self.config.connection_string:
            raise ConfigurationError(
                "Service connection string not configured. Set [service] "
                f"connection_string, {constants.SERVICE_CONNECTION_STRING_ENV} or "
                "--service-connection-string"
            )
        self._registry = await asyncio.to_thread(
            self._registry_factory, self.config.connection_string
        )

    async def close(self) -> None:
        self._registry = None

    async def send_to_device(
        self,
        device_id: str,
        payload: bytes,
        properties: Optional[Mapping[str, str]] = None,
    ) -> None:
        if self._registry is None:
            raise RuntimeError("Management session not opened")
        await asyncio.to_thread(
            self._registry.send_c2d_message,
            device_id,
            payload,
            properties=dict(properties or {}),
        )
        LOGGER.info("Sent cloud-to-device message to %s", device_id)
