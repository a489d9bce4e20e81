"""MQTT adapter encapsulating paho-mqtt client usage."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, List, Mapping, Optional

import paho.mqtt.client as mqtt
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties

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

MessageHandler = Callable[[str, bytes, Dict[str, str]], None]


class MQTTConnectionError(TransportConnectionError):
    """Raised when the MQTT client fails to establish a connection."""


@dataclass(frozen=True, slots=True)
class DeviceTopics:
    events: str
    devicebound: str
    twin_desired: str
    twin_reported: str

    @classmethod
    def for_device(cls, device_id: str) -> "DeviceTopics":
        base = f"devices/{device_id}"
        return cls(
            events=f"{base}/messages/events",
            devicebound=f"{base}/messages/devicebound",
            twin_desired=f"{base}/twin/desired",
            twin_reported=f"{base}/twin/reported",
        )


def build_publish_properties(
    properties: Optional[Mapping[str, str]] = None,
    *,
    content_type: Optional[str] = None,
) -> Properties:
    """Carry application properties as MQTT v5 user properties.

    Brokers can route and filter on user properties without touching the
    payload.
    """

    publish_properties = Properties(PacketTypes.PUBLISH)
    if properties:
        publish_properties.UserProperty = [
            (str(key), str(value)) for key, value in properties.items()
        ]
    if content_type:
        publish_properties.ContentType = content_type
    return publish_properties


def _reason_value(rc: Any) -> int:
    value = getattr(rc, "value", rc)
    try:
        return int(value)
    except (TypeError, ValueError):
        return -1


class MQTTClient:
    """Async-friendly wrapper over the threaded paho-mqtt client."""

    def __init__(
        self,
        config: TransportConfig,
        *,
        client_id: str,
        keepalive: int = 60,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> None:
        self.config = config
        self.client_id = client_id
        self.keepalive = keepalive
        self.username = username if username is not None else config.username
        self.password = password if password is not None else config.password

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected_event: Optional[asyncio.Event] = None
        self._disconnect_event: Optional[asyncio.Event] = None
        self._message_handler: Optional[MessageHandler] = None
        self._last_connect_rc: Optional[int] = None
        self._connected: bool = False
        self._disconnect_handlers: List[Callable[[int], None]] = []

    async def connect(self, timeout: Optional[float] = None) -> None:
        """Connect to the MQTT broker and wait for acknowledgement."""

        timeout = timeout if timeout is not None else self.config.connect_timeout_seconds
        self._loop = asyncio.get_running_loop()
        self._connected_event = asyncio.Event()
        self._disconnect_event = asyncio.Event()
        self._last_connect_rc = None

        client = mqtt.Client(client_id=self.client_id, protocol=mqtt.MQTTv5)
        client.enable_logger(LOGGER)

        if self.username:
            client.username_pw_set(self.username, self.password)
        if self.config.tls:
            client.tls_set()

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

        self._client = client

        LOGGER.info(
            "Connecting to MQTT broker %s:%s as %s",
            self.config.broker_host,
            self.config.broker_port,
            self.client_id,
        )

        client.connect_async(
            self.config.broker_host, self.config.broker_port, self.keepalive
        )
        client.loop_start()

        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
            if self._last_connect_rc is None or self._last_connect_rc != 0:
                raise MQTTConnectionError(
                    f"MQTT broker rejected connection (rc={self._last_connect_rc})"
                )
        except asyncio.TimeoutError as exc:
            client.loop_stop()
            self._client = None
            raise MQTTConnectionError("Timed out connecting to MQTT broker") from exc
        except MQTTConnectionError:
            client.loop_stop()
            self._client = None
            raise

    async def disconnect(self, timeout: float = 5.0) -> None:
        """Gracefully disconnect from the broker."""

        if not self._client:
            return

        assert self._disconnect_event is not None

        self._client.disconnect()

        try:
            await asyncio.wait_for(self._disconnect_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Timed out waiting for MQTT disconnect acknowledgement")
        finally:
            self._client.loop_stop()
            self._client = None
        self._connected = False

    def publish(
        self,
        topic: str,
        payload: bytes,
        qos: int = 1,
        retain: bool = False,
        *,
        properties: Optional[Properties] = None,
    ) -> Any:
        if not self._client:
            raise MQTTConnectionError("MQTT client not connected")

        info = self._client.publish(
            topic, payload, qos=qos, retain=retain, properties=properties
        )
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Publish failed with rc={info.rc}")
        return info

    def subscribe(self, topic: str, qos: int = 1) -> None:
        if not self._client:
            raise MQTTConnectionError("MQTT client not connected")
        result, _ = self._client.subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Subscribe failed with rc={result}")

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None:
        self._disconnect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # Internal callbacks bridging the threaded paho callbacks into asyncio
    # ------------------------------------------------------------------
    def _on_connect(self, client: mqtt.Client, userdata, flags, rc, properties=None) -> None:
        self._last_connect_rc = _reason_value(rc)
        if self._last_connect_rc == 0:
            LOGGER.info("Connected to MQTT broker")
            self._connected = True
        else:
            LOGGER.error("MQTT connection failed with rc=%s", rc)
            self._connected = False
        self._set_event_threadsafe(self._connected_event)

    def _on_disconnect(self, client: mqtt.Client, userdata, rc, properties=None) -> None:
        code = _reason_value(rc)
        LOGGER.info("Disconnected from MQTT broker (rc=%s)", code)
        self._connected = False
        self._set_event_threadsafe(self._disconnect_event)
        if self._loop:
            for handler in self._disconnect_handlers:
                self._loop.call_soon_threadsafe(handler, code)

    def _on_message(
        self, client: mqtt.Client, userdata, message: mqtt.MQTTMessage
    ) -> None:
        handler = self._message_handler
        if not handler:
            return

        user_properties = getattr(message.properties, "UserProperty", None) or []
        try:
            handler(message.topic, message.payload, dict(user_properties))
        except Exception:  # pragma: no cover
            LOGGER.exception("MQTT message handler raised an exception")

    def _set_event_threadsafe(self, event: Optional[asyncio.Event]) -> None:
        if event is None:
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            event.set()
            return
        loop.call_soon_threadsafe(event.set)


class MQTTDeviceSession:
    """Transport session for a plain MQTT v5 broker.

    Device-bound messages and desired-property patches arrive on per-device
    topics (see :class:`DeviceTopics`). paho acknowledges QoS 1 deliveries
    itself, so :meth:`ack` only settles the local bookkeeping.
    """

    def __init__(
        self,
        config: TransportConfig,
        *,
        client: Optional[MQTTClient] = None,
    ) -> None:
        if not config.device_id:
            raise ConfigurationError("MQTT transport needs a device id")
        self.config = config
        self.device_id = config.device_id
        self.topics = DeviceTopics.for_device(config.device_id)
        self._mqtt = client or MQTTClient(
            config, client_id=f"{constants.APP_NAME}-{config.device_id}"
        )
        self._inbound = InboundBuffer()
        self._send_lock = asyncio.Lock()
        self._twin_callback: Optional[TwinCallback] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def pending_acks(self) -> int:
        return self._inbound.pending_count

    async def connect(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._inbound.bind(self._loop)
        self._mqtt.set_message_handler(self._handle_message)
        await self._mqtt.connect()
        self._mqtt.subscribe(self.topics.devicebound, qos=1)
        if self._twin_callback is not None:
            self._mqtt.subscribe(self.topics.twin_desired, qos=1)

    async def disconnect(self) -> None:
        await self._mqtt.disconnect()
        self._inbound.drain()

    async def send(self, message: OutboundMessage) -> None:
        properties = build_publish_properties(
            message.properties, content_type=constants.CONTENT_TYPE_JSON
        )
        async with self._send_lock:
            try:
                self._mqtt.publish(
                    self.topics.events, message.payload, qos=1, properties=properties
                )
            except MQTTConnectionError as exc:
                raise TransportSendError(str(exc)) from exc

    async def receive(self, timeout: Optional[float] = None) -> Optional[InboundMessage]:
        return await self._inbound.get(timeout)

    async def ack(self, handle: Hashable) -> None:
        self._inbound.complete(handle)

    async def subscribe_twin_updates(self, callback: TwinCallback) -> None:
        self._twin_callback = callback
        if self._mqtt.is_connected():
            self._mqtt.subscribe(self.topics.twin_desired, qos=1)
        LOGGER.info("Subscribed to desired properties on %s", self.topics.twin_desired)

    async def update_reported_properties(self, document: Mapping[str, Any]) -> None:
        payload = json.dumps(document).encode("utf-8")
        async with self._send_lock:
            try:
                self._mqtt.publish(
                    self.topics.twin_reported,
                    payload,
                    qos=1,
                    properties=build_publish_properties(
                        content_type=constants.CONTENT_TYPE_JSON
                    ),
                )
            except MQTTConnectionError as exc:
                raise TransportSendError(str(exc)) from exc

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None:
        self._mqtt.register_disconnect_handler(handler)

    # Runs on the paho network thread.
    def _handle_message(self, topic: str, payload: bytes, properties: Dict[str, str]) -> None:
        if topic == self.topics.devicebound:
            self._inbound.put_threadsafe(payload, properties)
            return

        if topic == self.topics.twin_desired:
            self._handle_desired_patch(payload)
            return

        LOGGER.debug("Ignoring message on unexpected topic %s", topic)

    def _handle_desired_patch(self, payload: bytes) -> None:
        callback = self._twin_callback
        loop = self._loop
        if callback is None or loop is None:
            return

        try:
            patch = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            LOGGER.warning("Ignoring malformed desired-properties patch: %s", exc)
            return

        if not isinstance(patch, dict):
            LOGGER.warning(
                "Ignoring desired-properties patch that is not a JSON object: %r",
                patch,
            )
            return

        asyncio.run_coroutine_threadsafe(dispatch_twin_patch(callback, patch), loop)


class MQTTManagementSession:
    """Service-side MQTT identity used to push commands to device topics."""

    def __init__(
        self,
        transport: TransportConfig,
        service: ServiceConfig,
        *,
        client: Optional[MQTTClient] = None,
        publish_timeout: float = 10.0,
    ) -> None:
        self._mqtt = client or MQTTClient(
            transport,
            client_id=f"{constants.APP_NAME}-service-{os.getpid()}",
            username=service.username,
            password=service.password,
        )
        self._publish_timeout = publish_timeout

    async def open(self) -> None:
        await self._mqtt.connect()

    async def close(self) -> None:
        await self._mqtt.disconnect()

    async def send_to_device(
        self,
        device_id: str,
        payload: bytes,
        properties: Optional[Mapping[str, str]] = None,
    ) -> None:
        topic = DeviceTopics.for_device(device_id).devicebound
        info = self._mqtt.publish(
            topic, payload, qos=1, properties=build_publish_properties(properties)
        )
        await asyncio.to_thread(info.wait_for_publish, self._publish_timeout)
        if not info.is_published():
            raise TransportSendError(
                f"Command to {device_id} was not acknowledged by the broker"
            )
        LOGGER.info("Published command to %s", topic)
