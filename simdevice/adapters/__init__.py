"""Transport and management session adapters."""

from __future__ import annotations

from .. import constants
from ..config import DeviceConfig, require_device_credentials
from ..core import ManagementSession, TransportSession
from .azure_iot import AzureDeviceSession, AzureManagementSession
from .base import (
    AcknowledgementError,
    InboundBuffer,
    TransportConnectionError,
    TransportError,
    TransportSendError,
)
from .mqtt import (
    DeviceTopics,
    MQTTClient,
    MQTTConnectionError,
    MQTTDeviceSession,
    MQTTManagementSession,
)

__all__ = [
    "AcknowledgementError",
    "AzureDeviceSession",
    "AzureManagementSession",
    "DeviceTopics",
    "InboundBuffer",
    "MQTTClient",
    "MQTTConnectionError",
    "MQTTDeviceSession",
    "MQTTManagementSession",
    "TransportConnectionError",
    "TransportError",
    "TransportSendError",
    "create_management_session",
    "create_session",
]


def create_session(config: DeviceConfig) -> TransportSession:
    """Build an unconnected device session for the configured transport."""

    require_device_credentials(config.transport)
    if config.transport.kind == constants.TRANSPORT_MQTT:
        return MQTTDeviceSession(config.transport)
    return AzureDeviceSession(config.transport)


def create_management_session(config: DeviceConfig) -> ManagementSession:
    if config.transport.kind == constants.TRANSPORT_MQTT:
        return MQTTManagementSession(config.transport, config.service)
    return AzureManagementSession(config.service)
