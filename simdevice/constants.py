"""Constants used across the simdevice package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "simdevice"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / f".{APP_NAME}" / DEFAULT_CONFIG_FILENAME

CONNECTION_STRING_ENV = "SIMDEVICE_CONNECTION_STRING"
SERVICE_CONNECTION_STRING_ENV = "SIMDEVICE_SERVICE_CONNECTION_STRING"

TRANSPORT_AZURE = "azure"
TRANSPORT_MQTT = "mqtt"
TRANSPORT_KINDS = (TRANSPORT_AZURE, TRANSPORT_MQTT)

PROTOCOL_MQTT = "mqtt"
PROTOCOL_MQTT_WS = "mqtt_ws"
PROTOCOLS = (PROTOCOL_MQTT, PROTOCOL_MQTT_WS)

DEFAULT_BROKER_HOST = "localhost"
DEFAULT_BROKER_PORT = 1883

LOOP_UPLINK = "uplink"
LOOP_DOWNLINK = "downlink"
LOOP_TWIN = "twin"
LOOP_NAMES = (LOOP_UPLINK, LOOP_DOWNLINK, LOOP_TWIN)

# Telemetry ranges: value = low + U[0, 1) * span
TEMPERATURE_MIN = 20.0
TEMPERATURE_SPAN = 15.0
HUMIDITY_MIN = 60.0
HUMIDITY_SPAN = 20.0

DEFAULT_ALERT_THRESHOLD = 30.0
TEMPERATURE_ALERT_PROPERTY = "temperatureAlert"

DEFAULT_TWIN_FIELD = "FPS"
DEFAULT_TWIN_SECTION = "weather"

DEFAULT_TARGET_DEVICE = "iot-dev1"
DEFAULT_COMMAND_MESSAGE = "This is my c2d message"

CONTENT_TYPE_JSON = "application/json"
CONTENT_ENCODING_UTF8 = "utf-8"
