"""Configuration loader for simdevice."""

from __future__ import annotations

import os
from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional

from . import constants


class ConfigurationError(ValueError):
    """Raised when the resolved configuration cannot drive the requested command."""


@dataclass(slots=True)
class TransportConfig:
    kind: str = constants.TRANSPORT_AZURE
    connection_string: Optional[str] = None
    protocol: str = constants.PROTOCOL_MQTT
    device_id: Optional[str] = None
    broker_host: str = constants.DEFAULT_BROKER_HOST
    broker_port: int = constants.DEFAULT_BROKER_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    tls: bool = False
    connect_timeout_seconds: float = 30.0


@dataclass(slots=True)
class ServiceConfig:
    connection_string: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    target_device: str = constants.DEFAULT_TARGET_DEVICE
    message: str = constants.DEFAULT_COMMAND_MESSAGE


@dataclass(slots=True)
class TelemetryConfig:
    interval_seconds: float = 1.0
    send_timeout_seconds: float = 10.0
    alert_threshold: float = constants.DEFAULT_ALERT_THRESHOLD


@dataclass(slots=True)
class TwinConfig:
    field: str = constants.DEFAULT_TWIN_FIELD
    section: str = constants.DEFAULT_TWIN_SECTION


@dataclass(slots=True)
class LoopsConfig:
    uplink: bool = True
    downlink: bool = True
    twin: bool = True
    receive_timeout_seconds: float = 1.0
    shutdown_timeout_seconds: float = 5.0


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False


@dataclass(slots=True)
class ResilienceConfig:
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 30.0
    reconnect_jitter_ratio: float = 0.5
    reconnect_max_attempts: int = 10
    health_enabled: bool = False
    health_host: str = "127.0.0.1"
    health_port: int = 0


@dataclass(slots=True)
class DeviceConfig:
    transport: TransportConfig
    service: ServiceConfig
    telemetry: TelemetryConfig
    twin: TwinConfig
    loops: LoopsConfig
    logging: LoggingConfig
    resilience: ResilienceConfig
    raw: ConfigParser
    path: Path

    @property
    def enabled_loops(self) -> List[str]:
        return [
            name
            for name in constants.LOOP_NAMES
            if getattr(self.loops, name)
        ]


def parse_loops(value: str) -> List[str]:
    """Split a comma separated loop selection, rejecting unknown names."""

    names = [item.strip().lower() for item in value.split(",") if item.strip()]
    unknown = [name for name in names if name not in constants.LOOP_NAMES]
    if unknown:
        raise ConfigurationError(
            f"Unknown loop(s): {', '.join(unknown)} "
            f"(expected any of {', '.join(constants.LOOP_NAMES)})"
        )
    return names


def load_config(
    path: Optional[Path] = None,
    *,
    overrides: Optional[Mapping[str, Mapping[str, str]]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> DeviceConfig:
    """Load configuration from disk, applying defaults where necessary.

    Precedence, lowest first: built-in defaults, the config file, the
    ``SIMDEVICE_*`` environment variables, then ``overrides`` (usually CLI
    flags) given as ``{section: {key: value}}``.
    """

    config_path = path or constants.DEFAULT_CONFIG_PATH
    env = os.environ if environ is None else environ
    parser = ConfigParser(interpolation=None)
    parser.read_dict(
        {
            "transport": {
                "kind": constants.TRANSPORT_AZURE,
                "protocol": constants.PROTOCOL_MQTT,
                "broker_host": constants.DEFAULT_BROKER_HOST,
                "broker_port": str(constants.DEFAULT_BROKER_PORT),
                "connect_timeout_seconds": "30.0",
            },
            "service": {
                "target_device": constants.DEFAULT_TARGET_DEVICE,
                "message": constants.DEFAULT_COMMAND_MESSAGE,
            },
            "telemetry": {
                "interval_seconds": "1.0",
                "send_timeout_seconds": "10.0",
                "alert_threshold": str(constants.DEFAULT_ALERT_THRESHOLD),
            },
            "twin": {
                "field": constants.DEFAULT_TWIN_FIELD,
                "section": constants.DEFAULT_TWIN_SECTION,
            },
            "loops": {
                "uplink": "true",
                "downlink": "true",
                "twin": "true",
                "receive_timeout_seconds": "1.0",
                "shutdown_timeout_seconds": "5.0",
            },
            "logging": {
                "level": "INFO",
                "log_network": "false",
            },
            "resilience": {
                "reconnect_initial_seconds": "1.0",
                "reconnect_max_seconds": "30.0",
                "reconnect_jitter_ratio": "0.5",
                "reconnect_max_attempts": "10",
                "health_enabled": "false",
                "health_host": "127.0.0.1",
                "health_port": "0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    if env.get(constants.CONNECTION_STRING_ENV):
        parser.set(
            "transport", "connection_string", env[constants.CONNECTION_STRING_ENV]
        )
    if env.get(constants.SERVICE_CONNECTION_STRING_ENV):
        parser.set(
            "service",
            "connection_string",
            env[constants.SERVICE_CONNECTION_STRING_ENV],
        )

    for section, values in (overrides or {}).items():
        if not parser.has_section(section):
            parser.add_section(section)
        for key, value in values.items():
            if value is not None:
                parser.set(section, key, str(value))

    broker_host_value = parser.get("transport", "broker_host")
    broker_port_value = parser.getint(
        "transport", "broker_port", fallback=constants.DEFAULT_BROKER_PORT
    )

    if ":" in broker_host_value:
        host_part, port_part = broker_host_value.rsplit(":", 1)
        try:
            parsed_port = int(port_part)
        except ValueError:
            pass
        else:
            broker_host_value = host_part
            broker_port_value = parsed_port
            parser.set("transport", "broker_host", host_part)
            parser.set("transport", "broker_port", str(parsed_port))

    kind = parser.get("transport", "kind").strip().lower()
    if kind not in constants.TRANSPORT_KINDS:
        raise ConfigurationError(
            f"Unsupported transport kind {kind!r} "
            f"(expected one of {', '.join(constants.TRANSPORT_KINDS)})"
        )

    protocol = parser.get("transport", "protocol").strip().lower()
    if protocol not in constants.PROTOCOLS:
        raise ConfigurationError(
            f"Unsupported protocol {protocol!r} "
            f"(expected one of {', '.join(constants.PROTOCOLS)})"
        )

    transport = TransportConfig(
        kind=kind,
        connection_string=parser.get("transport", "connection_string", fallback=None),
        protocol=protocol,
        device_id=parser.get("transport", "device_id", fallback=None),
        broker_host=broker_host_value,
        broker_port=broker_port_value,
        username=parser.get("transport", "username", fallback=None),
        password=parser.get("transport", "password", fallback=None),
        tls=parser.getboolean("transport", "tls", fallback=False),
        connect_timeout_seconds=max(
            0.1, parser.getfloat("transport", "connect_timeout_seconds", fallback=30.0)
        ),
    )

    service = ServiceConfig(
        connection_string=parser.get("service", "connection_string", fallback=None),
        username=parser.get("service", "username", fallback=None),
        password=parser.get("service", "password", fallback=None),
        target_device=parser.get("service", "target_device"),
        message=parser.get("service", "message"),
    )

    telemetry_defaults = TelemetryConfig()
    telemetry = TelemetryConfig(
        interval_seconds=max(
            0.0,
            parser.getfloat(
                "telemetry",
                "interval_seconds",
                fallback=telemetry_defaults.interval_seconds,
            ),
        ),
        send_timeout_seconds=max(
            0.001,
            parser.getfloat(
                "telemetry",
                "send_timeout_seconds",
                fallback=telemetry_defaults.send_timeout_seconds,
            ),
        ),
        alert_threshold=parser.getfloat(
            "telemetry",
            "alert_threshold",
            fallback=telemetry_defaults.alert_threshold,
        ),
    )

    twin = TwinConfig(
        field=parser.get("twin", "field").strip(),
        section=parser.get("twin", "section").strip(),
    )
    if not twin.field:
        raise ConfigurationError("[twin] field must not be empty")

    loops = LoopsConfig(
        uplink=parser.getboolean("loops", "uplink", fallback=True),
        downlink=parser.getboolean("loops", "downlink", fallback=True),
        twin=parser.getboolean("loops", "twin", fallback=True),
        receive_timeout_seconds=max(
            0.001, parser.getfloat("loops", "receive_timeout_seconds", fallback=1.0)
        ),
        shutdown_timeout_seconds=max(
            0.0, parser.getfloat("loops", "shutdown_timeout_seconds", fallback=5.0)
        ),
    )

    log_path_value = parser.get("logging", "path", fallback="").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    resilience = ResilienceConfig(
        reconnect_initial_seconds=parser.getfloat(
            "resilience", "reconnect_initial_seconds", fallback=1.0
        ),
        reconnect_max_seconds=parser.getfloat(
            "resilience", "reconnect_max_seconds", fallback=30.0
        ),
        reconnect_jitter_ratio=max(
            0.0,
            min(
                1.0,
                parser.getfloat("resilience", "reconnect_jitter_ratio", fallback=0.5),
            ),
        ),
        reconnect_max_attempts=max(
            1, parser.getint("resilience", "reconnect_max_attempts", fallback=10)
        ),
        health_enabled=parser.getboolean(
            "resilience", "health_enabled", fallback=False
        ),
        health_host=parser.get("resilience", "health_host", fallback="127.0.0.1"),
        health_port=parser.getint("resilience", "health_port", fallback=0),
    )

    return DeviceConfig(
        transport=transport,
        service=service,
        telemetry=telemetry,
        twin=twin,
        loops=loops,
        logging=logging_config,
        resilience=resilience,
        raw=parser,
        path=config_path,
    )


def require_device_credentials(config: TransportConfig) -> None:
    """Fail fast when the selected transport lacks the credentials it needs."""

    if config.kind == constants.TRANSPORT_AZURE and not config.connection_string:
        raise ConfigurationError(
            "Device connection string not configured. Set [transport] "
            f"connection_string, {constants.CONNECTION_STRING_ENV} or "
            "--connection-string"
        )
    if config.kind == constants.TRANSPORT_MQTT and not config.device_id:
        raise ConfigurationError(
            "MQTT transport needs a device id; set [transport] device_id"
        )
