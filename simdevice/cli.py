"""Command-line interface for simdevice."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Dict, Optional

from . import constants
from .adapters import create_management_session
from .app import DeviceApp
from .config import ConfigurationError, DeviceConfig, load_config, parse_loops
from .dispatcher import CommandDispatchError, dispatch_command
from .logging import configure_logging

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=constants.APP_NAME,
        description="Simulated IoT device: telemetry, cloud-to-device commands and twin sync",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--log-level",
        help="Log verbosity, e.g. DEBUG or WARNING (default: from config, INFO)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Connect and run the device loops")
    run_parser.add_argument(
        "--connection-string", help="Device connection string (Azure transport)"
    )
    run_parser.add_argument(
        "--transport",
        choices=constants.TRANSPORT_KINDS,
        help="Transport backend (default: azure)",
    )
    run_parser.add_argument(
        "--protocol",
        choices=constants.PROTOCOLS,
        help="Protocol preference for the Azure transport (default: mqtt)",
    )
    run_parser.add_argument(
        "--loops",
        help="Comma separated loops to enable: uplink,downlink,twin (default: all)",
    )
    run_parser.add_argument(
        "--interval",
        type=float,
        help="Seconds between telemetry messages (default: 1.0)",
    )

    command_parser = subparsers.add_parser(
        "send-command", help="Send one cloud-to-device message and exit"
    )
    command_parser.add_argument(
        "--device-id", help="Target device id (default: from config, iot-dev1)"
    )
    command_parser.add_argument("--message", help="Message body to send")
    command_parser.add_argument(
        "--service-connection-string",
        help="Service connection string with registry write access",
    )
    command_parser.add_argument(
        "--transport",
        choices=constants.TRANSPORT_KINDS,
        help="Transport backend (default: azure)",
    )

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    return parser


def _collect_overrides(
    args: argparse.Namespace,
) -> Dict[str, Dict[str, Optional[str]]]:
    overrides: Dict[str, Dict[str, Optional[str]]] = {
        "transport": {
            "connection_string": getattr(args, "connection_string", None),
            "kind": getattr(args, "transport", None),
            "protocol": getattr(args, "protocol", None),
        },
        "service": {
            "connection_string": getattr(args, "service_connection_string", None),
            "target_device": getattr(args, "device_id", None),
            "message": getattr(args, "message", None),
        },
        "telemetry": {},
        "logging": {"level": args.log_level},
    }

    interval = getattr(args, "interval", None)
    if interval is not None:
        overrides["telemetry"]["interval_seconds"] = str(interval)

    loops = getattr(args, "loops", None)
    if loops is not None:
        selected = parse_loops(loops)
        overrides["loops"] = {
            name: "true" if name in selected else "false"
            for name in constants.LOOP_NAMES
        }

    return overrides


_SECRET_KEYS = ("connection_string", "password")


def _mask(key: str, value: str) -> str:
    if value and key in _SECRET_KEYS:
        return "****"
    return value


def _send_command(config: DeviceConfig) -> int:
    session = create_management_session(config)
    try:
        asyncio.run(
            dispatch_command(
                session, config.service.target_device, config.service.message
            )
        )
    except ConfigurationError as exc:
        LOGGER.error("Configuration error: %s", exc)
        return 2
    except CommandDispatchError as exc:
        LOGGER.error("Command dispatch failed: %s", exc)
        return 1
    LOGGER.info("Command sent to %s", config.service.target_device)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config, overrides=_collect_overrides(args))
    except ConfigurationError as exc:
        parser.error(str(exc))

    if args.command == "run":
        return DeviceApp.start(config)

    if args.command == "send-command":
        configure_logging(
            config.logging.level,
            log_path=config.logging.path,
            log_network=config.logging.log_network,
        )
        return _send_command(config)

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                print(f"{key} = {_mask(key, value)}")
            print()
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
