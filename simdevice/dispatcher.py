"""One-shot cloud-to-device command dispatch through the management plane."""

from __future__ import annotations

import logging
from typing import Mapping, Optional

from .config import ConfigurationError
from .core import ManagementSession

LOGGER = logging.getLogger(__name__)


class CommandDispatchError(RuntimeError):
    """Raised when a command could not be delivered to the target device."""


async def dispatch_command(
    session: ManagementSession,
    device_id: str,
    message: str | bytes,
    *,
    properties: Optional[Mapping[str, str]] = None,
) -> None:
    """Open ``session``, send a single command to ``device_id`` and close it.

    Nothing is retried; any failure is raised as :class:`CommandDispatchError`
    chained to the underlying exception. A :class:`ConfigurationError` from
    opening the session (missing credentials) is raised unchanged.
    """

    if not device_id:
        raise CommandDispatchError("Target device id cannot be empty")

    payload = message.encode("utf-8") if isinstance(message, str) else message

    try:
        await session.open()
    except ConfigurationError:
        raise
    except Exception as exc:
        raise CommandDispatchError(
            f"Could not open management session: {exc}"
        ) from exc

    try:
        LOGGER.info("Sending command to %s (%d bytes)", device_id, len(payload))
        await session.send_to_device(device_id, payload, properties)
    except Exception as exc:
        raise CommandDispatchError(
            f"Sending command to {device_id} failed: {exc}"
        ) from exc
    finally:
        await _close_quietly(session)


async def _close_quietly(session: ManagementSession) -> None:
    try:
        await session.close()
    except Exception as exc:
        LOGGER.warning("Error closing management session: %s", exc)
