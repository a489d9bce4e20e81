"""Connection coordination and reconnection management.

This module owns the transport session lifecycle after startup: the initial
connect fails fast, later disconnect notifications are turned into a single
serialized reconnection with exponential backoff.
"""

from __future__ import annotations

import asyncio
import logging
import random
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, List, Optional

if TYPE_CHECKING:
    from .config import ResilienceConfig
    from .core import TransportSession

LOGGER = logging.getLogger(__name__)

# CONNACK "not authorized" codes for MQTT 3.1.1 and MQTT 5.
_AUTH_FAILURE_CODES = frozenset({4, 5, 134, 135})

Callback = Callable[..., Awaitable[None] | None]


class ReconnectReason(str, Enum):
    """Reason for requesting a reconnection."""

    CONNECTION_LOST = "connection_lost"
    """The connection dropped unexpectedly."""

    AUTH_FAILURE = "auth_failure"
    """The broker refused the credentials."""

    @classmethod
    def from_rc(cls, rc: int) -> "ReconnectReason":
        if rc in _AUTH_FAILURE_CODES:
            return cls.AUTH_FAILURE
        return cls.CONNECTION_LOST


class ConnectionState(str, Enum):
    """Current state of the transport session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class ConnectionCoordinator:
    """Coordinates the session connection lifecycle and reconnection.

    Key responsibilities:
    - Accept reconnection requests from the session's disconnect handler
    - Serialize reconnection attempts (only one at a time)
    - Manage backoff delays for failed reconnection attempts
    - Notify the application before and after reconnection, and when
      reconnection is given up
    """

    def __init__(
        self,
        *,
        session: TransportSession,
        resilience_config: ResilienceConfig,
    ) -> None:
        self._session = session
        self._resilience = resilience_config

        self._state = ConnectionState.DISCONNECTED
        self._reconnect_lock = asyncio.Lock()
        self._reconnect_event = asyncio.Event()
        self._pending_reason: Optional[ReconnectReason] = None
        self._stop_event = asyncio.Event()
        self._supervisor_task: Optional[asyncio.Task[None]] = None

        self._on_disconnected_callbacks: List[Callback] = []
        self._on_reconnected_callbacks: List[Callback] = []
        self._on_failed_callbacks: List[Callback] = []

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    def request_reconnect(self, reason: ReconnectReason) -> None:
        """Request a reconnection.

        Multiple requests are coalesced; AUTH_FAILURE wins over CONNECTION_LOST
        so the reported reason reflects the more specific failure.
        """
        if self._stop_event.is_set():
            return

        # Disconnects we trigger ourselves while reconnecting are expected.
        if self._state == ConnectionState.RECONNECTING:
            return

        if self._pending_reason is None or reason == ReconnectReason.AUTH_FAILURE:
            self._pending_reason = reason
        LOGGER.debug("Reconnect requested: %s", self._pending_reason.value)

        self._reconnect_event.set()

    def handle_disconnect(self, rc: int) -> None:
        """Session disconnect handler; runs on the event loop."""
        self.request_reconnect(ReconnectReason.from_rc(rc))

    async def connect(self) -> None:
        """Establish the initial connection.

        Raises:
            TransportConnectionError: If the session cannot connect.
        """
        self._state = ConnectionState.CONNECTING
        LOGGER.info("Establishing transport session")

        try:
            await self._session.connect()
        except Exception:
            self._state = ConnectionState.DISCONNECTED
            raise
        self._state = ConnectionState.CONNECTED
        LOGGER.info("Transport session established")

    async def disconnect(self) -> None:
        """Gracefully close the session."""
        LOGGER.info("Closing transport session")
        self._state = ConnectionState.DISCONNECTED

        try:
            await self._session.disconnect()
        except Exception as exc:
            LOGGER.warning("Error while closing transport session: %s", exc)

    def start_supervisor(self) -> None:
        """Start the connection supervision task."""
        if self._supervisor_task is not None and not self._supervisor_task.done():
            LOGGER.warning("Supervisor already running")
            return

        self._stop_event.clear()
        self._supervisor_task = asyncio.create_task(self._supervision_loop())

    async def stop_supervisor(self) -> None:
        """Stop the connection supervision task."""
        self._stop_event.set()
        self._reconnect_event.set()

        if self._supervisor_task is not None:
            self._supervisor_task.cancel()
            try:
                await self._supervisor_task
            except asyncio.CancelledError:
                pass
            self._supervisor_task = None

    def register_reconnected_callback(self, callback: Callback) -> None:
        """Register ``callback()`` to be invoked after successful reconnection."""
        self._on_reconnected_callbacks.append(callback)

    def register_disconnected_callback(self, callback: Callback) -> None:
        """Register ``callback(reason)`` to be invoked before reconnecting."""
        self._on_disconnected_callbacks.append(callback)

    def register_failed_callback(self, callback: Callback) -> None:
        """Register ``callback(reason)`` to be invoked when reconnection gives up."""
        self._on_failed_callbacks.append(callback)

    async def _supervision_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self._reconnect_event.wait()
            except asyncio.CancelledError:
                break

            self._reconnect_event.clear()

            if self._stop_event.is_set():
                break

            async with self._reconnect_lock:
                reason = self._pending_reason
                self._pending_reason = None

                if reason is None:
                    continue

                await self._execute_reconnect(reason)

    async def _execute_reconnect(self, reason: ReconnectReason) -> None:
        LOGGER.info("Executing reconnection (reason=%s)", reason.value)
        self._state = ConnectionState.RECONNECTING

        await self._notify(self._on_disconnected_callbacks, reason)

        try:
            await self._session.disconnect()
        except Exception as exc:
            LOGGER.debug("Ignoring error from stale session disconnect: %s", exc)

        connected = await self._connect_with_backoff()

        if connected:
            self._state = ConnectionState.CONNECTED
            await self._notify(self._on_reconnected_callbacks)
            return

        if self._stop_event.is_set():
            self._state = ConnectionState.DISCONNECTED
            return

        self._state = ConnectionState.FAILED
        LOGGER.error(
            "Failed to reconnect after %d attempts",
            self._resilience.reconnect_max_attempts,
        )
        await self._notify(self._on_failed_callbacks, reason)

    async def _notify(self, callbacks: List[Callback], *args: Any) -> None:
        for callback in callbacks:
            try:
                result = callback(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                LOGGER.exception("Connection callback failed")

    async def _connect_with_backoff(self) -> bool:
        """Attempt connection with exponential backoff.

        Returns:
            True if connection succeeded, False otherwise.
        """
        delay = max(0.01, self._resilience.reconnect_initial_seconds)
        max_delay = max(delay, self._resilience.reconnect_max_seconds)
        jitter_ratio = max(0.0, min(1.0, self._resilience.reconnect_jitter_ratio))
        max_attempts = max(1, self._resilience.reconnect_max_attempts)

        attempt = 0
        while not self._stop_event.is_set() and attempt < max_attempts:
            attempt += 1

            try:
                LOGGER.debug("Connection attempt %d", attempt)
                await self._session.connect()
                LOGGER.info("Reconnected on attempt %d", attempt)
                return True
            except Exception as exc:
                LOGGER.warning(
                    "Connection attempt %d failed: %s, retrying in %.1fs",
                    attempt,
                    exc,
                    delay,
                )

            if attempt >= max_attempts:
                break

            sleep_for = delay
            if jitter_ratio > 0.0:
                jitter = delay * jitter_ratio
                sleep_for = random.uniform(max(0.01, delay - jitter), delay + jitter)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_for)
                break
            except asyncio.TimeoutError:
                pass

            delay = min(delay * 2, max_delay)

        return False
