"""Main application entry-point for simdevice."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from . import constants
from .adapters import TransportConnectionError, create_session
from .config import ConfigurationError, DeviceConfig, load_config
from .connection import ConnectionCoordinator, ReconnectReason
from .core import TransportSession
from .downlink import DownlinkLoop
from .health import HealthReporter, HealthServer
from .logging import configure_logging
from .telemetry import TelemetryGenerator
from .twin import TwinSynchronizer
from .uplink import UplinkLoop

LOGGER = logging.getLogger(__name__)

HEALTH_REFRESH_SECONDS = 5.0


class AgentState(str, Enum):
    STARTING = "starting"
    CONNECTING = "connecting"
    ACTIVE = "active"
    RECOVERING = "recovering"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(slots=True)
class LoopFailure:
    name: str
    error: BaseException


class LoopFailedError(RuntimeError):
    """Raised from :meth:`DeviceApp.run` when a loop or the transport died."""

    def __init__(self, failures: List[LoopFailure]) -> None:
        self.failures = list(failures)
        summary = ", ".join(f"{item.name}: {item.error!r}" for item in self.failures)
        super().__init__(f"Device loops failed ({summary})")


class DeviceApp:
    """Connects the transport session and supervises the enabled loops.

    Uplink and downlink run as tasks; the twin synchronizer is a callback
    registered with the session. All of them share the one session passed
    in (or built from the configuration) and stop on the same stop event.
    A loop that raises is recorded as a :class:`LoopFailure`, the remaining
    loops are stopped, and :meth:`run` raises :class:`LoopFailedError`.
    """

    def __init__(
        self,
        config: Optional[DeviceConfig] = None,
        *,
        session: Optional[TransportSession] = None,
        generator: Optional[TelemetryGenerator] = None,
    ) -> None:
        self._config = config or load_config()
        self._session = session
        self._generator = generator
        self._coordinator: Optional[ConnectionCoordinator] = None
        self._health = HealthReporter()
        self._health_server: Optional[HealthServer] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._tasks: Dict[str, asyncio.Task[None]] = {}
        self._failures: List[LoopFailure] = []
        self._stopping = False
        self._state = AgentState.STARTING

        self.uplink: Optional[UplinkLoop] = None
        self.downlink: Optional[DownlinkLoop] = None
        self.twin: Optional[TwinSynchronizer] = None

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def health(self) -> HealthReporter:
        return self._health

    @property
    def failures(self) -> List[LoopFailure]:
        return list(self._failures)

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def run(self) -> None:
        """Connect, run the enabled loops until stopped, then shut down.

        Raises:
            ConfigurationError: If no loop is enabled or credentials are missing.
            TransportConnectionError: If the initial connection fails.
            LoopFailedError: If a loop or the reconnect policy gave up.
        """

        enabled = self._config.enabled_loops
        if not enabled:
            raise ConfigurationError("No loops enabled; nothing to run")

        self._stop_event = asyncio.Event()
        self._failures = []
        self._stopping = False

        LOGGER.info(
            "%s starting (transport=%s, loops=%s)",
            constants.APP_NAME,
            self._config.transport.kind,
            ",".join(enabled),
        )

        await self._connect()
        try:
            await self._start_components(enabled)
            await self._transition_state(AgentState.ACTIVE)
            await self._stop_event.wait()
        finally:
            await self._stop_services()

        if self._failures:
            await self._transition_state(AgentState.FAILED)
            raise LoopFailedError(self._failures)

    async def _connect(self) -> None:
        await self._transition_state(AgentState.CONNECTING)
        if self._session is None:
            self._session = create_session(self._config)

        coordinator = ConnectionCoordinator(
            session=self._session,
            resilience_config=self._config.resilience,
        )
        coordinator.register_disconnected_callback(self._on_connection_lost)
        coordinator.register_reconnected_callback(self._on_connection_restored)
        coordinator.register_failed_callback(self._on_reconnect_failed)
        self._coordinator = coordinator

        try:
            await coordinator.connect()
        except TransportConnectionError as exc:
            LOGGER.error("Transport connection failed: %s", exc)
            # The session may hold a half-built client from the failed attempt.
            await coordinator.disconnect()
            await self._health.update("transport", False, str(exc))
            await self._transition_state(AgentState.FAILED, detail=str(exc))
            raise

        await self._health.update("transport", True, None)
        self._session.register_disconnect_handler(self._on_transport_disconnect)
        coordinator.start_supervisor()

    async def _start_components(self, enabled: List[str]) -> None:
        assert self._session is not None
        config = self._config

        if constants.LOOP_TWIN in enabled:
            self.twin = TwinSynchronizer(
                self._session,
                property_path=config.twin.field,
                section=config.twin.section,
            )
            await self.twin.register()
            await self._health.update(constants.LOOP_TWIN, True, None)

        if constants.LOOP_UPLINK in enabled:
            self.uplink = UplinkLoop(
                self._session,
                generator=self._generator,
                interval=config.telemetry.interval_seconds,
                send_timeout=config.telemetry.send_timeout_seconds,
                alert_threshold=config.telemetry.alert_threshold,
            )
            self._spawn(constants.LOOP_UPLINK, self.uplink.run)

        if constants.LOOP_DOWNLINK in enabled:
            self.downlink = DownlinkLoop(
                self._session,
                receive_timeout=config.loops.receive_timeout_seconds,
            )
            self._spawn(constants.LOOP_DOWNLINK, self.downlink.run)

        await self._start_health_server()

    def _spawn(
        self, name: str, loop_fn: Callable[[asyncio.Event], Awaitable[None]]
    ) -> None:
        assert self._stop_event is not None
        stop_event = self._stop_event

        async def _runner() -> None:
            await self._health.update(name, True, "running")
            try:
                await loop_fn(stop_event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.exception("%s loop failed", name)
                self._failures.append(LoopFailure(name=name, error=exc))
                await self._health.update(name, False, f"failed: {exc}")
                stop_event.set()

        self._tasks[name] = asyncio.create_task(_runner(), name=f"simdevice-{name}")

    async def _start_health_server(self) -> None:
        resilience = self._config.resilience
        if not resilience.health_enabled or resilience.health_port <= 0:
            return

        server = HealthServer(
            self._health, resilience.health_host, resilience.health_port
        )
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
            await self._health.update("health-endpoint", False, str(exc))
            return

        self._health_server = server
        self._tasks["health"] = asyncio.create_task(
            self._refresh_health(), name="simdevice-health"
        )

    async def _refresh_health(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            await self._report_counters()
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=HEALTH_REFRESH_SECONDS
                )
            except asyncio.TimeoutError:
                pass

    async def _report_counters(self, detail: str = "running") -> None:
        failed = {failure.name for failure in self._failures}
        if self.uplink is not None:
            stats = self.uplink.stats
            await self._health.update(
                constants.LOOP_UPLINK,
                constants.LOOP_UPLINK not in failed,
                detail,
                counters={"sent": stats.sent, "failed": stats.failed},
            )
        if self.downlink is not None:
            stats = self.downlink.stats
            await self._health.update(
                constants.LOOP_DOWNLINK,
                constants.LOOP_DOWNLINK not in failed,
                detail,
                counters={
                    "received": stats.received,
                    "acknowledged": stats.acknowledged,
                    "ackFailures": stats.ack_failures,
                },
            )
        if self.twin is not None:
            await self._health.update(
                constants.LOOP_TWIN,
                True,
                self.twin.state.value,
                counters={"updates": self.twin.updates},
            )

    async def _transition_state(
        self, state: AgentState, *, detail: Optional[str] = None
    ) -> None:
        if state == self._state:
            return

        previous = self._state
        self._state = state
        LOGGER.info(
            "Agent state transition %s -> %s (%s)",
            previous.value,
            state.value,
            detail or state.value,
        )
        await self._health.set_agent_state(
            state.value, healthy=state == AgentState.ACTIVE, detail=detail
        )

    # -------------------------------------------------------------------------
    # Connection callbacks
    # -------------------------------------------------------------------------

    def _on_transport_disconnect(self, rc: int) -> None:
        if self._stopping or self._coordinator is None:
            return
        self._coordinator.handle_disconnect(rc)

    async def _on_connection_lost(self, reason: ReconnectReason) -> None:
        await self._transition_state(
            AgentState.RECOVERING, detail=f"transport lost ({reason.value})"
        )
        await self._health.update("transport", False, f"disconnected ({reason.value})")

    async def _on_connection_restored(self) -> None:
        await self._health.update("transport", True, None)
        await self._transition_state(AgentState.ACTIVE, detail="transport recovered")

    async def _on_reconnect_failed(self, reason: ReconnectReason) -> None:
        error = TransportConnectionError(
            f"Reconnection abandoned after {reason.value}"
        )
        self._failures.append(LoopFailure(name="transport", error=error))
        await self._health.update("transport", False, str(error))
        self.request_stop()

    async def _stop_services(self) -> None:
        await self._transition_state(AgentState.STOPPING, detail="shutdown requested")
        self._stopping = True
        if self._stop_event is not None:
            self._stop_event.set()

        if self._coordinator is not None:
            await self._coordinator.stop_supervisor()

        await self._join_tasks()
        await self._report_counters("stopped")

        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None

        if self._coordinator is not None:
            await self._coordinator.disconnect()
            await self._health.update("transport", False, "shutdown")

        await self._transition_state(AgentState.STOPPED)

    async def _join_tasks(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks = {}
        if not tasks:
            return

        timeout = self._config.loops.shutdown_timeout_seconds
        _, pending = await asyncio.wait(tasks, timeout=timeout if timeout > 0 else None)
        for task in pending:
            LOGGER.warning(
                "%s did not stop within %.1fs; cancelling", task.get_name(), timeout
            )
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    @classmethod
    def start(cls, config: Optional[DeviceConfig] = None) -> int:
        """Run the client until interrupted; returns a process exit code."""

        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
        )
        try:
            asyncio.run(instance._run_with_signals())
        except KeyboardInterrupt:
            LOGGER.info("%s received shutdown signal", constants.APP_NAME)
        except ConfigurationError as exc:
            LOGGER.error("Configuration error: %s", exc)
            return 2
        except TransportConnectionError as exc:
            LOGGER.error("Could not connect: %s", exc)
            return 1
        except LoopFailedError as exc:
            LOGGER.error("%s", exc)
            return 1
        return 0

    async def _run_with_signals(self) -> None:
        loop = asyncio.get_running_loop()
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGTERM, self.request_stop)
        await self.run()
