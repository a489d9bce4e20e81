"""Shared plumbing for transport session adapters."""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from typing import Any, Hashable, Mapping, Optional, Set

from ..core import InboundMessage, TwinCallback

LOGGER = logging.getLogger(__name__)


class TransportError(RuntimeError):
    """Base class for transport session failures."""


class TransportConnectionError(TransportError):
    """Raised when a session cannot be established or re-established."""


class TransportSendError(TransportError):
    """Raised when an outbound message or twin patch cannot be submitted."""


class AcknowledgementError(TransportError):
    """Raised when acknowledging an unknown or already acknowledged handle."""


class InboundBuffer:
    """FIFO of device-bound messages fed from SDK callback threads.

    Messages become *pending* when handed out by :meth:`get` and stop being
    pending once :meth:`complete` is called with their handle. Messages still
    queued when the session closes are dropped with a log line by
    :meth:`drain`.
    """

    def __init__(self) -> None:
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue[InboundMessage]] = None
        self._pending: Set[Hashable] = set()
        self._sequence = itertools.count(1)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._loop is loop and self._queue is not None:
            return
        self._loop = loop
        self._queue = asyncio.Queue()

    def next_handle(self) -> int:
        return next(self._sequence)

    def put_threadsafe(
        self, payload: bytes, properties: Optional[Mapping[str, str]] = None
    ) -> None:
        """Queue a message from any thread, assigning it a fresh delivery handle."""

        loop = self._loop
        queue = self._queue
        if loop is None or queue is None:
            LOGGER.warning(
                "Dropping inbound message received before the session was bound"
            )
            return

        message = InboundMessage(
            payload=payload,
            delivery_handle=self.next_handle(),
            properties=dict(properties or {}),
        )
        loop.call_soon_threadsafe(queue.put_nowait, message)

    async def get(self, timeout: Optional[float] = None) -> Optional[InboundMessage]:
        if self._queue is None:
            raise RuntimeError("Inbound buffer not bound to an event loop")

        try:
            message = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

        self._pending.add(message.delivery_handle)
        return message

    def complete(self, handle: Hashable) -> None:
        if handle not in self._pending:
            raise AcknowledgementError(
                f"Delivery handle {handle!r} is unknown or already acknowledged"
            )
        self._pending.discard(handle)

    def drain(self) -> int:
        """Drop queued and unacknowledged messages, returning how many went."""

        dropped = len(self._pending)
        self._pending.clear()
        if self._queue is not None:
            while not self._queue.empty():
                self._queue.get_nowait()
                dropped += 1
        if dropped:
            LOGGER.warning(
                "Dropped %d inbound message(s) without acknowledgement on close",
                dropped,
            )
        return dropped


async def dispatch_twin_patch(callback: TwinCallback, patch: Mapping[str, Any]) -> None:
    """Invoke a twin callback on the application loop, logging its failures.

    The callback runs outside any caller that could handle its exceptions, so
    a failed reported-properties update ends here as an error log entry.
    """

    try:
        result = callback(patch)
        if inspect.isawaitable(result):
            await result
    except Exception:
        LOGGER.exception("Twin update callback failed")
