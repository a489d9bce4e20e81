"""Desired-to-reported twin property echo."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from . import constants
from .core import TransportSession, TwinDelta, lookup_field, nest_value

LOGGER = logging.getLogger(__name__)


class TwinState(str, Enum):
    IDLE = "idle"
    UPDATING = "updating"


def extract_delta(desired: Mapping[str, Any], property_path: str) -> Optional[TwinDelta]:
    """Return the change to ``property_path`` carried by a desired patch, if any."""

    lookup = lookup_field(desired, property_path)
    if not lookup.present:
        return None
    return TwinDelta(property_path=property_path, value=lookup.value)


def build_reported(delta: TwinDelta, section: str) -> Dict[str, Any]:
    """Nest the echoed value under ``section``, mirroring the desired shape.

    >>> build_reported(TwinDelta("FPS", 30), "weather")
    {'weather': {'FPS': 30}}
    """

    document = nest_value(delta.property_path, delta.value)
    if not section:
        return document
    return {section: document}


class TwinSynchronizer:
    """Confirms desired-property changes by writing them back as reported.

    The value is echoed as received: it is not validated, clamped or applied
    locally.
    """

    def __init__(
        self,
        session: TransportSession,
        *,
        property_path: str = constants.DEFAULT_TWIN_FIELD,
        section: str = constants.DEFAULT_TWIN_SECTION,
    ) -> None:
        self._session = session
        self._property_path = property_path
        self._section = section
        self._registered = False
        self._in_flight = 0
        self.updates = 0

    @property
    def state(self) -> TwinState:
        # Patches are dispatched independently and may overlap.
        return TwinState.UPDATING if self._in_flight else TwinState.IDLE

    async def register(self) -> None:
        if self._registered:
            raise RuntimeError("TwinSynchronizer already registered")
        await self._session.subscribe_twin_updates(self.handle_desired)
        self._registered = True

    async def handle_desired(self, desired: Mapping[str, Any]) -> None:
        delta = extract_delta(desired, self._property_path)
        if delta is None:
            LOGGER.debug(
                "Desired patch has no %s; nothing to report", self._property_path
            )
            return

        LOGGER.info("Received desired %s: %s", delta.property_path, delta.value)
        reported = build_reported(delta, self._section)

        self._in_flight += 1
        try:
            await self._session.update_reported_properties(reported)
        finally:
            self._in_flight -= 1
        self.updates += 1
        LOGGER.info("Reported properties updated: %s", reported)
