"""Discovery sources that feed raw beacon sightings into an attendance session.

Two variants share one surface:

- ``BlueZDiscoverySource`` (``bluez_discovery``): real Bluetooth discovery.
- ``SimulatedDiscoverySource``: scripted, staggered sightings drawn from the
  roster, used when the radio is unavailable.

Sources never decide relevance; the session classifies every sighting
against the roster.
"""

from __future__ import annotations

import logging
import os
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Protocol

from roster import Roster

logger = logging.getLogger(__name__)

# Simulated source tuning
SIMULATED_MAX_SIGHTINGS = int(os.getenv("SIMULATED_MAX_SIGHTINGS", "4"))
SIMULATED_INTERVAL_SECONDS = float(os.getenv("SIMULATED_INTERVAL_SECONDS", "1.5"))
# Near-range RSSI band (dBm, inclusive)
SIMULATED_RSSI_MIN = int(os.getenv("SIMULATED_RSSI_MIN", "-80"))
SIMULATED_RSSI_MAX = int(os.getenv("SIMULATED_RSSI_MAX", "-41"))

SOURCE_REAL = "real"
SOURCE_SIMULATED = "simulated"


class AttendanceError(Exception):
    """Base class for attendance tracking errors."""


class SourceUnavailable(AttendanceError):
    """The discovery source could not be initialized or started."""


@dataclass(frozen=True)
class RawSighting:
    identifier: str
    rssi: int | None = None
    observed_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class DiscoveryFilter:
    """What the session asks a source to look for.

    ``services`` stays empty in practice: discover everything and let the
    roster narrow it down.
    """

    division: str | None = None
    services: tuple[str, ...] = ()


SightingCallback = Callable[[RawSighting], None]


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> Any:
        ...

    def cancel(self, handle: Any) -> None:
        ...


class DiscoverySource:
    """Capability surface shared by the real and simulated sources."""

    kind = SOURCE_REAL

    def initialize(self) -> bool:
        raise NotImplementedError

    def start(self, discovery_filter: DiscoveryFilter, on_raw_sighting: SightingCallback) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        raise NotImplementedError


class SimulatedDiscoverySource(DiscoverySource):
    """Emits up to ``max_sightings`` roster devices at staggered intervals."""

    kind = SOURCE_SIMULATED

    def __init__(
        self,
        roster: Roster,
        scheduler: Scheduler,
        max_sightings: int = SIMULATED_MAX_SIGHTINGS,
        interval: float = SIMULATED_INTERVAL_SECONDS,
        rssi_range: tuple[int, int] = (SIMULATED_RSSI_MIN, SIMULATED_RSSI_MAX),
        rng: random.Random | None = None,
    ):
        self._roster = roster
        self._scheduler = scheduler
        self._max_sightings = max_sightings
        self._interval = interval
        self._rssi_range = rssi_range
        self._rng = rng or random.Random()
        self._handles: list[Any] = []

    def initialize(self) -> bool:
        return True

    @property
    def pending(self) -> int:
        return len(self._handles)

    def start(self, discovery_filter: DiscoveryFilter, on_raw_sighting: SightingCallback) -> None:
        self.stop()
        candidates = self._roster.entries(discovery_filter.division)[: max(self._max_sightings, 0)]
        logger.info(
            "Simulating %d sighting(s) for division %s every %.1fs",
            len(candidates),
            discovery_filter.division or "<all>",
            self._interval,
        )
        for index, entry in enumerate(candidates):
            handle = self._scheduler.call_later(
                (index + 1) * self._interval,
                self._emit,
                entry.identifier,
                on_raw_sighting,
            )
            self._handles.append(handle)

    def _emit(self, identifier: str, on_raw_sighting: SightingCallback) -> None:
        # Handles fire in order, so the head is the one that just ran
        if self._handles:
            self._handles.pop(0)
        rssi = self._rng.randint(*self._rssi_range)
        logger.debug("Simulated sighting %s (rssi=%s)", identifier, rssi)
        on_raw_sighting(RawSighting(identifier, rssi))

    def stop(self) -> None:
        if not self._handles:
            return
        for handle in self._handles:
            self._scheduler.cancel(handle)
        logger.debug("Cancelled %d pending simulated sighting(s)", len(self._handles))
        self._handles.clear()
