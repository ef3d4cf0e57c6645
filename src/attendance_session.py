"""Attendance session: one bounded discovery window for a classroom.

The session starts a discovery source, classifies every raw sighting against
the roster, keeps the first sighting of each student in the selected
division, and stops itself after ``SCAN_DURATION_SECONDS``. When the real
source cannot start it falls back to the simulated source so the operator
still gets representative data.

All methods and callbacks are expected to run on a single main loop; there
is no locking.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from discovery_source import (
    SOURCE_REAL,
    AttendanceError,
    DiscoveryFilter,
    DiscoverySource,
    RawSighting,
    Scheduler,
    SourceUnavailable,
)
from roster import Roster

logger = logging.getLogger(__name__)

# Length of one scan window (seconds)
SCAN_DURATION_SECONDS = float(os.getenv("SCAN_DURATION_SECONDS", "10"))

# Start the simulated source next to the real one if the real scan stays silent
SIMULATE_ON_EMPTY_SCAN = os.getenv("SIMULATE_ON_EMPTY_SCAN", "false").lower() in (
    "1",
    "true",
    "yes",
)
EMPTY_SCAN_GRACE_SECONDS = float(os.getenv("EMPTY_SCAN_GRACE_SECONDS", "5"))

STOP_REASON_STOPPED = "stopped"
STOP_REASON_TIMEOUT = "timeout"


class NoDivisionSelected(AttendanceError):
    """start() was requested before a division was configured."""


class AlreadyScanning(AttendanceError):
    """The requested change is not allowed while a scan is running."""


def signal_quality(rssi: int | None) -> str:
    # 0 means the stack reported no reading
    if not rssi:
        return "medium"
    if rssi > -50:
        return "strong"
    if rssi > -70:
        return "medium"
    return "weak"


@dataclass(frozen=True)
class PresenceRecord:
    identifier: str
    name: str
    division: str | None
    rssi: int | None
    first_seen: datetime
    source: str = SOURCE_REAL

    @property
    def signal_quality(self) -> str:
        return signal_quality(self.rssi)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.identifier,
            "name": self.name,
            "division": self.division,
            "rssi": self.rssi,
            "signal": self.signal_quality,
            "firstSeen": self.first_seen.isoformat(),
            "source": self.source,
        }


PresenceCallback = Callable[[PresenceRecord], None]
CompleteCallback = Callable[[list[PresenceRecord], str], None]


class AttendanceSession:
    def __init__(
        self,
        roster: Roster,
        source: DiscoverySource,
        fallback: DiscoverySource,
        scheduler: Scheduler,
        scan_duration: float = SCAN_DURATION_SECONDS,
        require_division: bool = True,
        simulate_on_empty: bool = SIMULATE_ON_EMPTY_SCAN,
        empty_scan_grace: float = EMPTY_SCAN_GRACE_SECONDS,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._roster = roster
        self._source = source
        self._fallback = fallback
        self._scheduler = scheduler
        self._scan_duration = scan_duration
        self._require_division = require_division
        self._simulate_on_empty = simulate_on_empty
        self._empty_scan_grace = empty_scan_grace
        self._clock = clock

        self._source_available: bool | None = None
        self._configured = False
        self._division: str | None = None
        self._scanning = False
        # Bumped on every start/stop; stale timers and sightings compare against it
        self._generation = 0
        self._records: dict[str, PresenceRecord] = {}
        self._active_sources: list[DiscoverySource] = []
        self._timers: list[Any] = []
        self._on_presence: PresenceCallback | None = None
        self._on_complete: CompleteCallback | None = None
        self._started_at: datetime | None = None
        self._finished_at: datetime | None = None

    @property
    def roster(self) -> Roster:
        return self._roster

    @property
    def division(self) -> str | None:
        return self._division

    @property
    def scan_duration(self) -> float:
        return self._scan_duration

    @property
    def source_available(self) -> bool | None:
        """Result of ``initialize()``; ``None`` until the real source was probed."""
        return self._source_available

    @property
    def started_at(self) -> datetime | None:
        return self._started_at

    @property
    def finished_at(self) -> datetime | None:
        return self._finished_at

    def initialize(self) -> bool:
        """Probe the real discovery source once and remember the outcome."""
        self._source_available = bool(self._source.initialize())
        if self._source_available:
            logger.info("Bluetooth discovery available")
        else:
            logger.warning("Bluetooth unavailable, scans will use simulated sightings")
        return self._source_available

    def configure(self, division: str | None) -> None:
        """Select the division that sightings must match; ``None`` accepts all."""
        if self._scanning:
            raise AlreadyScanning("Cannot change division while scanning")
        division = division.strip() if division else None
        if division and division not in self._roster.list_divisions():
            logger.warning("Division %r has no students in the roster", division)
        self._division = division or None
        self._configured = True
        logger.info("Division filter set to %s", self._division or "<all>")

    def is_scanning(self) -> bool:
        return self._scanning

    def get_accumulated(self) -> list[PresenceRecord]:
        return list(self._records.values())

    def start(
        self,
        on_presence: PresenceCallback,
        on_complete: CompleteCallback | None = None,
    ) -> None:
        if self._scanning:
            logger.info("Already scanning")
            return
        if self._require_division and not self._configured:
            raise NoDivisionSelected("Select a division before starting attendance")
        if self._source_available is None:
            self.initialize()

        self._generation += 1
        generation = self._generation
        self._records.clear()
        self._on_presence = on_presence
        self._on_complete = on_complete
        self._started_at = self._clock()
        self._finished_at = None
        self._scanning = True

        logger.info(
            "Starting attendance scan for %s (%.1fs window)",
            self._division or "all divisions",
            self._scan_duration,
        )
        discovery_filter = DiscoveryFilter(division=self._division)

        started_real = False
        if self._source_available:
            started_real = self._start_source(self._source, discovery_filter, generation)
        if not started_real:
            logger.warning("Falling back to simulated sightings")
            self._start_source(self._fallback, discovery_filter, generation)
        elif self._simulate_on_empty:
            self._timers.append(
                self._scheduler.call_later(
                    self._empty_scan_grace, self._check_empty_scan, generation, discovery_filter
                )
            )

        self._timers.append(
            self._scheduler.call_later(self._scan_duration, self._auto_stop, generation)
        )

    def _start_source(
        self, source: DiscoverySource, discovery_filter: DiscoveryFilter, generation: int
    ) -> bool:
        try:
            source.start(discovery_filter, self._sighting_handler(generation, source.kind))
        except SourceUnavailable as e:
            logger.warning("Discovery source %s unavailable: %s", source.kind, e)
            return False
        except Exception:
            logger.exception("Discovery source %s failed to start", source.kind)
            return False
        self._active_sources.append(source)
        return True

    def _sighting_handler(self, generation: int, source_kind: str) -> Callable[[RawSighting], None]:
        def _handle(sighting: RawSighting) -> None:
            if generation != self._generation or not self._scanning:
                return
            self._handle_sighting(sighting, source_kind)

        return _handle

    def _handle_sighting(self, sighting: RawSighting, source_kind: str) -> None:
        entry = self._roster.lookup(sighting.identifier)
        if entry is None:
            logger.debug("Ignoring unknown device %s", sighting.identifier)
            return
        if entry.identifier in self._records:
            return
        if self._division is not None and entry.division != self._division:
            logger.debug(
                "Ignoring %s (%s): division %s != %s",
                entry.name,
                entry.identifier,
                entry.division,
                self._division,
            )
            return

        record = PresenceRecord(
            identifier=entry.identifier,
            name=entry.name,
            division=entry.division,
            rssi=sighting.rssi,
            first_seen=sighting.observed_at,
            source=source_kind,
        )
        self._records[entry.identifier] = record
        logger.info(
            "Found student device: %s (%s) rssi=%s source=%s",
            entry.name,
            entry.identifier,
            sighting.rssi,
            source_kind,
        )
        if self._on_presence is not None:
            try:
                self._on_presence(record)
            except Exception:
                logger.exception("Presence callback failed for %s", entry.identifier)

    def _check_empty_scan(self, generation: int, discovery_filter: DiscoveryFilter) -> None:
        if generation != self._generation or not self._scanning:
            return
        if self._records:
            return
        logger.warning(
            "No students detected after %.1fs, adding simulated sightings",
            self._empty_scan_grace,
        )
        self._start_source(self._fallback, discovery_filter, generation)

    def _auto_stop(self, generation: int) -> None:
        if generation != self._generation:
            return
        logger.info("Scan window of %.1fs elapsed", self._scan_duration)
        self._finish(STOP_REASON_TIMEOUT)

    def stop(self) -> None:
        if not self._scanning:
            return
        self._finish(STOP_REASON_STOPPED)

    def _finish(self, reason: str) -> None:
        self._generation += 1
        self._scanning = False
        for handle in self._timers:
            self._scheduler.cancel(handle)
        self._timers.clear()
        for source in self._active_sources:
            try:
                source.stop()
            except Exception:
                logger.exception("Failed to stop %s discovery source", source.kind)
        self._active_sources.clear()
        self._finished_at = self._clock()
        self._on_presence = None

        records = self.get_accumulated()
        logger.info("Attendance scan %s: found %d student(s)", reason, len(records))
        on_complete, self._on_complete = self._on_complete, None
        if on_complete is not None:
            try:
                on_complete(records, reason)
            except Exception:
                logger.exception("Completion callback failed")
