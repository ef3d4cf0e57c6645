"""Tests for the attendance session state machine."""
from __future__ import annotations

import random
import sys
from datetime import datetime
from pathlib import Path
import unittest
from unittest.mock import MagicMock

# Ensure src/ is importable when running the test directly
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from attendance_session import (  # noqa: E402  pylint: disable=wrong-import-position
    AlreadyScanning,
    AttendanceSession,
    NoDivisionSelected,
    signal_quality,
)
from discovery_source import SimulatedDiscoverySource  # noqa: E402
from roster import Roster  # noqa: E402
from scheduler_fakes import FakeSource, ManualScheduler  # noqa: E402


ROSTER = {
    "A": {"name": "Alice", "division": "CS-A"},
    "B": {"name": "Bob", "division": "CS-A"},
    "C": {"name": "Cara", "division": "CS-B"},
}


class AttendanceSessionTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.roster = Roster.from_mapping(ROSTER)
        self.scheduler = ManualScheduler()
        self.fallback = SimulatedDiscoverySource(
            self.roster, self.scheduler, rng=random.Random(7)
        )
        self.seen: list = []

    def make_session(self, source: FakeSource, **kwargs) -> AttendanceSession:
        kwargs.setdefault("scan_duration", 10)
        kwargs.setdefault("simulate_on_empty", False)
        return AttendanceSession(
            self.roster, source, self.fallback, self.scheduler, **kwargs
        )


class ClassificationTests(AttendanceSessionTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.source = FakeSource()
        self.session = self.make_session(self.source)

    def test_unknown_devices_are_ignored(self) -> None:
        self.session.configure(None)
        self.session.start(self.seen.append)

        self.source.emit("00:00:00:00:00:00", -40)
        self.source.emit("Z")

        self.assertEqual(self.seen, [])
        self.assertEqual(self.session.get_accumulated(), [])

    def test_first_sighting_wins(self) -> None:
        self.session.configure("CS-A")
        self.session.start(self.seen.append)

        self.source.emit("A", -60)
        self.source.emit("A", -45)
        self.source.emit("a", -30)

        self.assertEqual(len(self.seen), 1)
        records = self.session.get_accumulated()
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].rssi, -60)

    def test_division_filter_excludes_other_cohorts(self) -> None:
        self.session.configure("CS-A")
        self.session.start(self.seen.append)

        for identifier in ("C", "B", "A", "C"):
            self.source.emit(identifier, -55)

        self.assertEqual([r.identifier for r in self.seen], ["B", "A"])
        self.assertTrue(all(r.division == "CS-A" for r in self.session.get_accumulated()))

    def test_no_filter_accepts_whole_roster(self) -> None:
        self.session.configure(None)
        self.session.start(self.seen.append)

        for identifier in ("C", "B", "A"):
            self.source.emit(identifier)

        self.assertEqual([r.name for r in self.seen], ["Cara", "Bob", "Alice"])

    def test_record_fields(self) -> None:
        # Handling happens later than the radio observation
        clock = MagicMock(return_value=datetime(2026, 10, 19, 9, 0, 5))
        session = self.make_session(self.source, clock=clock)
        session.configure("CS-A")
        session.start(self.seen.append)

        self.source.emit("A", -48, observed_at=datetime(2026, 10, 19, 9, 0, 0))

        record = self.seen[0]
        self.assertEqual(record.name, "Alice")
        self.assertEqual(record.first_seen, datetime(2026, 10, 19, 9, 0, 0))
        self.assertEqual(record.source, "real")
        self.assertEqual(record.signal_quality, "strong")
        self.assertEqual(record.to_dict()["firstSeen"], "2026-10-19T09:00:00")

    def test_source_receives_empty_service_filter(self) -> None:
        self.session.configure("CS-B")
        self.session.start(self.seen.append)

        self.assertEqual(self.source.last_filter.services, ())
        self.assertEqual(self.source.last_filter.division, "CS-B")

    def test_failing_callback_does_not_break_scan(self) -> None:
        calls = []

        def _callback(record) -> None:
            calls.append(record)
            raise RuntimeError("ui went away")

        self.session.configure("CS-A")
        self.session.start(_callback)
        with self.assertLogs("attendance_session", level="ERROR"):
            self.source.emit("A")
        self.source.emit("B")

        self.assertEqual(len(calls), 2)
        self.assertEqual(len(self.session.get_accumulated()), 2)


class LifecycleTests(AttendanceSessionTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.source = FakeSource()
        self.session = self.make_session(self.source)

    def test_start_without_configure_is_refused(self) -> None:
        with self.assertRaises(NoDivisionSelected):
            self.session.start(self.seen.append)

        self.assertFalse(self.session.is_scanning())
        self.assertEqual(self.session.get_accumulated(), [])
        self.assertEqual(self.source.start_calls, 0)

    def test_start_without_division_allowed_when_not_required(self) -> None:
        session = self.make_session(self.source, require_division=False)
        session.start(self.seen.append)

        self.source.emit("C")

        self.assertTrue(session.is_scanning())
        self.assertEqual([r.identifier for r in self.seen], ["C"])

    def test_configure_while_scanning_is_rejected(self) -> None:
        self.session.configure("CS-A")
        self.session.start(self.seen.append)

        with self.assertRaises(AlreadyScanning):
            self.session.configure("CS-B")
        self.assertEqual(self.session.division, "CS-A")

    def test_duplicate_start_is_noop(self) -> None:
        self.session.configure("CS-A")
        self.session.start(self.seen.append)
        self.source.emit("A")

        self.session.start(self.seen.append)

        self.assertEqual(self.source.start_calls, 1)
        self.assertEqual(len(self.session.get_accumulated()), 1)

    def test_stop_is_idempotent_and_silences_source(self) -> None:
        complete = MagicMock()
        self.session.configure("CS-A")
        self.session.start(self.seen.append, complete)
        self.source.emit("A")

        self.session.stop()
        self.session.stop()
        # A sighting that was already queued when stop() ran
        self.source.emit("B")
        self.scheduler.advance(30)

        self.assertFalse(self.session.is_scanning())
        self.assertEqual([r.identifier for r in self.seen], ["A"])
        self.assertEqual(self.source.stop_calls, 1)
        complete.assert_called_once()
        self.assertEqual(complete.call_args.args[1], "stopped")
        self.assertEqual(self.scheduler.pending, 0)

    def test_auto_stop_after_scan_duration(self) -> None:
        complete = MagicMock()
        self.session.configure("CS-A")
        self.session.start(self.seen.append, complete)

        self.scheduler.advance(9)
        self.assertTrue(self.session.is_scanning())

        self.scheduler.advance(1)
        self.assertFalse(self.session.is_scanning())
        complete.assert_called_once_with([], "timeout")

        self.source.emit("A")
        self.assertEqual(self.seen, [])

    def test_restart_clears_previous_records(self) -> None:
        self.session.configure("CS-A")
        self.session.start(self.seen.append)
        self.source.emit("A")
        self.session.stop()
        self.assertEqual(len(self.session.get_accumulated()), 1)

        self.session.start(self.seen.append)

        self.assertEqual(self.session.get_accumulated(), [])
        self.source.emit("A")
        self.assertEqual(len(self.session.get_accumulated()), 1)

    def test_stale_timer_from_previous_run_is_ignored(self) -> None:
        self.session.configure("CS-A")
        self.session.start(self.seen.append)
        self.scheduler.advance(5)
        self.session.stop()
        self.session.start(self.seen.append)

        # First run's timer would have fired at t=10
        self.scheduler.advance(6)
        self.assertTrue(self.session.is_scanning())
        self.scheduler.advance(4)
        self.assertFalse(self.session.is_scanning())

    def test_initialize_reports_availability(self) -> None:
        self.assertIsNone(self.session.source_available)
        self.assertTrue(self.session.initialize())
        self.assertTrue(self.session.source_available)

        unavailable = self.make_session(FakeSource(available=False))
        self.assertFalse(unavailable.initialize())

    def test_started_and_finished_timestamps(self) -> None:
        self.session.configure("CS-A")
        self.session.start(self.seen.append)
        self.assertIsNotNone(self.session.started_at)
        self.assertIsNone(self.session.finished_at)

        self.session.stop()
        self.assertIsNotNone(self.session.finished_at)


class FallbackTests(AttendanceSessionTestCase):
    def test_end_to_end_with_failing_source(self) -> None:
        source = FakeSource(fail_start=True)
        session = self.make_session(source)
        session.configure("CS-A")
        session.start(self.seen.append)

        self.assertTrue(session.is_scanning())
        self.scheduler.advance(1.5)
        self.assertEqual([r.identifier for r in self.seen], ["A"])
        self.scheduler.advance(1.5)
        self.assertEqual([r.identifier for r in self.seen], ["A", "B"])
        self.assertEqual(session.get_accumulated(), self.seen)

        self.scheduler.advance(7)
        self.assertFalse(session.is_scanning())
        self.assertEqual([r.identifier for r in session.get_accumulated()], ["A", "B"])
        self.assertTrue(all(r.source == "simulated" for r in self.seen))

    def test_unexpected_start_error_falls_back_and_auto_stops(self) -> None:
        source = FakeSource(start_error=RuntimeError("adapter vanished"))
        complete = MagicMock()
        session = self.make_session(source)
        session.configure("CS-A")

        with self.assertLogs("attendance_session", level="ERROR"):
            session.start(self.seen.append, complete)

        self.assertTrue(session.is_scanning())
        self.scheduler.advance(3)
        self.assertEqual([r.identifier for r in self.seen], ["A", "B"])

        self.scheduler.advance(7)
        self.assertFalse(session.is_scanning())
        self.assertEqual(self.scheduler.pending, 0)
        self.assertEqual(source.stop_calls, 0)
        complete.assert_called_once()
        self.assertEqual(complete.call_args.args[1], "timeout")
        self.assertTrue(all(r.source == "simulated" for r in self.seen))

    def test_unavailable_source_is_never_started(self) -> None:
        source = FakeSource(available=False)
        session = self.make_session(source)
        session.configure(None)
        session.start(self.seen.append)

        self.scheduler.advance(10)

        self.assertEqual(source.start_calls, 0)
        self.assertEqual([r.identifier for r in self.seen], ["A", "B", "C"])

    def test_fallback_bounded_to_four_sightings(self) -> None:
        mapping = {f"ID{i}": {"name": f"Student {i}", "division": "Big"} for i in range(8)}
        roster = Roster.from_mapping(mapping)
        fallback = SimulatedDiscoverySource(roster, self.scheduler)
        session = AttendanceSession(
            roster, FakeSource(fail_start=True), fallback, self.scheduler, scan_duration=10
        )
        session.configure("Big")
        session.start(self.seen.append)

        self.scheduler.advance(10)

        self.assertEqual(len(self.seen), 4)
        for record in self.seen:
            self.assertEqual(record.division, "Big")
            self.assertTrue(-80 <= record.rssi <= -41)

    def test_no_emissions_after_auto_stop(self) -> None:
        session = self.make_session(FakeSource(fail_start=True), scan_duration=2)
        session.configure(None)
        session.start(self.seen.append)

        self.scheduler.advance(10)

        self.assertFalse(session.is_scanning())
        self.assertEqual([r.identifier for r in self.seen], ["A"])
        self.assertEqual(self.scheduler.pending, 0)

    def test_simulate_on_empty_scan(self) -> None:
        source = FakeSource()
        session = self.make_session(source, simulate_on_empty=True, empty_scan_grace=5)
        session.configure("CS-A")
        session.start(self.seen.append)

        self.scheduler.advance(5)
        self.assertEqual(self.seen, [])
        self.scheduler.advance(1.5)
        self.assertEqual([r.source for r in self.seen], ["simulated"])

    def test_simulate_on_empty_skipped_when_real_scan_found_students(self) -> None:
        source = FakeSource()
        session = self.make_session(source, simulate_on_empty=True, empty_scan_grace=5)
        session.configure("CS-A")
        session.start(self.seen.append)
        source.emit("B", -65)

        self.scheduler.advance(10)

        self.assertEqual([r.identifier for r in self.seen], ["B"])


class SignalQualityTests(unittest.TestCase):
    def test_buckets(self) -> None:
        self.assertEqual(signal_quality(-45), "strong")
        self.assertEqual(signal_quality(-50), "medium")
        self.assertEqual(signal_quality(-69), "medium")
        self.assertEqual(signal_quality(-70), "weak")
        self.assertEqual(signal_quality(None), "medium")
        # A zero reading means no RSSI was reported
        self.assertEqual(signal_quality(0), "medium")


if __name__ == "__main__":
    unittest.main()
