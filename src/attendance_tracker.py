import argparse
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from dotenv import load_dotenv
from gi.repository import GLib

# Load environment variables before modules read their settings
load_dotenv()

from attendance_session import AttendanceSession, PresenceRecord  # noqa: E402
from bluez_discovery import BlueZDiscoverySource  # noqa: E402
from discovery_source import SimulatedDiscoverySource  # noqa: E402
from glib_loop import GLibScheduler  # noqa: E402
from roster import Roster, load_roster  # noqa: E402

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def configure_logging() -> None:
    """Log to a rotating file and the console."""
    log_file = os.getenv("ATTENDANCE_LOG_FILE", "attendance_tracker.log")
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=LOG_FORMAT,
        handlers=[
            # Rotate log after ~100KB, keep 1 backup
            RotatingFileHandler(log_file, maxBytes=100000, backupCount=1),
            logging.StreamHandler(),
        ],
    )


def build_session(
    roster: Roster | None = None,
    scheduler: GLibScheduler | None = None,
    scan_duration: float | None = None,
) -> AttendanceSession:
    """Wire the single attendance session used by this process."""
    if roster is None:
        roster = load_roster()
    scheduler = scheduler or GLibScheduler()
    kwargs = {}
    if scan_duration is not None:
        kwargs["scan_duration"] = scan_duration
    return AttendanceSession(
        roster,
        BlueZDiscoverySource(),
        SimulatedDiscoverySource(roster, scheduler),
        scheduler,
        **kwargs,
    )


def format_record(record: PresenceRecord) -> str:
    rssi = f"{record.rssi} dBm" if record.rssi is not None else "n/a"
    return (
        f"{record.first_seen.strftime('%H:%M:%S')}  {record.name:<20} "
        f"{record.identifier}  {rssi:>8} ({record.signal_quality}, {record.source})"
    )


def run_attendance_scan(session: AttendanceSession, division: str | None) -> list[PresenceRecord]:
    """Run one scan window on a GLib main loop and return the present students."""
    loop = GLib.MainLoop()
    result: list[PresenceRecord] = []

    def _on_presence(record: PresenceRecord) -> None:
        print(f"Student detected: {record.name} is present", flush=True)

    def _on_complete(records: list[PresenceRecord], reason: str) -> None:
        result.extend(records)
        loop.quit()

    if not session.initialize():
        print("Bluetooth unavailable: using demo mode with mock students", flush=True)

    session.configure(division)
    session.start(_on_presence, _on_complete)
    print(f"Looking for students in {division or 'all divisions'}...", flush=True)

    try:
        loop.run()
    except KeyboardInterrupt:
        logger.info("Attendance scan interrupted by user")
        session.stop()

    return result


def main(argv: list[str] | None = None) -> int:
    """Entry point for the command-line attendance scanner."""
    parser = argparse.ArgumentParser(description="Detect students present in the classroom")
    parser.add_argument("--division", default=os.getenv("ATTENDANCE_DIVISION"))
    parser.add_argument("--list-divisions", action="store_true")
    parser.add_argument("--duration", type=float, help="scan window in seconds")
    args = parser.parse_args(argv)

    configure_logging()
    session = build_session(scan_duration=args.duration)

    if args.list_divisions:
        for division in session.roster.list_divisions():
            print(division)
        return 0

    if not args.division:
        print("Please select a division first (--division or ATTENDANCE_DIVISION)", file=sys.stderr)
        return 2

    records = run_attendance_scan(session, args.division)
    print(f"Scan complete: found {len(records)} student(s)")
    for record in records:
        print(format_record(record))
    return 0


if __name__ == "__main__":
    sys.exit(main())
