import logging
import os
from typing import Any, Callable
from dotenv import load_dotenv
from flask import Flask, request, jsonify

# Load environment variables before modules read their settings
load_dotenv()

from attendance_session import AlreadyScanning, AttendanceSession, NoDivisionSelected, PresenceRecord  # noqa: E402

logger = logging.getLogger(__name__)

WEB_HOST = os.getenv("WEB_HOST", "0.0.0.0")
WEB_PORT = int(os.getenv("WEB_PORT", "5000"))

Dispatch = Callable[..., Any]


def _direct_dispatch(fn, *args):
    return fn(*args)


def _attendance_payload(session: AttendanceSession) -> dict[str, Any]:
    return {
        "scanning": session.is_scanning(),
        "division": session.division,
        "sourceAvailable": session.source_available,
        "startedAt": session.started_at.isoformat() if session.started_at else None,
        "finishedAt": session.finished_at.isoformat() if session.finished_at else None,
        "students": [record.to_dict() for record in session.get_accumulated()],
    }


def create_app(session: AttendanceSession, dispatch: Dispatch = _direct_dispatch) -> Flask:
    """Build the HTTP adapter around one attendance session.

    ``dispatch`` runs a session call on the main loop that owns the session.
    """

    app = Flask(__name__)

    def _on_presence(record: PresenceRecord) -> None:
        logger.info("Student detected: %s is present", record.name)

    def _on_complete(records: list[PresenceRecord], reason: str) -> None:
        logger.info("Scan complete (%s): found %d students", reason, len(records))

    def _configure_and_start(division: str) -> dict[str, Any]:
        session.configure(division)
        session.start(_on_presence, _on_complete)
        return _attendance_payload(session)

    def _stop() -> dict[str, Any]:
        session.stop()
        return _attendance_payload(session)

    @app.route('/api/divisions', methods=['GET'])
    def list_divisions():
        return jsonify({"divisions": session.roster.list_divisions()}), 200

    @app.route('/api/attendance', methods=['GET'])
    def get_attendance():
        return jsonify(dispatch(_attendance_payload, session)), 200

    @app.route('/api/attendance/start', methods=['POST'])
    def start_attendance():
        data = request.get_json(silent=True) or {}
        division = (data.get('division') or "").strip()

        if not division:
            return jsonify({"error": "Please select a division first"}), 400

        try:
            payload = dispatch(_configure_and_start, division)
        except AlreadyScanning as e:
            return jsonify({"error": str(e)}), 409
        except NoDivisionSelected as e:
            return jsonify({"error": str(e)}), 400
        return jsonify(payload), 200

    @app.route('/api/attendance/stop', methods=['POST'])
    def stop_attendance():
        return jsonify(dispatch(_stop)), 200

    return app


def main() -> None:
    """Serve the attendance API with the session on a background GLib loop."""
    from attendance_tracker import build_session, configure_logging
    from glib_loop import MainLoopThread

    configure_logging()

    session = build_session()
    loop_thread = MainLoopThread()
    loop_thread.start()
    if not loop_thread.call(session.initialize):
        logger.warning("Bluetooth Unavailable: using demo mode with mock students")

    app = create_app(session, dispatch=loop_thread.call)
    try:
        app.run(host=WEB_HOST, port=WEB_PORT)
    finally:
        loop_thread.call(session.stop)
        loop_thread.quit()


if __name__ == "__main__":
    main()
