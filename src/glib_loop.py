"""GLib main loop helpers.

The attendance session, its timers and the BlueZ signal handlers all run on
the default GLib main context. This module provides:

- ``GLibScheduler``: cancellable one-shot timers on that context.
- ``MainLoopThread``: runs the loop in a background thread and lets other
  threads (the web server) marshal calls onto it and wait for the result.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, TypeVar

from gi.repository import GLib

logger = logging.getLogger(__name__)

T = TypeVar("T")

# How long a marshalled call may wait for the main loop (seconds)
DISPATCH_TIMEOUT_SECONDS = 5.0


class GLibScheduler:
    """One-shot timers backed by ``GLib.timeout_add``."""

    def __init__(self):
        self._pending: set[int] = set()

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> int:
        source_id = 0

        def _fire() -> bool:
            self._pending.discard(source_id)
            callback(*args)
            return GLib.SOURCE_REMOVE

        source_id = GLib.timeout_add(max(int(delay * 1000), 0), _fire)
        self._pending.add(source_id)
        return source_id

    def cancel(self, handle: int) -> None:
        # Removing an already-dispatched source makes GLib emit a warning
        if handle in self._pending:
            self._pending.discard(handle)
            GLib.source_remove(handle)


class MainLoopThread:
    """Run a ``GLib.MainLoop`` in a daemon thread."""

    def __init__(self):
        self._loop = GLib.MainLoop()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._loop.run,
            name="GLibMainLoop",
            daemon=True,
        )
        self._thread.start()
        logger.info("GLib main loop running in background thread")

    def quit(self) -> None:
        self._loop.quit()
        if self._thread is not None:
            self._thread.join(timeout=DISPATCH_TIMEOUT_SECONDS)
            self._thread = None

    def call(self, fn: Callable[..., T], *args: Any, timeout: float = DISPATCH_TIMEOUT_SECONDS) -> T:
        """Run ``fn(*args)`` on the main loop and return its result.

        Exceptions raised by ``fn`` are re-raised in the calling thread. If the
        loop does not pick the call up within ``timeout`` it is abandoned and
        never runs; a call already running is waited for.
        """

        result: dict[str, Any] = {"value": None, "error": None}
        state = {"started": False, "abandoned": False}
        lock = threading.Lock()
        done = threading.Event()

        def _worker() -> bool:
            with lock:
                if state["abandoned"]:
                    return GLib.SOURCE_REMOVE
                state["started"] = True
            try:
                result["value"] = fn(*args)
            except Exception as exc:
                result["error"] = exc
            finally:
                done.set()
            return GLib.SOURCE_REMOVE

        GLib.idle_add(_worker)
        if not done.wait(timeout):
            with lock:
                if not state["started"]:
                    state["abandoned"] = True
            if state["abandoned"]:
                raise TimeoutError(f"Main loop did not run {getattr(fn, '__name__', fn)} within {timeout:.1f}s")
            done.wait()
        if result["error"] is not None:
            raise result["error"]
        return result["value"]
