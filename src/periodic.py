"""
Stop token and periodic worker threads for the monitoring phase.
"""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class StopToken:
    """One-way latch shared by the main flow and every periodic task."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()

    def stop(self) -> bool:
        """Raise the latch. Returns True only for the call that raised it."""
        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            return True

    def is_stopped(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stopped or timeout elapses. Returns is_stopped()."""
        return self._event.wait(timeout)


class PeriodicTask:
    """
    Runs ``fn`` every ``period`` seconds on its own thread until the token stops.

    Exceptions from ``fn`` are logged and the call is simply repeated on the
    next tick. Stopping never interrupts a call already in progress.
    """

    def __init__(self, name: str, period: float, stop: StopToken, fn: Callable[[], None]):
        self.name = name
        self.period = period
        self._stop = stop
        self._fn = fn
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> "PeriodicTask":
        self._thread.start()
        logger.debug("%s task started (period %.1fs)", self.name, self.period)
        return self

    def _run(self) -> None:
        while True:
            try:
                self._fn()
            except Exception:
                logger.exception("%s task failed", self.name)
            if self._stop.wait(self.period):
                break
        logger.debug("%s task exited", self.name)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the loop to exit. Returns False if still running after timeout."""
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def is_alive(self) -> bool:
        return self._thread.is_alive()
