"""
Fixed-delay periodic execution on a dedicated thread.
"""

import threading
from collections.abc import Callable
from typing import Optional

import structlog

logger = structlog.get_logger()


class PeriodicTask:
    """
    Runs `fn` every `interval_seconds` until stopped.

    The delay is measured from the end of one cycle to the start of the next,
    so a slow cycle never overlaps the following one. Exceptions escaping `fn`
    are logged and the loop continues.
    """

    def __init__(self, name: str, interval_seconds: float, fn: Callable[[], object]):
        self.name = name
        self.interval_seconds = interval_seconds
        self.fn = fn
        self.cycles = 0
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return not self._stop_event.is_set() and (
            self._thread is None or self._thread.is_alive()
        )

    def run(self) -> None:
        """Run in the calling thread until `stop()` is called."""
        logger.info("task_starting", task=self.name, interval=self.interval_seconds)
        while not self._stop_event.is_set():
            try:
                self.fn()
            except Exception as e:
                logger.error("task_cycle_error", task=self.name, error=str(e))
            self.cycles += 1
            self._stop_event.wait(self.interval_seconds)
        logger.info("task_stopped", task=self.name, cycles=self.cycles)

    def start(self) -> threading.Thread:
        """Run on a background daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name=self.name, daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal shutdown and wait for the current cycle to finish."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
