"""
Tests for PeriodicTask.
"""

import threading

from truth_relayer.scheduler import PeriodicTask


class TestPeriodicTask:
    """Fixed-delay loop on its own thread."""

    def test_runs_until_stopped(self) -> None:
        ran = threading.Event()
        calls: list[int] = []

        def work() -> None:
            calls.append(1)
            if len(calls) >= 3:
                ran.set()

        task = PeriodicTask("test", 0.01, work)
        thread = task.start()

        assert ran.wait(timeout=5)
        task.stop(timeout=5)

        assert not thread.is_alive()
        assert not task.is_running
        assert task.cycles >= 3

    def test_errors_do_not_stop_the_loop(self) -> None:
        done = threading.Event()
        calls: list[int] = []

        def flaky() -> None:
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("first cycle fails")
            done.set()

        task = PeriodicTask("flaky", 0.01, flaky)
        task.start()

        assert done.wait(timeout=5)
        task.stop(timeout=5)
        assert len(calls) >= 2

    def test_stop_interrupts_long_interval(self) -> None:
        started = threading.Event()
        task = PeriodicTask("slow", 3600, started.set)
        thread = task.start()

        assert started.wait(timeout=5)
        task.stop(timeout=5)

        assert not thread.is_alive()
        assert task.cycles == 1

    def test_start_is_idempotent(self) -> None:
        task = PeriodicTask("once", 3600, lambda: None)

        first = task.start()
        second = task.start()
        task.stop(timeout=5)

        assert first is second
