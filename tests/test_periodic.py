"""Tests for the stop token and periodic tasks."""

import threading

from periodic import PeriodicTask, StopToken


class TestStopToken:
    def test_latch_reports_first_stop_only(self):
        token = StopToken()
        assert not token.is_stopped()
        assert token.stop() is True
        assert token.stop() is False
        assert token.is_stopped()

    def test_wait_times_out_while_running(self):
        assert StopToken().wait(0.01) is False

    def test_wait_wakes_all_waiters(self):
        token = StopToken()
        woken = []

        def waiter():
            token.wait()
            woken.append(True)

        threads = [threading.Thread(target=waiter) for _ in range(3)]
        for t in threads:
            t.start()
        token.stop()
        for t in threads:
            t.join(timeout=2)
        assert woken == [True, True, True]


class TestPeriodicTask:
    def test_runs_until_stopped(self):
        token = StopToken()
        calls = []

        def work():
            calls.append(1)
            if len(calls) == 3:
                token.stop()

        task = PeriodicTask("test", 0.001, token, work).start()
        assert task.join(timeout=2)
        assert len(calls) == 3

    def test_failures_are_retried_next_tick(self):
        token = StopToken()
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise RuntimeError("transient")
            token.stop()

        task = PeriodicTask("flaky", 0.001, token, flaky).start()
        assert task.join(timeout=2)
        assert len(calls) == 3

    def test_stop_does_not_interrupt_running_call(self):
        token = StopToken()
        started = threading.Event()
        finished = []

        def slow():
            started.set()
            threading.Event().wait(0.1)
            finished.append(True)

        task = PeriodicTask("slow", 10, token, slow).start()
        started.wait(timeout=2)
        token.stop()
        assert task.join(timeout=2)
        assert finished == [True]
