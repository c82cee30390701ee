"""Tests for escalating termination."""

import os
import signal
import subprocess
import sys

import pytest

from ramguard.executor import (
    OsSignalSender,
    PollingExitWaiter,
    PsutilExitWaiter,
    TerminationExecutor,
)

from fakes import FakeSender, make_candidate


def make_executor(sender, clock) -> TerminationExecutor:
    waiter = PollingExitWaiter(sender, clock=clock, sleep=clock.sleep)
    return TerminationExecutor(sender=sender, waiter=waiter, sleep=clock.sleep)


class TestTerminate:
    """Tests for single-process termination."""

    def test_already_exited(self, clock):
        """Test a vanished pid succeeds on SIGTERM without escalating."""
        sender = FakeSender(alive=[])
        outcome = make_executor(sender, clock).terminate(make_candidate(10), "test")

        assert outcome.success is True
        assert outcome.signal == "SIGTERM"
        assert outcome.attempts == 1
        assert sender.signals_for(10) == [signal.SIGTERM]

    def test_graceful_exit(self, clock):
        """Test a process honoring SIGTERM."""
        sender = FakeSender(alive=[10])
        outcome = make_executor(sender, clock).terminate(make_candidate(10, memory_mb=321.0), "test")

        assert outcome.success is True
        assert outcome.signal == "SIGTERM"
        assert outcome.attempts == 1
        assert outcome.memory_mb == 321.0
        assert outcome.error is None

    def test_escalates_to_sigkill(self, clock):
        """Test SIGKILL follows after the 5 second SIGTERM window."""
        sender = FakeSender(alive=[10], ignore_term=[10])
        start = clock.now

        outcome = make_executor(sender, clock).terminate(make_candidate(10), "test")

        assert outcome.success is True
        assert outcome.signal == "SIGKILL"
        assert outcome.attempts == 2
        assert sender.signals_for(10) == [signal.SIGTERM, signal.SIGKILL]
        assert clock.now - start == pytest.approx(5.0, abs=0.15)

    def test_polls_at_100ms(self, clock):
        """Test exit polling uses 100ms steps."""
        sender = FakeSender(alive=[10], ignore_term=[10])
        make_executor(sender, clock).terminate(make_candidate(10), "test")

        assert set(clock.sleeps) == {0.1}

    def test_survives_sigkill(self, clock):
        """Test failure after both windows expire."""
        sender = FakeSender(alive=[10], ignore_term=[10], unkillable=[10])
        start = clock.now

        outcome = make_executor(sender, clock).terminate(make_candidate(10), "test")

        assert outcome.success is False
        assert outcome.attempts == 2
        assert outcome.error == "did not exit after SIGKILL"
        assert clock.now - start == pytest.approx(7.0, abs=0.25)

    def test_permission_denied_does_not_escalate(self, clock):
        """Test EPERM on SIGTERM is terminal."""
        sender = FakeSender(alive=[10], denied=[10])

        outcome = make_executor(sender, clock).terminate(make_candidate(10), "test")

        assert outcome.success is False
        assert outcome.signal == "NONE"
        assert outcome.attempts == 1
        assert "permission denied" in outcome.error
        assert sender.signals_for(10) == [signal.SIGTERM]

    def test_exits_between_windows(self, clock):
        """Test a pid gone before SIGKILL counts as a SIGKILL success."""

        class VanishingSender(FakeSender):
            def send(self, pid, sig):
                if sig == signal.SIGKILL:
                    self.alive.discard(pid)
                super().send(pid, sig)

        sender = VanishingSender(alive=[10], ignore_term=[10])
        outcome = make_executor(sender, clock).terminate(make_candidate(10), "test")

        assert outcome.success is True
        assert outcome.signal == "SIGKILL"
        assert outcome.attempts == 2


class TestTerminateBatch:
    """Tests for sequential batch termination."""

    def test_stops_after_first_failure(self, clock):
        """Test the third candidate is never attempted after the second fails."""
        sender = FakeSender(alive=[1, 2, 3], denied=[2])
        candidates = [make_candidate(1), make_candidate(2), make_candidate(3)]

        outcomes = make_executor(sender, clock).terminate_batch(candidates, "test", max_kills=3)

        assert [(o.pid, o.success) for o in outcomes] == [(1, True), (2, False)]
        assert sender.signals_for(3) == []
        assert 3 in sender.alive

    def test_respects_max_kills(self, clock):
        """Test only the first max_kills candidates are processed."""
        sender = FakeSender(alive=[1, 2, 3])
        candidates = [make_candidate(1), make_candidate(2), make_candidate(3)]

        outcomes = make_executor(sender, clock).terminate_batch(candidates, "test", max_kills=2)

        assert [o.pid for o in outcomes] == [1, 2]
        assert sender.alive == {3}

    def test_paces_between_kills(self, clock):
        """Test a 500ms pause separates successive kills."""
        sender = FakeSender(alive=[1, 2, 3])
        candidates = [make_candidate(1), make_candidate(2), make_candidate(3)]

        make_executor(sender, clock).terminate_batch(candidates, "test", max_kills=3)

        assert clock.sleeps.count(0.5) == 2

    def test_empty(self, clock):
        """Test an empty batch sends nothing."""
        sender = FakeSender()
        assert make_executor(sender, clock).terminate_batch([], "test", max_kills=5) == []
        assert sender.sent == []


class TestDryRun:
    """Tests for dry-run planning."""

    def test_estimates_memory(self, clock):
        """Test [500, 300, 100] with max_kills=2 estimates 800MB."""
        sender = FakeSender(alive=[1, 2, 3])
        candidates = [
            make_candidate(1, memory_mb=500),
            make_candidate(2, memory_mb=300),
            make_candidate(3, memory_mb=100),
        ]

        plan = make_executor(sender, clock).dry_run(candidates, max_kills=2)

        assert plan.estimated_memory_mb == 800
        assert [t.pid for t in plan.targets] == [1, 2]
        assert sender.sent == []

    def test_terminate_highest_empty(self, clock):
        """Test there is nothing to terminate in an empty list."""
        assert make_executor(FakeSender(), clock).terminate_highest([], "test") is None

    def test_terminate_highest_picks_first(self, clock):
        """Test the first (largest) candidate is targeted."""
        sender = FakeSender(alive=[1, 2])
        outcome = make_executor(sender, clock).terminate_highest(
            [make_candidate(1), make_candidate(2)], "test"
        )
        assert outcome.pid == 1
        assert sender.alive == {2}


class TestPollingExitWaiter:
    """Tests for the polling exit primitive."""

    def test_times_out(self, clock):
        """Test the waiter gives up after the deadline."""
        sender = FakeSender(alive=[10])
        waiter = PollingExitWaiter(sender, clock=clock, sleep=clock.sleep)
        start = clock.now

        assert waiter.wait_for_exit(10, 2.0) is False
        assert clock.now - start == pytest.approx(2.0, abs=0.15)

    def test_returns_immediately_when_gone(self, clock):
        """Test no sleeping when the pid is already gone."""
        waiter = PollingExitWaiter(FakeSender(), clock=clock, sleep=clock.sleep)
        assert waiter.wait_for_exit(10, 2.0) is True
        assert clock.sleeps == []

    def test_exit_during_final_sleep(self, clock):
        """Test a pid that exits during the last sleep before the deadline counts as gone."""
        sender = FakeSender(alive=[10])

        def sleep(seconds):
            clock.sleep(seconds)
            if len(clock.sleeps) == 2:
                sender.alive.discard(10)

        waiter = PollingExitWaiter(sender, interval=0.25, clock=clock, sleep=sleep)

        assert waiter.wait_for_exit(10, 0.5) is True
        assert clock.sleeps == [0.25, 0.25]


class TestRealProcess:
    """Tests against a real child process."""

    def test_terminates_child(self):
        """Test a sleeping child is stopped by SIGTERM and reaped."""
        child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
        try:
            executor = TerminationExecutor(waiter=PsutilExitWaiter())
            outcome = executor.terminate(make_candidate(child.pid, "python"), "test")
            child.wait(timeout=5)
            assert outcome.success is True
            assert outcome.signal in ("SIGTERM", "SIGKILL")
            assert child.returncode is not None
        finally:
            if child.poll() is None:
                child.kill()
                child.wait()

    def test_os_sender_exists(self):
        """Test signal-0 existence checks."""
        sender = OsSignalSender()
        child = subprocess.Popen([sys.executable, "-c", "pass"])
        child.wait()
        assert sender.exists(child.pid) is False
        assert sender.exists(os.getpid()) is True
