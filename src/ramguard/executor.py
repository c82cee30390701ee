"""Escalating process termination for ramguard."""

import logging
import os
import signal
import time
from collections.abc import Callable, Sequence
from typing import Protocol

import psutil

from ramguard.models import DryRunPlan, KillOutcome, ProcessCandidate

logger = logging.getLogger(__name__)

SIGTERM_WAIT_SECONDS = 5.0
SIGKILL_WAIT_SECONDS = 2.0
POLL_INTERVAL_SECONDS = 0.1
BATCH_PACING_SECONDS = 0.5


class SignalSender(Protocol):
    def send(self, pid: int, sig: int) -> None:
        """Deliver a signal; raises ProcessLookupError or PermissionError."""
        ...

    def exists(self, pid: int) -> bool: ...


class ExitWaiter(Protocol):
    def wait_for_exit(self, pid: int, timeout: float) -> bool:
        """Return True once the pid is gone, False if it outlives the timeout."""
        ...


class OsSignalSender:
    """Signal delivery through os.kill()."""

    def send(self, pid: int, sig: int) -> None:
        os.kill(pid, sig)

    def exists(self, pid: int) -> bool:
        # Signal 0 only checks for existence
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True


class PollingExitWaiter:
    """Wait for exit by probing existence at a fixed interval."""

    def __init__(
        self,
        sender: SignalSender,
        interval: float = POLL_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._sender = sender
        self._interval = interval
        self._clock = clock
        self._sleep = sleep

    def wait_for_exit(self, pid: int, timeout: float) -> bool:
        deadline = self._clock() + timeout
        while self._clock() < deadline:
            if not self._sender.exists(pid):
                return True
            self._sleep(self._interval)
        # the pid may have exited during the last sleep
        return not self._sender.exists(pid)


class PsutilExitWaiter:
    """Wait for exit with psutil.Process.wait()."""

    def wait_for_exit(self, pid: int, timeout: float) -> bool:
        try:
            proc = psutil.Process(pid)
            proc.wait(timeout=timeout)
        except psutil.NoSuchProcess:
            return True
        except psutil.TimeoutExpired:
            return False
        return True


class TerminationExecutor:
    """
    Sends SIGTERM, then SIGKILL if needed, and confirms the process exited.

    A pid that is already gone counts as terminated. A permission failure
    ends the attempt without escalating.
    """

    def __init__(
        self,
        sender: SignalSender | None = None,
        waiter: ExitWaiter | None = None,
        sleep: Callable[[float], None] = time.sleep,
        term_timeout: float = SIGTERM_WAIT_SECONDS,
        kill_timeout: float = SIGKILL_WAIT_SECONDS,
        pacing: float = BATCH_PACING_SECONDS,
    ) -> None:
        self._sender = sender or OsSignalSender()
        self._waiter = waiter or PollingExitWaiter(self._sender, sleep=sleep)
        self._sleep = sleep
        self.term_timeout = term_timeout
        self.kill_timeout = kill_timeout
        self.pacing = pacing

    def _send(self, pid: int, sig: signal.Signals) -> str | None:
        """
        Deliver one signal.

        Returns:
            None if delivered, "gone" if the pid no longer exists, otherwise
            an error message.
        """
        try:
            self._sender.send(pid, sig)
        except ProcessLookupError:
            logger.debug("Process %d already exited", pid)
            return "gone"
        except PermissionError:
            logger.error("Permission denied to send %s to PID %d", sig.name, pid)
            return f"permission denied sending {sig.name}"
        except OSError as exc:
            logger.error("Failed to send %s to PID %d: %s", sig.name, pid, exc)
            return f"failed to send {sig.name}: {exc}"
        logger.debug("Sent %s to PID %d", sig.name, pid)
        return None

    def terminate(self, candidate: ProcessCandidate, reason: str) -> KillOutcome:
        """Terminate one process with SIGTERM -> SIGKILL escalation."""
        pid = candidate.pid
        logger.warning("Attempting to kill process: %s (PID %d) - %s", candidate.command, pid, reason)

        def outcome(sig: str, success: bool, attempts: int, error: str | None = None) -> KillOutcome:
            return KillOutcome(
                pid=pid,
                signal=sig,
                success=success,
                memory_mb=candidate.memory_mb,
                attempts=attempts,
                error=error,
            )

        sent = self._send(pid, signal.SIGTERM)
        if sent == "gone":
            return outcome("SIGTERM", True, 1)
        if sent is not None:
            return outcome("NONE", False, 1, sent)

        if self._waiter.wait_for_exit(pid, self.term_timeout):
            logger.info("Process %d (%s) terminated gracefully with SIGTERM", pid, candidate.command)
            return outcome("SIGTERM", True, 1)

        logger.warning("Process %d did not respond to SIGTERM, escalating...", pid)
        sent = self._send(pid, signal.SIGKILL)
        if sent == "gone":
            return outcome("SIGKILL", True, 2)
        if sent is not None:
            return outcome("NONE", False, 2, sent)

        if self._waiter.wait_for_exit(pid, self.kill_timeout):
            logger.info("Process %d (%s) killed with SIGKILL", pid, candidate.command)
            return outcome("SIGKILL", True, 2)

        logger.error("Process %d did not exit after SIGKILL", pid)
        return outcome("SIGKILL", False, 2, "did not exit after SIGKILL")

    def terminate_batch(
        self,
        candidates: Sequence[ProcessCandidate],
        reason: str,
        max_kills: int = 1,
    ) -> list[KillOutcome]:
        """
        Terminate up to `max_kills` candidates in order, one at a time.

        Stops after the first failed outcome; later candidates are never
        touched.
        """
        targets = list(candidates[: max(0, max_kills)])
        logger.info("Killing %d process(es): %s", len(targets), reason)

        outcomes: list[KillOutcome] = []
        for index, candidate in enumerate(targets):
            if index > 0:
                self._sleep(self.pacing)
            result = self.terminate(candidate, reason)
            outcomes.append(result)
            if not result.success:
                logger.warning("Stopping kill sequence due to failure")
                break
        return outcomes

    def terminate_highest(
        self, candidates: Sequence[ProcessCandidate], reason: str
    ) -> KillOutcome | None:
        """Terminate the first (largest) candidate, if any."""
        if not candidates:
            logger.warning("No processes available to kill")
            return None
        target = candidates[0]
        logger.warning(
            "Target selected: %s (PID %d) using %.2fMB (%.2f%%)",
            target.command,
            target.pid,
            target.memory_mb,
            target.memory_percent,
        )
        return self.terminate(target, reason)

    @staticmethod
    def dry_run(candidates: Sequence[ProcessCandidate], max_kills: int = 1) -> DryRunPlan:
        """What terminate_batch would target, without sending any signal."""
        targets = list(candidates[: max(0, max_kills)])
        return DryRunPlan(
            targets=targets,
            estimated_memory_mb=round(sum(t.memory_mb for t in targets), 2),
        )
