"""Sampling loop and remediation driver for ramguard."""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from queue import Queue
from typing import Any

from ramguard.catalog import (
    ProcessCatalog,
    PsProcessLister,
    PsutilProcessLister,
    Validation,
)
from ramguard.config import WatchdogConfig
from ramguard.detector import PressureDetector
from ramguard.executor import TerminationExecutor
from ramguard.models import DryRunPlan, KillOutcome, MemorySnapshot, ProcessCandidate
from ramguard.notify import WebhookNotifier
from ramguard.probe import MemoryProbe, ProbeError, ProcMemoryProbe, PsutilMemoryProbe
from ramguard.store import Store

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CycleReport:
    """What one sampling cycle saw and did."""

    snapshot: MemorySnapshot
    triggered: bool = False
    outcomes: list[KillOutcome] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class ManualKillResult:
    """Result of kill_by_pid: a rejection, or the termination outcome."""

    validation: Validation
    outcome: KillOutcome | None = None


class Coordinator:
    """
    Drives the periodic probe -> detect -> select -> terminate cycle.

    Runs in a separate daemon thread on a fixed-rate schedule. At most one
    cycle (and so at most one termination sequence) runs at a time; a tick
    that arrives while a cycle is in flight is skipped, never queued.
    Store and webhook calls are best-effort.
    """

    def __init__(
        self,
        config: WatchdogConfig,
        probe: MemoryProbe,
        detector: PressureDetector,
        catalog: ProcessCatalog,
        executor: TerminationExecutor,
        store: Store | None = None,
        notifier: WebhookNotifier | None = None,
        updates: Queue[CycleReport] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the Coordinator.

        Args:
            config: Runtime configuration.
            probe: Memory sampler.
            detector: Pressure state machine; only this coordinator's cycle calls it.
            catalog: Candidate enumeration and safety filters.
            executor: Signal escalation.
            store: Optional persistence collaborator.
            notifier: Optional webhook collaborator.
            updates: Optional queue receiving a CycleReport per completed cycle.
            clock: Monotonic time source for the schedule.
        """
        self.config = config
        self._probe = probe
        self._detector = detector
        self._catalog = catalog
        self._executor = executor
        self._store = store
        self._notifier = notifier
        self._updates = updates
        self._clock = clock

        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_snapshot: MemorySnapshot | None = None
        self._started_at: float | None = None
        self.skipped_ticks = 0

    @classmethod
    def from_config(
        cls,
        config: WatchdogConfig,
        store: Store | None = None,
        updates: Queue[CycleReport] | None = None,
    ) -> "Coordinator":
        """Build a coordinator with the default OS-backed collaborators."""
        probe: MemoryProbe = PsutilMemoryProbe() if config.probe_source == "psutil" else ProcMemoryProbe()
        lister = PsProcessLister() if config.process_source == "ps" else PsutilProcessLister()
        return cls(
            config,
            probe=probe,
            detector=PressureDetector(
                config.threshold, config.monitor_interval_ms, config.cooldown_base_ms
            ),
            catalog=ProcessCatalog(
                lister, config.protected_process_names, config.min_process_memory_mb
            ),
            executor=TerminationExecutor(),
            store=store,
            notifier=WebhookNotifier(config.webhook_url) if config.webhook_url else None,
            updates=updates,
        )

    @property
    def probe(self) -> MemoryProbe:
        return self._probe

    @property
    def detector(self) -> PressureDetector:
        return self._detector

    @property
    def catalog(self) -> ProcessCatalog:
        return self._catalog

    @property
    def is_running(self) -> bool:
        """Check if the sampling thread is running."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def last_snapshot(self) -> MemorySnapshot | None:
        return self._last_snapshot

    @property
    def interval(self) -> float:
        return self.config.monitor_interval_ms / 1000

    def start(self) -> None:
        """Start the sampling thread. The first cycle runs immediately."""
        if self.is_running:
            if self._stop_event.is_set():
                logger.warning("RAM monitor is still stopping; previous cycle has not finished")
            else:
                logger.warning("RAM monitor is already running")
            return

        logger.info(
            "Starting RAM monitor (interval: %dms, threshold: %s%%)",
            self.config.monitor_interval_ms,
            self.config.threshold,
        )
        # one event per loop; an old loop only ever sees its own
        self._stop_event = threading.Event()
        self._started_at = self._clock()
        self._thread = threading.Thread(
            target=self._run_loop,
            args=(self._stop_event,),
            daemon=True,
            name="Coordinator",
        )
        self._thread.start()
        self._record_event(
            "ram_monitor",
            "info",
            "RAM monitoring started",
            {"interval": self.config.monitor_interval_ms, "threshold": self.config.threshold},
        )

    def stop(self, timeout: float | None = 10.0) -> None:
        """
        Stop scheduling new cycles.

        A cycle that is already terminating a process runs to completion;
        `timeout` only bounds how long this call waits for it. If the wait
        times out the coordinator stays running (and refuses start()) until
        the cycle finishes; call stop() again to wait for it.
        """
        if self._thread is None:
            logger.warning("RAM monitor is not running")
            return

        self._stop_event.set()
        thread = self._thread
        thread.join(timeout=timeout)
        if thread.is_alive():
            logger.warning("RAM monitor stopping: remediation cycle still in flight")
            return
        self._thread = None

        uptime = self._clock() - (self._started_at or self._clock())
        logger.info("RAM monitor stopped (uptime: %ds)", round(uptime))
        self._record_event("ram_monitor", "info", "RAM monitoring stopped", {"uptime": uptime})

    def _run_loop(self, stop_event: threading.Event) -> None:
        """Fixed-rate schedule; deadlines missed during a long cycle are dropped."""
        next_tick = self._clock()
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Unexpected error in sampling cycle")

            next_tick += self.interval
            now = self._clock()
            while next_tick <= now:
                self.skipped_ticks += 1
                logger.warning("Skipping tick: previous remediation cycle still in flight")
                next_tick += self.interval

            stop_event.wait(timeout=next_tick - now)

    def tick(self) -> CycleReport | None:
        """
        Run one cycle unless another is in flight.

        Returns:
            The cycle report, or None if the tick was skipped or the probe failed.
        """
        if not self._cycle_lock.acquire(blocking=False):
            self.skipped_ticks += 1
            logger.warning("Skipping tick: previous remediation cycle still in flight")
            return None
        try:
            report = self._run_cycle()
        finally:
            self._cycle_lock.release()

        if report is not None and self._updates is not None:
            self._updates.put(report)
        return report

    def _run_cycle(self) -> CycleReport | None:
        try:
            snapshot = self._probe.sample()
        except ProbeError as exc:
            logger.error("Failed to capture RAM snapshot: %s", exc)
            self._record_event(
                "ram_monitor", "error", "Failed to capture RAM snapshot", {"error": str(exc)}
            )
            return None

        self._last_snapshot = snapshot
        if self._store is not None:
            self._best_effort(self._store.record_snapshot, snapshot)
        logger.debug(
            "RAM: %.2f%% (%.0f/%.0fMB) Load: %.2f",
            snapshot.percent,
            snapshot.used_mb,
            snapshot.total_mb,
            snapshot.load_avg[0],
        )

        report = CycleReport(snapshot=snapshot)
        if not self._detector.evaluate(snapshot):
            return report

        report.triggered = True
        logger.warning("HIGH RAM DETECTED - triggering remediation")
        state = self._detector.state
        self._record_event(
            "ram_action_triggered",
            "warning",
            f"RAM cleanup action triggered at {snapshot.percent}%",
            {
                "ram_percent": snapshot.percent,
                "threshold": self._detector.threshold,
                "used_mb": snapshot.used_mb,
                "available_mb": snapshot.available_mb,
                "cooldown_multiplier": state.multiplier,
                "next_cooldown_ms": self._detector.current_cooldown_ms(),
            },
        )

        report.outcomes = self._remediate(snapshot)
        freed = sum(o.memory_mb for o in report.outcomes if o.success)
        if self._notifier is not None:
            self._best_effort(
                self._notifier.notify_ram_spike, snapshot.percent, freed, snapshot.captured_at
            )
        return report

    def _remediate(self, snapshot: MemorySnapshot) -> list[KillOutcome]:
        if not self.config.enable_auto_kill:
            logger.warning("Auto-kill is disabled in config")
            self._record_event(
                "ram_action_skipped",
                "info",
                "Auto-kill disabled; no process terminated",
                {"ram_percent": snapshot.percent},
            )
            return []

        logger.warning("Handling high RAM situation: %.2f%%", snapshot.percent)
        killable = self._catalog.list_killable()
        if not killable:
            logger.warning("No killable processes found")
            self._record_event(
                "ram_recovery_failed",
                "error",
                "No killable processes available",
                {"ram_percent": snapshot.percent},
            )
            return []

        logger.info("Found %d killable processes", len(killable))
        reason = f"High RAM usage: {snapshot.percent}%"
        target = killable[0]
        outcome = self._executor.terminate(target, reason)
        self._record_kill(target, outcome, reason)
        return [outcome]

    def _record_kill(self, target: ProcessCandidate, outcome: KillOutcome, reason: str) -> None:
        if self._store is None:
            return
        self._best_effort(
            self._store.record_kill_outcome,
            outcome.pid,
            target.command,
            outcome.memory_mb,
            outcome.signal,
            reason,
            outcome.success,
        )
        if outcome.success:
            message = f"Killed process {outcome.pid} to free {outcome.memory_mb}MB"
        else:
            message = f"Failed to kill process {outcome.pid}"
        self._record_event(
            "process_killed",
            "warning" if outcome.success else "error",
            message,
            {
                "pid": outcome.pid,
                "command": target.command,
                "memory_mb": outcome.memory_mb,
                "signal": outcome.signal,
                "attempts": outcome.attempts,
                "error": outcome.error,
                "reason": reason,
            },
        )

    def _record_event(
        self, type: str, severity: str, message: str, metadata: dict[str, Any] | None = None
    ) -> None:
        if self._store is not None:
            self._best_effort(self._store.record_event, type, severity, message, metadata)

    @staticmethod
    def _best_effort(func: Callable[..., Any], *args: Any) -> None:
        try:
            func(*args)
        except Exception as exc:
            logger.warning("Ignoring collaborator failure in %s: %s", getattr(func, "__name__", func), exc)

    def kill_by_pid(self, pid: int, reason: str) -> ManualKillResult:
        """
        Terminate one pid on request, bypassing the detector.

        Waits for any in-flight cycle so only one termination runs at a time.
        """
        with self._cycle_lock:
            validation = self._catalog.validate(pid)
            if not validation.valid:
                logger.error("Cannot kill PID %d: %s", pid, validation.reason.value)
                return ManualKillResult(validation=validation)
            candidate = validation.candidate
            outcome = self._executor.terminate(candidate, reason)
            self._record_kill(candidate, outcome, reason)
        return ManualKillResult(validation=validation, outcome=outcome)

    def dry_run_preview(self, max_kills: int = 1) -> DryRunPlan:
        """What a remediation would target right now."""
        return self._executor.dry_run(self._catalog.list_killable(), max_kills)

    def reset_detector(self) -> None:
        with self._cycle_lock:
            self._detector.reset()

    def status(self) -> dict[str, Any]:
        """Running flag, last snapshot, detector stats and active config."""
        uptime = 0.0
        if self.is_running and self._started_at is not None:
            uptime = self._clock() - self._started_at
        return {
            "running": self.is_running,
            "stopping": self.is_running and self._stop_event.is_set(),
            "uptime_seconds": uptime,
            "cycle_in_flight": self._cycle_lock.locked(),
            "skipped_ticks": self.skipped_ticks,
            "last_snapshot": self._last_snapshot,
            "detector": self._detector.stats(),
            "config": {
                "interval_ms": self.config.monitor_interval_ms,
                "threshold": self.config.threshold,
                "cooldown_ms": self.config.cooldown_base_ms,
                "auto_kill_enabled": self.config.enable_auto_kill,
            },
        }
