"""Stateful memory pressure detection for ramguard."""

import logging
import random
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from ramguard.models import DetectionEvent, MemorySnapshot

logger = logging.getLogger(__name__)

MAX_MULTIPLIER = 8
MAX_COOLDOWN_MS = 30 * 60 * 1000
JITTER_RATIO = 0.1
HISTORY_SIZE = 100


def required_consecutive(monitor_interval_ms: float) -> int:
    """
    Number of back-to-back breaches needed before acting.

    Short sampling intervals need more confirmations to cover a similar
    wall-clock window.
    """
    if monitor_interval_ms < 3000:
        return 5
    if monitor_interval_ms < 7000:
        return 3
    return 2


def cooldown_duration(base_ms: float, multiplier: int, jitter: float = 0.0) -> float:
    """
    Cooldown length in milliseconds for a given backoff multiplier.

    Args:
        base_ms: Base cooldown in milliseconds.
        multiplier: Backoff multiplier (1..8).
        jitter: Relative jitter in [-0.1, 0.1] applied after capping.
    """
    capped = min(base_ms * 2 ** (multiplier - 1), MAX_COOLDOWN_MS)
    return capped * (1 + jitter)


@dataclass(slots=True)
class DetectorState:
    """Mutable detector state, owned by a single PressureDetector."""

    consecutive_count: int = 0
    in_cooldown: bool = False
    multiplier: int = 1
    last_trigger: float | None = None  # clock seconds
    jitter: float = 0.0


class PressureDetector:
    """
    Threshold / cooldown state machine over a stream of memory snapshots.

    States are Normal, Accumulating (counter > 0) and Cooldown. Every
    trigger doubles the backoff multiplier (capped at 8); every recovery
    sample halves it again (floored at 1).

    Not thread-safe: only the coordinator's cycle may call evaluate().
    """

    def __init__(
        self,
        threshold: float,
        monitor_interval_ms: float,
        cooldown_base_ms: float,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self.threshold = threshold
        self.monitor_interval_ms = monitor_interval_ms
        self.cooldown_base_ms = cooldown_base_ms
        self._clock = clock
        self._rng = rng or random.Random()
        self._state = DetectorState()
        self._history: deque[DetectionEvent] = deque(maxlen=HISTORY_SIZE)

    @property
    def state(self) -> DetectorState:
        """A copy of the current detector state."""
        return replace(self._state)

    @property
    def required(self) -> int:
        return required_consecutive(self.monitor_interval_ms)

    def current_cooldown_ms(self) -> float:
        """Cooldown window for the current multiplier and drawn jitter."""
        return cooldown_duration(self.cooldown_base_ms, self._state.multiplier, self._state.jitter)

    def evaluate(self, snapshot: MemorySnapshot) -> bool:
        """
        Feed one snapshot and decide whether remediation should fire now.

        Returns:
            True exactly when the caller should act on this snapshot.
        """
        state = self._state
        percent = snapshot.percent

        if percent <= self.threshold:
            if state.consecutive_count > 0:
                logger.info(
                    "RAM back to normal: %.2f%% (was high for %d cycles)",
                    percent,
                    state.consecutive_count,
                )
            state.consecutive_count = 0
            if state.multiplier > 1:
                state.multiplier = max(1, state.multiplier // 2)
                logger.debug("Cooldown multiplier reduced to %d", state.multiplier)
            self._record(percent, action_taken=False)
            return False

        state.consecutive_count += 1
        logger.warning(
            "RAM threshold exceeded: %.2f%% > %.2f%% (consecutive: %d)",
            percent,
            self.threshold,
            state.consecutive_count,
        )

        if state.in_cooldown:
            elapsed_ms = self._elapsed_ms()
            window_ms = self.current_cooldown_ms()
            if elapsed_ms < window_ms:
                logger.debug("In cooldown period: %ds remaining", round((window_ms - elapsed_ms) / 1000))
                self._record(percent, action_taken=False)
                return False
            state.in_cooldown = False
            logger.info("Cooldown period expired, ready for action")

        required = self.required
        if state.consecutive_count >= required:
            logger.warning(
                "RAM pressure confirmed after %d consecutive detections",
                state.consecutive_count,
            )
            self._fire(percent)
            return True

        logger.debug(
            "Need %d more consecutive detections before taking action",
            required - state.consecutive_count,
        )
        self._record(percent, action_taken=False)
        return False

    def _fire(self, percent: float) -> None:
        state = self._state
        state.last_trigger = self._clock()
        state.in_cooldown = True
        state.multiplier = min(MAX_MULTIPLIER, state.multiplier * 2)
        state.jitter = self._rng.uniform(-JITTER_RATIO, JITTER_RATIO)
        logger.warning("Action triggered! Cooldown multiplier: %dx", state.multiplier)
        # The event keeps the count that confirmed the breach
        self._record(percent, action_taken=True)
        state.consecutive_count = 0

    def _elapsed_ms(self) -> float:
        if self._state.last_trigger is None:
            return float("inf")
        return (self._clock() - self._state.last_trigger) * 1000

    def _record(self, percent: float, action_taken: bool) -> None:
        self._history.append(
            DetectionEvent(
                timestamp=self._clock(),
                percent=percent,
                threshold=self.threshold,
                consecutive_count=self._state.consecutive_count,
                action_taken=action_taken,
            )
        )

    def can_trigger(self) -> bool:
        """Whether an action is currently permitted. Does not mutate state."""
        if not self._state.in_cooldown:
            return True
        return self._elapsed_ms() >= self.current_cooldown_ms()

    def reset(self) -> None:
        """Manually clear the counter, backoff and cooldown."""
        logger.info("Cooldown manually reset")
        self._state.consecutive_count = 0
        self._state.multiplier = 1
        self._state.in_cooldown = False

    def history(self, limit: int = 50) -> list[DetectionEvent]:
        """Most recent detection events, oldest first."""
        if limit <= 0:
            return []
        return list(self._history)[-limit:]

    def stats(self) -> dict[str, Any]:
        """Detector statistics for status displays."""
        now = self._clock()
        state = self._state
        hour_ago = now - 3600
        recent = [e for e in self._history if e.timestamp > hour_ago]
        remaining_ms = None
        if state.in_cooldown:
            remaining_ms = max(0.0, self.current_cooldown_ms() - self._elapsed_ms())

        return {
            "consecutive_count": state.consecutive_count,
            "required_consecutive": self.required,
            "in_cooldown": state.in_cooldown,
            "cooldown_multiplier": state.multiplier,
            "last_trigger": state.last_trigger,
            "seconds_since_last_trigger": (
                now - state.last_trigger if state.last_trigger is not None else None
            ),
            "cooldown_remaining_ms": remaining_ms,
            "can_trigger": self.can_trigger(),
            "history": {
                "total": len(self._history),
                "last_hour": len(recent),
                "actions_last_hour": sum(1 for e in recent if e.action_taken),
            },
        }
