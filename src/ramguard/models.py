"""Data models for ramguard."""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(slots=True, frozen=True)
class MemorySnapshot:
    """Immutable snapshot of host memory state."""

    total_mb: float
    used_mb: float  # total - available
    available_mb: float
    percent: float  # 0.0 - 100.0, from available memory
    swap_total_mb: float
    swap_used_mb: float
    swap_percent: float
    captured_at: datetime
    load_avg: tuple[float, float, float] = (0.0, 0.0, 0.0)
    free_mb: float = 0.0
    buffers_mb: float = 0.0
    cached_mb: float = 0.0
    swap_free_mb: float = 0.0
    uptime_seconds: float = 0.0


@dataclass(slots=True, frozen=True)
class ProcessCandidate:
    """Immutable view of a user process that may be terminated."""

    pid: int
    user: str
    memory_mb: float  # RSS
    memory_percent: float
    cpu_percent: float
    command: str
    full_command: str
    ppid: int
    state: str  # 'R', 'S', 'Z', 'T', 'X', etc.


@dataclass(slots=True, frozen=True)
class DetectionEvent:
    """One evaluation of the pressure detector."""

    timestamp: float
    percent: float
    threshold: float
    consecutive_count: int
    action_taken: bool


@dataclass(slots=True, frozen=True)
class KillOutcome:
    """Result of terminating a single process."""

    pid: int
    signal: str  # 'SIGTERM', 'SIGKILL' or 'NONE'
    success: bool
    memory_mb: float
    attempts: int
    error: str | None = None


@dataclass(slots=True, frozen=True)
class DryRunPlan:
    """Processes that would be terminated and the memory they hold."""

    targets: list[ProcessCandidate] = field(default_factory=list)
    estimated_memory_mb: float = 0.0
