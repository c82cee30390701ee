"""Memory sampling for ramguard."""

import logging
import re
import time
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

import psutil

from ramguard.models import MemorySnapshot

logger = logging.getLogger(__name__)

_MEMINFO_LINE = re.compile(r"^(\w+):\s+(\d+)")


class ProbeError(Exception):
    """Raised when memory counters cannot be read or parsed."""


class MemoryProbe(Protocol):
    def sample(self) -> MemorySnapshot: ...


def kb_to_mb(kb: float) -> float:
    """Convert kilobytes to megabytes, rounded to 2 decimals."""
    return round(kb / 1024, 2)


def percent_of(part: float, whole: float) -> float:
    """Percentage of part in whole, rounded to 2 decimals (0 for empty whole)."""
    if whole <= 0:
        return 0.0
    return round(part / whole * 100, 2)


def parse_meminfo(text: str) -> dict[str, int]:
    """Parse /proc/meminfo text into a mapping of field name to kB."""
    fields: dict[str, int] = {}
    for line in text.splitlines():
        match = _MEMINFO_LINE.match(line)
        if match:
            fields[match.group(1)] = int(match.group(2))
    return fields


def build_snapshot(
    fields: dict[str, int],
    captured_at: datetime,
    load_avg: tuple[float, float, float] = (0.0, 0.0, 0.0),
    uptime_seconds: float = 0.0,
) -> MemorySnapshot:
    """
    Build a MemorySnapshot from meminfo-style kB counters.

    Used memory is total minus *available* (reclaimable memory counts as
    free), never total minus MemFree.
    """
    total_mb = kb_to_mb(fields.get("MemTotal", 0))
    available_mb = kb_to_mb(fields.get("MemAvailable", 0))
    used_mb = round(total_mb - available_mb, 2)

    swap_total_mb = kb_to_mb(fields.get("SwapTotal", 0))
    swap_free_mb = kb_to_mb(fields.get("SwapFree", 0))
    swap_used_mb = round(swap_total_mb - swap_free_mb, 2)

    return MemorySnapshot(
        total_mb=total_mb,
        used_mb=used_mb,
        available_mb=available_mb,
        percent=percent_of(used_mb, total_mb),
        swap_total_mb=swap_total_mb,
        swap_used_mb=swap_used_mb,
        swap_percent=percent_of(swap_used_mb, swap_total_mb),
        captured_at=captured_at,
        load_avg=load_avg,
        free_mb=kb_to_mb(fields.get("MemFree", 0)),
        buffers_mb=kb_to_mb(fields.get("Buffers", 0)),
        cached_mb=kb_to_mb(fields.get("Cached", 0)),
        swap_free_mb=swap_free_mb,
        uptime_seconds=uptime_seconds,
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProcMemoryProbe:
    """
    Memory probe reading the Linux /proc text counters.

    Only the meminfo read is fatal; load average and uptime are best-effort
    and fall back to zeros.
    """

    def __init__(
        self,
        meminfo_path: str | Path = "/proc/meminfo",
        loadavg_path: str | Path = "/proc/loadavg",
        uptime_path: str | Path = "/proc/uptime",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._meminfo_path = Path(meminfo_path)
        self._loadavg_path = Path(loadavg_path)
        self._uptime_path = Path(uptime_path)
        self._clock = clock

    def sample(self) -> MemorySnapshot:
        """Read the counters and return a snapshot, or raise ProbeError."""
        try:
            text = self._meminfo_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ProbeError(f"cannot read {self._meminfo_path}: {exc}") from exc

        fields = parse_meminfo(text)
        if fields.get("MemTotal", 0) <= 0:
            raise ProbeError(f"no usable MemTotal in {self._meminfo_path}")

        return build_snapshot(
            fields,
            captured_at=self._clock(),
            load_avg=self.load_average(),
            uptime_seconds=self.uptime(),
        )

    def load_average(self) -> tuple[float, float, float]:
        """Read the 1/5/15 minute load averages."""
        try:
            parts = self._loadavg_path.read_text(encoding="utf-8").split()
            load1, load5, load15 = (round(float(p), 2) for p in parts[:3])
        except (OSError, ValueError) as exc:
            logger.error("Failed to read %s: %s", self._loadavg_path, exc)
            return (0.0, 0.0, 0.0)
        return (load1, load5, load15)

    def uptime(self) -> float:
        """Read the system uptime in whole seconds."""
        try:
            return float(round(float(self._uptime_path.read_text(encoding="utf-8").split()[0])))
        except (OSError, ValueError, IndexError) as exc:
            logger.error("Failed to read %s: %s", self._uptime_path, exc)
            return 0.0


class PsutilMemoryProbe:
    """Memory probe built on psutil, for hosts without /proc."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock

    def sample(self) -> MemorySnapshot:
        try:
            mem = psutil.virtual_memory()
            swap = psutil.swap_memory()
        except (OSError, RuntimeError) as exc:
            raise ProbeError(f"psutil memory query failed: {exc}") from exc

        if mem.total <= 0:
            raise ProbeError("psutil reported zero total memory")

        # Feed psutil's byte counters through the same kB-based path as /proc
        fields = {
            "MemTotal": mem.total // 1024,
            "MemFree": getattr(mem, "free", 0) // 1024,
            "MemAvailable": mem.available // 1024,
            "Buffers": getattr(mem, "buffers", 0) // 1024,
            "Cached": getattr(mem, "cached", 0) // 1024,
            "SwapTotal": swap.total // 1024,
            "SwapFree": swap.free // 1024,
        }

        try:
            load_avg = tuple(round(x, 2) for x in psutil.getloadavg())
        except (OSError, AttributeError):
            load_avg = (0.0, 0.0, 0.0)

        return build_snapshot(
            fields,
            captured_at=self._clock(),
            load_avg=load_avg,  # type: ignore[arg-type]
            uptime_seconds=float(round(time.time() - psutil.boot_time())),
        )
