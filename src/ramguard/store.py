"""SQLite persistence for snapshots, kills and events."""

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Protocol

from ramguard.models import MemorySnapshot

logger = logging.getLogger(__name__)

SEVERITIES = ("info", "warning", "error")

SCHEMA = """
CREATE TABLE IF NOT EXISTS system_stats (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    ram_total_mb REAL NOT NULL,
    ram_used_mb REAL NOT NULL,
    ram_available_mb REAL NOT NULL,
    ram_percent REAL NOT NULL,
    swap_total_mb REAL,
    swap_used_mb REAL,
    created_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_system_stats_created_at ON system_stats(created_at DESC);

CREATE TABLE IF NOT EXISTS killed_processes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pid INTEGER NOT NULL,
    name TEXT NOT NULL,
    memory_mb REAL NOT NULL,
    signal TEXT NOT NULL,
    reason TEXT NOT NULL,
    success INTEGER NOT NULL DEFAULT 1,
    created_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_killed_processes_created_at ON killed_processes(created_at DESC);

CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    severity TEXT NOT NULL CHECK(severity IN ('info', 'warning', 'error')),
    message TEXT NOT NULL,
    metadata TEXT,
    created_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_events_created_at ON events(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_events_type ON events(type);
"""


class Store(Protocol):
    def record_snapshot(self, snapshot: MemorySnapshot) -> None: ...

    def record_kill_outcome(
        self, pid: int, name: str, memory_mb: float, signal: str, reason: str, success: bool
    ) -> None: ...

    def record_event(
        self, type: str, severity: str, message: str, metadata: dict[str, Any] | None = None
    ) -> None: ...


def _now_ms() -> int:
    return int(time.time() * 1000)


class SqliteStore:
    """
    Store backed by a single sqlite3 connection.

    The connection is shared between the sampling thread and callers such as
    the dashboard, so every statement runs under a lock.
    """

    def __init__(self, path: str | Path = ":memory:") -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock, self._conn:
            if self.path != ":memory:":
                self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.execute("PRAGMA synchronous = NORMAL")
            self._conn.executescript(SCHEMA)
        logger.info("Database initialized: %s", self.path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _execute(self, sql: str, params: tuple = ()) -> None:
        with self._lock, self._conn:
            self._conn.execute(sql, params)

    def _query(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(row) for row in self._conn.execute(sql, params).fetchall()]

    def record_snapshot(self, snapshot: MemorySnapshot) -> None:
        self._execute(
            "INSERT INTO system_stats (ram_total_mb, ram_used_mb, ram_available_mb, ram_percent,"
            " swap_total_mb, swap_used_mb, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                snapshot.total_mb,
                snapshot.used_mb,
                snapshot.available_mb,
                snapshot.percent,
                snapshot.swap_total_mb,
                snapshot.swap_used_mb,
                int(snapshot.captured_at.timestamp() * 1000),
            ),
        )

    def record_kill_outcome(
        self, pid: int, name: str, memory_mb: float, signal: str, reason: str, success: bool
    ) -> None:
        self._execute(
            "INSERT INTO killed_processes (pid, name, memory_mb, signal, reason, success, created_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?)",
            (pid, name, memory_mb, signal, reason, 1 if success else 0, _now_ms()),
        )

    def record_event(
        self, type: str, severity: str, message: str, metadata: dict[str, Any] | None = None
    ) -> None:
        if severity not in SEVERITIES:
            raise ValueError(f"unknown severity: {severity}")
        self._execute(
            "INSERT INTO events (type, severity, message, metadata, created_at) VALUES (?, ?, ?, ?, ?)",
            (
                type,
                severity,
                message,
                json.dumps(metadata) if metadata is not None else None,
                _now_ms(),
            ),
        )

    def recent_snapshots(self, limit: int = 100) -> list[dict[str, Any]]:
        return self._query(
            "SELECT * FROM system_stats ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)
        )

    def killed_processes(self, limit: int = 50) -> list[dict[str, Any]]:
        return self._query(
            "SELECT * FROM killed_processes ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)
        )

    def recent_events(self, limit: int = 50, type: str | None = None) -> list[dict[str, Any]]:
        if type is None:
            rows = self._query(
                "SELECT * FROM events ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)
            )
        else:
            rows = self._query(
                "SELECT * FROM events WHERE type = ? ORDER BY created_at DESC, id DESC LIMIT ?",
                (type, limit),
            )
        for row in rows:
            row["metadata"] = json.loads(row["metadata"]) if row["metadata"] else None
        return rows

    def snapshot_stats(self, minutes: int = 60) -> dict[str, Any]:
        """Aggregate memory usage over the last `minutes`."""
        cutoff = _now_ms() - minutes * 60 * 1000
        row = self._query(
            "SELECT AVG(ram_percent) AS avg_percent, MAX(ram_percent) AS max_percent,"
            " MIN(ram_percent) AS min_percent, AVG(ram_used_mb) AS avg_used_mb,"
            " COUNT(*) AS sample_count FROM system_stats WHERE created_at > ?",
            (cutoff,),
        )[0]
        return {
            "period_minutes": minutes,
            "average_percent": round(row["avg_percent"] or 0.0, 2),
            "max_percent": round(row["max_percent"] or 0.0, 2),
            "min_percent": round(row["min_percent"] or 0.0, 2),
            "average_used_mb": round(row["avg_used_mb"] or 0.0, 2),
            "sample_count": row["sample_count"],
        }

    def kill_stats(self, days: int = 7) -> dict[str, Any]:
        """Kill counts and freed memory over the last `days`."""
        cutoff = _now_ms() - days * 24 * 60 * 60 * 1000
        row = self._query(
            "SELECT COUNT(*) AS total_killed, SUM(memory_mb) AS total_memory_freed,"
            " SUM(CASE WHEN success = 1 THEN 1 ELSE 0 END) AS successful_kills,"
            " SUM(CASE WHEN signal = 'SIGTERM' THEN 1 ELSE 0 END) AS sigterm_kills,"
            " SUM(CASE WHEN signal = 'SIGKILL' THEN 1 ELSE 0 END) AS sigkill_kills"
            " FROM killed_processes WHERE created_at > ?",
            (cutoff,),
        )[0]
        total = row["total_killed"] or 0
        successful = row["successful_kills"] or 0
        return {
            "total_killed": total,
            "total_memory_freed_mb": round(row["total_memory_freed"] or 0.0, 2),
            "successful_kills": successful,
            "failed_kills": total - successful,
            "sigterm_kills": row["sigterm_kills"] or 0,
            "sigkill_kills": row["sigkill_kills"] or 0,
        }
