"""Process enumeration and kill-safety filtering for ramguard."""

import getpass
import logging
import os
import subprocess
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import psutil

from ramguard.models import ProcessCandidate

logger = logging.getLogger(__name__)

SHELL_NAMES = frozenset({"bash", "zsh", "fish", "sh", "dash", "ksh", "tcsh"})

# Z = zombie, T = stopped, X = dead
CRITICAL_STATES = ("Z", "T", "X")

PS_COLUMNS = "pid,user,%mem,%cpu,vsz,rss,ppid,stat,comm,args"

# psutil status -> ps STAT code
_PSUTIL_STATES = {
    psutil.STATUS_RUNNING: "R",
    psutil.STATUS_SLEEPING: "S",
    psutil.STATUS_DISK_SLEEP: "D",
    psutil.STATUS_STOPPED: "T",
    psutil.STATUS_TRACING_STOP: "t",
    psutil.STATUS_ZOMBIE: "Z",
    psutil.STATUS_DEAD: "X",
    psutil.STATUS_IDLE: "I",
}


class CatalogError(Exception):
    """Raised by a process lister when enumeration fails."""


class RejectReason(Enum):
    """Why a pid may not be terminated on request."""

    NOT_FOUND = "not-found"
    WRONG_OWNER = "wrong-owner"
    PROTECTED = "protected"
    IS_SELF_OR_PARENT = "is-self-or-parent"


@dataclass(slots=True, frozen=True)
class Validation:
    """Result of re-resolving a single pid for a manual kill."""

    candidate: ProcessCandidate | None = None
    reason: RejectReason | None = None

    @property
    def valid(self) -> bool:
        return self.reason is None and self.candidate is not None


class ProcessLister(Protocol):
    def list_processes(self, user: str) -> list[ProcessCandidate]: ...

    def lookup(self, pid: int) -> ProcessCandidate | None: ...


def parse_ps_line(line: str) -> ProcessCandidate | None:
    """
    Parse one line of `ps -o pid,user,%mem,%cpu,vsz,rss,ppid,stat,comm,args`.

    Everything after the ninth column is the full command line; when it is
    missing the short command name is used instead.

    Returns:
        The parsed candidate, or None for short or blank lines.

    Raises:
        ValueError: If a numeric column does not parse.
    """
    parts = line.split()
    if len(parts) < 9:
        return None

    rss_kb = int(parts[5])
    command = parts[8]
    return ProcessCandidate(
        pid=int(parts[0]),
        user=parts[1],
        memory_mb=round(rss_kb / 1024, 2),
        memory_percent=round(float(parts[2]), 2),
        cpu_percent=round(float(parts[3]), 2),
        command=command,
        full_command=" ".join(parts[9:]) or command,
        ppid=int(parts[6]),
        state=parts[7],
    )


def parse_ps_output(output: str) -> list[ProcessCandidate]:
    """Parse full ps output, skipping lines that do not parse."""
    processes: list[ProcessCandidate] = []
    for line in output.splitlines():
        if not line.strip():
            continue
        try:
            parsed = parse_ps_line(line)
        except ValueError:
            logger.debug("Failed to parse ps line: %s", line)
            continue
        if parsed is not None:
            processes.append(parsed)
    return processes


class PsProcessLister:
    """Process lister that shells out to the `ps` utility."""

    def __init__(self, executable: str = "ps", timeout: float = 10.0) -> None:
        self._executable = executable
        self._timeout = timeout

    def _run(self, selector: list[str]) -> str:
        args = [self._executable, *selector, "-o", PS_COLUMNS, "--no-headers", "--sort", "-%mem"]
        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise CatalogError(f"{self._executable} failed to run: {exc}") from exc

        if result.returncode == 0:
            return result.stdout
        # ps exits 1 with empty output when the selector matches nothing
        if result.returncode == 1 and not result.stdout.strip() and not result.stderr.strip():
            return ""
        raise CatalogError(
            f"{self._executable} exited with status {result.returncode}: {result.stderr.strip()}"
        )

    def list_processes(self, user: str) -> list[ProcessCandidate]:
        return parse_ps_output(self._run(["-u", user]))

    def lookup(self, pid: int) -> ProcessCandidate | None:
        try:
            matches = parse_ps_output(self._run(["-p", str(pid)]))
        except CatalogError as exc:
            logger.debug("Lookup of PID %d failed: %s", pid, exc)
            return None
        return next((p for p in matches if p.pid == pid), None)


class PsutilProcessLister:
    """
    Process lister built on psutil.process_iter().

    Processes that vanish or deny access mid-iteration are skipped.
    """

    ATTRS = [
        "pid",
        "name",
        "username",
        "status",
        "cpu_percent",
        "memory_percent",
        "memory_info",
        "ppid",
        "cmdline",
    ]

    def list_processes(self, user: str) -> list[ProcessCandidate]:
        processes: list[ProcessCandidate] = []
        try:
            iterator = psutil.process_iter(attrs=self.ATTRS)
            for proc in iterator:
                info = proc.info
                if info.get("username") != user:
                    continue
                processes.append(self._to_candidate(info))
        except psutil.Error as exc:
            raise CatalogError(f"process enumeration failed: {exc}") from exc
        return processes

    def lookup(self, pid: int) -> ProcessCandidate | None:
        try:
            proc = psutil.Process(pid)
            with proc.oneshot():
                info = proc.as_dict(attrs=self.ATTRS)
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return None
        return self._to_candidate(info)

    @staticmethod
    def _to_candidate(info: dict[str, Any]) -> ProcessCandidate:
        name = info.get("name") or ""
        cmdline = info.get("cmdline") or []
        mem_info = info.get("memory_info")
        rss_kb = (mem_info.rss // 1024) if mem_info else 0
        return ProcessCandidate(
            pid=info.get("pid", 0),
            user=info.get("username") or "",
            memory_mb=round(rss_kb / 1024, 2),
            memory_percent=round(info.get("memory_percent") or 0.0, 2),
            cpu_percent=round(info.get("cpu_percent") or 0.0, 2),
            command=name,
            full_command=" ".join(cmdline) if cmdline else name,
            ppid=info.get("ppid") or 0,
            state=_PSUTIL_STATES.get(info.get("status"), "?"),
        )


class ProcessCatalog:
    """
    Enumerates the current user's processes and decides which are safe to kill.

    Candidates are produced fresh on every call; nothing is cached between
    remediation cycles.
    """

    def __init__(
        self,
        lister: ProcessLister,
        protected_names: Iterable[str] = (),
        min_memory_mb: float = 100.0,
        user: str | None = None,
        own_pid: int | None = None,
        own_ppid: int | None = None,
    ) -> None:
        """
        Initialize the ProcessCatalog.

        Args:
            lister: Collaborator that enumerates and looks up processes.
            protected_names: Names never to kill (case-insensitive substrings).
            min_memory_mb: Candidates below this RSS are ignored.
            user: Owner whose processes are considered. Defaults to the caller.
            own_pid: Pid of this watchdog. Defaults to os.getpid().
            own_ppid: Parent pid of this watchdog (its shell). Defaults to os.getppid().
        """
        self._lister = lister
        self.protected_names = [name.lower() for name in protected_names]
        self.min_memory_mb = min_memory_mb
        self.user = user or getpass.getuser()
        self.own_pid = own_pid if own_pid is not None else os.getpid()
        self.own_ppid = own_ppid if own_ppid is not None else os.getppid()

    def list_all(self) -> list[ProcessCandidate]:
        """All processes of the user, memory descending (stable on ties)."""
        try:
            processes = self._lister.list_processes(self.user)
        except CatalogError as exc:
            logger.error("Failed to get user processes: %s", exc)
            return []
        logger.debug("Found %d processes for user %s", len(processes), self.user)
        return sorted(processes, key=lambda p: p.memory_mb, reverse=True)

    def list_killable(self) -> list[ProcessCandidate]:
        """Processes passing every safety filter, memory descending."""
        return [proc for proc in self.list_all() if self._skip_reason(proc) is None]

    def top(self, limit: int = 10) -> list[ProcessCandidate]:
        """The `limit` largest killable processes."""
        return self.list_killable()[: max(0, limit)]

    def _skip_reason(self, proc: ProcessCandidate) -> str | None:
        if proc.memory_mb < self.min_memory_mb:
            reason = f"memory too low ({proc.memory_mb}MB)"
        elif self.is_protected(proc):
            reason = "protected process"
        elif self.is_self_or_parent(proc):
            reason = "current process"
        elif self.is_shell(proc):
            reason = "shell process"
        elif self.is_critical_state(proc):
            reason = f"critical state {proc.state}"
        else:
            return None
        logger.debug("Skipping %s (%d): %s", proc.command, proc.pid, reason)
        return reason

    def is_protected(self, proc: ProcessCandidate) -> bool:
        command = proc.command.lower()
        full_command = proc.full_command.lower()
        return any(
            command == name or name in command or name in full_command
            for name in self.protected_names
        )

    def is_self_or_parent(self, proc: ProcessCandidate) -> bool:
        return proc.pid in (self.own_pid, self.own_ppid)

    def is_shell(self, proc: ProcessCandidate) -> bool:
        # Siblings of this watchdog under the invoking shell count as the shell
        if proc.ppid == self.own_ppid:
            return True
        return proc.command.lower() in SHELL_NAMES

    @staticmethod
    def is_critical_state(proc: ProcessCandidate) -> bool:
        state = proc.state.upper()
        return any(code in state for code in CRITICAL_STATES)

    def validate(self, pid: int) -> Validation:
        """
        Re-resolve a pid for a manual kill.

        Only the protected-name and self/parent filters apply; the memory
        floor and shell heuristics do not.
        """
        proc = self._lister.lookup(pid)
        if proc is None:
            return Validation(reason=RejectReason.NOT_FOUND)
        if proc.user != self.user:
            return Validation(candidate=proc, reason=RejectReason.WRONG_OWNER)
        if self.is_protected(proc):
            return Validation(candidate=proc, reason=RejectReason.PROTECTED)
        if self.is_self_or_parent(proc):
            return Validation(candidate=proc, reason=RejectReason.IS_SELF_OR_PARENT)
        return Validation(candidate=proc)

    def stats(self) -> dict[str, Any]:
        """Process counts and memory totals for the current user."""
        all_processes = self.list_all()
        killable = [p for p in all_processes if self._skip_reason(p) is None]
        return {
            "user": self.user,
            "total_processes": len(all_processes),
            "killable_processes": len(killable),
            "protected_processes": len(all_processes) - len(killable),
            "total_memory_mb": _sum_memory(all_processes),
            "killable_memory_mb": _sum_memory(killable),
        }


def _sum_memory(processes: Sequence[ProcessCandidate]) -> float:
    return round(sum(p.memory_mb for p in processes), 2)
