"""Tests for memory sampling."""

from datetime import datetime, timezone

import pytest

from ramguard.models import MemorySnapshot
from ramguard.probe import (
    ProbeError,
    ProcMemoryProbe,
    PsutilMemoryProbe,
    build_snapshot,
    parse_meminfo,
)

MEMINFO = """\
MemTotal:       16384000 kB
MemFree:         1024000 kB
MemAvailable:    4096000 kB
Buffers:          204800 kB
Cached:          2048000 kB
SwapCached:            0 kB
SwapTotal:       2097152 kB
SwapFree:        1048576 kB
HugePages_Total:       0
"""

FIXED_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def proc_dir(tmp_path):
    (tmp_path / "meminfo").write_text(MEMINFO)
    (tmp_path / "loadavg").write_text("0.52 0.48 0.40 2/1234 5678\n")
    (tmp_path / "uptime").write_text("12345.67 54321.00\n")
    return tmp_path


def make_probe(directory) -> ProcMemoryProbe:
    return ProcMemoryProbe(
        meminfo_path=directory / "meminfo",
        loadavg_path=directory / "loadavg",
        uptime_path=directory / "uptime",
        clock=lambda: FIXED_TIME,
    )


class TestParseMeminfo:
    """Tests for /proc/meminfo parsing."""

    def test_parses_kilobyte_fields(self):
        """Test every 'Key: value kB' line is captured."""
        fields = parse_meminfo(MEMINFO)
        assert fields["MemTotal"] == 16384000
        assert fields["MemAvailable"] == 4096000
        assert fields["SwapFree"] == 1048576

    def test_includes_unitless_counters(self):
        """Test counters without a unit are parsed too."""
        assert parse_meminfo(MEMINFO)["HugePages_Total"] == 0

    def test_ignores_garbage_lines(self):
        """Test unparseable lines are skipped."""
        fields = parse_meminfo("garbage\nMemTotal: abc kB\nMemFree:  10 kB\n")
        assert fields == {"MemFree": 10}


class TestBuildSnapshot:
    """Tests for snapshot arithmetic."""

    def test_percent_uses_available_memory(self):
        """Test used = total - available, never total - free."""
        snapshot = build_snapshot(parse_meminfo(MEMINFO), captured_at=FIXED_TIME)

        assert snapshot.total_mb == 16000.0
        assert snapshot.available_mb == 4000.0
        assert snapshot.used_mb == 12000.0
        assert snapshot.percent == 75.0
        assert snapshot.free_mb == 1000.0

    def test_swap_figures(self):
        """Test swap used and percent."""
        snapshot = build_snapshot(parse_meminfo(MEMINFO), captured_at=FIXED_TIME)

        assert snapshot.swap_total_mb == 2048.0
        assert snapshot.swap_used_mb == 1024.0
        assert snapshot.swap_percent == 50.0

    def test_missing_fields_default_to_zero(self):
        """Test absent counters are treated as 0."""
        snapshot = build_snapshot({"MemTotal": 1024 * 1024}, captured_at=FIXED_TIME)

        assert snapshot.available_mb == 0.0
        assert snapshot.percent == 100.0
        assert snapshot.swap_total_mb == 0.0
        assert snapshot.swap_percent == 0.0

    def test_zero_total_gives_zero_percent(self):
        """Test a zero total does not divide by zero."""
        assert build_snapshot({}, captured_at=FIXED_TIME).percent == 0.0


class TestProcMemoryProbe:
    """Tests for the /proc-backed probe."""

    def test_sample(self, proc_dir):
        """Test a full sample from /proc-style files."""
        snapshot = make_probe(proc_dir).sample()

        assert isinstance(snapshot, MemorySnapshot)
        assert snapshot.percent == 75.0
        assert snapshot.load_avg == (0.52, 0.48, 0.40)
        assert snapshot.uptime_seconds == 12346.0
        assert snapshot.captured_at == FIXED_TIME

    def test_missing_meminfo_raises(self, proc_dir):
        """Test an unreadable meminfo raises ProbeError."""
        (proc_dir / "meminfo").unlink()

        with pytest.raises(ProbeError):
            make_probe(proc_dir).sample()

    def test_meminfo_without_total_raises(self, proc_dir):
        """Test meminfo without MemTotal raises ProbeError."""
        (proc_dir / "meminfo").write_text("MemFree: 100 kB\n")

        with pytest.raises(ProbeError):
            make_probe(proc_dir).sample()

    def test_missing_loadavg_and_uptime_are_not_fatal(self, proc_dir):
        """Test load average and uptime fall back to zeros."""
        (proc_dir / "loadavg").unlink()
        (proc_dir / "uptime").write_text("not-a-number\n")

        snapshot = make_probe(proc_dir).sample()

        assert snapshot.load_avg == (0.0, 0.0, 0.0)
        assert snapshot.uptime_seconds == 0.0
        assert snapshot.percent == 75.0


class TestPsutilMemoryProbe:
    """Tests for the psutil-backed probe."""

    def test_sample_real_host(self):
        """Test the psutil probe returns a sane snapshot."""
        snapshot = PsutilMemoryProbe().sample()

        assert snapshot.total_mb > 0
        assert 0.0 <= snapshot.percent <= 100.0
        assert snapshot.used_mb == pytest.approx(snapshot.total_mb - snapshot.available_mb, abs=0.02)
