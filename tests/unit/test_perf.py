"""Tests for the bridge metrics module."""

import json
from datetime import datetime
from pathlib import Path
from unittest.mock import patch

import pytest

from botify import perf


@pytest.fixture
def temp_perf_dir(tmp_path):
    """Use a temporary directory for perf logs."""
    with patch.object(perf, "PERF_DIR", tmp_path):
        yield tmp_path


def read_perf_log(perf_dir: Path) -> list[dict]:
    """Read all entries from today's perf log."""
    log_file = perf_dir / f"perf-{datetime.now():%Y-%m-%d}.jsonl"
    if not log_file.exists():
        return []
    entries = []
    with open(log_file) as f:
        for line in f:
            if line.strip():
                entries.append(json.loads(line))
    return entries


class TestTiming:
    def test_timing_logs_metric(self, temp_perf_dir):
        perf.timing("rpc_call_ms", 42.5, component="rpc", method="tools/call")

        entries = read_perf_log(temp_perf_dir)
        assert len(entries) == 1
        assert entries[0]["metric"] == "rpc_call_ms"
        assert entries[0]["value"] == 42.5
        assert entries[0]["component"] == "rpc"
        assert entries[0]["method"] == "tools/call"
        assert entries[0]["v"] == 1
        assert "ts" in entries[0]


class TestIncr:
    def test_incr_logs_count(self, temp_perf_dir):
        perf.incr("prompts_queued", count=3, component="bridge")

        entries = read_perf_log(temp_perf_dir)
        assert len(entries) == 1
        assert entries[0]["metric"] == "prompts_queued"
        assert entries[0]["value"] == 3

    def test_incr_default_count(self, temp_perf_dir):
        perf.incr("malformed_lines")
        assert read_perf_log(temp_perf_dir)[0]["value"] == 1


class TestTimedContextManager:
    def test_timed_context_logs_duration(self, temp_perf_dir):
        with perf.timed("init_ms", component="bridge"):
            pass

        entries = read_perf_log(temp_perf_dir)
        assert len(entries) == 1
        assert entries[0]["metric"] == "init_ms"
        assert entries[0]["value"] >= 0

    def test_timed_context_logs_on_exception(self, temp_perf_dir):
        with pytest.raises(ValueError):
            with perf.timed("init_ms", component="bridge"):
                raise ValueError("handshake failed")

        assert len(read_perf_log(temp_perf_dir)) == 1


class TestError:
    def test_error_logs_with_type(self, temp_perf_dir):
        perf.error("backend_exit", component="supervisor")

        entries = read_perf_log(temp_perf_dir)
        assert entries[0]["metric"] == "error_count"
        assert entries[0]["error_type"] == "backend_exit"
        assert entries[0]["value"] == 1


class TestConfiguration:
    def test_configure_changes_directory(self, tmp_path):
        target = tmp_path / "elsewhere"
        with patch.object(perf, "PERF_DIR", perf.PERF_DIR):
            perf.configure(target)
            perf.incr("events")
            assert perf.PERF_DIR == target
        assert read_perf_log(target)[0]["metric"] == "events"


class TestGracefulDegradation:
    def test_write_failure_does_not_raise(self, temp_perf_dir, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("file in the way")
        with patch.object(perf, "PERF_DIR", blocker / "perf"):
            # Should not raise, just warn on stderr
            perf.timing("test", 1.0)

    def test_file_size_limit(self, temp_perf_dir):
        log_file = temp_perf_dir / f"perf-{datetime.now():%Y-%m-%d}.jsonl"
        with open(log_file, "w") as f:
            f.write("x" * (perf.MAX_FILE_SIZE_MB * 1024 * 1024 + 1))

        perf.timing("test", 1.0)

        content = log_file.read_text()
        assert '"metric"' not in content
