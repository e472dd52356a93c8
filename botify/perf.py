"""
Bridge metrics via structured JSONL logging.

Usage:
    from botify import perf

    # Record an RPC round trip
    perf.timing("rpc_call_ms", 812.4, method="tools/call", outcome="ok")

    # Count events
    perf.incr("prompts_queued", component="bridge")

    # Time a block
    with perf.timed("init_ms", component="bridge"):
        await bridge.initialize()

Logs are written to <logs dir>/perf-YYYY-MM-DD.jsonl
"""

import json
import sys
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from botify.common import LOGS_DIR

PERF_DIR = LOGS_DIR
SCHEMA_VERSION = 1
MAX_FILE_SIZE_MB = 100


def configure(perf_dir: Path) -> None:
    """Point metrics at a different directory (the daemon's logs dir)."""
    global PERF_DIR
    PERF_DIR = Path(perf_dir)


def _log_metric(metric: str, value: float, **labels: Any) -> None:
    """Append metric to daily JSONL file. Never raises."""
    try:
        PERF_DIR.mkdir(parents=True, exist_ok=True)
        path = PERF_DIR / f"perf-{datetime.now():%Y-%m-%d}.jsonl"

        if path.exists() and path.stat().st_size > MAX_FILE_SIZE_MB * 1024 * 1024:
            print(
                f"[perf] WARNING: {path} exceeds {MAX_FILE_SIZE_MB}MB, skipping",
                file=sys.stderr,
            )
            return

        entry = {
            "v": SCHEMA_VERSION,
            "ts": datetime.now().isoformat(),
            "metric": metric,
            "value": value,
            **labels,
        }
        with open(path, "a") as f:
            f.write(json.dumps(entry, default=str) + "\n")
    except Exception as e:
        print(f"[perf] WARNING: failed to log metric: {e}", file=sys.stderr)


def timing(metric: str, ms: float, **labels: Any) -> None:
    """
    Record a timing metric in milliseconds.

    Args:
        metric: Metric name (e.g., "rpc_call_ms")
        ms: Duration in milliseconds
        **labels: Additional labels (method, outcome, etc.)
    """
    _log_metric(metric, ms, **labels)


def incr(metric: str, count: int = 1, **labels: Any) -> None:
    """Record a counter increment."""
    _log_metric(metric, count, **labels)


@contextmanager
def timed(metric: str, **labels: Any):
    """
    Context manager to time a block of code.

    Usage:
        with timed("init_ms", component="bridge"):
            do_something()
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - start) * 1000
        timing(metric, elapsed_ms, **labels)


def error(error_type: str, **labels: Any) -> None:
    """Record an error occurrence."""
    incr("error_count", error_type=error_type, **labels)
