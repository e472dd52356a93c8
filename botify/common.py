"""
Shared utilities used by the daemon (manager.py), the bridge and the CLI.
"""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

# Paths
HOME = Path.home()
BOTIFY_DIR = Path(os.environ.get("BOTIFY_HOME", str(HOME / ".botify")))
LOGS_DIR = BOTIFY_DIR / "logs"
SESSION_LOG_DIR = LOGS_DIR / "sessions"
INBOX_DIR = BOTIFY_DIR / "inbox"
OUTBOX_DIR = BOTIFY_DIR / "outbox"

PACKAGE_NAME = "botify"


@lru_cache(maxsize=1)
def get_version() -> str:
    """Get the installed package version, or 0.0.0 when running from a checkout."""
    from importlib.metadata import PackageNotFoundError, version
    try:
        return version(PACKAGE_NAME)
    except PackageNotFoundError:
        return "0.0.0"


def ensure_directory(path: Path | str) -> Path:
    """Create a directory (and parents), raising a readable error on failure."""
    directory = Path(path)
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise OSError(f"Unable to create directory {directory}: {e}") from e
    return directory


def chunk_text(text: str, size: int) -> list[str]:
    """Split text into fixed-size chunks for transports with message limits.

    Empty text yields no chunks. A non-positive size disables chunking.
    """
    remaining = text or ""
    if size <= 0:
        return [remaining] if remaining else []
    chunks = []
    while len(remaining) > size:
        chunks.append(remaining[:size])
        remaining = remaining[size:]
    if remaining:
        chunks.append(remaining)
    return chunks


def session_log_name(chat_id: str) -> str:
    """Filesystem-safe log name for a chat id (e.g. "-100123" -> "chat_-100123")."""
    safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in str(chat_id))
    return f"chat_{safe}"
