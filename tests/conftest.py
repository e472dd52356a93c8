"""
Shared fixtures for botify tests.

Unit tests drive the transport, registry and dispatcher through an in-memory
writer that records every line the bridge sends, and answer requests by
feeding lines back with RpcTransport.feed_line(). Integration tests run the
scripted fake MCP server in tests/fixtures/fake_codex.py as a real subprocess.
"""
from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from botify import perf
from botify.chat import ReplyContext
from botify.config import BridgeConfig
from botify.rpc import RpcTransport, TailBuffer
from botify.sessions import SessionRegistry

FAKE_CODEX = Path(__file__).parent / "fixtures" / "fake_codex.py"


# ── Fakes ───────────────────────────────────────────────────────────────

class FakeWriter:
    """Stands in for the backend's stdin. Records decoded JSON lines."""

    def __init__(self):
        self.lines: list[str] = []
        self.closing = False

    def write(self, data: bytes) -> None:
        self.lines.extend(line for line in data.decode().splitlines() if line)

    def is_closing(self) -> bool:
        return self.closing

    @property
    def messages(self) -> list[dict]:
        return [json.loads(line) for line in self.lines]

    def requests(self, method: Optional[str] = None) -> list[dict]:
        return [
            m for m in self.messages
            if "id" in m and "method" in m and (method is None or m["method"] == method)
        ]


class FakeSink:
    """ReplySink that records (chat_id, text, context) and signals each delivery."""

    def __init__(self):
        self.sent: list[tuple[str, str, ReplyContext]] = []
        self._event = asyncio.Event()
        self.fail = False

    async def send(self, chat_id: str, text: str, context: ReplyContext) -> None:
        if self.fail:
            raise RuntimeError("sink offline")
        self.sent.append((chat_id, text, context))
        self._event.set()

    def texts(self, chat_id: Optional[str] = None) -> list[str]:
        return [text for cid, text, _ in self.sent if chat_id is None or cid == chat_id]

    async def wait_for(self, count: int, timeout: float = 2.0) -> None:
        """Wait until at least count messages were delivered."""
        async def _wait():
            while len(self.sent) < count:
                self._event.clear()
                await self._event.wait()
        await asyncio.wait_for(_wait(), timeout)


def respond(transport: RpcTransport, request: dict, result: Any = None, error: Optional[dict] = None) -> None:
    """Feed a response for request back into the transport."""
    message: dict = {"jsonrpc": "2.0", "id": request["id"]}
    if error is not None:
        message["error"] = error
    else:
        message["result"] = result if result is not None else {}
    transport.feed_line(json.dumps(message))


def text_result(text: str, **extra) -> dict:
    return {"content": [{"type": "text", "text": text}], **extra}


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll predicate until true (or fail the test on timeout)."""
    async def _poll():
        while not predicate():
            await asyncio.sleep(interval)
    await asyncio.wait_for(_poll(), timeout)


# ── Fixtures ────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def no_perf_files(tmp_path, monkeypatch):
    """Keep metrics out of the real logs directory."""
    monkeypatch.setattr(perf, "PERF_DIR", tmp_path / "perf")


@pytest.fixture
def bridge_config(tmp_path):
    """A BridgeConfig pointing at a temp working dir, timeouts disabled."""
    def _make(**overrides) -> BridgeConfig:
        values = {
            "cwd": str(tmp_path),
            "codex_home": str(tmp_path / ".codex_mcp_home"),
            "rpc_timeout_ms": 0,
            "missing_id_warning_delay": 0.01,
        }
        values.update(overrides)
        return BridgeConfig(**values)
    return _make


@pytest.fixture
def writer():
    return FakeWriter()


@pytest.fixture
def transport(writer):
    """An attached transport with no default timeout."""
    t = RpcTransport(timeout=None, tail=TailBuffer(40))
    t.attach(writer)
    return t


@pytest.fixture
def registry():
    return SessionRegistry(warning_delay=0.01)


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def reply():
    """Feed a JSON-RPC response for a recorded request: reply(transport, request, result)."""
    return respond


@pytest.fixture
def text():
    """Build a tools/call result with one text item."""
    return text_result


@pytest.fixture
def until():
    """Await a predicate: await until(lambda: ...)."""
    return wait_until


@pytest.fixture
def fake_codex():
    """Command line that runs the scripted fake MCP server with this interpreter."""
    def _command(*args: str) -> str:
        parts = [sys.executable, str(FAKE_CODEX), *args]
        return "exec " + " ".join(f"'{p}'" for p in parts)
    return _command
