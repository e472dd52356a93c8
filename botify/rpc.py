"""
RpcTransport: JSON-RPC framing and correlation over the Codex stdio pipes.

One transport is shared by every chat. Outbound requests are written as one
JSON object per line to the MCP server's stdin; the supervisor feeds each
stdout line back through feed_line(), which routes it to the pending call with
the same id, answers backend-initiated requests, or hands notifications to the
bridge. All mutation of the pending table happens in single synchronous steps
on the event loop, so a response and a timeout for the same id can never both
win.
"""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from botify import perf
from botify.errors import BackendError, MalformedLine, NotReady, RpcTimeout

log = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"
METHOD_NOT_FOUND = -32601


class LineWriter(Protocol):
    """The subset of asyncio.StreamWriter the transport writes through."""

    def write(self, data: bytes) -> None: ...

    def is_closing(self) -> bool: ...


class TailBuffer:
    """Bounded ring of the most recent backend I/O lines, for crash diagnostics."""

    def __init__(self, capacity: int = 40):
        self.capacity = max(0, capacity)
        self._lines: deque[str] = deque(maxlen=self.capacity)

    def append(self, text: str) -> None:
        for part in re.split(r"\r?\n", text):
            if part:
                self._lines.append(part)

    def lines(self) -> list[str]:
        return list(self._lines)

    def render(self) -> str:
        return "\n".join(self._lines) if self._lines else "No buffered output."

    def clear(self) -> None:
        self._lines.clear()

    def __len__(self) -> int:
        return len(self._lines)


@dataclass
class PendingCall:
    id: str
    method: str
    future: asyncio.Future
    timeout_handle: Optional[asyncio.TimerHandle] = None
    started: float = field(default_factory=time.perf_counter)


def parse_line(line: str) -> dict:
    """Decode one line of backend output. Raises MalformedLine."""
    try:
        message = json.loads(line)
    except json.JSONDecodeError as e:
        raise MalformedLine(line, str(e)) from e
    if not isinstance(message, dict):
        raise MalformedLine(line, "not a JSON object")
    return message


class RpcTransport:
    """Correlates requests and responses over a single line-oriented channel."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        tail: Optional[TailBuffer] = None,
        on_notification: Optional[Callable[[str, Any], None]] = None,
        on_request: Optional[Callable[[str, Any], None]] = None,
    ):
        self.default_timeout = timeout
        self.tail = tail if tail is not None else TailBuffer()
        self.on_notification = on_notification
        self.on_request = on_request

        self._writer: Optional[LineWriter] = None
        self._pending: dict[str, PendingCall] = {}
        self._ids = itertools.count(1)

    # ──────────────────────────────────────────────────────────────
    # Channel
    # ──────────────────────────────────────────────────────────────

    def attach(self, writer: LineWriter) -> None:
        self._writer = writer

    def close(self) -> None:
        """Detach from the process. Later writes raise NotReady.

        Calls still waiting for an answer fail with NotReady, since nothing
        will ever respond to them.
        """
        self._writer = None
        pending, self._pending = self._pending, {}
        for call in pending.values():
            if call.timeout_handle:
                call.timeout_handle.cancel()
            if not call.future.done():
                call.future.set_exception(NotReady(f"Codex process exited before answering {call.method}."))

    @property
    def is_ready(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, request_id: str) -> bool:
        return str(request_id) in self._pending

    def _write(self, message: dict) -> None:
        if not self.is_ready:
            raise NotReady()
        line = json.dumps(message)
        self.tail.append(line)
        try:
            self._writer.write((line + "\n").encode())
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            raise NotReady(f"Codex process is not ready to receive input: {e}") from e

    # ──────────────────────────────────────────────────────────────
    # Outbound
    # ──────────────────────────────────────────────────────────────

    async def call(self, method: str, params: Optional[dict] = None, timeout: Optional[float] = None) -> Any:
        """Send a request and wait for the correlated result.

        timeout=None uses the transport default; 0 waits indefinitely.
        Raises RpcTimeout, BackendError or NotReady.
        """
        request_id = str(next(self._ids))
        loop = asyncio.get_running_loop()
        pending = PendingCall(id=request_id, method=method, future=loop.create_future())
        self._pending[request_id] = pending

        try:
            self._write({"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method, "params": params or {}})
        except NotReady:
            self._pending.pop(request_id, None)
            raise

        effective = self.default_timeout if timeout is None else timeout
        if effective and effective > 0:
            pending.timeout_handle = loop.call_later(effective, self._expire, request_id)
        log.debug(f"RPC -> {method} (id={request_id})")

        outcome = "ok"
        try:
            return await pending.future
        except RpcTimeout:
            outcome = "timeout"
            raise
        except BackendError:
            outcome = "error"
            raise
        except NotReady:
            outcome = "closed"
            raise
        except asyncio.CancelledError:
            outcome = "cancelled"
            self._discard(request_id)
            raise
        finally:
            elapsed_ms = (time.perf_counter() - pending.started) * 1000
            perf.timing("rpc_call_ms", elapsed_ms, component="rpc", method=method, outcome=outcome)

    def notify(self, method: str, params: Optional[dict] = None) -> None:
        self._write({"jsonrpc": JSONRPC_VERSION, "method": method, "params": params or {}})

    def respond(self, request_id: Any, result: Any = None, error: Optional[dict] = None) -> None:
        message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id}
        if result is not None:
            message["result"] = result
        if error:
            message["error"] = error
        self._write(message)

    def _expire(self, request_id: str) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None or pending.future.done():
            return
        log.warning(f"RPC timeout | {pending.method} (id={request_id})")
        pending.future.set_exception(RpcTimeout(pending.method))

    def _discard(self, request_id: str) -> None:
        pending = self._pending.pop(request_id, None)
        if pending and pending.timeout_handle:
            pending.timeout_handle.cancel()

    # ──────────────────────────────────────────────────────────────
    # Inbound
    # ──────────────────────────────────────────────────────────────

    def feed_line(self, line: str) -> None:
        """Handle one line of backend stdout. Never raises for bad input."""
        trimmed = line.strip()
        if not trimmed:
            return
        self.tail.append(trimmed)
        try:
            message = parse_line(trimmed)
        except MalformedLine as e:
            log.warning(str(e))
            perf.incr("malformed_lines", component="rpc")
            return
        self._route(message)

    def _route(self, message: dict) -> None:
        if "id" in message:
            raw_id = message.get("id")
            id_key = str(raw_id) if raw_id is not None else None

            if id_key is not None and message.get("method") and id_key not in self._pending:
                self._handle_request(message)
                return

            if id_key is None:
                log.warning(f"Codex response missing id: {json.dumps(message)}")
                return

            pending = self._pending.pop(id_key, None)
            if pending is None:
                log.warning(f"Received response for unknown RPC id: {id_key}")
                return
            if pending.timeout_handle:
                pending.timeout_handle.cancel()
            if pending.future.done():
                return

            error = message.get("error")
            if error:
                if isinstance(error, dict):
                    pending.future.set_exception(
                        BackendError(error.get("message") or "Codex returned an error.", error.get("code"))
                    )
                else:
                    pending.future.set_exception(BackendError(str(error)))
            else:
                pending.future.set_result(message.get("result"))
            return

        if message.get("method"):
            self._handle_notification(message)
        else:
            log.warning(f"Unhandled Codex message: {json.dumps(message)}")

    def _handle_notification(self, message: dict) -> None:
        method = str(message.get("method"))
        params = message.get("params")
        if self.on_notification is None:
            log.info(f"Codex notification: {method} {json.dumps(params)}")
            return
        try:
            self.on_notification(method, params)
        except Exception as e:
            log.error(f"Notification handler failed for {method}: {e}")

    def _handle_request(self, message: dict) -> None:
        """Answer a backend-initiated request. Interactive approvals are never supported."""
        method = str(message.get("method") or "unknown")
        warning = f"Codex requested {method}, but the chat bridge does not support interactive approvals."
        log.warning(warning)
        try:
            self.respond(
                message["id"],
                error={
                    "code": METHOD_NOT_FOUND,
                    "message": f"{warning} Configure CODEX_APPROVAL_POLICY=never to avoid approvals.",
                },
            )
        except NotReady as e:
            log.error(f"Could not answer Codex request {method}: {e}")
        if self.on_request is not None:
            try:
                self.on_request(method, message.get("params"))
            except Exception as e:
                log.error(f"Request handler failed for {method}: {e}")
