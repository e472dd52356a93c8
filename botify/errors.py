"""
Error taxonomy for the Codex bridge.

Per-call failures (RpcTimeout, BackendError, NotReady) stay local to the call
that raised them and are turned into chat messages by the dispatcher.
Process-level failures (LaunchError, UnexpectedExit) only travel through the
one-shot fatal signal. MalformedLine never leaves the transport.
"""
from __future__ import annotations

from typing import Optional


class BridgeError(Exception):
    """Base class for all bridge errors."""
    pass


class LaunchError(BridgeError):
    """The backend command could not be spawned."""
    pass


class UnexpectedExit(BridgeError):
    """The backend process exited without a stop being requested."""

    def __init__(self, message: str, code: Optional[int] = None, signal: Optional[str] = None, tail: str = ""):
        super().__init__(message)
        self.code = code
        self.signal = signal
        self.tail = tail


class RpcTimeout(BridgeError):
    """A single RPC call exceeded its deadline."""

    def __init__(self, method: str):
        super().__init__(f"Codex RPC timeout ({method})")
        self.method = method


class BackendError(BridgeError):
    """The backend answered with an explicit error object."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class MalformedLine(BridgeError):
    """A line from the backend could not be parsed as a JSON object."""

    def __init__(self, line: str, reason: str = ""):
        super().__init__(f"Failed to parse Codex output as JSON: {line}")
        self.line = line
        self.reason = reason


class NotReady(BridgeError):
    """A write was attempted against a transport with no live process."""

    def __init__(self, message: str = "Codex process is not ready to receive input."):
        super().__init__(message)
