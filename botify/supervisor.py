"""
BackendSupervisor: owns the Codex MCP server subprocess.

Spawns the configured command, pipes stdout lines into the RpcTransport and
stderr into the tail buffer, watches for exit, and turns an exit nobody asked
for into a one-shot fatal signal. stop() is idempotent and is also invoked by
the exit watcher itself once the process is gone.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
from enum import Enum
from typing import Callable, List, Mapping, Optional

from botify import perf
from botify.common import ensure_directory
from botify.errors import BridgeError, LaunchError, UnexpectedExit
from botify.rpc import RpcTransport

log = logging.getLogger(__name__)

# Lifecycle logger (the daemon attaches a file handler)
lifecycle_log = logging.getLogger("lifecycle")

# StreamReader line limit; tool results can be large single lines
STDOUT_LIMIT = 10 * 1024 * 1024
STOP_TIMEOUT = 5.0


class SupervisorState(str, Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


FatalHandler = Callable[[BridgeError], None]


class FatalSignal:
    """Single-fire broadcast to a dynamic set of listeners.

    fire() delivers to every subscribed handler at most once per arm().
    A handler that raises is logged and does not stop delivery to the rest.
    """

    def __init__(self):
        self._handlers: List[FatalHandler] = []
        self._fired = False
        self.error: Optional[BridgeError] = None

    def subscribe(self, handler: FatalHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def arm(self) -> None:
        self._fired = False
        self.error = None

    @property
    def fired(self) -> bool:
        return self._fired

    def fire(self, error: BridgeError) -> bool:
        """Deliver error to all handlers. Returns False if already fired."""
        if self._fired:
            return False
        self._fired = True
        self.error = error
        for handler in list(self._handlers):
            try:
                handler(error)
            except Exception as e:
                log.error(f"Fatal handler threw: {e}")
        return True


def _describe_exit(returncode: Optional[int]) -> tuple[Optional[int], Optional[str]]:
    """Split an asyncio returncode into (exit code, signal name)."""
    if returncode is None or returncode >= 0:
        return returncode, None
    try:
        return None, signal.Signals(-returncode).name
    except ValueError:
        return None, f"signal {-returncode}"


class BackendSupervisor:
    """Spawns and watches the Codex MCP server process."""

    def __init__(
        self,
        command: str,
        cwd: str,
        transport: RpcTransport,
        codex_home: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        stop_timeout: float = STOP_TIMEOUT,
    ):
        self.command = command
        self.cwd = cwd
        self.transport = transport
        self.codex_home = codex_home
        self.env = dict(env or {})
        self.stop_timeout = stop_timeout

        self.state = SupervisorState.NOT_STARTED
        self.fatal = FatalSignal()
        self.on_exit: Optional[Callable[[Optional[int], Optional[str], bool], None]] = None
        self.on_launch_error: Optional[Callable[[LaunchError], None]] = None
        self._stopped_hooks: List[Callable[[], None]] = []

        self._process: Optional[asyncio.subprocess.Process] = None
        self._stdout_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._exit_task: Optional[asyncio.Task] = None
        self._tracked: List[asyncio.Task] = []
        self._stop_requested = False

    @property
    def running(self) -> bool:
        return self.state in (SupervisorState.STARTING, SupervisorState.RUNNING)

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    def add_stopped_hook(self, hook: Callable[[], None]) -> None:
        """Run hook after every stop, once the process tasks are finished."""
        self._stopped_hooks.append(hook)

    def track(self, task: asyncio.Task) -> None:
        """Register a task (e.g. the init handshake) that stop() must settle."""
        self._tracked.append(task)

    async def start(self) -> None:
        if self.running:
            return
        self.state = SupervisorState.STARTING
        self._stop_requested = False
        self.fatal.arm()
        self.transport.tail.clear()

        env = {**os.environ, **self.env}
        if self.codex_home:
            ensure_directory(self.codex_home)
            env["CODEX_HOME"] = self.codex_home

        log.info(f"Launching Codex process: {self.command}")
        lifecycle_log.info(f"BACKEND | START | command={self.command} cwd={self.cwd}")

        try:
            process = await asyncio.create_subprocess_shell(
                self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=env,
                limit=STDOUT_LIMIT,
            )
        except (OSError, ValueError) as e:
            error = LaunchError(f"Failed to launch Codex MCP server ({self.command}): {e}")
            log.error(str(error))
            lifecycle_log.info(f"BACKEND | LAUNCH_FAILED | {e}")
            self.state = SupervisorState.STOPPED
            if self.on_launch_error is not None:
                self.on_launch_error(error)
            self.fatal.fire(error)
            raise error from e

        self._process = process
        self.transport.attach(process.stdin)
        self._stdout_task = asyncio.create_task(self._read_stdout(process.stdout), name="codex-stdout")
        self._stderr_task = asyncio.create_task(self._read_stderr(process.stderr), name="codex-stderr")
        self._exit_task = asyncio.create_task(self._watch_exit(process), name="codex-exit")
        self.state = SupervisorState.RUNNING
        log.info(f"Codex MCP server started (pid={process.pid})")

    async def _read_stdout(self, stream: asyncio.StreamReader) -> None:
        while True:
            try:
                line = await stream.readline()
            except ValueError as e:
                # Line longer than STDOUT_LIMIT; the reader skips past it
                log.warning(f"Dropped oversized Codex output line: {e}")
                continue
            if not line:
                break
            self.transport.feed_line(line.decode("utf-8", errors="replace"))

    async def _read_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            try:
                chunk = await stream.readline()
            except ValueError:
                continue
            if not chunk:
                break
            text = chunk.decode("utf-8", errors="replace")
            self.transport.tail.append(text)
            log.error(f"[codex] {text.rstrip()}")

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        # Let the readers drain whatever the process wrote before exiting
        readers = {t for t in (self._stdout_task, self._stderr_task) if t is not None and not t.done()}
        if readers:
            await asyncio.wait(readers, timeout=1.0)

        code, sig = _describe_exit(returncode)
        reason = f"signal {sig}" if sig else f"code {code if code is not None else 'unknown'}"
        tail = self.transport.tail.render()
        diagnostic = "\n".join([
            f"Codex MCP server exited ({reason}).",
            "Recent output:",
            tail,
            "Restart the bridge once the underlying issue is resolved.",
        ])
        lifecycle_log.info(f"BACKEND | EXIT | {reason} | stop_requested={self._stop_requested}")

        if self._stop_requested and (code == 0 or sig is not None):
            log.info(f"Codex MCP server exited ({reason}) after stop request.")
        else:
            log.error(diagnostic)

        if self.on_exit is not None:
            try:
                self.on_exit(code, sig, self._stop_requested)
            except Exception as e:
                log.error(f"Exit handler failed: {e}")

        if not self._stop_requested:
            perf.error("backend_exit", component="supervisor", code=code, signal=sig)
            self.fatal.fire(UnexpectedExit(diagnostic, code=code, signal=sig, tail=tail))

        await self.stop()

    async def stop(self, sig: signal.Signals = signal.SIGTERM) -> None:
        if not self.running:
            return
        self.state = SupervisorState.STOPPING
        self._stop_requested = True
        lifecycle_log.info(f"BACKEND | STOP | signal={sig.name}")

        current = asyncio.current_task()
        self.transport.close()
        if self._stdout_task is not None and self._stdout_task is not current:
            self._stdout_task.cancel()

        process = self._process
        if process is not None and process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        if process is not None and process.returncode is None:
            try:
                process.send_signal(sig)
            except ProcessLookupError:
                pass
            except OSError as e:
                log.warning(f"Failed to terminate Codex process gracefully: {e}")

        # Startup work that never got an answer is abandoned, not awaited forever
        for task in self._tracked:
            if task is not current and not task.done():
                task.cancel()

        outstanding = [
            task for task in (self._stdout_task, self._stderr_task, self._exit_task, *self._tracked)
            if task is not None and task is not current
        ]
        if outstanding:
            _, still_running = await asyncio.wait(outstanding, timeout=self.stop_timeout)
            if still_running:
                if process is not None and process.returncode is None:
                    log.warning("Codex process ignored the stop signal; killing it")
                    process.kill()
                _, still_running = await asyncio.wait(still_running, timeout=2.0)
                for task in still_running:
                    task.cancel()
            for task in outstanding:
                if task.done() and not task.cancelled() and task.exception() is not None:
                    log.warning(f"Task {task.get_name()} ended with error: {task.exception()}")

        self._process = None
        self._stdout_task = None
        self._stderr_task = None
        self._exit_task = None
        self._tracked = []

        for hook in self._stopped_hooks:
            try:
                hook()
            except Exception as e:
                log.error(f"Stop hook failed: {e}")

        self.state = SupervisorState.STOPPED
        log.info("Codex MCP server stopped")
