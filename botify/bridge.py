"""
CodexBridge: the facade the daemon drives.

Wires one RpcTransport, one SessionRegistry, one BackendSupervisor and one
PromptDispatcher together, routes inbound chat text to commands or to the
session queues, and reports backend trouble to the owner chat.

Lifecycle:
    bridge = CodexBridge(config, sink)
    bridge.on_fatal(handler)
    await bridge.start()          # spawn + initialize handshake
    await bridge.enqueue(chat_id, text)
    ...
    await bridge.stop()
"""
from __future__ import annotations

import asyncio
import logging
import signal
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Coroutine, Optional

from botify import perf
from botify.chat import ReplyContext, ReplySink
from botify.common import get_version
from botify.config import BridgeConfig
from botify.dispatcher import PromptDispatcher
from botify.errors import BridgeError, LaunchError, UnexpectedExit
from botify.rpc import RpcTransport, TailBuffer
from botify.sessions import PromptItem, Session, SessionRegistry
from botify.supervisor import BackendSupervisor, FatalHandler

log = logging.getLogger(__name__)
lifecycle_log = logging.getLogger("lifecycle")

PROTOCOL_VERSION = "2024-10-07"
CLIENT_NAME = "telegram-bridge"

LOCKED_CHAT_TEXT = "This bot is locked to a different chat."
RESET_TEXT = "Conversation reset. Send a new prompt to start a fresh Codex session."
MISSING_ID_WARNING = (
    "!!! WARNING: Codex did not return a conversation id. Follow-up prompts will start a "
    "fresh session unless you send /reset and restate your request."
)
HELP_TEXT = "\n".join([
    "Codex Chat Bridge (MCP mode)",
    "",
    "Commands:",
    "/ping   – heartbeat",
    "/reset  – drop the active Codex session",
    "/status – show server status",
    "/relive – gracefully exit so a new build can start",
    "/help   – this message",
    "",
    "Any other message is forwarded to Codex via MCP.",
])

BRIDGE_CONTEXT = ReplyContext(sender="bridge", preformatted=False)


@dataclass(frozen=True)
class StatusSnapshot:
    ready: bool
    queue_depth: int
    conversation_id: str
    last_rollout: str

    def lines(self) -> list[str]:
        return [
            f"Codex ready: {'true' if self.ready else 'false'}",
            f"Queue length: {self.queue_depth}",
            f"Active conversation: {self.conversation_id}",
            f"Last rollout: {self.last_rollout}",
        ]


def exit_quip(code: Optional[int], sig: Optional[str]) -> str:
    if sig:
        return f"Codex MCP server yeeted itself after catching {sig}. Please restart me once it's safe."
    if code == 0:
        return "Codex MCP server clocked out politely (code 0). Summon me again when you need more magic."
    return (
        f"Codex MCP server dramatically face-planted with exit code "
        f"{code if code is not None else 'unknown'}. Please restart when ready."
    )


def _git(cwd: str, *args: str) -> Optional[str]:
    try:
        result = subprocess.run(
            ["git", *args], cwd=cwd, capture_output=True, text=True, timeout=5
        )
    except (OSError, subprocess.SubprocessError):
        return None
    output = result.stdout.strip()
    return output if result.returncode == 0 and output else None


def _format_timestamp(value: Optional[datetime]) -> str:
    if value is None:
        return "n/a"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")


class CodexBridge:
    """Owns the Codex MCP server and every chat session talking to it."""

    def __init__(
        self,
        config: BridgeConfig,
        sink: ReplySink,
        session_log_dir: Optional[Path] = None,
    ):
        self.config = config
        self.sink = sink
        self.version = get_version()

        self.transport = RpcTransport(
            timeout=config.rpc_timeout,
            tail=TailBuffer(config.exit_log_lines),
            on_notification=self._on_notification,
            on_request=self._on_request,
        )
        self.registry = SessionRegistry(
            log_dir=session_log_dir,
            warning_delay=config.missing_id_warning_delay,
            on_missing_id=self._on_missing_id,
        )
        self.supervisor = BackendSupervisor(
            command=config.command,
            cwd=config.cwd,
            transport=self.transport,
            codex_home=config.codex_home,
        )
        self.supervisor.on_exit = self._on_backend_exit
        self.supervisor.on_launch_error = self._on_launch_error
        self.supervisor.add_stopped_hook(self._on_backend_stopped)
        self.dispatcher = PromptDispatcher(
            config=config,
            transport=self.transport,
            registry=self.registry,
            send_reply=self._send,
            is_ready=lambda: self.ready,
        )

        self.ready = False
        self.started_at: Optional[datetime] = None
        self.tools: list = []
        self.relive_requested = asyncio.Event()
        self._background: set[asyncio.Task] = set()

    # ──────────────────────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────────────────────

    def on_fatal(self, handler: FatalHandler) -> Callable[[], None]:
        """Subscribe to the one-shot fatal signal. Returns an unsubscribe function."""
        return self.supervisor.fatal.subscribe(handler)

    async def start(self) -> None:
        if self.supervisor.running:
            return
        self.started_at = datetime.now()
        self.dispatcher.reopen()
        lifecycle_log.info(f"BRIDGE | START | version={self.version}")

        await self.supervisor.start()

        init = asyncio.create_task(self._initialize(), name="codex-initialize")
        self.supervisor.track(init)
        # wait() leaves init alone if start() itself is cancelled; stop() settles it
        await asyncio.wait({init})

        if init.cancelled():
            error = self.supervisor.fatal.error or UnexpectedExit(
                "Codex MCP server stopped before initialization finished."
            )
            raise error
        failure = init.exception()
        if failure is not None:
            log.error(f"Codex initialization failed: {failure}")
            lifecycle_log.info(f"BRIDGE | INIT_FAILED | {failure}")
            self._spawn(self.notify_owner(f"Codex initialization failed:\n{failure}"))
            error = failure if isinstance(failure, BridgeError) else BridgeError(str(failure))
            self.supervisor.fatal.fire(error)
            raise failure

        self.ready = True
        lifecycle_log.info(f"BRIDGE | READY | tools={len(self.tools)}")
        for session in self.registry.all():
            if session.queue_depth:
                self.dispatcher.process(session)
        self._spawn(self.notify_owner(f"Botify {self.version} is online and ready."))

    async def _initialize(self) -> None:
        with perf.timed("init_ms", component="bridge"):
            await self.transport.call(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "clientInfo": {"name": CLIENT_NAME, "version": self.version},
                    "capabilities": {},
                },
            )
            self.transport.notify("initialized", {})
            result = await self.transport.call("tools/list", {})
        tools = result.get("tools") if isinstance(result, dict) else None
        self.tools = tools if isinstance(tools, list) else []
        names = ", ".join(str(t.get("name")) for t in self.tools if isinstance(t, dict))
        log.info(f"Codex tools available: {names or 'none reported'}")

    async def stop(self, sig: signal.Signals = signal.SIGTERM) -> None:
        lifecycle_log.info(f"BRIDGE | STOP | signal={sig.name}")
        self.ready = False
        await self.dispatcher.close()
        await self.supervisor.stop(sig)
        await self.dispatcher.join()
        dropped = self.registry.drain_all()
        if dropped:
            log.warning(f"Dropped {dropped} queued prompt(s) on shutdown")
        self.started_at = None
        if self._background:
            await asyncio.wait(set(self._background), timeout=5.0)

    def _on_backend_stopped(self) -> None:
        self.ready = False
        self.registry.clear_all_bindings()

    def _on_backend_exit(self, code: Optional[int], sig: Optional[str], stop_requested: bool) -> None:
        self.ready = False
        self._spawn(self.notify_owner(exit_quip(code, sig)))

    def _on_launch_error(self, error: LaunchError) -> None:
        self._spawn(self.notify_owner("\n".join([
            "Codex bridge failed to launch the MCP server.",
            f"Command: {self.config.command}",
            f"Error: {error}",
        ])))

    # ──────────────────────────────────────────────────────────────
    # Inbound
    # ──────────────────────────────────────────────────────────────

    async def enqueue(self, chat_id: str, text: str, sender: str = "user") -> None:
        """Handle one inbound chat message: chat lock, commands, or a prompt."""
        chat_id = str(chat_id)
        if not self.config.is_chat_allowed(chat_id):
            log.warning(f"Rejected message from chat {chat_id} (not allowed)")
            await self._send(chat_id, LOCKED_CHAT_TEXT, BRIDGE_CONTEXT)
            return

        command = text.strip()
        handler = self.commands.get(command)
        if handler is not None:
            log.info(f"Command {command} from chat {chat_id}")
            await handler(chat_id)
            return

        session = self.registry.get_or_create(chat_id)
        session.enqueue(PromptItem(text=text, sender=sender))
        perf.incr("prompts_queued", component="bridge")
        self.dispatcher.process(session)

    @property
    def commands(self) -> dict[str, Callable[[str], Coroutine]]:
        return {
            "/help": self._cmd_help,
            "/ping": self._cmd_ping,
            "/reset": self._cmd_reset,
            "/status": self._cmd_status,
            "/relive": self._cmd_relive,
        }

    async def _cmd_help(self, chat_id: str) -> None:
        await self._send(chat_id, HELP_TEXT, BRIDGE_CONTEXT)

    async def _cmd_ping(self, chat_id: str) -> None:
        await self._send(chat_id, "pong", BRIDGE_CONTEXT)

    async def _cmd_reset(self, chat_id: str) -> None:
        session = self.registry.get(chat_id)
        if session is not None:
            self.registry.reset(session)
        await self._send(chat_id, RESET_TEXT, BRIDGE_CONTEXT)

    async def _cmd_status(self, chat_id: str) -> None:
        await self._send(chat_id, self.status_report(chat_id), BRIDGE_CONTEXT)

    async def _cmd_relive(self, chat_id: str) -> None:
        log.warning("Received /relive command; preparing to exit.")
        lifecycle_log.info(f"BRIDGE | RELIVE | chat={chat_id}")
        await self._send(
            chat_id,
            f"I'll be back! Botify {self.version} is shutting down so a newer build can come online in a few minutes.",
            BRIDGE_CONTEXT,
        )
        self.relive_requested.set()

    # ──────────────────────────────────────────────────────────────
    # Status
    # ──────────────────────────────────────────────────────────────

    def status_snapshot(self, chat_id: str) -> StatusSnapshot:
        session = self.registry.get(chat_id)
        return StatusSnapshot(
            ready=self.ready,
            queue_depth=session.queue_depth if session else 0,
            conversation_id=(session.conversation_id if session else None) or "none",
            last_rollout=(session.last_rollout if session else None) or "n/a",
        )

    def status_report(self, chat_id: str) -> str:
        session = self.registry.get(chat_id)
        lines = self.status_snapshot(chat_id).lines()
        lines += [
            f"Working dir: {self.config.cwd}",
            f"Started: {_format_timestamp(self.started_at)}",
            f"Last interaction: {_format_timestamp(session.last_interaction if session else None)}",
            f"Repo branch: {_git(self.config.cwd, 'rev-parse', '--abbrev-ref', 'HEAD') or 'unknown'}",
            f"Last commit: {_git(self.config.cwd, 'log', '-1', '--pretty=format:%h %s (%cr)') or 'unknown'}",
            f"Botify version: {self.version}",
            f"Model: {self.config.model or 'default'}",
            f"Sandbox: {self.config.sandbox_mode or 'n/a'}",
        ]
        return "\n".join(lines)

    # ──────────────────────────────────────────────────────────────
    # Backend callbacks
    # ──────────────────────────────────────────────────────────────

    def _on_notification(self, method: str, params) -> None:
        session = self.registry.resolve_from_payload(params)
        if method.startswith("events/"):
            log.debug(f"Codex event: {method}")
        else:
            log.info(f"Codex notification: {method}" + (f" (chat {session.chat_id})" if session else ""))

    def _on_request(self, method: str, params) -> None:
        self._spawn(self.notify_owner(
            f"Codex requested {method}, but the chat bridge does not support interactive approvals. "
            "Set CODEX_APPROVAL_POLICY=never to avoid approvals."
        ))

    def _on_missing_id(self, session: Session) -> None:
        self._spawn(self._send(session.chat_id, MISSING_ID_WARNING, BRIDGE_CONTEXT))

    # ──────────────────────────────────────────────────────────────
    # Outbound
    # ──────────────────────────────────────────────────────────────

    async def _send(self, chat_id: str, text: str, context: ReplyContext) -> None:
        try:
            await self.sink.send(chat_id, text, context)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(f"Failed to send message to chat {chat_id}: {e}")

    async def notify_owner(self, text: str) -> None:
        """Log a bridge notice and deliver it to the owner chat when one is configured."""
        log.warning(f"Owner notice: {text}")
        if self.config.owner_chat_id:
            await self._send(self.config.owner_chat_id, text, BRIDGE_CONTEXT)

    def _spawn(self, coro: Coroutine) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
