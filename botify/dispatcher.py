"""
PromptDispatcher: one worker task per chat, one prompt in flight per chat.

Each session's worker blocks on the session queue, sends exactly one
`tools/call` at a time, delivers the reply, and only then takes the next
prompt. Workers for different chats run concurrently over the shared
transport.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict

from botify import perf
from botify.chat import ReplyContext
from botify.config import BridgeConfig
from botify.errors import BackendError, RpcTimeout
from botify.identity import extract_conversation_id
from botify.rpc import RpcTransport
from botify.sessions import PromptItem, Session, SessionRegistry

log = logging.getLogger(__name__)

NEW_CONVERSATION_TOOL = "codex"
CONTINUE_CONVERSATION_TOOL = "codex-reply"
NO_CONTENT_PLACEHOLDER = "(Codex returned no content.)"
INTERNAL_ERROR_FALLBACK = "Codex reported an internal error."
NOT_READY_TEXT = "Codex is not ready right now, so this message was not sent. Try again once the bridge is back online."

TIMEOUT_GUIDANCE = "\n".join([
    "Codex timed out waiting for the MCP response.",
    "The task may still complete in the background.",
    "Increase CODEX_RPC_TIMEOUT_MS (set it to 0 to disable timeouts) or break the task into smaller steps.",
    "Use /status to check the active session.",
])

SendReply = Callable[[str, str, ReplyContext], Awaitable[None]]


def render_result(result: Any) -> str:
    """Render a tools/call result as plain reply text ("" when there is nothing)."""
    if not isinstance(result, dict):
        return ""
    content = result.get("content")
    if not isinstance(content, list):
        return ""

    lines = []
    for item in content:
        if not item:
            continue
        if isinstance(item, dict) and item.get("type") == "text" and isinstance(item.get("text"), str):
            lines.append(item["text"].strip())
            continue
        if isinstance(item, dict) and item.get("type") == "tool":
            parts = [f"Tool {item.get('toolName') or 'unknown'}"]
            if item.get("status"):
                parts.append(f"status={item['status']}")
            if item.get("output"):
                parts.append(f"output:\n{item['output']}")
            lines.append(" ".join(parts).strip())
            continue
        lines.append(json.dumps(item, indent=2))
    return "\n\n".join(lines).strip()


class PromptDispatcher:
    """Drives every session's queue against the shared transport.

    is_ready is consulted before each dispatch; send_reply delivers text to
    a chat and is awaited before the session's next prompt is taken.
    """

    def __init__(
        self,
        config: BridgeConfig,
        transport: RpcTransport,
        registry: SessionRegistry,
        send_reply: SendReply,
        is_ready: Callable[[], bool],
    ):
        self.config = config
        self.transport = transport
        self.registry = registry
        self.send_reply = send_reply
        self.is_ready = is_ready
        self._workers: Dict[str, asyncio.Task] = {}
        self._closed = False

    def has_worker(self, session: Session) -> bool:
        task = self._workers.get(session.chat_id)
        return task is not None and not task.done()

    def process(self, session: Session) -> None:
        """Make sure the session's queue is being drained. Safe to call from anywhere."""
        if self._closed or not self.is_ready() or self.has_worker(session):
            return
        self._workers[session.chat_id] = asyncio.create_task(
            self._run_worker(session), name=f"dispatch-{session.chat_id}"
        )

    def reopen(self) -> None:
        self._closed = False

    async def close(self) -> None:
        """Stop taking prompts. Idle workers are cancelled; busy ones finish their prompt."""
        self._closed = True
        idle = []
        for chat_id, task in list(self._workers.items()):
            session = self.registry.get(chat_id)
            if task.done():
                self._workers.pop(chat_id, None)
            elif session is None or not session.processing:
                task.cancel()
                idle.append(task)
        if idle:
            await asyncio.wait(idle)
        for task in idle:
            for chat_id, worker in list(self._workers.items()):
                if worker is task:
                    self._workers.pop(chat_id, None)

    async def join(self, timeout: float = 10.0) -> None:
        """Wait for workers still delivering their last reply, then cancel stragglers."""
        remaining = [task for task in self._workers.values() if not task.done()]
        if remaining:
            _, pending = await asyncio.wait(remaining, timeout=timeout)
            for task in pending:
                log.warning(f"Worker {task.get_name()} did not finish; cancelling")
                task.cancel()
            if pending:
                await asyncio.wait(pending)
        self._workers.clear()

    async def _run_worker(self, session: Session) -> None:
        while not self._closed:
            item: PromptItem = await session.queue.get()
            try:
                if self._closed or not self.is_ready():
                    log.warning(f"Dropping prompt for chat {session.chat_id}: Codex is not ready")
                    session.log.warning(f"DROPPED | {item.text}")
                    await self._deliver(session, NOT_READY_TEXT, ReplyContext(sender=item.sender))
                    continue
                session.processing = True
                await self._dispatch(session, item)
            finally:
                session.processing = False
                session.queue.task_done()

    async def _dispatch(self, session: Session, item: PromptItem) -> None:
        context = ReplyContext(sender=item.sender)
        start = time.perf_counter()
        outcome = "ok"
        tool = CONTINUE_CONVERSATION_TOOL if session.conversation_id else NEW_CONVERSATION_TOOL
        try:
            reply = await self.handle_prompt(session, item)
        except asyncio.CancelledError:
            raise
        except RpcTimeout as e:
            outcome = "timeout"
            log.error(f"Codex prompt failed for chat {session.chat_id}: {e}")
            session.log.error(f"TIMEOUT | {e}")
            reply = TIMEOUT_GUIDANCE
        except Exception as e:
            outcome = "error"
            message = str(e) or e.__class__.__name__
            log.error(f"Codex prompt failed for chat {session.chat_id}: {message}")
            session.log.error(f"ERROR | {message}")
            self.registry.bind_conversation(session, None)
            reply = f"Codex error: {message}"
        finally:
            perf.timing("prompt_ms", (time.perf_counter() - start) * 1000, component="dispatcher", tool=tool, outcome=outcome)

        session.log.info(f"OUT | {reply}")
        await self._deliver(session, reply, context)

    async def _deliver(self, session: Session, reply: str, context: ReplyContext) -> None:
        try:
            await self.send_reply(session.chat_id, reply, context)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(f"Failed to deliver reply to chat {session.chat_id}: {e}")

    def build_arguments(self, prompt: str) -> dict:
        """Arguments for the `codex` tool (new conversation)."""
        cfg = self.config
        args: dict[str, Any] = {"prompt": prompt}
        if cfg.sandbox_mode:
            args["sandbox"] = cfg.sandbox_mode
        if cfg.cwd:
            args["cwd"] = cfg.cwd
        if cfg.approval_policy:
            args["approval-policy"] = cfg.approval_policy
        if cfg.profile:
            args["profile"] = cfg.profile
        if cfg.model:
            args["model"] = cfg.model
        if isinstance(cfg.include_plan_tool, bool):
            args["include-plan-tool"] = cfg.include_plan_tool
        if cfg.base_instructions:
            args["base-instructions"] = cfg.base_instructions
        if cfg.config_overrides:
            args["config"] = cfg.config_overrides
        return args

    async def handle_prompt(self, session: Session, item: PromptItem) -> str:
        """Send one prompt to Codex and return the reply text.

        Raises RpcTimeout, BackendError or NotReady; the caller decides what
        happens to the conversation binding.
        """
        session.mark_interaction()
        session.log.info(f"IN | {item.text}")

        if session.conversation_id is None:
            params = {"name": NEW_CONVERSATION_TOOL, "arguments": self.build_arguments(item.text)}
        else:
            params = {
                "name": CONTINUE_CONVERSATION_TOOL,
                "arguments": {"conversationId": session.conversation_id, "prompt": item.text},
            }
        result = await self.transport.call("tools/call", params)

        found = None
        if isinstance(result, dict):
            rollout = result.get("rolloutPath")
            if rollout:
                session.last_rollout = str(rollout)
            explicit = result.get("conversationId")
            if isinstance(explicit, str) and explicit.strip():
                found = explicit.strip()

        # An explicit conversationId wins over anything the heuristic would find
        if found is None:
            found = extract_conversation_id(result)
        if found:
            self.registry.bind_conversation(session, found)
        elif session.conversation_id is None:
            self.registry.schedule_missing_id_warning(session)

        formatted = render_result(result)

        if isinstance(result, dict) and result.get("isError"):
            self.registry.bind_conversation(session, None)
            raise BackendError(formatted or INTERNAL_ERROR_FALLBACK)

        return formatted or NO_CONTENT_PLACEHOLDER
