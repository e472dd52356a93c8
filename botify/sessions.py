"""
Session: per-chat prompt queue and Codex conversation binding.
SessionRegistry: owns every Session plus the conversation_id -> Session index.

All mutation of a session's conversation binding goes through the registry so
the reverse index never disagrees with Session.conversation_id. Registry
methods are synchronous and never await, which makes each bind/lookup atomic
with respect to the other tasks on the event loop.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from botify.common import session_log_name
from botify.identity import extract_conversation_id

log = logging.getLogger(__name__)

MISSING_ID_WARNING_DELAY = 0.3  # seconds


def _get_session_logger(chat_id: str, log_dir: Optional[Path]) -> logging.Logger:
    """Create a per-chat logger, with a rotating file handler when log_dir is set."""
    from logging.handlers import RotatingFileHandler

    name = session_log_name(chat_id)
    logger = logging.getLogger(f"session.{name}")
    # Clear existing handlers to prevent accumulation when a registry is rebuilt
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_dir / f"{name}.log",
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
        )
        handler.setFormatter(logging.Formatter(
            '%(asctime)s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger


@dataclass
class PromptItem:
    text: str
    sender: str = "user"


@dataclass
class Session:
    """State for one chat. Created on first message, dropped on shutdown."""

    chat_id: str
    conversation_id: Optional[str] = None
    last_rollout: Optional[str] = None
    last_interaction: Optional[datetime] = None
    processing: bool = False
    warned_missing_id: bool = False

    queue: asyncio.Queue = field(default_factory=asyncio.Queue, repr=False)
    created_at: datetime = field(default_factory=datetime.now)
    log: logging.Logger = field(default=log, repr=False)

    _warning_handle: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    @property
    def queue_depth(self) -> int:
        return self.queue.qsize()

    @property
    def warning_armed(self) -> bool:
        return self._warning_handle is not None

    def mark_interaction(self) -> None:
        self.last_interaction = datetime.now()

    def enqueue(self, item: PromptItem) -> None:
        self.queue.put_nowait(item)
        self.log.info(f"QUEUED | from={item.sender} | len={len(item.text)} | depth={self.queue.qsize()}")

    def drain(self) -> int:
        """Drop every queued prompt. Returns how many were dropped."""
        dropped = 0
        while True:
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                return dropped
            self.queue.task_done()
            dropped += 1

    def _cancel_warning(self) -> None:
        if self._warning_handle is not None:
            self._warning_handle.cancel()
            self._warning_handle = None


class SessionRegistry:
    """In-memory registry mapping chat_id to Session, plus the reverse index.

    on_missing_id is called (synchronously, from the event loop) when a
    session's missing-conversation-id warning fires.
    """

    def __init__(
        self,
        log_dir: Optional[Path] = None,
        warning_delay: float = MISSING_ID_WARNING_DELAY,
        on_missing_id: Optional[Callable[[Session], None]] = None,
    ):
        self._log_dir = log_dir
        self.warning_delay = warning_delay
        self.on_missing_id = on_missing_id
        self._sessions: Dict[str, Session] = {}
        self._by_conversation: Dict[str, Session] = {}

    def get_or_create(self, chat_id: Any) -> Session:
        key = str(chat_id)
        session = self._sessions.get(key)
        if session is None:
            session = Session(chat_id=key, log=_get_session_logger(key, self._log_dir))
            self._sessions[key] = session
            log.info(f"Session created for chat {key}")
        return session

    def get(self, chat_id: Any) -> Optional[Session]:
        return self._sessions.get(str(chat_id))

    def all(self) -> List[Session]:
        return list(self._sessions.values())

    def session_for_conversation(self, conversation_id: str) -> Optional[Session]:
        return self._by_conversation.get(conversation_id)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, chat_id: Any) -> bool:
        return str(chat_id) in self._sessions

    # ──────────────────────────────────────────────────────────────
    # Conversation binding
    # ──────────────────────────────────────────────────────────────

    def bind_conversation(self, session: Session, conversation_id: Optional[str]) -> None:
        """Bind (or with None, unbind) a session's conversation id."""
        old = session.conversation_id
        if old is not None and self._by_conversation.get(old) is session:
            del self._by_conversation[old]

        if conversation_id is None:
            session.conversation_id = None
            return

        previous_owner = self._by_conversation.get(conversation_id)
        if previous_owner is not None and previous_owner is not session:
            log.warning(
                f"Conversation {conversation_id} moved from chat {previous_owner.chat_id} "
                f"to chat {session.chat_id}"
            )
            previous_owner.conversation_id = None

        session.conversation_id = conversation_id
        self._by_conversation[conversation_id] = session
        session.warned_missing_id = False
        session._cancel_warning()
        if old != conversation_id:
            session.log.info(f"BOUND | conversation={conversation_id}")

    def resolve_from_payload(self, payload: Any) -> Optional[Session]:
        """Attribute a payload carrying a conversation id to a session and bind it.

        A known id maps straight to its owner. Otherwise the id goes to the
        most recently active session that has no binding yet; this can pick
        the wrong chat when several unbound chats are prompting at once.
        """
        conversation_id = extract_conversation_id(payload)
        if not conversation_id:
            return None

        owner = self._by_conversation.get(conversation_id)
        if owner is None:
            owner = self._most_recent_unbound()
        if owner is None:
            log.debug(f"No session to attribute conversation {conversation_id} to")
            return None

        self.bind_conversation(owner, conversation_id)
        return owner

    def _most_recent_unbound(self) -> Optional[Session]:
        best: Optional[Session] = None
        for session in self._sessions.values():
            if session.conversation_id is not None:
                continue
            if best is None:
                best = session
                continue
            if session.last_interaction is None:
                continue
            if best.last_interaction is None or session.last_interaction > best.last_interaction:
                best = session
        return best

    # ──────────────────────────────────────────────────────────────
    # Reset / warnings
    # ──────────────────────────────────────────────────────────────

    def reset(self, session: Session) -> None:
        """Forget the conversation and pending prompts. The session itself is kept."""
        dropped = session.drain()
        self.bind_conversation(session, None)
        session.last_rollout = None
        session.warned_missing_id = False
        session._cancel_warning()
        session.log.info(f"RESET | dropped={dropped}")

    def schedule_missing_id_warning(self, session: Session) -> None:
        if session.warned_missing_id or session._warning_handle is not None:
            return
        loop = asyncio.get_running_loop()
        session._warning_handle = loop.call_later(self.warning_delay, self._fire_missing_id_warning, session)

    def _fire_missing_id_warning(self, session: Session) -> None:
        session._warning_handle = None
        if session.conversation_id:
            return
        session.warned_missing_id = True
        log.warning(
            f"Codex response for chat {session.chat_id} did not include a conversation id; "
            "follow-up prompts will start new sessions."
        )
        if self.on_missing_id is not None:
            self.on_missing_id(session)

    def clear_all_bindings(self) -> None:
        """Drop every binding and transient flag (backend went away)."""
        for session in self._sessions.values():
            session._cancel_warning()
            session.conversation_id = None
            session.last_rollout = None
            session.warned_missing_id = False
            session.processing = False
        self._by_conversation.clear()

    def drain_all(self) -> int:
        return sum(session.drain() for session in self._sessions.values())
