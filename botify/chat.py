"""
Chat-side collaborators of the bridge.

The bridge never talks to a chat network directly. It receives prompts from an
InboundSource and delivers replies to a ReplySink. The directory transport
below is the one the daemon ships with: JSON files dropped into an inbox
directory become prompts, and every reply chunk is written to an outbox
directory for whatever relays messages to the real chat network.

Inbox file format:
{
    "chat_id": "12345",
    "text": "message text",
    "from": "alice"          // optional, defaults to "user"
}
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from botify.common import chunk_text, ensure_directory

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReplyContext:
    """Structural hints for a reply. preformatted asks for a code block."""
    sender: str = "user"
    preformatted: bool = True


@dataclass(frozen=True)
class InboundMessage:
    chat_id: str
    text: str
    sender: str = "user"


@runtime_checkable
class ReplySink(Protocol):
    """Delivers reply text to a chat."""

    async def send(self, chat_id: str, text: str, context: ReplyContext) -> None:
        ...


@runtime_checkable
class InboundSource(Protocol):
    """Yields prompts that arrived since the last poll."""

    async def poll(self) -> list[InboundMessage]:
        ...


class DirectoryInbox:
    """Reads *.json message files from a directory, oldest name first.

    Files are deleted after reading. Files that cannot be parsed are moved to
    an errors/ subdirectory so they are not retried forever.
    """

    def __init__(self, directory: Path | str):
        self.directory = ensure_directory(directory)
        self.error_dir = self.directory / "errors"

    def _read(self, file_path: Path) -> InboundMessage:
        with open(file_path) as f:
            raw = json.load(f)
        if not isinstance(raw, dict):
            raise ValueError("message file must contain a JSON object")
        chat_id = raw.get("chat_id")
        text = raw.get("text")
        if chat_id is None or str(chat_id).strip() == "":
            raise ValueError("missing chat_id")
        if not isinstance(text, str):
            raise ValueError("missing text")
        return InboundMessage(chat_id=str(chat_id).strip(), text=text, sender=str(raw.get("from") or "user"))

    def _quarantine(self, file_path: Path) -> None:
        self.error_dir.mkdir(exist_ok=True)
        try:
            file_path.rename(self.error_dir / file_path.name)
        except OSError:
            file_path.unlink(missing_ok=True)  # Delete if can't move

    async def poll(self) -> list[InboundMessage]:
        messages = []
        for file_path in sorted(self.directory.glob("*.json")):
            try:
                message = self._read(file_path)
            except (OSError, ValueError) as e:
                log.error(f"Error reading inbox message {file_path.name}: {e}")
                self._quarantine(file_path)
                continue
            file_path.unlink(missing_ok=True)
            log.info(f"Inbox message from {file_path.name}: chat={message.chat_id} len={len(message.text)}")
            messages.append(message)
        return messages


class DirectoryOutbox:
    """Writes each reply chunk as its own JSON file."""

    def __init__(self, directory: Path | str, chunk_size: int = 3500):
        self.directory = ensure_directory(directory)
        self.chunk_size = chunk_size
        self._counter = 0

    async def send(self, chat_id: str, text: str, context: ReplyContext) -> None:
        chunks = chunk_text(text, self.chunk_size)
        for index, chunk in enumerate(chunks):
            self._counter += 1
            name = f"{time.time_ns()}-{self._counter:06d}.json"
            payload = {
                "chat_id": chat_id,
                "text": chunk,
                "preformatted": context.preformatted,
                "reply_to": context.sender,
                "part": index + 1,
                "parts": len(chunks),
            }
            tmp = self.directory / f".{name}.tmp"
            tmp.write_text(json.dumps(payload))
            tmp.rename(self.directory / name)
        log.info(f"Outbox | chat={chat_id} | chunks={len(chunks)}")
