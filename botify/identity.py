"""
Conversation id extraction from arbitrarily shaped Codex payloads.

The MCP server does not surface the conversation id in one well-typed place:
depending on the message it shows up as `conversationId`, `session_id`,
`msg.sessionId`, or as a bare `id` inside a conversation-shaped object. This
module scans a decoded JSON value breadth-first and returns the first string
that looks like one. Pure and deterministic; no logging, no state.
"""
from __future__ import annotations

from collections import deque
from typing import Any, Optional

_MARKERS = ("conversation", "session")


def _is_id_key(key: str) -> bool:
    normalized = key.lower()
    return any(marker in normalized and "id" in normalized for marker in _MARKERS)


def looks_like_conversation_container(obj: Any) -> bool:
    """True if obj is a dict that describes a conversation or session."""
    if not isinstance(obj, dict):
        return False
    type_value = obj.get("type")
    if isinstance(type_value, str):
        normalized_type = type_value.lower()
        if any(marker in normalized_type for marker in _MARKERS):
            return True
    return any(
        any(marker in str(key).lower() for marker in _MARKERS)
        for key in obj
    )


def extract_conversation_id(payload: Any) -> Optional[str]:
    """Return the first conversation/session id found in payload, or None.

    Dicts and lists are walked breadth-first; only string values are
    candidates, and blank strings never match.
    """
    if not isinstance(payload, (dict, list)):
        return None

    visited: set[int] = set()
    queue: deque[Any] = deque([payload])

    while queue:
        current = queue.popleft()
        if id(current) in visited:
            continue
        visited.add(id(current))

        if isinstance(current, list):
            queue.extend(item for item in current if isinstance(item, (dict, list)))
            continue

        for key, value in current.items():
            if isinstance(value, str):
                key = str(key)
                if _is_id_key(key) or (key.lower() == "id" and looks_like_conversation_container(current)):
                    trimmed = value.strip()
                    if trimmed:
                        return trimmed
                continue
            if isinstance(value, (dict, list)):
                queue.append(value)

    return None
