"""Context window bounding and loop detection for stored conversations.

All helpers are pure and accept either :class:`StoredMessage` objects or the
raw persisted mappings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence, TypeVar

from .message_types import StoredMessage

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGES = 50
DEFAULT_LOOP_WINDOW = 6
PRESERVED_HEAD = 3
_SIGNATURE_SEPARATOR = "|"

M = TypeVar("M")


@dataclass(slots=True)
class ConversationStats:
    """Aggregate counts over a stored conversation."""

    total: int = 0
    user_messages: int = 0
    assistant_messages: int = 0
    tool_messages: int = 0
    total_tool_calls: int = 0
    unique_tools: list[str] = field(default_factory=list)
    conversation_length: int = 0
    avg_message_length: float = 0.0

    def as_payload(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "userMessages": self.user_messages,
            "assistantMessages": self.assistant_messages,
            "toolMessages": self.tool_messages,
            "totalToolCalls": self.total_tool_calls,
            "uniqueTools": list(self.unique_tools),
            "conversationLength": self.conversation_length,
            "avgMessageLength": self.avg_message_length,
        }


def optimize_context(messages: Sequence[M], max_messages: int = DEFAULT_MAX_MESSAGES) -> list[M]:
    """Bound ``messages`` to ``max_messages`` entries.

    Conversations within the limit pass through unchanged. Longer ones keep
    the first three entries (opening context) followed by the most recent
    ``max_messages - 3`` entries; everything in between is dropped.

    Raises:
        ValueError: ``max_messages`` is smaller than 1.
    """

    if max_messages < 1:
        raise ValueError("max_messages must be at least 1")
    items = list(messages)
    if len(items) <= max_messages:
        return items
    head_count = min(PRESERVED_HEAD, max_messages)
    tail_count = max_messages - head_count
    LOGGER.info("Optimizing context: %s -> %s messages", len(items), max_messages)
    tail = items[len(items) - tail_count:] if tail_count else []
    return items[:head_count] + tail


def message_signature(message: Any) -> str:
    return f"{_role_of(message)}-{len(_tool_calls_of(message))}"


def detect_loop(messages: Sequence[Any], window_size: int = DEFAULT_LOOP_WINDOW) -> bool:
    """Return True when the last window repeats the window before it.

    Each message contributes a ``"{role}-{toolCallCount}"`` element; the two
    windows are compared as joined strings.
    """

    if window_size < 1 or len(messages) < window_size * 2:
        return False
    items = list(messages)
    recent = _SIGNATURE_SEPARATOR.join(message_signature(item) for item in items[-window_size:])
    previous = _SIGNATURE_SEPARATOR.join(
        message_signature(item) for item in items[-window_size * 2 : -window_size]
    )
    if recent == previous:
        LOGGER.warning("Conversation loop detected: %s", recent)
        return True
    return False


def conversation_stats(messages: Sequence[Any]) -> ConversationStats:
    """Count messages per role, tool calls and text length in one pass."""

    stats = ConversationStats(total=len(messages))
    seen_tools: dict[str, None] = {}
    for message in messages:
        role = _role_of(message)
        if role == "user":
            stats.user_messages += 1
            stats.conversation_length += len(_content_of(message))
        elif role == "assistant":
            stats.assistant_messages += 1
            stats.conversation_length += len(_content_of(message))
            calls = _tool_calls_of(message)
            stats.total_tool_calls += len(calls)
            for call in calls:
                name = _tool_name_of(call)
                if name:
                    seen_tools.setdefault(name, None)
        elif role == "tool":
            stats.tool_messages += 1
    stats.unique_tools = list(seen_tools)
    stats.avg_message_length = stats.conversation_length / stats.total if stats.total else 0.0
    return stats


class ContextWindowManager:
    """Applies configured limits to a conversation before conversion."""

    def __init__(self, max_messages: int = DEFAULT_MAX_MESSAGES, loop_window: int = DEFAULT_LOOP_WINDOW) -> None:
        if max_messages < 1:
            raise ValueError("max_messages must be at least 1")
        self.max_messages = max_messages
        self.loop_window = max(1, loop_window)

    def optimize(self, messages: Sequence[M]) -> list[M]:
        return optimize_context(messages, self.max_messages)

    def detect_loop(self, messages: Sequence[Any]) -> bool:
        return detect_loop(messages, self.loop_window)

    def stats(self, messages: Sequence[Any]) -> ConversationStats:
        return conversation_stats(messages)


def _role_of(message: Any) -> str:
    if isinstance(message, StoredMessage):
        return message.role
    if isinstance(message, Mapping):
        return str(message.get("role") or "")
    return str(getattr(message, "role", "") or "")


def _content_of(message: Any) -> str:
    if isinstance(message, StoredMessage):
        return message.text
    if isinstance(message, Mapping):
        content = message.get("content")
    else:
        content = getattr(message, "content", None)
    return content if isinstance(content, str) else ""


def _tool_calls_of(message: Any) -> Sequence[Any]:
    if isinstance(message, StoredMessage):
        return message.tool_calls
    if isinstance(message, Mapping):
        calls = message.get("toolCalls", message.get("tool_calls"))
    else:
        calls = getattr(message, "tool_calls", None)
    if isinstance(calls, (list, tuple)):
        return calls
    return ()


def _tool_name_of(call: Any) -> str | None:
    if isinstance(call, Mapping):
        name = call.get("name")
    else:
        name = getattr(call, "name", None)
    return str(name) if name else None


__all__ = [
    "DEFAULT_MAX_MESSAGES",
    "DEFAULT_LOOP_WINDOW",
    "ConversationStats",
    "ContextWindowManager",
    "optimize_context",
    "detect_loop",
    "conversation_stats",
    "message_signature",
]
