"""Persistence seam for conversation logs and state snapshots."""

from __future__ import annotations

import copy
import threading
from typing import Any, Iterable, Mapping, Protocol

__all__ = ["ConversationStore", "InMemoryConversationStore"]


class ConversationStore(Protocol):
    """Durable storage keyed by chat session.

    Messages are exchanged in their persisted (camelCase mapping) form so a
    store never needs to know the in-process message types.
    """

    def load_messages(self, session_id: str) -> list[Mapping[str, Any]]:
        ...

    def append_messages(self, session_id: str, messages: Iterable[Mapping[str, Any]]) -> None:
        ...

    def load_state(self, session_id: str) -> Mapping[str, Any] | None:
        ...

    def save_state(self, session_id: str, state: Mapping[str, Any]) -> None:
        ...


class InMemoryConversationStore:
    """Thread-safe dictionary-backed :class:`ConversationStore`."""

    def __init__(self, *, initial: Mapping[str, Iterable[Mapping[str, Any]]] | None = None) -> None:
        self._messages: dict[str, list[dict[str, Any]]] = {}
        self._states: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()
        for session_id, messages in (initial or {}).items():
            self._messages[session_id] = [dict(message) for message in messages]

    def load_messages(self, session_id: str) -> list[Mapping[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._messages.get(session_id, []))

    def append_messages(self, session_id: str, messages: Iterable[Mapping[str, Any]]) -> None:
        entries = [copy.deepcopy(dict(message)) for message in messages]
        if not entries:
            return
        with self._lock:
            self._messages.setdefault(session_id, []).extend(entries)

    def load_state(self, session_id: str) -> Mapping[str, Any] | None:
        with self._lock:
            state = self._states.get(session_id)
            return copy.deepcopy(state) if state is not None else None

    def save_state(self, session_id: str, state: Mapping[str, Any]) -> None:
        with self._lock:
            self._states[session_id] = copy.deepcopy(dict(state))

    def sessions(self) -> list[str]:
        with self._lock:
            return sorted(set(self._messages) | set(self._states))
