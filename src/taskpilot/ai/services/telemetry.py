"""Per-turn usage telemetry."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Protocol


@dataclass(slots=True)
class ConversationUsageEvent:
    """One completed (or absorbed) conversation turn."""

    session_id: str
    request_id: str
    status: str
    timestamp: float
    message_count: int
    model_message_count: int
    tool_names: tuple[str, ...] = ()
    failed_tools: int = 0
    used_fallback: bool = False
    loop_detected: bool = False
    duration_seconds: float = 0.0
    stats: dict[str, Any] = field(default_factory=dict)

    def as_payload(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "requestId": self.request_id,
            "status": self.status,
            "timestamp": self.timestamp,
            "messageCount": self.message_count,
            "modelMessageCount": self.model_message_count,
            "toolNames": list(self.tool_names),
            "failedTools": self.failed_tools,
            "usedFallback": self.used_fallback,
            "loopDetected": self.loop_detected,
            "durationSeconds": self.duration_seconds,
            "stats": dict(self.stats),
        }


class TelemetrySink(Protocol):
    """Sink interface used to collect telemetry events."""

    def record(self, event: ConversationUsageEvent) -> None:
        ...


class InMemoryTelemetrySink:
    """Ring-buffer sink for local inspection and tests."""

    def __init__(self, capacity: int = 200) -> None:
        self._capacity = max(10, capacity)
        self._buffer: deque[ConversationUsageEvent] = deque(maxlen=self._capacity)
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def record(self, event: ConversationUsageEvent) -> None:
        with self._lock:
            self._buffer.append(event)

    def tail(self, limit: int | None = None) -> list[ConversationUsageEvent]:
        with self._lock:
            events = list(self._buffer)
        if limit is None or limit >= len(events):
            return events
        return events[-limit:] if limit > 0 else []

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


__all__ = ["ConversationUsageEvent", "TelemetrySink", "InMemoryTelemetrySink"]
