"""Guard against the model repeating the exact same tool call."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RepetitionVerdict:
    allow_execution: bool
    message: str | None = None


@dataclass(slots=True)
class ToolRepetitionDetector:
    """Blocks a tool call once it has repeated ``limit`` times in a row.

    Arguments are compared with sorted keys so ordering differences do not
    hide a repeat. A limit of 0 disables the guard. After blocking, the
    counters reset so the conversation can recover.
    """

    limit: int = 3
    _previous: str | None = None
    _repeats: int = 0

    def __post_init__(self) -> None:
        try:
            value = int(self.limit)
        except (TypeError, ValueError):
            LOGGER.warning("Invalid repetition limit %r; using 3", self.limit)
            value = 3
        self.limit = max(0, value)

    def check(self, tool_name: str, arguments: Mapping[str, Any] | Any = None) -> RepetitionVerdict:
        signature = _signature(tool_name, arguments)
        if signature == self._previous:
            self._repeats += 1
        else:
            self._repeats = 0
            self._previous = signature

        if self.limit > 0 and self._repeats >= self.limit:
            self._repeats = 0
            self._previous = None
            LOGGER.warning("Blocking repeated tool call %s", tool_name)
            return RepetitionVerdict(
                allow_execution=False,
                message=(
                    f"Detected {self.limit} consecutive identical tool calls. This may indicate the AI is "
                    "stuck in a loop. Please try a different approach or provide more specific guidance."
                ),
            )
        return RepetitionVerdict(allow_execution=True)

    def reset(self) -> None:
        self._previous = None
        self._repeats = 0

    def as_payload(self) -> dict[str, Any]:
        return {"previous": self._previous, "repeats": self._repeats}

    @classmethod
    def from_payload(cls, value: Any, *, limit: int = 3) -> ToolRepetitionDetector:
        """Restore counters saved by :meth:`as_payload`; bad values start fresh."""

        detector = cls(limit)
        if not isinstance(value, Mapping):
            return detector
        previous = value.get("previous")
        repeats = value.get("repeats")
        if isinstance(previous, str):
            detector._previous = previous
            if isinstance(repeats, int) and not isinstance(repeats, bool) and repeats > 0:
                detector._repeats = repeats
        return detector


def _signature(tool_name: str, arguments: Any) -> str:
    params = dict(arguments) if isinstance(arguments, Mapping) else {}
    return json.dumps({"name": tool_name, "parameters": params}, sort_keys=True, default=str)


__all__ = ["RepetitionVerdict", "ToolRepetitionDetector"]
