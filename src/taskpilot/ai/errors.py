"""Error types raised by the conversation orchestration core.

Only caller-contract violations surface as exceptions. Anything that comes
from stored conversations, tool output or persisted snapshots is handled
with a best-effort result instead.
"""

from __future__ import annotations

from typing import Any


class TaskpilotError(Exception):
    """Base class for all taskpilot errors."""


class MessageShapeError(TaskpilotError, ValueError):
    """Raised when a stored conversation entry cannot be parsed.

    Attributes:
        index: Position of the offending entry in its batch, if known.
        value: The raw value that failed validation.
    """

    def __init__(self, message: str, *, index: int | None = None, value: Any = None) -> None:
        super().__init__(message)
        self.index = index
        self.value = value


class ConversionError(TaskpilotError, RuntimeError):
    """Raised by a reducer that cannot turn UI messages into model messages."""


class InvalidPhaseError(TaskpilotError, ValueError):
    """Raised when a conversation is moved into an undeclared phase."""

    def __init__(self, phase: str) -> None:
        super().__init__(f"Invalid conversation phase: {phase}")
        self.phase = phase


__all__ = [
    "TaskpilotError",
    "MessageShapeError",
    "ConversionError",
    "InvalidPhaseError",
]
