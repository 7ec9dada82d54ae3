"""Conversation orchestration for the TaskPilot assistant."""

from .errors import ConversionError, InvalidPhaseError, MessageShapeError, TaskpilotError

__all__ = ["TaskpilotError", "MessageShapeError", "ConversionError", "InvalidPhaseError"]
