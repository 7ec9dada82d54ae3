"""Per-session conversation state: phase, tool executions and progress."""

from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Mapping

from ..errors import InvalidPhaseError
from .payloads import ToolPayload, classify_payload

LOGGER = logging.getLogger(__name__)

PhaseName = Literal["initial", "planning", "execution", "verification", "completed"]
ToolStatus = Literal["pending", "running", "completed", "failed"]
InteractionType = Literal["message", "confirmation", "interruption"]

_TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})
_UPDATE_STATUSES: frozenset[str] = frozenset({"running", "completed", "failed"})
_KNOWN_STATUSES: frozenset[str] = frozenset({"pending", "running", "completed", "failed"})
_INTERACTION_TYPES: frozenset[str] = frozenset({"message", "confirmation", "interruption"})
DEFAULT_MODE = "primary"


@dataclass(slots=True, frozen=True)
class ConversationPhase:
    """Descriptive record for one phase; the criteria are informational only."""

    name: str
    description: str
    entry_criteria: tuple[str, ...]
    exit_criteria: tuple[str, ...]


PHASES: Mapping[str, ConversationPhase] = {
    "initial": ConversationPhase(
        name="Initial",
        description="Starting phase of conversation",
        entry_criteria=("New conversation started",),
        exit_criteria=("User request understood",),
    ),
    "planning": ConversationPhase(
        name="Planning",
        description="Analyzing user request and creating plan",
        entry_criteria=("Complex request identified", "Multiple steps needed"),
        exit_criteria=("Plan created and confirmed",),
    ),
    "execution": ConversationPhase(
        name="Execution",
        description="Executing planned operations",
        entry_criteria=("Plan confirmed", "Tools available"),
        exit_criteria=("All operations completed",),
    ),
    "verification": ConversationPhase(
        name="Verification",
        description="Verifying results and getting user feedback",
        entry_criteria=("Operations completed",),
        exit_criteria=("User satisfied", "Results confirmed"),
    ),
    "completed": ConversationPhase(
        name="Completed",
        description="Conversation completed successfully",
        entry_criteria=("User satisfied", "No further actions needed"),
        exit_criteria=("Conversation ended",),
    ),
}


@dataclass(slots=True)
class ToolExecutionState:
    """Lifecycle record for one tool invocation."""

    tool_name: str
    execution_id: str
    status: ToolStatus = "pending"
    start_time: float = 0.0
    end_time: float | None = None
    result: ToolPayload | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in _TERMINAL_STATUSES

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "toolName": self.tool_name,
            "executionId": self.execution_id,
            "status": self.status,
            "startTime": self.start_time,
        }
        if self.end_time is not None:
            payload["endTime"] = self.end_time
        if self.result is not None:
            payload["result"] = self.result.to_raw()
        if self.error is not None:
            payload["error"] = self.error
        return payload

    @classmethod
    def from_payload(cls, value: Mapping[str, Any]) -> ToolExecutionState:
        status = str(value.get("status") or "pending")
        if status == "executing":
            status = "running"
        if status not in _KNOWN_STATUSES:
            raise ValueError(f"unknown tool status: {status}")
        end_time = value.get("endTime")
        error = value.get("error")
        return cls(
            tool_name=str(value["toolName"]),
            execution_id=str(value["executionId"]),
            status=status,  # type: ignore[arg-type]
            start_time=float(value.get("startTime") or 0.0),
            end_time=float(end_time) if end_time is not None else None,
            result=classify_payload(value.get("result")),
            error=str(error) if error is not None else None,
        )


@dataclass(slots=True)
class ProgressTracker:
    """Step counter for a multi-step operation."""

    operation_id: str
    total_steps: int
    current_step: int = 0
    step_description: str = ""
    progress_percentage: int = 0

    def recompute(self) -> None:
        self.progress_percentage = _percentage(self.current_step, self.total_steps)

    def as_payload(self) -> dict[str, Any]:
        return {
            "operationId": self.operation_id,
            "totalSteps": self.total_steps,
            "currentStep": self.current_step,
            "stepDescription": self.step_description,
            "progressPercentage": self.progress_percentage,
        }

    @classmethod
    def from_payload(cls, value: Mapping[str, Any]) -> ProgressTracker:
        tracker = cls(
            operation_id=str(value["operationId"]),
            total_steps=int(value.get("totalSteps") or 0),
            current_step=int(value.get("currentStep") or 0),
            step_description=str(value.get("stepDescription") or ""),
        )
        percentage = value.get("progressPercentage")
        if percentage is None:
            tracker.recompute()
        else:
            tracker.progress_percentage = int(percentage)
        return tracker


@dataclass(slots=True)
class UserInteraction:
    timestamp: float
    type: InteractionType
    content: str
    response: str | None = None

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"timestamp": self.timestamp, "type": self.type, "content": self.content}
        if self.response is not None:
            payload["response"] = self.response
        return payload

    @classmethod
    def from_payload(cls, value: Mapping[str, Any]) -> UserInteraction:
        kind = str(value.get("type") or "message")
        if kind not in _INTERACTION_TYPES:
            kind = "message"
        response = value.get("response")
        return cls(
            timestamp=float(value.get("timestamp") or 0.0),
            type=kind,  # type: ignore[arg-type]
            content=str(value.get("content") or ""),
            response=str(response) if response is not None else None,
        )


@dataclass(slots=True, frozen=True)
class ConversationSnapshot:
    """Compact view used when a conversation is compacted or handed off."""

    mode: str
    tool_states_by_name: Mapping[str, ToolStatus]
    phase: str

    def as_payload(self) -> dict[str, Any]:
        return {"mode": self.mode, "toolStates": dict(self.tool_states_by_name), "phase": self.phase}


class ConversationState:
    """Tracks phase, tool executions and progress for one conversation session.

    Instances are created when a session starts and discarded when it ends;
    nothing here is shared between sessions. Operations on unknown ids are
    silent no-ops. Only :meth:`set_phase` raises, for undeclared phase names.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._phase: str = "initial"
        self._mode: str = DEFAULT_MODE
        self._executions: list[ToolExecutionState] = []
        self._interactions: list[UserInteraction] = []
        self._progress: dict[str, ProgressTracker] = {}
        self._tool_repetition: dict[str, Any] = {}
        self._last_activity: float = clock()

    # ------------------------------------------------------------------
    # Phase
    # ------------------------------------------------------------------

    @property
    def phase(self) -> str:
        return self._phase

    def get_phase(self) -> str:
        return self._phase

    def set_phase(self, phase: str) -> None:
        """Move to ``phase``.

        Raises:
            InvalidPhaseError: ``phase`` is not one of the declared phases.
        """
        if phase not in PHASES:
            raise InvalidPhaseError(phase)
        if phase != self._phase:
            LOGGER.debug("Conversation phase %s -> %s", self._phase, phase)
        self._phase = phase
        self._touch()

    @staticmethod
    def get_phase_details(phase: str) -> ConversationPhase | None:
        return PHASES.get(phase)

    @property
    def mode(self) -> str:
        return self._mode

    def set_mode(self, mode: str) -> None:
        self._mode = mode
        self._touch()

    # ------------------------------------------------------------------
    # Tool executions
    # ------------------------------------------------------------------

    def start_execution(self, tool_name: str, execution_id: str) -> ToolExecutionState:
        state = ToolExecutionState(
            tool_name=tool_name,
            execution_id=execution_id,
            status="pending",
            start_time=self._clock(),
        )
        self._executions.append(state)
        self._touch()
        return state

    def update_state(
        self,
        execution_id: str,
        status: ToolStatus,
        result: Any = None,
        error: str | None = None,
    ) -> None:
        """Advance an execution to ``running``, ``completed`` or ``failed``.

        Unknown ids are ignored, and so is any update to an execution that
        already reached a terminal status.

        Raises:
            ValueError: ``status`` is not an update status.
        """
        if status not in _UPDATE_STATUSES:
            raise ValueError(f"Invalid tool status update: {status}")
        state = self._find(execution_id)
        if state is None:
            return
        if state.is_terminal:
            LOGGER.debug("Ignoring %s update for finished execution %s", status, execution_id)
            return
        state.status = status
        if status in _TERMINAL_STATUSES:
            state.end_time = max(self._clock(), state.start_time)
        if result is not None:
            state.result = classify_payload(result)
        if error is not None:
            state.error = error
        self._touch()

    def complete_execution(self, execution_id: str, result: Any) -> None:
        state = self._find(execution_id)
        if state is None or state.is_terminal:
            return
        state.status = "completed"
        state.end_time = max(self._clock(), state.start_time)
        state.result = classify_payload(result)
        self._touch()

    def fail_execution(self, execution_id: str, error: str) -> None:
        state = self._find(execution_id)
        if state is None or state.is_terminal:
            return
        state.status = "failed"
        state.end_time = max(self._clock(), state.start_time)
        state.error = error
        self._touch()

    def current_execution(self) -> ToolExecutionState | None:
        return self._executions[-1] if self._executions else None

    def executions(self) -> list[ToolExecutionState]:
        return list(self._executions)

    def get_execution(self, execution_id: str) -> ToolExecutionState | None:
        return self._find(execution_id)

    def tool_states_by_name(self) -> dict[str, ToolStatus]:
        states: dict[str, ToolStatus] = {}
        for execution in self._executions:
            states[execution.tool_name] = execution.status
        return states

    def _find(self, execution_id: str) -> ToolExecutionState | None:
        for state in self._executions:
            if state.execution_id == execution_id:
                return state
        return None

    # ------------------------------------------------------------------
    # Interactions
    # ------------------------------------------------------------------

    def record_interaction(
        self,
        type: InteractionType,
        content: str,
        response: str | None = None,
    ) -> UserInteraction:
        interaction = UserInteraction(timestamp=self._clock(), type=type, content=content, response=response)
        self._interactions.append(interaction)
        self._touch()
        return interaction

    def recent_interactions(self, count: int = 10) -> list[UserInteraction]:
        if count <= 0:
            return []
        return list(self._interactions[-count:])

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def start_progress(self, operation_id: str, total_steps: int, description: str) -> ProgressTracker:
        tracker = ProgressTracker(
            operation_id=operation_id,
            total_steps=int(total_steps),
            current_step=0,
            step_description=description,
            progress_percentage=0,
        )
        self._progress[operation_id] = tracker
        self._touch()
        return tracker

    def update_progress(self, operation_id: str, current_step: int, description: str | None = None) -> None:
        tracker = self._progress.get(operation_id)
        if tracker is None:
            return
        tracker.current_step = int(current_step)
        if description:
            tracker.step_description = description
        tracker.recompute()
        self._touch()

    def complete_progress(self, operation_id: str) -> None:
        tracker = self._progress.get(operation_id)
        if tracker is None:
            return
        tracker.current_step = tracker.total_steps
        tracker.progress_percentage = 100
        tracker.step_description = "Completed"
        self._touch()

    def get_progress(self, operation_id: str) -> ProgressTracker | None:
        return self._progress.get(operation_id)

    def active_progress(self) -> list[ProgressTracker]:
        return list(self._progress.values())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def last_activity(self) -> float:
        return self._last_activity

    def idle_seconds(self) -> float:
        return max(0.0, self._clock() - self._last_activity)

    def reset(self) -> None:
        self._phase = "initial"
        self._executions.clear()
        self._interactions.clear()
        self._progress.clear()
        self._tool_repetition.clear()
        self._touch()

    @property
    def tool_repetition(self) -> dict[str, Any]:
        """Persisted repeat-guard counters for this session."""
        return dict(self._tool_repetition)

    def set_tool_repetition(self, payload: Mapping[str, Any]) -> None:
        self._tool_repetition = dict(payload)

    def create_snapshot(self) -> ConversationSnapshot:
        return ConversationSnapshot(
            mode=self._mode,
            tool_states_by_name=self.tool_states_by_name(),
            phase=self._phase,
        )

    def _touch(self) -> None:
        self._last_activity = self._clock()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def serialize(self) -> dict[str, Any]:
        """Return the full state in a JSON-friendly structural form."""
        return {
            "currentPhase": self._phase,
            "currentMode": self._mode,
            "toolExecutionStack": [state.as_payload() for state in self._executions],
            "userInteractionHistory": [item.as_payload() for item in self._interactions],
            "progressTrackers": [[key, tracker.as_payload()] for key, tracker in self._progress.items()],
            "toolRepetition": dict(self._tool_repetition),
            "lastActivityTimestamp": self._last_activity,
        }

    def to_json(self) -> str:
        return json.dumps(self.serialize(), ensure_ascii=False, default=str)

    @classmethod
    def deserialize(
        cls,
        payload: Mapping[str, Any] | str | None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> ConversationState:
        """Rebuild a tracker from :meth:`serialize` output.

        Absent or corrupt fields fall back to their defaults, and malformed
        entries inside the stacks are dropped, so a partially damaged
        snapshot still produces a usable tracker.
        """
        state = cls(clock=clock)
        data = _coerce_mapping(payload)

        phase = data.get("currentPhase")
        if isinstance(phase, str) and phase in PHASES:
            state._phase = phase
        elif phase is not None:
            LOGGER.warning("Ignoring unknown persisted phase %r", phase)

        mode = data.get("currentMode")
        if isinstance(mode, str) and mode:
            state._mode = mode

        for entry in _as_list(data.get("toolExecutionStack")):
            try:
                state._executions.append(ToolExecutionState.from_payload(entry))
            except (KeyError, TypeError, ValueError, AttributeError, OverflowError):
                LOGGER.warning("Dropping malformed tool execution entry: %r", entry)

        for entry in _as_list(data.get("userInteractionHistory")):
            try:
                state._interactions.append(UserInteraction.from_payload(entry))
            except (TypeError, ValueError, AttributeError, OverflowError):
                LOGGER.warning("Dropping malformed interaction entry: %r", entry)

        for entry in _iter_progress_entries(data.get("progressTrackers")):
            try:
                tracker = ProgressTracker.from_payload(entry)
            except (KeyError, TypeError, ValueError, AttributeError, OverflowError):
                LOGGER.warning("Dropping malformed progress entry: %r", entry)
                continue
            state._progress[tracker.operation_id] = tracker

        repetition = data.get("toolRepetition")
        if isinstance(repetition, Mapping):
            state._tool_repetition = dict(repetition)

        last_activity = data.get("lastActivityTimestamp")
        if (
            isinstance(last_activity, (int, float))
            and not isinstance(last_activity, bool)
            and math.isfinite(last_activity)
            and last_activity > 0
        ):
            state._last_activity = float(last_activity)
        return state


def _percentage(current: int, total: int) -> int:
    if total <= 0:
        return 0
    return int(math.floor(current / total * 100 + 0.5))


def _coerce_mapping(payload: Mapping[str, Any] | str | None) -> Mapping[str, Any]:
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError:
            LOGGER.warning("Persisted conversation state is not valid JSON; starting fresh")
            return {}
    if isinstance(payload, Mapping):
        return payload
    if payload is not None:
        LOGGER.warning("Persisted conversation state has unexpected type %s", type(payload).__name__)
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    return []


def _iter_progress_entries(value: Any) -> list[Any]:
    # Accepts both the [[key, tracker], ...] pair form and a {key: tracker} map.
    if isinstance(value, Mapping):
        return list(value.values())
    entries: list[Any] = []
    for item in _as_list(value):
        if isinstance(item, (list, tuple)) and len(item) == 2:
            entries.append(item[1])
        else:
            entries.append(item)
    return entries


__all__ = [
    "PHASES",
    "PhaseName",
    "ToolStatus",
    "ConversationPhase",
    "ToolExecutionState",
    "ProgressTracker",
    "UserInteraction",
    "ConversationSnapshot",
    "ConversationState",
]
