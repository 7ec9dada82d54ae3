"""Tests for the per-session conversation state tracker."""

from __future__ import annotations

import json

import pytest

from taskpilot.ai.errors import InvalidPhaseError
from taskpilot.ai.orchestration.conversation_state import PHASES, ConversationState
from taskpilot.ai.orchestration.payloads import StructuredPayload, TextPayload


@pytest.fixture
def state(clock) -> ConversationState:
    return ConversationState(clock=clock)


# =============================================================================
# Phases
# =============================================================================


class TestPhases:
    def test_starts_in_initial_phase(self, state: ConversationState):
        assert state.phase == "initial"
        assert state.get_phase() == "initial"
        assert state.mode == "primary"

    def test_set_phase_updates_and_touches(self, state: ConversationState, clock):
        clock.advance(10)

        state.set_phase("planning")

        assert state.phase == "planning"
        assert state.last_activity == clock.now

    def test_unknown_phase_raises_value_error(self, state: ConversationState):
        with pytest.raises(InvalidPhaseError) as excinfo:
            state.set_phase("celebration")

        assert isinstance(excinfo.value, ValueError)
        assert "celebration" in str(excinfo.value)
        assert state.phase == "initial"

    def test_phase_details(self):
        details = ConversationState.get_phase_details("verification")

        assert details is not None
        assert details.name == "Verification"
        assert "Operations completed" in details.entry_criteria
        assert ConversationState.get_phase_details("unknown") is None
        assert set(PHASES) == {"initial", "planning", "execution", "verification", "completed"}


# =============================================================================
# Tool executions
# =============================================================================


class TestToolExecutions:
    def test_start_pushes_pending_record(self, state: ConversationState, clock):
        record = state.start_execution("getTasks", "exec-1")

        assert record.status == "pending"
        assert record.start_time == clock.now
        assert record.end_time is None
        assert state.current_execution() is record

    def test_running_has_no_end_time(self, state: ConversationState):
        state.start_execution("getTasks", "exec-1")

        state.update_state("exec-1", "running")

        record = state.get_execution("exec-1")
        assert record.status == "running"
        assert record.end_time is None

    def test_terminal_update_sets_end_time_and_result(self, state: ConversationState, clock):
        state.start_execution("getTasks", "exec-1")
        clock.advance(2)

        state.update_state("exec-1", "completed", result="3 tasks")

        record = state.get_execution("exec-1")
        assert record.status == "completed"
        assert record.end_time == clock.now
        assert record.end_time >= record.start_time
        assert record.result == TextPayload("3 tasks")

    def test_terminal_status_never_regresses(self, state: ConversationState):
        state.start_execution("getTasks", "exec-1")
        state.complete_execution("exec-1", {"ok": True})

        state.update_state("exec-1", "running")
        state.fail_execution("exec-1", "late failure")

        record = state.get_execution("exec-1")
        assert record.status == "completed"
        assert record.error is None
        assert record.result == StructuredPayload({"ok": True})

    def test_fail_execution_records_error(self, state: ConversationState):
        state.start_execution("listCalendarEvents", "exec-2")

        state.fail_execution("exec-2", "Calendar unavailable")

        record = state.get_execution("exec-2")
        assert record.status == "failed"
        assert record.error == "Calendar unavailable"
        assert record.end_time is not None

    def test_unknown_execution_is_ignored(self, state: ConversationState):
        state.update_state("missing", "completed", result="x")
        state.complete_execution("missing", "x")
        state.fail_execution("missing", "x")

        assert state.executions() == []

    def test_invalid_status_update_raises(self, state: ConversationState):
        state.start_execution("getTasks", "exec-1")

        with pytest.raises(ValueError):
            state.update_state("exec-1", "pending")  # type: ignore[arg-type]

    def test_error_and_result_are_written_only_when_provided(self, state: ConversationState):
        state.start_execution("getTasks", "exec-1")
        state.update_state("exec-1", "running", result="partial")

        state.update_state("exec-1", "failed", error="timeout")

        record = state.get_execution("exec-1")
        assert record.result == TextPayload("partial")
        assert record.error == "timeout"

    def test_snapshot_reports_latest_status_per_tool(self, state: ConversationState):
        state.set_mode("subagent")
        state.start_execution("getTasks", "exec-1")
        state.fail_execution("exec-1", "boom")
        state.start_execution("getTasks", "exec-2")
        state.complete_execution("exec-2", "ok")
        state.start_execution("listCalendarEvents", "exec-3")

        snapshot = state.create_snapshot()

        assert snapshot.mode == "subagent"
        assert snapshot.phase == "initial"
        assert dict(snapshot.tool_states_by_name) == {"getTasks": "completed", "listCalendarEvents": "pending"}
        assert snapshot.as_payload()["toolStates"]["getTasks"] == "completed"


# =============================================================================
# Progress
# =============================================================================


class TestProgress:
    def test_percentage_rounds_half_up(self, state: ConversationState):
        state.start_progress("sync", 3, "Fetching")

        state.update_progress("sync", 1)
        assert state.get_progress("sync").progress_percentage == 33

        state.update_progress("sync", 2, "Merging")
        tracker = state.get_progress("sync")
        assert tracker.progress_percentage == 67
        assert tracker.step_description == "Merging"

        state.start_progress("eighths", 8, "Counting")
        state.update_progress("eighths", 1)
        assert state.get_progress("eighths").progress_percentage == 13

    def test_zero_total_reports_zero_percent(self, state: ConversationState):
        state.start_progress("empty", 0, "Nothing")

        state.update_progress("empty", 5)

        assert state.get_progress("empty").progress_percentage == 0

    def test_complete_progress(self, state: ConversationState):
        state.start_progress("sync", 4, "Fetching")

        state.complete_progress("sync")

        tracker = state.get_progress("sync")
        assert tracker.current_step == 4
        assert tracker.progress_percentage == 100
        assert tracker.step_description == "Completed"

    def test_unknown_operation_is_ignored(self, state: ConversationState):
        state.update_progress("ghost", 1)
        state.complete_progress("ghost")

        assert state.get_progress("ghost") is None
        assert state.active_progress() == []


# =============================================================================
# Interactions and lifecycle
# =============================================================================


def test_interactions_and_idle_time(state: ConversationState, clock) -> None:
    state.record_interaction("message", "hello")
    state.record_interaction("confirmation", "yes", response="done")
    clock.advance(30)

    recent = state.recent_interactions(1)

    assert [item.content for item in recent] == ["yes"]
    assert state.recent_interactions(0) == []
    assert state.idle_seconds() == 30


def test_reset_clears_everything_but_mode(state: ConversationState) -> None:
    state.set_mode("focus")
    state.set_phase("execution")
    state.start_execution("getTasks", "exec-1")
    state.start_progress("op", 2, "x")
    state.record_interaction("message", "hi")

    state.reset()

    assert state.phase == "initial"
    assert state.executions() == []
    assert state.active_progress() == []
    assert state.recent_interactions() == []
    assert state.mode == "focus"


# =============================================================================
# Persistence
# =============================================================================


class TestPersistence:
    def test_round_trip(self, state: ConversationState, clock):
        state.set_phase("execution")
        state.set_mode("subagent")
        state.start_execution("getTasks", "exec-1")
        state.complete_execution("exec-1", {"metadata": {"taskCount": 1}})
        state.start_execution("listCalendarEvents", "exec-2")
        state.start_progress("sync", 3, "Fetching")
        state.update_progress("sync", 1)
        state.record_interaction("message", "plan my week")

        restored = ConversationState.deserialize(state.to_json(), clock=clock)

        assert restored.serialize() == state.serialize()
        assert restored.phase == "execution"
        assert restored.get_execution("exec-1").result == StructuredPayload({"metadata": {"taskCount": 1}})

    def test_serialized_shape(self, state: ConversationState):
        state.start_progress("sync", 2, "Fetching")

        payload = state.serialize()

        assert set(payload) == {
            "currentPhase",
            "currentMode",
            "toolExecutionStack",
            "userInteractionHistory",
            "progressTrackers",
            "toolRepetition",
            "lastActivityTimestamp",
        }
        assert payload["progressTrackers"][0][0] == "sync"
        json.dumps(payload)

    @pytest.mark.parametrize("payload", [None, "not json", "[1, 2]", 42, {}])
    def test_corrupt_payloads_fall_back_to_defaults(self, payload, clock):
        restored = ConversationState.deserialize(payload, clock=clock)

        assert restored.phase == "initial"
        assert restored.executions() == []
        assert restored.last_activity == clock.now

    def test_malformed_entries_are_dropped(self, clock):
        payload = {
            "currentPhase": "warp-speed",
            "toolExecutionStack": [
                {"toolName": "getTasks", "executionId": "ok", "status": "executing", "startTime": 1},
                {"toolName": "getTasks", "status": "completed"},
                {"toolName": "x", "executionId": "bad", "status": "exploded"},
                "junk",
            ],
            "progressTrackers": {"sync": {"operationId": "sync", "totalSteps": 4, "currentStep": 1}},
            "userInteractionHistory": [{"type": "shout", "content": "hey", "timestamp": 5}],
            "lastActivityTimestamp": "yesterday",
        }

        restored = ConversationState.deserialize(payload, clock=clock)

        assert restored.phase == "initial"
        assert [record.execution_id for record in restored.executions()] == ["ok"]
        assert restored.get_execution("ok").status == "running"
        assert restored.get_progress("sync").progress_percentage == 25
        assert restored.recent_interactions()[0].type == "message"
        assert restored.last_activity == clock.now

    def test_overflowing_numbers_are_dropped(self, clock):
        payload = (
            '{"progressTrackers": [["op", {"operationId": "op", "totalSteps": 1e400}]],'
            ' "toolExecutionStack": [{"toolName": "getTasks", "executionId": "e1", "startTime": 1e400}],'
            ' "userInteractionHistory": [{"content": "hi", "timestamp": 1e400}],'
            ' "lastActivityTimestamp": 1e400}'
        )

        restored = ConversationState.deserialize(payload, clock=clock)

        assert restored.get_progress("op") is None
        assert restored.last_activity == clock.now

    def test_tool_repetition_round_trip(self, state: ConversationState, clock):
        state.set_tool_repetition({"previous": "sig", "repeats": 2})

        restored = ConversationState.deserialize(state.serialize(), clock=clock)

        assert restored.tool_repetition == {"previous": "sig", "repeats": 2}
        restored.reset()
        assert restored.tool_repetition == {}
