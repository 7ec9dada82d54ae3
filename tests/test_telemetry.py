from __future__ import annotations

from taskpilot.ai.services.telemetry import ConversationUsageEvent, InMemoryTelemetrySink


def _event(index: int) -> ConversationUsageEvent:
    return ConversationUsageEvent(
        session_id="s1",
        request_id=f"req-{index}",
        status="completed",
        timestamp=float(index),
        message_count=index,
        model_message_count=index,
    )


def test_ring_buffer_keeps_latest_events() -> None:
    sink = InMemoryTelemetrySink(capacity=10)
    for index in range(15):
        sink.record(_event(index))

    assert len(sink) == 10
    assert [event.request_id for event in sink.tail(2)] == ["req-13", "req-14"]
    assert sink.tail()[0].request_id == "req-5"
    assert sink.tail(0) == []


def test_capacity_has_a_floor() -> None:
    assert InMemoryTelemetrySink(capacity=1).capacity == 10


def test_event_payload() -> None:
    event = ConversationUsageEvent(
        session_id="s1",
        request_id="req-1",
        status="completed",
        timestamp=1.0,
        message_count=4,
        model_message_count=3,
        tool_names=("getTasks",),
        failed_tools=1,
    )

    payload = event.as_payload()

    assert payload["toolNames"] == ["getTasks"]
    assert payload["failedTools"] == 1
    assert payload["usedFallback"] is False
