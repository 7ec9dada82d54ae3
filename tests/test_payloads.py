from __future__ import annotations

from taskpilot.ai.orchestration.payloads import (
    ErrorPayload,
    StructuredPayload,
    TextPayload,
    classify_payload,
    is_error_result,
    safe_json_dumps,
)


def test_classify_plain_text() -> None:
    assert classify_payload("all good") == TextPayload("all good")


def test_classify_error_prefix() -> None:
    assert classify_payload("Error: calendar offline") == ErrorPayload("calendar offline")


def test_classify_json_string_object() -> None:
    payload = classify_payload('{"title": "Tasks", "output": "[1, 2]"}')

    assert isinstance(payload, StructuredPayload)
    assert payload.title == "Tasks"
    assert payload.output == [1, 2]


def test_classify_error_mapping_keeps_data() -> None:
    payload = classify_payload({"error": "expired", "code": 401})

    assert isinstance(payload, ErrorPayload)
    assert payload.message == "expired"
    assert payload.to_raw() == {"error": "expired", "code": 401}


def test_blank_error_field_is_not_an_error() -> None:
    assert isinstance(classify_payload({"error": "  "}), StructuredPayload)


def test_structured_envelope_accessors() -> None:
    envelope = StructuredPayload({"metadata": {"taskCount": 2}})

    assert envelope.metadata == {"taskCount": 2}
    assert envelope.output is None
    assert StructuredPayload([1]).output == [1]
    assert StructuredPayload([1]).metadata == {}


def test_none_and_errors_count_as_failed_results() -> None:
    assert is_error_result(None)
    assert is_error_result("Error: nope")
    assert not is_error_result({"ok": True})


def test_safe_json_dumps_handles_unserializable_values() -> None:
    class Opaque:
        def __str__(self) -> str:
            return "opaque"

    assert safe_json_dumps({"value": Opaque()}) == '{"value":"opaque"}'
    assert safe_json_dumps("é") == '"é"'
