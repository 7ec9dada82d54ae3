"""Tests for settings persistence and overrides."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from taskpilot.services.settings import (
    ContextWindowSettings,
    Settings,
    SettingsStore,
    apply_overrides,
)


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch):
    for name in (
        "TASKPILOT_FALLBACK_PROMPT",
        "TASKPILOT_DEBUG_EVENT_LOGGING",
        "TASKPILOT_MAX_MESSAGES",
        "TASKPILOT_DEDUP_TTL_SECONDS",
        "TASKPILOT_REPETITION_LIMIT",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults_match_conversation_limits() -> None:
    settings = Settings()

    assert settings.context_window == ContextWindowSettings(max_messages=50, loop_window=6)
    assert settings.deduplication.ttl_seconds == 300
    assert settings.deduplication.message_limit == 200
    assert settings.session_lock.ttl_seconds == 15
    assert settings.repetition_limit == 3
    assert settings.fallback_prompt == "Please help me with my tasks."


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    store = SettingsStore(tmp_path / "settings.json")

    assert store.load() == Settings()


def test_save_and_load_round_trip(tmp_path: Path) -> None:
    store = SettingsStore(tmp_path / "nested" / "settings.json")
    settings = Settings(fallback_prompt="What next?", debug_event_logging=True)
    settings.context_window.max_messages = 20
    settings.metadata["owner"] = "ops"

    path = store.save(settings)

    assert path.exists()
    assert json.loads(path.read_text(encoding="utf-8"))["version"] == 1
    assert store.load() == settings


def test_invalid_json_falls_back_to_defaults(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text("{not json", encoding="utf-8")

    assert SettingsStore(path).load() == Settings()


def test_unknown_keys_and_bad_sections_are_ignored(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(
        json.dumps(
            {
                "version": 1,
                "fallback_prompt": "Anything due?",
                "legacy_flag": True,
                "context_window": {"max_messages": 12, "unknown": 1},
                "deduplication": "broken",
            }
        ),
        encoding="utf-8",
    )

    settings = SettingsStore(path).load()

    assert settings.fallback_prompt == "Anything due?"
    assert settings.context_window.max_messages == 12
    assert settings.deduplication.ttl_seconds == 300


def test_version_mismatch_rewrites_file(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"telemetry_capacity": 50}), encoding="utf-8")

    SettingsStore(path).load()

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["version"] == 1
    assert payload["telemetry_capacity"] == 50


def test_environment_overrides(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("TASKPILOT_FALLBACK_PROMPT", "env prompt")
    monkeypatch.setenv("TASKPILOT_DEBUG_EVENT_LOGGING", "yes")
    monkeypatch.setenv("TASKPILOT_MAX_MESSAGES", "25")
    monkeypatch.setenv("TASKPILOT_DEDUP_TTL_SECONDS", "60")
    monkeypatch.setenv("TASKPILOT_REPETITION_LIMIT", "many")

    settings = SettingsStore(tmp_path / "settings.json").load()

    assert settings.fallback_prompt == "env prompt"
    assert settings.debug_event_logging is True
    assert settings.context_window.max_messages == 25
    assert settings.deduplication.ttl_seconds == 60.0
    assert settings.repetition_limit == 3


def test_caller_overrides_apply_before_environment(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("TASKPILOT_FALLBACK_PROMPT", "env prompt")

    settings = SettingsStore(tmp_path / "settings.json").load(
        overrides={"fallback_prompt": "cli prompt", "session_lock.ttl_seconds": 30, "repetition_limit": None}
    )

    assert settings.fallback_prompt == "env prompt"
    assert settings.session_lock.ttl_seconds == 30
    assert settings.repetition_limit == 3


def test_apply_overrides_merges_metadata_and_ignores_unknown_keys() -> None:
    base = Settings(metadata={"a": 1})

    updated = apply_overrides(base, {"metadata": {"b": 2}, "nope": 1, "context_window.bogus": 5})

    assert updated.metadata == {"a": 1, "b": 2}
    assert base.metadata == {"a": 1}
    assert apply_overrides(base, {"nope": 1}) is base
