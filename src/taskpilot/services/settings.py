"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

__all__ = [
    "Settings",
    "SettingsStore",
    "ContextWindowSettings",
    "DeduplicationSettings",
    "SessionLockSettings",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".taskpilot"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in _TRUE_VALUES


# Environment variable -> (dotted field path, parser)
_ENV_OVERRIDES: Mapping[str, tuple[str, Callable[[str], Any]]] = {
    "TASKPILOT_FALLBACK_PROMPT": ("fallback_prompt", str),
    "TASKPILOT_DEBUG_EVENT_LOGGING": ("debug_event_logging", _parse_bool),
    "TASKPILOT_REPETITION_LIMIT": ("repetition_limit", int),
    "TASKPILOT_TELEMETRY_CAPACITY": ("telemetry_capacity", int),
    "TASKPILOT_MAX_MESSAGES": ("context_window.max_messages", int),
    "TASKPILOT_LOOP_WINDOW": ("context_window.loop_window", int),
    "TASKPILOT_DEDUP_TTL_SECONDS": ("deduplication.ttl_seconds", float),
    "TASKPILOT_DEDUP_MESSAGE_LIMIT": ("deduplication.message_limit", int),
    "TASKPILOT_SESSION_LOCK_TTL_SECONDS": ("session_lock.ttl_seconds", float),
}


@dataclass(slots=True)
class ContextWindowSettings:
    """Limits applied to the stored log before conversion."""

    max_messages: int = 50
    loop_window: int = 6


@dataclass(slots=True)
class DeduplicationSettings:
    ttl_seconds: float = 300.0
    message_limit: int = 200
    stats_window_seconds: float = 86_400.0


@dataclass(slots=True)
class SessionLockSettings:
    ttl_seconds: float = 15.0
    min_ttl_seconds: float = 1.0


_NESTED: Mapping[str, type] = {
    "context_window": ContextWindowSettings,
    "deduplication": DeduplicationSettings,
    "session_lock": SessionLockSettings,
}


@dataclass(slots=True)
class Settings:
    """Runtime configuration for the conversation turn pipeline."""

    fallback_prompt: str = "Please help me with my tasks."
    repetition_limit: int = 3
    telemetry_capacity: int = 200
    debug_event_logging: bool = False
    event_log_dir: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    context_window: ContextWindowSettings = field(default_factory=ContextWindowSettings)
    deduplication: DeduplicationSettings = field(default_factory=DeduplicationSettings)
    session_lock: SessionLockSettings = field(default_factory=SessionLockSettings)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> Settings:
        """Build settings from a persisted mapping, ignoring unknown keys.

        Nested sections that cannot be applied fall back to their defaults.
        """

        allowed = {item.name for item in fields(cls)}
        data: Dict[str, Any] = {key: value for key, value in payload.items() if key in allowed}
        for name, section_type in _NESTED.items():
            section = data.get(name)
            if section is None:
                continue
            data[name] = _build_section(section_type, section)
        if not isinstance(data.get("metadata", {}), Mapping):
            data.pop("metadata")
        try:
            return cls(**data)
        except TypeError as exc:
            LOGGER.warning("Settings payload contained unexpected data: %s", exc)
            return cls()

    def as_payload(self) -> dict[str, Any]:
        return asdict(self)


def _build_section(section_type: type, payload: Any) -> Any:
    if not isinstance(payload, Mapping):
        LOGGER.debug("Ignoring non-mapping %s payload", section_type.__name__)
        return section_type()
    allowed = {item.name for item in fields(section_type)}
    try:
        return section_type(**{key: value for key, value in payload.items() if key in allowed})
    except TypeError:
        return section_type()


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path) if path is not None else _DEFAULT_SETTINGS_PATH

    @property
    def path(self) -> Path:
        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, then apply caller and environment overrides.

        Override keys may address nested sections with dotted paths such as
        ``"context_window.max_messages"``.
        """

        payload = self._read_payload()
        settings = Settings.from_mapping(payload) if payload else Settings()
        if payload and payload.get("version") != _SETTINGS_VERSION:
            LOGGER.debug("Settings version mismatch in %s; rewriting", self._path)
            try:
                self.save(settings)
            except OSError as exc:  # pragma: no cover - read-only home directories
                LOGGER.warning("Failed to migrate settings payload: %s", exc)
        if overrides:
            settings = apply_overrides(settings, overrides, source="caller")
        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with an atomic replace."""

        payload = settings.as_payload()
        payload["version"] = _SETTINGS_VERSION
        body = json.dumps(payload, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read_payload(self) -> Dict[str, Any]:
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return payload

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, (path, parser) in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[path] = parser(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not valid", env_name, value)
        if overrides:
            settings = apply_overrides(settings, overrides, source="environment")
        return settings


def apply_overrides(settings: Settings, overrides: Mapping[str, Any], *, source: str = "runtime") -> Settings:
    """Return a copy of ``settings`` with ``overrides`` applied.

    Unknown keys and ``None`` values are ignored.
    """

    top_level: Dict[str, Any] = {}
    nested: Dict[str, Dict[str, Any]] = {}
    allowed = {item.name for item in fields(Settings)}
    for key, value in overrides.items():
        if value is None:
            continue
        section, _, name = key.partition(".")
        if name:
            if section in _NESTED and name in {item.name for item in fields(_NESTED[section])}:
                nested.setdefault(section, {})[name] = value
            continue
        if key in allowed and key not in _NESTED:
            top_level[key] = value
    for section, values in nested.items():
        top_level[section] = replace(getattr(settings, section), **values)
    metadata_override = top_level.get("metadata")
    if isinstance(metadata_override, Mapping):
        merged = dict(settings.metadata)
        merged.update(metadata_override)
        top_level["metadata"] = merged
    if not top_level:
        return settings
    LOGGER.debug("Applying %s settings overrides: %s", source, sorted(overrides))
    return replace(settings, **top_level)
