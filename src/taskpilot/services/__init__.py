"""Host-facing services (settings persistence)."""

from .settings import (
    ContextWindowSettings,
    DeduplicationSettings,
    SessionLockSettings,
    Settings,
    SettingsStore,
)

__all__ = [
    "Settings",
    "SettingsStore",
    "ContextWindowSettings",
    "DeduplicationSettings",
    "SessionLockSettings",
]
