"""Per-turn JSONL debug event log."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Mapping, Sequence

from ...utils import logging as logging_utils

LOGGER = logging.getLogger(__name__)

_MAX_DEPTH = 6


def _default_event_dir() -> Path:
    log_path = logging_utils.get_log_path()
    if log_path is not None:
        return log_path.parent / "events"
    return Path.home() / ".taskpilot" / "logs" / "events"


def _jsonable(value: Any, *, depth: int = 0) -> Any:
    if depth > _MAX_DEPTH:
        return repr(value)
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item, depth=depth + 1) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item, depth=depth + 1) for item in value]
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    as_payload = getattr(value, "as_payload", None)
    if callable(as_payload):
        return _jsonable(as_payload(), depth=depth + 1)
    return repr(value)


@dataclass(slots=True)
class _NullTurnEventLog:
    """Stand-in returned when event logging is disabled."""

    path: Path | None = None

    def __enter__(self) -> "_NullTurnEventLog":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        return False

    def log_conversion(self, *_: Any, **__: Any) -> None:
        return

    def log_tools(self, *_: Any, **__: Any) -> None:
        return

    def log_completion(self, *_: Any, **__: Any) -> None:
        return

    def log_failure(self, *_: Any, **__: Any) -> None:
        return


class TurnEventLog:
    """Writes the ``start`` ... ``completion``/``failure`` entries of one turn.

    Leaving the context without a completion entry records a failure, so
    every file ends with exactly one terminal entry.
    """

    def __init__(self, path: Path, *, context: Mapping[str, Any]) -> None:
        self.path = path
        self._file = path.open("w", encoding="utf-8")
        self._finalized = False
        self._write_entry("start", context)

    def __enter__(self) -> "TurnEventLog":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if not self._finalized:
            message = str(exc) if exc is not None else "turn aborted without completion"
            details = {"type": exc_type.__name__} if exc_type is not None else None
            self.log_failure(message=message, details=details)
        return False

    @property
    def finalized(self) -> bool:
        return self._finalized

    def log_conversion(self, report: Mapping[str, Any]) -> None:
        self._write_entry("conversion", {"report": report})

    def log_tools(self, records: Sequence[Mapping[str, Any]]) -> None:
        if not records:
            return
        self._write_entry("tools", {"records": list(records)})

    def log_completion(
        self,
        *,
        status: str,
        response_text: str | None,
        tool_call_count: int,
        warnings: Sequence[str] | None = None,
    ) -> None:
        if self._finalized:
            return
        self._write_entry(
            "completion",
            {
                "status": status,
                "response_text": response_text,
                "tool_call_count": tool_call_count,
                "warnings": list(warnings or ()),
            },
        )
        self._close()

    def log_failure(self, *, message: str, details: Mapping[str, Any] | None = None) -> None:
        if self._finalized:
            return
        payload: dict[str, Any] = {"status": "failure", "message": message}
        if details:
            payload["details"] = dict(details)
        self._write_entry("failure", payload)
        self._close()

    def _close(self) -> None:
        self._finalized = True
        try:
            self._file.close()
        except OSError:  # pragma: no cover - nothing left to flush
            LOGGER.debug("Failed to close event log %s", self.path, exc_info=True)

    def _write_entry(self, event: str, payload: Mapping[str, Any] | None = None) -> None:
        entry: dict[str, Any] = {"event": event, "timestamp": time.time()}
        for key, value in (payload or {}).items():
            entry[key] = _jsonable(value)
        json.dump(entry, self._file, ensure_ascii=False)
        self._file.write("\n")
        self._file.flush()


class ChatEventLogger:
    """Factory for per-turn event logs; disabled loggers hand out no-op runs."""

    def __init__(self, *, enabled: bool, base_dir: Path | str | None = None) -> None:
        self.enabled = bool(enabled)
        self._base_dir = Path(base_dir) if base_dir else _default_event_dir()

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def start_turn(
        self,
        *,
        run_id: str,
        session_id: str,
        prompt: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> TurnEventLog | _NullTurnEventLog:
        if not self.enabled:
            return _NullTurnEventLog()
        try:
            self._base_dir.mkdir(parents=True, exist_ok=True)
            path = self._allocate_path(run_id)
            context = {
                "run_id": run_id,
                "session_id": session_id,
                "prompt": prompt,
                "metadata": dict(metadata or {}),
            }
            log = TurnEventLog(path, context=context)
        except OSError:
            LOGGER.debug("Failed to start turn event log", exc_info=True)
            return _NullTurnEventLog()
        LOGGER.debug("Turn event log started: %s", path)
        return log

    def _allocate_path(self, run_id: str) -> Path:
        timestamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
        safe_run_id = "".join(ch for ch in run_id if ch.isalnum())[:12] or "turn"
        return self._base_dir / f"turn-{timestamp}-{safe_run_id}.jsonl"


__all__ = ["ChatEventLogger", "TurnEventLog"]
