"""Short user-facing summaries for raw tool output.

Summaries are deterministic and never raise: anything unexpected degrades to
a truncated textual rendering of the raw value.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Literal, Mapping

from ..orchestration.payloads import (
    ErrorPayload,
    StructuredPayload,
    TextPayload,
    ToolPayload,
    classify_payload,
    safe_json_dumps,
)

LOGGER = logging.getLogger(__name__)

SummarySeverity = Literal["success", "info", "error"]

MAX_RAW_LENGTH = 4_000
_LONG_TEXT_PREVIEW = 297
_JSON_PREVIEW = 300
_OVERDUE_TITLE_LIMIT = 3
_MISSING_RANGE_PROMPT = "I need a start and end time to check your calendar. What time range should I use?"


@dataclass(slots=True, frozen=True)
class ToolSummary:
    summary: str | None
    severity: SummarySeverity = "info"


@dataclass(slots=True)
class ToolResultSummary:
    """Summary persisted alongside a raw tool result."""

    raw: ToolPayload | None
    summary: str | None
    severity: SummarySeverity
    title: str | None = None
    metadata: dict[str, Any] | None = field(default=None)

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "raw": self.raw.to_raw() if self.raw is not None else None,
            "summary": self.summary,
            "status": self.severity,
        }
        if self.title:
            payload["title"] = self.title
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload


def _truncate(value: str, limit: int = _JSON_PREVIEW) -> str:
    if len(value) <= limit:
        return value
    return f"{value[: limit - 3]}..."


def _plural(count: int, singular: str, plural: str | None = None) -> str:
    return singular if count == 1 else (plural or f"{singular}s")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _format_count(value: int | float) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _parse_due(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# -----------------------------------------------------------------------------
# Rules
# -----------------------------------------------------------------------------


def _summarise_calendar(payload: ToolPayload | None) -> ToolSummary:
    if isinstance(payload, StructuredPayload):
        if payload.metadata.get("error") == "missing_range":
            return ToolSummary(_MISSING_RANGE_PROMPT, "error")
        output = payload.output
        if isinstance(output, list):
            count = len(output)
            if count == 0:
                return ToolSummary("No upcoming events found in that window.", "info")
            return ToolSummary(f"Retrieved {count} calendar {_plural(count, 'event')}.", "success")
    return ToolSummary(None, "info")


def _summarise_workspace_map(payload: ToolPayload | None) -> ToolSummary:
    if not isinstance(payload, StructuredPayload):
        return ToolSummary(None, "info")
    meta = payload.metadata
    project_count = meta.get("projectCount")
    task_count = meta.get("taskCount")
    parts: list[str] = []
    if _is_number(project_count):
        parts.append(f"{_format_count(project_count)} {_plural(project_count, 'project')}")
    if _is_number(task_count):
        parts.append(f"{_format_count(task_count)} {_plural(task_count, 'task')}")
    if parts:
        return ToolSummary(f"Workspace summary: {', '.join(parts)}.", "success")
    if payload.title:
        return ToolSummary(payload.title, "info")
    return ToolSummary(None, "info")


def _summarise_tasks(payload: ToolPayload | None, *, now: datetime) -> ToolSummary:
    meta: Mapping[str, Any] = {}
    output: Any = None
    if isinstance(payload, StructuredPayload):
        meta = payload.metadata
        output = payload.output
    meta_tasks = meta.get("tasks")
    if isinstance(meta_tasks, list):
        tasks = meta_tasks
    elif isinstance(output, list):
        tasks = output
    else:
        tasks = []
    task_count = meta.get("taskCount")
    total = task_count if _is_number(task_count) else len(tasks)

    if not total and not tasks:
        return ToolSummary("No open tasks found.", "info")

    overdue = 0
    overdue_titles: list[str] = []
    for task in tasks:
        if not isinstance(task, Mapping):
            continue
        due = _parse_due(task.get("dueDate"))
        if due is None or due >= now:
            continue
        overdue += 1
        title = task.get("title")
        if isinstance(title, str) and len(overdue_titles) < _OVERDUE_TITLE_LIMIT:
            overdue_titles.append(title)

    parts: list[str] = []
    if total:
        parts.append(f"{_format_count(total)} open {_plural(total, 'task')}")
    if overdue:
        parts.append(f"{overdue} overdue")
    if overdue_titles:
        parts.append(f"Overdue: {', '.join(overdue_titles)}")
    summary = f"Tasks summary: {'; '.join(parts)}." if parts else "Tasks retrieved."
    return ToolSummary(summary, "success")


def _summarise_error(payload: ErrorPayload) -> ToolSummary:
    return ToolSummary(f"Tool error: {payload.message}", "error")


def _summarise_generic(raw: Any) -> ToolSummary:
    if isinstance(raw, (TextPayload, StructuredPayload)):
        raw = raw.to_raw()
    if raw is None:
        return ToolSummary(None, "info")
    if isinstance(raw, ErrorPayload):
        return _summarise_error(raw)
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        trimmed = raw.strip()
        if not trimmed:
            return ToolSummary(None, "info")
        if len(trimmed) > MAX_RAW_LENGTH:
            return ToolSummary(f"{trimmed[:_LONG_TEXT_PREVIEW]}...", "info")
        return ToolSummary(trimmed, "info")
    if isinstance(raw, bool):
        return ToolSummary("true" if raw else "false", "info")
    if _is_number(raw):
        return ToolSummary(str(raw), "info")
    return ToolSummary(_truncate(safe_json_dumps(raw)), "info")


def _summarise_current_time(_: ToolPayload | None) -> ToolSummary:
    return ToolSummary("Fetched the current time.", "info")


_RULES: dict[str, Callable[[ToolPayload | None], ToolSummary]] = {
    "listcalendarevents": _summarise_calendar,
    "googlecalendar.listcalendarevents": _summarise_calendar,
    "getprojectandtaskmap": _summarise_workspace_map,
    "getcurrenttime": _summarise_current_time,
}
_TASK_RULE_NAMES: frozenset[str] = frozenset({"gettasks", "todoist.gettasks"})


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------


def describe(tool_name: str | None, raw: Any, *, now: datetime | None = None) -> ToolSummary:
    """Summarize one raw tool output.

    Structured error results (mappings with a non-empty ``error`` string or
    an :class:`ErrorPayload`) short-circuit to ``"Tool error: ..."`` for any
    tool. Otherwise the lower-cased tool name selects a specialised rule,
    which sees the parsed payload; unknown tools get the generic rendering
    of the raw value, so strings stay text even when they hold JSON.
    """

    try:
        if isinstance(raw, (Mapping, ErrorPayload)):
            payload = classify_payload(raw)
            if isinstance(payload, ErrorPayload):
                return _summarise_error(payload)
        name = (tool_name or "").strip().lower()
        if name in _TASK_RULE_NAMES:
            return _summarise_tasks(classify_payload(raw), now=now or datetime.now(timezone.utc))
        rule = _RULES.get(name)
        if rule is None:
            return _summarise_generic(raw)
        return rule(classify_payload(raw))
    except Exception:  # summaries must never break a turn
        LOGGER.warning("Tool summary for %s failed; using raw text", tool_name, exc_info=True)
        text = raw if isinstance(raw, str) else safe_json_dumps(raw)
        return ToolSummary(_truncate(text.strip()) or None, "info")


def summarise(tool_name: str | None, raw: Any) -> str | None:
    return describe(tool_name, raw).summary


def format_for_storage(
    tool_name: str | None,
    raw: Any,
    *,
    title: Any = None,
    metadata: Any = None,
) -> ToolResultSummary:
    """Wrap :func:`describe` into the record persisted next to the raw output."""

    description = describe(tool_name, raw)
    return ToolResultSummary(
        raw=classify_payload(raw),
        summary=description.summary,
        severity=description.severity,
        title=title if isinstance(title, str) else None,
        metadata=dict(metadata) if isinstance(metadata, Mapping) else None,
    )


def aggregate(results: Iterable[Any]) -> str | None:
    """Combine the summaries of several tool results into one line.

    Each entry is described first; see :func:`combine_summaries` for the
    ordering rules.
    """

    described: list[ToolSummary] = []
    for entry in results:
        tool_name = _entry_field(entry, "tool_name", "toolName")
        candidate = _entry_field(entry, "output")
        if candidate is None:
            candidate = _entry_field(entry, "result")
        if candidate is None:
            continue
        described.append(describe(tool_name, candidate))
    return combine_summaries(described)


def combine_summaries(summaries: Iterable[ToolSummary | ToolResultSummary]) -> str | None:
    """Join already computed summaries into one line.

    The last error summary wins outright. Otherwise success summaries come
    first, then info summaries, with duplicates removed and order kept.
    """

    collected = [
        ToolSummary(item.summary.strip(), item.severity)
        for item in summaries
        if item.summary and item.summary.strip()
    ]
    if not collected:
        return None
    errors = [item.summary for item in collected if item.severity == "error"]
    if errors:
        return errors[-1]
    ordered = [item.summary for item in collected if item.severity == "success"]
    ordered.extend(item.summary for item in collected if item.severity == "info")
    unique = list(dict.fromkeys(summary for summary in ordered if summary))
    return " ".join(unique) if unique else None


def _entry_field(entry: Any, *names: str) -> Any:
    for name in names:
        if isinstance(entry, Mapping):
            if name in entry:
                return entry[name]
        elif hasattr(entry, name):
            return getattr(entry, name)
    return None


__all__ = [
    "MAX_RAW_LENGTH",
    "SummarySeverity",
    "ToolSummary",
    "ToolResultSummary",
    "describe",
    "summarise",
    "format_for_storage",
    "aggregate",
    "combine_summaries",
]
