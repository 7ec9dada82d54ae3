"""Closed set of tool payload variants.

Raw tool output arrives as whatever the tool implementation returned:
plain strings, JSON strings, dictionaries, lists or scalars. Every consumer
in the orchestration core first classifies the value into one of three
variants and then branches on the variant type.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Union

LOGGER = logging.getLogger(__name__)

_ERROR_PREFIX = "Error:"


@dataclass(slots=True, frozen=True)
class TextPayload:
    """Free-form text returned by a tool."""

    text: str

    def to_raw(self) -> Any:
        return self.text


@dataclass(slots=True, frozen=True)
class ErrorPayload:
    """A tool result that signals failure.

    Attributes:
        message: Human-readable error text.
        data: The structured payload the error was extracted from, if any.
    """

    message: str
    data: Mapping[str, Any] | None = None

    def to_raw(self) -> Any:
        if self.data is not None:
            return dict(self.data)
        return self.message


@dataclass(slots=True, frozen=True)
class StructuredPayload:
    """Structured tool output (mapping, list or scalar)."""

    data: Any
    title: str | None = field(default=None, compare=False)

    def to_raw(self) -> Any:
        return self.data

    @property
    def metadata(self) -> Mapping[str, Any]:
        if isinstance(self.data, Mapping):
            meta = self.data.get("metadata")
            if isinstance(meta, Mapping):
                return meta
        return {}

    @property
    def output(self) -> Any:
        """Return the nested ``output`` value, or the data itself for non-envelopes."""

        if isinstance(self.data, Mapping):
            if "output" not in self.data:
                return None
            return _maybe_parse_json(self.data.get("output"))
        return self.data


ToolPayload = Union[TextPayload, ErrorPayload, StructuredPayload]


def classify_payload(raw: Any) -> ToolPayload | None:
    """Classify ``raw`` tool output into a payload variant.

    ``None`` stays ``None``. Strings holding a JSON object or array are
    parsed first; other strings are text, except those carrying the
    ``Error:`` prefix. Mappings with a non-empty ``error`` string are errors.
    """

    if raw is None:
        return None
    if isinstance(raw, (TextPayload, ErrorPayload, StructuredPayload)):
        return raw
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        parsed = _maybe_parse_json(raw)
        if isinstance(parsed, (Mapping, list)):
            return classify_payload(parsed)
        if raw.strip().startswith(_ERROR_PREFIX):
            return ErrorPayload(message=raw.strip()[len(_ERROR_PREFIX):].strip() or raw.strip())
        return TextPayload(raw)
    if isinstance(raw, Mapping):
        error = raw.get("error")
        if isinstance(error, str) and error.strip():
            return ErrorPayload(message=error.strip(), data=raw)
        title = raw.get("title")
        return StructuredPayload(data=raw, title=title if isinstance(title, str) else None)
    if isinstance(raw, tuple):
        return StructuredPayload(data=list(raw))
    return StructuredPayload(data=raw)


def is_error_result(raw: Any) -> bool:
    """Return True when ``raw`` should be rendered as a failed tool call.

    A missing result counts as a failure.
    """

    payload = classify_payload(raw)
    return payload is None or isinstance(payload, ErrorPayload)


def safe_json_dumps(value: Any) -> str:
    """Compact JSON rendering that never raises."""

    try:
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        LOGGER.debug("Falling back to str() for non-serializable tool value", exc_info=True)
        return str(value)


def _maybe_parse_json(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    trimmed = value.strip()
    if not trimmed or trimmed[0] not in "{[":
        return value
    try:
        return json.loads(trimmed)
    except ValueError:
        return value


__all__ = [
    "TextPayload",
    "ErrorPayload",
    "StructuredPayload",
    "ToolPayload",
    "classify_payload",
    "is_error_result",
    "safe_json_dumps",
]
