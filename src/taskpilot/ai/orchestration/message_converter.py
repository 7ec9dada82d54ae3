"""Conversion between stored conversation entries, UI messages and model messages.

The converter is total: malformed stored entries are skipped one at a time,
and a reducer failure is recovered by rebuilding a text-only conversation.
Every call to :meth:`MessageConverter.to_model_ready` returns at least one
message.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Sequence

from ..errors import ConversionError, MessageShapeError
from .message_types import (
    MessagePart,
    ModelMessage,
    PendingToolCallPart,
    StoredMessage,
    TextPart,
    ToolResult,
    ToolUsagePart,
    UIMessage,
)
from .payloads import is_error_result, safe_json_dumps

LOGGER = logging.getLogger(__name__)

DEFAULT_FALLBACK_PROMPT = "Please help me with my tasks."

Reducer = Callable[[Sequence[UIMessage]], list[ModelMessage]]

__all__ = [
    "DEFAULT_FALLBACK_PROMPT",
    "ConversionReport",
    "MessageConverter",
    "Reducer",
    "convert_messages",
    "format_tool_output",
    "parse_stored_messages",
    "reduce_to_chat_messages",
    "sanitize_messages",
]


@dataclass(slots=True)
class ConversionReport:
    """Outcome of a full stored -> model conversion.

    Attributes:
        messages: Model-ready messages (never empty).
        ui_messages: The intermediate messages the reducer received.
        skipped: Indices of stored entries dropped as malformed.
        fallback_reason: Why the fallback path ran, or None.
    """

    messages: list[ModelMessage]
    ui_messages: list[UIMessage] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    fallback_reason: str | None = None

    @property
    def used_fallback(self) -> bool:
        return self.fallback_reason is not None

    def as_payload(self) -> dict[str, object]:
        return {
            "model_messages": len(self.messages),
            "ui_messages": len(self.ui_messages),
            "skipped": list(self.skipped),
            "fallback_reason": self.fallback_reason,
        }


def format_tool_output(result: Any) -> str:
    """Render a raw tool result as text: strings verbatim, anything else as JSON."""

    if isinstance(result, str):
        return result
    return safe_json_dumps(result)


def parse_stored_messages(
    messages: Iterable[Any],
    *,
    skipped: list[int] | None = None,
) -> list[tuple[int, StoredMessage]]:
    """Validate each entry, keeping its original index.

    Entries failing validation are logged and reported through ``skipped``.
    """

    parsed: list[tuple[int, StoredMessage]] = []
    for index, value in enumerate(messages):
        try:
            parsed.append((index, StoredMessage.from_payload(value, index=index)))
        except MessageShapeError as exc:
            LOGGER.warning("Skipping invalid stored message at index %s: %s", index, exc)
            if skipped is not None:
                skipped.append(index)
    return parsed


def sanitize_messages(messages: Iterable[Any]) -> list[StoredMessage]:
    """Trim content and drop entries with nothing left to send.

    Tool calls without an id or name and tool results without an id are
    removed. Messages that end up with no content, calls or results are
    dropped entirely.
    """

    sanitized: list[StoredMessage] = []
    for _, message in parse_stored_messages(messages):
        content = (message.content or "").strip() or None
        calls = tuple(call for call in message.tool_calls if call.tool_call_id and call.name)
        results = tuple(result for result in message.tool_results if result.tool_call_id)
        if not content and not calls and not results:
            continue
        sanitized.append(
            StoredMessage(
                role=message.role,
                content=content,
                tool_calls=calls,
                tool_results=results,
                timestamp=message.timestamp,
            )
        )
    return sanitized


def reduce_to_chat_messages(ui_messages: Sequence[UIMessage]) -> list[ModelMessage]:
    """Canonical reducer from UI messages to chat-completion messages.

    Completed and erred tool usages become assistant ``tool_calls`` entries
    followed by one ``tool`` message each. Pending calls are dropped because
    the chat API rejects calls that were never answered.

    Raises:
        ConversionError: A message has an unsupported role or part.
    """

    reduced: list[ModelMessage] = []
    for message in ui_messages:
        if message.role == "user":
            text_parts = message.text_parts()
            if len(text_parts) != len(message.parts):
                raise ConversionError(f"user message {message.id} carries non-text parts")
            reduced.append(ModelMessage.user(message.text()))
            continue
        if message.role != "assistant":
            raise ConversionError(f"unsupported UI message role: {message.role!r}")

        texts: list[str] = []
        calls: list[dict[str, Any]] = []
        tool_messages: list[ModelMessage] = []
        for part in message.parts:
            if isinstance(part, TextPart):
                texts.append(part.text)
            elif isinstance(part, ToolUsagePart):
                calls.append(
                    {
                        "id": part.tool_call_id,
                        "type": "function",
                        "function": {"name": part.tool_name, "arguments": safe_json_dumps(part.input or {})},
                    }
                )
                content = part.error_text if part.failed else part.output
                tool_messages.append(ModelMessage.tool(content or "", part.tool_call_id, name=part.tool_name))
            elif isinstance(part, PendingToolCallPart):
                LOGGER.debug("Dropping unanswered tool call %s (%s)", part.tool_call_id, part.tool_name)
            else:
                raise ConversionError(f"unsupported message part: {part!r}")
        if not texts and not calls:
            continue
        reduced.append(ModelMessage.assistant("\n\n".join(texts), tool_calls=calls or None))
        reduced.extend(tool_messages)
    return reduced


class MessageConverter:
    """Translates stored conversation entries into model-ready messages.

    The reducer is the model runtime's canonical UI -> model conversion; it
    defaults to :func:`reduce_to_chat_messages` and may be replaced by the
    caller.
    """

    def __init__(
        self,
        reducer: Reducer | None = None,
        *,
        clock: Callable[[], float] = time.time,
        fallback_prompt: str = DEFAULT_FALLBACK_PROMPT,
    ) -> None:
        self._reducer = reducer or reduce_to_chat_messages
        self._clock = clock
        self._fallback_prompt = fallback_prompt or DEFAULT_FALLBACK_PROMPT

    @property
    def fallback_prompt(self) -> str:
        return self._fallback_prompt

    # ------------------------------------------------------------------
    # Stored -> UI
    # ------------------------------------------------------------------

    def to_intermediate(
        self,
        stored_messages: Sequence[Any],
        *,
        skipped: list[int] | None = None,
    ) -> list[UIMessage]:
        """Convert stored entries into UI messages.

        Tool results are matched to calls by id, looking only at entries
        stored after the calling message. Tool-role entries never produce a UI
        message of their own.

        Args:
            stored_messages: Persisted log entries (mappings or StoredMessage).
            skipped: Optional list that receives the indices of dropped entries.

        Returns:
            UI messages in stored order; never longer than the input.
        """
        parsed = parse_stored_messages(stored_messages, skipped=skipped)
        results_index = _index_tool_results(parsed)
        batch_stamp = int(self._clock() * 1000)

        ui_messages: list[UIMessage] = []
        for index, message in parsed:
            try:
                ui_message = self._message_to_ui(index, message, results_index, batch_stamp)
            except Exception as exc:  # malformed payloads must not abort the batch
                LOGGER.warning("Skipping stored message at index %s: %s", index, exc)
                if skipped is not None:
                    skipped.append(index)
                continue
            if ui_message is not None:
                ui_messages.append(ui_message)
        return ui_messages

    def _message_to_ui(
        self,
        index: int,
        message: StoredMessage,
        results_index: Mapping[str, list[tuple[int, ToolResult]]],
        batch_stamp: int,
    ) -> UIMessage | None:
        if message.role == "user":
            if not message.text.strip():
                return None
            return UIMessage(
                id=f"user-{index}-{batch_stamp}",
                role="user",
                parts=(TextPart(message.text),),
            )
        if message.role != "assistant":
            return None

        parts: list[MessagePart] = []
        if message.text.strip():
            parts.append(TextPart(message.text))
        for call in message.tool_calls:
            if not call.tool_call_id or not call.name:
                LOGGER.debug("Ignoring tool call without id or name at index %s", index)
                continue
            match = _find_tool_result(results_index, call.tool_call_id, index)
            if match is None:
                parts.append(
                    PendingToolCallPart(
                        tool_call_id=call.tool_call_id,
                        tool_name=call.name,
                        input=call.args if call.args is not None else {},
                    )
                )
                continue
            formatted = format_tool_output(match.result)
            failed = is_error_result(match.result)
            parts.append(
                ToolUsagePart(
                    tool_call_id=call.tool_call_id,
                    tool_name=call.name,
                    input=call.args if call.args is not None else {},
                    state="output-error" if failed else "output-available",
                    output=None if failed else formatted,
                    error_text=formatted if failed else None,
                )
            )
        if not parts:
            return None
        return UIMessage(id=f"assistant-{index}-{batch_stamp}", role="assistant", parts=tuple(parts))

    # ------------------------------------------------------------------
    # UI -> model
    # ------------------------------------------------------------------

    def to_model_ready(self, ui_messages: Sequence[UIMessage]) -> list[ModelMessage]:
        """Reduce UI messages to model messages; never raises, never empty."""
        messages, _ = self._reduce(ui_messages)
        return messages

    def _reduce(self, ui_messages: Sequence[UIMessage]) -> tuple[list[ModelMessage], str | None]:
        try:
            reduced = list(self._reducer(list(ui_messages)))
        except Exception as exc:
            LOGGER.error("Failed to convert UI messages to model messages: %s", exc, exc_info=True)
            return self._fallback(ui_messages), f"reducer-error: {exc}"
        if not reduced:
            LOGGER.info("Reducer produced no model messages; using fallback conversation")
            return self._fallback(ui_messages), "empty-result"
        return reduced, None

    def _fallback(self, ui_messages: Any) -> list[ModelMessage]:
        rebuilt: list[ModelMessage] = []
        try:
            for message in ui_messages:
                role = getattr(message, "role", None)
                if role not in ("user", "assistant"):
                    continue
                texts = [part.text for part in getattr(message, "parts", ()) if isinstance(part, TextPart)]
                if not texts:
                    continue
                rebuilt.append(ModelMessage(role=role, content="\n\n".join(texts)))
        except Exception:  # the fallback itself must always produce a result
            LOGGER.warning("Fallback reconstruction failed; using synthetic prompt", exc_info=True)
            rebuilt = []
        if not rebuilt:
            rebuilt.append(ModelMessage.user(self._fallback_prompt))
        return rebuilt

    # ------------------------------------------------------------------
    # Stored -> model
    # ------------------------------------------------------------------

    def convert(self, stored_messages: Sequence[Any]) -> list[ModelMessage]:
        """One-step conversion from stored entries to model messages."""
        return self.convert_with_report(stored_messages).messages

    def convert_with_report(self, stored_messages: Sequence[Any]) -> ConversionReport:
        skipped: list[int] = []
        try:
            ui_messages = self.to_intermediate(stored_messages, skipped=skipped)
        except Exception as exc:
            LOGGER.error("Stored message conversion failed: %s", exc, exc_info=True)
            return ConversionReport(
                messages=self._fallback(()),
                skipped=skipped,
                fallback_reason=f"intermediate-error: {exc}",
            )
        messages, reason = self._reduce(ui_messages)
        LOGGER.debug(
            "Converted %s stored -> %s UI -> %s model messages",
            len(stored_messages),
            len(ui_messages),
            len(messages),
        )
        return ConversionReport(messages=messages, ui_messages=ui_messages, skipped=skipped, fallback_reason=reason)


def convert_messages(stored_messages: Sequence[Any]) -> list[ModelMessage]:
    """Convert with a default :class:`MessageConverter`."""

    return MessageConverter().convert(stored_messages)


def _index_tool_results(parsed: Sequence[tuple[int, StoredMessage]]) -> dict[str, list[tuple[int, ToolResult]]]:
    index: dict[str, list[tuple[int, ToolResult]]] = {}
    for position, message in parsed:
        for result in message.tool_results:
            if result.tool_call_id:
                index.setdefault(result.tool_call_id, []).append((position, result))
    return index


def _find_tool_result(
    index: Mapping[str, list[tuple[int, ToolResult]]],
    tool_call_id: str,
    start: int,
) -> ToolResult | None:
    for position, result in index.get(tool_call_id, ()):
        if position > start:
            return result
    return None
