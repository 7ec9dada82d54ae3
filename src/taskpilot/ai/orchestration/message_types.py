"""Message shapes used by the conversion pipeline.

Three representations flow through a turn:

* :class:`StoredMessage` - the persisted conversation log entry.
* :class:`UIMessage` - an intermediate, part-based message rebuilt on every
  conversion call and never persisted.
* :class:`ModelMessage` - the minimal chat message accepted by the model
  runtime.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Sequence, Union

from openai.types.chat import ChatCompletionMessageParam

from ..errors import MessageShapeError

__all__ = [
    "StoredRole",
    "ToolCall",
    "ToolResult",
    "StoredMessage",
    "TextPart",
    "PendingToolCallPart",
    "ToolUsagePart",
    "MessagePart",
    "UIMessage",
    "ModelMessage",
]

StoredRole = Literal["user", "assistant", "tool"]
_STORED_ROLES: frozenset[str] = frozenset({"user", "assistant", "tool"})


def _first(value: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in value:
            return value[key]
    return None


# -----------------------------------------------------------------------------
# Stored conversation log
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolCall:
    """A tool invocation requested by the assistant."""

    name: str
    args: Any
    tool_call_id: str

    def as_payload(self) -> dict[str, Any]:
        return {"name": self.name, "args": self.args, "toolCallId": self.tool_call_id}

    @classmethod
    def from_payload(cls, value: Any) -> ToolCall:
        if not isinstance(value, Mapping):
            raise MessageShapeError("tool call must be a mapping", value=value)
        name = value.get("name")
        call_id = _first(value, "toolCallId", "tool_call_id", "id")
        return cls(
            name=str(name) if name is not None else "",
            args=_first(value, "args", "arguments"),
            tool_call_id=str(call_id) if call_id is not None else "",
        )


@dataclass(slots=True, frozen=True)
class ToolResult:
    """Output of a tool invocation, matched to its call by id."""

    tool_call_id: str
    result: Any
    tool_name: str | None = None

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"toolCallId": self.tool_call_id, "result": self.result}
        if self.tool_name is not None:
            payload["toolName"] = self.tool_name
        return payload

    @classmethod
    def from_payload(cls, value: Any) -> ToolResult:
        if not isinstance(value, Mapping):
            raise MessageShapeError("tool result must be a mapping", value=value)
        call_id = _first(value, "toolCallId", "tool_call_id", "id")
        tool_name = _first(value, "toolName", "tool_name")
        return cls(
            tool_call_id=str(call_id) if call_id is not None else "",
            result=value.get("result"),
            tool_name=str(tool_name) if tool_name is not None else None,
        )


@dataclass(slots=True, frozen=True)
class StoredMessage:
    """One entry of the persisted conversation log.

    Attributes:
        role: Author of the entry.
        content: Optional text content.
        tool_calls: Tool calls emitted by an assistant turn, in order.
        tool_results: Tool results recorded for earlier calls, in order.
        timestamp: Seconds since the epoch.
    """

    role: StoredRole
    content: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    tool_results: tuple[ToolResult, ...] = ()
    timestamp: float = 0.0

    @property
    def text(self) -> str:
        return self.content or ""

    def as_payload(self) -> dict[str, Any]:
        """Return the persisted (camelCase) shape of this entry."""

        payload: dict[str, Any] = {"role": self.role, "timestamp": self.timestamp}
        if self.content is not None:
            payload["content"] = self.content
        if self.tool_calls:
            payload["toolCalls"] = [call.as_payload() for call in self.tool_calls]
        if self.tool_results:
            payload["toolResults"] = [result.as_payload() for result in self.tool_results]
        return payload

    @classmethod
    def from_payload(cls, value: Any, *, index: int | None = None) -> StoredMessage:
        """Validate ``value`` and build a :class:`StoredMessage`.

        Raises:
            MessageShapeError: The value is not a mapping, has no known role,
                or carries tool entries of the wrong shape.
        """

        if isinstance(value, StoredMessage):
            return value
        if not isinstance(value, Mapping):
            raise MessageShapeError("stored message must be a mapping", index=index, value=value)
        role = value.get("role")
        if not isinstance(role, str) or role.lower() not in _STORED_ROLES:
            raise MessageShapeError(f"unsupported role: {role!r}", index=index, value=value)
        content = value.get("content")
        if content is not None and not isinstance(content, str):
            raise MessageShapeError("content must be a string", index=index, value=value)
        raw_calls = _first(value, "toolCalls", "tool_calls") or ()
        raw_results = _first(value, "toolResults", "tool_results") or ()
        if not isinstance(raw_calls, Sequence) or isinstance(raw_calls, (str, bytes)):
            raise MessageShapeError("toolCalls must be a list", index=index, value=value)
        if not isinstance(raw_results, Sequence) or isinstance(raw_results, (str, bytes)):
            raise MessageShapeError("toolResults must be a list", index=index, value=value)
        timestamp = value.get("timestamp", 0.0)
        try:
            timestamp = float(timestamp or 0.0)
        except (TypeError, ValueError) as exc:
            raise MessageShapeError("timestamp must be numeric", index=index, value=value) from exc
        try:
            tool_calls = tuple(ToolCall.from_payload(call) for call in raw_calls)
            tool_results = tuple(ToolResult.from_payload(result) for result in raw_results)
        except MessageShapeError as exc:
            raise MessageShapeError(str(exc), index=index, value=value) from exc
        return cls(
            role=role.lower(),  # type: ignore[arg-type]
            content=content,
            tool_calls=tool_calls,
            tool_results=tool_results,
            timestamp=timestamp,
        )


# -----------------------------------------------------------------------------
# Intermediate UI messages
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TextPart:
    text: str
    type: Literal["text"] = "text"


@dataclass(slots=True, frozen=True)
class PendingToolCallPart:
    """A tool call that has no recorded result yet."""

    tool_call_id: str
    tool_name: str
    input: Any = None
    type: Literal["tool-call"] = "tool-call"


@dataclass(slots=True, frozen=True)
class ToolUsagePart:
    """A tool call paired with its captured output or error text."""

    tool_call_id: str
    tool_name: str
    input: Any
    state: Literal["output-available", "output-error"]
    output: str | None = None
    error_text: str | None = None

    @property
    def type(self) -> str:
        return f"tool-{self.tool_name}"

    @property
    def failed(self) -> bool:
        return self.state == "output-error"


MessagePart = Union[TextPart, PendingToolCallPart, ToolUsagePart]


@dataclass(slots=True, frozen=True)
class UIMessage:
    """Part-based message reconstructed for every conversion batch."""

    id: str
    role: Literal["user", "assistant"]
    parts: tuple[MessagePart, ...] = field(default_factory=tuple)

    def text_parts(self) -> list[TextPart]:
        return [part for part in self.parts if isinstance(part, TextPart)]

    def text(self, separator: str = "\n\n") -> str:
        return separator.join(part.text for part in self.text_parts())


# -----------------------------------------------------------------------------
# Model-ready messages
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ModelMessage:
    """Minimal chat message consumed by the model runtime.

    Can be converted to OpenAI's ChatCompletionMessageParam format.
    """

    role: Literal["system", "user", "assistant", "tool"]
    content: str
    tool_calls: tuple[Mapping[str, Any], ...] | None = None
    tool_call_id: str | None = None
    name: str | None = None

    def to_chat_param(self) -> ChatCompletionMessageParam:
        """Convert to OpenAI's ChatCompletionMessageParam format."""
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name is not None:
            payload["name"] = self.name
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            payload["tool_calls"] = [dict(call) for call in self.tool_calls]
        return payload  # type: ignore[return-value]

    @classmethod
    def user(cls, content: str) -> ModelMessage:
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: Sequence[Mapping[str, Any]] | None = None) -> ModelMessage:
        return cls(role="assistant", content=content, tool_calls=tuple(tool_calls) if tool_calls else None)

    @classmethod
    def tool(cls, content: str, tool_call_id: str, name: str | None = None) -> ModelMessage:
        return cls(role="tool", content=content, tool_call_id=tool_call_id, name=name)
