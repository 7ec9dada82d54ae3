"""End-to-end handling of one inbound chat message.

The pipeline owns no global state: every collaborator (store, runtime, lock,
deduplicator, converter, loggers) is handed in or built from the supplied
:class:`~taskpilot.services.settings.Settings`.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Mapping, Protocol, Sequence

from openai.types.chat import ChatCompletionMessageParam

from ...services.settings import Settings
from ..memory.conversation_store import ConversationStore
from ..services.request_dedup import DeduplicationRecord, RequestDeduplicator
from ..services.telemetry import ConversationUsageEvent, InMemoryTelemetrySink, TelemetrySink
from ..services.tool_result_formatter import ToolResultSummary, combine_summaries, format_for_storage
from .context_window import ContextWindowManager, ConversationStats, conversation_stats
from .conversation_state import ConversationState
from .event_log import ChatEventLogger
from .message_converter import MessageConverter, sanitize_messages
from .message_types import StoredMessage, ToolCall, ToolResult
from .payloads import ErrorPayload, classify_payload
from .repetition import ToolRepetitionDetector
from .session_lock import SessionLock

__all__ = [
    "TurnStatus",
    "TurnRequest",
    "ToolInvocation",
    "RuntimeTurn",
    "ModelRuntime",
    "TurnOutcome",
    "ConversationTurnPipeline",
]

LOGGER = logging.getLogger(__name__)

TurnStatus = Literal["completed", "duplicate", "busy"]
LOOP_WARNING = "Conversation loop detected: the last exchanges repeat the ones before them."


# -----------------------------------------------------------------------------
# Request / runtime types
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TurnRequest:
    """An inbound user message.

    Attributes:
        session_id: Chat session the message belongs to.
        identity: Authenticated caller identity.
        request_hash: Caller-computed idempotency key for the request.
        text: The user's message.
        request_id: Unique id for this delivery; generated when omitted.
        metadata: Free-form context forwarded to the event log.
    """

    session_id: str
    identity: str
    request_hash: str
    text: str
    request_id: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class ToolInvocation:
    """A tool call made by the runtime during a turn, with its output."""

    tool_call_id: str
    name: str
    arguments: Any = None
    output: Any = None
    error: str | None = None
    title: str | None = None
    metadata: Mapping[str, Any] | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None or isinstance(classify_payload(self.output), ErrorPayload)


@dataclass(slots=True, frozen=True)
class RuntimeTurn:
    text: str = ""
    tool_invocations: tuple[ToolInvocation, ...] = ()


class ModelRuntime(Protocol):
    """External model/tool runtime that answers one turn."""

    async def run(self, messages: Sequence[ChatCompletionMessageParam]) -> RuntimeTurn:
        ...


@dataclass(slots=True)
class TurnOutcome:
    """What :meth:`ConversationTurnPipeline.handle` did with a request."""

    status: TurnStatus
    session_id: str
    request_id: str
    response_text: str | None = None
    tool_summaries: tuple[ToolResultSummary, ...] = ()
    tool_names: tuple[str, ...] = ()
    blocked_tools: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    loop_detected: bool = False
    used_fallback: bool = False
    model_message_count: int = 0
    stats: ConversationStats | None = None
    owner_request_id: str | None = None
    duplicate_of: DeduplicationRecord | None = None


# -----------------------------------------------------------------------------
# Pipeline
# -----------------------------------------------------------------------------


class ConversationTurnPipeline:
    """Runs a chat turn: gate, convert, call the runtime, record results."""

    def __init__(
        self,
        store: ConversationStore,
        runtime: ModelRuntime,
        *,
        settings: Settings | None = None,
        deduplicator: RequestDeduplicator | None = None,
        session_lock: SessionLock | None = None,
        converter: MessageConverter | None = None,
        event_logger: ChatEventLogger | None = None,
        telemetry_sink: TelemetrySink | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings or Settings()
        self._store = store
        self._runtime = runtime
        self._clock = clock
        self._deduplicator = deduplicator or RequestDeduplicator(
            ttl_seconds=self._settings.deduplication.ttl_seconds,
            message_limit=self._settings.deduplication.message_limit,
            stats_window_seconds=self._settings.deduplication.stats_window_seconds,
            clock=clock,
        )
        self._session_lock = session_lock or SessionLock(
            default_ttl_seconds=self._settings.session_lock.ttl_seconds,
            min_ttl_seconds=self._settings.session_lock.min_ttl_seconds,
            clock=clock,
        )
        self._converter = converter or MessageConverter(clock=clock, fallback_prompt=self._settings.fallback_prompt)
        self._event_logger = event_logger or ChatEventLogger(
            enabled=self._settings.debug_event_logging,
            base_dir=self._settings.event_log_dir,
        )
        self._telemetry: TelemetrySink = telemetry_sink or InMemoryTelemetrySink(self._settings.telemetry_capacity)
        self._window = ContextWindowManager(
            self._settings.context_window.max_messages,
            self._settings.context_window.loop_window,
        )

    @property
    def telemetry(self) -> TelemetrySink:
        return self._telemetry

    @property
    def deduplicator(self) -> RequestDeduplicator:
        return self._deduplicator

    async def handle(self, request: TurnRequest) -> TurnOutcome:
        """Process ``request`` end to end.

        Returns a ``busy`` outcome while another request holds the session
        and a ``duplicate`` outcome for a request hash seen within the
        deduplication window; neither touches the conversation. Runtime
        errors propagate once the failure is logged, and the session lease
        is released on every path.
        """

        request_id = request.request_id or uuid.uuid4().hex
        started = self._clock()
        lease = self._session_lock.acquire(request.session_id, request_id)
        if not lease.granted:
            LOGGER.info("Session %s busy with request %s", request.session_id, lease.owner_request_id)
            outcome = TurnOutcome(
                status="busy",
                session_id=request.session_id,
                request_id=request_id,
                owner_request_id=lease.owner_request_id,
            )
            self._record_usage(outcome, started)
            return outcome

        try:
            claim = self._deduplicator.claim(
                request.request_hash,
                request.identity,
                session_id=request.session_id,
                message_text=request.text,
            )
            if claim.duplicate:
                outcome = TurnOutcome(
                    status="duplicate",
                    session_id=request.session_id,
                    request_id=request_id,
                    duplicate_of=claim.record,
                )
                self._record_usage(outcome, started)
                return outcome

            with self._event_logger.start_turn(
                run_id=request_id,
                session_id=request.session_id,
                prompt=request.text,
                metadata={**self._settings.metadata, **request.metadata},
            ) as event_log:
                outcome = await self._run_turn(request, request_id, event_log)
            self._record_usage(outcome, started)
            return outcome
        except Exception:
            LOGGER.warning("Turn %s for session %s failed", request_id, request.session_id, exc_info=True)
            self._record_usage(
                TurnOutcome(status="completed", session_id=request.session_id, request_id=request_id),
                started,
                status="failed",
            )
            raise
        finally:
            self._session_lock.release(request.session_id, request_id)

    # ------------------------------------------------------------------
    # Turn body
    # ------------------------------------------------------------------

    async def _run_turn(self, request: TurnRequest, request_id: str, event_log: Any) -> TurnOutcome:
        session_id = request.session_id
        user_message = StoredMessage(role="user", content=request.text, timestamp=self._clock())
        history = [*self._store.load_messages(session_id), user_message.as_payload()]

        window = sanitize_messages(self._window.optimize(history))
        loop_detected = self._window.detect_loop(window)
        warnings: list[str] = [LOOP_WARNING] if loop_detected else []

        state = ConversationState.deserialize(self._store.load_state(session_id), clock=self._clock)
        state.record_interaction("message", request.text)
        state.set_phase("planning")

        report = self._converter.convert_with_report(window)
        event_log.log_conversion(report.as_payload())
        turn = await self._runtime.run([message.to_chat_param() for message in report.messages])
        # A slow runtime can outlive the lease; nothing is written once it is lost.
        renewal = self._session_lock.acquire(session_id, request_id)
        if not renewal.granted:
            LOGGER.warning(
                "Request %s lost the lease on session %s to %s; discarding its results",
                request_id,
                session_id,
                renewal.owner_request_id,
            )
            event_log.log_failure(
                message="session lease lost",
                details={"ownerRequestId": renewal.owner_request_id},
            )
            return TurnOutcome(
                status="busy",
                session_id=session_id,
                request_id=request_id,
                warnings=tuple(warnings),
                loop_detected=loop_detected,
                used_fallback=report.used_fallback,
                model_message_count=len(report.messages),
                owner_request_id=renewal.owner_request_id,
            )

        if turn.tool_invocations:
            state.set_phase("execution")
        tool_calls: list[ToolCall] = []
        tool_results: list[ToolResult] = []
        summaries: list[ToolResultSummary] = []
        blocked: list[str] = []
        records: list[dict[str, Any]] = []
        detector = ToolRepetitionDetector.from_payload(state.tool_repetition, limit=self._settings.repetition_limit)

        for index, invocation in enumerate(turn.tool_invocations):
            call_id = invocation.tool_call_id or f"{request_id}-tool-{index}"
            execution_id = f"{request_id}:{call_id}"
            state.start_execution(invocation.name, execution_id)
            verdict = detector.check(invocation.name, invocation.arguments)
            if not verdict.allow_execution:
                error = verdict.message or "Repeated tool call blocked."
                raw: Any = f"Error: {error}"
                described: Any = ErrorPayload(message=error)
                state.fail_execution(execution_id, error)
                blocked.append(invocation.name)
            elif invocation.failed:
                payload = classify_payload(invocation.output)
                error = invocation.error or (payload.message if isinstance(payload, ErrorPayload) else "Tool failed")
                raw = f"Error: {invocation.error}" if invocation.error is not None else invocation.output
                described = ErrorPayload(message=error)
                state.fail_execution(execution_id, error)
            else:
                raw = described = invocation.output
                state.update_state(execution_id, "running")
                state.complete_execution(execution_id, raw)

            summary = format_for_storage(
                invocation.name,
                described,
                title=invocation.title,
                metadata=invocation.metadata,
            )
            summaries.append(summary)
            tool_calls.append(ToolCall(name=invocation.name, args=invocation.arguments, tool_call_id=call_id))
            tool_results.append(ToolResult(tool_call_id=call_id, result=raw, tool_name=invocation.name))
            records.append({"toolCallId": call_id, "toolName": invocation.name, **summary.as_payload()})
        state.set_tool_repetition(detector.as_payload())

        response_text = (turn.text or "").strip()
        if not response_text and summaries:
            response_text = combine_summaries(summaries) or ""

        appended = [
            StoredMessage(
                role="assistant",
                content=response_text or None,
                tool_calls=tuple(tool_calls),
                timestamp=self._clock(),
            )
        ]
        if tool_results:
            summary_lines = [item.summary for item in summaries if item.summary]
            appended.append(
                StoredMessage(
                    role="tool",
                    content="\n".join(summary_lines) or None,
                    tool_results=tuple(tool_results),
                    timestamp=self._clock(),
                )
            )
        self._store.append_messages(
            session_id,
            [user_message.as_payload(), *(message.as_payload() for message in appended)],
        )

        state.set_phase("completed")
        self._store.save_state(session_id, state.serialize())

        stats = conversation_stats([*window, *appended])
        event_log.log_tools(records)
        event_log.log_completion(
            status="completed",
            response_text=response_text,
            tool_call_count=len(tool_calls),
            warnings=warnings,
        )
        return TurnOutcome(
            status="completed",
            session_id=session_id,
            request_id=request_id,
            response_text=response_text or None,
            tool_summaries=tuple(summaries),
            tool_names=tuple(call.name for call in tool_calls),
            blocked_tools=tuple(blocked),
            warnings=tuple(warnings),
            loop_detected=loop_detected,
            used_fallback=report.used_fallback,
            model_message_count=len(report.messages),
            stats=stats,
        )

    def _record_usage(self, outcome: TurnOutcome, started: float, *, status: str | None = None) -> None:
        stats = outcome.stats
        event = ConversationUsageEvent(
            session_id=outcome.session_id,
            request_id=outcome.request_id,
            status=status or outcome.status,
            timestamp=self._clock(),
            message_count=stats.total if stats is not None else 0,
            model_message_count=outcome.model_message_count,
            tool_names=outcome.tool_names,
            failed_tools=sum(1 for summary in outcome.tool_summaries if summary.severity == "error"),
            used_fallback=outcome.used_fallback,
            loop_detected=outcome.loop_detected,
            duration_seconds=max(0.0, self._clock() - started),
            stats=stats.as_payload() if stats is not None else {},
        )
        try:
            self._telemetry.record(event)
        except Exception:  # pragma: no cover - sinks are host supplied
            LOGGER.debug("Telemetry sink rejected event", exc_info=True)
