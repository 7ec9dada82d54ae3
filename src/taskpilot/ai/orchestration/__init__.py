"""Turn orchestration: message conversion, state tracking and session guards.

The turn pipeline lives in :mod:`.turn_pipeline` and is imported from there.
"""

# Message shapes and payloads
from .message_types import (
    ModelMessage,
    PendingToolCallPart,
    StoredMessage,
    TextPart,
    ToolCall,
    ToolResult,
    ToolUsagePart,
    UIMessage,
)
from .payloads import ErrorPayload, StructuredPayload, TextPayload, ToolPayload, classify_payload

# Conversion
from .message_converter import (
    ConversionReport,
    MessageConverter,
    convert_messages,
    reduce_to_chat_messages,
    sanitize_messages,
)

# Context window and guards
from .context_window import (
    ContextWindowManager,
    ConversationStats,
    conversation_stats,
    detect_loop,
    optimize_context,
)
from .repetition import RepetitionVerdict, ToolRepetitionDetector

# State tracking
from .conversation_state import (
    PHASES,
    ConversationPhase,
    ConversationSnapshot,
    ConversationState,
    ProgressTracker,
    ToolExecutionState,
    UserInteraction,
)

# Turn coordination
from .event_log import ChatEventLogger, TurnEventLog
from .session_lock import LockResult, SessionLease, SessionLock

__all__ = [
    "ModelMessage",
    "PendingToolCallPart",
    "StoredMessage",
    "TextPart",
    "ToolCall",
    "ToolResult",
    "ToolUsagePart",
    "UIMessage",
    "ErrorPayload",
    "StructuredPayload",
    "TextPayload",
    "ToolPayload",
    "classify_payload",
    "ConversionReport",
    "MessageConverter",
    "convert_messages",
    "reduce_to_chat_messages",
    "sanitize_messages",
    "ContextWindowManager",
    "ConversationStats",
    "conversation_stats",
    "detect_loop",
    "optimize_context",
    "RepetitionVerdict",
    "ToolRepetitionDetector",
    "PHASES",
    "ConversationPhase",
    "ConversationSnapshot",
    "ConversationState",
    "ProgressTracker",
    "ToolExecutionState",
    "UserInteraction",
    "ChatEventLogger",
    "TurnEventLog",
    "LockResult",
    "SessionLease",
    "SessionLock",
]
