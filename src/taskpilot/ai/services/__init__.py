"""AI service helpers (deduplication, tool summaries, telemetry)."""

from .request_dedup import (
    DeduplicationClaim,
    DeduplicationRecord,
    DeduplicationStats,
    DeduplicationStore,
    InMemoryDeduplicationStore,
    RequestDeduplicator,
)
from .telemetry import ConversationUsageEvent, InMemoryTelemetrySink, TelemetrySink
from .tool_result_formatter import (
    ToolResultSummary,
    ToolSummary,
    aggregate,
    combine_summaries,
    describe,
    format_for_storage,
    summarise,
)

__all__ = [
    "DeduplicationClaim",
    "DeduplicationRecord",
    "DeduplicationStats",
    "DeduplicationStore",
    "InMemoryDeduplicationStore",
    "RequestDeduplicator",
    "ConversationUsageEvent",
    "TelemetrySink",
    "InMemoryTelemetrySink",
    "ToolSummary",
    "ToolResultSummary",
    "describe",
    "summarise",
    "format_for_storage",
    "aggregate",
    "combine_summaries",
]
