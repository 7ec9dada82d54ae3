"""Time-windowed request deduplication.

Inbound chat requests are keyed by a caller-supplied hash. A record stays
"live" for five minutes; lookups after that treat it as absent even if the
record still exists, and a separate periodic :meth:`RequestDeduplicator.cleanup`
removes expired records physically.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol

__all__ = [
    "DEFAULT_TTL_SECONDS",
    "DEFAULT_MESSAGE_LIMIT",
    "DEFAULT_STATS_WINDOW_SECONDS",
    "DeduplicationRecord",
    "DeduplicationClaim",
    "DeduplicationStats",
    "DeduplicationStore",
    "InMemoryDeduplicationStore",
    "RequestDeduplicator",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 5 * 60
DEFAULT_MESSAGE_LIMIT = 200
DEFAULT_STATS_WINDOW_SECONDS = 24 * 60 * 60


@dataclass(slots=True, frozen=True)
class DeduplicationRecord:
    """Persisted marker for one inbound request."""

    request_hash: str
    identity: str
    message_text: str
    created_at: float
    expires_at: float
    session_id: str | None = None
    response_id: str | None = None

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "requestHash": self.request_hash,
            "identity": self.identity,
            "messageText": self.message_text,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
        }
        if self.session_id is not None:
            payload["sessionId"] = self.session_id
        if self.response_id is not None:
            payload["responseId"] = self.response_id
        return payload

    @classmethod
    def from_payload(cls, value: Mapping[str, Any]) -> DeduplicationRecord:
        session_id = value.get("sessionId")
        response_id = value.get("responseId")
        return cls(
            request_hash=str(value["requestHash"]),
            identity=str(value["identity"]),
            message_text=str(value.get("messageText") or ""),
            created_at=float(value["createdAt"]),
            expires_at=float(value["expiresAt"]),
            session_id=str(session_id) if session_id is not None else None,
            response_id=str(response_id) if response_id is not None else None,
        )


@dataclass(slots=True, frozen=True)
class DeduplicationClaim:
    """Result of an atomic claim: ``accepted`` is False for duplicates."""

    accepted: bool
    record: DeduplicationRecord

    @property
    def duplicate(self) -> bool:
        return not self.accepted


@dataclass(slots=True, frozen=True)
class DeduplicationStats:
    total_requests: int
    unique_requests: int
    duplicate_requests: int
    sessions_count: int
    oldest: float | None
    newest: float | None
    window_hours: float

    def as_payload(self) -> dict[str, Any]:
        return {
            "totalRequests": self.total_requests,
            "uniqueRequests": self.unique_requests,
            "duplicateRequests": self.duplicate_requests,
            "sessionsCount": self.sessions_count,
            "timeRangeHours": self.window_hours,
            "oldestRequest": self.oldest,
            "newestRequest": self.newest,
        }


class DeduplicationStore(Protocol):
    """Durable storage for deduplication records."""

    def insert(self, record: DeduplicationRecord) -> None:
        ...

    def insert_if_absent(self, record: DeduplicationRecord, *, now: float) -> DeduplicationRecord | None:
        """Insert ``record`` unless a live record with the same hash exists.

        Returns the existing live record when the insert was refused, else
        None. Implementations must perform the check and insert atomically.
        """
        ...

    def find_latest(self, request_hash: str) -> DeduplicationRecord | None:
        ...

    def delete_expired(self, now: float) -> int:
        ...

    def records_for(self, identity: str, since: float) -> list[DeduplicationRecord]:
        ...


class InMemoryDeduplicationStore:
    """Thread-safe in-memory :class:`DeduplicationStore`."""

    def __init__(self) -> None:
        self._records: list[DeduplicationRecord] = []
        self._lock = threading.Lock()

    def insert(self, record: DeduplicationRecord) -> None:
        with self._lock:
            self._records.append(record)

    def insert_if_absent(self, record: DeduplicationRecord, *, now: float) -> DeduplicationRecord | None:
        with self._lock:
            existing = self._latest(record.request_hash)
            if existing is not None and not existing.is_expired(now):
                return existing
            self._records.append(record)
            return None

    def find_latest(self, request_hash: str) -> DeduplicationRecord | None:
        with self._lock:
            return self._latest(request_hash)

    def delete_expired(self, now: float) -> int:
        with self._lock:
            kept = [record for record in self._records if not record.expires_at < now]
            removed = len(self._records) - len(kept)
            self._records = kept
            return removed

    def records_for(self, identity: str, since: float) -> list[DeduplicationRecord]:
        with self._lock:
            return [record for record in self._records if record.identity == identity and record.created_at >= since]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _latest(self, request_hash: str) -> DeduplicationRecord | None:
        for record in reversed(self._records):
            if record.request_hash == request_hash:
                return record
        return None


class RequestDeduplicator:
    """Idempotency guard for inbound chat requests.

    No hashing happens here: callers must supply a hash that is stable for
    semantically identical requests and differs otherwise.
    """

    def __init__(
        self,
        store: DeduplicationStore | None = None,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        message_limit: int = DEFAULT_MESSAGE_LIMIT,
        stats_window_seconds: float = DEFAULT_STATS_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store: DeduplicationStore = store if store is not None else InMemoryDeduplicationStore()
        self._ttl = max(0.0, float(ttl_seconds))
        self._message_limit = max(0, int(message_limit))
        self._stats_window = max(0.0, float(stats_window_seconds))
        self._clock = clock

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def _build_record(
        self,
        request_hash: str,
        identity: str,
        session_id: str | None,
        message_text: str,
        response_id: str | None,
    ) -> DeduplicationRecord:
        now = self._clock()
        return DeduplicationRecord(
            request_hash=request_hash,
            identity=identity,
            session_id=session_id,
            message_text=(message_text or "")[: self._message_limit],
            response_id=response_id,
            created_at=now,
            expires_at=now + self._ttl,
        )

    def store(
        self,
        request_hash: str,
        identity: str,
        session_id: str | None = None,
        message_text: str = "",
        response_id: str | None = None,
    ) -> DeduplicationRecord:
        """Record a request unconditionally and return the stored record."""

        record = self._build_record(request_hash, identity, session_id, message_text, response_id)
        self._store.insert(record)
        return record

    def check(self, request_hash: str) -> DeduplicationRecord | None:
        """Return the live record for ``request_hash``, or None.

        A record whose expiry has passed is treated exactly like a missing one.
        """

        record = self._store.find_latest(request_hash)
        if record is None or record.is_expired(self._clock()):
            return None
        return record

    def claim(
        self,
        request_hash: str,
        identity: str,
        session_id: str | None = None,
        message_text: str = "",
        response_id: str | None = None,
    ) -> DeduplicationClaim:
        """Check and store in one atomic step.

        Two concurrent requests carrying the same hash cannot both be
        accepted: the store refuses the second insert while the first record
        is live.
        """

        record = self._build_record(request_hash, identity, session_id, message_text, response_id)
        existing = self._store.insert_if_absent(record, now=record.created_at)
        if existing is not None:
            LOGGER.info("Duplicate request %s absorbed (first seen at %.3f)", request_hash, existing.created_at)
            return DeduplicationClaim(accepted=False, record=existing)
        return DeduplicationClaim(accepted=True, record=record)

    def cleanup(self, now: float | None = None) -> int:
        """Physically remove every record that expired before ``now``."""

        moment = self._clock() if now is None else now
        removed = self._store.delete_expired(moment)
        if removed:
            LOGGER.debug("Removed %s expired deduplication records", removed)
        return removed

    def stats(self, identity: str, window_seconds: float | None = None) -> DeduplicationStats:
        """Summarize records created by ``identity`` within the stats window."""

        if window_seconds is None:
            window_seconds = self._stats_window
        since = self._clock() - window_seconds
        records = self._store.records_for(identity, since)
        unique = {record.request_hash for record in records}
        sessions = {record.session_id for record in records if record.session_id}
        created = [record.created_at for record in records]
        return DeduplicationStats(
            total_requests=len(records),
            unique_requests=len(unique),
            duplicate_requests=len(records) - len(unique),
            sessions_count=len(sessions),
            oldest=min(created) if created else None,
            newest=max(created) if created else None,
            window_hours=window_seconds / 3600,
        )
