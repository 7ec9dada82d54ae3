"""Per-session leases that serialize chat turns.

At most one request may run a turn for a session at a time. A lease expires
on its own so a crashed request never blocks the session for longer than its
TTL.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Literal

LOGGER = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 15.0
MIN_TTL_SECONDS = 1.0

AcquireStatus = Literal["acquired", "renewed", "busy"]
ReleaseStatus = Literal["released", "missing", "expired", "not_owner"]


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class SessionLease:
    session_id: str
    request_id: str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now


@dataclass(slots=True, frozen=True)
class LockResult:
    """Outcome of :meth:`SessionLock.acquire`.

    ``owner_request_id`` names the current holder when the lock is busy.
    """

    status: AcquireStatus
    expires_at: float
    owner_request_id: str | None = None

    @property
    def granted(self) -> bool:
        return self.status != "busy"


# -----------------------------------------------------------------------------
# Lock table
# -----------------------------------------------------------------------------


class SessionLock:
    """In-memory lease table keyed by session id."""

    def __init__(
        self,
        *,
        default_ttl_seconds: float = DEFAULT_TTL_SECONDS,
        min_ttl_seconds: float = MIN_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._default_ttl = float(default_ttl_seconds)
        self._min_ttl = max(0.0, float(min_ttl_seconds))
        self._clock = clock
        self._leases: dict[str, SessionLease] = {}
        self._lock = threading.Lock()

    def acquire(self, session_id: str, request_id: str, ttl_seconds: float | None = None) -> LockResult:
        """Take or renew the lease for ``session_id``.

        The same request renews its lease; an expired lease held by another
        request is taken over; a live foreign lease reports ``busy``.
        """

        ttl = max(self._default_ttl if ttl_seconds is None else float(ttl_seconds), self._min_ttl)
        with self._lock:
            now = self._clock()
            expires_at = now + ttl
            existing = self._leases.get(session_id)
            if existing is None:
                self._leases[session_id] = SessionLease(session_id, request_id, expires_at)
                return LockResult("acquired", expires_at)
            if existing.request_id == request_id:
                self._leases[session_id] = SessionLease(session_id, request_id, expires_at)
                return LockResult("renewed", expires_at)
            if existing.is_expired(now):
                LOGGER.debug("Taking over expired lease on %s from %s", session_id, existing.request_id)
                self._leases[session_id] = SessionLease(session_id, request_id, expires_at)
                return LockResult("acquired", expires_at)
            return LockResult("busy", existing.expires_at, owner_request_id=existing.request_id)

    def release(self, session_id: str, request_id: str) -> ReleaseStatus:
        """Drop the lease if ``request_id`` holds it.

        A foreign lease is only removed once it has expired.
        """

        with self._lock:
            existing = self._leases.get(session_id)
            if existing is None:
                return "missing"
            if existing.request_id != request_id:
                if existing.is_expired(self._clock()):
                    del self._leases[session_id]
                    return "expired"
                return "not_owner"
            del self._leases[session_id]
            return "released"

    def holder(self, session_id: str) -> SessionLease | None:
        """Return the live lease for ``session_id``, if any."""

        with self._lock:
            lease = self._leases.get(session_id)
            if lease is None or lease.is_expired(self._clock()):
                return None
            return lease


__all__ = [
    "DEFAULT_TTL_SECONDS",
    "MIN_TTL_SECONDS",
    "AcquireStatus",
    "ReleaseStatus",
    "SessionLease",
    "LockResult",
    "SessionLock",
]
