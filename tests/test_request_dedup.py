"""Tests for time-windowed request deduplication."""

from __future__ import annotations

import threading

import pytest

from taskpilot.ai.services.request_dedup import (
    DeduplicationRecord,
    InMemoryDeduplicationStore,
    RequestDeduplicator,
)


@pytest.fixture
def store() -> InMemoryDeduplicationStore:
    return InMemoryDeduplicationStore()


@pytest.fixture
def dedup(store, clock) -> RequestDeduplicator:
    return RequestDeduplicator(store, clock=clock)


class TestCheck:
    def test_unknown_hash_is_not_found(self, dedup: RequestDeduplicator):
        assert dedup.check("h1") is None

    def test_stored_hash_is_found_within_window(self, dedup: RequestDeduplicator, clock):
        stored = dedup.store("h1", "user-1", session_id="s1", message_text="hello")
        clock.advance(299)

        found = dedup.check("h1")

        assert found == stored
        assert found.expires_at == stored.created_at + 300

    def test_record_is_expired_at_expiry(self, dedup: RequestDeduplicator, clock):
        dedup.store("h1", "user-1")
        clock.advance(300)

        assert dedup.check("h1") is None

    def test_message_text_is_truncated(self, dedup: RequestDeduplicator):
        record = dedup.store("h1", "user-1", message_text="x" * 500)

        assert len(record.message_text) == 200


class TestClaim:
    def test_second_claim_is_duplicate(self, dedup: RequestDeduplicator):
        first = dedup.claim("h1", "user-1", session_id="s1", message_text="hi")
        second = dedup.claim("h1", "user-1", session_id="s1", message_text="hi")

        assert first.accepted
        assert second.duplicate
        assert second.record == first.record

    def test_claim_after_expiry_is_accepted(self, dedup: RequestDeduplicator, clock):
        dedup.claim("h1", "user-1")
        clock.advance(300)

        assert dedup.claim("h1", "user-1").accepted

    def test_concurrent_claims_accept_exactly_one(self, dedup: RequestDeduplicator):
        results: list[bool] = []
        barrier = threading.Barrier(8)

        def worker() -> None:
            barrier.wait()
            results.append(dedup.claim("same-hash", "user-1").accepted)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1


class TestCleanup:
    def test_removes_only_records_expired_before_now(self, dedup: RequestDeduplicator, store, clock):
        dedup.store("old", "user-1")
        clock.advance(100)
        dedup.store("new", "user-1")
        clock.advance(200)

        # "old" expires exactly now and is kept by the strict comparison.
        assert dedup.cleanup() == 0
        clock.advance(1)
        assert dedup.cleanup() == 1
        assert len(store) == 1
        assert store.find_latest("new") is not None

    def test_explicit_now(self, dedup: RequestDeduplicator, clock):
        dedup.store("h1", "user-1")

        assert dedup.cleanup(now=clock.now + 1_000) == 1


def test_stats_counts_within_window(dedup: RequestDeduplicator, clock) -> None:
    dedup.store("stale", "user-1", session_id="s0")
    clock.advance(25 * 3600)
    first = dedup.store("h1", "user-1", session_id="s1")
    clock.advance(10)
    dedup.store("h1", "user-1", session_id="s1")
    clock.advance(10)
    last = dedup.store("h2", "user-1", session_id="s2")
    dedup.store("h3", "user-2", session_id="s3")

    stats = dedup.stats("user-1")

    assert stats.total_requests == 3
    assert stats.unique_requests == 2
    assert stats.duplicate_requests == 1
    assert stats.sessions_count == 2
    assert stats.oldest == first.created_at
    assert stats.newest == last.created_at
    assert stats.window_hours == 24
    assert stats.as_payload()["timeRangeHours"] == 24


def test_configured_stats_window_is_the_default(clock) -> None:
    dedup = RequestDeduplicator(stats_window_seconds=3600, clock=clock)
    dedup.store("h1", "user-1")
    clock.advance(7200)
    dedup.store("h2", "user-1")

    stats = dedup.stats("user-1")

    assert stats.total_requests == 1
    assert stats.window_hours == 1
    assert dedup.stats("user-1", window_seconds=86_400).total_requests == 2


def test_stats_for_unknown_identity(dedup: RequestDeduplicator) -> None:
    stats = dedup.stats("nobody", window_seconds=3600)

    assert stats.total_requests == 0
    assert stats.oldest is None
    assert stats.window_hours == 1


def test_record_payload_round_trip() -> None:
    record = DeduplicationRecord(
        request_hash="h1",
        identity="user-1",
        message_text="hello",
        created_at=10.0,
        expires_at=310.0,
        session_id="s1",
    )

    payload = record.as_payload()

    assert payload["requestHash"] == "h1"
    assert "responseId" not in payload
    assert DeduplicationRecord.from_payload(payload) == record
