"""
Tests for the OutboxStore.

These tests verify the guarded state transitions, the atomic claim and
lease reclaim, and the inspection queries.
"""

import threading
from collections import Counter
from datetime import timedelta

import pytest
from sqlalchemy import update

from shared.models import OutboxStatus
from shared.outbox_store import MAX_ERROR_LENGTH, OutboxStore, outbox_table


def later(clock, seconds):
    return clock.now + timedelta(seconds=seconds)


def corrupt_payload(store, entry_id, payload_json):
    with store.engine.begin() as conn:
        conn.execute(update(outbox_table).where(outbox_table.c.id == entry_id).values(payload_json=payload_json))


class TestInsert:
    """Tests for creating entries."""

    def test_insert_creates_pending_entry(self, store: OutboxStore, clock):
        """Test that insert stores a due, pending entry."""
        entry = store.insert("push_message", {"targetUserId": 7, "body": "Hi"})

        assert entry.status == OutboxStatus.PENDING
        assert entry.attempt_count == 0
        assert entry.next_attempt_at == clock.now
        assert entry.last_error is None

        stored = store.get(entry.id)
        assert stored is not None
        assert stored.payload == {"targetUserId": 7, "body": "Hi"}
        assert stored.event_type == "push_message"
        assert stored.created_at == clock.now

    def test_ids_are_increasing(self, store: OutboxStore):
        """Test that entry IDs are unique and increasing."""
        ids = [store.insert("push_message", {"n": n}).id for n in range(5)]
        assert ids == sorted(ids)
        assert len(set(ids)) == 5

    def test_get_nonexistent_entry(self, store: OutboxStore):
        """Test getting an entry that doesn't exist."""
        assert store.get(12345) is None

    def test_max_attempts_must_be_positive(self, database_url):
        """Test that max_attempts below 1 is rejected."""
        with pytest.raises(ValueError):
            OutboxStore(database_url, max_attempts=0)

    @pytest.mark.parametrize("payload", [["a", "list"], "text", 42, None])
    def test_non_object_payload_rejected(self, store: OutboxStore, payload):
        """Test that only JSON objects are accepted as payloads."""
        with pytest.raises(TypeError):
            store.insert("push_message", payload)

        assert store.list_recent() == []

    def test_unserializable_payload_rejected(self, store: OutboxStore):
        """Test that a payload json can't encode is not stored."""
        with pytest.raises(TypeError):
            store.insert("push_message", {"body": object()})

        assert store.list_recent() == []


class TestClaimBatch:
    """Tests for leasing entries to workers."""

    def test_claim_marks_processing(self, store: OutboxStore, clock):
        """Test that claiming leases the entry and counts the attempt."""
        created = store.insert("push_message", {})

        claimed = store.claim_batch(limit=10, worker_id="worker-1")

        assert [e.id for e in claimed] == [created.id]
        entry = claimed[0]
        assert entry.status == OutboxStatus.PROCESSING
        assert entry.claimed_by == "worker-1"
        assert entry.claimed_at == clock.now
        assert entry.attempt_count == 1

    def test_claim_respects_limit(self, store: OutboxStore):
        """Test that a claim never exceeds its limit."""
        for n in range(5):
            store.insert("push_message", {"n": n})

        assert len(store.claim_batch(limit=3, worker_id="w")) == 3
        assert len(store.claim_batch(limit=3, worker_id="w")) == 2
        assert store.claim_batch(limit=3, worker_id="w") == []

    def test_claimed_entries_are_not_claimed_again(self, store: OutboxStore):
        """Test that a leased entry is not handed to another worker."""
        store.insert("push_message", {})

        first = store.claim_batch(limit=10, worker_id="worker-1")
        second = store.claim_batch(limit=10, worker_id="worker-2")

        assert len(first) == 1
        assert second == []

    def test_entries_not_yet_due_are_skipped(self, store: OutboxStore, clock):
        """Test that entries wait until next_attempt_at."""
        entry = store.insert("push_message", {})
        store.claim_batch(limit=1, worker_id="w")
        store.mark_failed(entry.id, "boom", later(clock, 10))

        assert store.claim_batch(limit=10, worker_id="w") == []

        clock.advance(10)
        claimed = store.claim_batch(limit=10, worker_id="w")
        assert [e.id for e in claimed] == [entry.id]
        assert claimed[0].attempt_count == 2

    def test_zero_limit_claims_nothing(self, store: OutboxStore):
        """Test that a zero limit claims nothing."""
        store.insert("push_message", {})
        assert store.claim_batch(limit=0, worker_id="w") == []

    def test_concurrent_claims_never_overlap(self, store: OutboxStore):
        """N workers racing over M entries claim each entry exactly once."""
        total = 60
        created_ids = {store.insert("push_message", {"n": n}).id for n in range(total)}
        claims: list[int] = []
        claims_lock = threading.Lock()
        start = threading.Barrier(8)

        def worker(worker_id: str):
            start.wait()
            while True:
                batch = store.claim_batch(limit=5, worker_id=worker_id)
                if not batch:
                    return
                with claims_lock:
                    claims.extend(e.id for e in batch)

        threads = [threading.Thread(target=worker, args=(f"worker-{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert len(claims) == total
        assert set(claims) == created_ids
        assert max(Counter(claims).values()) == 1
        assert store.count_by_status()["processing"] == total

    @pytest.mark.parametrize("payload_json", ["{not json", '["not", "an", "object"]'])
    def test_undecodable_row_is_dead_lettered(self, store: OutboxStore, payload_json):
        """Test that a row that can't be decoded is dead-lettered and the rest are claimed."""
        broken = store.insert("push_message", {"n": 1})
        healthy = store.insert("push_message", {"n": 2})
        corrupt_payload(store, broken.id, payload_json)

        claimed = store.claim_batch(limit=10, worker_id="w")

        assert [e.id for e in claimed] == [healthy.id]
        assert store.count_by_status() == {"pending": 0, "processing": 1, "sent": 0, "dead": 1}
        with store.engine.connect() as conn:
            row = conn.execute(outbox_table.select().where(outbox_table.c.id == broken.id)).one()
        assert row.status == "dead"
        assert row.claimed_by is None
        assert row.last_error.startswith("Undecodable outbox row")

    def test_expired_lease_is_taken_over(self, store: OutboxStore, clock):
        """Test that a claim with lease_duration takes over an expired lease."""
        entry = store.insert("push_message", {})
        store.claim_batch(limit=1, worker_id="crashed")

        clock.advance(31)
        claimed = store.claim_batch(limit=10, worker_id="rescuer", lease_duration=30)

        assert [e.id for e in claimed] == [entry.id]
        assert claimed[0].claimed_by == "rescuer"
        assert claimed[0].claimed_at == clock.now
        assert claimed[0].attempt_count == 2
        assert store.mark_sent(entry.id, worker_id="crashed") is False

    def test_fresh_lease_is_not_taken_over(self, store: OutboxStore, clock):
        """Test that a claim with lease_duration leaves live leases alone."""
        store.insert("push_message", {})
        store.claim_batch(limit=1, worker_id="busy")

        clock.advance(10)

        assert store.claim_batch(limit=10, worker_id="other", lease_duration=30) == []
        assert store.claim_batch(limit=10, worker_id="other") == []


class TestMarkSent:
    """Tests for the processing -> sent transition."""

    def test_mark_sent(self, store: OutboxStore):
        """Test the processing -> sent transition."""
        entry = store.insert("push_message", {})
        store.claim_batch(limit=1, worker_id="w")

        assert store.mark_sent(entry.id, worker_id="w") is True

        stored = store.get(entry.id)
        assert stored.status == OutboxStatus.SENT
        assert stored.claimed_by is None
        assert stored.attempt_count == 1

    def test_mark_sent_requires_processing(self, store: OutboxStore):
        """Test that only processing entries can be marked sent."""
        entry = store.insert("push_message", {})

        assert store.mark_sent(entry.id) is False
        assert store.get(entry.id).status == OutboxStatus.PENDING

    def test_mark_sent_requires_lease_holder(self, store: OutboxStore):
        """Test that only the lease holder can mark an entry sent."""
        entry = store.insert("push_message", {})
        store.claim_batch(limit=1, worker_id="worker-1")

        assert store.mark_sent(entry.id, worker_id="worker-2") is False
        assert store.get(entry.id).status == OutboxStatus.PROCESSING

    def test_last_error_kept_after_success(self, store: OutboxStore, clock):
        """Test that a later success keeps the earlier error."""
        entry = store.insert("push_message", {})
        store.claim_batch(limit=1, worker_id="w")
        store.mark_failed(entry.id, "first try failed", clock.now)
        store.claim_batch(limit=1, worker_id="w")
        store.mark_sent(entry.id, worker_id="w")

        stored = store.get(entry.id)
        assert stored.status == OutboxStatus.SENT
        assert stored.last_error == "first try failed"
        assert stored.attempt_count == 2


class TestMarkFailed:
    """Tests for retry scheduling and dead-lettering."""

    def test_retryable_failure_returns_to_pending(self, store: OutboxStore, clock):
        """Test that a retryable failure is rescheduled."""
        entry = store.insert("push_message", {})
        store.claim_batch(limit=1, worker_id="w")
        retry_at = later(clock, 5)

        status = store.mark_failed(entry.id, "provider unavailable", retry_at, worker_id="w")

        assert status == OutboxStatus.PENDING
        stored = store.get(entry.id)
        assert stored.status == OutboxStatus.PENDING
        assert stored.next_attempt_at == retry_at
        assert stored.last_error == "provider unavailable"
        assert stored.attempt_count == 1
        assert stored.claimed_by is None
        assert stored.claimed_at is None

    def test_non_retryable_failure_is_dead_on_first_attempt(self, store: OutboxStore, clock):
        """Test that a non-retryable failure is dead-lettered at once."""
        entry = store.insert("email_confirmation", {})
        store.claim_batch(limit=1, worker_id="w")

        status = store.mark_failed(entry.id, "malformed recipient", clock.now, retryable=False)

        assert status == OutboxStatus.DEAD
        stored = store.get(entry.id)
        assert stored.attempt_count == 1
        assert stored.last_error == "malformed recipient"

    def test_exhausted_attempts_are_dead(self, store: OutboxStore, clock):
        """Test that failures stop at max_attempts."""
        entry = store.insert("push_message", {})

        statuses = []
        for attempt in range(store.max_attempts):
            assert store.claim_batch(limit=1, worker_id="w")
            statuses.append(store.mark_failed(entry.id, f"failure {attempt + 1}", clock.now))

        assert statuses == [OutboxStatus.PENDING, OutboxStatus.PENDING, OutboxStatus.DEAD]
        stored = store.get(entry.id)
        assert stored.status == OutboxStatus.DEAD
        assert stored.attempt_count == store.max_attempts
        assert stored.last_error == "failure 3"

    def test_dead_entries_are_never_claimed(self, store: OutboxStore, clock):
        """Test that dead entries are never claimed or reclaimed."""
        entry = store.insert("push_message", {})
        store.claim_batch(limit=1, worker_id="w")
        store.mark_failed(entry.id, "bad", clock.now, retryable=False)

        clock.advance(3600)
        assert store.reclaim_stale(1) == 0
        assert store.claim_batch(limit=10, worker_id="w") == []

    def test_terminal_entries_are_immutable(self, store: OutboxStore, clock):
        """Test that sent entries cannot change state again."""
        entry = store.insert("push_message", {})
        store.claim_batch(limit=1, worker_id="w")
        store.mark_sent(entry.id)

        assert store.mark_failed(entry.id, "late failure", clock.now) is None
        assert store.mark_sent(entry.id) is False
        stored = store.get(entry.id)
        assert stored.status == OutboxStatus.SENT
        assert stored.last_error is None

    def test_mark_failed_requires_lease_holder(self, store: OutboxStore, clock):
        """Test that only the lease holder can record a failure."""
        entry = store.insert("push_message", {})
        store.claim_batch(limit=1, worker_id="worker-1")

        assert store.mark_failed(entry.id, "x", clock.now, worker_id="worker-2") is None
        assert store.get(entry.id).status == OutboxStatus.PROCESSING

    def test_long_errors_are_truncated(self, store: OutboxStore, clock):
        """Test that stored errors are truncated."""
        entry = store.insert("push_message", {})
        store.claim_batch(limit=1, worker_id="w")

        store.mark_failed(entry.id, "x" * (MAX_ERROR_LENGTH + 500), clock.now)

        assert len(store.get(entry.id).last_error) == MAX_ERROR_LENGTH


class TestReclaimStale:
    """Tests for recovering leases from crashed workers."""

    def test_expired_lease_is_reclaimed(self, store: OutboxStore, clock):
        """Test that an expired lease goes back to pending."""
        entry = store.insert("push_message", {})
        store.claim_batch(limit=1, worker_id="crashed-worker")

        clock.advance(31)
        assert store.reclaim_stale(lease_duration=30) == 1

        stored = store.get(entry.id)
        assert stored.status == OutboxStatus.PENDING
        assert stored.next_attempt_at == clock.now
        assert stored.claimed_by is None
        assert stored.attempt_count == 1
        assert stored.last_error is None

    def test_fresh_lease_is_kept(self, store: OutboxStore, clock):
        """Test that a lease still within its duration is kept."""
        store.insert("push_message", {})
        store.claim_batch(limit=1, worker_id="busy-worker")

        clock.advance(10)
        assert store.reclaim_stale(lease_duration=30) == 0
        assert store.count_by_status()["processing"] == 1

    def test_reclaim_keeps_last_error(self, store: OutboxStore, clock):
        """Test that reclaiming keeps the error and attempt count."""
        entry = store.insert("push_message", {})
        store.claim_batch(limit=1, worker_id="w")
        store.mark_failed(entry.id, "earlier failure", clock.now)
        store.claim_batch(limit=1, worker_id="crashed")

        clock.advance(60)
        store.reclaim_stale(lease_duration=30)

        stored = store.get(entry.id)
        assert stored.last_error == "earlier failure"
        assert stored.attempt_count == 2

    def test_reclaimed_entry_is_claimable_again(self, store: OutboxStore, clock):
        """Test that a reclaimed entry can be claimed by another worker."""
        entry = store.insert("push_message", {})
        store.claim_batch(limit=1, worker_id="crashed")
        clock.advance(31)
        store.reclaim_stale(lease_duration=30)

        claimed = store.claim_batch(limit=1, worker_id="rescuer")

        assert [e.id for e in claimed] == [entry.id]
        assert claimed[0].claimed_by == "rescuer"
        assert claimed[0].attempt_count == 2

    def test_stale_worker_cannot_complete_after_reclaim(self, store: OutboxStore, clock):
        """Test that the original worker loses its lease after reclaim."""
        entry = store.insert("push_message", {})
        store.claim_batch(limit=1, worker_id="slow")
        clock.advance(31)
        store.reclaim_stale(lease_duration=30)
        store.claim_batch(limit=1, worker_id="rescuer")

        assert store.mark_sent(entry.id, worker_id="slow") is False
        assert store.mark_sent(entry.id, worker_id="rescuer") is True


class TestInspection:
    """Tests for the operator-facing queries."""

    def test_list_recent_newest_first(self, store: OutboxStore, clock):
        """Test that entries are listed newest first."""
        first = store.insert("push_message", {"n": 1})
        clock.advance(1)
        second = store.insert("email_confirmation", {"n": 2})
        clock.advance(1)
        third = store.insert("push_message", {"n": 3})

        recent = store.list_recent(limit=10)

        assert [e.id for e in recent] == [third.id, second.id, first.id]

    def test_list_recent_limit(self, store: OutboxStore):
        """Test limiting the number of listed entries."""
        for n in range(5):
            store.insert("push_message", {"n": n})

        assert len(store.list_recent(limit=2)) == 2

    def test_list_recent_filter_by_status(self, store: OutboxStore, clock):
        """Test filtering listed entries by status."""
        dead = store.insert("email_confirmation", {})
        store.insert("push_message", {})
        store.claim_batch(limit=1, worker_id="w")
        store.mark_failed(dead.id, "bad address", clock.now, retryable=False)

        dead_entries = store.list_recent(status=OutboxStatus.DEAD)
        pending_entries = store.list_recent(status="pending")

        assert [e.id for e in dead_entries] == [dead.id]
        assert dead_entries[0].last_error == "bad address"
        assert len(pending_entries) == 1

    def test_count_by_status(self, store: OutboxStore):
        """Test counting entries per status."""
        assert store.count_by_status() == {"pending": 0, "processing": 0, "sent": 0, "dead": 0}

        entry = store.insert("push_message", {})
        store.insert("push_message", {})
        store.claim_batch(limit=1, worker_id="w")
        store.mark_sent(entry.id)

        assert store.count_by_status() == {"pending": 1, "processing": 0, "sent": 1, "dead": 0}
