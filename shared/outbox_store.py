"""
Durable outbox store for the notification pipeline.

This module persists notification intents and provides the atomic claim
primitive the dispatcher workers coordinate through. It is the single source
of truth for "has this notification been attempted/delivered".

Design decisions:
- SQLAlchemy Core over any SQLAlchemy URL (SQLite file locally, Postgres in production)
- Every state transition is a conditional UPDATE guarded on the expected prior
  state, so concurrent workers never double-claim and terminal rows are never
  resurrected
- The attempt counter is bumped by the claim itself: one claim, one attempt
- Rows are never deleted here; archival is somebody else's job
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Union

from sqlalchemy import (
    Column,
    DateTime,
    Engine,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    create_engine,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Row
from sqlalchemy.pool import StaticPool

from shared.models import OutboxEntry, OutboxStatus, utcnow

logger = logging.getLogger("outbox_store")

# Keep stored error messages bounded
MAX_ERROR_LENGTH = 1000

metadata = MetaData()

outbox_table = Table(
    "notification_outbox",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_type", String(64), nullable=False),
    Column("payload_json", Text, nullable=False),
    Column("status", String(16), nullable=False, default=OutboxStatus.PENDING.value),
    Column("attempt_count", Integer, nullable=False, default=0),
    Column("last_error", Text, nullable=True),
    Column("next_attempt_at", DateTime, nullable=False),
    Column("claimed_by", String(128), nullable=True),
    Column("claimed_at", DateTime, nullable=True),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    Index("ix_notification_outbox_due", "status", "next_attempt_at"),
    Index("ix_notification_outbox_created_at", "created_at"),
)


def create_store_engine(database_url: str) -> Engine:
    """
    Create an engine suitable for multi-threaded workers.

    SQLite connections are shared across worker threads, and an in-memory
    database must live on a single connection or every thread would see its
    own empty database.
    """
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            return create_engine(database_url, connect_args=connect_args, poolclass=StaticPool)
        return create_engine(database_url, connect_args=connect_args)
    return create_engine(database_url, pool_pre_ping=True)


class OutboxStore:
    """
    Outbox table access and state transitions.

    Example usage:
        store = OutboxStore("sqlite:///outbox.db", max_attempts=5)
        store.create_schema()

        entry = store.insert("push_message", {"targetUserId": 7, "body": "Hi"})
        claimed = store.claim_batch(limit=10, worker_id="worker-1")
        store.mark_sent(claimed[0].id, worker_id="worker-1")
    """

    def __init__(
        self,
        engine: Union[Engine, str],
        max_attempts: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the store.

        Args:
            engine: SQLAlchemy engine or database URL
            max_attempts: Attempts after which a failing entry is dead-lettered
            clock: Source of "now" (naive UTC); injectable for tests
        """
        if isinstance(engine, str):
            engine = create_store_engine(engine)
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.engine = engine
        self.max_attempts = max_attempts
        self.clock = clock

    def create_schema(self) -> None:
        """Create the outbox table if it does not exist yet."""
        metadata.create_all(self.engine)

    def dispose(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()

    # =========================================================================
    # Writes
    # =========================================================================

    def insert(self, event_type: str, payload: dict[str, Any]) -> OutboxEntry:
        """
        Persist a new pending notification intent.

        The entry is immediately due: next_attempt_at is now.

        Raises:
            TypeError: If payload is not a dict or cannot be serialized to JSON
        """
        if not isinstance(payload, dict):
            raise TypeError(f"Outbox payload must be a JSON object, got {type(payload).__name__}")
        now = self.clock()
        values = {
            "event_type": event_type,
            "payload_json": json.dumps(payload, sort_keys=True),
            "status": OutboxStatus.PENDING.value,
            "attempt_count": 0,
            "last_error": None,
            "next_attempt_at": now,
            "claimed_by": None,
            "claimed_at": None,
            "created_at": now,
            "updated_at": now,
        }
        with self.engine.begin() as conn:
            result = conn.execute(insert(outbox_table).values(**values))
            entry_id = result.inserted_primary_key[0]

        logger.debug(f"Inserted outbox entry {entry_id} ({event_type})")
        return OutboxEntry(
            id=entry_id,
            event_type=event_type,
            payload=payload,
            status=OutboxStatus.PENDING,
            attempt_count=0,
            next_attempt_at=now,
            created_at=now,
            updated_at=now,
        )

    def claim_batch(
        self,
        limit: int,
        worker_id: str,
        lease_duration: Optional[float] = None,
    ) -> list[OutboxEntry]:
        """
        Atomically lease up to `limit` due pending entries to a worker.

        Candidates are read first, then each one is taken with an UPDATE that
        only matches while the row is still claimable. A row another worker got
        to first simply updates zero rows and is skipped, so no two callers
        ever receive the same entry.

        A row that can no longer be decoded into an entry is dead-lettered in
        the same transaction instead of being handed out.

        Args:
            limit: Maximum number of entries to claim
            worker_id: Identity recorded in claimed_by
            lease_duration: When given, processing rows whose lease is older
                than this are taken over as well, without waiting for the
                next reclaim_stale() pass

        Returns:
            The claimed entries, in processing status with attempt_count bumped
        """
        if limit <= 0:
            return []

        now = self.clock()
        claimable = and_(
            outbox_table.c.status == OutboxStatus.PENDING.value,
            outbox_table.c.next_attempt_at <= now,
        )
        if lease_duration is not None:
            claimable = or_(claimable, and_(
                outbox_table.c.status == OutboxStatus.PROCESSING.value,
                outbox_table.c.claimed_at < now - timedelta(seconds=lease_duration),
            ))
        candidates = (
            select(outbox_table.c.id)
            .where(claimable)
            .order_by(outbox_table.c.next_attempt_at, outbox_table.c.id)
            .limit(limit)
        )

        claimed = []
        claimed_ids = []
        with self.engine.begin() as conn:
            candidate_ids = [row.id for row in conn.execute(candidates)]
            for entry_id in candidate_ids:
                result = conn.execute(
                    update(outbox_table)
                    .where(outbox_table.c.id == entry_id)
                    .where(claimable)
                    .values(
                        status=OutboxStatus.PROCESSING.value,
                        claimed_by=worker_id,
                        claimed_at=now,
                        attempt_count=outbox_table.c.attempt_count + 1,
                        updated_at=now,
                    )
                )
                if result.rowcount == 1:
                    claimed_ids.append(entry_id)

            if not claimed_ids:
                return []

            rows = conn.execute(
                select(outbox_table)
                .where(outbox_table.c.id.in_(claimed_ids))
                .order_by(outbox_table.c.next_attempt_at, outbox_table.c.id)
            ).all()
            for row in rows:
                try:
                    claimed.append(self._row_to_entry(row))
                except ValueError as e:
                    # Bad JSON or a payload that is not an object: retrying won't help
                    self._dead_letter_undecodable(conn, row.id, worker_id, str(e), now)

        if len(claimed_ids) < len(candidate_ids):
            logger.debug(
                f"{worker_id} claimed {len(claimed_ids)}/{len(candidate_ids)} candidates "
                "(others taken concurrently)"
            )
        return claimed

    @staticmethod
    def _dead_letter_undecodable(conn, entry_id: int, worker_id: str, error: str, now: datetime) -> None:
        error = f"Undecodable outbox row: {error}"[:MAX_ERROR_LENGTH]
        conn.execute(
            update(outbox_table)
            .where(outbox_table.c.id == entry_id)
            .where(outbox_table.c.status == OutboxStatus.PROCESSING.value)
            .where(outbox_table.c.claimed_by == worker_id)
            .values(
                status=OutboxStatus.DEAD.value,
                last_error=error,
                claimed_by=None,
                claimed_at=None,
                updated_at=now,
            )
        )
        logger.error(f"Entry {entry_id} dead-lettered: {error}")

    def mark_sent(self, entry_id: int, worker_id: Optional[str] = None) -> bool:
        """
        Transition processing -> sent.

        Args:
            entry_id: Entry to complete
            worker_id: When given, only succeed if this worker still holds the lease

        Returns:
            True if the transition happened, False if the entry was not
            processing (or not leased to worker_id) any more
        """
        now = self.clock()
        stmt = (
            update(outbox_table)
            .where(outbox_table.c.id == entry_id)
            .where(outbox_table.c.status == OutboxStatus.PROCESSING.value)
        )
        if worker_id is not None:
            stmt = stmt.where(outbox_table.c.claimed_by == worker_id)

        with self.engine.begin() as conn:
            result = conn.execute(stmt.values(
                status=OutboxStatus.SENT.value,
                claimed_by=None,
                claimed_at=None,
                updated_at=now,
            ))
        return result.rowcount == 1

    def mark_failed(
        self,
        entry_id: int,
        error: str,
        next_attempt_at: datetime,
        worker_id: Optional[str] = None,
        retryable: bool = True,
    ) -> Optional[OutboxStatus]:
        """
        Record a failed attempt.

        The entry goes back to pending (due at next_attempt_at) unless the
        failure is not retryable or max_attempts is reached, in which
        case it is dead-lettered. The error is kept either way.

        Returns:
            The resulting status, or None if the entry was no longer
            processing (or not leased to worker_id)
        """
        now = self.clock()
        error = (error or "unknown error")[:MAX_ERROR_LENGTH]

        with self.engine.begin() as conn:
            row = conn.execute(
                select(outbox_table.c.status, outbox_table.c.attempt_count, outbox_table.c.claimed_by)
                .where(outbox_table.c.id == entry_id)
            ).first()
            if row is None or row.status != OutboxStatus.PROCESSING.value:
                return None
            if worker_id is not None and row.claimed_by != worker_id:
                return None

            if not retryable or row.attempt_count >= self.max_attempts:
                new_status = OutboxStatus.DEAD
            else:
                new_status = OutboxStatus.PENDING

            values = {
                "status": new_status.value,
                "last_error": error,
                "claimed_by": None,
                "claimed_at": None,
                "updated_at": now,
            }
            if new_status == OutboxStatus.PENDING:
                values["next_attempt_at"] = next_attempt_at

            result = conn.execute(
                update(outbox_table)
                .where(outbox_table.c.id == entry_id)
                .where(outbox_table.c.status == OutboxStatus.PROCESSING.value)
                .where(outbox_table.c.attempt_count == row.attempt_count)
                .where(outbox_table.c.claimed_by == row.claimed_by)
                .values(**values)
            )

        if result.rowcount != 1:
            return None
        if new_status == OutboxStatus.DEAD:
            logger.warning(
                f"Entry {entry_id} dead-lettered after {row.attempt_count} attempt(s): {error}"
            )
        return new_status

    def reclaim_stale(self, lease_duration: float) -> int:
        """
        Return expired leases to the pending pool.

        Processing rows claimed longer than lease_duration seconds ago belong
        to a worker that crashed or hung. They become due immediately; the
        attempt counter and last_error are left alone.

        Returns:
            Number of entries reclaimed
        """
        now = self.clock()
        cutoff = now - timedelta(seconds=lease_duration)
        with self.engine.begin() as conn:
            result = conn.execute(
                update(outbox_table)
                .where(outbox_table.c.status == OutboxStatus.PROCESSING.value)
                .where(outbox_table.c.claimed_at < cutoff)
                .values(
                    status=OutboxStatus.PENDING.value,
                    claimed_by=None,
                    claimed_at=None,
                    next_attempt_at=now,
                    updated_at=now,
                )
            )
        if result.rowcount:
            logger.warning(f"Reclaimed {result.rowcount} stale lease(s) older than {lease_duration}s")
        return result.rowcount

    # =========================================================================
    # Inspection
    # =========================================================================

    def get(self, entry_id: int) -> Optional[OutboxEntry]:
        """Get an entry by ID."""
        with self.engine.connect() as conn:
            row = conn.execute(select(outbox_table).where(outbox_table.c.id == entry_id)).first()
        return self._row_to_entry(row) if row else None

    def list_recent(
        self,
        limit: int = 10,
        status: Optional[OutboxStatus] = None,
    ) -> list[OutboxEntry]:
        """
        List the most recently created entries, newest first.

        This is the operator's view for debugging stuck or dead notifications.
        """
        stmt = (
            select(outbox_table)
            .order_by(outbox_table.c.created_at.desc(), outbox_table.c.id.desc())
            .limit(limit)
        )
        if status is not None:
            stmt = stmt.where(outbox_table.c.status == OutboxStatus(status).value)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).all()
        return [self._row_to_entry(row) for row in rows]

    def count_by_status(self) -> dict[str, int]:
        """Count entries per status (every status is present, zero if empty)."""
        counts = {status.value: 0 for status in OutboxStatus}
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(outbox_table.c.status, func.count())
                .group_by(outbox_table.c.status)
            ).all()
        for status, count in rows:
            counts[status] = count
        return counts

    @staticmethod
    def _row_to_entry(row: Row) -> OutboxEntry:
        return OutboxEntry(
            id=row.id,
            event_type=row.event_type,
            payload=json.loads(row.payload_json),
            status=OutboxStatus(row.status),
            attempt_count=row.attempt_count,
            last_error=row.last_error,
            next_attempt_at=row.next_attempt_at,
            claimed_by=row.claimed_by,
            claimed_at=row.claimed_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )
