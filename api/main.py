"""
Outbox inspection API.

Read-only, operator-facing view of the notification outbox:
1. Most recent entries, optionally filtered by status (/outbox)
2. Entry counts per status (/outbox/stats)
3. A single entry with its full payload and last error (/outbox/{id})

Failures in the pipeline never reach end users; this is where they show up.
Dead entries are not retried from here.

Run with:
    uv run uvicorn api.main:app --reload

Then visit http://localhost:8000/docs for interactive API documentation.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel

from shared.config import get_settings
from shared.models import OutboxEntry, OutboxStatus
from shared.outbox_store import OutboxStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("outbox_api")


# Response models
class OutboxEntryView(BaseModel):
    """An outbox entry as shown to operators."""
    id: int
    event_type: str
    payload_json: str
    status: OutboxStatus
    attempt_count: int
    last_error: Optional[str]
    next_attempt_at: datetime
    claimed_by: Optional[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_entry(cls, entry: OutboxEntry) -> "OutboxEntryView":
        return cls(
            id=entry.id,
            event_type=entry.event_type,
            payload_json=entry.payload_json,
            status=entry.status,
            attempt_count=entry.attempt_count,
            last_error=entry.last_error,
            next_attempt_at=entry.next_attempt_at,
            claimed_by=entry.claimed_by,
            created_at=entry.created_at,
            updated_at=entry.updated_at,
        )


class OutboxStats(BaseModel):
    """Entry counts per status."""
    counts: dict[str, int]
    total: int


# Module-level store (replaced in tests)
_store: Optional[OutboxStore] = None


def get_store() -> OutboxStore:
    """Get the outbox store for the configured database."""
    global _store
    if _store is None:
        settings = get_settings()
        _store = OutboxStore(settings.database_url, max_attempts=settings.max_attempts)
        _store.create_schema()
    return _store


def reset_api_state(store: Optional[OutboxStore] = None) -> None:
    """Swap the store (for testing)."""
    global _store
    _store = store


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logger.info("Starting outbox inspection API")
    yield
    logger.info("Shutting down")


app = FastAPI(
    title="Notification Outbox Inspection",
    description="Operator view of pending, in-flight, sent and dead-lettered notifications.",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health", tags=["Health"])
def health_check() -> dict[str, Any]:
    """Health check endpoint."""
    return {"status": "healthy", "service": "notification-outbox"}


@app.get("/outbox", response_model=list[OutboxEntryView], tags=["Outbox"])
def list_entries(
    limit: int = Query(default=10, ge=1, le=500),
    status: Optional[OutboxStatus] = None,
    store: OutboxStore = Depends(get_store),
) -> list[OutboxEntryView]:
    """List the most recent outbox entries, newest first."""
    return [OutboxEntryView.from_entry(e) for e in store.list_recent(limit=limit, status=status)]


@app.get("/outbox/stats", response_model=OutboxStats, tags=["Outbox"])
def outbox_stats(store: OutboxStore = Depends(get_store)) -> OutboxStats:
    """Count entries per status."""
    counts = store.count_by_status()
    return OutboxStats(counts=counts, total=sum(counts.values()))


@app.get("/outbox/{entry_id}", response_model=OutboxEntryView, tags=["Outbox"])
def get_entry(entry_id: int, store: OutboxStore = Depends(get_store)) -> OutboxEntryView:
    """Get a single outbox entry."""
    entry = store.get(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Outbox entry {entry_id} not found")
    return OutboxEntryView.from_entry(entry)
