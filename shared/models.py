"""
Data models for the notification outbox pipeline.

The outbox entry is the only persistent entity. Everything the dispatcher
knows about a notification (what to send, how often it was tried, who holds
it right now) lives on this record.

Design decisions:
- Using Pydantic for validation and serialization of stored rows
- Payloads are opaque dicts keyed by event_type, persisted as JSON text
- Delivery outcomes are plain dataclasses returned by channel adapters
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the store persists naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# Enums
# =============================================================================

class OutboxStatus(str, Enum):
    """
    Outbox entry lifecycle states.

    pending -> processing -> sent
                          -> pending (retry with backoff)
                          -> dead
    """
    PENDING = "pending"           # Waiting to be claimed (after next_attempt_at)
    PROCESSING = "processing"     # Leased by a worker
    SENT = "sent"                 # Delivered (terminal)
    DEAD = "dead"                 # Dead-lettered (terminal)

    @property
    def is_terminal(self) -> bool:
        return self in (OutboxStatus.SENT, OutboxStatus.DEAD)


class NotificationKinds:
    """
    Outbox event_type values.

    Each kind is delivered by exactly one channel adapter.
    """
    PUSH_MESSAGE = "push_message"
    EMAIL_CONFIRMATION = "email_confirmation"


# =============================================================================
# Outbox Entry
# =============================================================================

class OutboxEntry(BaseModel):
    """
    A durable notification intent.

    Created by the orchestrator when a domain event is observed, mutated
    only by dispatcher workers through the store's guarded transitions.
    """
    id: int = Field(..., description="Monotonically assigned identifier")
    event_type: str = Field(..., description="Notification kind, e.g. push_message")
    payload: dict[str, Any] = Field(default_factory=dict)
    status: OutboxStatus = Field(default=OutboxStatus.PENDING)
    attempt_count: int = Field(default=0, ge=0)
    last_error: Optional[str] = Field(default=None)
    next_attempt_at: datetime = Field(default_factory=utcnow)
    claimed_by: Optional[str] = Field(default=None, description="Worker holding the lease")
    claimed_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(use_enum_values=False)

    @property
    def payload_json(self) -> str:
        """The payload as it is persisted."""
        return json.dumps(self.payload, sort_keys=True)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def lease_expired(self, now: datetime, lease_duration_seconds: float) -> bool:
        """Check whether a processing entry's lease is older than the lease duration."""
        if self.status != OutboxStatus.PROCESSING or self.claimed_at is None:
            return False
        return (now - self.claimed_at).total_seconds() > lease_duration_seconds

    def __str__(self) -> str:
        return f"OutboxEntry(id={self.id}, {self.event_type}, {self.status.value}, attempts={self.attempt_count})"


# =============================================================================
# Delivery Outcome
# =============================================================================

@dataclass
class DeliveryResult:
    """
    Result of a channel adapter send attempt.

    The adapter decides whether a failure is retryable: a malformed recipient
    will never succeed, a provider timeout might.
    """
    success: bool
    retryable: bool = True
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def ok(cls) -> "DeliveryResult":
        return cls(success=True)

    @classmethod
    def transient(cls, error: str) -> "DeliveryResult":
        return cls(success=False, retryable=True, error=error)

    @classmethod
    def permanent(cls, error: str) -> "DeliveryResult":
        return cls(success=False, retryable=False, error=error)

    def __str__(self) -> str:
        if self.success:
            return "✓ delivered"
        kind = "retryable" if self.retryable else "permanent"
        return f"✗ {kind} failure: {self.error}"
