"""
Notification outbox pipeline.

This package bridges in-process domain events and unreliable external
notification channels:
- Business code publishes events on the event bus
- The orchestrator turns events into durable outbox entries
- Dispatcher workers claim entries, deliver them and retry with backoff
"""

from outbox_pipeline.dispatcher import Dispatcher, compute_backoff
from outbox_pipeline.event_bus import Event, EventBus
from outbox_pipeline.events import EventTypes
from outbox_pipeline.orchestrator import NotificationOrchestrator
from outbox_pipeline.pipeline import NotificationPipeline

__all__ = [
    "Dispatcher",
    "compute_backoff",
    "Event",
    "EventBus",
    "EventTypes",
    "NotificationOrchestrator",
    "NotificationPipeline",
]
