"""
Shared infrastructure for the notification outbox pipeline.

This package contains the pieces both the workers and the inspection tools use:
- Data models (OutboxEntry, OutboxStatus, DeliveryResult)
- The durable outbox store
- Channel adapters (push, email)
- Settings
"""

from shared.models import DeliveryResult, NotificationKinds, OutboxEntry, OutboxStatus
from shared.outbox_store import OutboxStore
from shared.channels import ChannelRegistry, EmailChannel, PushChannel, build_default_registry
from shared.config import Settings, get_settings

__all__ = [
    "DeliveryResult",
    "NotificationKinds",
    "OutboxEntry",
    "OutboxStatus",
    "OutboxStore",
    "ChannelRegistry",
    "EmailChannel",
    "PushChannel",
    "build_default_registry",
    "Settings",
    "get_settings",
]
