"""
Domain event names consumed by the notification pipeline.

Events are published by business code (chat, booking, consultations) once
their own state change is committed. Payloads are plain JSON-serializable
dicts; the orchestrator copies them into outbox entries.
"""

from shared.models import NotificationKinds


class EventTypes:
    """
    Constants for domain event names.

    Using constants prevents typos and makes it easy to see all event types.
    """
    # Chat
    MESSAGE_CREATED = "message.created"

    # Booking
    APPOINTMENT_CONFIRMED = "appointment.confirmed"
    PROPOSAL_ACCEPTED = "proposal.accepted"

    # Consultations
    CONSULTATION_CREATED = "consultation.created"


__all__ = ["EventTypes", "NotificationKinds"]
