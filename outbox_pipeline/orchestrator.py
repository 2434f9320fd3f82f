"""
Notification orchestrator.

Subscribes to domain events and turns each one into durable outbox intents.
It never talks to a push or email provider itself: the only side effect is
one insert per intent, so a slow or broken channel can never hold up the
code that published the event.

Event -> outbox mapping:
- message.created        -> push_message
- appointment.confirmed  -> email_confirmation, push_message
- consultation.created   -> push_message
- proposal.accepted      -> push_message to the client, and to the artist if known

If the insert itself fails the intent is lost. That is logged as an error
and swallowed; the publisher must never see a notification failure.
"""

import logging
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from outbox_pipeline.event_bus import Event, EventBus
from outbox_pipeline.events import EventTypes, NotificationKinds
from shared.models import OutboxEntry
from shared.outbox_store import OutboxStore

logger = logging.getLogger("orchestrator")

# (outbox event_type, payload)
Intent = tuple[str, dict[str, Any]]


class NotificationOrchestrator:
    """
    Maps domain events to outbox entries.

    Example:
        orchestrator = NotificationOrchestrator(event_bus, store)
        orchestrator.start()

        event_bus.publish("appointment.confirmed", {"appointmentId": 42})
        # -> two pending outbox entries: email_confirmation and push_message
    """

    def __init__(self, event_bus: EventBus, store: OutboxStore):
        self.event_bus = event_bus
        self.store = store
        self._intent_builders: dict[str, Callable[[dict[str, Any]], list[Intent]]] = {
            EventTypes.MESSAGE_CREATED: self._message_created,
            EventTypes.APPOINTMENT_CONFIRMED: self._appointment_confirmed,
            EventTypes.CONSULTATION_CREATED: self._consultation_created,
            EventTypes.PROPOSAL_ACCEPTED: self._proposal_accepted,
        }
        self._started = False

    @property
    def subscribed_events(self) -> list[str]:
        return list(self._intent_builders)

    def start(self) -> None:
        """Subscribe to every domain event that produces notifications."""
        if self._started:
            logger.warning("NotificationOrchestrator already started")
            return
        for event_name in self._intent_builders:
            self.event_bus.subscribe(event_name, self.on_event)
        self._started = True
        logger.info(f"NotificationOrchestrator started - subscribed to {len(self._intent_builders)} events")

    def stop(self) -> None:
        """Unsubscribe from the event bus."""
        if not self._started:
            return
        for event_name in self._intent_builders:
            self.event_bus.unsubscribe(event_name, self.on_event)
        self._started = False
        logger.info("NotificationOrchestrator stopped")

    # =========================================================================
    # Event Handling
    # =========================================================================

    def on_event(self, event: Event) -> list[OutboxEntry]:
        """
        Persist the outbox intents for a domain event.

        Returns:
            The entries that were stored (failed inserts are left out)
        """
        intents = self.intents_for(event)
        logger.info(f"Handling {event.event_type}: {len(intents)} notification intent(s)")

        entries = []
        for event_type, payload in intents:
            entry = self._queue_notification(event_type, payload)
            if entry is not None:
                entries.append(entry)
        return entries

    def intents_for(self, event: Event) -> list[Intent]:
        """Compute the outbox intents for an event without storing them."""
        builder = self._intent_builders.get(event.event_type)
        if builder is None:
            return []
        return builder(event.payload)

    def _queue_notification(self, event_type: str, payload: dict[str, Any]) -> Optional[OutboxEntry]:
        try:
            entry = self.store.insert(event_type, payload)
        except (SQLAlchemyError, TypeError, ValueError):
            logger.exception(f"Failed to queue {event_type} notification; intent dropped")
            return None
        logger.debug(f"Queued {entry}")
        return entry

    # =========================================================================
    # Mapping
    # =========================================================================

    def _message_created(self, payload: dict[str, Any]) -> list[Intent]:
        return [(NotificationKinds.PUSH_MESSAGE, payload)]

    def _appointment_confirmed(self, payload: dict[str, Any]) -> list[Intent]:
        return [
            (NotificationKinds.EMAIL_CONFIRMATION, payload),
            (NotificationKinds.PUSH_MESSAGE, payload),
        ]

    def _consultation_created(self, payload: dict[str, Any]) -> list[Intent]:
        return [(NotificationKinds.PUSH_MESSAGE, payload)]

    def _proposal_accepted(self, payload: dict[str, Any]) -> list[Intent]:
        """
        Accepted project proposal.

        The client is asked to sign their consent forms; the artist, when
        known, is told the booking went through.
        """
        appointment_id = payload.get("appointmentId")
        conversation_id = payload.get("conversationId")

        intents: list[Intent] = [(NotificationKinds.PUSH_MESSAGE, {
            "targetUserId": payload.get("clientId"),
            "title": "Booking Confirmed! 📝",
            "body": "Your appointment is locked in. Please tap here to sign your "
                    "required consent forms before you arrive.",
            "url": "/profile?tab=forms",
            "data": {
                "type": "proposal_accepted",
                "appointmentId": appointment_id,
                "conversationId": conversation_id,
            },
        })]

        if payload.get("artistId"):
            intents.append((NotificationKinds.PUSH_MESSAGE, {
                "targetUserId": payload["artistId"],
                "title": "Proposal Accepted! 🎉",
                "body": "A client just accepted your project proposal and confirmed their booking.",
                "url": f"/chat/{conversation_id}",
                "data": {
                    "type": "proposal_accepted_artist",
                    "appointmentId": appointment_id,
                    "conversationId": conversation_id,
                },
            }))
        return intents
