"""
Channel adapters for the notification outbox pipeline.

A channel adapter turns an outbox entry into an actual external send. The
dispatcher only knows the narrow contract below; provider SDKs, template
rendering and device registries all live behind it.

Design decisions:
- The adapter, not the dispatcher, decides if a failure is retryable
- Malformed payloads (no recipient) are permanent failures
- Provider errors and timeouts are transient failures
- Default providers just log and record sends, so the pipeline runs
  end-to-end without credentials; failures can be simulated with fail_rate
"""

import logging
import random
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from shared.models import DeliveryResult, NotificationKinds, utcnow

logger = logging.getLogger("notifications")

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@runtime_checkable
class ChannelAdapter(Protocol):
    """Contract consumed by the dispatcher."""

    def send(self, event_type: str, payload: dict[str, Any]) -> DeliveryResult:
        ...


class ChannelRegistry:
    """Maps outbox event types to the adapter that delivers them."""

    def __init__(self):
        self._adapters: dict[str, ChannelAdapter] = {}

    def register(self, event_type: str, adapter: ChannelAdapter) -> None:
        self._adapters[event_type] = adapter

    def get(self, event_type: str) -> ChannelAdapter:
        """
        Get the adapter for an event type.

        Raises:
            ValueError: If no adapter is registered for event_type
        """
        try:
            return self._adapters[event_type]
        except KeyError:
            raise ValueError(f"Unknown channel for event type: {event_type}") from None

    def event_types(self) -> list[str]:
        return sorted(self._adapters)

    def __contains__(self, event_type: str) -> bool:
        return event_type in self._adapters


# =============================================================================
# Push
# =============================================================================

@dataclass
class PushMessage:
    """A push notification addressed to one user."""
    target_user_id: Any
    title: str
    body: str
    url: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


# A push provider delivers to every device it knows for the user and reports
# whether at least one device accepted the message.
PushProvider = Callable[[PushMessage], bool]


class LoggingPushProvider:
    """
    Stand-in push provider.

    Logs sends and tracks them for test assertions.
    """

    def __init__(self, name: str, fail_rate: float = 0.0):
        self.name = name
        self.fail_rate = fail_rate
        self.sent_messages: list[PushMessage] = []

    def __call__(self, message: PushMessage) -> bool:
        if random.random() < self.fail_rate:
            logger.error(f"[PUSH:{self.name} FAILED] To: {message.target_user_id} | Title: {message.title}")
            return False
        self.sent_messages.append(message)
        logger.info(f"[PUSH:{self.name}] To: {message.target_user_id} | Title: {message.title}")
        return True

    def get_sent_count(self) -> int:
        return len(self.sent_messages)


class PushChannel:
    """
    Push adapter that fans out to every configured provider.

    Native-app and web-push devices are registered with different providers,
    so a message is sent through all of them. Delivery only fails when no
    provider reached a device.
    """

    DEFAULT_TITLE = "New Notification"

    def __init__(self, providers: Optional[list[PushProvider]] = None):
        if providers is None:
            providers = [LoggingPushProvider("native"), LoggingPushProvider("web")]
        if not providers:
            raise ValueError("PushChannel needs at least one provider")
        self.providers = providers

    def send(self, event_type: str, payload: dict[str, Any]) -> DeliveryResult:
        target_user_id = payload.get("targetUserId")
        body = payload.get("body")
        if target_user_id is None or not body:
            return DeliveryResult.permanent("Push payload requires targetUserId and body")

        message = PushMessage(
            target_user_id=target_user_id,
            title=payload.get("title") or self.DEFAULT_TITLE,
            body=body,
            url=payload.get("url"),
            data=payload.get("data") or {},
        )

        delivered = False
        for provider in self.providers:
            name = getattr(provider, "name", repr(provider))
            try:
                if provider(message):
                    delivered = True
            except Exception as e:
                logger.warning(f"Push provider {name} raised for user {target_user_id}: {e}")

        if not delivered:
            return DeliveryResult.transient(
                f"Push delivery failed on all {len(self.providers)} provider(s); "
                f"user {target_user_id} has no reachable devices"
            )
        return DeliveryResult.ok()


# =============================================================================
# Email
# =============================================================================

@dataclass
class EmailMessage:
    """An outgoing email."""
    to: str
    subject: str
    body: str
    from_addr: str
    timestamp: datetime = field(default_factory=utcnow)


# A transport hands the message to the mail provider and raises on failure.
EmailTransport = Callable[[EmailMessage], None]


class LoggingEmailTransport:
    """
    Stand-in email transport.

    Logs sends and tracks them for test assertions.
    """

    def __init__(self, fail_rate: float = 0.0):
        self.fail_rate = fail_rate
        self.sent_messages: list[EmailMessage] = []

    def __call__(self, message: EmailMessage) -> None:
        if random.random() < self.fail_rate:
            logger.error(f"[EMAIL FAILED] To: {message.to} | Subject: {message.subject}")
            raise ConnectionError("Simulated email delivery failure")
        self.sent_messages.append(message)
        logger.info(f"[EMAIL] To: {message.to} | Subject: {message.subject}")
        logger.debug(f"[EMAIL BODY] {message.body}")

    def get_sent_count(self) -> int:
        return len(self.sent_messages)


class EmailChannel:
    """Email adapter for confirmation emails."""

    DEFAULT_SUBJECT = "Your appointment is confirmed"

    def __init__(
        self,
        transport: Optional[EmailTransport] = None,
        from_addr: str = "notifications@example.com",
    ):
        self.transport = transport or LoggingEmailTransport()
        self.from_addr = from_addr

    def send(self, event_type: str, payload: dict[str, Any]) -> DeliveryResult:
        to = payload.get("email") or payload.get("recipientEmail")
        if not to or not EMAIL_PATTERN.match(str(to)):
            return DeliveryResult.permanent(f"Invalid or missing recipient email: {to!r}")

        body = payload.get("body")
        if not body:
            appointment_id = payload.get("appointmentId")
            body = f"Appointment {appointment_id} is confirmed." if appointment_id else "Your appointment is confirmed."

        message = EmailMessage(
            to=to,
            subject=payload.get("subject") or self.DEFAULT_SUBJECT,
            body=body,
            from_addr=self.from_addr,
        )
        try:
            self.transport(message)
        except Exception as e:
            return DeliveryResult.transient(f"Email transport error: {e}")
        return DeliveryResult.ok()


def build_default_registry(
    push_providers: Optional[list[PushProvider]] = None,
    email_transport: Optional[EmailTransport] = None,
) -> ChannelRegistry:
    """Registry with the push and email adapters wired to their notification kinds."""
    registry = ChannelRegistry()
    registry.register(NotificationKinds.PUSH_MESSAGE, PushChannel(push_providers))
    registry.register(NotificationKinds.EMAIL_CONFIRMATION, EmailChannel(email_transport))
    return registry
