"""
Demonstration of the notification outbox pipeline.

Runs the pipeline against a throwaway SQLite database so the whole flow is
visible in the logs: event published, intents stored, the push delivered,
the email retried with growing backoff while its mail server is down, and
finally dead-lettered once it runs out of attempts.
"""

import logging
import tempfile
import time
from pathlib import Path

from outbox_pipeline.events import EventTypes
from outbox_pipeline.pipeline import NotificationPipeline
from shared.channels import (
    ChannelRegistry,
    EmailChannel,
    LoggingEmailTransport,
    LoggingPushProvider,
    PushChannel,
)
from shared.config import Settings
from shared.models import NotificationKinds, OutboxStatus
from shared.outbox_store import OutboxStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s",
    datefmt="%H:%M:%S",
)


def run_appointment_confirmed_demo(max_attempts: int = 3, timeout: float = 30.0) -> None:
    """
    Confirm an appointment while the mail server is unreachable.

    The push entry is delivered on the first attempt. Every email attempt
    fails with a transient error, so the entry is retried with backoff until
    max_attempts is reached and then dead-lettered.
    """
    print("\n" + "=" * 70)
    print("OUTBOX DEMO: Appointment Confirmed")
    print("=" * 70 + "\n")

    with tempfile.TemporaryDirectory() as tmp:
        settings = Settings(
            database_url=f"sqlite:///{Path(tmp) / 'outbox.db'}",
            worker_count=1,
            max_attempts=max_attempts,
            base_delay=0.2,
            max_delay=2.0,
        )
        store = OutboxStore(settings.database_url, max_attempts=settings.max_attempts)
        registry = ChannelRegistry()
        registry.register(NotificationKinds.PUSH_MESSAGE, PushChannel([LoggingPushProvider("native")]))
        registry.register(
            NotificationKinds.EMAIL_CONFIRMATION,
            EmailChannel(LoggingEmailTransport(fail_rate=1.0)),
        )

        pipeline = NotificationPipeline(settings, store=store, registry=registry)
        pipeline.start(run_workers=False)
        try:
            print("ACTION: Publishing appointment.confirmed for appointment 42\n")
            pipeline.publish(EventTypes.APPOINTMENT_CONFIRMED, {
                "appointmentId": 42,
                "targetUserId": "client-7",
                "body": "Your appointment on Friday is confirmed.",
                "email": "client-7@example.com",
            }, source="booking")

            deadline = time.monotonic() + timeout
            while time.monotonic() < deadline:
                pipeline.run_once()
                if all(entry.is_terminal for entry in store.list_recent(limit=10)):
                    break
                time.sleep(0.05)

            print("\n" + "-" * 70)
            print("RESULT:")
            for entry in store.list_recent(limit=10):
                marker = "✓" if entry.status == OutboxStatus.SENT else "✗"
                print(f"  {marker} #{entry.id} {entry.event_type:<20} {entry.status.value:<8} "
                      f"attempts={entry.attempt_count} last_error={entry.last_error}")
            print()
        finally:
            pipeline.stop()
            store.dispose()
