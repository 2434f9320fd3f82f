"""
Notification pipeline service.

Wires the event bus, outbox store, orchestrator and dispatcher workers into
one explicitly constructed service with a start/stop lifecycle. Nothing here
is a process-wide singleton: the application builds a pipeline at startup,
hands `pipeline.publish` (or `pipeline.event_bus`) to its business code, and
stops it at shutdown.
"""

import logging
from typing import Any, Optional

from outbox_pipeline.dispatcher import Dispatcher, default_worker_id
from outbox_pipeline.event_bus import EventBus
from outbox_pipeline.orchestrator import NotificationOrchestrator
from shared.channels import ChannelRegistry, build_default_registry
from shared.config import Settings, get_settings
from shared.outbox_store import OutboxStore

logger = logging.getLogger("pipeline")


class NotificationPipeline:
    """
    The notification outbox pipeline.

    Example:
        with NotificationPipeline(Settings(database_url="sqlite:///outbox.db")) as pipeline:
            pipeline.publish("message.created", {"targetUserId": 7, "body": "New message"})
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[OutboxStore] = None,
        registry: Optional[ChannelRegistry] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or OutboxStore(
            self.settings.database_url,
            max_attempts=self.settings.max_attempts,
        )
        self.registry = registry or build_default_registry()
        self.event_bus = event_bus or EventBus()
        self.orchestrator = NotificationOrchestrator(self.event_bus, self.store)
        self.dispatchers = [
            Dispatcher(self.store, self.registry, self.settings, worker_id=default_worker_id(i))
            for i in range(self.settings.worker_count)
        ]
        self._started = False

    def start(self, run_workers: bool = True) -> None:
        """
        Create the schema, subscribe to domain events and start the workers.

        Args:
            run_workers: Start the background dispatcher loops. A process that
                only produces events (e.g. a web server with workers deployed
                separately) passes False.
        """
        if self._started:
            logger.warning("NotificationPipeline already started")
            return

        self.store.create_schema()
        self.orchestrator.start()
        if run_workers:
            for dispatcher in self.dispatchers:
                dispatcher.start()
        self._started = True
        logger.info(
            f"NotificationPipeline started ({len(self.dispatchers) if run_workers else 0} worker(s), "
            f"channels: {', '.join(self.registry.event_types())})"
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop accepting events and drain the workers."""
        self.orchestrator.stop()
        for dispatcher in self.dispatchers:
            dispatcher.stop(timeout)
        if self._started:
            logger.info("NotificationPipeline stopped")
        self._started = False

    def publish(self, event_name: str, payload: dict[str, Any], source: str = "application") -> int:
        """
        Publish a domain event.

        Call this only after the business change is committed. Never raises
        because of notification problems.
        """
        return self.event_bus.publish(event_name, payload, source=source)

    def run_once(self) -> int:
        """Run one claim/deliver cycle on every worker; returns entries processed."""
        return sum(dispatcher.run_once() for dispatcher in self.dispatchers)

    def __enter__(self) -> "NotificationPipeline":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
