"""
Shared pytest fixtures for the notification outbox tests.

These fixtures provide a fresh SQLite outbox per test, a controllable clock
and scripted channel adapters.
"""

import threading
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from outbox_pipeline.event_bus import EventBus
from shared.channels import ChannelRegistry
from shared.config import Settings
from shared.models import DeliveryResult, NotificationKinds
from shared.outbox_store import OutboxStore


class FakeClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class ScriptedChannel:
    """
    Channel adapter test double.

    Returns (or raises) the scripted results in order, then succeeds.
    Every call is recorded.
    """

    def __init__(self, results=None):
        self.results = list(results or [])
        self.calls: list[tuple[str, dict]] = []
        self._lock = threading.Lock()

    def send(self, event_type: str, payload: dict) -> DeliveryResult:
        with self._lock:
            self.calls.append((event_type, payload))
            result = self.results.pop(0) if self.results else DeliveryResult.ok()
        if isinstance(result, Exception):
            raise result
        return result

    @property
    def call_count(self) -> int:
        return len(self.calls)


@pytest.fixture
def clock() -> FakeClock:
    """Clock frozen at a known instant."""
    return FakeClock(datetime(2026, 1, 1, 12, 0, 0))


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """A SQLite file private to the test."""
    return f"sqlite:///{tmp_path / 'outbox.db'}"


@pytest.fixture
def settings(database_url: str) -> Settings:
    """Fast, deterministic settings: no jitter, short polls, three attempts."""
    return Settings(
        database_url=database_url,
        worker_count=1,
        batch_size=10,
        max_in_flight=4,
        poll_interval=0.01,
        send_timeout=2.0,
        lease_duration=30.0,
        reclaim_interval=0.01,
        max_attempts=3,
        base_delay=1.0,
        max_delay=60.0,
        jitter=0.0,
    )


@pytest.fixture
def store(settings: Settings, clock: FakeClock) -> OutboxStore:
    """Fresh outbox store with the schema created."""
    store = OutboxStore(settings.database_url, max_attempts=settings.max_attempts, clock=clock)
    store.create_schema()
    yield store
    store.dispose()


@pytest.fixture
def event_bus() -> EventBus:
    """Fresh event bus for each test."""
    return EventBus()


@pytest.fixture
def push_channel() -> ScriptedChannel:
    return ScriptedChannel()


@pytest.fixture
def email_channel() -> ScriptedChannel:
    return ScriptedChannel()


@pytest.fixture
def registry(push_channel: ScriptedChannel, email_channel: ScriptedChannel) -> ChannelRegistry:
    """Registry routing both notification kinds to scripted adapters."""
    registry = ChannelRegistry()
    registry.register(NotificationKinds.PUSH_MESSAGE, push_channel)
    registry.register(NotificationKinds.EMAIL_CONFIRMATION, email_channel)
    return registry
