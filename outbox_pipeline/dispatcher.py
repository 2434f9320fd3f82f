"""
Outbox dispatcher (worker loop).

Each dispatcher is one independent polling worker. It leases due entries
from the outbox store, hands them to channel adapters on a bounded thread
pool, and writes the outcome back:

    pending -> processing -> sent
                          -> pending (retry, exponential backoff with jitter)
                          -> dead    (non-retryable failure or attempts exhausted)

A worker only claims as many entries as it has free send slots, so every
claimed entry starts sending at once and the send timeout is the only wait
between claim and write-back. Sends that outlive their timeout still hold
their slot until they return; while a provider hangs, the worker claims less
(or nothing) instead of burning attempts on entries it cannot start. An
entry whose lease has run out is never sent; reclaim_stale() gives it to the
next worker.

Workers share nothing in memory. All coordination goes through the store's
atomic claim, so any number of dispatchers (threads or processes) can run
against the same table.

Shutdown stops claiming immediately and lets in-flight sends finish or time
out. Claims are never handed back on exit; leases that outlive their worker
are recovered by reclaim_stale().
"""

import logging
import os
import random
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from typing import Callable, Optional

from shared.channels import ChannelAdapter, ChannelRegistry
from shared.config import Settings, get_settings
from shared.models import DeliveryResult, OutboxEntry, OutboxStatus
from shared.outbox_store import OutboxStore

logger = logging.getLogger("dispatcher")

# 2**64 seconds is far beyond any sane max_delay
MAX_BACKOFF_EXPONENT = 64


def compute_backoff(
    previous_attempts: int,
    base_delay: float,
    max_delay: float,
    jitter: float = 0.0,
    rng: random.Random = random,
) -> timedelta:
    """
    Delay before the next attempt.

    min(max_delay, base_delay * 2**previous_attempts), plus up to
    jitter * delay of random spread so entries that failed together do not
    retry together. The result never exceeds max_delay.

    Args:
        previous_attempts: Attempts made before the one that just failed
        base_delay: Delay after the first failure, in seconds
        max_delay: Upper bound, in seconds
        jitter: Fraction of the delay added at random (0 disables)
        rng: Random source, injectable for tests
    """
    exponent = min(max(previous_attempts, 0), MAX_BACKOFF_EXPONENT)
    delay = min(max_delay, base_delay * (2 ** exponent))
    if jitter > 0:
        delay = min(max_delay, delay + rng.uniform(0, jitter * delay))
    return timedelta(seconds=delay)


def default_worker_id(index: int = 0) -> str:
    """Worker identity recorded on claimed rows: host, process and slot."""
    return f"{socket.gethostname()}-{os.getpid()}-{index}"


class Dispatcher:
    """
    A single outbox polling worker.

    Example:
        dispatcher = Dispatcher(store, registry, settings, worker_id="worker-1")
        dispatcher.start()
        ...
        dispatcher.stop()

    Tests and one-shot tooling can call run_once() directly instead of
    starting the background loop.
    """

    def __init__(
        self,
        store: OutboxStore,
        registry: ChannelRegistry,
        settings: Optional[Settings] = None,
        worker_id: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.registry = registry
        self.settings = settings or get_settings()
        self.worker_id = worker_id or default_worker_id()
        self.clock = clock or store.clock
        self._rng = rng or random.Random()

        # At most max_in_flight adapter calls are running at any time, counting
        # calls that timed out but have not returned yet.
        self._pool = ThreadPoolExecutor(
            max_workers=self.settings.max_in_flight,
            thread_name_prefix=f"{self.worker_id}-deliver",
        )
        self._in_flight = 0
        self._in_flight_lock = threading.Lock()

        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._closed = False
        self._last_reclaim: Optional[float] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def in_flight(self) -> int:
        """Adapter calls that have not returned yet."""
        with self._in_flight_lock:
            return self._in_flight

    @property
    def claim_limit(self) -> int:
        """How many entries the next run_once() may claim."""
        return max(0, min(self.settings.batch_size, self.settings.max_in_flight - self.in_flight))

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the polling loop in a background thread."""
        if self._closed:
            raise RuntimeError(f"Dispatcher {self.worker_id} has been stopped")
        if self.is_running:
            logger.warning(f"Dispatcher {self.worker_id} already running")
            return

        self._stopping.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name=f"dispatcher-{self.worker_id}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop claiming and drain in-flight work.

        Entries already claimed are finished (or time out); nothing is
        reverted to pending.
        """
        self._stopping.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning(f"Dispatcher {self.worker_id} did not stop within {timeout}s")
            self._thread = None

        if not self._closed:
            # Timed-out sends may still be hanging on a provider; their daemon
            # threads are not waited on.
            self._pool.shutdown(wait=True)
            self._closed = True

    def _run_loop(self) -> None:
        logger.info(f"Dispatcher {self.worker_id} started")
        while not self._stopping.is_set():
            processed = 0
            try:
                self._maybe_reclaim()
                processed = self.run_once()
            except Exception:
                logger.exception(f"Dispatcher {self.worker_id} poll cycle failed")

            # A full batch means there is probably more due work: poll again right away.
            if processed < min(self.settings.batch_size, self.settings.max_in_flight):
                self._stopping.wait(self.settings.poll_interval)
        logger.info(f"Dispatcher {self.worker_id} stopped")

    def _maybe_reclaim(self) -> None:
        now = time.monotonic()
        if self._last_reclaim is not None and now - self._last_reclaim < self.settings.reclaim_interval:
            return
        self._last_reclaim = now
        self.store.reclaim_stale(self.settings.lease_duration)

    # =========================================================================
    # Dispatch
    # =========================================================================

    def run_once(self) -> int:
        """
        Claim one batch and process it.

        The batch is capped by batch_size and by the free send slots, and is
        delivered concurrently; this returns once every claimed entry has
        been written back. Not meant to be called from several threads at
        once on the same dispatcher.

        Returns:
            Number of entries claimed
        """
        if self._closed:
            raise RuntimeError(f"Dispatcher {self.worker_id} has been stopped")

        limit = self.claim_limit
        if limit == 0:
            logger.warning(f"{self.worker_id} has {self.in_flight} send(s) still in flight; not claiming")
            return 0

        entries = self.store.claim_batch(
            limit,
            self.worker_id,
            self.settings.lease_duration,
        )
        if not entries:
            return 0

        logger.info(f"{self.worker_id} claimed {len(entries)} entr{'y' if len(entries) == 1 else 'ies'}")
        futures = {self._pool.submit(self.process_entry, entry): entry for entry in entries}
        for future in as_completed(futures):
            try:
                future.result()
            except Exception:
                # Lease is left to expire; reclaim_stale puts the entry back in play.
                logger.exception(f"Failed to record outcome for {futures[future]}")
        return len(entries)

    def process_entry(self, entry: OutboxEntry) -> Optional[OutboxStatus]:
        """
        Deliver one claimed entry and record the outcome.

        Returns:
            The entry's new status, or None if this worker no longer held
            the lease (nothing is sent once the lease has run out)
        """
        if entry.lease_expired(self.clock(), self.settings.lease_duration):
            logger.warning(f"Lease on entry {entry.id} expired before it was sent; leaving it to be reclaimed")
            return None

        try:
            adapter = self.registry.get(entry.event_type)
        except ValueError as e:
            result = DeliveryResult.permanent(str(e))
        else:
            result = self._send(adapter, entry)

        if result.success:
            if not self.store.mark_sent(entry.id, worker_id=self.worker_id):
                logger.warning(f"Lease on entry {entry.id} lost before it could be marked sent")
                return None
            logger.info(f"Delivered {entry.event_type} entry {entry.id} (attempt {entry.attempt_count})")
            return OutboxStatus.SENT

        backoff = compute_backoff(
            entry.attempt_count - 1,
            self.settings.base_delay,
            self.settings.max_delay,
            self.settings.jitter,
            self._rng,
        )
        status = self.store.mark_failed(
            entry.id,
            result.error or "unknown error",
            self.clock() + backoff,
            worker_id=self.worker_id,
            retryable=result.retryable,
        )
        if status is None:
            logger.warning(f"Lease on entry {entry.id} lost before failure could be recorded")
        elif status == OutboxStatus.PENDING:
            logger.warning(
                f"Entry {entry.id} attempt {entry.attempt_count} failed: {result.error}; "
                f"retrying in {backoff.total_seconds():.1f}s"
            )
        return status

    def _send(self, adapter: ChannelAdapter, entry: OutboxEntry) -> DeliveryResult:
        """
        Call the adapter on its own thread with a bounded timeout.

        The timeout starts with the call. A call that outlives it is reported
        as a transient failure but stays in flight until it actually returns,
        so a hung provider keeps occupying its send slot.
        """
        timeout = self.settings.send_timeout
        outcome: dict[str, DeliveryResult] = {}
        done = threading.Event()

        def call() -> None:
            try:
                outcome["result"] = adapter.send(entry.event_type, entry.payload)
            except Exception as e:
                outcome["result"] = DeliveryResult.transient(f"{type(e).__name__}: {e}")
            finally:
                with self._in_flight_lock:
                    self._in_flight -= 1
                done.set()

        with self._in_flight_lock:
            self._in_flight += 1
        try:
            threading.Thread(target=call, name=f"{self.worker_id}-send-{entry.id}", daemon=True).start()
        except RuntimeError:
            with self._in_flight_lock:
                self._in_flight -= 1
            raise

        if not done.wait(timeout):
            return DeliveryResult.transient(f"send timed out after {timeout}s")
        return outcome["result"]
