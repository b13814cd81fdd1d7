"""Buffered event ingestion with size- and time-triggered flushes."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading

from market_experiments.models.domain.event import EventCreate, EventRecord
from market_experiments.services.event_store import EventStore

logger = logging.getLogger(__name__)


class BatchIngestor:
    """Collects validated events in memory and writes them in bulk.

    A flush runs when the buffer reaches ``batch_size`` and every
    ``flush_interval`` seconds while the background loop is running.
    A batch that fails to persist goes back to the front of the buffer,
    so delivery is at-least-once and ordering is preserved.

    After a failed flush, size-triggered flushes are suspended and only the
    background loop retries until a write succeeds. The buffer never holds
    more than ``max_pending`` events; the oldest are dropped first.
    """

    def __init__(
        self,
        event_store: EventStore,
        batch_size: int = 100,
        flush_interval: float = 30.0,
        max_pending: int = 10_000,
    ) -> None:
        self._store = event_store
        self._batch_size = batch_size
        self._flush_interval = flush_interval
        self._max_pending = max(max_pending, batch_size)
        self._pending: list[EventRecord] = []
        self._lock = threading.Lock()
        self._flushing = False
        self._storage_failing = False
        self._task: asyncio.Task[None] | None = None

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def flush_interval(self) -> float:
        return self._flush_interval

    @property
    def max_pending(self) -> int:
        return self._max_pending

    @property
    def pending_count(self) -> int:
        """Events waiting for the next flush."""
        with self._lock:
            return len(self._pending)

    async def submit(self, event: EventCreate) -> EventRecord:
        """Validate and buffer an event.

        Raises:
            ValidationError: If the event kind is not accepted. Nothing is buffered.
        """
        record = self._store.validate(event)
        with self._lock:
            self._pending.append(record)
            dropped = self._trim_locked()
            should_flush = (
                len(self._pending) >= self._batch_size
                and not self._flushing
                and not self._storage_failing
            )

        if dropped:
            logger.warning(
                "Event buffer full, dropped %d oldest events",
                dropped,
                extra={"max_pending": self._max_pending},
            )
        if should_flush:
            await self.flush()
        return record

    async def flush(self) -> int:
        """Write everything currently buffered. Returns the number written.

        Never raises: a failed batch is requeued and the next flush retries it.
        """
        with self._lock:
            batch = self._pending
            self._pending = []
            if batch:
                self._flushing = True

        if not batch:
            return 0

        try:
            written = await self._store.append_batch(batch)
        except asyncio.CancelledError:
            self._requeue(batch, failed=False)
            raise
        except Exception:
            self._requeue(batch, failed=True)
            logger.warning(
                "Failed to flush %d events, requeued for retry",
                len(batch),
                exc_info=True,
            )
            return 0

        with self._lock:
            self._flushing = False
            self._storage_failing = False
        logger.info("Flushed event batch", extra={"events": written})
        return written

    def start(self) -> None:
        """Start the periodic flush loop on the running event loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="event-flush-loop")

    async def stop(self) -> None:
        """Stop the flush loop and write whatever is still buffered."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self.flush()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval)
            await self.flush()

    def _trim_locked(self) -> int:
        """Drop the oldest events beyond ``max_pending``. Caller holds the lock."""
        overflow = len(self._pending) - self._max_pending
        if overflow <= 0:
            return 0
        del self._pending[:overflow]
        return overflow

    def _requeue(self, batch: list[EventRecord], failed: bool) -> None:
        """Put an unwritten batch back in front of newer events."""
        with self._lock:
            self._pending[:0] = batch
            dropped = self._trim_locked()
            self._flushing = False
            self._storage_failing = failed
        if dropped:
            logger.warning(
                "Event buffer full, dropped %d oldest events",
                dropped,
                extra={"max_pending": self._max_pending},
            )
