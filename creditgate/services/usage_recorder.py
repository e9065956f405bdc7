"""
Usage Recorder - Write-behind request logging.

Request handlers enqueue usage entries and key touches without awaiting any
I/O; a background worker persists them in batches with its own session.
Write failures are logged and counted but never reach a request. Only a run
of consecutive failed batches escalates, through ConsecutiveFailureGuard, to
the fatal handler supplied by the application.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from creditgate.config import settings
from creditgate.db.models import APIKey, APIRequestLog
from creditgate.models.api import UsageRecorderStatus
from creditgate.models.domain import KeyTouch, UsageEntry
from creditgate.observability.metrics import metrics

logger = get_logger(__name__)

QueueItem = UsageEntry | KeyTouch


class ConsecutiveFailureGuard:
    """
    Counts consecutive failures and calls on_threshold once when the count
    reaches threshold. Any success resets the count and re-arms the guard.
    """

    def __init__(
        self,
        threshold: int,
        on_threshold: Callable[[int, BaseException], None],
    ) -> None:
        if threshold < 1:
            raise ValueError(f"threshold must be at least 1: {threshold}")
        self.threshold = threshold
        self.on_threshold = on_threshold
        self.consecutive_failures = 0
        self.tripped = False

    def record_success(self) -> None:
        self.consecutive_failures = 0
        self.tripped = False

    def record_failure(self, error: BaseException) -> None:
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.threshold and not self.tripped:
            self.tripped = True
            self.on_threshold(self.consecutive_failures, error)


class UsageRecorder:
    """Bounded queue plus a single background writer."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | Callable[[], AsyncSession],
        queue_size: int | None = None,
        batch_size: int | None = None,
        flush_interval: float | None = None,
        failure_guard: ConsecutiveFailureGuard | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.batch_size = batch_size or settings.usage_batch_size
        self.flush_interval = flush_interval or settings.usage_flush_interval_seconds
        self.failure_guard = failure_guard
        self._queue: asyncio.Queue[QueueItem] = asyncio.Queue(
            maxsize=queue_size or settings.usage_queue_size
        )
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self.dropped_entries = 0
        self.consecutive_failures = 0

    # ========================================================================
    # Producer side - never blocks, never raises
    # ========================================================================

    def record(self, entry: UsageEntry) -> None:
        """Queue a request log entry."""
        self._enqueue(entry)

    def touch_key(self, key_id: UUID, used_at: datetime) -> None:
        """Queue a last-used bump for an API key."""
        self._enqueue(KeyTouch(key_id=key_id, used_at=used_at))

    def _enqueue(self, item: QueueItem) -> None:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self.dropped_entries += 1
            metrics.usage_entries_dropped_total.inc()
            logger.warning(
                "usage_entry_dropped",
                item_type=type(item).__name__,
                dropped_total=self.dropped_entries,
            )
            return
        metrics.usage_queue_depth.set(self._queue.qsize())

    # ========================================================================
    # Worker lifecycle
    # ========================================================================

    def start(self) -> None:
        """Start the background writer on the running loop."""
        if self._task is not None and not self._task.done():
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="usage-recorder")
        logger.info("usage_recorder_started", batch_size=self.batch_size)

    async def stop(self, timeout: float = 10.0) -> None:
        """Flush what is queued, then stop the writer."""
        if self._task is None:
            return
        self._stopping.set()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            self._task.cancel()
            logger.warning("usage_recorder_stop_timeout", pending=self._queue.qsize())
        self._task = None
        logger.info("usage_recorder_stopped", dropped_total=self.dropped_entries)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def status(self) -> UsageRecorderStatus:
        return UsageRecorderStatus(
            running=self.running,
            queue_depth=self._queue.qsize(),
            dropped_entries=self.dropped_entries,
            consecutive_failures=self.consecutive_failures,
        )

    async def _run(self) -> None:
        while not (self._stopping.is_set() and self._queue.empty()):
            batch = await self._next_batch()
            if batch:
                await self.flush_batch(batch)

    async def _next_batch(self) -> list[QueueItem]:
        try:
            first = await asyncio.wait_for(self._queue.get(), timeout=self.flush_interval)
        except asyncio.TimeoutError:
            return []

        batch = [first]
        while len(batch) < self.batch_size:
            try:
                batch.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                break
        metrics.usage_queue_depth.set(self._queue.qsize())
        return batch

    # ========================================================================
    # Persistence
    # ========================================================================

    async def flush_batch(self, batch: list[QueueItem]) -> bool:
        """
        Persist one batch. Returns False on failure; the batch is discarded.
        """
        entries = [item for item in batch if isinstance(item, UsageEntry)]
        touches = [item for item in batch if isinstance(item, KeyTouch)]

        try:
            async with self.session_factory() as session:
                for entry in entries:
                    session.add(
                        APIRequestLog(
                            account_id=entry.account_id,
                            api_key_id=entry.api_key_id,
                            endpoint=entry.endpoint,
                            platform=entry.platform,
                            operation=entry.operation,
                            outcome=entry.outcome,
                            status_code=entry.status_code,
                            latency_ms=entry.latency_ms,
                            credits_charged=entry.credits_charged,
                            request_id=entry.request_id,
                            created_at=entry.created_at,
                        )
                    )

                for key_id, count, last_used in _aggregate_touches(touches):
                    await session.execute(
                        update(APIKey)
                        .where(APIKey.id == key_id)
                        .values(
                            last_used_at=last_used,
                            total_requests=APIKey.total_requests + count,
                        )
                    )

                await session.commit()

        except Exception as exc:
            self.consecutive_failures += 1
            metrics.usage_write_failures_total.inc()
            logger.error(
                "usage_batch_write_failed",
                entries=len(entries),
                touches=len(touches),
                consecutive_failures=self.consecutive_failures,
                error_type=type(exc).__name__,
                exc_info=True,
            )
            if self.failure_guard is not None:
                self.failure_guard.record_failure(exc)
            return False

        self.consecutive_failures = 0
        if self.failure_guard is not None:
            self.failure_guard.record_success()
        metrics.usage_entries_written_total.inc(len(entries))
        return True


def _aggregate_touches(touches: list[KeyTouch]) -> list[tuple[UUID, int, datetime]]:
    """Collapse touches per key into (key_id, count, latest used_at)."""
    totals: dict[UUID, tuple[int, datetime]] = {}
    for touch in touches:
        count, latest = totals.get(touch.key_id, (0, touch.used_at))
        totals[touch.key_id] = (count + 1, max(latest, touch.used_at))
    return [(key_id, count, latest) for key_id, (count, latest) in totals.items()]
