"""
Poll Scheduler

Background loop that polls every configured schema and publishes what it
finds, with retry bookkeeping and dead-lettering.

The next cycle is scheduled only after the current one has completed, so
cycles never overlap however long one takes.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional, Sequence, Set

from ..exceptions import PollError
from ..observability.metrics import RelayMetrics
from ..observability.tracing import create_span
from .dlq import DeadLetterSink
from .models import OutboxRecord, SchemaSource
from .poller import ClaimedBatch, OutboxPoller
from .publisher import EventPublisher
from .retry import RetryPolicy, RetryTracker

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MS = 1000


class SchedulerState(str, Enum):
    """Lifecycle of the polling loop."""
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class PollScheduler:
    """
    Drives poll-publish cycles across all configured schemas.

    Features:
    - Runs one cycle immediately on start, then one every interval after
      the previous cycle finished
    - Schemas polled sequentially, records published sequentially
    - A failing schema or record never aborts the cycle
    - Per-aggregate ordering: once a record of an aggregate is held back or
      fails, later records of that aggregate wait for the next cycle
    """

    def __init__(
        self,
        sources: Sequence[SchemaSource],
        poller: OutboxPoller,
        publisher: EventPublisher,
        dead_letters: DeadLetterSink,
        retry_policy: Optional[RetryPolicy] = None,
        retry_tracker: Optional[RetryTracker] = None,
        metrics: Optional[RelayMetrics] = None,
        interval_ms: int = DEFAULT_INTERVAL_MS
    ):
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        self.sources: List[SchemaSource] = list(sources)
        self.poller = poller
        self.publisher = publisher
        self.dead_letters = dead_letters
        self.retry_policy = retry_policy or RetryPolicy()
        self.retry_tracker = retry_tracker or RetryTracker()
        self.metrics = metrics or RelayMetrics()
        self.interval_ms = interval_ms

        self._state = SchedulerState.IDLE
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

        self.cycles_completed = 0
        self.last_cycle_started_at: Optional[datetime] = None
        self.last_cycle_finished_at: Optional[datetime] = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the polling loop; no-op if it is already running."""
        if self._state == SchedulerState.STOPPED:
            raise RuntimeError("PollScheduler has been stopped")
        if self.running:
            return

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="outbox-poll-scheduler")
        logger.info(
            "Starting polling loop",
            extra={
                "sources": [s.qualified_table for s in self.sources],
                "interval_ms": self.interval_ms,
            },
        )

    async def stop(self) -> None:
        """
        Stop the loop.

        The pending wait is cancelled; a cycle already in progress is
        allowed to finish before this returns.
        """
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        self._state = SchedulerState.STOPPED
        logger.info("Polling loop stopped", extra={"cycles_completed": self.cycles_completed})

    async def _run(self) -> None:
        """Main loop: cycle, then wait interval, then cycle again."""
        while True:
            try:
                await self.run_cycle()
            except Exception as e:
                logger.error(f"Polling iteration failed: {e}", exc_info=True)

            if self._stop_event.is_set():
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_ms / 1000.0)
                break
            except asyncio.TimeoutError:
                continue

    async def run_cycle(self) -> None:
        """Poll and publish every configured schema once."""
        self._state = SchedulerState.RUNNING
        self.last_cycle_started_at = datetime.now(timezone.utc)
        try:
            with create_span("outbox.cycle", {"outbox.schema_count": len(self.sources)}):
                for source in self.sources:
                    await self._process_source(source)
        finally:
            self.cycles_completed += 1
            self.last_cycle_finished_at = datetime.now(timezone.utc)
            self._state = SchedulerState.IDLE

    async def _process_source(self, source: SchemaSource) -> None:
        """Poll one schema and publish its batch; never raises."""
        started = time.monotonic()
        try:
            # Row locks are held until the whole batch has been handled
            async with self.poller.claim(
                source.schema, source.table, source.timestamp_column
            ) as batch:
                self.metrics.record_polled(source.schema, source.table, len(batch.records))
                await self._publish_batch(batch, source)
        except PollError as e:
            logger.error(
                "Failed to poll schema",
                extra={"schema": source.schema, "table": source.table, "error": str(e)},
            )
        except Exception as e:
            # Commit failed: marks are rolled back and the batch is re-published
            logger.error(
                "Failed to commit outbox batch",
                extra={"schema": source.schema, "table": source.table, "error": str(e)},
            )

        self.metrics.record_poll_duration(source.schema, source.table, time.monotonic() - started)

    async def _publish_batch(self, batch: ClaimedBatch, source: SchemaSource) -> None:
        blocked: Set[str] = set()
        for record in batch.records:
            if record.aggregate_id in blocked:
                continue
            if not self.retry_tracker.is_due(record.id):
                blocked.add(record.aggregate_id)
                continue
            if not await self._publish(record, source, batch.conn):
                blocked.add(record.aggregate_id)

    async def _publish(self, record: OutboxRecord, source: SchemaSource, conn: Any = None) -> bool:
        """Publish one record; returns False if it failed."""
        try:
            await self.publisher.publish(
                record, source.schema, source.table, source.timestamp_column, conn=conn
            )
        except Exception as e:
            await self._handle_failure(record, source, e)
            return False

        self.retry_tracker.clear(record.id)
        self.metrics.record_published(source.schema, source.table, record.event_type)
        return True

    async def _handle_failure(
        self,
        record: OutboxRecord,
        source: SchemaSource,
        error: Exception
    ) -> None:
        reason = str(error) or type(error).__name__
        failures = self.retry_tracker.record_failure(record.id, reason)

        # Ask whether the next attempt may be made
        decision = self.retry_policy.should_retry(failures + 1)
        if decision.retry:
            self.retry_tracker.schedule(record.id, decision.delay_ms)
            logger.warning(
                "Publish failed, will retry",
                extra={
                    "event_id": record.event_id,
                    "schema": source.schema,
                    "attempt": failures,
                    "retry_in_ms": decision.delay_ms,
                    "error": reason,
                },
            )
            return

        try:
            dlq_id = await self.dead_letters.move_to_dlq(
                record, source.schema, source.table, reason, failures
            )
        except Exception as e:
            logger.error(
                "Dead-lettering failed, record stays unpublished",
                extra={"event_id": record.event_id, "schema": source.schema, "error": str(e)},
            )
        else:
            self.metrics.record_failed(source.schema, source.table, record.event_type)
            logger.warning(
                "Event dead-lettered after exhausting retries",
                extra={
                    "event_id": record.event_id,
                    "dlq_id": str(dlq_id),
                    "failure_count": failures,
                },
            )
        finally:
            # Retried from scratch if it is selected again
            self.retry_tracker.clear(record.id)
