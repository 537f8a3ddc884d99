"""
Source poller: one poll -> publish -> acknowledge cycle for one source.

A cycle reads the oldest unpublished rows, publishes them one at a time in
row order, then marks every acknowledged row completed in a single update.
Rows the broker did not acknowledge are left unpublished and come back in a
later cycle, so delivery is at-least-once.

A cycle fails only when the batch cannot be read or the completion update
fails. Per-row publish failures are counted but do not fail the cycle.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from outboxrelay.config import SourceDescriptor
from outboxrelay.exceptions import CompletionWriteError, OutboxReadError
from outboxrelay.metrics import RelayMetrics
from outboxrelay.observability import Tracer, create_tracer
from outboxrelay.observability.attributes import (
    ATTR_ROW_COUNT,
    ATTR_ROWS_COMPLETED,
    ATTR_ROWS_FAILED,
    ATTR_ROWS_PUBLISHED,
    ATTR_SOURCE,
    ATTR_SOURCE_NAMESPACE,
    ATTR_SOURCE_TABLE,
)
from outboxrelay.publisher import EventPublisher, PublishOutcome
from outboxrelay.repositories.failed_events import FailedEventRepository
from outboxrelay.repositories.outbox import CompletionWriter, OutboxReader, OutboxRow
from outboxrelay.repositories.relay_state import RelayStateRepository
from outboxrelay.staleness import StalenessTracker, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollCycleResult:
    """
    Outcome of one poll cycle.

    Attributes:
        source: Source key (``namespace.table``)
        rows_read: Rows returned by the read
        rows_published: Rows acknowledged by the broker
        rows_failed: Rows whose publish failed
        rows_completed: Rows that transitioned to complete in this cycle
        cycle_started_at: When the cycle began
        cycle_succeeded: False if the read or the completion update failed
        duration_seconds: Wall time of the cycle
        error: Description of the failure, if the cycle failed
    """

    source: str
    rows_read: int
    rows_published: int
    rows_failed: int
    rows_completed: int
    cycle_started_at: datetime
    cycle_succeeded: bool
    duration_seconds: float
    error: str | None = None


class SourcePoller:
    """
    Runs poll cycles for a single source.

    Example:
        >>> poller = SourcePoller(source, repo, repo, publisher, tracker)
        >>> result = await poller.poll_once()
        >>> result.rows_completed
        3
    """

    def __init__(
        self,
        source: SourceDescriptor,
        reader: OutboxReader,
        writer: CompletionWriter,
        publisher: EventPublisher,
        tracker: StalenessTracker,
        metrics: RelayMetrics | None = None,
        relay_state: RelayStateRepository | None = None,
        failed_events: FailedEventRepository | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the poller.

        Args:
            source: The source to poll
            reader: Reads unpublished rows
            writer: Marks delivered rows completed
            publisher: Publishes rows to the broker
            tracker: Receives the time of each successful cycle
            metrics: Metric instruments (a no-op set if not provided)
            relay_state: Optional persisted per-source state, updated after successful cycles
            failed_events: Optional ledger that records rows whose publish failed
            tracer: Optional tracer for tracing (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self.source = source
        self._reader = reader
        self._writer = writer
        self._publisher = publisher
        self._tracker = tracker
        self._metrics = metrics or RelayMetrics(enabled=False)
        self._relay_state = relay_state
        self._failed_events = failed_events
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

        tracker.register(source)

    async def poll_once(self) -> PollCycleResult:
        """
        Run one cycle: read, publish each row in order, mark delivered rows.

        Returns:
            The cycle's result; read and completion failures are reported in
            it rather than raised.
        """
        started_at = utc_now()
        start = time.perf_counter()

        with self._tracer.span(
            "outboxrelay.poll_cycle",
            {
                ATTR_SOURCE: self.source.key,
                ATTR_SOURCE_NAMESPACE: self.source.namespace,
                ATTR_SOURCE_TABLE: self.source.table,
            },
        ) as span:
            try:
                rows = await self._reader.fetch_batch(self.source)
            except OutboxReadError as e:
                return self._failed_cycle(started_at, start, "read", e)

            self._metrics.record_polled(self.source, len(rows))

            delivered: list[Any] = []
            failed = 0
            for row in rows:
                outcome = await self._publish(row)
                if outcome.success:
                    delivered.append(row.id)
                    self._metrics.record_published(self.source, row.event_type)
                else:
                    failed += 1
                    self._metrics.record_failed(self.source, row.event_type)
                    await self._record_failure(row, outcome.reason or "unknown")

            try:
                completed = await self._writer.mark_completed(self.source, delivered)
            except CompletionWriteError as e:
                return self._failed_cycle(
                    started_at,
                    start,
                    "completion",
                    e,
                    rows_read=len(rows),
                    rows_published=len(delivered),
                    rows_failed=failed,
                )

            finished_at = utc_now()
            self._tracker.record_success(self.source, finished_at)
            await self._update_relay_state(
                finished_at, delivered[-1] if delivered else None, completed
            )

            duration = time.perf_counter() - start
            self._metrics.record_poll_latency(self.source, duration)

            if span is not None:
                span.set_attribute(ATTR_ROW_COUNT, len(rows))
                span.set_attribute(ATTR_ROWS_PUBLISHED, len(delivered))
                span.set_attribute(ATTR_ROWS_FAILED, failed)
                span.set_attribute(ATTR_ROWS_COMPLETED, completed)

            log_extra = {
                "source": self.source.key,
                "rows_read": len(rows),
                "rows_published": len(delivered),
                "rows_failed": failed,
                "rows_completed": completed,
                "duration_seconds": duration,
            }
            if rows:
                logger.info("Outbox poll cycle complete", extra=log_extra)
            else:
                logger.debug("Outbox poll cycle found no rows", extra=log_extra)

            return PollCycleResult(
                source=self.source.key,
                rows_read=len(rows),
                rows_published=len(delivered),
                rows_failed=failed,
                rows_completed=completed,
                cycle_started_at=started_at,
                cycle_succeeded=True,
                duration_seconds=duration,
            )

    def _failed_cycle(
        self,
        started_at: datetime,
        start: float,
        reason: str,
        error: Exception,
        rows_read: int = 0,
        rows_published: int = 0,
        rows_failed: int = 0,
    ) -> PollCycleResult:
        duration = time.perf_counter() - start
        self._metrics.record_poll_latency(self.source, duration)
        self._metrics.record_cycle_failed(self.source, reason)

        logger.error(
            "Outbox poll cycle failed",
            extra={
                "source": self.source.key,
                "reason": reason,
                "error": str(error),
                "rows_published": rows_published,
            },
            exc_info=error,
        )

        return PollCycleResult(
            source=self.source.key,
            rows_read=rows_read,
            rows_published=rows_published,
            rows_failed=rows_failed,
            rows_completed=0,
            cycle_started_at=started_at,
            cycle_succeeded=False,
            duration_seconds=duration,
            error=str(error),
        )

    async def _publish(self, row: OutboxRow) -> PublishOutcome:
        try:
            return await self._publisher.publish(self.source, row)
        except Exception as e:
            # Contained to the row; delivered rows in the batch must still be marked
            logger.error(
                "Unexpected error publishing outbox row",
                extra={"source": self.source.key, "row_id": str(row.id), "error": str(e)},
                exc_info=True,
            )
            return PublishOutcome.failed(f"{type(e).__name__}: {e}")

    async def _record_failure(self, row: OutboxRow, reason: str) -> None:
        if self._failed_events is None:
            return
        try:
            await self._failed_events.record_failure(self.source, row, reason)
        except Exception as e:
            logger.warning(
                "Could not record failed event",
                extra={"source": self.source.key, "row_id": str(row.id), "error": str(e)},
                exc_info=True,
            )

    async def _update_relay_state(
        self,
        polled_at: datetime,
        last_event_id: Any | None,
        published: int,
    ) -> None:
        if self._relay_state is None:
            return
        try:
            await self._relay_state.record_poll(self.source, polled_at, last_event_id)
            await self._relay_state.increment_published(self.source, published)
        except Exception as e:
            logger.warning(
                "Could not update relay state",
                extra={"source": self.source.key, "error": str(e)},
                exc_info=True,
            )


__all__ = ["SourcePoller", "PollCycleResult"]
