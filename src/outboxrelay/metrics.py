"""OpenTelemetry metric instruments for the outbox relay.

Instruments (all carry ``namespace`` and ``table`` attributes):

- ``events_polled_total``: rows read by poll cycles
- ``events_published_total``: rows acknowledged by the broker (+ ``event_type``)
- ``events_failed_total``: rows whose publish failed (+ ``event_type``)
- ``poll_latency_seconds``: duration of poll cycles
- ``cycle_overlaps_total``: ticks skipped because a cycle was still running
- ``poll_cycles_failed_total``: cycles that failed on read or completion (+ ``reason``)

Exporting is left to the process: instruments come from the global meter
provider unless a meter is passed in.
"""

from typing import Any

from opentelemetry import metrics as otel_metrics

from outboxrelay.config import SourceDescriptor
from outboxrelay.observability.attributes import (
    LABEL_EVENT_TYPE,
    LABEL_NAMESPACE,
    LABEL_REASON,
    LABEL_TABLE,
)

POLL_LATENCY_BUCKETS = [0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]


def _source_attributes(source: SourceDescriptor) -> dict[str, str]:
    return {LABEL_NAMESPACE: source.namespace, LABEL_TABLE: source.table}


class RelayMetrics:
    """Container for the relay's metric instruments.

    Instruments are created once and shared by every source's poller and by
    the scheduler.

    Args:
        meter: Meter to create instruments from. Defaults to the global meter
            provider's ``outboxrelay`` meter.
        enabled: When False, instruments come from a no-op meter.

    Example:
        >>> metrics = RelayMetrics()
        >>> metrics.record_published(source, "order.created")
    """

    def __init__(self, meter: Any = None, enabled: bool = True) -> None:
        if not enabled:
            meter = otel_metrics.NoOpMeter("outboxrelay")
        elif meter is None:
            meter = otel_metrics.get_meter("outboxrelay")

        self.events_polled = meter.create_counter(
            name="events_polled_total",
            description="Total outbox rows read by poll cycles",
            unit="events",
        )
        self.events_published = meter.create_counter(
            name="events_published_total",
            description="Total outbox rows acknowledged by the broker",
            unit="events",
        )
        self.events_failed = meter.create_counter(
            name="events_failed_total",
            description="Total outbox rows whose publish failed",
            unit="events",
        )
        self.cycle_overlaps = meter.create_counter(
            name="cycle_overlaps_total",
            description="Poll ticks skipped because the previous cycle was still running",
            unit="cycles",
        )
        self.poll_cycles_failed = meter.create_counter(
            name="poll_cycles_failed_total",
            description="Poll cycles that failed to read or to mark completion",
            unit="cycles",
        )
        self.poll_latency = meter.create_histogram(
            name="poll_latency_seconds",
            description="Duration of outbox poll cycles",
            unit="s",
            explicit_bucket_boundaries_advisory=POLL_LATENCY_BUCKETS,
        )

    def record_polled(self, source: SourceDescriptor, count: int) -> None:
        if count > 0:
            self.events_polled.add(count, _source_attributes(source))

    def record_published(self, source: SourceDescriptor, event_type: str) -> None:
        self.events_published.add(
            1, {**_source_attributes(source), LABEL_EVENT_TYPE: event_type}
        )

    def record_failed(self, source: SourceDescriptor, event_type: str) -> None:
        self.events_failed.add(1, {**_source_attributes(source), LABEL_EVENT_TYPE: event_type})

    def record_poll_latency(self, source: SourceDescriptor, seconds: float) -> None:
        self.poll_latency.record(seconds, _source_attributes(source))

    def record_overlap(self, source: SourceDescriptor) -> None:
        self.cycle_overlaps.add(1, _source_attributes(source))

    def record_cycle_failed(self, source: SourceDescriptor, reason: str) -> None:
        self.poll_cycles_failed.add(1, {**_source_attributes(source), LABEL_REASON: reason})


__all__ = ["RelayMetrics", "POLL_LATENCY_BUCKETS"]
