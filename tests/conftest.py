"""
Shared pytest fixtures for the outboxrelay tests.

This module provides:
- Source fixtures (source, boolean_source, second_source)
- Row fixtures (row_factory)
- In-memory collaborators (outbox_repo, broker, tracker, relay_state_repo,
  failed_events_repo)
- Fast retry configuration for publisher tests (fast_retry)
- SQLite fixtures (sqlite_connection)
- OpenTelemetry metrics fixtures (metric_reader, metrics, metric_points, counter_value)
"""

from __future__ import annotations

import itertools
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import aiosqlite
import pytest
import pytest_asyncio
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader

from outboxrelay.bus.memory import InMemoryBrokerClient
from outboxrelay.config import CompletionMarker, SourceDescriptor
from outboxrelay.metrics import RelayMetrics
from outboxrelay.repositories.failed_events import InMemoryFailedEventRepository
from outboxrelay.repositories.outbox import InMemoryOutboxRepository, OutboxRow
from outboxrelay.repositories.relay_state import InMemoryRelayStateRepository
from outboxrelay.retry import RetryConfig
from outboxrelay.staleness import StalenessTracker

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)


# ============================================================================
# Sources and rows
# ============================================================================


@pytest.fixture
def source() -> SourceDescriptor:
    """The orders service outbox, timestamp completion marker."""
    return SourceDescriptor(
        namespace="orders",
        table="outbox_events",
        completion_column="published_at",
        batch_size=10,
        poll_interval_ms=50,
    )


@pytest.fixture
def second_source() -> SourceDescriptor:
    """The billing service outbox with a different table layout."""
    return SourceDescriptor(
        namespace="billing",
        table="outbox",
        completion_column="processed_at",
        batch_size=10,
        poll_interval_ms=50,
    )


@pytest.fixture
def boolean_source() -> SourceDescriptor:
    """An outbox whose completion marker is a boolean flag."""
    return SourceDescriptor(
        namespace="inventory",
        table="outbox",
        completion_column="published",
        completion_marker=CompletionMarker.BOOLEAN,
        batch_size=10,
        poll_interval_ms=50,
    )


@pytest.fixture
def row_factory() -> Callable[..., OutboxRow]:
    """
    Factory for outbox rows with increasing creation times.

    Usage:
        row = row_factory("r1")
        row = row_factory("r2", event_type="order.paid", correlation_id="c-1")
    """
    counter = itertools.count()

    def _create(
        row_id: Any = None,
        event_type: str = "order.created",
        aggregate_type: str = "Order",
        aggregate_id: str = "order-1",
        payload: dict[str, Any] | None = None,
        created_at: datetime | None = None,
        correlation_id: str | None = None,
    ) -> OutboxRow:
        n = next(counter)
        return OutboxRow(
            id=row_id if row_id is not None else f"row-{n}",
            aggregate_id=aggregate_id,
            aggregate_type=aggregate_type,
            event_type=event_type,
            payload=payload if payload is not None else {"n": n},
            created_at=created_at or BASE_TIME + timedelta(seconds=n),
            correlation_id=correlation_id,
        )

    return _create


# ============================================================================
# In-memory collaborators
# ============================================================================


@pytest.fixture
def outbox_repo() -> InMemoryOutboxRepository:
    """Fresh in-memory outbox repository (tracing disabled)."""
    return InMemoryOutboxRepository(enable_tracing=False)


@pytest.fixture
def broker() -> InMemoryBrokerClient:
    """Fresh in-memory broker."""
    return InMemoryBrokerClient()


@pytest.fixture
def tracker() -> StalenessTracker:
    return StalenessTracker()


@pytest.fixture
def relay_state_repo() -> InMemoryRelayStateRepository:
    return InMemoryRelayStateRepository(enable_tracing=False)


@pytest.fixture
def failed_events_repo() -> InMemoryFailedEventRepository:
    return InMemoryFailedEventRepository(enable_tracing=False)


@pytest.fixture
def fast_retry() -> RetryConfig:
    """Retry config with millisecond delays so retry paths run quickly."""
    return RetryConfig(max_retries=2, initial_delay=0.001, max_delay=0.005, jitter=0.0)


# ============================================================================
# SQLite
# ============================================================================


@pytest_asyncio.fixture
async def sqlite_connection() -> AsyncGenerator[aiosqlite.Connection, None]:
    """
    Provide a raw aiosqlite connection to an in-memory database.

    Yields:
        aiosqlite.Connection: Raw database connection
    """
    conn = await aiosqlite.connect(":memory:")
    conn.row_factory = aiosqlite.Row

    yield conn

    await conn.close()


# ============================================================================
# OpenTelemetry metrics
# ============================================================================


@pytest.fixture
def metric_reader() -> InMemoryMetricReader:
    """
    Provide an InMemoryMetricReader for testing metrics.

    Creates a fresh metric reader and meter provider for each test.
    """
    return InMemoryMetricReader()


@pytest.fixture
def metrics(metric_reader: InMemoryMetricReader) -> RelayMetrics:
    """RelayMetrics bound to a private meter provider read by ``metric_reader``."""
    provider = MeterProvider(metric_readers=[metric_reader])
    return RelayMetrics(meter=provider.get_meter("outboxrelay-test"))


def _collect_metric_points(reader: InMemoryMetricReader) -> dict[str, list[Any]]:
    points: dict[str, list[Any]] = {}
    data = reader.get_metrics_data()
    if data is None:
        return points
    for resource_metrics in data.resource_metrics:
        for scope_metrics in resource_metrics.scope_metrics:
            for metric in scope_metrics.metrics:
                points.setdefault(metric.name, []).extend(metric.data.data_points)
    return points


@pytest.fixture
def metric_points(metric_reader: InMemoryMetricReader) -> Callable[[], dict[str, list[Any]]]:
    """Callable returning the collected data points by metric name."""
    return lambda: _collect_metric_points(metric_reader)


@pytest.fixture
def counter_value(metric_reader: InMemoryMetricReader) -> Callable[..., int]:
    """
    Callable summing a counter's data points whose attributes include the given ones.

    Usage:
        assert counter_value("events_published_total", namespace="orders") == 3
    """

    def _value(name: str, **attributes: str) -> int:
        total = 0
        for point in _collect_metric_points(metric_reader).get(name, []):
            if all(point.attributes.get(k) == v for k, v in attributes.items()):
                total += point.value
        return total

    return _value

