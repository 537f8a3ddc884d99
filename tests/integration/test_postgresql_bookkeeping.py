"""
Integration tests for the relay's own tables in the ``outbox_relay`` schema.

Covers PostgreSQLRelayStateRepository and PostgreSQLFailedEventRepository.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from outboxrelay.repositories.failed_events import PostgreSQLFailedEventRepository
from outboxrelay.repositories.outbox import OutboxRow
from outboxrelay.repositories.relay_state import PostgreSQLRelayStateRepository

from .conftest import BASE_TIME, skip_if_no_postgres_infra

pytestmark = [
    pytest.mark.integration,
    pytest.mark.postgres,
    skip_if_no_postgres_infra,
]


@pytest.fixture
async def relay_state(postgres_engine) -> PostgreSQLRelayStateRepository:
    repo = PostgreSQLRelayStateRepository(postgres_engine, enable_tracing=False)
    await repo.create_tables()
    return repo


@pytest.fixture
async def failed_events(postgres_engine) -> PostgreSQLFailedEventRepository:
    repo = PostgreSQLFailedEventRepository(postgres_engine, enable_tracing=False)
    await repo.create_tables()
    return repo


def make_row(row_id: str = "7f3c", event_type: str = "order.created") -> OutboxRow:
    return OutboxRow(
        id=row_id,
        aggregate_id="order-1",
        aggregate_type="Order",
        event_type=event_type,
        payload={"total": 10},
        created_at=BASE_TIME,
    )


class TestPostgreSQLRelayStateRepository:
    async def test_create_tables_is_repeatable(self, relay_state):
        await relay_state.create_tables()

    async def test_ensure_state(self, relay_state, pg_source):
        await relay_state.ensure_state(pg_source)
        await relay_state.ensure_state(pg_source)

        state = await relay_state.get_state(pg_source)
        assert state.source_key == pg_source.key
        assert state.last_poll_time is None
        assert state.total_events_published == 0

    async def test_record_poll_and_increment(self, relay_state, pg_source):
        polled_at = datetime.now(UTC).replace(microsecond=0)
        await relay_state.ensure_state(pg_source)

        await relay_state.record_poll(pg_source, polled_at, last_event_id="r9")
        await relay_state.increment_published(pg_source, 3)
        await relay_state.increment_published(pg_source, 2)

        state = await relay_state.get_state(pg_source)
        assert state.last_poll_time == polled_at
        assert state.last_published_event_id == "r9"
        assert state.total_events_published == 5

    async def test_empty_poll_keeps_last_event_id(self, relay_state, pg_source):
        polled_at = datetime.now(UTC).replace(microsecond=0)
        await relay_state.ensure_state(pg_source)
        await relay_state.record_poll(pg_source, polled_at, last_event_id="r9")

        await relay_state.record_poll(pg_source, polled_at + timedelta(seconds=1))

        assert (await relay_state.get_state(pg_source)).last_published_event_id == "r9"

    async def test_load_last_poll_times(self, relay_state, pg_source, pg_boolean_source):
        polled_at = datetime.now(UTC).replace(microsecond=0)
        await relay_state.ensure_state(pg_source)
        await relay_state.ensure_state(pg_boolean_source)
        await relay_state.record_poll(pg_boolean_source, polled_at)

        assert await relay_state.load_last_poll_times() == {pg_boolean_source.key: polled_at}


class TestPostgreSQLFailedEventRepository:
    async def test_record_and_get(self, failed_events, pg_source):
        await failed_events.record_failure(pg_source, make_row(), "rejected")

        entry = await failed_events.get_failure(pg_source, "7f3c")
        assert entry.source_key == pg_source.key
        assert entry.event_type == "order.created"
        assert entry.payload == {"total": 10}
        assert entry.failure_reason == "rejected"
        assert entry.failure_count == 1

    async def test_repeated_failure_upserts(self, failed_events, pg_source):
        await failed_events.record_failure(pg_source, make_row(), "rejected")
        await failed_events.record_failure(pg_source, make_row(), "retries exhausted")

        entry = await failed_events.get_failure(pg_source, "7f3c")
        assert entry.failure_count == 2
        assert entry.failure_reason == "retries exhausted"
        assert entry.last_failed_at >= entry.first_failed_at

    async def test_list_failures(self, failed_events, pg_source, pg_boolean_source):
        await failed_events.record_failure(pg_source, make_row("a"), "rejected")
        await failed_events.record_failure(pg_source, make_row("b"), "rejected")
        await failed_events.record_failure(pg_boolean_source, make_row("c"), "rejected")

        assert len(await failed_events.list_failures()) == 3
        assert {e.original_event_id for e in await failed_events.list_failures(pg_source)} == {
            "a",
            "b",
        }
        assert len(await failed_events.list_failures(limit=1)) == 1

    async def test_unknown_row(self, failed_events, pg_source):
        assert await failed_events.get_failure(pg_source, "missing") is None
