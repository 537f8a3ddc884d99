"""
Unit tests for outbox repository implementations.

Tests the InMemoryOutboxRepository and SQLiteOutboxRepository for:
- Reading unpublished rows oldest first, bounded by the batch size
- Conditional completion (re-marking is a no-op, unknown ids are ignored)
- Timestamp and boolean completion markers
- Source validation and ping
- Mapping database rows onto OutboxRow
"""

import json
import logging
from datetime import UTC, datetime, timedelta

import pytest

from outboxrelay.config import CompletionMarker, SourceDescriptor
from outboxrelay.exceptions import (
    CompletionWriteError,
    ConfigurationError,
    OutboxReadError,
    OutboxRowMappingError,
)
from outboxrelay.observability import MockTracer
from outboxrelay.repositories.outbox import (
    CompletionWriter,
    InMemoryOutboxRepository,
    OutboxReader,
    OutboxRepository,
    SQLiteOutboxRepository,
    row_from_mapping,
)

T0 = datetime(2024, 1, 1, tzinfo=UTC)


class TestRowFromMapping:
    def test_maps_required_columns(self, source):
        row = row_from_mapping(
            {
                "id": 7,
                "aggregate_id": "order-1",
                "aggregate_type": "Order",
                "event_type": "order.created",
                "payload": {"total": 10},
                "created_at": T0,
                "published_at": None,
            },
            source,
        )

        assert row.id == 7
        assert row.payload == {"total": 10}
        assert row.created_at == T0
        assert row.completed_at is None
        assert row.correlation_id is None

    def test_decodes_json_payload_and_iso_timestamps(self, source):
        row = row_from_mapping(
            {
                "id": "r1",
                "aggregate_id": "order-1",
                "aggregate_type": "Order",
                "event_type": "order.created",
                "payload": json.dumps({"total": 10}),
                "created_at": T0.isoformat(),
                "published_at": (T0 + timedelta(seconds=5)).isoformat(),
                "correlation_id": "c-1",
                "extra_column": "ignored",
            },
            source,
        )

        assert row.payload == {"total": 10}
        assert row.created_at == T0
        assert row.completed_at == T0 + timedelta(seconds=5)
        assert row.correlation_id == "c-1"

    def test_boolean_marker_has_no_completed_at(self, boolean_source):
        row = row_from_mapping(
            {
                "id": 1,
                "aggregate_id": "sku-1",
                "aggregate_type": "Item",
                "event_type": "stock.changed",
                "payload": "{}",
                "created_at": T0,
                "published": True,
            },
            boolean_source,
        )

        assert row.completed_at is None

    def test_stringifies_aggregate_id(self, source):
        row = row_from_mapping(
            {
                "id": 1,
                "aggregate_id": 42,
                "aggregate_type": "Order",
                "event_type": "order.created",
                "payload": {},
                "created_at": T0,
            },
            source,
        )

        assert row.aggregate_id == "42"

    def test_missing_required_column(self, source):
        with pytest.raises(KeyError):
            row_from_mapping({"id": 1, "payload": {}, "created_at": T0}, source)

    def test_payload_must_be_object(self, source):
        with pytest.raises(ValueError, match="JSON object"):
            row_from_mapping(
                {
                    "id": 1,
                    "aggregate_id": "a",
                    "aggregate_type": "A",
                    "event_type": "e",
                    "payload": "[1, 2]",
                    "created_at": T0,
                },
                source,
            )


class TestInMemoryOutboxRepository:
    @pytest.fixture
    def repo(self, source) -> InMemoryOutboxRepository:
        repo = InMemoryOutboxRepository(enable_tracing=False)
        repo.create_table(source)
        return repo

    def test_implements_protocols(self, repo):
        assert isinstance(repo, OutboxReader)
        assert isinstance(repo, CompletionWriter)
        assert isinstance(repo, OutboxRepository)

    @pytest.mark.asyncio
    async def test_fetch_returns_oldest_first(self, repo, source, row_factory):
        r1, r2, r3 = row_factory("r1"), row_factory("r2"), row_factory("r3")
        repo.add_rows(source, r3, r1, r2)

        rows = await repo.fetch_batch(source)

        assert [r.id for r in rows] == ["r1", "r2", "r3"]

    @pytest.mark.asyncio
    async def test_fetch_breaks_created_at_ties_by_id(self, repo, source, row_factory):
        repo.add_rows(source, row_factory("b", created_at=T0), row_factory("a", created_at=T0))

        rows = await repo.fetch_batch(source)

        assert [r.id for r in rows] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_fetch_respects_batch_size(self, repo, row_factory):
        small = SourceDescriptor(namespace="orders", batch_size=2)
        repo.add_rows(small, *(row_factory(f"r{i}") for i in range(5)))

        rows = await repo.fetch_batch(small)

        assert [r.id for r in rows] == ["r0", "r1"]

    @pytest.mark.asyncio
    async def test_fetch_skips_completed_rows(self, repo, source, row_factory):
        repo.add_rows(source, row_factory("r1"), row_factory("r2"))
        await repo.mark_completed(source, ["r1"])

        rows = await repo.fetch_batch(source)

        assert [r.id for r in rows] == ["r2"]

    @pytest.mark.asyncio
    async def test_fetch_empty_table(self, repo, source):
        assert await repo.fetch_batch(source) == []

    @pytest.mark.asyncio
    async def test_fetch_read_error(self, repo, source):
        repo.read_error = OSError("connection reset")

        with pytest.raises(OutboxReadError) as exc_info:
            await repo.fetch_batch(source)

        assert exc_info.value.source == source.key

    @pytest.mark.asyncio
    async def test_mark_completed_counts_transitions(self, repo, source, row_factory):
        repo.add_rows(source, row_factory("r1"), row_factory("r2"))

        assert await repo.mark_completed(source, ["r1", "r2"]) == 2
        assert repo.is_completed(source, "r1")
        assert repo.is_completed(source, "r2")

    @pytest.mark.asyncio
    async def test_mark_completed_is_idempotent(self, repo, source, row_factory):
        repo.add_rows(source, row_factory("r1"))
        await repo.mark_completed(source, ["r1"])
        first = repo.completed_at(source, "r1")

        assert await repo.mark_completed(source, ["r1"]) == 0
        assert repo.completed_at(source, "r1") == first

    @pytest.mark.asyncio
    async def test_mark_completed_ignores_unknown_ids(self, repo, source, row_factory):
        repo.add_rows(source, row_factory("r1"))

        assert await repo.mark_completed(source, ["r1", "missing"]) == 1

    @pytest.mark.asyncio
    async def test_mark_completed_empty_is_noop(self, repo, source):
        assert await repo.mark_completed(source, []) == 0
        assert repo.mark_calls == 0

    @pytest.mark.asyncio
    async def test_mark_completed_write_error(self, repo, source, row_factory):
        repo.add_rows(source, row_factory("r1"))
        repo.write_error = OSError("disk full")

        with pytest.raises(CompletionWriteError) as exc_info:
            await repo.mark_completed(source, ["r1"])

        assert exc_info.value.row_ids == ["r1"]
        assert not repo.is_completed(source, "r1")

    @pytest.mark.asyncio
    async def test_rows_are_never_deleted(self, repo, source, row_factory):
        repo.add_rows(source, row_factory("r1"), row_factory("r2"))
        await repo.mark_completed(source, ["r1", "r2"])

        assert repo.row_count(source) == 2

    @pytest.mark.asyncio
    async def test_sources_are_isolated(self, repo, source, second_source, row_factory):
        repo.add_rows(source, row_factory("r1"))
        repo.add_rows(second_source, row_factory("r1"))

        await repo.mark_completed(source, ["r1"])

        assert not repo.is_completed(second_source, "r1")
        assert [r.id for r in await repo.fetch_batch(second_source)] == ["r1"]

    @pytest.mark.asyncio
    async def test_validate_source(self, repo, source, second_source):
        await repo.validate_source(source)

        with pytest.raises(ConfigurationError, match="does not exist"):
            await repo.validate_source(second_source)

    @pytest.mark.asyncio
    async def test_ping(self, repo):
        await repo.ping()

        repo.available = False
        with pytest.raises(ConnectionError):
            await repo.ping()

    @pytest.mark.asyncio
    async def test_traces_operations(self, source, row_factory):
        tracer = MockTracer()
        repo = InMemoryOutboxRepository(tracer=tracer)
        repo.add_rows(source, row_factory("r1"))

        await repo.fetch_batch(source)
        await repo.mark_completed(source, ["r1"])

        assert tracer.span_names == [
            "outboxrelay.outbox.fetch_batch",
            "outboxrelay.outbox.mark_completed",
        ]


OUTBOX_DDL = """
    CREATE TABLE outbox_events (
        id TEXT PRIMARY KEY,
        aggregate_id TEXT NOT NULL,
        aggregate_type TEXT NOT NULL,
        event_type TEXT NOT NULL,
        payload TEXT NOT NULL,
        created_at TEXT NOT NULL,
        published_at TEXT,
        correlation_id TEXT
    )
"""

BOOLEAN_OUTBOX_DDL = """
    CREATE TABLE outbox (
        id INTEGER PRIMARY KEY,
        aggregate_id TEXT NOT NULL,
        aggregate_type TEXT NOT NULL,
        event_type TEXT NOT NULL,
        payload TEXT NOT NULL,
        created_at TEXT NOT NULL,
        published INTEGER
    )
"""


class TestSQLiteOutboxRepository:
    @pytest.fixture
    async def repo(self, sqlite_connection) -> SQLiteOutboxRepository:
        await sqlite_connection.execute(OUTBOX_DDL)
        await sqlite_connection.execute(BOOLEAN_OUTBOX_DDL)
        await sqlite_connection.commit()
        return SQLiteOutboxRepository(sqlite_connection, enable_tracing=False)

    @staticmethod
    async def insert(connection, row_id, created_at, published_at=None, correlation_id=None):
        await connection.execute(
            """
            INSERT INTO outbox_events
                (id, aggregate_id, aggregate_type, event_type, payload, created_at,
                 published_at, correlation_id)
            VALUES (?, 'order-1', 'Order', 'order.created', ?, ?, ?, ?)
            """,
            (
                row_id,
                json.dumps({"id": row_id}),
                created_at.isoformat(),
                published_at,
                correlation_id,
            ),
        )
        await connection.commit()

    @pytest.mark.asyncio
    async def test_fetch_oldest_first(self, repo, sqlite_connection, source):
        await self.insert(sqlite_connection, "r2", T0 + timedelta(seconds=2))
        await self.insert(sqlite_connection, "r1", T0 + timedelta(seconds=1))
        await self.insert(sqlite_connection, "r0", T0, published_at=T0.isoformat())

        rows = await repo.fetch_batch(source)

        assert [r.id for r in rows] == ["r1", "r2"]
        assert rows[0].payload == {"id": "r1"}
        assert rows[0].created_at == T0 + timedelta(seconds=1)

    @pytest.mark.asyncio
    async def test_fetch_reads_correlation_id(self, repo, sqlite_connection, source):
        await self.insert(sqlite_connection, "r1", T0, correlation_id="c-9")

        (row,) = await repo.fetch_batch(source)

        assert row.correlation_id == "c-9"

    @pytest.mark.asyncio
    async def test_mark_completed_sets_timestamp_once(self, repo, sqlite_connection, source):
        await self.insert(sqlite_connection, "r1", T0)
        await self.insert(sqlite_connection, "r2", T0 + timedelta(seconds=1))

        assert await repo.mark_completed(source, ["r1"]) == 1
        assert await repo.mark_completed(source, ["r1", "r2"]) == 1
        assert await repo.fetch_batch(source) == []

        cursor = await sqlite_connection.execute(
            "SELECT id, published_at FROM outbox_events ORDER BY id"
        )
        marked = {row[0]: row[1] for row in await cursor.fetchall()}
        assert all(value is not None for value in marked.values())

    @pytest.mark.asyncio
    async def test_boolean_marker(self, repo, sqlite_connection, boolean_source):
        for n, published in enumerate([None, 0, 1]):
            await sqlite_connection.execute(
                """
                INSERT INTO outbox
                    (id, aggregate_id, aggregate_type, event_type, payload, created_at, published)
                VALUES (?, 'sku-1', 'Item', 'stock.changed', '{}', ?, ?)
                """,
                (n + 1, (T0 + timedelta(seconds=n)).isoformat(), published),
            )
        await sqlite_connection.commit()

        rows = await repo.fetch_batch(boolean_source)
        assert [r.id for r in rows] == [1, 2]

        assert await repo.mark_completed(boolean_source, [1, 2, 3]) == 2
        assert await repo.fetch_batch(boolean_source) == []

    @pytest.mark.asyncio
    async def test_fetch_missing_table_raises_read_error(self, repo):
        missing = SourceDescriptor(namespace="orders", table="no_such_table")

        with pytest.raises(OutboxReadError):
            await repo.fetch_batch(missing)

    @pytest.mark.asyncio
    async def test_fetch_bad_payload_raises_mapping_error(
        self, repo, sqlite_connection, source, caplog
    ):
        await sqlite_connection.execute(
            """
            INSERT INTO outbox_events
                (id, aggregate_id, aggregate_type, event_type, payload, created_at)
            VALUES ('r1', 'order-1', 'Order', 'order.created', 'not json', ?)
            """,
            (T0.isoformat(),),
        )
        await sqlite_connection.commit()

        with caplog.at_level(logging.ERROR, logger="outboxrelay.repositories.outbox"):
            with pytest.raises(OutboxRowMappingError) as exc_info:
                await repo.fetch_batch(source)

        assert isinstance(exc_info.value, OutboxReadError)
        assert exc_info.value.row_id == "r1"
        assert exc_info.value.source == source.key
        records = [r for r in caplog.records if r.getMessage() == "Outbox row could not be mapped"]
        assert len(records) == 1
        assert records[0].row_id == "r1"

    @pytest.mark.asyncio
    async def test_fetch_database_error_is_not_a_mapping_error(self, repo):
        missing = SourceDescriptor(namespace="orders", table="no_such_table")

        with pytest.raises(OutboxReadError) as exc_info:
            await repo.fetch_batch(missing)

        assert not isinstance(exc_info.value, OutboxRowMappingError)

    @pytest.mark.asyncio
    async def test_mark_completed_missing_table_raises(self, repo):
        missing = SourceDescriptor(namespace="orders", table="no_such_table")

        with pytest.raises(CompletionWriteError):
            await repo.mark_completed(missing, ["r1"])

    @pytest.mark.asyncio
    async def test_validate_source(self, repo, source, boolean_source):
        await repo.validate_source(source)
        await repo.validate_source(boolean_source)

    @pytest.mark.asyncio
    async def test_validate_missing_column(self, repo):
        wrong_column = SourceDescriptor(namespace="orders", completion_column="processed_at")

        with pytest.raises(ConfigurationError, match="processed_at"):
            await repo.validate_source(wrong_column)

    @pytest.mark.asyncio
    async def test_validate_missing_table(self, repo):
        with pytest.raises(ConfigurationError, match="does not exist"):
            await repo.validate_source(SourceDescriptor(namespace="orders", table="absent"))

    @pytest.mark.asyncio
    async def test_ping(self, repo):
        await repo.ping()


class TestCompletionMarkerValues:
    def test_marker_values(self):
        assert CompletionMarker("timestamp") is CompletionMarker.TIMESTAMP
        assert CompletionMarker("boolean") is CompletionMarker.BOOLEAN
