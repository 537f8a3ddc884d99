"""
Outbox repositories: reading unpublished rows and marking them completed.

Each service writes domain events into its own outbox table in the same
transaction as its state change. The relay reads those tables through an
``OutboxReader`` and records delivery through a ``CompletionWriter``.

Two query shapes are issued per source:

- ``SELECT * FROM "ns"."table" WHERE <not complete> ORDER BY created_at, id LIMIT n``
- ``UPDATE "ns"."table" SET <complete> WHERE id IN (...) AND <not complete>``

The conditional update makes re-marking an already completed row a no-op, and
rows are never deleted.
"""

import asyncio
import json
import logging
import sqlite3
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from sqlalchemy import bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from outboxrelay.config import CompletionMarker, SourceDescriptor
from outboxrelay.exceptions import (
    CompletionWriteError,
    ConfigurationError,
    OutboxReadError,
    OutboxRowMappingError,
)
from outboxrelay.observability import Tracer, create_tracer
from outboxrelay.observability.attributes import (
    ATTR_BATCH_SIZE,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_ROW_COUNT,
    ATTR_SOURCE,
)
from outboxrelay.repositories._connection import (
    execute_with_connection,
    qualified_table,
    quote_identifier,
)

if TYPE_CHECKING:
    import aiosqlite

logger = logging.getLogger(__name__)

# Columns every outbox table must provide (besides its completion column)
REQUIRED_COLUMNS = frozenset(
    {"id", "aggregate_id", "aggregate_type", "event_type", "payload", "created_at"}
)

# Errors raised while talking to a database
_DATA_ACCESS_ERRORS: tuple[type[Exception], ...] = (SQLAlchemyError, OSError)


@dataclass(frozen=True)
class OutboxRow:
    """
    A read-only projection of one outbox table row.

    Attributes:
        id: Row identifier (UUID, integer or text, as stored)
        aggregate_id: Identifier of the aggregate that produced the event
        aggregate_type: Type of the aggregate
        event_type: Event type name
        payload: Decoded event payload
        created_at: When the row was written
        completed_at: When the row was published (None while unpublished)
        correlation_id: Optional correlation identifier
    """

    id: Any
    aggregate_id: str
    aggregate_type: str
    event_type: str
    payload: dict[str, Any]
    created_at: datetime
    completed_at: datetime | None = None
    correlation_id: str | None = None


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    raise ValueError(f"Unsupported timestamp value: {value!r}")


def _parse_payload(value: Any) -> dict[str, Any]:
    if isinstance(value, (str, bytes, bytearray)):
        value = json.loads(value)
    if not isinstance(value, dict):
        raise ValueError(f"Outbox payload must be a JSON object, got {type(value).__name__}")
    return value


def row_from_mapping(mapping: Mapping[str, Any], source: SourceDescriptor) -> OutboxRow:
    """
    Build an ``OutboxRow`` from a result row keyed by column name.

    Columns beyond the required set are ignored, and ``correlation_id`` is
    optional, so tables with extra or missing optional columns still map.

    Raises:
        KeyError: If a required column is missing
        ValueError: If the payload or timestamp cannot be decoded
    """
    completed = mapping.get(source.completion_column)
    completed_at = None
    if source.completion_marker is CompletionMarker.TIMESTAMP and completed is not None:
        completed_at = _parse_timestamp(completed)

    correlation_id = mapping.get("correlation_id")

    return OutboxRow(
        id=mapping["id"],
        aggregate_id=str(mapping["aggregate_id"]),
        aggregate_type=str(mapping["aggregate_type"]),
        event_type=str(mapping["event_type"]),
        payload=_parse_payload(mapping["payload"]),
        created_at=_parse_timestamp(mapping["created_at"]),
        completed_at=completed_at,
        correlation_id=str(correlation_id) if correlation_id is not None else None,
    )


def _map_rows(records: Iterable[Mapping[str, Any]], source: SourceDescriptor) -> list[OutboxRow]:
    rows = []
    for record in records:
        try:
            rows.append(row_from_mapping(record, source))
        except (KeyError, ValueError, TypeError) as e:
            row_id = record.get("id")
            logger.error(
                "Outbox row could not be mapped",
                extra={"source": source.key, "row_id": str(row_id), "error": str(e)},
                exc_info=True,
            )
            raise OutboxRowMappingError(source.key, row_id, str(e)) from e
    return rows


@runtime_checkable
class OutboxReader(Protocol):
    """Protocol for reading the next batch of unpublished rows of a source."""

    async def fetch_batch(self, source: SourceDescriptor) -> list[OutboxRow]:
        """
        Return up to ``source.batch_size`` unpublished rows, oldest first.

        Raises:
            OutboxReadError: On any data-access failure (no partial batch)
        """
        ...


@runtime_checkable
class CompletionWriter(Protocol):
    """Protocol for marking delivered rows as completed."""

    async def mark_completed(self, source: SourceDescriptor, row_ids: Sequence[Any]) -> int:
        """
        Mark rows completed in one conditional batched update.

        Rows that are already complete are left untouched. An empty id
        sequence returns 0 without touching the database.

        Returns:
            Number of rows that transitioned to complete

        Raises:
            CompletionWriteError: If the update fails
        """
        ...


@runtime_checkable
class OutboxRepository(OutboxReader, CompletionWriter, Protocol):
    """Full outbox access used by the relay: read, complete, validate and ping."""

    async def validate_source(self, source: SourceDescriptor) -> None:
        """
        Check that the source table exists with the expected columns.

        Raises:
            ConfigurationError: If the table or a required column is missing
        """
        ...

    async def ping(self) -> None:
        """Run a trivial query; raises if the database is unreachable."""
        ...


def _check_columns(source: SourceDescriptor, columns: set[str]) -> None:
    if not columns:
        raise ConfigurationError(f"Outbox table {source.key} does not exist")
    missing = sorted((REQUIRED_COLUMNS | {source.completion_column}) - columns)
    if missing:
        raise ConfigurationError(
            f"Outbox table {source.key} is missing column(s): {', '.join(missing)}"
        )


class PostgreSQLOutboxRepository:
    """
    PostgreSQL implementation of the outbox repository.

    Identifiers come from validated ``SourceDescriptor`` fields and are
    double-quoted; values are always bound parameters.

    Example:
        >>> engine = create_async_engine("postgresql+asyncpg://localhost/app")
        >>> repo = PostgreSQLOutboxRepository(engine)
        >>> rows = await repo.fetch_batch(source)
        >>> await repo.mark_completed(source, [row.id for row in rows])
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the outbox repository.

        Args:
            conn: Database connection or engine
            tracer: Optional tracer for tracing (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.conn = conn

    @staticmethod
    def _pending_predicate(source: SourceDescriptor) -> str:
        column = quote_identifier(source.completion_column)
        if source.completion_marker is CompletionMarker.BOOLEAN:
            return f"{column} IS NOT TRUE"
        return f"{column} IS NULL"

    @staticmethod
    def _completed_value(source: SourceDescriptor) -> str:
        if source.completion_marker is CompletionMarker.BOOLEAN:
            return "TRUE"
        return "now()"

    async def fetch_batch(self, source: SourceDescriptor) -> list[OutboxRow]:
        with self._tracer.span(
            "outboxrelay.outbox.fetch_batch",
            {
                ATTR_SOURCE: source.key,
                ATTR_BATCH_SIZE: source.batch_size,
                ATTR_DB_SYSTEM: "postgresql",
                ATTR_DB_OPERATION: "SELECT",
            },
        ) as span:
            query = text(f"""
                SELECT *
                FROM {qualified_table(source.namespace, source.table)}
                WHERE {self._pending_predicate(source)}
                ORDER BY created_at, id
                LIMIT :limit
            """)

            try:
                async with execute_with_connection(self.conn, transactional=False) as conn:
                    result = await conn.execute(query, {"limit": source.batch_size})
                    rows = _map_rows(result.mappings(), source)
            except _DATA_ACCESS_ERRORS as e:
                raise OutboxReadError(source.key, str(e)) from e

            if span is not None:
                span.set_attribute(ATTR_ROW_COUNT, len(rows))
            return rows

    async def mark_completed(self, source: SourceDescriptor, row_ids: Sequence[Any]) -> int:
        if not row_ids:
            return 0

        with self._tracer.span(
            "outboxrelay.outbox.mark_completed",
            {
                ATTR_SOURCE: source.key,
                ATTR_ROW_COUNT: len(row_ids),
                ATTR_DB_SYSTEM: "postgresql",
                ATTR_DB_OPERATION: "UPDATE",
            },
        ):
            column = quote_identifier(source.completion_column)
            query = text(f"""
                UPDATE {qualified_table(source.namespace, source.table)}
                SET {column} = {self._completed_value(source)}
                WHERE id IN :ids
                  AND {self._pending_predicate(source)}
            """).bindparams(bindparam("ids", expanding=True))

            try:
                async with execute_with_connection(self.conn, transactional=True) as conn:
                    result = await conn.execute(query, {"ids": list(row_ids)})
            except (SQLAlchemyError, OSError) as e:
                raise CompletionWriteError(source.key, list(row_ids), str(e)) from e

            return result.rowcount

    async def validate_source(self, source: SourceDescriptor) -> None:
        query = text("""
            SELECT column_name, data_type
            FROM information_schema.columns
            WHERE table_schema = :namespace AND table_name = :table
        """)
        params = {"namespace": source.namespace, "table": source.table}

        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, params)
            column_types = {row[0]: row[1] for row in result.fetchall()}

        _check_columns(source, set(column_types))

        data_type = column_types[source.completion_column]
        if source.completion_marker is CompletionMarker.BOOLEAN:
            matches = data_type == "boolean"
        else:
            matches = data_type.startswith("timestamp")
        if not matches:
            raise ConfigurationError(
                f"Completion column {source.completion_column} of {source.key} has type "
                f"{data_type}, expected a {source.completion_marker.value} column"
            )

    async def ping(self) -> None:
        async with execute_with_connection(self.conn, transactional=False) as conn:
            await conn.execute(text("SELECT 1"))


class SQLiteOutboxRepository:
    """
    SQLite implementation of the outbox repository.

    SQLite has no schemas, so ``source.namespace`` only contributes to the
    source identity; the table is looked up by name in the connected database.

    SQLite-specific adaptations:
    - Timestamps are written as ISO 8601 TEXT
    - Boolean markers are INTEGER 0/1, so "not complete" is ``IS NULL OR = 0``

    Example:
        >>> async with aiosqlite.connect("app.db") as db:
        ...     repo = SQLiteOutboxRepository(db)
        ...     rows = await repo.fetch_batch(source)
    """

    def __init__(
        self,
        connection: "aiosqlite.Connection",
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._connection = connection

    @staticmethod
    def _pending_predicate(source: SourceDescriptor) -> str:
        column = quote_identifier(source.completion_column)
        if source.completion_marker is CompletionMarker.BOOLEAN:
            return f"({column} IS NULL OR {column} = 0)"
        return f"{column} IS NULL"

    async def fetch_batch(self, source: SourceDescriptor) -> list[OutboxRow]:
        with self._tracer.span(
            "outboxrelay.outbox.fetch_batch",
            {
                ATTR_SOURCE: source.key,
                ATTR_BATCH_SIZE: source.batch_size,
                ATTR_DB_SYSTEM: "sqlite",
                ATTR_DB_OPERATION: "SELECT",
            },
        ):
            try:
                cursor = await self._connection.execute(
                    f"""
                    SELECT *
                    FROM {quote_identifier(source.table)}
                    WHERE {self._pending_predicate(source)}
                    ORDER BY created_at, id
                    LIMIT ?
                    """,
                    (source.batch_size,),
                )
                columns = [description[0] for description in cursor.description]
                records = await cursor.fetchall()
            except _DATA_ACCESS_ERRORS + (sqlite3.Error,) as e:
                raise OutboxReadError(source.key, str(e)) from e
            return _map_rows((dict(zip(columns, record)) for record in records), source)

    async def mark_completed(self, source: SourceDescriptor, row_ids: Sequence[Any]) -> int:
        if not row_ids:
            return 0

        with self._tracer.span(
            "outboxrelay.outbox.mark_completed",
            {
                ATTR_SOURCE: source.key,
                ATTR_ROW_COUNT: len(row_ids),
                ATTR_DB_SYSTEM: "sqlite",
                ATTR_DB_OPERATION: "UPDATE",
            },
        ):
            column = quote_identifier(source.completion_column)
            if source.completion_marker is CompletionMarker.BOOLEAN:
                value: Any = 1
            else:
                value = datetime.now(UTC).isoformat()
            placeholders = ", ".join("?" for _ in row_ids)

            try:
                cursor = await self._connection.execute(
                    f"""
                    UPDATE {quote_identifier(source.table)}
                    SET {column} = ?
                    WHERE id IN ({placeholders})
                      AND {self._pending_predicate(source)}
                    """,
                    (value, *row_ids),
                )
                await self._connection.commit()
            except (OSError, sqlite3.Error) as e:
                raise CompletionWriteError(source.key, list(row_ids), str(e)) from e

            return cursor.rowcount

    async def validate_source(self, source: SourceDescriptor) -> None:
        cursor = await self._connection.execute(
            f"PRAGMA table_info({quote_identifier(source.table)})"
        )
        columns = {row[1] for row in await cursor.fetchall()}
        _check_columns(source, columns)

    async def ping(self) -> None:
        await self._connection.execute("SELECT 1")


class InMemoryOutboxRepository:
    """
    In-memory implementation of the outbox repository for testing.

    Tables are keyed by source key and created on first insert. Completion
    state is held beside the rows, which stay immutable.

    Example:
        >>> repo = InMemoryOutboxRepository()
        >>> repo.add_rows(source, row1, row2)
        >>> rows = await repo.fetch_batch(source)
        >>> await repo.mark_completed(source, [rows[0].id])
        1
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._rows: dict[str, dict[Any, OutboxRow]] = {}
        self._completed: dict[str, dict[Any, datetime]] = {}
        self._lock: asyncio.Lock = asyncio.Lock()

        # Failure injection for tests
        self.read_error: Exception | None = None
        self.write_error: Exception | None = None
        self.available: bool = True

        self.fetch_calls = 0
        self.mark_calls = 0

    def create_table(self, source: SourceDescriptor) -> None:
        """Create an empty table for a source (no-op if it exists)."""
        self._rows.setdefault(source.key, {})
        self._completed.setdefault(source.key, {})

    def add_rows(self, source: SourceDescriptor, *rows: OutboxRow) -> None:
        """Insert rows as a producing service would."""
        self.create_table(source)
        for row in rows:
            self._rows[source.key][row.id] = row

    def is_completed(self, source: SourceDescriptor, row_id: Any) -> bool:
        return row_id in self._completed.get(source.key, {})

    def completed_at(self, source: SourceDescriptor, row_id: Any) -> datetime | None:
        return self._completed.get(source.key, {}).get(row_id)

    def row_count(self, source: SourceDescriptor) -> int:
        return len(self._rows.get(source.key, {}))

    async def fetch_batch(self, source: SourceDescriptor) -> list[OutboxRow]:
        with self._tracer.span(
            "outboxrelay.outbox.fetch_batch",
            {
                ATTR_SOURCE: source.key,
                ATTR_BATCH_SIZE: source.batch_size,
                ATTR_DB_SYSTEM: "memory",
            },
        ):
            async with self._lock:
                self.fetch_calls += 1
                if self.read_error is not None:
                    raise OutboxReadError(source.key, str(self.read_error)) from self.read_error

                completed = self._completed.get(source.key, {})
                pending = [
                    row
                    for row_id, row in self._rows.get(source.key, {}).items()
                    if row_id not in completed
                ]
                pending.sort(key=lambda row: (row.created_at, row.id))
                return pending[: source.batch_size]

    async def mark_completed(self, source: SourceDescriptor, row_ids: Sequence[Any]) -> int:
        if not row_ids:
            return 0

        with self._tracer.span(
            "outboxrelay.outbox.mark_completed",
            {
                ATTR_SOURCE: source.key,
                ATTR_ROW_COUNT: len(row_ids),
                ATTR_DB_SYSTEM: "memory",
            },
        ):
            async with self._lock:
                self.mark_calls += 1
                if self.write_error is not None:
                    raise CompletionWriteError(
                        source.key, list(row_ids), str(self.write_error)
                    ) from self.write_error

                rows = self._rows.get(source.key, {})
                completed = self._completed.setdefault(source.key, {})
                now = datetime.now(UTC)
                updated = 0
                for row_id in row_ids:
                    if row_id in rows and row_id not in completed:
                        completed[row_id] = now
                        updated += 1
                return updated

    async def validate_source(self, source: SourceDescriptor) -> None:
        if source.key not in self._rows:
            raise ConfigurationError(f"Outbox table {source.key} does not exist")

    async def ping(self) -> None:
        if not self.available:
            raise ConnectionError("in-memory outbox is unavailable")


__all__ = [
    "OutboxRow",
    "OutboxReader",
    "CompletionWriter",
    "OutboxRepository",
    "PostgreSQLOutboxRepository",
    "SQLiteOutboxRepository",
    "InMemoryOutboxRepository",
    "REQUIRED_COLUMNS",
    "row_from_mapping",
]
