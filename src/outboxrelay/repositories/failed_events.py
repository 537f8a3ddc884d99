"""
Failed-events ledger for rows the broker would not accept.

When a row exhausts its publish retries, the relay records it in
``outbox_relay.failed_events`` for investigation and alerting. The ledger is
keyed by ``(source_schema, source_table, original_event_id)``: a row that
keeps failing across poll cycles has one entry whose ``failure_count`` grows.

Recording a failure never completes the source row. It remains a candidate
and is retried on every subsequent poll.
"""

import asyncio
import json
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from outboxrelay.config import SourceDescriptor
from outboxrelay.exceptions import RelayStateError
from outboxrelay.observability import Tracer, create_tracer
from outboxrelay.observability.attributes import (
    ATTR_DB_SYSTEM,
    ATTR_ERROR_TYPE,
    ATTR_EVENT_TYPE,
    ATTR_ROW_ID,
    ATTR_SOURCE,
)
from outboxrelay.repositories._connection import execute_with_connection
from outboxrelay.repositories.outbox import OutboxRow

# Errors from the engine or the network, raised as RelayStateError
_STORAGE_ERRORS: tuple[type[Exception], ...] = (SQLAlchemyError, OSError, asyncio.TimeoutError)

FAILED_EVENTS_DDL = (
    "CREATE SCHEMA IF NOT EXISTS outbox_relay",
    """
    CREATE TABLE IF NOT EXISTS outbox_relay.failed_events (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        original_event_id TEXT NOT NULL,
        source_schema VARCHAR(100) NOT NULL,
        source_table VARCHAR(100) NOT NULL,
        event_type VARCHAR(100) NOT NULL,
        payload JSONB NOT NULL,
        failure_reason TEXT NOT NULL,
        failure_count INTEGER NOT NULL DEFAULT 1,
        first_failed_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_failed_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (source_schema, source_table, original_event_id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_failed_events_event_type
        ON outbox_relay.failed_events (event_type)
    """,
)


@dataclass(frozen=True)
class FailedEvent:
    """
    One entry of the failed-events ledger.

    Attributes:
        original_event_id: Id of the source row, as text
        source_schema: Namespace of the source
        source_table: Table of the source
        event_type: Event type of the row
        payload: Event payload
        failure_reason: Reason given by the most recent failure
        failure_count: Number of poll cycles in which the row failed
        first_failed_at: When the row first failed
        last_failed_at: When the row most recently failed
    """

    original_event_id: str
    source_schema: str
    source_table: str
    event_type: str
    payload: dict[str, Any]
    failure_reason: str
    failure_count: int
    first_failed_at: datetime
    last_failed_at: datetime

    @property
    def source_key(self) -> str:
        return f"{self.source_schema}.{self.source_table}"


@runtime_checkable
class FailedEventRepository(Protocol):
    """Protocol for the failed-events ledger."""

    async def record_failure(self, source: SourceDescriptor, row: OutboxRow, reason: str) -> None:
        """
        Record that a row could not be published.

        Creates the entry on first failure; afterwards increments
        ``failure_count`` and updates ``failure_reason`` and ``last_failed_at``.
        """
        ...

    async def get_failure(self, source: SourceDescriptor, row_id: Any) -> FailedEvent | None:
        """Return the ledger entry for a source row, or None."""
        ...

    async def list_failures(
        self,
        source: SourceDescriptor | None = None,
        limit: int = 100,
    ) -> list[FailedEvent]:
        """List entries, most recently failed first, optionally for one source."""
        ...


def _payload(value: Any) -> dict[str, Any]:
    if isinstance(value, (str, bytes, bytearray)):
        return json.loads(value)
    return value


class PostgreSQLFailedEventRepository:
    """
    PostgreSQL implementation of the failed-events ledger.

    Example:
        >>> repo = PostgreSQLFailedEventRepository(engine)
        >>> await repo.record_failure(source, row, "broker rejected message")
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the failed-events repository.

        Args:
            conn: Database connection or engine
            tracer: Optional tracer for tracing (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.conn = conn

    async def create_tables(self) -> None:
        """Create the ``outbox_relay`` schema and ledger table if missing."""
        try:
            async with execute_with_connection(self.conn, transactional=True) as conn:
                for statement in FAILED_EVENTS_DDL:
                    await conn.execute(text(statement))
        except _STORAGE_ERRORS as e:
            raise RelayStateError(f"Failed to create failed_events table: {e}") from e

    async def record_failure(self, source: SourceDescriptor, row: OutboxRow, reason: str) -> None:
        with self._tracer.span(
            "outboxrelay.failed_events.record",
            {
                ATTR_SOURCE: source.key,
                ATTR_ROW_ID: str(row.id),
                ATTR_EVENT_TYPE: row.event_type,
                ATTR_ERROR_TYPE: reason[:100],
                ATTR_DB_SYSTEM: "postgresql",
            },
        ):
            now = datetime.now(UTC)
            query = text("""
                INSERT INTO outbox_relay.failed_events
                    (original_event_id, source_schema, source_table, event_type,
                     payload, failure_reason, failure_count,
                     first_failed_at, last_failed_at)
                VALUES (:original_event_id, :source_schema, :source_table, :event_type,
                        CAST(:payload AS JSONB), :failure_reason, 1,
                        :now, :now)
                ON CONFLICT (source_schema, source_table, original_event_id) DO UPDATE
                SET failure_count = outbox_relay.failed_events.failure_count + 1,
                    failure_reason = EXCLUDED.failure_reason,
                    last_failed_at = EXCLUDED.last_failed_at
            """)
            params = {
                "original_event_id": str(row.id),
                "source_schema": source.namespace,
                "source_table": source.table,
                "event_type": row.event_type,
                "payload": json.dumps(row.payload, default=str),
                "failure_reason": reason,
                "now": now,
            }

            try:
                async with execute_with_connection(self.conn, transactional=True) as conn:
                    await conn.execute(query, params)
            except _STORAGE_ERRORS as e:
                raise RelayStateError(
                    f"Failed to record failure of {source.key} row {row.id}: {e}"
                ) from e

    async def get_failure(self, source: SourceDescriptor, row_id: Any) -> FailedEvent | None:
        query = text("""
            SELECT original_event_id, source_schema, source_table, event_type,
                   payload, failure_reason, failure_count,
                   first_failed_at, last_failed_at
            FROM outbox_relay.failed_events
            WHERE source_schema = :source_schema
              AND source_table = :source_table
              AND original_event_id = :original_event_id
        """)
        params = {
            "source_schema": source.namespace,
            "source_table": source.table,
            "original_event_id": str(row_id),
        }

        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, params)
            row = result.fetchone()

        return self._row_to_entry(row) if row else None

    async def list_failures(
        self,
        source: SourceDescriptor | None = None,
        limit: int = 100,
    ) -> list[FailedEvent]:
        where = ""
        params: dict[str, Any] = {"limit": limit}
        if source is not None:
            where = "WHERE source_schema = :source_schema AND source_table = :source_table"
            params["source_schema"] = source.namespace
            params["source_table"] = source.table

        query = text(f"""
            SELECT original_event_id, source_schema, source_table, event_type,
                   payload, failure_reason, failure_count,
                   first_failed_at, last_failed_at
            FROM outbox_relay.failed_events
            {where}
            ORDER BY last_failed_at DESC
            LIMIT :limit
        """)

        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query, params)
            rows = result.fetchall()

        return [self._row_to_entry(row) for row in rows]

    @staticmethod
    def _row_to_entry(row: Any) -> FailedEvent:
        return FailedEvent(
            original_event_id=row[0],
            source_schema=row[1],
            source_table=row[2],
            event_type=row[3],
            payload=_payload(row[4]),
            failure_reason=row[5],
            failure_count=row[6],
            first_failed_at=row[7],
            last_failed_at=row[8],
        )


class InMemoryFailedEventRepository:
    """
    In-memory implementation of the failed-events ledger for testing.

    Example:
        >>> repo = InMemoryFailedEventRepository()
        >>> await repo.record_failure(source, row, "rejected")
        >>> (await repo.get_failure(source, row.id)).failure_count
        1
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._entries: dict[tuple[str, str, str], FailedEvent] = {}
        self._lock: asyncio.Lock = asyncio.Lock()

    async def record_failure(self, source: SourceDescriptor, row: OutboxRow, reason: str) -> None:
        with self._tracer.span(
            "outboxrelay.failed_events.record",
            {
                ATTR_SOURCE: source.key,
                ATTR_ROW_ID: str(row.id),
                ATTR_EVENT_TYPE: row.event_type,
                ATTR_DB_SYSTEM: "memory",
            },
        ):
            key = (source.namespace, source.table, str(row.id))
            now = datetime.now(UTC)
            async with self._lock:
                existing = self._entries.get(key)
                if existing is None:
                    self._entries[key] = FailedEvent(
                        original_event_id=str(row.id),
                        source_schema=source.namespace,
                        source_table=source.table,
                        event_type=row.event_type,
                        payload=dict(row.payload),
                        failure_reason=reason,
                        failure_count=1,
                        first_failed_at=now,
                        last_failed_at=now,
                    )
                else:
                    self._entries[key] = replace(
                        existing,
                        failure_reason=reason,
                        failure_count=existing.failure_count + 1,
                        last_failed_at=now,
                    )

    async def get_failure(self, source: SourceDescriptor, row_id: Any) -> FailedEvent | None:
        async with self._lock:
            return self._entries.get((source.namespace, source.table, str(row_id)))

    async def list_failures(
        self,
        source: SourceDescriptor | None = None,
        limit: int = 100,
    ) -> list[FailedEvent]:
        async with self._lock:
            entries = [
                entry
                for entry in self._entries.values()
                if source is None or entry.source_key == source.key
            ]
        entries.sort(key=lambda entry: entry.last_failed_at, reverse=True)
        return entries[:limit]

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()


__all__ = [
    "FailedEvent",
    "FailedEventRepository",
    "PostgreSQLFailedEventRepository",
    "InMemoryFailedEventRepository",
    "FAILED_EVENTS_DDL",
]
