"""
Relay state repository for per-source bookkeeping.

Each source has one row in ``outbox_relay.relay_state`` recording when it was
last polled successfully, the last row it published and how many rows it has
published in total. The relay reads the poll times at startup to seed
readiness, so a restarted relay reports stale sources correctly instead of
starting from a blank slate.
"""

import asyncio
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
    ATTR_ROW_COUNT,
    ATTR_SOURCE,
)
from outboxrelay.repositories._connection import execute_with_connection

# Errors from the engine or the network, raised as RelayStateError
_STORAGE_ERRORS: tuple[type[Exception], ...] = (SQLAlchemyError, OSError, asyncio.TimeoutError)

RELAY_STATE_DDL = (
    "CREATE SCHEMA IF NOT EXISTS outbox_relay",
    """
    CREATE TABLE IF NOT EXISTS outbox_relay.relay_state (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        schema_name VARCHAR(100) NOT NULL,
        table_name VARCHAR(100) NOT NULL,
        last_poll_time TIMESTAMPTZ,
        last_published_event_id TEXT,
        total_events_published BIGINT NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (schema_name, table_name)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_relay_state_last_poll
        ON outbox_relay.relay_state (last_poll_time)
    """,
)


@dataclass(frozen=True)
class RelayState:
    """
    Persisted state of one source.

    Attributes:
        schema_name: Source namespace
        table_name: Source table
        last_poll_time: When the last successful poll cycle finished (None if never)
        last_published_event_id: Id of the last row published, as text
        total_events_published: Rows published over the relay's lifetime
    """

    schema_name: str
    table_name: str
    last_poll_time: datetime | None = None
    last_published_event_id: str | None = None
    total_events_published: int = 0

    @property
    def source_key(self) -> str:
        return f"{self.schema_name}.{self.table_name}"


@runtime_checkable
class RelayStateRepository(Protocol):
    """Protocol for relay state storage."""

    async def ensure_state(self, source: SourceDescriptor) -> None:
        """Create the state row for a source if it does not exist."""
        ...

    async def record_poll(
        self,
        source: SourceDescriptor,
        polled_at: datetime,
        last_event_id: Any | None = None,
    ) -> None:
        """
        Record a successful poll cycle.

        Args:
            source: Polled source
            polled_at: When the cycle finished
            last_event_id: Id of the last row published in the cycle, if any
        """
        ...

    async def increment_published(self, source: SourceDescriptor, count: int) -> None:
        """Add ``count`` to the source's published total."""
        ...

    async def get_state(self, source: SourceDescriptor) -> RelayState | None:
        """Return the state row for a source, or None."""
        ...

    async def load_last_poll_times(self) -> dict[str, datetime]:
        """Return the last successful poll time of every source that has one, by source key."""
        ...


class PostgreSQLRelayStateRepository:
    """
    PostgreSQL implementation of the relay state repository.

    Stores state in ``outbox_relay.relay_state``. Database errors are raised
    as ``RelayStateError``.

    Example:
        >>> repo = PostgreSQLRelayStateRepository(engine)
        >>> await repo.create_tables()
        >>> await repo.ensure_state(source)
        >>> await repo.record_poll(source, datetime.now(UTC))
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the relay state repository.

        Args:
            conn: Database connection or engine
            tracer: Optional tracer for tracing (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.conn = conn

    async def create_tables(self) -> None:
        """Create the ``outbox_relay`` schema and state table if missing."""
        try:
            async with execute_with_connection(self.conn, transactional=True) as conn:
                for statement in RELAY_STATE_DDL:
                    await conn.execute(text(statement))
        except _STORAGE_ERRORS as e:
            raise RelayStateError(f"Failed to create relay_state table: {e}") from e

    async def ensure_state(self, source: SourceDescriptor) -> None:
        with self._tracer.span(
            "outboxrelay.relay_state.ensure",
            {ATTR_SOURCE: source.key, ATTR_DB_SYSTEM: "postgresql"},
        ):
            query = text("""
                INSERT INTO outbox_relay.relay_state (schema_name, table_name)
                VALUES (:schema_name, :table_name)
                ON CONFLICT (schema_name, table_name) DO NOTHING
            """)
            params = {"schema_name": source.namespace, "table_name": source.table}
            await self._execute(query, params, source)

    async def record_poll(
        self,
        source: SourceDescriptor,
        polled_at: datetime,
        last_event_id: Any | None = None,
    ) -> None:
        with self._tracer.span(
            "outboxrelay.relay_state.record_poll",
            {ATTR_SOURCE: source.key, ATTR_DB_SYSTEM: "postgresql"},
        ):
            query = text("""
                UPDATE outbox_relay.relay_state
                SET last_poll_time = :polled_at,
                    last_published_event_id = COALESCE(
                        CAST(:last_event_id AS TEXT), last_published_event_id
                    ),
                    updated_at = :polled_at
                WHERE schema_name = :schema_name AND table_name = :table_name
            """)
            params = {
                "polled_at": polled_at,
                "last_event_id": str(last_event_id) if last_event_id is not None else None,
                "schema_name": source.namespace,
                "table_name": source.table,
            }
            await self._execute(query, params, source)

    async def increment_published(self, source: SourceDescriptor, count: int) -> None:
        if count <= 0:
            return

        with self._tracer.span(
            "outboxrelay.relay_state.increment_published",
            {ATTR_SOURCE: source.key, ATTR_ROW_COUNT: count, ATTR_DB_SYSTEM: "postgresql"},
        ):
            query = text("""
                UPDATE outbox_relay.relay_state
                SET total_events_published = total_events_published + :count,
                    updated_at = :now
                WHERE schema_name = :schema_name AND table_name = :table_name
            """)
            params = {
                "count": count,
                "now": datetime.now(UTC),
                "schema_name": source.namespace,
                "table_name": source.table,
            }
            await self._execute(query, params, source)

    async def get_state(self, source: SourceDescriptor) -> RelayState | None:
        query = text("""
            SELECT schema_name, table_name, last_poll_time,
                   last_published_event_id, total_events_published
            FROM outbox_relay.relay_state
            WHERE schema_name = :schema_name AND table_name = :table_name
        """)
        params = {"schema_name": source.namespace, "table_name": source.table}

        try:
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(query, params)
                row = result.fetchone()
        except _STORAGE_ERRORS as e:
            raise RelayStateError(f"Failed to read relay state for {source.key}: {e}") from e

        if row is None:
            return None
        return RelayState(
            schema_name=row[0],
            table_name=row[1],
            last_poll_time=row[2],
            last_published_event_id=row[3],
            total_events_published=row[4] or 0,
        )

    async def load_last_poll_times(self) -> dict[str, datetime]:
        query = text("""
            SELECT schema_name, table_name, last_poll_time
            FROM outbox_relay.relay_state
            WHERE last_poll_time IS NOT NULL
        """)

        try:
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(query)
                rows = result.fetchall()
        except _STORAGE_ERRORS as e:
            raise RelayStateError(f"Failed to load relay state: {e}") from e

        return {f"{row[0]}.{row[1]}": row[2] for row in rows}

    async def _execute(
        self,
        query: Any,
        params: dict[str, Any],
        source: SourceDescriptor,
    ) -> None:
        try:
            async with execute_with_connection(self.conn, transactional=True) as conn:
                await conn.execute(query, params)
        except _STORAGE_ERRORS as e:
            raise RelayStateError(f"Failed to write relay state for {source.key}: {e}") from e


class InMemoryRelayStateRepository:
    """
    In-memory implementation of the relay state repository for testing.

    Example:
        >>> repo = InMemoryRelayStateRepository()
        >>> await repo.ensure_state(source)
        >>> (await repo.get_state(source)).total_events_published
        0
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._states: dict[str, RelayState] = {}
        self._lock: asyncio.Lock = asyncio.Lock()

    async def ensure_state(self, source: SourceDescriptor) -> None:
        async with self._lock:
            self._states.setdefault(
                source.key,
                RelayState(schema_name=source.namespace, table_name=source.table),
            )

    async def record_poll(
        self,
        source: SourceDescriptor,
        polled_at: datetime,
        last_event_id: Any | None = None,
    ) -> None:
        async with self._lock:
            state = self._states.get(source.key)
            if state is None:
                return
            self._states[source.key] = replace(
                state,
                last_poll_time=polled_at,
                last_published_event_id=(
                    str(last_event_id)
                    if last_event_id is not None
                    else state.last_published_event_id
                ),
            )

    async def increment_published(self, source: SourceDescriptor, count: int) -> None:
        if count <= 0:
            return
        async with self._lock:
            state = self._states.get(source.key)
            if state is None:
                return
            self._states[source.key] = replace(
                state, total_events_published=state.total_events_published + count
            )

    async def get_state(self, source: SourceDescriptor) -> RelayState | None:
        async with self._lock:
            return self._states.get(source.key)

    async def load_last_poll_times(self) -> dict[str, datetime]:
        async with self._lock:
            return {
                key: state.last_poll_time
                for key, state in self._states.items()
                if state.last_poll_time is not None
            }

    def seed(self, state: RelayState) -> None:
        """Install a state row directly, as if left by a previous run."""
        self._states[state.source_key] = state


__all__ = [
    "RelayState",
    "RelayStateRepository",
    "PostgreSQLRelayStateRepository",
    "InMemoryRelayStateRepository",
    "RELAY_STATE_DDL",
]
