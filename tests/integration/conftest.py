"""
Shared pytest fixtures for integration tests.

This module provides PostgreSQL test infrastructure using testcontainers for
automatic container management, plus helpers to create outbox tables and
insert rows the way a producing service would.

If testcontainers or Docker is not available, tests are automatically skipped.
"""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator, Awaitable, Callable, Generator
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

import pytest

from outboxrelay.config import CompletionMarker, SourceDescriptor

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


# ============================================================================
# Testcontainers Detection
# ============================================================================

TESTCONTAINERS_AVAILABLE = False

try:
    from testcontainers.postgres import PostgresContainer

    TESTCONTAINERS_AVAILABLE = True
except ImportError:
    PostgresContainer = None  # type: ignore[assignment, misc]


def is_docker_available() -> bool:
    """Check if Docker is available for running containers."""
    import subprocess

    try:
        result = subprocess.run(
            ["docker", "info"],
            capture_output=True,
            timeout=5,
        )
        return result.returncode == 0
    except (subprocess.TimeoutExpired, OSError):
        return False


DOCKER_AVAILABLE = is_docker_available()


# ============================================================================
# Skip Conditions
# ============================================================================

skip_if_no_postgres_infra = pytest.mark.skipif(
    not (TESTCONTAINERS_AVAILABLE and DOCKER_AVAILABLE),
    reason="PostgreSQL test infrastructure not available",
)


# ============================================================================
# Outbox Table Helpers
# ============================================================================

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)


def outbox_table_statements(source: SourceDescriptor) -> list[str]:
    """DDL for an outbox table shaped like the ones producing services own."""
    if source.completion_marker is CompletionMarker.BOOLEAN:
        completion = f"{source.completion_column} BOOLEAN NOT NULL DEFAULT FALSE"
    else:
        completion = f"{source.completion_column} TIMESTAMPTZ"
    return [
        f"CREATE SCHEMA IF NOT EXISTS {source.namespace}",
        f"DROP TABLE IF EXISTS {source.namespace}.{source.table}",
        f"""
        CREATE TABLE {source.namespace}.{source.table} (
            id UUID PRIMARY KEY,
            aggregate_id VARCHAR(255) NOT NULL,
            aggregate_type VARCHAR(255) NOT NULL,
            event_type VARCHAR(255) NOT NULL,
            payload JSONB NOT NULL,
            correlation_id VARCHAR(255),
            created_at TIMESTAMPTZ NOT NULL,
            {completion}
        )
        """,
    ]


# ============================================================================
# Container Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def postgres_container() -> Generator[Any, None, None]:
    """
    Provide PostgreSQL container for integration tests.

    Container is shared across all tests in the session.
    """
    if not TESTCONTAINERS_AVAILABLE or not DOCKER_AVAILABLE:
        pytest.skip("PostgreSQL testcontainer not available")

    container = PostgresContainer("postgres:15")
    container.start()

    yield container

    container.stop()


@pytest.fixture(scope="session")
def postgres_connection_url(postgres_container: Any) -> str:
    """Get PostgreSQL connection URL from container."""
    # testcontainers returns psycopg2 URL, convert to asyncpg
    url = postgres_container.get_connection_url()
    return url.replace("postgresql://", "postgresql+asyncpg://").replace("psycopg2", "asyncpg")


@pytest.fixture
async def postgres_engine(postgres_connection_url: str) -> AsyncGenerator[AsyncEngine, None]:
    """Provide SQLAlchemy async engine connected to the PostgreSQL container."""
    from sqlalchemy import text
    from sqlalchemy.ext.asyncio import create_async_engine

    engine = create_async_engine(postgres_connection_url, echo=False, pool_size=5)

    yield engine

    async with engine.begin() as conn:
        await conn.execute(text("DROP SCHEMA IF EXISTS outbox_relay CASCADE"))
    await engine.dispose()


@pytest.fixture
def pg_source() -> SourceDescriptor:
    return SourceDescriptor(namespace="orders", batch_size=10, poll_interval_ms=50)


@pytest.fixture
def pg_boolean_source() -> SourceDescriptor:
    return SourceDescriptor(
        namespace="inventory",
        table="outbox",
        completion_column="published",
        completion_marker=CompletionMarker.BOOLEAN,
        batch_size=10,
        poll_interval_ms=50,
    )


@pytest.fixture
def create_outbox_table(
    postgres_engine: AsyncEngine,
) -> Callable[[SourceDescriptor], Awaitable[None]]:
    """Create (or recreate) the outbox table of a source."""
    from sqlalchemy import text

    async def _create(source: SourceDescriptor) -> None:
        async with postgres_engine.begin() as conn:
            for statement in outbox_table_statements(source):
                await conn.execute(text(statement))

    return _create


@pytest.fixture
def insert_outbox_row(postgres_engine: AsyncEngine) -> Callable[..., Awaitable[UUID]]:
    """
    Insert an unpublished row and return its id.

    Usage:
        row_id = await insert_outbox_row(source, "order.created", seconds=1)
    """
    from sqlalchemy import text

    async def _insert(
        source: SourceDescriptor,
        event_type: str = "order.created",
        seconds: int = 0,
        aggregate_id: str = "order-1",
        payload: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> UUID:
        row_id = uuid4()
        query = text(f"""
            INSERT INTO {source.namespace}.{source.table}
                (id, aggregate_id, aggregate_type, event_type, payload,
                 correlation_id, created_at)
            VALUES
                (:id, :aggregate_id, 'Order', :event_type, CAST(:payload AS JSONB),
                 :correlation_id, :created_at)
        """)
        async with postgres_engine.begin() as conn:
            await conn.execute(
                query,
                {
                    "id": row_id,
                    "aggregate_id": aggregate_id,
                    "event_type": event_type,
                    "payload": json.dumps(payload or {"seconds": seconds}),
                    "correlation_id": correlation_id,
                    "created_at": BASE_TIME + timedelta(seconds=seconds),
                },
            )
        return row_id

    return _insert


@pytest.fixture
def completion_value(postgres_engine: AsyncEngine) -> Callable[..., Awaitable[Any]]:
    """Read the completion column of one row."""
    from sqlalchemy import text

    async def _read(source: SourceDescriptor, row_id: UUID) -> Any:
        query = text(f"""
            SELECT {source.completion_column}
            FROM {source.namespace}.{source.table}
            WHERE id = :id
        """)
        async with postgres_engine.connect() as conn:
            result = await conn.execute(query, {"id": row_id})
            return result.scalar_one()

    return _read
