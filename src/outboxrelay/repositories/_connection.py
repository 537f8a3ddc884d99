"""
Connection helpers shared by the SQLAlchemy-backed repositories.

Repositories accept either an ``AsyncEngine`` (the relay's normal mode, one
pooled connection per operation) or an ``AsyncConnection`` supplied by the
caller (tests and callers that manage their own transaction).
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection ready for ``execute()`` calls.

    Args:
        conn: Database connection or engine
        transactional: With an engine, commit on exit (``begin``) when True,
            otherwise use a bare connection (``connect``). Has no effect when
            an ``AsyncConnection`` is passed; its owner manages the transaction.

    Example:
        >>> async with execute_with_connection(self.conn, transactional=False) as conn:
        ...     result = await conn.execute(select_query, params)
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        yield conn


def quote_identifier(name: str) -> str:
    """Double-quote an already validated identifier."""
    return f'"{name}"'


def qualified_table(namespace: str, table: str) -> str:
    """Return ``"namespace"."table"`` for use in a query."""
    return f"{quote_identifier(namespace)}.{quote_identifier(table)}"
