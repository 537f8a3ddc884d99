"""
Repositories for the outbox relay.

- Outbox: reads unpublished rows from a source table and marks them completed
- Relay state: per-source poll bookkeeping in ``outbox_relay.relay_state``
- Failed events: ledger of rows the broker would not accept

Each repository comes as a protocol with PostgreSQL and in-memory
implementations; the outbox also has a SQLite implementation.
"""

from outboxrelay.repositories.failed_events import (
    FailedEvent,
    FailedEventRepository,
    InMemoryFailedEventRepository,
    PostgreSQLFailedEventRepository,
)
from outboxrelay.repositories.outbox import (
    CompletionWriter,
    InMemoryOutboxRepository,
    OutboxReader,
    OutboxRepository,
    OutboxRow,
    PostgreSQLOutboxRepository,
    SQLiteOutboxRepository,
)
from outboxrelay.repositories.relay_state import (
    InMemoryRelayStateRepository,
    PostgreSQLRelayStateRepository,
    RelayState,
    RelayStateRepository,
)

__all__ = [
    # Outbox
    "OutboxRow",
    "OutboxReader",
    "CompletionWriter",
    "OutboxRepository",
    "PostgreSQLOutboxRepository",
    "SQLiteOutboxRepository",
    "InMemoryOutboxRepository",
    # Relay state
    "RelayState",
    "RelayStateRepository",
    "PostgreSQLRelayStateRepository",
    "InMemoryRelayStateRepository",
    # Failed events
    "FailedEvent",
    "FailedEventRepository",
    "PostgreSQLFailedEventRepository",
    "InMemoryFailedEventRepository",
]
