"""
Standard span and metric attributes for outboxrelay.

This module defines attribute constants used across relay components for
consistent span naming and metrics labeling. These follow OpenTelemetry
semantic conventions where applicable.

Example:
    >>> from outboxrelay.observability.attributes import (
    ...     ATTR_SOURCE,
    ...     ATTR_EVENT_TYPE,
    ... )
    >>>
    >>> with tracer.span(
    ...     "outboxrelay.publish",
    ...     {ATTR_SOURCE: source.key, ATTR_EVENT_TYPE: row.event_type},
    ... ):
    ...     pass
"""

# =============================================================================
# Source Attributes
# =============================================================================

ATTR_SOURCE = "outboxrelay.source"
"""Source key in ``namespace.table`` form (string)."""

ATTR_SOURCE_NAMESPACE = "outboxrelay.source.namespace"
"""Namespace (database schema) owning the outbox table (string)."""

ATTR_SOURCE_TABLE = "outboxrelay.source.table"
"""Outbox table name (string)."""

ATTR_BATCH_SIZE = "outboxrelay.batch_size"
"""Maximum number of rows requested by a fetch (integer)."""

# =============================================================================
# Row / Event Attributes
# =============================================================================

ATTR_ROW_ID = "outboxrelay.row.id"
"""Identifier of the outbox row (string)."""

ATTR_ROW_COUNT = "outboxrelay.row.count"
"""Number of rows in an operation (integer)."""

ATTR_EVENT_TYPE = "outboxrelay.event.type"
"""Event type carried by the row (string)."""

ATTR_AGGREGATE_ID = "outboxrelay.aggregate.id"
"""Aggregate identifier, also the partition key (string)."""

ATTR_AGGREGATE_TYPE = "outboxrelay.aggregate.type"
"""Aggregate type name (string)."""

# =============================================================================
# Cycle Attributes
# =============================================================================

ATTR_ROWS_PUBLISHED = "outboxrelay.cycle.rows_published"
"""Rows the broker accepted during a cycle (integer)."""

ATTR_ROWS_FAILED = "outboxrelay.cycle.rows_failed"
"""Rows whose publish failed during a cycle (integer)."""

ATTR_ROWS_COMPLETED = "outboxrelay.cycle.rows_completed"
"""Rows whose completion marker was set during a cycle (integer)."""

ATTR_ERROR_TYPE = "error.type"
"""Failure reason or exception class name (string)."""

# =============================================================================
# Database Attributes (OpenTelemetry Semantic Conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g., 'postgresql', 'sqlite', 'memory')."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation name (e.g., 'SELECT', 'UPDATE')."""

# =============================================================================
# Messaging Attributes (OpenTelemetry Semantic Conventions)
# =============================================================================

ATTR_MESSAGING_SYSTEM = "messaging.system"
"""Messaging system identifier (e.g., 'kafka', 'memory')."""

ATTR_MESSAGING_DESTINATION = "messaging.destination.name"
"""Destination topic name."""

ATTR_MESSAGING_OPERATION = "messaging.operation"
"""Messaging operation type ('publish')."""

# =============================================================================
# Metric Label Keys
# =============================================================================

LABEL_NAMESPACE = "namespace"
LABEL_TABLE = "table"
LABEL_EVENT_TYPE = "event_type"
LABEL_REASON = "reason"


__all__ = [
    "ATTR_SOURCE",
    "ATTR_SOURCE_NAMESPACE",
    "ATTR_SOURCE_TABLE",
    "ATTR_BATCH_SIZE",
    "ATTR_ROW_ID",
    "ATTR_ROW_COUNT",
    "ATTR_EVENT_TYPE",
    "ATTR_AGGREGATE_ID",
    "ATTR_AGGREGATE_TYPE",
    "ATTR_ROWS_PUBLISHED",
    "ATTR_ROWS_FAILED",
    "ATTR_ROWS_COMPLETED",
    "ATTR_ERROR_TYPE",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_MESSAGING_DESTINATION",
    "ATTR_MESSAGING_OPERATION",
    "LABEL_NAMESPACE",
    "LABEL_TABLE",
    "LABEL_EVENT_TYPE",
    "LABEL_REASON",
]
