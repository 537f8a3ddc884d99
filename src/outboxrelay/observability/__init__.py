"""
Observability utilities for outboxrelay.

This module provides the composition-based tracer and the standard attribute
names used by spans and metrics across relay components.

Example:
    >>> from outboxrelay.observability import create_tracer
    >>>
    >>> class MyPublisher:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
"""

from outboxrelay.observability.attributes import (
    ATTR_AGGREGATE_ID,
    ATTR_AGGREGATE_TYPE,
    ATTR_BATCH_SIZE,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_ERROR_TYPE,
    ATTR_EVENT_TYPE,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_OPERATION,
    ATTR_MESSAGING_SYSTEM,
    ATTR_ROW_COUNT,
    ATTR_ROW_ID,
    ATTR_ROWS_COMPLETED,
    ATTR_ROWS_FAILED,
    ATTR_ROWS_PUBLISHED,
    ATTR_SOURCE,
    ATTR_SOURCE_NAMESPACE,
    ATTR_SOURCE_TABLE,
)
from outboxrelay.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    SpanKindEnum,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer (composition-based API)
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "SpanKindEnum",
    "create_tracer",
    # Attributes - Source
    "ATTR_SOURCE",
    "ATTR_SOURCE_NAMESPACE",
    "ATTR_SOURCE_TABLE",
    "ATTR_BATCH_SIZE",
    # Attributes - Row
    "ATTR_ROW_ID",
    "ATTR_ROW_COUNT",
    "ATTR_EVENT_TYPE",
    "ATTR_AGGREGATE_ID",
    "ATTR_AGGREGATE_TYPE",
    # Attributes - Cycle
    "ATTR_ROWS_PUBLISHED",
    "ATTR_ROWS_FAILED",
    "ATTR_ROWS_COMPLETED",
    "ATTR_ERROR_TYPE",
    # Attributes - Database
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
    # Attributes - Messaging
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_MESSAGING_DESTINATION",
    "ATTR_MESSAGING_OPERATION",
]
