"""
Event publisher: turns an outbox row into a broker message and delivers it.

The publisher never raises for broker failures. Transient errors are retried
with exponential backoff; when retries run out, or the broker refuses the
message outright, the result is ``PublishOutcome.failed(reason)`` and the row
stays unpublished for a later cycle.
"""

import json
import logging
from dataclasses import dataclass

from opentelemetry.propagate import inject
from opentelemetry.trace import Status, StatusCode

from outboxrelay.bus.interface import BrokerClient, BrokerMessage
from outboxrelay.config import SourceDescriptor
from outboxrelay.exceptions import PublishError
from outboxrelay.observability import SpanKindEnum, Tracer, create_tracer
from outboxrelay.observability.attributes import (
    ATTR_AGGREGATE_ID,
    ATTR_AGGREGATE_TYPE,
    ATTR_EVENT_TYPE,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_OPERATION,
    ATTR_MESSAGING_SYSTEM,
    ATTR_ROW_ID,
    ATTR_SOURCE,
)
from outboxrelay.repositories.outbox import OutboxRow
from outboxrelay.retry import (
    TRANSIENT_EXCEPTIONS,
    RetryConfig,
    RetryError,
    is_retryable_exception,
    retry_async,
)

PUBLISH_RETRYABLE_EXCEPTIONS = TRANSIENT_EXCEPTIONS + (PublishError,)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishOutcome:
    """
    Result of publishing one row.

    Attributes:
        success: True if the broker acknowledged the message
        reason: Why the publish failed (None on success)
    """

    success: bool
    reason: str | None = None

    @classmethod
    def delivered(cls) -> "PublishOutcome":
        return cls(success=True)

    @classmethod
    def failed(cls, reason: str) -> "PublishOutcome":
        return cls(success=False, reason=reason)


def build_headers(source: SourceDescriptor, row: OutboxRow) -> dict[str, str]:
    """Message headers for a row; optional fields are omitted when absent."""
    headers = {
        "event_id": str(row.id),
        "event_type": row.event_type,
        "aggregate_type": row.aggregate_type,
        "aggregate_id": row.aggregate_id,
        "created_at": row.created_at.isoformat(),
        "source": source.key,
    }
    if row.correlation_id:
        headers["correlation_id"] = row.correlation_id
    return headers


class EventPublisher:
    """
    Publishes outbox rows to the broker.

    Example:
        >>> publisher = EventPublisher(broker, RetryConfig(max_retries=3))
        >>> outcome = await publisher.publish(source, row)
        >>> outcome.success
        True
    """

    def __init__(
        self,
        broker: BrokerClient,
        retry_config: RetryConfig | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the publisher.

        Args:
            broker: Client used to send messages
            retry_config: Backoff for transient errors (defaults to RetryConfig())
            tracer: Optional tracer for tracing (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._broker = broker
        self._retry_config = retry_config or RetryConfig()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    def build_message(self, source: SourceDescriptor, row: OutboxRow) -> BrokerMessage:
        """Map a row onto a broker message: topic from the source template, key = aggregate id."""
        return BrokerMessage(
            topic=source.topic_for(row),
            key=row.aggregate_id,
            body=json.dumps(row.payload, default=str).encode("utf-8"),
            headers=build_headers(source, row),
        )

    async def publish(self, source: SourceDescriptor, row: OutboxRow) -> PublishOutcome:
        message = self.build_message(source, row)

        with self._tracer.span_with_kind(
            "outboxrelay.publish",
            SpanKindEnum.PRODUCER,
            {
                ATTR_SOURCE: source.key,
                ATTR_ROW_ID: str(row.id),
                ATTR_EVENT_TYPE: row.event_type,
                ATTR_AGGREGATE_ID: row.aggregate_id,
                ATTR_AGGREGATE_TYPE: row.aggregate_type,
                ATTR_MESSAGING_SYSTEM: "kafka",
                ATTR_MESSAGING_DESTINATION: message.topic,
                ATTR_MESSAGING_OPERATION: "publish",
            },
        ) as span:
            if self._enable_tracing:
                inject(message.headers)

            reason = await self._send(message)

            if reason is None:
                return PublishOutcome.delivered()

            if span is not None:
                span.set_status(Status(StatusCode.ERROR, reason))

            logger.warning(
                "Failed to publish outbox row",
                extra={
                    "source": source.key,
                    "row_id": str(row.id),
                    "event_type": row.event_type,
                    "topic": message.topic,
                    "reason": reason,
                },
            )
            return PublishOutcome.failed(reason)

    async def _send(self, message: BrokerMessage) -> str | None:
        """Send with retries; returns the failure reason, or None once acknowledged."""

        async def attempt() -> PublishError | None:
            try:
                await self._broker.send(message)
            except PublishError as e:
                if not is_retryable_exception(e, PUBLISH_RETRYABLE_EXCEPTIONS):
                    return e
                raise
            return None

        try:
            rejected = await retry_async(
                attempt,
                config=self._retry_config,
                retryable_exceptions=PUBLISH_RETRYABLE_EXCEPTIONS,
                operation_name=f"publish {message.topic}",
            )
        except RetryError as e:
            return f"retries exhausted after {e.attempts} attempts: {e.last_error}"
        except Exception as e:
            logger.error(
                "Unexpected broker error",
                extra={"topic": message.topic, "error": str(e)},
                exc_info=True,
            )
            return f"{type(e).__name__}: {e}"

        if rejected is not None:
            return str(rejected)
        return None


__all__ = ["EventPublisher", "PublishOutcome", "build_headers"]
