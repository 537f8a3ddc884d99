"""
outboxrelay - Transactional outbox relay.

Polls per-service outbox tables and publishes their rows to a message bus:

- Source descriptors: each outbox table's layout is configuration
- Poll -> publish -> acknowledge cycles, one asyncio task per source
- At-least-once delivery to Kafka (or an in-memory broker for tests)
- Liveness/readiness checks based on source freshness
- OpenTelemetry tracing and metrics
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("outboxrelay")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from outboxrelay.bus import (
    BrokerClient,
    BrokerMessage,
    InMemoryBrokerClient,
    KafkaBrokerClient,
    KafkaPublisherConfig,
)
from outboxrelay.config import (
    CompletionMarker,
    RelaySettings,
    SourceDescriptor,
    parse_schema_entry,
)
from outboxrelay.exceptions import (
    CompletionWriteError,
    ConfigurationError,
    OutboxReadError,
    OutboxRelayError,
    OutboxRowMappingError,
    PublishError,
    RelayStateError,
)
from outboxrelay.health import (
    HealthCheckResult,
    HealthIndicator,
    HealthStatus,
    ReadinessProbe,
    check_liveness,
)
from outboxrelay.metrics import RelayMetrics
from outboxrelay.poller import PollCycleResult, SourcePoller
from outboxrelay.publisher import EventPublisher, PublishOutcome
from outboxrelay.relay import OutboxRelay
from outboxrelay.repositories import (
    CompletionWriter,
    InMemoryOutboxRepository,
    OutboxReader,
    OutboxRepository,
    OutboxRow,
    PostgreSQLOutboxRepository,
    SQLiteOutboxRepository,
)
from outboxrelay.retry import RetryConfig
from outboxrelay.scheduler import RelayScheduler, SourceState
from outboxrelay.staleness import StalenessEntry, StalenessTracker

__all__ = [
    "__version__",
    # Configuration
    "CompletionMarker",
    "RelaySettings",
    "SourceDescriptor",
    "parse_schema_entry",
    # Exceptions
    "OutboxRelayError",
    "ConfigurationError",
    "OutboxReadError",
    "OutboxRowMappingError",
    "CompletionWriteError",
    "PublishError",
    "RelayStateError",
    # Outbox access
    "OutboxRow",
    "OutboxReader",
    "CompletionWriter",
    "OutboxRepository",
    "PostgreSQLOutboxRepository",
    "SQLiteOutboxRepository",
    "InMemoryOutboxRepository",
    # Broker
    "BrokerClient",
    "BrokerMessage",
    "KafkaBrokerClient",
    "KafkaPublisherConfig",
    "InMemoryBrokerClient",
    # Relay engine
    "EventPublisher",
    "PublishOutcome",
    "SourcePoller",
    "PollCycleResult",
    "RelayScheduler",
    "SourceState",
    "StalenessTracker",
    "StalenessEntry",
    "RelayMetrics",
    "RetryConfig",
    "OutboxRelay",
    # Health
    "HealthStatus",
    "HealthIndicator",
    "HealthCheckResult",
    "ReadinessProbe",
    "check_liveness",
]
