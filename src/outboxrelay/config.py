"""
Configuration for the outbox relay.

Two layers of configuration live here:

- ``SourceDescriptor``: an immutable description of one outbox table
  (namespace, table, completion column, batch size, poll interval). The relay
  treats every source's layout as data; nothing about a particular service's
  table is hard-coded.
- ``RelaySettings``: process-wide settings read from the environment (or a
  ``.env`` file) with pydantic-settings, which also know how to build the list
  of source descriptors.

Example:
    >>> settings = RelaySettings(outbox_schemas="orders:outbox:published_at")
    >>> [s.key for s in settings.build_sources()]
    ['orders.outbox']
"""

from __future__ import annotations

import json
import logging
import re
import string
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL, make_url

from outboxrelay.exceptions import ConfigurationError

if TYPE_CHECKING:
    from outboxrelay.repositories.outbox import OutboxRow

logger = logging.getLogger(__name__)

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DEFAULT_TABLE = "outbox_events"
DEFAULT_COMPLETION_COLUMN = "published_at"
DEFAULT_TOPIC_TEMPLATE = "{event_type}"

# Row fields a topic template may reference
TOPIC_TEMPLATE_FIELDS = frozenset(
    {"event_type", "aggregate_type", "aggregate_id", "namespace", "table"}
)


class CompletionMarker(Enum):
    """How a source table records that a row has been published."""

    TIMESTAMP = "timestamp"
    BOOLEAN = "boolean"


def validate_identifier(value: str, what: str) -> str:
    """
    Check that a SQL identifier is a plain, unquoted-safe name.

    Identifiers are interpolated into queries (they cannot be bound as
    parameters), so anything outside ``[A-Za-z_][A-Za-z0-9_]*`` is rejected.

    Raises:
        ConfigurationError: If the identifier is empty or malformed
    """
    if not isinstance(value, str) or not IDENTIFIER_PATTERN.match(value):
        raise ConfigurationError(f"Invalid {what} identifier: {value!r}")
    return value


@dataclass(frozen=True)
class SourceDescriptor:
    """
    Describes one outbox table to relay.

    Attributes:
        namespace: Database schema that owns the outbox table
        table: Outbox table name
        completion_column: Column set when a row has been published
        batch_size: Maximum rows read per poll cycle
        poll_interval_ms: Milliseconds between poll cycles for this source
        completion_marker: Whether the completion column is a timestamp or a boolean
        topic_template: Format string producing the destination topic from row fields

    Raises:
        ConfigurationError: If any field is invalid
    """

    namespace: str
    table: str = DEFAULT_TABLE
    completion_column: str = DEFAULT_COMPLETION_COLUMN
    batch_size: int = 100
    poll_interval_ms: int = 1000
    completion_marker: CompletionMarker = CompletionMarker.TIMESTAMP
    topic_template: str = DEFAULT_TOPIC_TEMPLATE

    def __post_init__(self) -> None:
        validate_identifier(self.namespace, "namespace")
        validate_identifier(self.table, "table")
        validate_identifier(self.completion_column, "completion column")

        if isinstance(self.batch_size, bool) or not isinstance(self.batch_size, int):
            raise ConfigurationError(f"batch_size must be an integer, got {self.batch_size!r}")
        if self.batch_size <= 0:
            raise ConfigurationError(f"batch_size must be positive, got {self.batch_size}")

        if isinstance(self.poll_interval_ms, bool) or not isinstance(self.poll_interval_ms, int):
            raise ConfigurationError(
                f"poll_interval_ms must be an integer, got {self.poll_interval_ms!r}"
            )
        if self.poll_interval_ms <= 0:
            raise ConfigurationError(
                f"poll_interval_ms must be positive, got {self.poll_interval_ms}"
            )

        if not isinstance(self.completion_marker, CompletionMarker):
            try:
                object.__setattr__(
                    self, "completion_marker", CompletionMarker(self.completion_marker)
                )
            except ValueError as e:
                raise ConfigurationError(
                    f"Unknown completion marker: {self.completion_marker!r}"
                ) from e

        self._validate_topic_template()

    def _validate_topic_template(self) -> None:
        if not self.topic_template.strip():
            raise ConfigurationError("topic_template must not be empty")

        try:
            fields = [
                name
                for _, name, _, _ in string.Formatter().parse(self.topic_template)
                if name is not None
            ]
        except ValueError as e:
            raise ConfigurationError(
                f"Malformed topic template {self.topic_template!r}: {e}"
            ) from e

        unknown = sorted(set(fields) - TOPIC_TEMPLATE_FIELDS)
        if unknown:
            raise ConfigurationError(
                f"Topic template {self.topic_template!r} references unknown fields: "
                f"{', '.join(unknown)}"
            )

        # Format specs and conversions only fail when rendered
        try:
            self.topic_template.format(**{name: name for name in TOPIC_TEMPLATE_FIELDS})
        except (ValueError, KeyError, IndexError, AttributeError) as e:
            raise ConfigurationError(
                f"Topic template {self.topic_template!r} cannot be rendered: {e}"
            ) from e

    @property
    def key(self) -> str:
        """Stable identity of the source, ``namespace.table``."""
        return f"{self.namespace}.{self.table}"

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0

    def topic_for(self, row: OutboxRow) -> str:
        """Render the destination topic for a row."""
        return self.topic_template.format(
            event_type=row.event_type,
            aggregate_type=row.aggregate_type,
            aggregate_id=row.aggregate_id,
            namespace=self.namespace,
            table=self.table,
        )

    def __str__(self) -> str:
        return self.key


def parse_schema_entry(
    entry: str,
    batch_size: int = 100,
    poll_interval_ms: int = 1000,
) -> SourceDescriptor:
    """
    Parse one ``namespace[:table[:column]]`` entry into a descriptor.

    Entries that omit the table or column fall back to ``outbox_events`` /
    ``published_at`` and log a warning, since the default layout may not match
    the service's actual table.

    Raises:
        ConfigurationError: If the entry is malformed
    """
    parts = [part.strip() for part in entry.strip().split(":")]
    if not parts[0] or len(parts) > 3 or any(not part for part in parts):
        raise ConfigurationError(f"Malformed OUTBOX_SCHEMAS entry: {entry!r}")

    namespace = parts[0]
    table = parts[1] if len(parts) > 1 else DEFAULT_TABLE
    column = parts[2] if len(parts) > 2 else DEFAULT_COMPLETION_COLUMN

    if len(parts) < 3:
        logger.warning(
            "Outbox source without explicit layout, using defaults",
            extra={
                "namespace": namespace,
                "table": table,
                "completion_column": column,
            },
        )

    return SourceDescriptor(
        namespace=namespace,
        table=table,
        completion_column=column,
        batch_size=batch_size,
        poll_interval_ms=poll_interval_ms,
    )


class RelaySettings(BaseSettings):
    """
    Process settings with environment variable support.

    Variables are read without a prefix (``DATABASE_URL``, ``OUTBOX_SCHEMAS``,
    ``KAFKA_BROKERS``...). For local development, create a ``.env`` file in the
    working directory.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service
    service_name: str = Field(default="outbox-relay", description="Service name")
    log_level: str = Field(default="INFO", description="Logging level")

    # Database
    database_url: str | None = Field(
        default=None, description="Database URL; overrides the PG* variables"
    )
    pghost: str = Field(default="localhost", description="PostgreSQL host")
    pgport: int = Field(default=5432, description="PostgreSQL port")
    pgdatabase: str = Field(default="postgres", description="PostgreSQL database")
    pguser: str = Field(default="postgres", description="PostgreSQL user")
    pgpassword: str | None = Field(default=None, description="PostgreSQL password")
    database_pool_size: int = Field(default=5, description="Database pool size")

    # Sources
    outbox_schemas: str = Field(
        default="",
        description="Comma separated namespace[:table[:column]] entries",
    )
    outbox_sources: str | None = Field(
        default=None,
        description="JSON list of source descriptors; overrides OUTBOX_SCHEMAS",
    )
    polling_interval_ms: int = Field(default=1000, gt=0, description="Poll interval")
    batch_size: int = Field(default=100, gt=0, description="Rows per poll cycle")

    # Broker
    kafka_brokers: str = Field(
        default="localhost:9092", description="Comma separated bootstrap servers"
    )
    kafka_client_id: str = Field(default="outbox-relay", description="Kafka client id")
    kafka_username: str | None = Field(default=None, description="SASL username")
    kafka_password: str | None = Field(default=None, description="SASL password")
    kafka_ssl: bool = Field(default=False, description="Use TLS for the broker connection")
    kafka_sasl_mechanism: str = Field(default="PLAIN", description="SASL mechanism")
    publish_max_retries: int = Field(
        default=3, ge=0, description="Retries per row before leaving it for the next cycle"
    )

    # Health and lifecycle
    freshness_window_seconds: float = Field(
        default=30.0, gt=0, description="Max age of a source's last successful poll"
    )
    shutdown_grace_seconds: float = Field(
        default=30.0, ge=0, description="Time allowed for in-flight cycles on shutdown"
    )

    # Observability
    enable_tracing: bool = Field(default=True, description="Enable OpenTelemetry tracing")
    enable_metrics: bool = Field(default=True, description="Enable OpenTelemetry metrics")

    # Bookkeeping tables
    relay_state_enabled: bool = Field(
        default=True, description="Persist per-source poll state in outbox_relay.relay_state"
    )
    failed_events_enabled: bool = Field(
        default=True, description="Record publish failures in outbox_relay.failed_events"
    )

    @property
    def async_database_url(self) -> URL:
        """SQLAlchemy URL using the asyncpg driver."""
        if self.database_url:
            url = make_url(self.database_url)
            if url.drivername in ("postgres", "postgresql", "postgresql+psycopg2"):
                url = url.set(drivername="postgresql+asyncpg")
            return url

        return URL.create(
            "postgresql+asyncpg",
            username=self.pguser,
            password=self.pgpassword,
            host=self.pghost,
            port=self.pgport,
            database=self.pgdatabase,
        )

    @property
    def kafka_bootstrap_servers(self) -> list[str]:
        return [broker.strip() for broker in self.kafka_brokers.split(",") if broker.strip()]

    def build_sources(self) -> list[SourceDescriptor]:
        """
        Build the source descriptors described by the environment.

        Returns:
            Descriptors in configuration order

        Raises:
            ConfigurationError: If no source is configured, an entry is
                malformed, or two entries name the same table
        """
        if self.outbox_sources:
            sources = self._sources_from_json(self.outbox_sources)
        else:
            sources = [
                parse_schema_entry(entry, self.batch_size, self.polling_interval_ms)
                for entry in self.outbox_schemas.split(",")
                if entry.strip()
            ]

        if not sources:
            raise ConfigurationError(
                "No outbox sources configured; set OUTBOX_SCHEMAS or OUTBOX_SOURCES"
            )

        seen: set[str] = set()
        for source in sources:
            if source.key in seen:
                raise ConfigurationError(f"Duplicate outbox source: {source.key}")
            seen.add(source.key)

        return sources

    def _sources_from_json(self, raw: str) -> list[SourceDescriptor]:
        try:
            entries = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"OUTBOX_SOURCES is not valid JSON: {e}") from e

        if not isinstance(entries, list):
            raise ConfigurationError("OUTBOX_SOURCES must be a JSON list")

        sources = []
        for entry in entries:
            if not isinstance(entry, dict):
                raise ConfigurationError(f"OUTBOX_SOURCES entry must be an object: {entry!r}")
            values: dict[str, Any] = {
                "batch_size": self.batch_size,
                "poll_interval_ms": self.polling_interval_ms,
                **entry,
            }
            try:
                sources.append(SourceDescriptor(**values))
            except TypeError as e:
                raise ConfigurationError(f"Invalid OUTBOX_SOURCES entry {entry!r}: {e}") from e
        return sources


__all__ = [
    "CompletionMarker",
    "SourceDescriptor",
    "RelaySettings",
    "parse_schema_entry",
    "validate_identifier",
    "DEFAULT_TABLE",
    "DEFAULT_COMPLETION_COLUMN",
    "DEFAULT_TOPIC_TEMPLATE",
]
