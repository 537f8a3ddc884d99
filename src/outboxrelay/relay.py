"""
Outbox relay composition root.

``OutboxRelay`` wires the sources, the outbox repository, the broker client
and the bookkeeping repositories into pollers and a scheduler, and owns the
process lifecycle:

- ``start()`` validates every source table, seeds source freshness from
  persisted relay state, connects the broker and starts the scheduler. A
  configuration problem is fatal: nothing is scheduled.
- ``stop()`` stops the scheduler (waiting up to the grace period for in-flight
  cycles), closes the broker and disposes the engine.
- ``run()`` starts, waits for SIGTERM/SIGINT and stops.
"""

import asyncio
import logging
import signal
from collections.abc import Sequence

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from outboxrelay.bus.interface import BrokerClient
from outboxrelay.bus.kafka import KafkaBrokerClient, KafkaPublisherConfig
from outboxrelay.config import RelaySettings, SourceDescriptor
from outboxrelay.exceptions import ConfigurationError, RelayStateError
from outboxrelay.health import HealthCheckResult, ReadinessProbe, check_liveness
from outboxrelay.metrics import RelayMetrics
from outboxrelay.observability import Tracer, create_tracer
from outboxrelay.poller import SourcePoller
from outboxrelay.publisher import EventPublisher
from outboxrelay.repositories.failed_events import (
    FailedEventRepository,
    PostgreSQLFailedEventRepository,
)
from outboxrelay.repositories.outbox import OutboxRepository, PostgreSQLOutboxRepository
from outboxrelay.repositories.relay_state import (
    PostgreSQLRelayStateRepository,
    RelayStateRepository,
)
from outboxrelay.retry import RetryConfig
from outboxrelay.scheduler import RelayScheduler
from outboxrelay.staleness import StalenessTracker

logger = logging.getLogger(__name__)


class OutboxRelay:
    """
    The relay process: sources, pollers, scheduler and health surfaces.

    Example:
        >>> relay = OutboxRelay.from_settings(RelaySettings())
        >>> await relay.run()
    """

    def __init__(
        self,
        sources: Sequence[SourceDescriptor],
        outbox: OutboxRepository,
        broker: BrokerClient,
        *,
        relay_state: RelayStateRepository | None = None,
        failed_events: FailedEventRepository | None = None,
        metrics: RelayMetrics | None = None,
        retry_config: RetryConfig | None = None,
        tracker: StalenessTracker | None = None,
        freshness_window_seconds: float = 30.0,
        shutdown_grace_seconds: float = 30.0,
        service_name: str = "outbox-relay",
        engine: AsyncEngine | None = None,
        check_broker_connectivity: bool = True,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the relay.

        Args:
            sources: Source descriptors; at least one
            outbox: Outbox repository shared by all sources
            broker: Broker client shared by all sources
            relay_state: Optional persisted per-source state
            failed_events: Optional failed-events ledger
            metrics: Metric instruments (created from the global provider if not provided)
            retry_config: Publish retry policy
            tracker: Staleness tracker (a new one if not provided)
            freshness_window_seconds: Readiness window
            shutdown_grace_seconds: Time stop() waits for in-flight cycles
            service_name: Reported by the health surfaces
            engine: Engine to dispose on stop, if the relay owns one
            check_broker_connectivity: Log a TCP reachability check of the
                bootstrap servers before connecting (Kafka only)
            tracer: Optional tracer shared by components
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)

        Raises:
            ConfigurationError: If no source is given or a source is duplicated
        """
        self.sources = list(sources)
        self._outbox = outbox
        self._broker = broker
        self._relay_state = relay_state
        self._failed_events = failed_events
        self._engine = engine
        self._check_broker_connectivity = check_broker_connectivity
        self._service_name = service_name
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

        self.metrics = metrics or RelayMetrics()
        self.tracker = tracker or StalenessTracker()
        for source in self.sources:
            self.tracker.register(source)
        self.publisher = EventPublisher(broker, retry_config, tracer=self._tracer)
        self.pollers = [
            SourcePoller(
                source,
                reader=outbox,
                writer=outbox,
                publisher=self.publisher,
                tracker=self.tracker,
                metrics=self.metrics,
                relay_state=relay_state,
                failed_events=failed_events,
                tracer=self._tracer,
            )
            for source in self.sources
        ]
        self.scheduler = RelayScheduler(
            self.pollers,
            metrics=self.metrics,
            shutdown_grace_seconds=shutdown_grace_seconds,
        )
        self.readiness_probe = ReadinessProbe(
            outbox,
            self.tracker,
            freshness_window_seconds=freshness_window_seconds,
            service_name=service_name,
        )
        self._started = False

    @classmethod
    def from_settings(cls, settings: RelaySettings) -> "OutboxRelay":
        """
        Build a relay against PostgreSQL and Kafka from process settings.

        Raises:
            ConfigurationError: If the sources or broker settings are invalid
        """
        sources = settings.build_sources()

        try:
            kafka_config = KafkaPublisherConfig.from_credentials(
                bootstrap_servers=settings.kafka_brokers,
                client_id=settings.kafka_client_id,
                username=settings.kafka_username,
                password=settings.kafka_password,
                use_ssl=settings.kafka_ssl,
                sasl_mechanism=settings.kafka_sasl_mechanism,
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid Kafka configuration: {e}") from e

        engine = create_async_engine(
            settings.async_database_url,
            pool_size=settings.database_pool_size,
            pool_pre_ping=True,
        )
        tracer = create_tracer(__name__, settings.enable_tracing)

        return cls(
            sources,
            PostgreSQLOutboxRepository(engine, tracer=tracer),
            KafkaBrokerClient(kafka_config),
            relay_state=(
                PostgreSQLRelayStateRepository(engine, tracer=tracer)
                if settings.relay_state_enabled
                else None
            ),
            failed_events=(
                PostgreSQLFailedEventRepository(engine, tracer=tracer)
                if settings.failed_events_enabled
                else None
            ),
            metrics=RelayMetrics(enabled=settings.enable_metrics),
            retry_config=RetryConfig(
                max_retries=settings.publish_max_retries,
                initial_delay=1.0,
                max_delay=30.0,
            ),
            freshness_window_seconds=settings.freshness_window_seconds,
            shutdown_grace_seconds=settings.shutdown_grace_seconds,
            service_name=settings.service_name,
            engine=engine,
            tracer=tracer,
        )

    @property
    def is_started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """
        Validate sources, seed freshness, connect the broker, start polling.

        Raises:
            ConfigurationError: If a source table is missing or malformed
        """
        if self._started:
            logger.warning("OutboxRelay already started")
            return

        for source in self.sources:
            await self._outbox.validate_source(source)
            logger.info(
                "Outbox source validated",
                extra={
                    "source": source.key,
                    "completion_column": source.completion_column,
                    "completion_marker": source.completion_marker.value,
                    "batch_size": source.batch_size,
                    "poll_interval_ms": source.poll_interval_ms,
                },
            )

        await self._seed_relay_state()

        if self._check_broker_connectivity and isinstance(self._broker, KafkaBrokerClient):
            await self._broker.check_connectivity()

        await self._broker.connect()
        await self.scheduler.start()
        self._started = True

        logger.info(
            "Outbox relay started",
            extra={"service": self._service_name, "sources": [s.key for s in self.sources]},
        )

    async def _seed_relay_state(self) -> None:
        if self._relay_state is None:
            return
        try:
            last_polls = await self._relay_state.load_last_poll_times()
            for source_key, polled_at in last_polls.items():
                self.tracker.seed(source_key, polled_at)
            for source in self.sources:
                await self._relay_state.ensure_state(source)
        except RelayStateError as e:
            logger.warning("Could not load relay state", extra={"error": str(e)})

    async def stop(self) -> None:
        """Stop polling, then close the broker and dispose the engine."""
        if self.scheduler.is_running:
            await self.scheduler.stop()
        await self._broker.close()
        if self._engine is not None:
            await self._engine.dispose()
        self._started = False
        logger.info("Outbox relay stopped")

    async def run(self) -> None:
        """Start, block until SIGTERM or SIGINT, then stop."""
        loop = asyncio.get_running_loop()
        stop_requested = asyncio.Event()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, stop_requested.set)
            except NotImplementedError:
                logger.warning(
                    "Signal handling not fully supported on this platform",
                    extra={"signal": sig.name},
                )

        try:
            await self.start()
            await stop_requested.wait()
            logger.info("Shutdown signal received")
        finally:
            await self.stop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                try:
                    loop.remove_signal_handler(sig)
                except (NotImplementedError, ValueError):
                    pass

    def liveness(self) -> HealthCheckResult:
        return check_liveness(self._service_name)

    async def readiness(self) -> HealthCheckResult:
        return await self.readiness_probe.check()


__all__ = ["OutboxRelay"]
