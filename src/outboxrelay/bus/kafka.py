"""Kafka broker client for the outbox relay.

Publishes ``BrokerMessage`` instances with an aiokafka producer configured for
full acknowledgment (``acks="all"``): ``send`` returns only once the message
is durably written by the in-sync replicas.

Example:
    >>> config = KafkaPublisherConfig(bootstrap_servers="kafka:9092")
    >>> client = KafkaBrokerClient(config)
    >>> await client.connect()
    >>> await client.send(BrokerMessage(topic="order.created", key="o-1", body=b"{}"))
    >>> await client.close()

Security:
    PLAINTEXT, SSL, SASL_PLAINTEXT and SASL_SSL are supported. SASL requires a
    mechanism (PLAIN, SCRAM-SHA-256, SCRAM-SHA-512) and credentials; mTLS
    requires both a certificate and a key file.
"""

import asyncio
import logging
import ssl
from dataclasses import dataclass
from typing import Any

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from outboxrelay.bus.interface import BrokerClient, BrokerMessage
from outboxrelay.exceptions import PublishError

logger = logging.getLogger(__name__)


@dataclass
class KafkaPublisherConfig:
    """Configuration for the Kafka broker client.

    Attributes:
        bootstrap_servers: Comma separated ``host:port`` list.
        client_id: Client identifier reported to the brokers.
        acks: Producer acknowledgment mode; ``"all"`` for durable publishes.
        compression_type: Producer compression codec, or None.
        linger_ms: Producer batching delay.
        request_timeout_ms: Broker request timeout.
        security_protocol: PLAINTEXT, SSL, SASL_PLAINTEXT or SASL_SSL.
        sasl_mechanism: SASL mechanism when using a SASL_* protocol.
        sasl_username: Username for SASL authentication.
        sasl_password: Password for SASL authentication.
        ssl_cafile: Path to CA certificate file.
        ssl_certfile: Path to client certificate for mTLS.
        ssl_keyfile: Path to client private key for mTLS.
        ssl_check_hostname: Whether to verify server hostname.

    Raises:
        ValueError: If the security configuration is inconsistent.
    """

    bootstrap_servers: str = "localhost:9092"
    client_id: str = "outbox-relay"

    # Producer settings
    acks: str = "all"
    compression_type: str | None = None
    linger_ms: int = 0
    request_timeout_ms: int = 30000

    # Security
    security_protocol: str = "PLAINTEXT"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    ssl_cafile: str | None = None
    ssl_certfile: str | None = None
    ssl_keyfile: str | None = None
    ssl_check_hostname: bool = True

    def __post_init__(self) -> None:
        if not self.servers:
            raise ValueError("bootstrap_servers must name at least one broker")
        self._validate_security_config()

    def _validate_security_config(self) -> None:
        valid_protocols = {"PLAINTEXT", "SSL", "SASL_PLAINTEXT", "SASL_SSL"}
        if self.security_protocol not in valid_protocols:
            raise ValueError(
                f"Invalid security_protocol: {self.security_protocol}. "
                f"Must be one of: {valid_protocols}"
            )

        if self.security_protocol.startswith("SASL_"):
            valid_mechanisms = {"PLAIN", "SCRAM-SHA-256", "SCRAM-SHA-512"}
            if not self.sasl_mechanism:
                raise ValueError(f"sasl_mechanism required for {self.security_protocol}")
            if self.sasl_mechanism not in valid_mechanisms:
                raise ValueError(
                    f"Invalid sasl_mechanism: {self.sasl_mechanism}. "
                    f"Must be one of: {valid_mechanisms}"
                )
            if not self.sasl_username or not self.sasl_password:
                raise ValueError("sasl_username and sasl_password required for SASL authentication")

        if self.security_protocol in ("SSL", "SASL_SSL"):
            if self.ssl_certfile and not self.ssl_keyfile:
                raise ValueError("ssl_keyfile required when ssl_certfile is provided (mTLS)")
            if self.ssl_keyfile and not self.ssl_certfile:
                raise ValueError("ssl_certfile required when ssl_keyfile is provided (mTLS)")

        if self.security_protocol == "SASL_PLAINTEXT":
            logger.warning("Using SASL without SSL - credentials sent in plain text")
        if "SSL" in self.security_protocol and not self.ssl_check_hostname:
            logger.warning("SSL hostname verification disabled - vulnerable to MITM attacks")

    @classmethod
    def from_credentials(
        cls,
        bootstrap_servers: str,
        client_id: str = "outbox-relay",
        username: str | None = None,
        password: str | None = None,
        use_ssl: bool = False,
        sasl_mechanism: str = "PLAIN",
    ) -> "KafkaPublisherConfig":
        """Build a config from the flat username/password/ssl settings."""
        if username:
            protocol = "SASL_SSL" if use_ssl else "SASL_PLAINTEXT"
            return cls(
                bootstrap_servers=bootstrap_servers,
                client_id=client_id,
                security_protocol=protocol,
                sasl_mechanism=sasl_mechanism,
                sasl_username=username,
                sasl_password=password,
            )
        return cls(
            bootstrap_servers=bootstrap_servers,
            client_id=client_id,
            security_protocol="SSL" if use_ssl else "PLAINTEXT",
        )

    @property
    def servers(self) -> list[str]:
        return [server.strip() for server in self.bootstrap_servers.split(",") if server.strip()]

    def get_producer_config(self) -> dict[str, Any]:
        """Get aiokafka producer configuration dict."""
        config: dict[str, Any] = {
            "bootstrap_servers": self.servers,
            "client_id": self.client_id,
            "acks": self.acks,
            "compression_type": self.compression_type,
            "linger_ms": self.linger_ms,
            "request_timeout_ms": self.request_timeout_ms,
            "security_protocol": self.security_protocol,
        }

        if self.sasl_mechanism and self.security_protocol.startswith("SASL_"):
            config["sasl_mechanism"] = self.sasl_mechanism
            config["sasl_plain_username"] = self.sasl_username
            config["sasl_plain_password"] = self.sasl_password

        ssl_context = self.create_ssl_context()
        if ssl_context is not None:
            config["ssl_context"] = ssl_context

        return config

    def create_ssl_context(self) -> ssl.SSLContext | None:
        """Create an SSL context when the protocol uses TLS, otherwise None."""
        if "SSL" not in self.security_protocol:
            return None

        context = ssl.create_default_context()

        if self.ssl_cafile:
            context.load_verify_locations(self.ssl_cafile)

        if self.ssl_certfile and self.ssl_keyfile:
            context.load_cert_chain(
                certfile=self.ssl_certfile,
                keyfile=self.ssl_keyfile,
            )

        if not self.ssl_check_hostname:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        else:
            context.check_hostname = True
            context.verify_mode = ssl.CERT_REQUIRED

        return context

    def get_sanitized_config(self) -> dict[str, Any]:
        """Get configuration with sensitive values redacted, for logging.

        Example:
            >>> config = KafkaPublisherConfig(
            ...     security_protocol="SASL_SSL",
            ...     sasl_mechanism="PLAIN",
            ...     sasl_username="relay",
            ...     sasl_password="secret123",
            ... )
            >>> config.get_sanitized_config()["sasl_password"]
            '***'
        """
        return {
            "bootstrap_servers": self.bootstrap_servers,
            "client_id": self.client_id,
            "acks": self.acks,
            "security_protocol": self.security_protocol,
            "sasl_mechanism": self.sasl_mechanism,
            "sasl_username": self.sasl_username,
            "sasl_password": "***" if self.sasl_password else None,
            "ssl_cafile": self.ssl_cafile,
            "ssl_certfile": self.ssl_certfile,
            "ssl_keyfile": "***" if self.ssl_keyfile else None,
            "ssl_check_hostname": self.ssl_check_hostname,
        }


class KafkaBrokerClient(BrokerClient):
    """Broker client backed by an aiokafka producer.

    Args:
        config: Producer and security configuration.
    """

    def __init__(self, config: KafkaPublisherConfig | None = None) -> None:
        self._config = config or KafkaPublisherConfig()
        self._producer: AIOKafkaProducer | None = None
        self._connected = False

        logger.debug(
            "KafkaBrokerClient initialized",
            extra=self._config.get_sanitized_config(),
        )

    @property
    def config(self) -> KafkaPublisherConfig:
        return self._config

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Create and start the producer.

        Raises:
            KafkaError: If the producer cannot bootstrap.
        """
        if self._connected:
            logger.warning("KafkaBrokerClient already connected")
            return

        logger.info(
            "Connecting to Kafka",
            extra=self._config.get_sanitized_config(),
        )

        try:
            self._producer = AIOKafkaProducer(**self._config.get_producer_config())
            await self._producer.start()
            self._connected = True
            logger.info(
                "Connected to Kafka",
                extra={"bootstrap_servers": self._config.bootstrap_servers},
            )
        except Exception as e:
            logger.error(
                "Failed to connect to Kafka",
                extra={"error": str(e)},
                exc_info=True,
            )
            await self._cleanup()
            raise

    async def close(self) -> None:
        if not self._connected and self._producer is None:
            logger.debug("KafkaBrokerClient not connected, nothing to close")
            return

        logger.info("Disconnecting from Kafka")
        await self._cleanup()
        self._connected = False
        logger.info("Disconnected from Kafka")

    async def _cleanup(self) -> None:
        if self._producer:
            try:
                await self._producer.stop()
            except Exception as e:
                logger.warning(f"Error stopping producer: {e}")
            self._producer = None

    async def send(self, message: BrokerMessage) -> None:
        """Send a message and wait for its acknowledgment.

        Raises:
            RuntimeError: If not connected.
            PublishError: If the broker rejects the message or the send times
                out. ``retriable`` mirrors the aiokafka error's flag.
        """
        if not self._connected or not self._producer:
            raise RuntimeError("Not connected to Kafka. Call connect() first.")

        headers = [(name, value.encode("utf-8")) for name, value in message.headers.items()]

        try:
            future = await self._producer.send(
                topic=message.topic,
                key=message.key.encode("utf-8"),
                value=message.body,
                headers=headers,
            )
            record_metadata = await future
        except KafkaError as e:
            raise PublishError(
                message.topic,
                str(e) or type(e).__name__,
                retriable=bool(getattr(e, "retriable", False)),
            ) from e

        logger.debug(
            "Message acknowledged",
            extra={
                "topic": record_metadata.topic,
                "partition": record_metadata.partition,
                "offset": record_metadata.offset,
            },
        )

    async def check_connectivity(self, timeout: float = 5.0) -> dict[str, bool]:
        """Open a TCP connection to each bootstrap server.

        This is a diagnostic only: it reports reachability of the listed
        addresses and does not speak the Kafka protocol.

        Returns:
            Mapping of ``host:port`` to whether a connection could be opened.
        """
        results: dict[str, bool] = {}
        for server in self._config.servers:
            host, _, port = server.rpartition(":")
            if not host:
                host, port = port, "9092"

            try:
                _, writer = await asyncio.wait_for(
                    asyncio.open_connection(host, int(port)),
                    timeout=timeout,
                )
                writer.close()
                await writer.wait_closed()
                results[server] = True
            except (OSError, ValueError, asyncio.TimeoutError) as e:
                logger.warning(
                    "Kafka broker unreachable",
                    extra={"broker": server, "error": str(e) or type(e).__name__},
                )
                results[server] = False

        logger.info("Kafka connectivity check complete", extra={"brokers": results})
        return results


__all__ = [
    "KafkaPublisherConfig",
    "KafkaBrokerClient",
]
