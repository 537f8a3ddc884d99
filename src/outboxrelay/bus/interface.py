"""Broker client interface definitions.

The relay hands each outbox row to a ``BrokerClient`` as a ``BrokerMessage``.
A client either returns once the broker has acknowledged the message or
raises; the publisher decides whether to retry.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass(frozen=True)
class BrokerMessage:
    """
    A message ready to be sent to the broker.

    Attributes:
        topic: Destination topic
        key: Partition key (the aggregate id), keeping per-aggregate order
        body: Serialized payload
        headers: Message headers as text values
    """

    topic: str
    key: str
    body: bytes
    headers: dict[str, str] = field(default_factory=dict)


class BrokerClient(ABC):
    """
    Abstract client for the message broker.

    Implementations:
    - KafkaBrokerClient: aiokafka producer with ``acks="all"``
    - InMemoryBrokerClient: records messages for tests
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection to the broker."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        pass

    @abstractmethod
    async def send(self, message: BrokerMessage) -> None:
        """
        Send a message and wait for the broker's acknowledgment.

        Raises:
            PublishError: If the broker rejects the message
            ConnectionError: If the broker cannot be reached
        """
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """True once connect() has succeeded and until close()."""
        pass


__all__ = ["BrokerMessage", "BrokerClient"]
