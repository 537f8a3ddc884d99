"""
Broker clients for the outbox relay.

- BrokerClient: abstract interface (send a message, wait for the ack)
- KafkaBrokerClient: aiokafka implementation
- InMemoryBrokerClient: records messages, for tests
"""

from outboxrelay.bus.interface import BrokerClient, BrokerMessage
from outboxrelay.bus.kafka import KafkaBrokerClient, KafkaPublisherConfig
from outboxrelay.bus.memory import InMemoryBrokerClient

__all__ = [
    "BrokerClient",
    "BrokerMessage",
    "KafkaBrokerClient",
    "KafkaPublisherConfig",
    "InMemoryBrokerClient",
]
