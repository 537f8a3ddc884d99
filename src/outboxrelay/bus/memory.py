"""In-memory broker client for tests and local runs.

Messages are recorded in send order. Rejection rules let a test make the
broker refuse particular messages, and a gate lets it hold sends in flight.
"""

import asyncio
import logging
from collections.abc import Callable

from outboxrelay.bus.interface import BrokerClient, BrokerMessage
from outboxrelay.exceptions import PublishError

logger = logging.getLogger(__name__)

MessagePredicate = Callable[[BrokerMessage], bool]


class InMemoryBrokerClient(BrokerClient):
    """
    Broker client that keeps acknowledged messages in a list.

    Example:
        >>> broker = InMemoryBrokerClient()
        >>> broker.reject(lambda m: m.headers.get("event_id") == "r2")
        >>> await broker.send(message)
        >>> broker.messages
        [BrokerMessage(...)]
    """

    def __init__(self) -> None:
        self.messages: list[BrokerMessage] = []
        self.send_attempts = 0
        self._rules: list[tuple[MessagePredicate, Exception]] = []
        self._gate: asyncio.Event | None = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True

    async def close(self) -> None:
        self._connected = False

    def reject(
        self,
        predicate: MessagePredicate,
        error: Exception | None = None,
    ) -> None:
        """
        Refuse every message matching ``predicate``.

        Args:
            predicate: Selects the messages to refuse
            error: Raised on refusal; defaults to a non-retriable PublishError
        """
        self._rules.append((predicate, error or PublishError("", "rejected", retriable=False)))

    def clear_rejections(self) -> None:
        self._rules.clear()

    def hold(self) -> None:
        """Block sends until release() is called."""
        self._gate = asyncio.Event()

    def release(self) -> None:
        if self._gate is not None:
            self._gate.set()
            self._gate = None

    def messages_for(self, topic: str) -> list[BrokerMessage]:
        return [message for message in self.messages if message.topic == topic]

    async def send(self, message: BrokerMessage) -> None:
        self.send_attempts += 1

        if self._gate is not None:
            await self._gate.wait()

        for predicate, error in self._rules:
            if predicate(message):
                logger.debug(
                    "In-memory broker refused message",
                    extra={"topic": message.topic, "key": message.key},
                )
                raise error

        self.messages.append(message)


__all__ = ["InMemoryBrokerClient"]
