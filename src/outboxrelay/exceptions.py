"""Library exceptions for the outboxrelay package."""


class OutboxRelayError(Exception):
    """Base exception for outboxrelay."""

    pass


class ConfigurationError(OutboxRelayError):
    """
    Raised when a source or process configuration is invalid.

    Configuration errors are permanent: the relay refuses to start rather
    than run with a partially valid set of sources.
    """

    pass


class OutboxReadError(OutboxRelayError):
    """Raised when the unpublished batch of a source cannot be read."""

    def __init__(self, source: str, message: str) -> None:
        self.source = source
        super().__init__(f"Failed to read outbox batch from {source}: {message}")


class OutboxRowMappingError(OutboxReadError):
    """
    Raised when a row was read but its columns cannot be decoded.

    Unlike a transient read failure this repeats on every cycle until the row
    is repaired, since the row stays at the head of the batch.

    Attributes:
        source: Source key (``namespace.table``)
        row_id: Identifier of the offending row, if it could be read
    """

    def __init__(self, source: str, row_id: object, message: str) -> None:
        self.row_id = row_id
        super().__init__(source, f"row {row_id!r} could not be mapped: {message}")


class CompletionWriteError(OutboxRelayError):
    """
    Raised when delivered rows cannot be marked completed.

    Attributes:
        source: Source key (``namespace.table``)
        row_ids: Identifiers that were delivered but not marked
    """

    def __init__(self, source: str, row_ids: list[object], message: str) -> None:
        self.source = source
        self.row_ids = row_ids
        super().__init__(
            f"Failed to mark {len(row_ids)} row(s) completed in {source}: {message}"
        )


class PublishError(OutboxRelayError):
    """Raised by broker clients when a message is rejected."""

    def __init__(self, topic: str, message: str, retriable: bool = True) -> None:
        self.topic = topic
        self.retriable = retriable
        super().__init__(f"Publish to {topic} failed: {message}")


class RelayStateError(OutboxRelayError):
    """Raised when persisted relay state cannot be read or written."""

    pass
