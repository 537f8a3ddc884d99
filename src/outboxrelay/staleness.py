"""
Staleness tracking for readiness.

The tracker remembers, per source, when its last successful poll cycle
finished. Readiness compares that time to a freshness window: a source whose
last success is older than the window, or that has never succeeded, is stale.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from outboxrelay.config import SourceDescriptor

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class StalenessEntry:
    """
    Last successful poll of one source.

    Attributes:
        source: Source key (``namespace.table``)
        last_successful_poll_at: When the last successful cycle finished,
            or None if the source has not succeeded yet
    """

    source: str
    last_successful_poll_at: datetime | None = None

    def age_seconds(self, now: datetime) -> float | None:
        """Seconds since the last success, or None if there was none."""
        if self.last_successful_poll_at is None:
            return None
        return max(0.0, (now - self.last_successful_poll_at).total_seconds())

    def is_stale(self, window_seconds: float, now: datetime) -> bool:
        age = self.age_seconds(now)
        return age is None or age > window_seconds


class StalenessTracker:
    """
    Records the last successful poll time of each source.

    Times only move forward: recording an older success than the one held is
    ignored.

    Example:
        >>> tracker = StalenessTracker([source])
        >>> tracker.record_success(source)
        >>> tracker.stale_sources(window_seconds=30)
        []
    """

    def __init__(
        self,
        sources: Iterable[SourceDescriptor] = (),
        clock: Clock = utc_now,
    ) -> None:
        self._clock = clock
        self._entries: dict[str, StalenessEntry] = {}
        for source in sources:
            self.register(source)

    def register(self, source: SourceDescriptor) -> None:
        """Start tracking a source (never polled until a success or seed)."""
        self._entries.setdefault(source.key, StalenessEntry(source=source.key))

    def record_success(self, source: SourceDescriptor, at: datetime | None = None) -> None:
        self._advance(source.key, at or self._clock())

    def seed(self, source_key: str, at: datetime) -> None:
        """Install a last-success time from persisted state, if the source is tracked."""
        if source_key not in self._entries:
            logger.debug(
                "Ignoring relay state for unconfigured source", extra={"source": source_key}
            )
            return
        self._advance(source_key, at)

    def _advance(self, source_key: str, at: datetime) -> None:
        if at.tzinfo is None:
            at = at.replace(tzinfo=UTC)
        current = self._entries.get(source_key)
        if (
            current is not None
            and current.last_successful_poll_at is not None
            and current.last_successful_poll_at >= at
        ):
            return
        self._entries[source_key] = StalenessEntry(source=source_key, last_successful_poll_at=at)

    def entry(self, source_key: str) -> StalenessEntry:
        """
        Return the entry for a source.

        Raises:
            KeyError: If the source is not tracked
        """
        return self._entries[source_key]

    def entries(self) -> list[StalenessEntry]:
        return list(self._entries.values())

    def now(self) -> datetime:
        return self._clock()

    def stale_sources(
        self,
        window_seconds: float,
        now: datetime | None = None,
    ) -> list[str]:
        """Keys of sources whose last success is older than the window, or missing."""
        now = now or self._clock()
        return [
            entry.source
            for entry in self._entries.values()
            if entry.is_stale(window_seconds, now)
        ]


__all__ = ["StalenessEntry", "StalenessTracker", "utc_now"]
