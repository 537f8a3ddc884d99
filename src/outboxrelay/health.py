"""
Liveness and readiness checks for the outbox relay.

- Liveness reports that the process is up. It performs no I/O and is always
  healthy.
- Readiness is healthy only when the database answers a ping and every
  source has completed a poll cycle within the freshness window.

Results are plain data (``HealthCheckResult.to_dict()``) for whatever HTTP
layer exposes them.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from outboxrelay.staleness import StalenessTracker

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    """Health status levels."""

    HEALTHY = "healthy"
    """All systems operating normally."""

    UNHEALTHY = "unhealthy"
    """The relay should not receive traffic or be considered caught up."""


@dataclass
class HealthIndicator:
    """
    Individual health indicator result.

    Represents the health status of a single dependency or source.
    """

    name: str
    status: HealthStatus
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "details": self.details,
        }


@dataclass
class HealthCheckResult:
    """
    Aggregated health check result.

    The overall status is UNHEALTHY if any indicator is.
    """

    overall_status: HealthStatus
    indicators: list[HealthIndicator] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    service_name: str = ""

    @property
    def is_healthy(self) -> bool:
        return self.overall_status is HealthStatus.HEALTHY

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "status": self.overall_status.value,
            "service": self.service_name,
            "timestamp": self.timestamp.isoformat(),
            "checks": [i.to_dict() for i in self.indicators],
        }


class Pingable(Protocol):
    async def ping(self) -> None: ...


def check_liveness(service_name: str = "outbox-relay") -> HealthCheckResult:
    """Report the process alive. No I/O."""
    return HealthCheckResult(
        overall_status=HealthStatus.HEALTHY,
        service_name=service_name,
    )


class ReadinessProbe:
    """
    Readiness check over the database and source freshness.

    Example:
        >>> probe = ReadinessProbe(repo, tracker, freshness_window_seconds=30.0)
        >>> result = await probe.check()
        >>> result.is_healthy
        True
    """

    def __init__(
        self,
        database: Pingable,
        tracker: StalenessTracker,
        freshness_window_seconds: float = 30.0,
        ping_timeout_seconds: float = 5.0,
        service_name: str = "outbox-relay",
    ) -> None:
        """
        Initialize the probe.

        Args:
            database: Anything with an async ``ping()`` that raises when unreachable
            tracker: Source staleness tracker
            freshness_window_seconds: Max age of a source's last successful poll
            ping_timeout_seconds: Time allowed for the database ping
            service_name: Reported in results
        """
        self._database = database
        self._tracker = tracker
        self.freshness_window_seconds = freshness_window_seconds
        self._ping_timeout_seconds = ping_timeout_seconds
        self._service_name = service_name

    async def check(self, now: datetime | None = None) -> HealthCheckResult:
        """
        Run the readiness check.

        Args:
            now: Reference time for staleness (defaults to the tracker's clock)
        """
        now = now or self._tracker.now()
        indicators = [await self._check_database()]
        indicators.extend(self._check_sources(now))

        overall = (
            HealthStatus.UNHEALTHY
            if any(i.status is HealthStatus.UNHEALTHY for i in indicators)
            else HealthStatus.HEALTHY
        )

        if overall is HealthStatus.UNHEALTHY:
            logger.debug(
                "Readiness check failed",
                extra={
                    "failing": [
                        i.name for i in indicators if i.status is HealthStatus.UNHEALTHY
                    ]
                },
            )

        return HealthCheckResult(
            overall_status=overall,
            indicators=indicators,
            timestamp=now,
            service_name=self._service_name,
        )

    async def _check_database(self) -> HealthIndicator:
        try:
            await asyncio.wait_for(self._database.ping(), timeout=self._ping_timeout_seconds)
        except Exception as e:
            return HealthIndicator(
                name="database",
                status=HealthStatus.UNHEALTHY,
                message=f"Database ping failed: {str(e) or type(e).__name__}",
                details={"error_type": type(e).__name__},
            )
        return HealthIndicator(name="database", status=HealthStatus.HEALTHY, message="ok")

    def _check_sources(self, now: datetime) -> list[HealthIndicator]:
        indicators = []
        window = self.freshness_window_seconds
        for entry in self._tracker.entries():
            age = entry.age_seconds(now)
            details = {
                "last_successful_poll_at": (
                    entry.last_successful_poll_at.isoformat()
                    if entry.last_successful_poll_at
                    else None
                ),
                "age_seconds": age,
                "freshness_window_seconds": window,
            }

            if age is None:
                status, message = HealthStatus.UNHEALTHY, "No successful poll yet"
            elif age > window:
                status = HealthStatus.UNHEALTHY
                message = f"Last successful poll {age:.1f}s ago (window {window:.0f}s)"
            else:
                status, message = HealthStatus.HEALTHY, f"Last successful poll {age:.1f}s ago"

            indicators.append(
                HealthIndicator(
                    name=f"source:{entry.source}",
                    status=status,
                    message=message,
                    details=details,
                )
            )
        return indicators


__all__ = [
    "HealthStatus",
    "HealthIndicator",
    "HealthCheckResult",
    "ReadinessProbe",
    "check_liveness",
]
