"""
Relay scheduler: drives each source's poll cycles on its own timer.

Every source gets an asyncio task that ticks at the source's poll interval.
A tick starts a cycle only if the source is IDLE; a tick that finds the
source still RUNNING is skipped and counted as an overlap, never queued.
Sources are independent: a slow or failing source does not delay the others.

Shutdown stops the tickers first, then gives in-flight cycles a grace period
to finish before cancelling them. A cancelled cycle may have published rows
it did not mark, and those rows are published again after restart.
"""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from outboxrelay.exceptions import ConfigurationError
from outboxrelay.metrics import RelayMetrics
from outboxrelay.poller import PollCycleResult, SourcePoller

logger = logging.getLogger(__name__)


class SourceState(Enum):
    """
    Execution state of one source.

    IDLE -> RUNNING when a tick starts a cycle; RUNNING -> IDLE when the cycle
    ends, whether it succeeded, failed or was cancelled.
    """

    IDLE = "idle"
    RUNNING = "running"


@dataclass
class _SourceRuntime:
    poller: SourcePoller
    state: SourceState = SourceState.IDLE
    overlap_count: int = 0
    cycles_started: int = 0
    last_result: PollCycleResult | None = None
    current: asyncio.Task[PollCycleResult | None] | None = field(default=None, repr=False)
    ticker: asyncio.Task[None] | None = field(default=None, repr=False)


class RelayScheduler:
    """
    Runs poll cycles for every configured source.

    Example:
        >>> scheduler = RelayScheduler(pollers, metrics, shutdown_grace_seconds=30.0)
        >>> await scheduler.start()
        >>> ...
        >>> await scheduler.stop()
    """

    def __init__(
        self,
        pollers: Sequence[SourcePoller],
        metrics: RelayMetrics | None = None,
        shutdown_grace_seconds: float = 30.0,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            pollers: One poller per source
            metrics: Metric instruments (a no-op set if not provided)
            shutdown_grace_seconds: Time stop() waits for in-flight cycles

        Raises:
            ConfigurationError: If no poller is given or two pollers share a source
        """
        if not pollers:
            raise ConfigurationError("RelayScheduler requires at least one source")

        self._runtimes: dict[str, _SourceRuntime] = {}
        for poller in pollers:
            key = poller.source.key
            if key in self._runtimes:
                raise ConfigurationError(f"Duplicate outbox source: {key}")
            self._runtimes[key] = _SourceRuntime(poller=poller)

        self._metrics = metrics or RelayMetrics(enabled=False)
        self._shutdown_grace_seconds = shutdown_grace_seconds
        self._running = False
        self._stopping = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def source_keys(self) -> list[str]:
        return list(self._runtimes)

    def _runtime(self, source_key: str) -> _SourceRuntime:
        try:
            return self._runtimes[source_key]
        except KeyError:
            raise KeyError(f"Unknown outbox source: {source_key}") from None

    def state_of(self, source_key: str) -> SourceState:
        return self._runtime(source_key).state

    def overlap_count(self, source_key: str) -> int:
        return self._runtime(source_key).overlap_count

    def last_result(self, source_key: str) -> PollCycleResult | None:
        return self._runtime(source_key).last_result

    def get_stats(self) -> dict[str, dict[str, Any]]:
        return {
            key: {
                "state": runtime.state.value,
                "overlap_count": runtime.overlap_count,
                "cycles_started": runtime.cycles_started,
            }
            for key, runtime in self._runtimes.items()
        }

    async def start(self) -> None:
        """Start one ticker task per source. The first tick fires immediately."""
        if self._running:
            logger.warning("RelayScheduler already running")
            return

        self._running = True
        self._stopping = False
        for key, runtime in self._runtimes.items():
            runtime.ticker = asyncio.create_task(
                self._tick_loop(runtime), name=f"outboxrelay-ticker-{key}"
            )

        logger.info(
            "RelayScheduler started",
            extra={"sources": self.source_keys},
        )

    async def _tick_loop(self, runtime: _SourceRuntime) -> None:
        interval = runtime.poller.source.poll_interval_seconds
        while not self._stopping:
            self._tick(runtime)
            await asyncio.sleep(interval)

    def trigger(self, source_key: str) -> bool:
        """
        Tick one source now.

        Returns:
            True if a cycle was started, False if the source was already
            RUNNING (the tick is counted as an overlap)
        """
        return self._tick(self._runtime(source_key)) is not None

    def _tick(self, runtime: _SourceRuntime) -> asyncio.Task[PollCycleResult | None] | None:
        source = runtime.poller.source
        if runtime.state is SourceState.RUNNING:
            runtime.overlap_count += 1
            self._metrics.record_overlap(source)
            logger.debug(
                "Skipping tick, previous cycle still running",
                extra={"source": source.key, "overlap_count": runtime.overlap_count},
            )
            return None

        runtime.state = SourceState.RUNNING
        runtime.cycles_started += 1
        task = asyncio.create_task(
            self._run_cycle(runtime), name=f"outboxrelay-cycle-{source.key}"
        )
        runtime.current = task
        return task

    async def _run_cycle(self, runtime: _SourceRuntime) -> PollCycleResult | None:
        try:
            result = await runtime.poller.poll_once()
            runtime.last_result = result
            return result
        except asyncio.CancelledError:
            logger.warning(
                "Poll cycle cancelled",
                extra={"source": runtime.poller.source.key},
            )
            raise
        except Exception as e:
            # Keep the source schedulable after an unexpected error
            logger.error(
                "Unexpected error in poll cycle",
                extra={"source": runtime.poller.source.key, "error": str(e)},
                exc_info=True,
            )
            return None
        finally:
            runtime.state = SourceState.IDLE
            runtime.current = None

    async def run_cycle_now(self, source_key: str) -> PollCycleResult | None:
        """
        Run one cycle for a source and wait for it.

        Returns:
            The cycle result, or None if the source was already RUNNING
            (counted as an overlap) or the cycle raised unexpectedly
        """
        task = self._tick(self._runtime(source_key))
        if task is None:
            return None
        return await task

    async def stop(self, grace_seconds: float | None = None) -> None:
        """
        Stop ticking and wait for in-flight cycles.

        Args:
            grace_seconds: Override of the configured grace period. Cycles
                still running afterwards are cancelled.
        """
        grace = self._shutdown_grace_seconds if grace_seconds is None else grace_seconds
        self._stopping = True

        tickers = [r.ticker for r in self._runtimes.values() if r.ticker is not None]
        for ticker in tickers:
            ticker.cancel()
        await asyncio.gather(*tickers, return_exceptions=True)
        for runtime in self._runtimes.values():
            runtime.ticker = None

        in_flight = [r.current for r in self._runtimes.values() if r.current is not None]
        if in_flight:
            logger.info(
                "Waiting for in-flight poll cycles",
                extra={"count": len(in_flight), "grace_seconds": grace},
            )
            _, pending = await asyncio.wait(in_flight, timeout=grace)
            if pending:
                logger.warning(
                    "Cancelling poll cycles that outlived the grace period",
                    extra={"count": len(pending)},
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        self._running = False
        logger.info("RelayScheduler stopped")


__all__ = ["RelayScheduler", "SourceState"]
