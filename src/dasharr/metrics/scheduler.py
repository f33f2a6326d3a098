"""
Periodic collection scheduler using asyncio.

This module implements the MetricsScheduler class that:
- Runs one collection immediately on start, then one per interval
- Skips (and counts) ticks that arrive while a collection is still running
- Logs store statistics and enforces retention as occasional housekeeping
- Hands every completed snapshot to the optional push sink
"""

from __future__ import annotations

import asyncio
import random
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from dasharr.errors import CollectionInProgressError, DasharrError, InvalidArgumentError
from dasharr.logging import get_logger

if TYPE_CHECKING:
    from dasharr.config import MetricsConfig
    from dasharr.metrics.collector import MetricsCollector, Snapshot
    from dasharr.metrics.pusher import MetricsPusher
    from dasharr.metrics.storage import MetricsStore

logger = get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

DEFAULT_COLLECTION_INTERVAL = 60  # seconds
MIN_COLLECTION_INTERVAL = 5  # seconds
MAX_COLLECTION_INTERVAL = 3600  # seconds (1 hour)

DEFAULT_RETENTION_DAYS = 30
DEFAULT_CLEANUP_EVERY_CYCLES = 100
DEFAULT_CLEANUP_PROBABILITY = 0.01
DEFAULT_STATS_LOG_PROBABILITY = 0.1

# Setting that overrides the configured interval
INTERVAL_SETTING_KEY = "metricsCollectionInterval"

STOP_TIMEOUT = 10.0  # seconds


# =============================================================================
# Enums and Data Models
# =============================================================================


class SchedulerStatus(str, Enum):
    """Status of the collection scheduler."""

    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class SchedulerState:
    """
    Current state of the collection scheduler.

    Attributes:
        status: Current scheduler status.
        job_id: Identifier of the current run.
        interval_seconds: Collection interval.
        started_at: When the scheduler was started.
        last_collection_at: When the last cycle completed.
        last_duration_ms: Duration of the last completed cycle.
        cycle_count: Completed cycles.
        skipped_ticks: Ticks skipped because a cycle was still running.
        error_count: Cycles that failed.
        last_error: Last error message if any.
    """

    status: SchedulerStatus = SchedulerStatus.STOPPED
    job_id: str | None = None
    interval_seconds: int = DEFAULT_COLLECTION_INTERVAL
    started_at: datetime | None = None
    last_collection_at: datetime | None = None
    last_duration_ms: int | None = None
    cycle_count: int = 0
    skipped_ticks: int = 0
    error_count: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "status": self.status.value,
            "job_id": self.job_id,
            "interval_seconds": self.interval_seconds,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_collection_at": (
                self.last_collection_at.isoformat() if self.last_collection_at else None
            ),
            "last_duration_ms": self.last_duration_ms,
            "cycle_count": self.cycle_count,
            "skipped_ticks": self.skipped_ticks,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }


# =============================================================================
# MetricsScheduler Class
# =============================================================================


class MetricsScheduler:
    """
    Drives the collector on a fixed interval.

    A tick never waits for the previous cycle: when a cycle is still in
    flight the tick is skipped, so a slow service cannot make collections
    pile up.

    Example:
        >>> scheduler = MetricsScheduler(collector, store, config.metrics, pusher=pusher)
        >>> await scheduler.start()
        >>> scheduler.get_status().status
        <SchedulerStatus.RUNNING: 'running'>
        >>> await scheduler.stop()
    """

    def __init__(
        self,
        collector: MetricsCollector,
        store: MetricsStore,
        config: MetricsConfig | None = None,
        *,
        pusher: MetricsPusher | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """
        Initialize the MetricsScheduler.

        Args:
            collector: Collector run on each tick.
            store: Store used for housekeeping and the interval setting.
            config: Optional MetricsConfig for interval, retention and housekeeping.
            pusher: Optional sink for completed snapshots.
            rng: Random source for probabilistic housekeeping.
        """
        self._collector = collector
        self._store = store
        self._config = config
        self._pusher = pusher
        self._rng = rng or random.Random()
        self._state = SchedulerState()
        self._task: asyncio.Task[None] | None = None
        self._cycle_task: asyncio.Task[Snapshot | None] | None = None
        self._stop_event = asyncio.Event()
        self._lock = asyncio.Lock()

        if config:
            self._state.interval_seconds = config.collection_interval_seconds

    @property
    def is_running(self) -> bool:
        """Check if the scheduler is currently running."""
        return self._state.status == SchedulerStatus.RUNNING

    def get_status(self) -> SchedulerState:
        """
        Get the current scheduler state.

        Returns:
            Copy of the current SchedulerState.
        """
        return SchedulerState(**vars(self._state))

    async def get_collection_interval(self) -> int:
        """
        Resolve the collection interval.

        The "metricsCollectionInterval" setting wins over configuration;
        without either the interval is 60 seconds.
        """
        try:
            value = await self._store.get_setting(INTERVAL_SETTING_KEY)
        except DasharrError as e:
            logger.warning("Could not read interval setting", extra={"error": str(e)})
            value = None

        if value is not None:
            try:
                interval = int(value)
            except (TypeError, ValueError):
                interval = 0
            if MIN_COLLECTION_INTERVAL <= interval <= MAX_COLLECTION_INTERVAL:
                logger.debug("Using interval from settings", extra={"interval_seconds": interval})
                return interval
            logger.warning(
                "Ignoring invalid interval setting",
                extra={"key": INTERVAL_SETTING_KEY, "value": value},
            )

        if self._config is not None:
            return self._config.collection_interval_seconds
        return DEFAULT_COLLECTION_INTERVAL

    async def start(self, interval_seconds: int | None = None) -> SchedulerState:
        """
        Start the scheduler, replacing any loop that is already running.

        One collection starts immediately; start() does not wait for it.

        Args:
            interval_seconds: Collection interval (5-3600 seconds). Resolved
                with get_collection_interval() when omitted.

        Returns:
            Current SchedulerState after starting.

        Raises:
            InvalidArgumentError: If the interval is out of range.
        """
        async with self._lock:
            if interval_seconds is None:
                interval_seconds = await self.get_collection_interval()
            if not MIN_COLLECTION_INTERVAL <= interval_seconds <= MAX_COLLECTION_INTERVAL:
                raise InvalidArgumentError(
                    f"interval_seconds must be between {MIN_COLLECTION_INTERVAL} "
                    f"and {MAX_COLLECTION_INTERVAL}",
                    details={"interval_seconds": interval_seconds},
                )

            if self._state.status != SchedulerStatus.STOPPED:
                await self._stop_locked()

            self._state = SchedulerState(
                status=SchedulerStatus.RUNNING,
                job_id=str(uuid.uuid4())[:8],
                interval_seconds=interval_seconds,
                started_at=datetime.now(UTC),
            )
            self._stop_event.clear()
            self._task = asyncio.create_task(self._scheduling_loop())

            logger.info(
                "Metrics scheduler started",
                extra={"job_id": self._state.job_id, "interval_seconds": interval_seconds},
            )
            return self.get_status()

    async def stop(self) -> SchedulerState:
        """
        Stop the scheduler gracefully. Idempotent.

        Waits for an in-flight cycle to finish, cancelling it after a timeout.

        Returns:
            Current SchedulerState after stopping.
        """
        async with self._lock:
            if self._state.status == SchedulerStatus.STOPPED:
                return self.get_status()
            await self._stop_locked()
            return self.get_status()

    async def _stop_locked(self) -> None:
        self._state.status = SchedulerStatus.STOPPING
        self._stop_event.set()

        for task in (self._task, self._cycle_task):
            if task is None or task.done():
                continue
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=STOP_TIMEOUT)
            except TimeoutError:
                logger.warning("Scheduler task did not stop gracefully, cancelling")
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.error(
                        "Exception during scheduler task cancellation",
                        extra={"error": str(e), "job_id": self._state.job_id},
                    )
        self._task = None
        self._cycle_task = None
        self._state.status = SchedulerStatus.STOPPED

        logger.info(
            "Metrics scheduler stopped",
            extra={"job_id": self._state.job_id, "cycle_count": self._state.cycle_count},
        )

    async def _scheduling_loop(self) -> None:
        while not self._stop_event.is_set():
            self._tick()
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=float(self._state.interval_seconds),
                )
                break
            except TimeoutError:
                continue

    def _tick(self) -> None:
        in_flight = self._cycle_task is not None and not self._cycle_task.done()
        if in_flight or self._collector.is_collecting:
            self._state.skipped_ticks += 1
            logger.warning(
                "Previous collection still in progress, skipping this cycle",
                extra={"job_id": self._state.job_id, "skipped_ticks": self._state.skipped_ticks},
            )
            return
        self._cycle_task = asyncio.create_task(self.run_once())

    async def run_once(self) -> Snapshot | None:
        """
        Run one collection cycle with housekeeping and push.

        Failures are recorded in the state and logged, never raised.

        Returns:
            The snapshot, or None if the cycle was skipped or failed.
        """
        try:
            snapshot = await self._collector.collect_all()
        except CollectionInProgressError:
            self._state.skipped_ticks += 1
            logger.warning("Previous collection still in progress, skipping this cycle")
            return None
        except Exception as e:
            self._state.error_count += 1
            self._state.last_error = str(e)
            logger.error(
                "Metrics collection failed",
                extra={"error": str(e), "job_id": self._state.job_id},
            )
            return None

        self._state.cycle_count += 1
        self._state.last_collection_at = datetime.now(UTC)
        self._state.last_duration_ms = snapshot.collection_duration_ms
        logger.info(
            "Metrics collection cycle completed",
            extra={
                "job_id": self._state.job_id,
                "duration_ms": snapshot.collection_duration_ms,
                "instances_collected": len(snapshot.metrics),
                "snapshot_timestamp": snapshot.timestamp,
            },
        )

        await self._housekeeping()

        if self._pusher is not None:
            await self._pusher.maybe_push(snapshot)

        return snapshot

    async def _housekeeping(self) -> None:
        stats_probability = (
            self._config.stats_log_probability if self._config else DEFAULT_STATS_LOG_PROBABILITY
        )
        cleanup_probability = (
            self._config.cleanup_probability if self._config else DEFAULT_CLEANUP_PROBABILITY
        )
        cleanup_every = (
            self._config.cleanup_every_cycles if self._config else DEFAULT_CLEANUP_EVERY_CYCLES
        )

        try:
            if self._rng.random() < stats_probability:
                stats = await self._store.get_stats()
                logger.info("Current database statistics", extra=stats)

            if (
                self._rng.random() < cleanup_probability
                or self._state.cycle_count % cleanup_every == 0
            ):
                await self._enforce_retention()
        except DasharrError as e:
            logger.warning("Housekeeping failed", extra={"error": str(e)})

    async def _enforce_retention(self) -> None:
        retention_days = self._config.retention_days if self._config else DEFAULT_RETENTION_DAYS
        logger.info("Running periodic database cleanup", extra={"retention_days": retention_days})
        await self._store.cleanup_old_metrics(retention_days)
        await self._store.clear_expired_cache()
