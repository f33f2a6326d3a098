"""
Collection orchestrator.

MetricsCollector runs one collection cycle: it reads the enabled service
instances from the store, calls the matching adapter for each of them
concurrently, and merges the results into a Snapshot. The snapshot is then
persisted, cached and returned.

Guarantees:
- at most one cycle runs at a time (a second call fails fast)
- one failing or slow instance never affects the others
- every sample of a snapshot carries the snapshot's timestamp
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import psutil

from dasharr.errors import CollectionInProgressError, DasharrError
from dasharr.logging import get_logger

if TYPE_CHECKING:
    from dasharr.metrics.adapters import AdapterRegistry, MetricsAdapter
    from dasharr.metrics.cache import MetricsCache
    from dasharr.metrics.storage import MetricsStore, ServiceInstance

logger = get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

CACHE_KEY_PREFIX = "metrics_"
DEFAULT_MEMORY_PRESSURE_MB = 400
BYTES_PER_MB = 1024 * 1024


# =============================================================================
# Data Models
# =============================================================================


@dataclass
class Snapshot:
    """The merged result of one collection cycle.

    Attributes:
        timestamp: Start of the cycle, ISO 8601 in UTC.
        unix_timestamp: Start of the cycle, Unix seconds.
        collection_duration_ms: Wall time of the cycle.
        metrics: Metrics per instance id, successful instances only.
        succeeded: Instance ids that returned metrics.
        failed: Instance ids whose adapter raised or timed out.
        skipped: Instance ids that were not called (no adapter or incomplete config).
    """

    timestamp: str
    unix_timestamp: int
    collection_duration_ms: int = 0
    metrics: dict[str, dict[str, Any]] = field(default_factory=dict)
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def cache_key(self) -> str:
        return f"{CACHE_KEY_PREFIX}{self.timestamp}"

    def to_dict(self) -> dict[str, Any]:
        """Wire form: timestamp and duration next to one key per instance."""
        return {
            "timestamp": self.timestamp,
            "collection_duration_ms": self.collection_duration_ms,
            **self.metrics,
        }


# =============================================================================
# MetricsCollector Class
# =============================================================================


class MetricsCollector:
    """
    Fans out to the adapters of all enabled instances and merges the results.

    Example:
        >>> collector = MetricsCollector(store, registry, cache)
        >>> snapshot = await collector.collect_all()
        >>> sorted(snapshot.metrics)
        ['radarr1', 'sonarr1']
    """

    def __init__(
        self,
        store: MetricsStore,
        registry: AdapterRegistry,
        cache: MetricsCache | None = None,
        *,
        adapter_timeout_seconds: float | None = None,
        memory_pressure_mb: int = DEFAULT_MEMORY_PRESSURE_MB,
    ) -> None:
        """
        Initialize the MetricsCollector.

        Args:
            store: Store to read instances from and persist samples to.
            registry: Adapters by service type.
            cache: Optional snapshot cache.
            adapter_timeout_seconds: Cap on a single adapter call, None leaves
                timeouts to the adapters.
            memory_pressure_mb: Process RSS above which the cache is cleaned
                after a cycle.
        """
        self._store = store
        self._registry = registry
        self._cache = cache
        self._adapter_timeout = adapter_timeout_seconds
        self._memory_pressure_bytes = memory_pressure_mb * BYTES_PER_MB
        self._collecting = False
        self._last_snapshot: Snapshot | None = None
        self._process = psutil.Process()

    @property
    def is_collecting(self) -> bool:
        """Whether a cycle is in progress."""
        return self._collecting

    @property
    def last_snapshot(self) -> Snapshot | None:
        """The snapshot of the most recent completed cycle."""
        return self._last_snapshot

    async def get_configured_services(self) -> list[str]:
        """Service types with at least one enabled, fully configured instance."""
        instances = await self._store.get_all_service_instances()
        return sorted(
            {instance.service_type for instance in instances if self._is_configured(instance)}
        )

    def _is_configured(self, instance: ServiceInstance) -> bool:
        adapter = self._registry.get(instance.service_type)
        if adapter is not None:
            return not adapter.missing_fields(instance)
        if not instance.url:
            return False
        return bool(instance.api_key or (instance.username and instance.password))

    async def collect_all(self) -> Snapshot:
        """
        Run one collection cycle.

        Returns:
            The merged snapshot.

        Raises:
            CollectionInProgressError: If a cycle is already running.
        """
        if self._collecting:
            raise CollectionInProgressError()

        # Set before the first await so a concurrent caller sees it
        self._collecting = True
        try:
            snapshot = await self._collect()
        finally:
            self._collecting = False

        self._last_snapshot = snapshot
        return snapshot

    async def _collect(self) -> Snapshot:
        started_at = datetime.now(UTC)
        start = time.perf_counter()
        snapshot = Snapshot(
            timestamp=started_at.isoformat(),
            unix_timestamp=int(started_at.timestamp()),
        )

        logger.info("Starting metrics collection")

        instances = await self._store.get_all_service_instances()
        jobs: list[tuple[ServiceInstance, MetricsAdapter]] = []
        for instance in instances:
            adapter = self._registry.get(instance.service_type)
            if adapter is None:
                logger.warning(
                    "No adapter for service type, skipping instance",
                    extra={"instance_id": instance.id, "service_type": instance.service_type},
                )
                snapshot.skipped.append(instance.id)
                continue
            missing = adapter.missing_fields(instance)
            if missing:
                logger.warning(
                    "Skipping instance with incomplete configuration",
                    extra={"instance_id": instance.id, "missing": missing},
                )
                snapshot.skipped.append(instance.id)
                continue
            jobs.append((instance, adapter))

        results = await asyncio.gather(
            *(self._collect_one(instance, adapter) for instance, adapter in jobs),
            return_exceptions=True,
        )

        for (instance, _), result in zip(jobs, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Failed to collect metrics from instance",
                    extra={
                        "instance_id": instance.id,
                        "instance_name": instance.name,
                        "service_type": instance.service_type,
                        "error": str(result) or type(result).__name__,
                    },
                )
                snapshot.failed.append(instance.id)
            else:
                snapshot.metrics[instance.id] = result
                snapshot.succeeded.append(instance.id)

        snapshot.collection_duration_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            "Metrics collection completed",
            extra={
                "duration_ms": snapshot.collection_duration_ms,
                "succeeded": len(snapshot.succeeded),
                "failed": len(snapshot.failed),
                "skipped": len(snapshot.skipped),
            },
        )

        try:
            await self._store.insert_metrics(snapshot.metrics, timestamp=snapshot.unix_timestamp)
        except DasharrError as e:
            logger.error("Failed to store metrics", extra={"error": str(e)})

        if self._cache is not None:
            self._cache.store(snapshot.cache_key, snapshot.to_dict())
            self._check_memory_pressure()

        return snapshot

    async def _collect_one(self, instance: ServiceInstance, adapter: MetricsAdapter) -> dict[str, Any]:
        if self._adapter_timeout is None:
            return await adapter.collect(instance)
        return await asyncio.wait_for(adapter.collect(instance), timeout=self._adapter_timeout)

    def _check_memory_pressure(self) -> None:
        try:
            rss = self._process.memory_info().rss
        except psutil.Error as e:
            logger.debug("Could not read process memory usage", extra={"error": str(e)})
            return

        if rss > self._memory_pressure_bytes and self._cache is not None:
            logger.warning(
                "High memory usage, cleaning up cache",
                extra={"rss_mb": round(rss / BYTES_PER_MB, 1)},
            )
            self._cache.perform_cleanup()
