"""
Bounded in-memory cache for collection snapshots.

Entries are sized by their JSON encoding. The cache enforces two limits:
- age: entries older than max_age_seconds are dropped on cleanup and on read
- size: when an insert pushes the total over max_size_bytes, cleanup runs and,
  if still needed, evicts oldest entries until usage is at most 80% of the limit

A background sweep runs every cleanup_interval_seconds while started.
"""

from __future__ import annotations

import asyncio
import json
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from dasharr.logging import get_logger

if TYPE_CHECKING:
    from dasharr.config import CacheConfig

logger = get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

BYTES_PER_MB = 1024 * 1024
DEFAULT_MAX_SIZE_BYTES = 50 * BYTES_PER_MB
DEFAULT_MAX_AGE_SECONDS = 30 * 60
DEFAULT_CLEANUP_INTERVAL = 300  # seconds

# Eviction stops once usage is at or below this fraction of the limit
EVICTION_TARGET_RATIO = 0.8


@dataclass
class CacheEntry:
    """A cached value with its bookkeeping."""

    key: str
    data: Any
    stored_at: float
    size_bytes: int


def estimate_size(data: Any) -> int:
    """Size of data in bytes, measured by its UTF-8 JSON encoding."""
    return len(json.dumps(data, default=str).encode("utf-8"))


class MetricsCache:
    """
    Process-local cache keyed by string.

    All access to the entry map is guarded by a lock, so the cache can be
    used from executor threads as well as from the event loop.

    Example:
        >>> cache = MetricsCache(max_size_bytes=1024 * 1024)
        >>> cache.store("metrics_2024-01-01T00:00:00+00:00", {"radarr1": {"movies": 10}})
        >>> cache.get("metrics_2024-01-01T00:00:00+00:00")
        {'radarr1': {'movies': 10}}
    """

    def __init__(
        self,
        *,
        max_size_bytes: int = DEFAULT_MAX_SIZE_BYTES,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        cleanup_interval_seconds: float = DEFAULT_CLEANUP_INTERVAL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_size_bytes = max_size_bytes
        self.max_age_seconds = max_age_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._clock = clock

        self._entries: dict[str, CacheEntry] = {}
        self._total_size = 0
        self._lock = threading.Lock()
        self._last_cleanup = clock()

        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @classmethod
    def from_config(cls, config: CacheConfig) -> MetricsCache:
        """Create a MetricsCache from configuration."""
        return cls(
            max_size_bytes=int(config.max_size_mb * BYTES_PER_MB),
            max_age_seconds=config.max_age_minutes * 60,
            cleanup_interval_seconds=config.cleanup_interval_seconds,
        )

    @property
    def total_size_bytes(self) -> int:
        """Aggregate size of all entries."""
        return self._total_size

    def __len__(self) -> int:
        return len(self._entries)

    def store(self, key: str, data: Any) -> None:
        """
        Store data under key, replacing any previous entry.

        Triggers a cleanup when the new total exceeds the size limit.
        """
        size = estimate_size(data)
        with self._lock:
            previous = self._entries.pop(key, None)
            if previous is not None:
                self._total_size -= previous.size_bytes
            self._entries[key] = CacheEntry(
                key=key, data=data, stored_at=self._clock(), size_bytes=size
            )
            self._total_size += size

            if self._total_size > self.max_size_bytes:
                logger.info(
                    "Cache size limit exceeded, running cleanup",
                    extra={
                        "total_size_bytes": self._total_size,
                        "max_size_bytes": self.max_size_bytes,
                    },
                )
                self._cleanup_locked()

    def get(self, key: str) -> Any:
        """Return the data stored under key, or None when missing or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.stored_at > self.max_age_seconds:
                self._remove_locked(key)
                return None
            return entry.data

    def _remove_locked(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._total_size -= entry.size_bytes

    def _cleanup_locked(self) -> int:
        now = self._clock()
        removed = 0

        for key in [k for k, e in self._entries.items() if now - e.stored_at > self.max_age_seconds]:
            self._remove_locked(key)
            removed += 1

        if self._total_size > self.max_size_bytes:
            target = self.max_size_bytes * EVICTION_TARGET_RATIO
            for entry in sorted(self._entries.values(), key=lambda e: e.stored_at):
                if self._total_size <= target:
                    break
                self._remove_locked(entry.key)
                removed += 1

        self._last_cleanup = now
        if removed:
            logger.info(
                "Cache cleanup completed",
                extra={
                    "removed": removed,
                    "entries": len(self._entries),
                    "total_size_bytes": self._total_size,
                },
            )
        return removed

    def perform_cleanup(self) -> int:
        """
        Drop expired entries, then evict oldest entries while over the limit.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            return self._cleanup_locked()

    def clear_all(self) -> int:
        """Remove every entry and return how many there were."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._total_size = 0
        logger.info("Cache cleared", extra={"removed": count})
        return count

    def get_stats(self) -> dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Entry count, sizes, utilization and the age of the oldest entry.
        """
        with self._lock:
            now = self._clock()
            oldest = min((e.stored_at for e in self._entries.values()), default=None)
            return {
                "entries": len(self._entries),
                "total_size_bytes": self._total_size,
                "total_size_mb": round(self._total_size / BYTES_PER_MB, 2),
                "max_size_mb": round(self.max_size_bytes / BYTES_PER_MB, 2),
                "utilization_percent": round(self._total_size / self.max_size_bytes * 100, 1),
                "oldest_entry_age_seconds": now - oldest if oldest is not None else None,
                "last_cleanup": self._last_cleanup,
            }

    # -------------------------------------------------------------------------
    # Background sweep
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        """Whether the background sweep is active."""
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background sweep. No-op if already running."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._sweep_loop())
        logger.debug(
            "Cache cleanup started",
            extra={"interval_seconds": self.cleanup_interval_seconds},
        )

    async def stop(self) -> None:
        """Stop the background sweep. Idempotent."""
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=10.0)
        except TimeoutError:
            self._task.cancel()
        self._task = None

    async def _sweep_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self.cleanup_interval_seconds,
                )
                break
            except TimeoutError:
                # Skip if a size-triggered cleanup ran recently
                if self._clock() - self._last_cleanup < self.cleanup_interval_seconds:
                    continue
                self.perform_cleanup()
