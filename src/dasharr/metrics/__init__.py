"""
Metrics collection and storage.

- storage: SQLite-backed store for instances, settings and samples
- cache: bounded in-memory snapshot cache
- adapters: service adapter contract and registry
- collector: concurrent collection cycle producing snapshots
- scheduler: periodic driver with housekeeping
- pusher: HTTP sink for snapshots
- instances: environment-variable bootstrap of service instances
"""

from dasharr.metrics.adapters import AdapterRegistry, MetricsAdapter
from dasharr.metrics.cache import MetricsCache
from dasharr.metrics.collector import MetricsCollector, Snapshot
from dasharr.metrics.pusher import MetricsPusher
from dasharr.metrics.scheduler import MetricsScheduler, SchedulerState, SchedulerStatus
from dasharr.metrics.storage import (
    AggregationResult,
    MetricSample,
    MetricsStore,
    ServiceInstance,
)

__all__ = [
    "AdapterRegistry",
    "AggregationResult",
    "MetricSample",
    "MetricsAdapter",
    "MetricsCache",
    "MetricsCollector",
    "MetricsPusher",
    "MetricsScheduler",
    "MetricsStore",
    "SchedulerState",
    "SchedulerStatus",
    "ServiceInstance",
    "Snapshot",
]
