"""
Service adapter contract and registry.

An adapter knows how to talk to one kind of service (Radarr, Plex, ...) and
returns that service's metrics as an already-parsed dict. The collector only
depends on this contract:

    async collect(instance) -> dict[str, Any]    # raises on failure

Values may be nested dicts; they are flattened to dotted metric names when
stored. Adapters are registered per service type, either directly or through
the "dasharr.adapters" entry point group.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from importlib.metadata import entry_points
from typing import TYPE_CHECKING, Any

from dasharr.logging import get_logger

if TYPE_CHECKING:
    from dasharr.metrics.storage import ServiceInstance

logger = get_logger(__name__)

ENTRY_POINT_GROUP = "dasharr.adapters"


class MetricsAdapter(ABC):
    """
    Abstract base class for service adapters.

    Subclasses set service_type and implement collect(). required_fields
    names the ServiceInstance attributes that must be non-empty for the
    adapter to be called at all; override it for services that authenticate
    with a username and password instead of an API key.
    """

    service_type: str = ""
    required_fields: tuple[str, ...] = ("url", "api_key")

    @abstractmethod
    async def collect(self, instance: ServiceInstance) -> dict[str, Any]:
        """
        Collect the current metrics of one instance.

        Args:
            instance: The instance to query, credentials decrypted.

        Returns:
            Metrics dict, possibly nested.

        Raises:
            Exception: Any failure; the collector isolates it per instance.
        """

    def missing_fields(self, instance: ServiceInstance) -> list[str]:
        """Return the required fields that are empty on instance."""
        return [name for name in self.required_fields if not getattr(instance, name, None)]


class AdapterRegistry:
    """
    Maps service types to adapters.

    Example:
        >>> registry = AdapterRegistry()
        >>> registry.register(RadarrAdapter())
        >>> registry.get("radarr")
        <RadarrAdapter ...>
    """

    def __init__(self, adapters: list[MetricsAdapter] | None = None) -> None:
        self._adapters: dict[str, MetricsAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: MetricsAdapter, service_type: str | None = None) -> None:
        """Register adapter for service_type, defaulting to adapter.service_type."""
        key = service_type or adapter.service_type
        if not key:
            raise ValueError(f"Adapter {type(adapter).__name__} has no service type")
        if key in self._adapters:
            logger.warning("Replacing registered adapter", extra={"service_type": key})
        self._adapters[key] = adapter

    def get(self, service_type: str) -> MetricsAdapter | None:
        return self._adapters.get(service_type)

    def service_types(self) -> list[str]:
        """Registered service types, sorted."""
        return sorted(self._adapters)

    def __contains__(self, service_type: object) -> bool:
        return service_type in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)

    def load_entry_points(self, group: str = ENTRY_POINT_GROUP) -> int:
        """
        Register every adapter class published under an entry point group.

        The entry point name is the service type. Adapters that fail to load
        are logged and skipped.

        Returns:
            Number of adapters registered.
        """
        loaded = 0
        for entry_point in entry_points(group=group):
            try:
                adapter_cls = entry_point.load()
                self.register(adapter_cls(), entry_point.name)
            except Exception as e:
                logger.error(
                    "Failed to load adapter",
                    extra={"service_type": entry_point.name, "error": str(e)},
                )
                continue
            loaded += 1

        if loaded:
            logger.info(
                "Loaded service adapters",
                extra={"count": loaded, "service_types": self.service_types()},
            )
        return loaded
