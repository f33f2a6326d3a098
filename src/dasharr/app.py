"""
Composition root for the metrics engine.

Application builds every component from an AppConfig, wires them together
and owns their lifetimes:

    CredentialCipher -> MetricsStore -> MetricsCollector -> MetricsScheduler
                        MetricsCache ---^                   MetricsPusher (optional)

main() is the console entry point.
"""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import TYPE_CHECKING

import yaml
from pydantic import ValidationError

from dasharr.config import AppConfig, load_config, parse_cli_args
from dasharr.errors import DasharrError, MigrationError
from dasharr.logging import get_logger, setup_logging
from dasharr.metrics.adapters import AdapterRegistry
from dasharr.metrics.cache import MetricsCache
from dasharr.metrics.collector import MetricsCollector
from dasharr.metrics.instances import sync_instances_from_env
from dasharr.metrics.pusher import MetricsPusher
from dasharr.metrics.scheduler import MetricsScheduler
from dasharr.metrics.storage import MetricsStore
from dasharr.security.cipher import CredentialCipher

if TYPE_CHECKING:
    from dasharr.metrics.collector import Snapshot

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2


class Application:
    """
    Builds and runs the engine.

    Example:
        >>> app = Application(load_config(cli_args=[]))
        >>> app.registry.register(RadarrAdapter())
        >>> await app.run_forever()
    """

    def __init__(self, config: AppConfig, registry: AdapterRegistry | None = None) -> None:
        self.config = config
        self.cipher = CredentialCipher.from_config(config.encryption)
        self.store = MetricsStore.from_config(config, self.cipher)
        self.cache = MetricsCache.from_config(config.cache)
        self.registry = registry if registry is not None else AdapterRegistry()
        self.collector = MetricsCollector(
            self.store,
            self.registry,
            self.cache,
            adapter_timeout_seconds=config.metrics.adapter_timeout_seconds,
            memory_pressure_mb=config.cache.memory_pressure_mb,
        )
        self.pusher = self._build_pusher(config)
        self.scheduler = MetricsScheduler(
            self.collector,
            self.store,
            config.metrics,
            pusher=self.pusher,
        )
        self._shutdown_event = asyncio.Event()

    @staticmethod
    def _build_pusher(config: AppConfig) -> MetricsPusher | None:
        if not config.push.enabled:
            return None
        if not config.push.target_url:
            logger.warning("Metrics push is enabled but no target URL is set, push disabled")
            return None
        return MetricsPusher.from_config(config.push)

    async def setup(self) -> None:
        """
        Open the store and import instances from the environment.

        Raises:
            MigrationError: If the database cannot be migrated.
        """
        await self.store.initialize()
        await sync_instances_from_env(self.store)

    async def start(self) -> None:
        await self.setup()
        await self.cache.start()
        await self.scheduler.start()

    async def stop(self) -> None:
        """Stop every component. Safe to call more than once."""
        await self.scheduler.stop()
        await self.cache.stop()
        await self.store.close()

    def request_shutdown(self) -> None:
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    async def run_once(self) -> Snapshot | None:
        """Run a single collection cycle, then shut down."""
        try:
            await self.setup()
            return await self.scheduler.run_once()
        finally:
            await self.stop()

    async def run_forever(self) -> None:
        """Run until SIGINT or SIGTERM."""
        loop = asyncio.get_running_loop()
        try:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self.request_shutdown)
        except (ValueError, NotImplementedError):
            # Signal handling not supported on this platform
            pass

        try:
            await self.start()
            await self._shutdown_event.wait()
        finally:
            await self.stop()


def main(argv: list[str] | None = None) -> int:
    """
    Console entry point.

    Returns:
        Process exit status.
    """
    cli = parse_cli_args(argv)
    try:
        config = load_config(cli_config=cli)
    except (FileNotFoundError, yaml.YAMLError, ValidationError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    setup_logging(config.logging)

    app = Application(config)
    app.registry.load_entry_points()
    if not len(app.registry):
        logger.warning("No service adapters registered, nothing will be collected")

    try:
        if cli.get("_once"):
            asyncio.run(app.run_once())
        else:
            asyncio.run(app.run_forever())
    except MigrationError as e:
        logger.critical("Database migration failed", extra={"error": str(e), **e.details})
        return EXIT_FAILURE
    except DasharrError as e:
        logger.critical(
            "Fatal error",
            extra={"error_code": e.error_code, "error": e.message, "details": e.details},
        )
        return EXIT_FAILURE

    return EXIT_OK
