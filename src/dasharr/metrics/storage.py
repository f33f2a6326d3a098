"""
SQLite-backed store for service instances, settings and metric samples.

This module implements the MetricsStore class that handles:
- Opening the connection pool and running schema migrations
- Typed key/value settings
- Service instances, with credentials encrypted at rest
- Appending metric samples from collection snapshots
- Latest values, history and aggregation queries
- Retention cleanup
- Logical backup and restore of the configuration tables
- UI preferences and the persisted response cache

Every statement goes through the ConnectionPool: reads on the read
connections, writes as single transactions on the write connection.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import math
import sqlite3
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

from dasharr.database.backup import BACKUP_VERSION, export_tables, import_tables
from dasharr.database.connection import ConnectionPool
from dasharr.database.migrations import SchemaMigrator, encrypt_stored_credentials
from dasharr.database.schema import STATS_TABLES
from dasharr.errors import InvalidArgumentError, MigrationError, StorageError
from dasharr.logging import get_logger
from dasharr.security.cipher import CredentialCipher

if TYPE_CHECKING:
    from dasharr.config import AppConfig

logger = get_logger(__name__)

T = TypeVar("T")

# =============================================================================
# Data Models
# =============================================================================


@dataclass
class ServiceInstance:
    """A configured connection to a media service.

    Attributes:
        id: Stable instance identifier (e.g. "radarr1").
        service_type: Adapter key (e.g. "radarr").
        name: Display name.
        url: Base URL of the service.
        api_key: API key, plaintext in memory.
        username: Username for services using basic credentials.
        password: Password, plaintext in memory.
        config: Free-form per-instance settings.
        enabled: Disabled instances are kept but not collected.
        created_at: Unix timestamp of creation.
        updated_at: Unix timestamp of the last update.
    """

    id: str
    service_type: str
    name: str
    url: str | None = None
    api_key: str | None = None
    username: str | None = None
    password: str | None = None
    config: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    created_at: int | None = None
    updated_at: int | None = None

    def to_dict(self, *, include_credentials: bool = False) -> dict[str, Any]:
        """Convert to dictionary for serialization, credentials redacted by default."""
        result: dict[str, Any] = {
            "id": self.id,
            "service_type": self.service_type,
            "name": self.name,
            "url": self.url,
            "username": self.username,
            "config": self.config,
            "enabled": self.enabled,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if include_credentials:
            result["api_key"] = self.api_key
            result["password"] = self.password
        return result


@dataclass
class MetricSample:
    """A single stored metric value.

    Attributes:
        instance_id: Instance the value was collected from.
        service_type: Service type of that instance at insert time.
        metric_name: Metric name, dotted for nested values (e.g. "queue.total").
        metric_value: The value.
        timestamp: Unix timestamp (seconds) of the collection cycle.
        id: Database ID.
    """

    instance_id: str
    service_type: str
    metric_name: str
    metric_value: float
    timestamp: int
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "service_type": self.service_type,
            "metric_name": self.metric_name,
            "metric_value": self.metric_value,
            "timestamp": self.timestamp,
        }


@dataclass
class AggregationResult:
    """Result of an aggregation query.

    Attributes:
        instance_id: The instance aggregated.
        metric_name: The metric aggregated.
        min_value: Minimum value in the range.
        max_value: Maximum value in the range.
        avg_value: Average value in the range.
        count: Number of samples in the range.
        start_time: Start of the time range.
        end_time: End of the time range.
    """

    instance_id: str
    metric_name: str
    min_value: float | None
    max_value: float | None
    avg_value: float | None
    count: int
    start_time: int
    end_time: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "instance_id": self.instance_id,
            "metric_name": self.metric_name,
            "min_value": self.min_value,
            "max_value": self.max_value,
            "avg_value": self.avg_value,
            "count": self.count,
            "start_time": self.start_time,
            "end_time": self.end_time,
        }


# =============================================================================
# Constants
# =============================================================================

# Precision for aggregation average values (number of decimal places)
AGGREGATION_PRECISION = 4

SECONDS_PER_DAY = 86400
LATEST_WINDOW_SECONDS = 3600

# Snapshot keys that are not instance ids
SNAPSHOT_RESERVED_KEYS = frozenset({"timestamp", "collection_duration_ms"})

DEFAULT_USER_ID = "default"


# =============================================================================
# Helpers
# =============================================================================


def flatten_metrics(metrics: Mapping[str, Any], prefix: str = "") -> Iterator[tuple[str, float]]:
    """
    Flatten a per-instance metrics dict into (name, value) pairs.

    Nested mappings become dotted names. Booleans, non-numeric values and
    non-finite floats are skipped.

    Example:
        >>> list(flatten_metrics({"queue": {"total": 3}, "online": True, "version": "5.1"}))
        [('queue.total', 3.0)]
    """
    for name, value in metrics.items():
        key = f"{prefix}{name}"
        if isinstance(value, Mapping):
            yield from flatten_metrics(value, f"{key}.")
        elif isinstance(value, bool):
            continue
        elif isinstance(value, (int, float)) and math.isfinite(value):
            yield key, float(value)


def _encode_setting(value: Any) -> tuple[str, str]:
    # bool is an int subclass, so it must be checked first
    if isinstance(value, bool):
        return ("true" if value else "false"), "boolean"
    if isinstance(value, (int, float)):
        return str(value), "number"
    if isinstance(value, str):
        return value, "string"
    return json.dumps(value), "json"


def _decode_setting(value: str, value_type: str | None) -> Any:
    if value_type == "boolean":
        return value == "true"
    if value_type == "number":
        try:
            return int(value)
        except ValueError:
            return float(value)
    if value_type == "json":
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            logger.warning("Invalid JSON setting value, returning raw string")
            return value
    return value


# =============================================================================
# MetricsStore Class
# =============================================================================


class MetricsStore:
    """
    Persistent store for the metrics engine.

    The store is constructed once by the application and shared by the
    collector and the scheduler.

    Example:
        >>> store = MetricsStore(ConnectionPool("/app/config/dasharr.db"), cipher)
        >>> await store.initialize()
        >>> await store.save_service_instance(
        ...     ServiceInstance(id="radarr1", service_type="radarr", name="Radarr",
        ...                     url="http://radarr:7878", api_key="abc")
        ... )
        >>> await store.insert_metrics({"radarr1": {"movies": 812}})
        1
    """

    def __init__(self, pool: ConnectionPool, cipher: CredentialCipher) -> None:
        """
        Initialize the MetricsStore.

        Args:
            pool: Connection pool for the database file (not yet opened).
            cipher: Cipher for credential fields.
        """
        self._pool = pool
        self._cipher = cipher
        self._initialized = False
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls, config: AppConfig, cipher: CredentialCipher | None = None
    ) -> MetricsStore:
        """Create a MetricsStore from configuration."""
        return cls(
            ConnectionPool.from_config(config.database),
            cipher or CredentialCipher.from_config(config.encryption),
        )

    @property
    def pool(self) -> ConnectionPool:
        """The underlying connection pool."""
        return self._pool

    async def initialize(self) -> None:
        """
        Open the database, apply the schema and run pending migrations.

        This method is idempotent and safe to call multiple times.

        Raises:
            UnavailableError: If the database cannot be opened.
            MigrationError: If a migration fails.
        """
        if self._initialized:
            return

        async with self._lock:
            if self._initialized:
                return

            await self._pool.open()
            migrator = SchemaMigrator(self._pool.get_write_connection(), self._cipher)
            try:
                version = await migrator.run_migrations()
            except MigrationError:
                await self._pool.close_all()
                raise
            except sqlite3.Error as e:
                await self._pool.close_all()
                raise StorageError(
                    f"Failed to initialize database: {e}",
                    details={"db_path": str(self._pool.db_path)},
                ) from e

            self._initialized = True
            stats = await self.get_stats()
            logger.info(
                "Database initialized",
                extra={"db_path": str(self._pool.db_path), "schema_version": version, **stats},
            )

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    async def _read(
        self,
        fn: Callable[[sqlite3.Connection], T],
        operation: str,
        details: dict[str, Any] | None = None,
    ) -> T:
        await self._ensure_initialized()
        try:
            return await self._pool.read(fn)
        except sqlite3.Error as e:
            logger.error(f"Failed to {operation}", extra={"error": str(e), **(details or {})})
            raise StorageError(f"Failed to {operation}: {e}", details=details) from e

    async def _write(
        self,
        fn: Callable[[sqlite3.Connection], T],
        operation: str,
        details: dict[str, Any] | None = None,
    ) -> T:
        await self._ensure_initialized()
        try:
            return await self._pool.transaction(fn)
        except sqlite3.Error as e:
            logger.error(f"Failed to {operation}", extra={"error": str(e), **(details or {})})
            raise StorageError(f"Failed to {operation}: {e}", details=details) from e

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    async def get_setting(self, key: str, default: Any = None) -> Any:
        """
        Read a typed setting.

        Args:
            key: Setting key.
            default: Returned when the setting does not exist.
        """

        def _get(conn: sqlite3.Connection) -> sqlite3.Row | None:
            return conn.execute("SELECT value, type FROM settings WHERE key = ?", (key,)).fetchone()

        row = await self._read(_get, "read setting", {"key": key})
        if row is None:
            return default
        return _decode_setting(row["value"], row["type"])

    async def set_setting(self, key: str, value: Any) -> None:
        """Write a setting; its type is recorded alongside the value."""
        encoded, value_type = _encode_setting(value)

        def _set(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO settings (key, value, type) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, type = excluded.type
                """,
                (key, encoded, value_type),
            )

        await self._write(_set, "write setting", {"key": key})

    async def get_all_settings(self) -> dict[str, Any]:
        rows = await self._read(
            lambda conn: conn.execute("SELECT key, value, type FROM settings").fetchall(),
            "read settings",
        )
        return {row["key"]: _decode_setting(row["value"], row["type"]) for row in rows}

    # -------------------------------------------------------------------------
    # Service instances
    # -------------------------------------------------------------------------

    def _row_to_instance(self, row: sqlite3.Row) -> ServiceInstance:
        config: dict[str, Any] = {}
        if row["config_json"]:
            with contextlib.suppress(json.JSONDecodeError):
                config = json.loads(row["config_json"])
        return ServiceInstance(
            id=row["id"],
            service_type=row["service_type"],
            name=row["name"],
            url=row["url"],
            api_key=self._cipher.decrypt(row["api_key"]),
            username=self._cipher.decrypt(row["username"]),
            password=self._cipher.decrypt(row["password"]),
            config=config,
            enabled=bool(row["enabled"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def save_service_instance(self, instance: ServiceInstance) -> None:
        """
        Create or update a service instance.

        api_key, username and password are encrypted before they are written. The
        original created_at is kept on update.

        Raises:
            InvalidArgumentError: If id, service_type or name is missing.
            EncryptionError: If a credential cannot be encrypted.
            StorageError: If the write fails.
        """
        if not instance.id or not instance.service_type or not instance.name:
            raise InvalidArgumentError(
                "Service instance requires id, service_type and name",
                details={"id": instance.id, "service_type": instance.service_type},
            )

        params = (
            instance.id,
            instance.service_type,
            instance.name,
            instance.url,
            self._cipher.encrypt(instance.api_key),
            self._cipher.encrypt(instance.username),
            self._cipher.encrypt(instance.password),
            json.dumps(instance.config) if instance.config else None,
            1 if instance.enabled else 0,
        )

        def _save(conn: sqlite3.Connection) -> bool:
            existed = (
                conn.execute(
                    "SELECT 1 FROM service_instances WHERE id = ?", (instance.id,)
                ).fetchone()
                is not None
            )
            conn.execute(
                """
                INSERT INTO service_instances
                    (id, service_type, name, url, api_key, username, password,
                     config_json, enabled)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    service_type = excluded.service_type,
                    name = excluded.name,
                    url = excluded.url,
                    api_key = excluded.api_key,
                    username = excluded.username,
                    password = excluded.password,
                    config_json = excluded.config_json,
                    enabled = excluded.enabled
                """,
                params,
            )
            return existed

        existed = await self._write(_save, "save service instance", {"instance_id": instance.id})
        logger.info(
            "Service instance updated" if existed else "Service instance created",
            extra={
                "instance_id": instance.id,
                "service_type": instance.service_type,
                "instance_name": instance.name,
            },
        )

    async def get_service_instance(self, instance_id: str) -> ServiceInstance | None:
        """Get an instance by id, enabled or not."""

        def _get(conn: sqlite3.Connection) -> sqlite3.Row | None:
            return conn.execute(
                "SELECT * FROM service_instances WHERE id = ?", (instance_id,)
            ).fetchone()

        row = await self._read(_get, "read service instance", {"instance_id": instance_id})
        return self._row_to_instance(row) if row is not None else None

    async def get_all_service_instances(
        self, *, include_disabled: bool = False
    ) -> list[ServiceInstance]:
        """Get all instances ordered by type and name, enabled ones only by default."""
        sql = "SELECT * FROM service_instances"
        if not include_disabled:
            sql += " WHERE enabled = 1"
        sql += " ORDER BY service_type, name"

        rows = await self._read(
            lambda conn: conn.execute(sql).fetchall(), "read service instances"
        )
        return [self._row_to_instance(row) for row in rows]

    async def get_service_instances_by_type(self, service_type: str) -> list[ServiceInstance]:
        """Get the enabled instances of one service type."""

        def _get(conn: sqlite3.Connection) -> list[sqlite3.Row]:
            return conn.execute(
                """
                SELECT * FROM service_instances
                WHERE service_type = ? AND enabled = 1
                ORDER BY name
                """,
                (service_type,),
            ).fetchall()

        rows = await self._read(_get, "read service instances", {"service_type": service_type})
        return [self._row_to_instance(row) for row in rows]

    async def set_instance_enabled(self, instance_id: str, enabled: bool) -> bool:
        """
        Enable or disable an instance.

        Returns:
            True if the instance exists.
        """

        def _set(conn: sqlite3.Connection) -> int:
            return conn.execute(
                "UPDATE service_instances SET enabled = ? WHERE id = ?",
                (1 if enabled else 0, instance_id),
            ).rowcount

        changed = await self._write(_set, "update service instance", {"instance_id": instance_id})
        if changed:
            logger.info(
                "Service instance enabled" if enabled else "Service instance disabled",
                extra={"instance_id": instance_id},
            )
        return changed > 0

    async def delete_service_instance(self, instance_id: str) -> bool:
        """
        Delete an instance. Its stored samples are kept.

        Returns:
            True if the instance existed.
        """

        def _delete(conn: sqlite3.Connection) -> int:
            return conn.execute(
                "DELETE FROM service_instances WHERE id = ?", (instance_id,)
            ).rowcount

        deleted = await self._write(_delete, "delete service instance", {"instance_id": instance_id})
        if deleted:
            logger.info("Service instance deleted", extra={"instance_id": instance_id})
        return deleted > 0

    # -------------------------------------------------------------------------
    # Metrics
    # -------------------------------------------------------------------------

    async def insert_metrics(
        self,
        snapshot: Mapping[str, Any],
        *,
        timestamp: int | None = None,
    ) -> int:
        """
        Append the numeric values of a snapshot.

        Every row of one call shares a single timestamp and is written in one
        transaction. Instances that are not in service_instances are skipped.

        Args:
            snapshot: Mapping of instance id to that instance's metrics dict.
                The "timestamp" and "collection_duration_ms" keys of a
                snapshot's wire form are ignored.
            timestamp: Unix timestamp for the rows, defaults to now.

        Returns:
            Number of rows inserted.

        Raises:
            StorageError: If the write fails.
        """
        ts = int(timestamp if timestamp is not None else time.time())

        def _insert(conn: sqlite3.Connection) -> int:
            rows: list[tuple[str, str, str, float, int]] = []
            for instance_id, metrics in snapshot.items():
                if instance_id in SNAPSHOT_RESERVED_KEYS or not isinstance(metrics, Mapping):
                    continue
                row = conn.execute(
                    "SELECT service_type FROM service_instances WHERE id = ?", (instance_id,)
                ).fetchone()
                if row is None:
                    logger.warning(
                        "Skipping metrics for unknown instance",
                        extra={"instance_id": instance_id},
                    )
                    continue
                rows.extend(
                    (instance_id, row["service_type"], name, value, ts)
                    for name, value in flatten_metrics(metrics)
                )

            if rows:
                conn.executemany(
                    """
                    INSERT INTO metrics
                        (instance_id, service_type, metric_name, metric_value, timestamp)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    rows,
                )
            return len(rows)

        count = await self._write(_insert, "insert metrics", {"sample_timestamp": ts})
        if count == 0:
            logger.warning("No numeric metrics to insert", extra={"sample_timestamp": ts})
        else:
            logger.debug("Inserted metrics", extra={"count": count, "sample_timestamp": ts})
        return count

    async def get_latest_metrics(
        self,
        instance_id: str | None = None,
        *,
        window_seconds: int = LATEST_WINDOW_SECONDS,
    ) -> list[MetricSample]:
        """
        Get the most recent value of each (instance, metric) pair.

        Only samples newer than window_seconds are considered.

        Args:
            instance_id: Restrict to one instance.
            window_seconds: How far back to look.
        """
        cutoff = int(time.time()) - window_seconds
        conditions = ["timestamp > ?"]
        params: list[Any] = [cutoff]
        if instance_id is not None:
            conditions.append("instance_id = ?")
            params.append(instance_id)

        sql = f"""
            SELECT id, instance_id, service_type, metric_name, metric_value, timestamp
            FROM (
                SELECT *,
                    ROW_NUMBER() OVER (
                        PARTITION BY instance_id, metric_name
                        ORDER BY timestamp DESC, id DESC
                    ) AS rn
                FROM metrics
                WHERE {" AND ".join(conditions)}
            )
            WHERE rn = 1
            ORDER BY instance_id, metric_name
        """

        rows = await self._read(
            lambda conn: conn.execute(sql, params).fetchall(),
            "read latest metrics",
            {"instance_id": instance_id},
        )
        return [
            MetricSample(
                id=row["id"],
                instance_id=row["instance_id"],
                service_type=row["service_type"],
                metric_name=row["metric_name"],
                metric_value=row["metric_value"],
                timestamp=row["timestamp"],
            )
            for row in rows
        ]

    async def get_metric_history(
        self,
        instance_id: str,
        metric_name: str,
        hours: float = 24,
    ) -> list[tuple[int, float]]:
        """
        Get the (timestamp, value) series of one metric, oldest first.
        """
        cutoff = int(time.time() - hours * 3600)

        def _history(conn: sqlite3.Connection) -> list[tuple[int, float]]:
            cursor = conn.execute(
                """
                SELECT timestamp, metric_value FROM metrics
                WHERE instance_id = ? AND metric_name = ? AND timestamp > ?
                ORDER BY timestamp ASC
                """,
                (instance_id, metric_name, cutoff),
            )
            return [(row["timestamp"], row["metric_value"]) for row in cursor.fetchall()]

        return await self._read(
            _history,
            "read metric history",
            {"instance_id": instance_id, "metric_name": metric_name},
        )

    async def aggregate(
        self,
        instance_id: str,
        metric_name: str,
        start_time: int,
        end_time: int,
    ) -> AggregationResult:
        """
        Compute min, max, avg and count of one metric over a time range.

        The range is inclusive on both ends.

        Raises:
            InvalidArgumentError: If the range is empty.
            StorageError: If the query fails.
        """
        if start_time >= end_time:
            raise InvalidArgumentError(
                "start_time must be less than end_time",
                details={"start_time": start_time, "end_time": end_time},
            )

        def _aggregate(conn: sqlite3.Connection) -> sqlite3.Row:
            return conn.execute(
                """
                SELECT
                    MIN(metric_value) as min_value,
                    MAX(metric_value) as max_value,
                    AVG(metric_value) as avg_value,
                    COUNT(*) as count
                FROM metrics
                WHERE instance_id = ?
                  AND metric_name = ?
                  AND timestamp >= ?
                  AND timestamp <= ?
                """,
                (instance_id, metric_name, start_time, end_time),
            ).fetchone()

        row = await self._read(
            _aggregate,
            "aggregate metrics",
            {"instance_id": instance_id, "metric_name": metric_name},
        )
        return AggregationResult(
            instance_id=instance_id,
            metric_name=metric_name,
            min_value=row["min_value"],
            max_value=row["max_value"],
            avg_value=(
                round(row["avg_value"], AGGREGATION_PRECISION)
                if row["avg_value"] is not None
                else None
            ),
            count=row["count"],
            start_time=start_time,
            end_time=end_time,
        )

    async def cleanup_old_metrics(self, days_to_keep: int = 30, *, now: float | None = None) -> int:
        """
        Delete samples older than the retention period.

        A sample is deleted when timestamp < now - days_to_keep * 86400.

        Returns:
            Number of samples deleted.

        Raises:
            InvalidArgumentError: If days_to_keep is negative.
        """
        if days_to_keep < 0:
            raise InvalidArgumentError(
                "days_to_keep must be non-negative",
                details={"days_to_keep": days_to_keep},
            )

        cutoff = int(now if now is not None else time.time()) - days_to_keep * SECONDS_PER_DAY

        deleted = await self._write(
            lambda conn: conn.execute("DELETE FROM metrics WHERE timestamp < ?", (cutoff,)).rowcount,
            "clean up old metrics",
            {"days_to_keep": days_to_keep},
        )
        logger.info(
            "Cleaned up old metrics",
            extra={"deleted": deleted, "days_to_keep": days_to_keep, "cutoff": cutoff},
        )
        return deleted

    # -------------------------------------------------------------------------
    # Statistics, backup and restore
    # -------------------------------------------------------------------------

    async def get_stats(self) -> dict[str, int]:
        """
        Get row counts per table and the database size.

        Returns:
            {"<table>_count": n, ..., "database_size_bytes": n}
        """

        def _stats(conn: sqlite3.Connection) -> dict[str, int]:
            stats = {
                f"{table}_count": conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in STATS_TABLES
            }
            page_count = conn.execute("PRAGMA page_count").fetchone()[0]
            page_size = conn.execute("PRAGMA page_size").fetchone()[0]
            stats["database_size_bytes"] = page_count * page_size
            return stats

        return await self._read(_stats, "read database stats")

    async def backup(self) -> str:
        """
        Export settings, service instances and UI preferences as JSON.

        Credentials stay encrypted in the dump.
        """
        dump = await self._read(export_tables, "create backup")
        logger.info(
            "Backup created",
            extra={"service_instances": len(dump["service_instances"])},
        )
        return json.dumps(dump)

    async def restore(self, dump: str | Mapping[str, Any]) -> dict[str, int]:
        """
        Replace the configuration tables with the contents of a backup.

        Version 1 backups hold plaintext credentials, which are encrypted as
        part of the same transaction.

        Returns:
            Rows restored per table.

        Raises:
            InvalidArgumentError: If the dump is not a valid backup.
            StorageError: If the restore fails; nothing is changed then.
        """
        if isinstance(dump, str):
            try:
                data = json.loads(dump)
            except json.JSONDecodeError as e:
                raise InvalidArgumentError("Backup is not valid JSON", details={}) from e
        else:
            data = dict(dump)

        if not isinstance(data, dict):
            raise InvalidArgumentError("Backup must be a JSON object", details={})

        version = data.get("version")
        if version not in (1, BACKUP_VERSION):
            raise InvalidArgumentError(
                "Unsupported backup version",
                details={"version": version},
            )

        def _restore(conn: sqlite3.Connection) -> dict[str, int]:
            restored = import_tables(conn, data)
            if version == 1:
                encrypt_stored_credentials(conn, self._cipher)
            return restored

        restored = await self._write(_restore, "restore backup", {"version": version})
        logger.info("Backup restored", extra={"version": version, **restored})
        return restored

    # -------------------------------------------------------------------------
    # UI preferences
    # -------------------------------------------------------------------------

    async def get_ui_preference(
        self,
        page: str,
        key: str,
        *,
        user_id: str = DEFAULT_USER_ID,
        default: Any = None,
    ) -> Any:
        """Read a JSON-encoded UI preference."""

        def _get(conn: sqlite3.Connection) -> sqlite3.Row | None:
            return conn.execute(
                """
                SELECT preference_value FROM ui_preferences
                WHERE user_id = ? AND page = ? AND preference_key = ?
                """,
                (user_id, page, key),
            ).fetchone()

        row = await self._read(_get, "read UI preference", {"page": page, "key": key})
        if row is None:
            return default
        try:
            return json.loads(row["preference_value"])
        except json.JSONDecodeError:
            return default

    async def set_ui_preference(
        self,
        page: str,
        key: str,
        value: Any,
        *,
        user_id: str = DEFAULT_USER_ID,
    ) -> None:
        """Write a UI preference as JSON."""
        encoded = json.dumps(value)

        def _set(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO ui_preferences (user_id, page, preference_key, preference_value)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, page, preference_key) DO UPDATE SET
                    preference_value = excluded.preference_value,
                    updated_at = strftime('%s', 'now')
                """,
                (user_id, page, key, encoded),
            )

        await self._write(_set, "write UI preference", {"page": page, "key": key})

    # -------------------------------------------------------------------------
    # Persisted response cache
    # -------------------------------------------------------------------------

    async def get_cache(self, key: str) -> Any:
        """Get a cached value, None when missing or expired."""
        now = int(time.time())

        def _get(conn: sqlite3.Connection) -> sqlite3.Row | None:
            return conn.execute(
                "SELECT value FROM cache WHERE key = ? AND expires_at > ?", (key, now)
            ).fetchone()

        row = await self._read(_get, "read cache", {"key": key})
        if row is None:
            return None
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError:
            return None

    async def set_cache(self, key: str, value: Any, ttl_seconds: int = 300) -> None:
        """Cache a JSON-serializable value for ttl_seconds."""
        encoded = json.dumps(value, default=str)
        expires_at = int(time.time()) + ttl_seconds

        def _set(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO cache (key, value, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    expires_at = excluded.expires_at
                """,
                (key, encoded, expires_at),
            )

        await self._write(_set, "write cache", {"key": key})

    async def clear_expired_cache(self) -> int:
        """Delete expired cache rows and return how many were removed."""
        now = int(time.time())
        return await self._write(
            lambda conn: conn.execute("DELETE FROM cache WHERE expires_at <= ?", (now,)).rowcount,
            "clear expired cache",
        )

    async def close(self) -> None:
        """Close every connection. Idempotent."""
        if not self._initialized:
            return
        await self._pool.close_all()
        self._initialized = False
        logger.info("Database closed")
