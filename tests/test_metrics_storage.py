"""
Tests for the metrics store.

This test module validates:
- Database initialization and idempotence
- Typed settings
- Service instances with credentials encrypted at rest
- Appending snapshot samples (flattening, skipping, unknown instances)
- Latest values, history and aggregation queries
- Retention cleanup boundary
- Backup and restore
- UI preferences and the persisted response cache
"""

from __future__ import annotations

import json
import math
import sqlite3
import time
from pathlib import Path
from unittest import mock

import pytest

from dasharr.database.connection import ConnectionPool
from dasharr.errors import InvalidArgumentError, MigrationError, StorageError
from dasharr.metrics.storage import (
    AggregationResult,
    MetricsStore,
    ServiceInstance,
    flatten_metrics,
)
from dasharr.security.cipher import ENCRYPTION_PREFIX, CredentialCipher

# =============================================================================
# Test Fixtures
# =============================================================================


def _radarr(**overrides: object) -> ServiceInstance:
    values: dict[str, object] = {
        "id": "radarr1",
        "service_type": "radarr",
        "name": "Radarr",
        "url": "http://radarr:7878",
        "api_key": "secret123",
    }
    values.update(overrides)
    return ServiceInstance(**values)  # type: ignore[arg-type]


@pytest.fixture
async def radarr_store(store: MetricsStore) -> MetricsStore:
    """A store with one Radarr instance."""
    await store.save_service_instance(_radarr())
    return store


async def _insert_raw_sample(
    store: MetricsStore, instance_id: str, name: str, value: float, timestamp: int
) -> None:
    await store.pool.write(
        lambda conn: conn.execute(
            """
            INSERT INTO metrics (instance_id, service_type, metric_name, metric_value, timestamp)
            VALUES (?, 'radarr', ?, ?, ?)
            """,
            (instance_id, name, value, timestamp),
        )
    )


# =============================================================================
# Tests for Initialization
# =============================================================================


class TestInitialize:
    """Tests for MetricsStore.initialize."""

    @pytest.mark.asyncio
    async def test_initialize_creates_database(
        self, temp_db_path: Path, cipher: CredentialCipher
    ) -> None:
        """Test that initialize creates the database file."""
        store = MetricsStore(ConnectionPool(temp_db_path, checkpoint_interval_seconds=None), cipher)
        assert not temp_db_path.exists()

        await store.initialize()
        try:
            assert temp_db_path.exists()
            assert await store.get_setting("db_version") == "2"
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, store: MetricsStore) -> None:
        """Test that initialize can be called multiple times safely."""
        await store.initialize()
        await store.initialize()
        assert (await store.get_stats())["settings_count"] == 1

    @pytest.mark.asyncio
    async def test_in_memory_database(self, cipher: CredentialCipher) -> None:
        """Test a store on an in-memory database."""
        store = MetricsStore(ConnectionPool(":memory:"), cipher)
        await store.initialize()
        try:
            await store.save_service_instance(_radarr())
            assert await store.insert_metrics({"radarr1": {"movies": 1}}) == 1
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_migration_failure_closes_pool(
        self, temp_db_path: Path, cipher: CredentialCipher
    ) -> None:
        """Test that a failed migration leaves no open connection."""
        pool = ConnectionPool(temp_db_path, checkpoint_interval_seconds=None)
        store = MetricsStore(pool, cipher)

        with mock.patch("dasharr.metrics.storage.SchemaMigrator") as mock_migrator:
            mock_migrator.return_value.run_migrations = mock.AsyncMock(
                side_effect=MigrationError("Migration 2 failed")
            )
            with pytest.raises(MigrationError):
                await store.initialize()

        assert not pool.get_write_connection().is_open

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, store: MetricsStore) -> None:
        """Test that close can be called repeatedly."""
        await store.close()
        await store.close()
        assert not store.pool.get_write_connection().is_open


# =============================================================================
# Tests for Settings
# =============================================================================


class TestSettings:
    """Tests for typed settings."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "value",
        [True, False, 42, 2.5, "dark", {"columns": ["a", "b"]}, [1, 2, 3]],
    )
    async def test_round_trip_keeps_type(self, store: MetricsStore, value: object) -> None:
        """Test that values come back with their original type."""
        await store.set_setting("example", value)

        result = await store.get_setting("example")

        assert result == value
        assert type(result) is type(value)

    @pytest.mark.asyncio
    async def test_missing_setting_returns_default(self, store: MetricsStore) -> None:
        """Test the default for unknown keys."""
        assert await store.get_setting("missing") is None
        assert await store.get_setting("missing", 60) == 60

    @pytest.mark.asyncio
    async def test_overwrite_changes_type(self, store: MetricsStore) -> None:
        """Test that an overwrite records the new type."""
        await store.set_setting("metricsCollectionInterval", "60")
        await store.set_setting("metricsCollectionInterval", 30)

        assert await store.get_setting("metricsCollectionInterval") == 30

    @pytest.mark.asyncio
    async def test_get_all_settings(self, store: MetricsStore) -> None:
        """Test reading every setting at once."""
        await store.set_setting("theme", "dark")
        await store.set_setting("compact", True)

        settings = await store.get_all_settings()

        assert settings["theme"] == "dark"
        assert settings["compact"] is True
        assert settings["db_version"] == "2"


# =============================================================================
# Tests for Service Instances
# =============================================================================


class TestServiceInstances:
    """Tests for service instance storage."""

    @pytest.mark.asyncio
    async def test_credentials_encrypted_at_rest(
        self, store: MetricsStore, cipher: CredentialCipher
    ) -> None:
        """Test that stored credentials are ciphertext but read back as plaintext."""
        await store.save_service_instance(_radarr(username="admin", password="hunter2"))

        raw = await store.pool.write(
            lambda conn: conn.execute(
                "SELECT api_key, username, password FROM service_instances WHERE id = 'radarr1'"
            ).fetchone()
        )
        assert raw["api_key"] != "secret123"
        assert raw["api_key"].startswith(ENCRYPTION_PREFIX)
        assert raw["username"].startswith(ENCRYPTION_PREFIX)
        assert raw["password"].startswith(ENCRYPTION_PREFIX)

        instance = await store.get_service_instance("radarr1")
        assert instance is not None
        assert instance.api_key == "secret123"
        assert instance.username == "admin"
        assert instance.password == "hunter2"

    @pytest.mark.asyncio
    async def test_long_base64_api_key_encrypted_at_rest(self, store: MetricsStore) -> None:
        """Test that an API key shaped like base64 ciphertext is still encrypted."""
        api_key = "MTY4NzQ1OTQ4MjEyM2FiY2RlZjAxMjM0NTY3ODlhYmNkZWYwMTIzNDU2Nzg5MmM4Mg=="
        await store.save_service_instance(_radarr(api_key=api_key))

        raw = await store.pool.write(
            lambda conn: conn.execute(
                "SELECT api_key FROM service_instances WHERE id = 'radarr1'"
            ).fetchone()
        )
        assert raw["api_key"] != api_key
        assert raw["api_key"].startswith(ENCRYPTION_PREFIX)

        instance = await store.get_service_instance("radarr1")
        assert instance is not None
        assert instance.api_key == api_key

    @pytest.mark.asyncio
    async def test_save_and_get(self, store: MetricsStore) -> None:
        """Test that every field is stored."""
        await store.save_service_instance(_radarr(username="admin", config={"order": 1}))

        instance = await store.get_service_instance("radarr1")

        assert instance is not None
        assert instance.service_type == "radarr"
        assert instance.name == "Radarr"
        assert instance.url == "http://radarr:7878"
        assert instance.username == "admin"
        assert instance.config == {"order": 1}
        assert instance.enabled is True
        assert instance.created_at is not None

    @pytest.mark.asyncio
    async def test_get_missing_instance(self, store: MetricsStore) -> None:
        """Test that unknown ids return None."""
        assert await store.get_service_instance("nope") is None

    @pytest.mark.asyncio
    async def test_update_keeps_created_at(self, radarr_store: MetricsStore) -> None:
        """Test that saving an existing instance updates it in place."""
        await radarr_store.pool.write(
            lambda conn: conn.execute(
                "UPDATE service_instances SET created_at = 12345 WHERE id = 'radarr1'"
            )
        )

        await radarr_store.save_service_instance(_radarr(name="Radarr 4K", api_key="newkey"))

        instance = await radarr_store.get_service_instance("radarr1")
        assert instance is not None
        assert instance.created_at == 12345
        assert instance.name == "Radarr 4K"
        assert instance.api_key == "newkey"
        assert len(await radarr_store.get_all_service_instances()) == 1

    @pytest.mark.asyncio
    async def test_listing_and_filters(self, radarr_store: MetricsStore) -> None:
        """Test listing, type filters and enabled filtering."""
        await radarr_store.save_service_instance(
            ServiceInstance(id="sonarr1", service_type="sonarr", name="Sonarr", api_key="k")
        )
        await radarr_store.save_service_instance(
            ServiceInstance(id="sonarr2", service_type="sonarr", name="Anime", enabled=False)
        )

        enabled = await radarr_store.get_all_service_instances()
        everything = await radarr_store.get_all_service_instances(include_disabled=True)
        sonarr = await radarr_store.get_service_instances_by_type("sonarr")

        assert [i.id for i in enabled] == ["radarr1", "sonarr1"]
        assert [i.id for i in everything] == ["radarr1", "sonarr2", "sonarr1"]
        assert [i.id for i in sonarr] == ["sonarr1"]

    @pytest.mark.asyncio
    async def test_enable_and_disable(self, radarr_store: MetricsStore) -> None:
        """Test toggling the enabled flag."""
        assert await radarr_store.set_instance_enabled("radarr1", False) is True
        assert await radarr_store.get_all_service_instances() == []

        assert await radarr_store.set_instance_enabled("radarr1", True) is True
        assert len(await radarr_store.get_all_service_instances()) == 1

        assert await radarr_store.set_instance_enabled("nope", True) is False

    @pytest.mark.asyncio
    async def test_delete_keeps_samples(self, radarr_store: MetricsStore) -> None:
        """Test that deleting an instance leaves its samples in place."""
        await radarr_store.insert_metrics({"radarr1": {"movies": 812}})

        assert await radarr_store.delete_service_instance("radarr1") is True
        assert await radarr_store.delete_service_instance("radarr1") is False

        stats = await radarr_store.get_stats()
        assert stats["service_instances_count"] == 0
        assert stats["metrics_count"] == 1

    @pytest.mark.asyncio
    async def test_invalid_instance_rejected(self, store: MetricsStore) -> None:
        """Test that required fields are enforced."""
        with pytest.raises(InvalidArgumentError):
            await store.save_service_instance(_radarr(id=""))

    def test_to_dict_redacts_credentials(self) -> None:
        """Test that credentials are only included on request."""
        instance = _radarr(password="hunter2")

        assert "api_key" not in instance.to_dict()
        assert instance.to_dict(include_credentials=True)["api_key"] == "secret123"


# =============================================================================
# Tests for Inserting Metrics
# =============================================================================


class TestInsertMetrics:
    """Tests for appending snapshot samples."""

    def test_flatten_metrics(self) -> None:
        """Test flattening of nested and non-numeric values."""
        metrics = {
            "movies": 812,
            "queue": {"total": 3, "failed": 0},
            "online": True,
            "version": "5.1",
            "ratio": math.inf,
        }

        assert dict(flatten_metrics(metrics)) == {
            "movies": 812.0,
            "queue.total": 3.0,
            "queue.failed": 0.0,
        }

    @pytest.mark.asyncio
    async def test_insert_snapshot(self, radarr_store: MetricsStore) -> None:
        """Test inserting a snapshot in its wire form."""
        snapshot = {
            "timestamp": "2024-01-01T00:00:00+00:00",
            "collection_duration_ms": 42,
            "radarr1": {"movies": 812, "queue": {"total": 3}, "online": True, "note": "x"},
        }

        count = await radarr_store.insert_metrics(snapshot, timestamp=1_700_000_000)

        assert count == 2
        rows = await radarr_store.pool.write(
            lambda conn: [
                dict(row)
                for row in conn.execute(
                    "SELECT service_type, metric_name, metric_value, timestamp FROM metrics "
                    "ORDER BY metric_name"
                )
            ]
        )
        assert rows == [
            {
                "service_type": "radarr",
                "metric_name": "movies",
                "metric_value": 812.0,
                "timestamp": 1_700_000_000,
            },
            {
                "service_type": "radarr",
                "metric_name": "queue.total",
                "metric_value": 3.0,
                "timestamp": 1_700_000_000,
            },
        ]

    @pytest.mark.asyncio
    async def test_unknown_instance_is_skipped(self, radarr_store: MetricsStore) -> None:
        """Test that samples for unknown instances are dropped."""
        count = await radarr_store.insert_metrics(
            {"radarr1": {"movies": 1}, "ghost1": {"movies": 2}}
        )
        assert count == 1

    @pytest.mark.asyncio
    async def test_empty_snapshot(self, radarr_store: MetricsStore) -> None:
        """Test that a snapshot without numbers inserts nothing."""
        assert await radarr_store.insert_metrics({}) == 0
        assert await radarr_store.insert_metrics({"radarr1": {"status": "ok"}}) == 0

    @pytest.mark.asyncio
    async def test_sql_failure_raises_storage_error(self, radarr_store: MetricsStore) -> None:
        """Test that database errors are wrapped."""
        await radarr_store.pool.write(lambda conn: conn.execute("DROP TABLE metrics"))

        with pytest.raises(StorageError) as exc_info:
            await radarr_store.insert_metrics({"radarr1": {"movies": 1}})

        assert isinstance(exc_info.value.__cause__, sqlite3.Error)


# =============================================================================
# Tests for Queries
# =============================================================================


class TestQueries:
    """Tests for latest, history and aggregation queries."""

    @pytest.mark.asyncio
    async def test_latest_metrics(self, radarr_store: MetricsStore) -> None:
        """Test that only the newest value per metric is returned."""
        now = int(time.time())
        await _insert_raw_sample(radarr_store, "radarr1", "movies", 800, now - 120)
        await _insert_raw_sample(radarr_store, "radarr1", "movies", 812, now - 60)
        await _insert_raw_sample(radarr_store, "radarr1", "queue", 3, now - 60)
        await _insert_raw_sample(radarr_store, "sonarr1", "series", 100, now - 60)

        latest = await radarr_store.get_latest_metrics()

        assert [(s.instance_id, s.metric_name, s.metric_value) for s in latest] == [
            ("radarr1", "movies", 812.0),
            ("radarr1", "queue", 3.0),
            ("sonarr1", "series", 100.0),
        ]

    @pytest.mark.asyncio
    async def test_latest_metrics_filter_and_window(self, radarr_store: MetricsStore) -> None:
        """Test the instance filter and the time window."""
        now = int(time.time())
        await _insert_raw_sample(radarr_store, "radarr1", "movies", 812, now - 60)
        await _insert_raw_sample(radarr_store, "radarr1", "stale", 1, now - 7200)
        await _insert_raw_sample(radarr_store, "sonarr1", "series", 100, now - 60)

        latest = await radarr_store.get_latest_metrics("radarr1")
        assert [s.metric_name for s in latest] == ["movies"]

        wide = await radarr_store.get_latest_metrics("radarr1", window_seconds=86400)
        assert [s.metric_name for s in wide] == ["movies", "stale"]

    @pytest.mark.asyncio
    async def test_latest_tie_breaks_on_insert_order(self, radarr_store: MetricsStore) -> None:
        """Test that the later insert wins for equal timestamps."""
        now = int(time.time())
        await radarr_store.insert_metrics({"radarr1": {"movies": 1}}, timestamp=now)
        await radarr_store.insert_metrics({"radarr1": {"movies": 2}}, timestamp=now)

        latest = await radarr_store.get_latest_metrics("radarr1")
        assert [s.metric_value for s in latest] == [2.0]

    @pytest.mark.asyncio
    async def test_metric_history(self, radarr_store: MetricsStore) -> None:
        """Test the ordered history of one metric."""
        now = int(time.time())
        await _insert_raw_sample(radarr_store, "radarr1", "movies", 812, now - 60)
        await _insert_raw_sample(radarr_store, "radarr1", "movies", 800, now - 120)
        await _insert_raw_sample(radarr_store, "radarr1", "movies", 700, now - 2 * 86400)

        history = await radarr_store.get_metric_history("radarr1", "movies", hours=24)

        assert history == [(now - 120, 800.0), (now - 60, 812.0)]

    @pytest.mark.asyncio
    async def test_aggregate(self, radarr_store: MetricsStore) -> None:
        """Test min, max, avg and count over an inclusive range."""
        for ts, value in ((1000, 1.0), (2000, 2.0), (3000, 6.0)):
            await _insert_raw_sample(radarr_store, "radarr1", "movies", value, ts)

        result = await radarr_store.aggregate("radarr1", "movies", 1000, 3000)

        assert isinstance(result, AggregationResult)
        assert result.min_value == 1.0
        assert result.max_value == 6.0
        assert result.avg_value == 3.0
        assert result.count == 3
        assert result.to_dict()["start_time"] == 1000

    @pytest.mark.asyncio
    async def test_aggregate_empty_range(self, radarr_store: MetricsStore) -> None:
        """Test aggregation over a range with no samples."""
        result = await radarr_store.aggregate("radarr1", "movies", 1, 2)

        assert result.count == 0
        assert result.min_value is None
        assert result.avg_value is None

    @pytest.mark.asyncio
    async def test_aggregate_invalid_range(self, radarr_store: MetricsStore) -> None:
        """Test that start_time must be before end_time."""
        with pytest.raises(InvalidArgumentError):
            await radarr_store.aggregate("radarr1", "movies", 2000, 2000)


# =============================================================================
# Tests for Retention
# =============================================================================


class TestCleanup:
    """Tests for retention cleanup."""

    @pytest.mark.asyncio
    async def test_cleanup_boundary(self, radarr_store: MetricsStore) -> None:
        """Test that exactly the samples older than the cutoff are removed."""
        now = 1_000_000
        cutoff = now - 86400
        for ts in (cutoff - 1, cutoff, cutoff + 1):
            await _insert_raw_sample(radarr_store, "radarr1", "movies", 1, ts)

        deleted = await radarr_store.cleanup_old_metrics(1, now=now)

        assert deleted == 1
        remaining = await radarr_store.pool.write(
            lambda conn: [row[0] for row in conn.execute("SELECT timestamp FROM metrics")]
        )
        assert sorted(remaining) == [cutoff, cutoff + 1]

    @pytest.mark.asyncio
    async def test_cleanup_nothing_to_delete(self, radarr_store: MetricsStore) -> None:
        """Test cleanup on fresh data."""
        await radarr_store.insert_metrics({"radarr1": {"movies": 1}})
        assert await radarr_store.cleanup_old_metrics(30) == 0

    @pytest.mark.asyncio
    async def test_cleanup_negative_days(self, radarr_store: MetricsStore) -> None:
        """Test that a negative retention is rejected."""
        with pytest.raises(InvalidArgumentError):
            await radarr_store.cleanup_old_metrics(-1)


# =============================================================================
# Tests for Stats, Backup and Restore
# =============================================================================


class TestBackupRestore:
    """Tests for statistics, backup and restore."""

    @pytest.mark.asyncio
    async def test_get_stats(self, radarr_store: MetricsStore) -> None:
        """Test row counts and size."""
        await radarr_store.insert_metrics({"radarr1": {"movies": 1, "queue": 2}})

        stats = await radarr_store.get_stats()

        assert stats["metrics_count"] == 2
        assert stats["service_instances_count"] == 1
        assert stats["cache_count"] == 0
        assert stats["ui_preferences_count"] == 0
        assert stats["database_size_bytes"] > 0

    @pytest.mark.asyncio
    async def test_backup_and_restore(
        self, radarr_store: MetricsStore, cipher: CredentialCipher
    ) -> None:
        """Test that a restore brings back the backed-up configuration."""
        await radarr_store.set_setting("theme", "dark")
        await radarr_store.set_ui_preference("dashboard", "layout", {"columns": 3})

        dump = await radarr_store.backup()
        data = json.loads(dump)
        assert data["version"] == 2
        assert data["service_instances"][0]["api_key"].startswith(ENCRYPTION_PREFIX)

        await radarr_store.delete_service_instance("radarr1")
        await radarr_store.set_setting("theme", "light")

        restored = await radarr_store.restore(dump)

        assert restored["service_instances"] == 1
        assert restored["ui_preferences"] == 1
        assert await radarr_store.get_setting("theme") == "dark"
        instance = await radarr_store.get_service_instance("radarr1")
        assert instance is not None
        assert instance.api_key == "secret123"

    @pytest.mark.asyncio
    async def test_restore_version_1_encrypts_credentials(self, store: MetricsStore) -> None:
        """Test that plaintext credentials from an old backup are encrypted."""
        dump = {
            "version": 1,
            "service_instances": [
                {
                    "id": "sonarr1",
                    "service_type": "sonarr",
                    "name": "Sonarr",
                    "api_key": "plainkey",
                    "password": None,
                    "enabled": 1,
                    "legacy_column": "ignored",
                }
            ],
        }

        await store.restore(dump)

        raw = await store.pool.write(
            lambda conn: conn.execute(
                "SELECT api_key FROM service_instances WHERE id = 'sonarr1'"
            ).fetchone()[0]
        )
        assert raw.startswith(ENCRYPTION_PREFIX)
        instance = await store.get_service_instance("sonarr1")
        assert instance is not None
        assert instance.api_key == "plainkey"
        assert await store.get_setting("db_version") == "2"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("dump", ["not json", "[1, 2]", json.dumps({"version": 3}), "{}"])
    async def test_restore_rejects_invalid_dumps(self, store: MetricsStore, dump: str) -> None:
        """Test that malformed or unsupported backups are rejected."""
        with pytest.raises(InvalidArgumentError):
            await store.restore(dump)


# =============================================================================
# Tests for UI Preferences and Cache
# =============================================================================


class TestPreferencesAndCache:
    """Tests for UI preferences and the persisted cache."""

    @pytest.mark.asyncio
    async def test_ui_preferences(self, store: MetricsStore) -> None:
        """Test per-user, per-page preferences."""
        await store.set_ui_preference("dashboard", "layout", {"columns": 3})
        await store.set_ui_preference("dashboard", "layout", {"columns": 4}, user_id="alice")

        assert await store.get_ui_preference("dashboard", "layout") == {"columns": 3}
        assert await store.get_ui_preference("dashboard", "layout", user_id="alice") == {
            "columns": 4
        }
        assert await store.get_ui_preference("dashboard", "missing", default=[]) == []

    @pytest.mark.asyncio
    async def test_cache_round_trip(self, store: MetricsStore) -> None:
        """Test storing and reading a cached value."""
        await store.set_cache("radarr1:queue", {"total": 3})
        assert await store.get_cache("radarr1:queue") == {"total": 3}
        assert await store.get_cache("missing") is None

    @pytest.mark.asyncio
    async def test_expired_cache(self, store: MetricsStore) -> None:
        """Test that expired rows are hidden and cleared."""
        await store.set_cache("fresh", 1)
        await store.set_cache("stale", 2, ttl_seconds=-1)

        assert await store.get_cache("stale") is None
        assert await store.clear_expired_cache() == 1
        assert await store.get_cache("fresh") == 1
