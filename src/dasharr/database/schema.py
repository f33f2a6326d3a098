"""
SQLite schema for the Dasharr store.

Every statement is idempotent ("IF NOT EXISTS") so the schema can be applied
on each start before versioned migrations run.

Tables:
    settings          key/value application settings with a declared type
    service_instances configured connections to media services
    metrics           append-only numeric samples, one row per metric
    ui_preferences    per-user, per-page UI state
    cache             persisted API response cache with expiry

metrics.instance_id is a soft reference to service_instances.id; there is no
foreign key so inserts in the collection path never pay for the lookup.
"""

from __future__ import annotations

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    type TEXT DEFAULT 'string',
    updated_at INTEGER DEFAULT (strftime('%s', 'now'))
);

CREATE TABLE IF NOT EXISTS service_instances (
    id TEXT PRIMARY KEY,
    service_type TEXT NOT NULL,
    name TEXT NOT NULL,
    url TEXT,
    api_key TEXT,
    username TEXT,
    password TEXT,
    config_json TEXT,
    enabled BOOLEAN DEFAULT 1,
    created_at INTEGER DEFAULT (strftime('%s', 'now')),
    updated_at INTEGER DEFAULT (strftime('%s', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_service_type ON service_instances(service_type);

CREATE TABLE IF NOT EXISTS metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    instance_id TEXT NOT NULL,
    service_type TEXT NOT NULL,
    metric_name TEXT NOT NULL,
    metric_value REAL NOT NULL,
    timestamp INTEGER NOT NULL,
    created_at INTEGER DEFAULT (strftime('%s', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_metrics_lookup
    ON metrics(instance_id, metric_name, timestamp);

CREATE INDEX IF NOT EXISTS idx_metrics_timestamp ON metrics(timestamp);

CREATE TABLE IF NOT EXISTS ui_preferences (
    user_id TEXT DEFAULT 'default',
    page TEXT NOT NULL,
    preference_key TEXT NOT NULL,
    preference_value TEXT NOT NULL,
    updated_at INTEGER DEFAULT (strftime('%s', 'now')),
    PRIMARY KEY (user_id, page, preference_key)
);

CREATE TABLE IF NOT EXISTS cache (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    expires_at INTEGER NOT NULL,
    created_at INTEGER DEFAULT (strftime('%s', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_cache_expires ON cache(expires_at);

CREATE TRIGGER IF NOT EXISTS update_settings_timestamp
    AFTER UPDATE ON settings
    FOR EACH ROW
    BEGIN
        UPDATE settings SET updated_at = strftime('%s', 'now') WHERE key = NEW.key;
    END;

CREATE TRIGGER IF NOT EXISTS update_service_instances_timestamp
    AFTER UPDATE ON service_instances
    FOR EACH ROW
    BEGIN
        UPDATE service_instances SET updated_at = strftime('%s', 'now') WHERE id = NEW.id;
    END;
"""

# Tables included in a logical backup, in restore order
BACKUP_TABLES = ("settings", "service_instances", "ui_preferences")

# Tables reported by store statistics
STATS_TABLES = ("metrics", "service_instances", "settings", "cache", "ui_preferences")
