"""
Configuration management for the Dasharr metrics engine.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/app/config/dasharr.yml or --config path)
3. Environment variables (DASHARR_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_DIR = "/app/config"
DEFAULT_CONFIG_FILE = Path(DEFAULT_CONFIG_DIR) / "dasharr.yml"
ENV_PREFIX = "DASHARR_"

# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        json_format: Emit one JSON object per line instead of plain text.
    """

    level: str = Field(
        default="info",
        description="Log level: debug, info, warn, error",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )
    json_format: bool = Field(
        default=True,
        description="Emit JSON log lines",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseModel):
    """SQLite store configuration.

    Attributes:
        path: Database file path.
        read_connections: Number of read-only connections (0 disables the split).
        busy_timeout_ms: How long a locked database is retried before failing.
        cache_size_kib: Page cache size per connection.
        checkpoint_interval_seconds: Interval between WAL checkpoints.
    """

    path: str = Field(
        default=f"{DEFAULT_CONFIG_DIR}/dasharr.db",
        description="Path to the SQLite database file",
    )
    read_connections: int = Field(
        default=2,
        description="Read-only connections in the pool",
        ge=0,
        le=8,
    )
    busy_timeout_ms: int = Field(
        default=5000,
        description="SQLite busy timeout in milliseconds",
        ge=0,
    )
    cache_size_kib: int = Field(
        default=32000,
        description="SQLite page cache size in KiB",
        ge=1,
    )
    checkpoint_interval_seconds: int = Field(
        default=300,
        description="Interval between WAL checkpoints in seconds",
        ge=1,
    )


# =============================================================================
# Encryption Configuration
# =============================================================================


class EncryptionConfig(BaseModel):
    """Credential encryption configuration.

    Attributes:
        key: Explicit encryption key (highest precedence).
        secret: Application secret the key is derived from when no key is set.
        config_dir: Directory holding the generated key file.
    """

    key: str | None = Field(
        default=None,
        description="Explicit encryption key",
    )
    secret: str | None = Field(
        default=None,
        description="Application secret used to derive the encryption key",
    )
    config_dir: str = Field(
        default=DEFAULT_CONFIG_DIR,
        description="Directory for the generated .encryption.key file",
    )


# =============================================================================
# Metrics Configuration
# =============================================================================


class MetricsConfig(BaseModel):
    """Collection scheduling and retention configuration.

    Attributes:
        collection_interval_seconds: Interval between collection cycles.
        retention_days: Retention time for stored samples.
        cleanup_every_cycles: Run retention cleanup at least every N cycles.
        cleanup_probability: Per-cycle probability of running retention cleanup.
        stats_log_probability: Per-cycle probability of logging store stats.
        adapter_timeout_seconds: Optional cap on a single adapter call.
    """

    collection_interval_seconds: int = Field(
        default=60,
        description="Metric collection interval in seconds",
        ge=5,
        le=3600,
    )
    retention_days: int = Field(
        default=30,
        description="Retention days for metrics data",
        ge=1,
        le=365,
    )
    cleanup_every_cycles: int = Field(
        default=100,
        description="Run retention cleanup at least every N cycles",
        ge=1,
    )
    cleanup_probability: float = Field(
        default=0.01,
        description="Probability of running retention cleanup after a cycle",
        ge=0.0,
        le=1.0,
    )
    stats_log_probability: float = Field(
        default=0.1,
        description="Probability of logging store statistics after a cycle",
        ge=0.0,
        le=1.0,
    )
    adapter_timeout_seconds: float | None = Field(
        default=None,
        description="Optional timeout applied to each adapter call",
        gt=0,
    )


# =============================================================================
# Cache Configuration
# =============================================================================


class CacheConfig(BaseModel):
    """In-memory snapshot cache configuration.

    Attributes:
        max_size_mb: Aggregate size ceiling.
        max_age_minutes: Entries older than this are purged.
        cleanup_interval_seconds: Background sweep interval.
        memory_pressure_mb: Process RSS that triggers a proactive cleanup.
    """

    max_size_mb: float = Field(
        default=50,
        description="Maximum cache size in MB",
        gt=0,
    )
    max_age_minutes: float = Field(
        default=30,
        description="Maximum entry age in minutes",
        gt=0,
    )
    cleanup_interval_seconds: int = Field(
        default=300,
        description="Background cleanup interval in seconds",
        ge=1,
    )
    memory_pressure_mb: int = Field(
        default=400,
        description="Process memory (RSS) that triggers cache cleanup",
        ge=1,
    )


# =============================================================================
# Push Configuration
# =============================================================================


class PushConfig(BaseModel):
    """Metrics push (export) configuration.

    Attributes:
        enabled: Whether snapshots are pushed to the target.
        target_url: Base URL of the receiving endpoint.
        secret: Bearer token sent with each push.
        container_id: Identifier of this installation.
        interval_seconds: Minimum interval between pushes.
        use_queue: Post to the queue endpoint instead of the direct one.
        timeout_seconds: HTTP timeout for a push.
    """

    enabled: bool = Field(
        default=False,
        description="Whether to push snapshots",
    )
    target_url: str = Field(
        default="",
        description="Push target base URL",
    )
    secret: str = Field(
        default="",
        description="Bearer token for the push target",
    )
    container_id: str = Field(
        default="dasharr-default",
        description="Identifier of this installation",
    )
    interval_seconds: int = Field(
        default=300,
        description="Minimum interval between pushes in seconds",
        ge=1,
    )
    use_queue: bool = Field(
        default=False,
        description="Use the queue endpoint of the push target",
    )
    timeout_seconds: float = Field(
        default=10.0,
        description="HTTP timeout for a push in seconds",
        gt=0,
    )


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        logging: Logging configuration.
        database: SQLite store configuration.
        encryption: Credential encryption configuration.
        metrics: Collection and retention configuration.
        cache: In-memory cache configuration.
        push: Metrics push configuration.
    """

    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )
    database: DatabaseConfig = Field(
        default_factory=DatabaseConfig,
        description="Database configuration",
    )
    encryption: EncryptionConfig = Field(
        default_factory=EncryptionConfig,
        description="Encryption configuration",
    )
    metrics: MetricsConfig = Field(
        default_factory=MetricsConfig,
        description="Metrics collection configuration",
    )
    cache: CacheConfig = Field(
        default_factory=CacheConfig,
        description="In-memory cache configuration",
    )
    push: PushConfig = Field(
        default_factory=PushConfig,
        description="Metrics push configuration",
    )


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, list, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore separator, e.g.
    DASHARR_METRICS__RETENTION_DAYS=14.

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        config_key = key[len(prefix) :].lower()
        parts = config_key.split("__")
        if len(parts) < 2:
            # Flat DASHARR_* variables (DASHARR_SECRET, ...) are not config sections
            continue

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def _load_legacy_env() -> dict[str, Any]:
    """
    Map the historical flat environment variables onto config keys.

    DASHARR_ENCRYPTION_KEY, DASHARR_SECRET, CONFIG_DIR and
    METRICS_COLLECTION_INTERVAL predate the nested DASHARR_* scheme.
    """
    result: dict[str, Any] = {}
    encryption: dict[str, Any] = {}

    if os.environ.get("DASHARR_ENCRYPTION_KEY"):
        encryption["key"] = os.environ["DASHARR_ENCRYPTION_KEY"]
    if os.environ.get("DASHARR_SECRET"):
        encryption["secret"] = os.environ["DASHARR_SECRET"]
    if os.environ.get("CONFIG_DIR"):
        config_dir = os.environ["CONFIG_DIR"]
        encryption["config_dir"] = config_dir
        result["database"] = {"path": str(Path(config_dir) / "dasharr.db")}
    if encryption:
        result["encryption"] = encryption

    interval = os.environ.get("METRICS_COLLECTION_INTERVAL")
    if interval and interval.isdigit():
        result["metrics"] = {"collection_interval_seconds": int(interval)}

    return result


def parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Parse command-line arguments.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Dictionary with parsed arguments. The private keys "_config_path"
        and "_once" carry --config and --once.
    """
    parser = argparse.ArgumentParser(
        description="Dasharr metrics collector",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging in plain-text format",
    )

    parser.add_argument(
        "--interval",
        type=int,
        help="Override the collection interval in seconds",
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single collection cycle and exit",
    )

    parsed = parser.parse_args(args)

    result: dict[str, Any] = {}

    if parsed.config:
        result["_config_path"] = parsed.config

    if parsed.once:
        result["_once"] = True

    if parsed.log_level:
        result["logging"] = {"level": parsed.log_level}

    if parsed.debug:
        result.setdefault("logging", {})
        result["logging"]["level"] = "debug"
        result["logging"]["json_format"] = False

    if parsed.interval is not None:
        result["metrics"] = {"collection_interval_seconds": parsed.interval}

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = ENV_PREFIX,
    cli_args: list[str] | None = None,
    cli_config: dict[str, Any] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, uses the
            --config argument or the default path when it exists.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, uses sys.argv.
        cli_config: Already parsed arguments from parse_cli_args(). When
            given, cli_args is ignored.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If specified config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(cli_args=[])
        >>> config.metrics.collection_interval_seconds
        60
    """
    config_dict: dict[str, Any] = {}

    cli_config = dict(cli_config) if cli_config is not None else parse_cli_args(cli_args)
    cli_config.pop("_once", None)

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        elif DEFAULT_CONFIG_FILE.exists():
            config_path = DEFAULT_CONFIG_FILE
    elif isinstance(config_path, str):
        config_path = Path(config_path)
    cli_config.pop("_config_path", None)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_legacy_env())
    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    return AppConfig(**config_dict)
