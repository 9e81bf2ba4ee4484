"""
Configuration management for the metrics rollup engine.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/watcher-metrics/config.yml or --config path)
3. Environment variables (WATCHER_METRICS_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from watcher_metrics.metrics.tiers import DEFAULT_TIERS

DEFAULT_CONFIG_PATH = Path("/etc/watcher-metrics/config.yml")
DEFAULT_ENV_PREFIX = "WATCHER_METRICS_"

VALID_AGGREGATORS = {"ping", "multisync", "network_quality", "numeric"}


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        json_format: Emit JSON log lines instead of plain text.
        app_log_path: Optional application log file path.
        max_bytes: Optional max log file size before rollover.
        backup_count: Optional number of rolled-over log files to keep.
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
        description="Emit JSON-formatted log lines",
    )
    app_log_path: str | None = Field(
        default=None,
        description="Application log file path",
    )
    max_bytes: int | None = Field(
        default=None,
        description="Maximum log file size in bytes",
    )
    backup_count: int | None = Field(
        default=None,
        description="Number of backup log files to keep",
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
# Storage Configuration
# =============================================================================


class StorageConfig(BaseModel):
    """Metrics file storage configuration.

    Attributes:
        data_dir: Root directory; each stream gets a subdirectory.
        raw_retention_seconds: Default retention for raw sample logs.
        rollup_size_threshold_bytes: Size above which a plain rollup file is rotated.
        compressed_size_threshold_bytes: Size above which a gzip rollup file is rotated.
        backup_suffix: Suffix of the backup kept by raw log rotation.
        owner_user: Optional user that should own written files.
        owner_group: Optional group that should own written files.
        lock_dir: Directory for daemon single-instance lock files.
    """

    data_dir: str = Field(
        default="/var/lib/watcher-metrics",
        description="Root directory for raw, rollup and state files",
    )
    raw_retention_seconds: int = Field(
        default=25 * 3600,
        description="Retention for raw sample logs in seconds",
        ge=60,
    )
    rollup_size_threshold_bytes: int = Field(
        default=1024 * 1024,
        description="Plain rollup files are rotated only above this size",
        ge=0,
    )
    compressed_size_threshold_bytes: int = Field(
        default=100 * 1024,
        description="Gzip rollup files are rotated only above this size",
        ge=0,
    )
    backup_suffix: str = Field(
        default=".old",
        description="Suffix for the raw log backup written during rotation",
    )
    owner_user: str | None = Field(
        default=None,
        description="User that should own written files (None leaves ownership alone)",
    )
    owner_group: str | None = Field(
        default=None,
        description="Group that should own written files",
    )
    lock_dir: str = Field(
        default="/tmp",
        description="Directory holding daemon lock files",
    )


# =============================================================================
# Tier Configuration
# =============================================================================


class TierConfig(BaseModel):
    """A single rollup tier.

    Attributes:
        name: Tier name, also the rollup file stem.
        interval_seconds: Bucket width.
        retention_seconds: How long rollup records are kept.
        label: Human-readable label.
        compressed: Store the tier as a gzip JSON-lines file.
    """

    name: str
    interval_seconds: int = Field(ge=1)
    retention_seconds: int = Field(ge=1)
    label: str = ""
    compressed: bool = False


def _default_tiers() -> list[TierConfig]:
    """Return the standard 1min/5min/30min/2hour tier set."""
    return [
        TierConfig(
            name=tier.name,
            interval_seconds=tier.interval_seconds,
            retention_seconds=tier.retention_seconds,
            label=tier.label,
            compressed=tier.compressed,
        )
        for tier in DEFAULT_TIERS
    ]


# =============================================================================
# Stream Configuration
# =============================================================================


class StreamConfig(BaseModel):
    """Configuration for one monitored metric stream.

    Attributes:
        aggregator: Aggregation function: 'ping', 'multisync',
            'network_quality' or 'numeric'.
        fields: Numeric fields summarized by the 'numeric' aggregator.
        raw_retention_seconds: Override of the storage raw retention.
        retention_cap_days: Cap every tier's retention to this many days.
    """

    aggregator: str = Field(
        default="numeric",
        description="Aggregation function: 'ping', 'multisync', 'network_quality', 'numeric'",
    )
    fields: list[str] = Field(
        default_factory=list,
        description="Numeric fields summarized by the numeric aggregator",
    )
    raw_retention_seconds: int | None = Field(
        default=None,
        description="Raw retention override in seconds",
    )
    retention_cap_days: int | None = Field(
        default=None,
        description="Cap tier retention to this many days",
        ge=1,
        le=365,
    )

    @field_validator("aggregator")
    @classmethod
    def validate_aggregator(cls, v: str) -> str:
        """Validate aggregator name."""
        v_lower = v.lower()
        if v_lower not in VALID_AGGREGATORS:
            raise ValueError(
                f"Invalid aggregator: {v}. Must be one of: {', '.join(sorted(VALID_AGGREGATORS))}"
            )
        return v_lower

    @field_validator("fields", mode="before")
    @classmethod
    def split_fields(cls, v: Any) -> Any:
        """Accept a single field name or a comma-separated string."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v


def _default_streams() -> dict[str, StreamConfig]:
    """Return the default stream set (connectivity ping only)."""
    return {"ping": StreamConfig(aggregator="ping")}


# =============================================================================
# Scheduler Configuration
# =============================================================================


class SchedulerConfig(BaseModel):
    """Rollup daemon cadence configuration.

    Attributes:
        tick_seconds: Seconds between rollup passes.
        raw_rotation_interval_seconds: Seconds between raw log rotations.
        daemon_name: Name used for the single-instance lock file.
    """

    tick_seconds: int = Field(
        default=60,
        description="Seconds between rollup passes",
        ge=1,
        le=3600,
    )
    raw_rotation_interval_seconds: int = Field(
        default=3600,
        description="Seconds between raw log rotations",
        ge=60,
    )
    daemon_name: str = Field(
        default="rollupd",
        description="Name used for the daemon lock file",
    )


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        logging: Logging configuration.
        storage: File storage configuration.
        tiers: Ordered rollup tier definitions.
        streams: Monitored streams keyed by name.
        scheduler: Rollup daemon cadence.
    """

    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )
    storage: StorageConfig = Field(
        default_factory=StorageConfig,
        description="File storage configuration",
    )
    tiers: list[TierConfig] = Field(
        default_factory=_default_tiers,
        description="Ordered rollup tiers",
    )
    streams: dict[str, StreamConfig] = Field(
        default_factory=_default_streams,
        description="Monitored metric streams",
    )
    scheduler: SchedulerConfig = Field(
        default_factory=SchedulerConfig,
        description="Rollup daemon cadence",
    )

    @field_validator("tiers")
    @classmethod
    def validate_tiers(cls, v: list[TierConfig]) -> list[TierConfig]:
        """Validate tier ordering, uniqueness and retention."""
        if not v:
            raise ValueError("At least one rollup tier is required")
        seen: set[str] = set()
        previous_interval = 0
        for tier in v:
            if tier.name in seen:
                raise ValueError(f"Duplicate tier name: {tier.name}")
            seen.add(tier.name)
            if tier.interval_seconds <= previous_interval:
                raise ValueError(
                    f"Tier intervals must be strictly increasing (at {tier.name})"
                )
            if tier.retention_seconds < tier.interval_seconds:
                raise ValueError(
                    f"Tier {tier.name} retention must be at least its interval"
                )
            previous_interval = tier.interval_seconds
        return v


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


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore separator, for example
    WATCHER_METRICS_STORAGE__DATA_DIR=/srv/metrics. Comma-separated values
    become lists; list fields such as stream ``fields`` also accept one name.

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Parse command-line arguments.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Dictionary with parsed arguments. Keys starting with an underscore
        are loader directives rather than config values.
    """
    parser = argparse.ArgumentParser(
        description="Metrics rollup daemon",
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
        "--data-dir",
        type=str,
        help="Override storage data directory",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single rollup pass and exit",
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
        result.setdefault("logging", {})["level"] = "debug"

    if parsed.data_dir:
        result["storage"] = {"data_dir": parsed.data_dir}

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_args: list[str] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, uses the
            --config argument or the default path when it exists.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If specified config file doesn't exist.
        ValidationError: If configuration is invalid.
    """
    config_dict: dict[str, Any] = {}

    cli_config = _parse_cli_args(cli_args)
    cli_config.pop("_once", None)

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    else:
        cli_config.pop("_config_path", None)
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    return AppConfig(**config_dict)


def cli_requests_single_pass(cli_args: list[str] | None = None) -> bool:
    """Return True if the command line asks for one rollup pass (``--once``)."""
    return bool(_parse_cli_args(cli_args).get("_once", False))
