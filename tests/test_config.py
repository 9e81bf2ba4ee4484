"""
Tests for the configuration module.

This test module validates:
- Configuration loading from YAML files
- Environment variable overrides
- CLI argument overrides
- Configuration precedence (defaults < YAML < env vars < CLI args)
- Pydantic model validation with invalid inputs
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any
from unittest import mock

import pytest
import yaml
from pydantic import ValidationError

from watcher_metrics.config import (
    AppConfig,
    LoggingConfig,
    SchedulerConfig,
    StorageConfig,
    StreamConfig,
    TierConfig,
    _deep_merge,
    _load_env_config,
    _load_yaml_config,
    _parse_cli_args,
    _parse_env_value,
    cli_requests_single_pass,
    load_config,
)
from watcher_metrics.metrics.tiers import DEFAULT_TIERS, Tier

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def temp_config_file(tmp_path: Path) -> Path:
    """Create a temporary config file path for testing."""
    return tmp_path / "config.yml"


@pytest.fixture
def clean_env() -> None:
    """Remove WATCHER_METRICS_ variables and hide the default config file."""
    env = {k: v for k, v in os.environ.items() if not k.startswith("WATCHER_METRICS_")}
    with (
        mock.patch.dict(os.environ, env, clear=True),
        mock.patch(
            "watcher_metrics.config.DEFAULT_CONFIG_PATH",
            Path("/nonexistent/watcher-metrics/config.yml"),
        ),
    ):
        yield


@pytest.fixture
def sample_yaml_config() -> dict[str, Any]:
    """Sample YAML configuration for testing."""
    return {
        "logging": {"level": "debug", "json_format": False},
        "storage": {
            "data_dir": "/srv/metrics",
            "raw_retention_seconds": 7200,
            "owner_user": "fpp",
        },
        "streams": {
            "ping": {"aggregator": "ping"},
            "system": {"aggregator": "numeric", "fields": ["cpu_usage", "memory_free"]},
        },
        "scheduler": {"tick_seconds": 30},
    }


# =============================================================================
# Tests for Default Configuration
# =============================================================================


class TestDefaultConfiguration:
    """Tests for default configuration values."""

    def test_app_config_defaults(self) -> None:
        """Test that AppConfig has sensible defaults."""
        config = AppConfig()

        assert config.logging.level == "info"
        assert config.storage.data_dir == "/var/lib/watcher-metrics"
        assert list(config.streams) == ["ping"]
        assert config.streams["ping"].aggregator == "ping"
        assert config.scheduler.tick_seconds == 60

    def test_storage_config_defaults(self) -> None:
        """Test storage defaults match the rotation thresholds."""
        config = StorageConfig()

        assert config.raw_retention_seconds == 90000
        assert config.rollup_size_threshold_bytes == 1024 * 1024
        assert config.compressed_size_threshold_bytes == 100 * 1024
        assert config.backup_suffix == ".old"
        assert config.owner_user is None

    def test_default_tiers(self) -> None:
        """Test the standard four-tier set."""
        tiers = AppConfig().tiers

        assert [t.name for t in tiers] == ["1min", "5min", "30min", "2hour"]
        assert [t.interval_seconds for t in tiers] == [60, 300, 1800, 7200]
        assert [t.retention_seconds for t in tiers] == [21600, 172800, 1209600, 7776000]
        assert [t.compressed for t in tiers] == [False, False, True, True]

    def test_default_tiers_match_catalog(self) -> None:
        """Test that configured defaults mirror the tier catalog constants."""
        configured = [Tier.from_config(t) for t in AppConfig().tiers]

        assert tuple(configured) == DEFAULT_TIERS

    def test_scheduler_config_defaults(self) -> None:
        """Test scheduler defaults."""
        config = SchedulerConfig()

        assert config.raw_rotation_interval_seconds == 3600
        assert config.daemon_name == "rollupd"


# =============================================================================
# Tests for Configuration Validation
# =============================================================================


class TestConfigurationValidation:
    """Tests for Pydantic model validation."""

    def test_log_level_validation_valid(self) -> None:
        """Test valid log levels are normalized."""
        assert LoggingConfig(level="DEBUG").level == "debug"
        assert LoggingConfig(level="warn").level == "warning"

    def test_log_level_validation_invalid(self) -> None:
        """Test invalid log level raises ValidationError."""
        with pytest.raises(ValidationError, match="Invalid log level"):
            LoggingConfig(level="verbose")

    def test_aggregator_validation_valid(self) -> None:
        """Test every known aggregator is accepted."""
        for name in ("ping", "MultiSync", "network_quality", "numeric"):
            assert StreamConfig(aggregator=name).aggregator == name.lower()

    def test_aggregator_validation_invalid(self) -> None:
        """Test unknown aggregator raises ValidationError."""
        with pytest.raises(ValidationError, match="Invalid aggregator"):
            StreamConfig(aggregator="median")

    def test_retention_cap_bounds(self) -> None:
        """Test the retention cap must be between 1 and 365 days."""
        assert StreamConfig(retention_cap_days=30).retention_cap_days == 30
        with pytest.raises(ValidationError):
            StreamConfig(retention_cap_days=0)
        with pytest.raises(ValidationError):
            StreamConfig(retention_cap_days=400)

    def test_tiers_must_not_be_empty(self) -> None:
        """Test that an empty tier list is rejected."""
        with pytest.raises(ValidationError, match="At least one rollup tier"):
            AppConfig(tiers=[])

    def test_tiers_must_be_unique(self) -> None:
        """Test that duplicate tier names are rejected."""
        tiers = [
            TierConfig(name="1min", interval_seconds=60, retention_seconds=3600),
            TierConfig(name="1min", interval_seconds=300, retention_seconds=7200),
        ]
        with pytest.raises(ValidationError, match="Duplicate tier name"):
            AppConfig(tiers=tiers)

    def test_tiers_must_increase(self) -> None:
        """Test that non-increasing intervals are rejected."""
        tiers = [
            TierConfig(name="5min", interval_seconds=300, retention_seconds=7200),
            TierConfig(name="1min", interval_seconds=60, retention_seconds=3600),
        ]
        with pytest.raises(ValidationError, match="strictly increasing"):
            AppConfig(tiers=tiers)

    def test_tier_retention_at_least_interval(self) -> None:
        """Test that a retention shorter than the interval is rejected."""
        tiers = [TierConfig(name="1hour", interval_seconds=3600, retention_seconds=60)]
        with pytest.raises(ValidationError, match="retention must be at least"):
            AppConfig(tiers=tiers)

    def test_tick_seconds_bounds(self) -> None:
        """Test scheduler tick bounds."""
        with pytest.raises(ValidationError):
            SchedulerConfig(tick_seconds=0)


# =============================================================================
# Tests for YAML Configuration Loading
# =============================================================================


class TestYAMLConfigLoading:
    """Tests for YAML configuration file loading."""

    def test_load_yaml_config_success(
        self, temp_config_file: Path, sample_yaml_config: dict[str, Any]
    ) -> None:
        """Test successful YAML config loading."""
        with open(temp_config_file, "w") as f:
            yaml.dump(sample_yaml_config, f)

        config_dict = _load_yaml_config(temp_config_file)

        assert config_dict["storage"]["data_dir"] == "/srv/metrics"
        assert config_dict["scheduler"]["tick_seconds"] == 30

    def test_load_yaml_config_file_not_found(self) -> None:
        """Test that missing config file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError, match="Configuration file not found"):
            _load_yaml_config(Path("/nonexistent/config.yml"))

    def test_load_yaml_config_empty_file(self, temp_config_file: Path) -> None:
        """Test loading empty YAML file returns empty dict."""
        temp_config_file.write_text("")
        assert _load_yaml_config(temp_config_file) == {}

    def test_load_config_with_yaml_file(
        self,
        clean_env: None,
        temp_config_file: Path,
        sample_yaml_config: dict[str, Any],
    ) -> None:
        """Test load_config with YAML file."""
        with open(temp_config_file, "w") as f:
            yaml.dump(sample_yaml_config, f)

        config = load_config(config_path=temp_config_file, cli_args=[])

        assert config.logging.level == "debug"
        assert config.logging.json_format is False
        assert config.storage.data_dir == "/srv/metrics"
        assert config.storage.owner_user == "fpp"
        assert config.streams["system"].fields == ["cpu_usage", "memory_free"]
        assert config.scheduler.tick_seconds == 30


# =============================================================================
# Tests for Environment Variable Loading
# =============================================================================


class TestEnvironmentVariableLoading:
    """Tests for environment variable configuration loading."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("yes", True),
            ("OFF", False),
            ("3600", 3600),
            ("-10", -10),
            ("2.5", 2.5),
            ("cpu_usage, memory_free", ["cpu_usage", "memory_free"]),
            ("/srv/metrics", "/srv/metrics"),
        ],
    )
    def test_parse_env_value(self, raw: str, expected: Any) -> None:
        """Test coercion of environment strings to config values."""
        assert _parse_env_value(raw) == expected
        assert type(_parse_env_value(raw)) is type(expected)

    def test_load_env_config_nested(self, clean_env: None) -> None:
        """Test loading nested environment variables."""
        env_vars = {
            "WATCHER_METRICS_STORAGE__DATA_DIR": "/srv/metrics",
            "WATCHER_METRICS_SCHEDULER__TICK_SECONDS": "15",
        }

        with mock.patch.dict(os.environ, env_vars):
            config_dict = _load_env_config()

        assert config_dict == {
            "storage": {"data_dir": "/srv/metrics"},
            "scheduler": {"tick_seconds": 15},
        }

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("cpu_usage", ["cpu_usage"]),
            ("cpu_usage,memory_free", ["cpu_usage", "memory_free"]),
        ],
    )
    def test_stream_fields_from_env(
        self, clean_env: None, raw: str, expected: list[str]
    ) -> None:
        """Test that one field name or a comma list both configure numeric fields."""
        env_vars = {
            "WATCHER_METRICS_STREAMS__SYSTEM__AGGREGATOR": "numeric",
            "WATCHER_METRICS_STREAMS__SYSTEM__FIELDS": raw,
        }

        with mock.patch.dict(os.environ, env_vars):
            config = load_config(config_path=None, cli_args=[])

        assert config.streams["system"].fields == expected


# =============================================================================
# Tests for CLI Argument Parsing
# =============================================================================


class TestCLIArgumentParsing:
    """Tests for command-line argument parsing."""

    def test_parse_cli_args_config_path(self) -> None:
        """Test parsing --config argument."""
        result = _parse_cli_args(["--config", "/path/to/config.yml"])
        assert result["_config_path"] == "/path/to/config.yml"

    def test_parse_cli_args_log_level(self) -> None:
        """Test parsing --log-level argument."""
        result = _parse_cli_args(["--log-level", "warning"])
        assert result["logging"]["level"] == "warning"

    def test_parse_cli_args_debug(self) -> None:
        """Test that --debug forces debug logging."""
        result = _parse_cli_args(["--log-level", "error", "--debug"])
        assert result["logging"]["level"] == "debug"

    def test_parse_cli_args_data_dir(self) -> None:
        """Test parsing --data-dir argument."""
        result = _parse_cli_args(["--data-dir", "/srv/metrics"])
        assert result["storage"]["data_dir"] == "/srv/metrics"

    def test_parse_cli_args_empty(self) -> None:
        """Test parsing empty arguments."""
        assert _parse_cli_args([]) == {}

    def test_cli_requests_single_pass(self) -> None:
        """Test detection of --once."""
        assert cli_requests_single_pass(["--once"]) is True
        assert cli_requests_single_pass([]) is False

    def test_once_flag_does_not_leak_into_config(
        self, clean_env: None, temp_config_file: Path
    ) -> None:
        """Test that --once is not passed to the config model."""
        temp_config_file.write_text("")

        config = load_config(config_path=temp_config_file, cli_args=["--once"])

        assert isinstance(config, AppConfig)


# =============================================================================
# Tests for Configuration Precedence
# =============================================================================


class TestConfigurationPrecedence:
    """Tests for configuration layering precedence."""

    def test_full_precedence_chain(self, clean_env: None, temp_config_file: Path) -> None:
        """Test full precedence: defaults < YAML < env vars < CLI args."""
        yaml_config = {
            "logging": {"level": "info"},
            "storage": {"data_dir": "/from/yaml", "raw_retention_seconds": 7200},
        }
        with open(temp_config_file, "w") as f:
            yaml.dump(yaml_config, f)

        env_vars = {
            "WATCHER_METRICS_LOGGING__LEVEL": "warning",
            "WATCHER_METRICS_STORAGE__DATA_DIR": "/from/env",
        }

        with mock.patch.dict(os.environ, env_vars):
            config = load_config(
                config_path=temp_config_file,
                cli_args=["--data-dir", "/from/cli"],
            )

        # CLI overrides env var which would have overridden YAML
        assert config.storage.data_dir == "/from/cli"
        # Env var overrides YAML
        assert config.logging.level == "warning"
        # YAML value preserved
        assert config.storage.raw_retention_seconds == 7200
        # Default value preserved
        assert config.scheduler.tick_seconds == 60

    def test_config_path_from_cli(self, clean_env: None, temp_config_file: Path) -> None:
        """Test that --config selects the YAML file."""
        with open(temp_config_file, "w") as f:
            yaml.dump({"scheduler": {"tick_seconds": 5}}, f)

        config = load_config(cli_args=["--config", str(temp_config_file)])

        assert config.scheduler.tick_seconds == 5

    def test_load_config_defaults_only(self, clean_env: None) -> None:
        """Test loading config with only defaults."""
        config = load_config(config_path=None, cli_args=[])

        assert config.storage.data_dir == "/var/lib/watcher-metrics"
        assert config.logging.level == "info"


# =============================================================================
# Tests for Deep Merge
# =============================================================================


class TestDeepMerge:
    """Tests for the _deep_merge helper function."""

    def test_deep_merge_nested(self) -> None:
        """Test merging nested dictionaries."""
        base = {"storage": {"data_dir": "/a", "backup_suffix": ".old"}}
        override = {"storage": {"data_dir": "/b"}}

        assert _deep_merge(base, override) == {
            "storage": {"data_dir": "/b", "backup_suffix": ".old"}
        }

    def test_deep_merge_does_not_modify_original(self) -> None:
        """Test that the base dictionary is left untouched."""
        base = {"logging": {"level": "info"}}
        _deep_merge(base, {"logging": {"level": "debug"}})

        assert base == {"logging": {"level": "info"}}
