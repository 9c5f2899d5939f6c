"""
Guildtrack Configuration Management.

Handles loading and validating configuration from various sources:
- Default values
- Configuration file (TOML)
- Environment variables
"""

from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional


DEFAULT_CONFIG_DIR = Path.home() / ".config" / "guildtrack"
DEFAULT_CONFIG_FILE = "config.toml"
DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / "guildtrack"

ENV_PREFIX = "GUILDTRACK_"


@dataclass
class ConfigIssue:
    """A single problem found while validating configuration."""
    field: str
    message: str
    severity: str  # "error" or "warning"

    def __str__(self) -> str:
        return f"[{self.severity.upper()}] {self.field}: {self.message}"


@dataclass
class TrackerConfig:
    """Configuration for tracker refresh policy."""

    # Trackers last scraped longer ago than this are stale
    refresh_interval_hours: float = 24.0

    # How long a scrape lease protects a tracker from resubmission
    lease_ttl_seconds: int = 3600

    # "package.module:callable" receiving each leased batch. Without one
    # the worker reads batches from the scrape_leases table.
    dispatcher: Optional[str] = None


@dataclass
class SchedulerConfig:
    """Configuration for the scheduled refresh registry."""

    enabled: bool = True

    # Seconds between reconciliation passes against the database
    check_interval: int = 60

    # Seconds a timer may fire late before APScheduler treats it as missed
    misfire_grace_time: int = 300
    timezone: str = "UTC"

    # Schedules that elapsed while the process was down fire on startup
    # when True, and are marked FAILED when False
    fire_missed_on_startup: bool = True

    # Finished schedules older than this are removed by `schedules cleanup`
    history_retention_days: int = 30


@dataclass
class LoggingConfig:
    """Configuration for logging."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: Optional[Path] = None


@dataclass
class GuildtrackConfig:
    """Main configuration container for guildtrack."""

    # Paths
    config_dir: Path = DEFAULT_CONFIG_DIR
    data_dir: Path = DEFAULT_DATA_DIR

    # Sub-configurations. The tracker section may be None when a deployment
    # strips it; components that need a refresh policy refuse to start then.
    tracker: Optional[TrackerConfig] = field(default_factory=TrackerConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Database
    database_url: str = ""

    def __post_init__(self) -> None:
        if not self.database_url:
            self.database_url = f"sqlite:///{self.data_dir}/guildtrack.db"


def _parse_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes", "on")


def load_config(
    config_path: Optional[Path] = None,
    env_prefix: str = ENV_PREFIX,
) -> GuildtrackConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file
    3. Default values

    Args:
        config_path: Path to config file (default: ~/.config/guildtrack/config.toml)
        env_prefix: Prefix for environment variables

    Returns:
        Loaded configuration
    """
    config = GuildtrackConfig()

    if config_path is None:
        env_config_dir = os.environ.get(f"{env_prefix}CONFIG_DIR")
        if env_config_dir:
            config_path = Path(env_config_dir) / DEFAULT_CONFIG_FILE
        else:
            config_path = DEFAULT_CONFIG_DIR / DEFAULT_CONFIG_FILE

    if config_path.exists():
        config = _load_from_file(config_path, config)

    config = _load_from_env(config, env_prefix)

    return config


def _apply_section(target: Any, values: dict[str, Any]) -> None:
    for key, value in values.items():
        if hasattr(target, key):
            setattr(target, key, value)


def _load_from_file(path: Path, config: GuildtrackConfig) -> GuildtrackConfig:
    """Load configuration from a TOML file."""
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        print(f"Warning: Failed to load config from {path}: {e}")
        return config

    if "tracker" in data:
        if config.tracker is None:
            config.tracker = TrackerConfig()
        _apply_section(config.tracker, data["tracker"])

    if "scheduler" in data:
        _apply_section(config.scheduler, data["scheduler"])

    if "logging" in data:
        _apply_section(config.logging, data["logging"])
        if isinstance(config.logging.file, str):
            config.logging.file = Path(config.logging.file)

    if "config_dir" in data:
        config.config_dir = Path(data["config_dir"])
    if "data_dir" in data:
        config.data_dir = Path(data["data_dir"])
        if "database_url" not in data:
            config.database_url = f"sqlite:///{config.data_dir}/guildtrack.db"
    if "database_url" in data:
        config.database_url = data["database_url"]

    return config


def _load_from_env(config: GuildtrackConfig, prefix: str) -> GuildtrackConfig:
    """Load configuration from environment variables."""

    # Tracker settings
    if env_val := os.environ.get(f"{prefix}REFRESH_INTERVAL_HOURS"):
        if config.tracker is None:
            config.tracker = TrackerConfig()
        config.tracker.refresh_interval_hours = float(env_val)
    if env_val := os.environ.get(f"{prefix}LEASE_TTL_SECONDS"):
        if config.tracker is None:
            config.tracker = TrackerConfig()
        config.tracker.lease_ttl_seconds = int(env_val)
    if env_val := os.environ.get(f"{prefix}DISPATCHER"):
        if config.tracker is None:
            config.tracker = TrackerConfig()
        config.tracker.dispatcher = env_val

    # Scheduler settings
    if env_val := os.environ.get(f"{prefix}SCHEDULER_ENABLED"):
        config.scheduler.enabled = _parse_bool(env_val)
    if env_val := os.environ.get(f"{prefix}CHECK_INTERVAL"):
        config.scheduler.check_interval = int(env_val)
    if env_val := os.environ.get(f"{prefix}FIRE_MISSED_ON_STARTUP"):
        config.scheduler.fire_missed_on_startup = _parse_bool(env_val)

    # Logging settings
    if env_val := os.environ.get(f"{prefix}LOG_LEVEL"):
        config.logging.level = env_val.upper()
    if env_val := os.environ.get(f"{prefix}LOG_FILE"):
        config.logging.file = Path(env_val)

    # Paths
    if env_val := os.environ.get(f"{prefix}CONFIG_DIR"):
        config.config_dir = Path(env_val)
    if env_val := os.environ.get(f"{prefix}DATA_DIR"):
        config.data_dir = Path(env_val)
    if env_val := os.environ.get(f"{prefix}DATABASE_URL"):
        config.database_url = env_val

    return config


# Global configuration instance (lazy-loaded)
_global_config: Optional[GuildtrackConfig] = None


def get_config() -> GuildtrackConfig:
    """Get the global configuration instance."""
    global _global_config
    if _global_config is None:
        _global_config = load_config()
    return _global_config


def set_config(config: GuildtrackConfig) -> None:
    """Set the global configuration instance."""
    global _global_config
    _global_config = config


def clear_config_cache() -> None:
    """Clear the global configuration cache."""
    global _global_config
    _global_config = None


def validate_config(config: Optional[GuildtrackConfig] = None) -> List[ConfigIssue]:
    """
    Validate configuration and return list of issues.

    Args:
        config: Configuration to validate (default: loaded from file)

    Returns:
        List of issues (empty if valid)
    """
    if config is None:
        config = load_config()

    issues: List[ConfigIssue] = []

    if config.tracker is None:
        issues.append(ConfigIssue(
            field="tracker",
            message="Tracker section is missing; batch processing cannot start.",
            severity="error",
        ))
    else:
        if config.tracker.refresh_interval_hours <= 0:
            issues.append(ConfigIssue(
                field="tracker.refresh_interval_hours",
                message=f"Must be positive, got {config.tracker.refresh_interval_hours}",
                severity="error",
            ))
        if config.tracker.lease_ttl_seconds <= 0:
            issues.append(ConfigIssue(
                field="tracker.lease_ttl_seconds",
                message=f"Must be positive, got {config.tracker.lease_ttl_seconds}",
                severity="error",
            ))
        if config.tracker.dispatcher is not None and ":" not in config.tracker.dispatcher:
            issues.append(ConfigIssue(
                field="tracker.dispatcher",
                message=f"Expected 'package.module:callable', got '{config.tracker.dispatcher}'",
                severity="error",
            ))

    if config.scheduler.check_interval <= 0:
        issues.append(ConfigIssue(
            field="scheduler.check_interval",
            message=f"Must be positive, got {config.scheduler.check_interval}",
            severity="error",
        ))

    if config.scheduler.misfire_grace_time < 0:
        issues.append(ConfigIssue(
            field="scheduler.misfire_grace_time",
            message="Must not be negative",
            severity="error",
        ))

    if not config.scheduler.enabled:
        issues.append(ConfigIssue(
            field="scheduler.enabled",
            message="Scheduler is disabled; scheduled refreshes will not fire.",
            severity="warning",
        ))

    if not config.database_url.startswith(("sqlite", "postgresql", "mysql")):
        issues.append(ConfigIssue(
            field="database_url",
            message=f"Unsupported database URL: {config.database_url}",
            severity="error",
        ))

    if not config.data_dir.exists():
        issues.append(ConfigIssue(
            field="data_dir",
            message=f"Data directory does not exist: {config.data_dir}",
            severity="warning",
        ))

    return issues


def _config_to_dict(config: GuildtrackConfig) -> dict[str, Any]:
    """Convert configuration to a JSON-serializable dictionary."""
    return {
        "config_dir": str(config.config_dir),
        "data_dir": str(config.data_dir),
        "database_url": config.database_url,
        "tracker": (
            {
                "refresh_interval_hours": config.tracker.refresh_interval_hours,
                "lease_ttl_seconds": config.tracker.lease_ttl_seconds,
                "dispatcher": config.tracker.dispatcher,
            }
            if config.tracker is not None
            else None
        ),
        "scheduler": {
            "enabled": config.scheduler.enabled,
            "check_interval": config.scheduler.check_interval,
            "misfire_grace_time": config.scheduler.misfire_grace_time,
            "timezone": config.scheduler.timezone,
            "fire_missed_on_startup": config.scheduler.fire_missed_on_startup,
            "history_retention_days": config.scheduler.history_retention_days,
        },
        "logging": {
            "level": config.logging.level,
            "format": config.logging.format,
            "file": str(config.logging.file) if config.logging.file else None,
        },
    }


def export_config_json(config: GuildtrackConfig) -> str:
    """
    Export configuration as JSON string.

    Args:
        config: Configuration to export

    Returns:
        JSON string representation of config
    """
    return json.dumps(_config_to_dict(config), indent=2)
