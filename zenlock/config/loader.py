"""
Configuration management and loading.

Handles application settings and environment variables.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Optional
from zoneinfo import ZoneInfoNotFoundError

import yaml

from zenlock.core.days import resolve_timezone

ENV_CONFIG_PATH = "ZENLOCK_CONFIG"
ENV_DB_PATH = "ZENLOCK_DB"

DEFAULT_CONFIG_PATH = "zenlock.yaml"


@dataclass(frozen=True)
class StorageConfig:
    """Where usage data lives and how long it is kept."""
    db_path: str = "zenlock.db"
    retention_days: int = 90

    def __post_init__(self):
        """Validate storage values."""
        if not self.db_path:
            raise ValueError("db_path cannot be empty")
        if self.retention_days <= 0:
            raise ValueError("retention_days must be > 0")


@dataclass(frozen=True)
class TimestampConfig:
    """Accepted window for session timestamps."""
    epoch_floor_ms: int = 946_684_800_000
    clock_skew_tolerance_ms: int = 5_000

    def __post_init__(self):
        """Validate timestamp policy values."""
        if self.epoch_floor_ms < 0:
            raise ValueError("epoch_floor_ms cannot be negative")
        if self.clock_skew_tolerance_ms < 0:
            raise ValueError("clock_skew_tolerance_ms cannot be negative")


@dataclass(frozen=True)
class LimitConfig:
    """Daily limit configured for one app."""
    daily_limit_minutes: float
    enabled: bool = True

    def __post_init__(self):
        """Validate limit values."""
        if self.daily_limit_minutes < 0:
            raise ValueError("daily_limit_minutes cannot be negative")

    @property
    def daily_limit_ms(self) -> int:
        return int(round(self.daily_limit_minutes * 60_000))


@dataclass(frozen=True)
class Settings:
    """Complete ZenLock configuration."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    timestamps: TimestampConfig = field(default_factory=TimestampConfig)
    timezone: str = "UTC"
    limits: Dict[str, LimitConfig] = field(default_factory=dict)


def load_settings(path: str) -> Settings:
    """Load and validate ZenLock settings from a YAML file.

    Unknown keys are rejected so a typo cannot silently disable a limit.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"ZenLock config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'storage', 'timestamps', 'timezone', 'limits'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    storage_data = _section(raw_config, 'storage', {'db_path', 'retention_days'})
    storage = StorageConfig(
        db_path=str(storage_data.get('db_path', StorageConfig.db_path)),
        retention_days=_integer(storage_data, 'retention_days', StorageConfig.retention_days, 'storage')
    )

    timestamps_data = _section(raw_config, 'timestamps', {'epoch_floor_ms', 'clock_skew_tolerance_ms'})
    timestamps = TimestampConfig(
        epoch_floor_ms=_integer(
            timestamps_data, 'epoch_floor_ms', TimestampConfig.epoch_floor_ms, 'timestamps'
        ),
        clock_skew_tolerance_ms=_integer(
            timestamps_data, 'clock_skew_tolerance_ms',
            TimestampConfig.clock_skew_tolerance_ms, 'timestamps'
        )
    )

    timezone = raw_config.get('timezone', 'UTC')
    if not isinstance(timezone, str) or not timezone:
        raise ValueError("'timezone' must be a non-empty string")
    try:
        resolve_timezone(timezone)
    except ZoneInfoNotFoundError:
        raise ValueError(f"Unknown timezone: {timezone}")

    limits_data = raw_config.get('limits') or {}
    if not isinstance(limits_data, dict):
        raise ValueError("'limits' must be a dictionary")

    limits = {}
    for app_identifier, limit_data in limits_data.items():
        if not isinstance(limit_data, dict):
            raise ValueError(f"Limit for '{app_identifier}' must be a dictionary")
        limits[str(app_identifier)] = _parse_limit_config(limit_data, f"limits.{app_identifier}")

    return Settings(
        storage=storage,
        timestamps=timestamps,
        timezone=timezone,
        limits=limits
    )


def load_settings_from_env(path: Optional[str] = None) -> Settings:
    """Load settings honouring ZENLOCK_CONFIG and ZENLOCK_DB.

    An explicit ``path`` wins over ZENLOCK_CONFIG. When neither is given and
    the default file is absent, built-in defaults are used. ZENLOCK_DB
    overrides the configured database path.
    """
    config_path = path or os.environ.get(ENV_CONFIG_PATH)
    if config_path:
        settings = load_settings(config_path)
    elif Path(DEFAULT_CONFIG_PATH).exists():
        settings = load_settings(DEFAULT_CONFIG_PATH)
    else:
        settings = Settings()

    db_override = os.environ.get(ENV_DB_PATH)
    if db_override:
        settings = replace(settings, storage=replace(settings.storage, db_path=db_override))
    return settings


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _integer(data: Dict, key: str, default: int, path: str) -> int:
    value = data.get(key, default)
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _parse_limit_config(data: Dict, path: str) -> LimitConfig:
    """Parse and validate one app limit.

    Args:
        data: Limit configuration data
        path: Path for error messages

    Returns:
        Validated LimitConfig

    Raises:
        ValueError: If configuration is invalid
    """
    allowed_keys = {'daily_limit_minutes', 'enabled'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    if 'daily_limit_minutes' not in data:
        raise ValueError(f"Missing required 'daily_limit_minutes' in {path}")

    minutes = data['daily_limit_minutes']
    if isinstance(minutes, bool) or not isinstance(minutes, (int, float)) or minutes < 0:
        raise ValueError(f"'daily_limit_minutes' in {path} must be >= 0")

    enabled = data.get('enabled', True)
    if not isinstance(enabled, bool):
        raise ValueError(f"'enabled' in {path} must be a boolean")

    return LimitConfig(
        daily_limit_minutes=float(minutes),
        enabled=enabled
    )
