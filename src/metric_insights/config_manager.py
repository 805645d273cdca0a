"""Configuration management system for Metric Insights.

Provides layered configuration for the analytics engine: built-in defaults,
YAML files (with environment variable substitution) and environment variables,
validated with pydantic before use.
"""

import logging
import os
import re
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .error_handler import ConfigurationError

logger = logging.getLogger(__name__)


class LogLevel(str, Enum):
    """Supported logging levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


SUPPORTED_INTERVALS = ("1 hour", "1 day", "1 week", "1 month")
SUPPORTED_FORECAST_METHODS = ("auto", "naive", "seasonal_naive", "moving_average", "linear_regression")
SUPPORTED_DOWNSAMPLE_METHODS = ("lttb", "min-max", "average", "first-last-significant")


@dataclass
class PreprocessingConfig:
    """Default options for the preprocessing stage."""
    fill_missing_values: bool = True
    remove_outliers: bool = False
    outlier_threshold: float = 3.0
    normalize_timestamps: bool = False
    expected_interval: str = "1 day"

    def __post_init__(self):
        if self.outlier_threshold <= 0:
            raise ValueError(f"outlier_threshold must be positive, got {self.outlier_threshold}")
        if self.expected_interval not in SUPPORTED_INTERVALS:
            raise ValueError(f"expected_interval must be one of {SUPPORTED_INTERVALS}, got {self.expected_interval!r}")


@dataclass
class AnalysisConfig:
    """Decomposition and anomaly detection defaults."""
    window_size: int = 7
    anomaly_threshold: float = 3.0
    lookback_window: Optional[int] = None

    def __post_init__(self):
        if self.window_size <= 0:
            raise ValueError(f"window_size must be positive, got {self.window_size}")
        if self.anomaly_threshold <= 0:
            raise ValueError(f"anomaly_threshold must be positive, got {self.anomaly_threshold}")
        if self.lookback_window is not None and self.lookback_window < 2:
            raise ValueError(f"lookback_window must be at least 2, got {self.lookback_window}")


@dataclass
class ForecastConfig:
    """Forecasting defaults."""
    default_method: str = "auto"
    window_size: int = 7
    confidence_level: float = 0.95
    seasonal_period: Optional[int] = None
    validate_with_history: bool = False

    def __post_init__(self):
        if self.default_method not in SUPPORTED_FORECAST_METHODS:
            raise ValueError(f"default_method must be one of {SUPPORTED_FORECAST_METHODS}, got {self.default_method!r}")
        if self.window_size <= 0:
            raise ValueError(f"window_size must be positive, got {self.window_size}")
        if not 0 < self.confidence_level < 1:
            raise ValueError(f"confidence_level must be between 0 and 1, got {self.confidence_level}")
        if self.seasonal_period is not None and self.seasonal_period < 1:
            raise ValueError(f"seasonal_period must be positive, got {self.seasonal_period}")


@dataclass
class DownsamplingConfig:
    """Downsampling defaults for chart rendering."""
    target_points: int = 100
    method: str = "lttb"
    significance_threshold: float = 0.1

    def __post_init__(self):
        if self.target_points < 2:
            raise ValueError(f"target_points must be at least 2, got {self.target_points}")
        if self.method not in SUPPORTED_DOWNSAMPLE_METHODS:
            raise ValueError(f"method must be one of {SUPPORTED_DOWNSAMPLE_METHODS}, got {self.method!r}")
        if not 0 <= self.significance_threshold <= 1:
            raise ValueError(f"significance_threshold must be between 0 and 1, got {self.significance_threshold}")


@dataclass
class CacheConfig:
    """Computation cache configuration."""
    enabled: bool = True
    max_entries: int = 1000
    default_ttl: float = 300.0  # seconds

    def __post_init__(self):
        if self.max_entries <= 0:
            raise ValueError(f"max_entries must be positive, got {self.max_entries}")
        if self.default_ttl <= 0:
            raise ValueError(f"default_ttl must be positive, got {self.default_ttl}")


@dataclass
class PerformanceConfig:
    """Timeouts and batch processing configuration."""
    fetch_timeout: float = 30.0  # seconds, 0 disables
    auto_selection_timeout: float = 60.0  # seconds, 0 disables
    chunk_size: int = 100
    concurrent_chunks: int = 4

    def __post_init__(self):
        if self.fetch_timeout < 0:
            raise ValueError(f"fetch_timeout must be non-negative, got {self.fetch_timeout}")
        if self.auto_selection_timeout < 0:
            raise ValueError(f"auto_selection_timeout must be non-negative, got {self.auto_selection_timeout}")
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.concurrent_chunks <= 0:
            raise ValueError(f"concurrent_chunks must be positive, got {self.concurrent_chunks}")


@dataclass
class LoggingConfig:
    """Structured logging configuration."""
    level: LogLevel = LogLevel.INFO
    console_output: bool = True
    file_path: Optional[str] = None
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5
    enable_metrics: bool = True

    def __post_init__(self):
        if self.max_file_size <= 0:
            raise ValueError(f"max_file_size must be positive, got {self.max_file_size}")
        if self.backup_count < 0:
            raise ValueError(f"backup_count must be non-negative, got {self.backup_count}")


class MetricInsightsConfig(BaseModel):
    """Root configuration model with validation."""

    model_config = ConfigDict(extra="forbid")

    preprocessing: Dict[str, Any] = Field(default_factory=dict)
    analysis: Dict[str, Any] = Field(default_factory=dict)
    forecast: Dict[str, Any] = Field(default_factory=dict)
    downsampling: Dict[str, Any] = Field(default_factory=dict)
    cache: Dict[str, Any] = Field(default_factory=dict)
    performance: Dict[str, Any] = Field(default_factory=dict)
    logging: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("preprocessing", "forecast")
    @classmethod
    def validate_interval(cls, v):
        """Reject interval tags the engine cannot resolve."""
        interval = v.get("expected_interval")
        if interval is not None and interval not in SUPPORTED_INTERVALS:
            raise ValueError(f"unsupported interval {interval!r}. Valid intervals: {list(SUPPORTED_INTERVALS)}")
        return v

    @field_validator("logging")
    @classmethod
    def validate_log_level(cls, v):
        """Validate the logging level name."""
        level = v.get("level")
        if level is not None:
            try:
                LogLevel(str(level).lower())
            except ValueError:
                valid = [lvl.value for lvl in LogLevel]
                raise ValueError(f"invalid log level {level!r}. Valid levels: {valid}")
        return v


# Section name -> dataclass used to build it
_SECTIONS = {
    "preprocessing": PreprocessingConfig,
    "analysis": AnalysisConfig,
    "forecast": ForecastConfig,
    "downsampling": DownsamplingConfig,
    "cache": CacheConfig,
    "performance": PerformanceConfig,
    "logging": LoggingConfig,
}

_BOOL_TRUE = ("true", "1", "yes", "on")


class ConfigManager:
    """Centralized configuration manager supporting environment variables and YAML files."""

    DEFAULT_CONFIG_FILES = [
        "./metric-insights.yaml",
        "~/.metric-insights.yaml",
        "/etc/metric-insights.yaml"
    ]

    ENV_PREFIX = "METRIC_INSIGHTS_"

    def __init__(self, config_file: Optional[str] = None, load_env_file: bool = True):
        """Initialize configuration manager.

        Args:
            config_file: Specific config file to load. If None, searches default locations.
            load_env_file: Load a ``.env`` file into the environment before reading it.
        """
        self._config_file = config_file
        self._config_data: Dict[str, Any] = {}
        self._last_reload = 0.0
        self._file_mtimes: Dict[str, float] = {}
        self._lock = threading.Lock()

        if load_env_file:
            load_dotenv()

        self.reload_config()

    def reload_config(self) -> None:
        """Reload configuration from all sources with proper precedence."""
        with self._lock:
            # 1. Defaults
            self._apply_defaults()

            # 2. YAML files (discovery order)
            yaml_data = self._load_yaml_config()
            if yaml_data:
                self._merge_config(yaml_data)

            # 3. Environment variables
            env_data = self._load_env_config()
            if env_data:
                self._merge_config(env_data)

            # 4. Validate merged tree
            self._validate_config()

            self._last_reload = time.time()

    def get_section(self, name: str) -> Dict[str, Any]:
        """Return a copy of the raw values of one configuration section."""
        return dict(self._config_data.get(name, {}))

    def get_preprocessing_config(self) -> PreprocessingConfig:
        return self._build_section("preprocessing")

    def get_analysis_config(self) -> AnalysisConfig:
        return self._build_section("analysis")

    def get_forecast_config(self) -> ForecastConfig:
        return self._build_section("forecast")

    def get_downsampling_config(self) -> DownsamplingConfig:
        return self._build_section("downsampling")

    def get_cache_config(self) -> CacheConfig:
        return self._build_section("cache")

    def get_performance_config(self) -> PerformanceConfig:
        return self._build_section("performance")

    def get_logging_config(self) -> LoggingConfig:
        """Get logging configuration."""
        data = {k: v for k, v in self._config_data.get("logging", {}).items()
                if k in LoggingConfig.__dataclass_fields__}
        try:
            data["level"] = LogLevel(str(data.get("level", LogLevel.INFO.value)).lower())
            return LoggingConfig(**data)
        except ValueError as e:
            raise ConfigurationError(f"Invalid logging configuration: {e}", config_key="logging", cause=e) from e

    def has_config_changed(self) -> bool:
        """Check if any configuration files have been modified since last reload."""
        for file_path, last_mtime in self._file_mtimes.items():
            try:
                if os.path.getmtime(file_path) > last_mtime:
                    return True
            except OSError:
                # File might have been deleted
                continue
        return False

    def _build_section(self, name: str):
        """Instantiate a section dataclass from the merged values."""
        section_cls = _SECTIONS[name]
        data = self._config_data.get(name, {})
        known = {k: v for k, v in data.items() if k in section_cls.__dataclass_fields__}
        try:
            return section_cls(**known)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid {name} configuration: {e}", config_key=name, cause=e) from e

    def _apply_defaults(self) -> None:
        """Apply default configuration values."""
        self._config_data = {
            "preprocessing": {
                "fill_missing_values": True,
                "remove_outliers": False,
                "outlier_threshold": 3.0,
                "normalize_timestamps": False,
                "expected_interval": "1 day"
            },
            "analysis": {
                "window_size": 7,
                "anomaly_threshold": 3.0
            },
            "forecast": {
                "default_method": "auto",
                "window_size": 7,
                "confidence_level": 0.95,
                "validate_with_history": False
            },
            "downsampling": {
                "target_points": 100,
                "method": "lttb",
                "significance_threshold": 0.1
            },
            "cache": {
                "enabled": True,
                "max_entries": 1000,
                "default_ttl": 300.0
            },
            "performance": {
                "fetch_timeout": 30.0,
                "auto_selection_timeout": 60.0,
                "chunk_size": 100,
                "concurrent_chunks": 4
            },
            "logging": {
                "level": LogLevel.INFO.value,
                "console_output": True
            }
        }

    def _load_yaml_config(self) -> Optional[Dict[str, Any]]:
        """Load configuration from the first YAML file found."""
        config_files = [self._config_file] if self._config_file else self.DEFAULT_CONFIG_FILES

        for file_path in config_files:
            if not file_path:
                continue

            expanded_path = Path(file_path).expanduser()
            if not expanded_path.exists():
                continue

            try:
                content = expanded_path.read_text()
                content = self._substitute_env_vars(content)
                yaml_data = yaml.safe_load(content) or {}
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Could not load config file {file_path}: {e}")
                continue

            if not isinstance(yaml_data, dict):
                logger.warning(f"Config file {file_path} does not contain a mapping, ignoring it")
                continue

            self._file_mtimes[str(expanded_path)] = os.path.getmtime(expanded_path)
            return yaml_data

        return None

    def _load_env_config(self) -> Dict[str, Any]:
        """Load configuration from METRIC_INSIGHTS_<SECTION>_<KEY> variables."""
        env_config: Dict[str, Any] = {}
        pattern = re.compile(
            r"^" + re.escape(self.ENV_PREFIX) + r"(" + "|".join(s.upper() for s in _SECTIONS) + r")_(.+)$"
        )

        for key, value in os.environ.items():
            match = pattern.match(key)
            if not match:
                continue

            section = match.group(1).lower()
            field_name = match.group(2).lower()
            section_cls = _SECTIONS[section]
            if field_name not in section_cls.__dataclass_fields__:
                logger.warning(f"Unknown configuration key in environment: {key}")
                continue

            try:
                coerced = self._coerce_env_value(section_cls, field_name, value)
            except ValueError:
                logger.warning(f"Invalid value for {key}: {value}")
                continue

            env_config.setdefault(section, {})[field_name] = coerced

        return env_config

    @staticmethod
    def _coerce_env_value(section_cls, field_name: str, value: str) -> Any:
        """Convert an environment string to the type of the dataclass default."""
        default = section_cls.__dataclass_fields__[field_name].default
        if isinstance(default, bool):
            return value.lower() in _BOOL_TRUE
        if isinstance(default, int) and not isinstance(default, Enum):
            return int(value)
        if isinstance(default, float):
            return float(value)
        if default is None and field_name in ("seasonal_period", "lookback_window"):
            return int(value)
        return value

    def _substitute_env_vars(self, content: str) -> str:
        """Substitute environment variables in YAML content using ${VAR} syntax."""
        pattern = re.compile(r'\$\{([^}]+)\}')

        def replace_var(match):
            var_name = match.group(1)
            # ${VAR:default_value}
            if ':' in var_name:
                var_name, default = var_name.split(':', 1)
                return os.getenv(var_name, default)
            return os.getenv(var_name, match.group(0))

        return pattern.sub(replace_var, content)

    def _merge_config(self, new_config: Dict[str, Any]) -> None:
        """Deep merge new configuration into existing configuration."""
        def deep_merge(target, source):
            for key, value in source.items():
                if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                    deep_merge(target[key], value)
                else:
                    target[key] = value

        deep_merge(self._config_data, new_config)

    def _validate_config(self) -> None:
        """Validate the final merged configuration."""
        try:
            MetricInsightsConfig(**self._config_data)
        except PydanticValidationError as e:
            # Partial configs still work; section dataclasses reject bad values on use
            logger.warning(f"Configuration validation errors: {e}")


# Global configuration manager instance
_config_manager: Optional[ConfigManager] = None


def get_config_manager() -> ConfigManager:
    """Get or create global configuration manager instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def initialize_config(config_file: Optional[str] = None) -> ConfigManager:
    """Initialize global configuration manager with specific settings."""
    global _config_manager
    _config_manager = ConfigManager(config_file=config_file)
    return _config_manager
