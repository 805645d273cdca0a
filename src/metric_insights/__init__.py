"""
Metric Insights - time series analytics for marketing dashboards.

Preprocessing, decomposition, anomaly detection, forecasting and
downsampling over metric series read from a pluggable store.
"""

__version__ = "0.1.0"

from .models import (
    TimeSeriesPoint,
    PreprocessedTimeSeries,
    DecompositionResult,
    ForecastResult,
    ForecastMethod,
    DownsampleMethod
)

from .error_handler import (
    AnalyticsError,
    InvalidArgumentError,
    InsufficientDataError,
    UpstreamFetchError,
    ComputationTimeoutError,
    ConfigurationError
)

from .store import (
    TimeSeriesStore,
    InMemoryTimeSeriesStore,
    SQLTimeSeriesStore,
    fetch_time_series
)

from .cache import ComputationCache
from .config_manager import ConfigManager, get_config_manager, initialize_config
from .logging_manager import get_logger, get_logging_manager
from .engine import AnalyticsEngine

__all__ = [
    '__version__',

    # Models
    'TimeSeriesPoint', 'PreprocessedTimeSeries', 'DecompositionResult', 'ForecastResult',
    'ForecastMethod', 'DownsampleMethod',

    # Errors
    'AnalyticsError', 'InvalidArgumentError', 'InsufficientDataError', 'UpstreamFetchError',
    'ComputationTimeoutError', 'ConfigurationError',

    # Storage
    'TimeSeriesStore', 'InMemoryTimeSeriesStore', 'SQLTimeSeriesStore', 'fetch_time_series',

    # Infrastructure
    'ComputationCache', 'ConfigManager', 'get_config_manager', 'initialize_config',
    'get_logger', 'get_logging_manager',

    # Facade
    'AnalyticsEngine',
]
