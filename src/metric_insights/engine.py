"""Analytics engine facade.

Wires a time series store to the analysis domains with configuration
defaults, memoization, timeouts and structured logging around every call.
"""

import copy
from dataclasses import asdict
from datetime import datetime
from typing import Any, Callable, List, Optional, Sequence, Union

from .cache import ComputationCache
from .config_manager import ConfigManager, get_config_manager
from .domains.decomposition import (
    calculate_correlation as _calculate_correlation,
    calculate_sample_entropy as _calculate_sample_entropy,
    decompose as _decompose,
    detect_anomalies as _detect_anomalies,
)
from .domains.downsampling import (
    downsample as _downsample,
    process_in_chunks as _process_in_chunks,
    process_in_parallel_chunks as _process_in_parallel_chunks,
)
from .domains.forecasting import ForecastOptions, generate_forecast as _generate_forecast
from .domains.preprocessing import PreprocessingOptions, preprocess as _preprocess
from .error_handler import AnalyticsError
from .logging_manager import get_logger, get_logging_manager
from .models import (
    DecompositionResult, DownsampleMethod, ForecastMethod, ForecastResult,
    PreprocessedTimeSeries, TimeSeriesPoint
)
from .store import TimeSeriesStore
from .timeout_manager import ComputationTimeoutManager

logger = get_logger(__name__)


class AnalyticsEngine:
    """Entry point for dashboard analytics on one store.

    Example:
        engine = AnalyticsEngine(SQLTimeSeriesStore(engine))
        result = engine.generate_forecast("opens", start, end, horizon=7)
    """

    def __init__(self,
                 store: TimeSeriesStore,
                 config_manager: Optional[ConfigManager] = None,
                 cache: Optional[ComputationCache] = None,
                 timeout_manager: Optional[ComputationTimeoutManager] = None):
        """Initialize the engine.

        Args:
            store: Source of metric series.
            config_manager: Configuration; the global manager when omitted.
            cache: Memo for decompositions and forecasts. Each call returns
                its own copy of the cached result. Built from the cache
                configuration when omitted; no memoization when caching is
                disabled there.
            timeout_manager: Deadline enforcement for fetches and
                auto-selection. Built from the performance configuration when
                omitted.
        """
        self.store = store
        self.config_manager = config_manager or get_config_manager()

        cache_config = self.config_manager.get_cache_config()
        if cache is not None:
            self.cache = cache
        elif cache_config.enabled:
            self.cache = ComputationCache.from_config(cache_config)
        else:
            self.cache = None

        self.timeout_manager = timeout_manager or ComputationTimeoutManager(
            self.config_manager.get_performance_config()
        )
        self.logging_manager = get_logging_manager(self.config_manager.get_logging_config())

    def _run(self, operation: str, fn: Callable[[], Any], **context) -> Any:
        """Run one tracked operation, logging analytics errors before re-raising."""
        with self.logging_manager.track_computation(operation, **context):
            try:
                return fn()
            except AnalyticsError as e:
                self.logging_manager.log_error(e, "engine", **context)
                raise

    def _memoize(self, key: tuple, compute: Callable[[], Any]) -> Any:
        """Cached result for ``key``; callers get a copy they may modify."""
        if self.cache is None:
            return compute()
        return copy.deepcopy(self.cache.get_or_compute(key, compute))

    def preprocess(self, points: Sequence[TimeSeriesPoint], **overrides) -> PreprocessedTimeSeries:
        """Preprocess with configured defaults; keyword arguments override options."""
        options = PreprocessingOptions.from_config(self.config_manager.get_preprocessing_config(), **overrides)
        return self._run("preprocess", lambda: _preprocess(points, options))

    def decompose(self, series_id: str, start: datetime, end: datetime,
                  interval: str = '1 day', window_size: Optional[int] = None,
                  seasonal_period: Optional[int] = None) -> DecompositionResult:
        analysis = self.config_manager.get_analysis_config()
        window_size = window_size or analysis.window_size

        def compute():
            return _decompose(self.store, series_id, start, end, interval, window_size,
                              seasonal_period, timeout_manager=self.timeout_manager)

        key = ('decompose', series_id, start, end, interval, window_size, seasonal_period)
        return self._run("decompose", lambda: self._memoize(key, compute),
                         series_id=series_id, interval=interval)

    def detect_anomalies(self, points: Sequence[TimeSeriesPoint], threshold: Optional[float] = None,
                         lookback_window: Optional[int] = None) -> List[TimeSeriesPoint]:
        analysis = self.config_manager.get_analysis_config()
        threshold = analysis.anomaly_threshold if threshold is None else threshold
        lookback_window = analysis.lookback_window if lookback_window is None else lookback_window
        return self._run("detect_anomalies",
                         lambda: _detect_anomalies(points, threshold, lookback_window))

    def calculate_correlation(self, series_a: Sequence[TimeSeriesPoint], series_b: Sequence[TimeSeriesPoint],
                              align_timestamps: bool = False) -> float:
        return self._run("calculate_correlation",
                         lambda: _calculate_correlation(series_a, series_b, align_timestamps))

    def calculate_sample_entropy(self, points: Sequence[TimeSeriesPoint], m: int = 2,
                                 r: Optional[float] = None) -> float:
        return self._run("calculate_sample_entropy", lambda: _calculate_sample_entropy(points, m, r))

    def generate_forecast(self, series_id: str, start: datetime, end: datetime, horizon: int,
                          method: Union[str, ForecastMethod, None] = None, interval: str = '1 day',
                          options: Optional[ForecastOptions] = None) -> ForecastResult:
        forecast_config = self.config_manager.get_forecast_config()
        method = method or forecast_config.default_method
        options = options or ForecastOptions.from_config(forecast_config)

        def compute():
            return _generate_forecast(self.store, series_id, start, end, horizon, method, interval,
                                      options, timeout_manager=self.timeout_manager)

        key = ('forecast', series_id, start, end, interval, horizon, method, asdict(options))
        method_name = method.value if isinstance(method, ForecastMethod) else str(method)
        return self._run("generate_forecast", lambda: self._memoize(key, compute),
                         series_id=series_id, interval=interval, method=method_name)

    def downsample(self, points: Sequence[TimeSeriesPoint], target_points: Optional[int] = None,
                   method: Union[str, DownsampleMethod, None] = None,
                   significance_threshold: Optional[float] = None) -> List[TimeSeriesPoint]:
        config = self.config_manager.get_downsampling_config()
        target_points = config.target_points if target_points is None else target_points
        method = method or config.method
        significance_threshold = (config.significance_threshold if significance_threshold is None
                                  else significance_threshold)
        return self._run("downsample",
                         lambda: _downsample(points, target_points, method, significance_threshold))

    def process_in_chunks(self, items: Sequence[Any], processor: Callable[[Sequence[Any]], Sequence[Any]],
                          chunk_size: Optional[int] = None) -> List[Any]:
        chunk_size = chunk_size or self.config_manager.get_performance_config().chunk_size
        return self._run("process_in_chunks", lambda: _process_in_chunks(items, chunk_size, processor))

    def process_in_parallel_chunks(self, items: Sequence[Any],
                                   processor: Callable[[Sequence[Any]], Sequence[Any]],
                                   chunk_size: Optional[int] = None,
                                   concurrent_chunks: Optional[int] = None) -> List[Any]:
        performance = self.config_manager.get_performance_config()
        chunk_size = chunk_size or performance.chunk_size
        concurrent_chunks = concurrent_chunks or performance.concurrent_chunks
        return self._run("process_in_parallel_chunks",
                         lambda: _process_in_parallel_chunks(items, chunk_size, concurrent_chunks, processor))

    def cache_stats(self) -> dict:
        return self.cache.stats() if self.cache is not None else {'enabled': False}

    def get_metrics(self) -> bytes:
        """Prometheus exposition of the engine metrics."""
        return self.logging_manager.get_metrics()
