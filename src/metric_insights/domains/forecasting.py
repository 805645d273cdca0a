"""
Time Series Forecasting - statistical forecasts with confidence bands and model selection.

Four interchangeable models share one contract: given a clean series and a
horizon they return a point forecast, an upper/lower confidence band and an
accuracy score in [0, 1]. ``generate_forecast`` fetches and preprocesses a
stored series, optionally picks the model by holdout validation, and can
re-validate the chosen model against the tail of the history.

Key Features:
- Naive, seasonal naive, moving average and OLS linear regression models
- Automatic model selection scored by 1 - MAPE on a holdout split
- MAPE / MAE / RMSE / R² error metrics
- Deadline-aware fetch and auto-selection through the timeout manager
"""

import math
from abc import ABC, abstractmethod
from collections.abc import Sequence as SequenceABC
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple, Type, Union

import numpy as np
import statsmodels.api as sm
from sklearn.base import BaseEstimator
from sklearn.metrics import mean_absolute_error, mean_squared_error

from ..config_manager import ForecastConfig, get_config_manager
from ..error_handler import InsufficientDataError, InvalidArgumentError
from ..logging_manager import get_logger, get_logging_manager
from ..models import (
    ConfidenceBand, ForecastMetadata, ForecastMethod, ForecastResult, ForecastValidationMetrics,
    LinearRegressionParams, MovingAverageParams, NaiveParams, PreprocessedTimeSeries,
    SeasonalNaiveParams, TimeSeriesPoint, default_seasonal_period, get_interval, resolve_interval
)
from ..store import TimeSeriesStore, fetch_time_series, validate_request
from ..timeout_manager import ComputationTimeoutManager, TimeoutReason
from .preprocessing import PreprocessingOptions, preprocess

logger = get_logger(__name__)

SeriesInput = Union[PreprocessedTimeSeries, Sequence[TimeSeriesPoint]]

# Auto-selection needs this many points, otherwise naive wins by default
MIN_POINTS_FOR_SELECTION = 10
MAX_HOLDOUT = 5
MIN_POINTS_FOR_HISTORY_VALIDATION = 10


@dataclass
class ForecastOptions:
    """Per-request forecasting options."""
    window_size: int = 7
    confidence_level: float = 0.95
    seasonal_period: Optional[int] = None
    validate_with_history: bool = False

    @classmethod
    def from_config(cls, config: Optional[ForecastConfig] = None, **overrides) -> 'ForecastOptions':
        config = config or get_config_manager().get_forecast_config()
        options = cls(
            window_size=config.window_size,
            confidence_level=config.confidence_level,
            seasonal_period=config.seasonal_period,
            validate_with_history=config.validate_with_history,
        )
        return replace(options, **overrides)


def get_z_value(confidence_level: float) -> float:
    """Two-sided standard normal quantile for common confidence levels."""
    if confidence_level >= 0.99:
        return 2.576
    if confidence_level >= 0.98:
        return 2.326
    if confidence_level >= 0.95:
        return 1.96
    if confidence_level >= 0.90:
        return 1.645
    if confidence_level >= 0.80:
        return 1.282
    return 1.96


def get_t_value(confidence_level: float, degrees_of_freedom: int) -> float:
    """Coarse Student-t approximation: z widened by ``sqrt(1 + 10/df)`` for df <= 30."""
    z_value = get_z_value(confidence_level)
    if degrees_of_freedom > 30:
        return z_value
    return z_value * math.sqrt(1 + 10 / max(degrees_of_freedom, 1))


def _points(series: SeriesInput) -> List[TimeSeriesPoint]:
    if isinstance(series, PreprocessedTimeSeries):
        return list(series.data)
    return list(series)


def _mape_accuracy(actual: Sequence[float], predicted: Sequence[float]) -> float:
    """1 - MAPE over non-zero actuals clamped to [0, 1]; 0.5 when nothing is scorable."""
    errors = [abs((a - p) / a) for a, p in zip(actual, predicted) if a != 0]
    if not errors:
        return 0.5
    return max(0.0, min(1.0, 1 - float(np.mean(errors))))


class BaseForecaster(BaseEstimator, ABC):
    """Common parameters and helpers of the forecasting models."""

    method: ForecastMethod

    def __init__(self, confidence_level: float = 0.95):
        self.confidence_level = confidence_level

    @abstractmethod
    def forecast(self, series: SeriesInput, horizon: int, interval: str = '1 day',
                 confidence_level: Optional[float] = None) -> ForecastResult:
        """Forecast ``horizon`` buckets past the end of ``series``."""

    def _level(self, confidence_level: Optional[float]) -> float:
        return self.confidence_level if confidence_level is None else confidence_level

    @staticmethod
    def _future_timestamps(last: datetime, horizon: int, interval: str) -> List[datetime]:
        step = get_interval(interval).delta
        return [last + i * step for i in range(1, horizon + 1)]

    @staticmethod
    def _build_band(timestamps: Sequence[datetime], centers: Sequence[float],
                    half_widths: Sequence[float]) -> ConfidenceBand:
        return ConfidenceBand(
            upper=[TimeSeriesPoint(t, c + w) for t, c, w in zip(timestamps, centers, half_widths)],
            lower=[TimeSeriesPoint(t, max(0.0, c - w)) for t, c, w in zip(timestamps, centers, half_widths)],
        )


class NaiveForecaster(BaseForecaster):
    """Repeats the last observed value."""

    method = ForecastMethod.NAIVE

    def forecast(self, series: SeriesInput, horizon: int, interval: str = '1 day',
                 confidence_level: Optional[float] = None) -> ForecastResult:
        logger.info(f"Generating naive forecast with horizon {horizon}")
        history = _points(series)
        if not history:
            raise InsufficientDataError("Not enough data for naive forecasting", required=1, available=0)

        level = self._level(confidence_level)
        values = np.array([p.value for p in history], dtype=float)
        last_value = float(values[-1])
        std_dev = float(values.std())
        z_value = get_z_value(level)

        timestamps = self._future_timestamps(history[-1].timestamp, horizon, interval)
        forecast = [TimeSeriesPoint(t, last_value) for t in timestamps]
        band = self._build_band(timestamps, [last_value] * horizon, [z_value * std_dev] * horizon)

        return ForecastResult(
            forecast=forecast,
            confidence=band,
            accuracy=self._accuracy(values),
            method=self.method,
            metadata=ForecastMetadata(model_params=NaiveParams(
                last_value=last_value, std_dev=std_dev, confidence_level=level, z_value=z_value
            )),
        )

    @staticmethod
    def _accuracy(values: np.ndarray) -> float:
        # training mean scored against the last 3 points
        if len(values) < 4:
            return 0.5
        training_mean = float(values[:-3].mean())
        return _mape_accuracy(values[-3:], [training_mean] * 3)


class SeasonalNaiveForecaster(BaseForecaster):
    """Repeats the value observed one seasonal period earlier."""

    method = ForecastMethod.SEASONAL_NAIVE

    def __init__(self, seasonal_period: Optional[int] = None, confidence_level: float = 0.95):
        super().__init__(confidence_level=confidence_level)
        self.seasonal_period = seasonal_period

    def forecast(self, series: SeriesInput, horizon: int, interval: str = '1 day',
                 confidence_level: Optional[float] = None) -> ForecastResult:
        logger.info(f"Generating seasonal naive forecast with horizon {horizon}")
        history = _points(series)
        if not history:
            raise InsufficientDataError("Not enough data for seasonal naive forecasting", required=1, available=0)

        level = self._level(confidence_level)
        period = self.seasonal_period or default_seasonal_period(interval)

        if len(history) < period + 1:
            logger.warning(f"Not enough data for seasonal forecasting with period {period}, "
                           "falling back to naive forecast")
            result = NaiveForecaster(confidence_level=level).forecast(history, horizon, interval)
            result.metadata.warnings.append(
                f"Seasonal naive needs {period + 1} points for period {period}, "
                f"got {len(history)}; used naive forecast"
            )
            return result

        values = np.array([p.value for p in history], dtype=float)
        n = len(values)
        differences = values[period:] - values[:-period]
        std_dev = float(differences.std())
        z_value = get_z_value(level)

        timestamps = self._future_timestamps(history[-1].timestamp, horizon, interval)
        # step i lands one period after index n - period + (i - 1) % period
        centers = [float(values[n - period + (i - 1) % period]) for i in range(1, horizon + 1)]
        half_widths = [z_value * std_dev * math.sqrt(i) for i in range(1, horizon + 1)]

        return ForecastResult(
            forecast=[TimeSeriesPoint(t, c) for t, c in zip(timestamps, centers)],
            confidence=self._build_band(timestamps, centers, half_widths),
            accuracy=self._accuracy(values, period),
            method=self.method,
            metadata=ForecastMetadata(model_params=SeasonalNaiveParams(
                seasonal_period=period, std_dev=std_dev, confidence_level=level, z_value=z_value
            )),
        )

    @staticmethod
    def _accuracy(values: np.ndarray, period: int) -> float:
        if len(values) < period * 2:
            return 0.5
        return _mape_accuracy(values[period:], values[:-period])


class MovingAverageForecaster(BaseForecaster):
    """Flat forecast at the mean of the trailing window."""

    method = ForecastMethod.MOVING_AVERAGE

    def __init__(self, window_size: int = 7, confidence_level: float = 0.95):
        super().__init__(confidence_level=confidence_level)
        self.window_size = window_size

    def forecast(self, series: SeriesInput, horizon: int, interval: str = '1 day',
                 confidence_level: Optional[float] = None) -> ForecastResult:
        window = self.window_size
        logger.info(f"Generating moving average forecast with horizon {horizon}, window size {window}")
        if window < 2:
            logger.warning(f"Invalid window size ({window}), using minimum of 2")
            window = 2

        history = _points(series)
        if len(history) < window:
            raise InsufficientDataError(
                f"Not enough data for moving average forecasting. Need at least {window} data points.",
                required=window, available=len(history)
            )

        level = self._level(confidence_level)
        values = np.array([p.value for p in history], dtype=float)
        forecast_value = float(values[-window:].mean())

        one_step = self._one_step_predictions(values, window)
        residuals = values[window:] - one_step
        std_dev = float(residuals.std()) if len(residuals) else 0.0
        z_value = get_z_value(level)

        timestamps = self._future_timestamps(history[-1].timestamp, horizon, interval)
        half_widths = [z_value * std_dev * math.sqrt(1 + i / window) for i in range(1, horizon + 1)]

        return ForecastResult(
            forecast=[TimeSeriesPoint(t, forecast_value) for t in timestamps],
            confidence=self._build_band(timestamps, [forecast_value] * horizon, half_widths),
            accuracy=self._accuracy(values, one_step, window),
            method=self.method,
            metadata=ForecastMetadata(model_params=MovingAverageParams(
                window_size=window, forecast_value=forecast_value, std_dev=std_dev,
                confidence_level=level, z_value=z_value
            )),
        )

    @staticmethod
    def _one_step_predictions(values: np.ndarray, window: int) -> np.ndarray:
        """Mean of the ``window`` values before each index from ``window`` on."""
        if len(values) <= window:
            return np.array([], dtype=float)
        cumulative = np.concatenate(([0.0], np.cumsum(values)))
        return (cumulative[window:-1] - cumulative[:-window - 1]) / window

    @staticmethod
    def _accuracy(values: np.ndarray, one_step: np.ndarray, window: int) -> float:
        if len(values) < window + 3:
            return 0.5
        return _mape_accuracy(values[window:], one_step)


class LinearRegressionForecaster(BaseForecaster):
    """OLS line of value against elapsed days, extrapolated forward."""

    method = ForecastMethod.LINEAR_REGRESSION

    def forecast(self, series: SeriesInput, horizon: int, interval: str = '1 day',
                 confidence_level: Optional[float] = None) -> ForecastResult:
        logger.info(f"Generating linear regression forecast with horizon {horizon}")
        history = sorted(_points(series), key=lambda p: p.timestamp)
        n = len(history)
        if n < 3:
            raise InsufficientDataError(
                "Not enough data for linear regression forecasting. Need at least 3 data points.",
                required=3, available=n
            )

        level = self._level(confidence_level)
        first = history[0].timestamp
        day_seconds = 24 * 60 * 60
        x = np.array([(p.timestamp - first).total_seconds() / day_seconds for p in history])
        y = np.array([p.value for p in history], dtype=float)

        slope, intercept, r_squared, residuals = self._fit(x, y)
        standard_error = float(math.sqrt(np.sum(residuals ** 2) / (n - 2)))
        t_value = get_t_value(level, n - 2)

        x_mean = float(x.mean())
        sxx = float(np.sum((x - x_mean) ** 2))
        step_days = get_interval(interval).days
        last_x = float(x[-1])

        timestamps = self._future_timestamps(history[-1].timestamp, horizon, interval)
        forecast, upper, lower = [], [], []
        for i, timestamp in enumerate(timestamps, start=1):
            forecast_x = last_x + i * step_days
            value = intercept + slope * forecast_x
            leverage = (forecast_x - x_mean) ** 2 / sxx if sxx > 0 else 0.0
            prediction_error = standard_error * math.sqrt(1 + 1 / n + leverage)

            forecast.append(TimeSeriesPoint(timestamp, max(0.0, value)))
            upper.append(TimeSeriesPoint(timestamp, value + t_value * prediction_error))
            lower.append(TimeSeriesPoint(timestamp, max(0.0, value - t_value * prediction_error)))

        return ForecastResult(
            forecast=forecast,
            confidence=ConfidenceBand(upper=upper, lower=lower),
            accuracy=max(0.0, min(1.0, r_squared)),
            method=self.method,
            metadata=ForecastMetadata(model_params=LinearRegressionParams(
                slope=slope, intercept=intercept, r_squared=r_squared, standard_error=standard_error,
                confidence_level=level, t_value=t_value
            )),
        )

    @staticmethod
    def _fit(x: np.ndarray, y: np.ndarray) -> Tuple[float, float, float, np.ndarray]:
        """Return slope, intercept, R² and residuals."""
        y_mean = float(y.mean())
        if np.all(x == x[0]):
            # horizontal line at the mean
            return 0.0, y_mean, 0.0, y - y_mean

        results = sm.OLS(y, sm.add_constant(x, has_constant='add')).fit()
        intercept, slope = (float(v) for v in results.params)
        residuals = np.asarray(results.resid, dtype=float)

        if np.all(y == y[0]):
            return slope, intercept, 1.0, residuals
        return slope, intercept, float(results.rsquared), residuals


FORECASTERS: Dict[ForecastMethod, Type[BaseForecaster]] = {
    ForecastMethod.NAIVE: NaiveForecaster,
    ForecastMethod.SEASONAL_NAIVE: SeasonalNaiveForecaster,
    ForecastMethod.MOVING_AVERAGE: MovingAverageForecaster,
    ForecastMethod.LINEAR_REGRESSION: LinearRegressionForecaster,
}


def build_forecaster(method: ForecastMethod, options: ForecastOptions) -> BaseForecaster:
    """Instantiate the model for a concrete (non-auto) method."""
    if method == ForecastMethod.SEASONAL_NAIVE:
        return SeasonalNaiveForecaster(seasonal_period=options.seasonal_period,
                                       confidence_level=options.confidence_level)
    if method == ForecastMethod.MOVING_AVERAGE:
        return MovingAverageForecaster(window_size=options.window_size,
                                       confidence_level=options.confidence_level)
    if method in FORECASTERS:
        return FORECASTERS[method](confidence_level=options.confidence_level)
    raise InvalidArgumentError(f"No forecaster for method {method!r}", argument="method")


def calculate_forecast_errors(forecast: Sequence[TimeSeriesPoint],
                              actual: Sequence[TimeSeriesPoint]) -> ForecastValidationMetrics:
    """
    Error metrics of a forecast against observed values.

    Both sequences are sorted by timestamp and truncated to the shorter one.
    MAPE skips zero actuals and is 1.0 when none remain; R² is 1.0 for
    constant actuals.

    Raises:
    -------
    TypeError
        If either argument is not a resolved sequence of points
    InvalidArgumentError
        If either sequence is empty
    """
    for name, value in (('forecast', forecast), ('actual', actual)):
        if not isinstance(value, SequenceABC) or isinstance(value, (str, bytes)):
            raise TypeError(f"{name} must be a sequence of TimeSeriesPoint, got {type(value).__name__}")

    length = min(len(forecast), len(actual))
    if length == 0:
        raise InvalidArgumentError("Cannot compute forecast errors on empty series", argument="forecast")

    predicted = np.array([p.value for p in sorted(forecast, key=lambda p: p.timestamp)[:length]], dtype=float)
    observed = np.array([p.value for p in sorted(actual, key=lambda p: p.timestamp)[:length]], dtype=float)

    nonzero = observed != 0
    mape = float(np.mean(np.abs((observed[nonzero] - predicted[nonzero]) / observed[nonzero]))) \
        if nonzero.any() else 1.0
    mae = float(mean_absolute_error(observed, predicted))
    mse = float(mean_squared_error(observed, predicted))
    rmse = math.sqrt(mse)

    total_sum_of_squares = float(np.sum((observed - observed.mean()) ** 2))
    r2 = 1.0 if total_sum_of_squares == 0 else 1 - float(np.sum((observed - predicted) ** 2)) / total_sum_of_squares

    return ForecastValidationMetrics(mape=mape, rmse=rmse, mae=mae, r2=r2)


def determine_best_method(series: SeriesInput, interval: str = '1 day',
                          seasonal_period: Optional[int] = None) -> Tuple[ForecastMethod, Dict[str, float]]:
    """
    Pick a forecasting method by holdout validation.

    Parameters:
    -----------
    series : PreprocessedTimeSeries or sequence of TimeSeriesPoint
        Clean history
    interval : str
        Bucket interval, used for timestamps and the default seasonal period
    seasonal_period : int, optional
        Period for the seasonal candidate

    Returns:
    --------
    tuple
        The winning method and the ``1 - MAPE`` score of every evaluated
        candidate. Candidates run in fixed order and only a strictly better
        score replaces the current best, so ties keep the earlier method.
    """
    data = _points(series)
    if len(data) < MIN_POINTS_FOR_SELECTION:
        logger.info("Not enough data for method selection, using naive", points=len(data))
        return ForecastMethod.NAIVE, {}

    test_size = min(MAX_HOLDOUT, int(len(data) * 0.2))
    training = data[:-test_size]
    test = data[-test_size:]
    period = seasonal_period or default_seasonal_period(interval)

    candidates: List[BaseForecaster] = [NaiveForecaster()]
    if len(training) >= period * 2:
        candidates.append(SeasonalNaiveForecaster(seasonal_period=period))
    window = min(7, len(training) // 3)
    if len(training) >= max(window, 2) * 2:
        candidates.append(MovingAverageForecaster(window_size=window))
    if len(training) >= 5:
        candidates.append(LinearRegressionForecaster())

    scores: Dict[str, float] = {}
    best_method, best_score = ForecastMethod.NAIVE, None
    for candidate in candidates:
        result = candidate.forecast(training, test_size, interval)
        score = 1 - calculate_forecast_errors(result.forecast, test).mape
        scores[candidate.method.value] = score
        if best_score is None or score > best_score:
            best_method, best_score = candidate.method, score

    logger.info(f"Method selection results: {scores}")
    logger.info(f"Selected best method: {best_method.value} with accuracy {best_score}")
    return best_method, scores


def validate_forecast_accuracy(history: Sequence[TimeSeriesPoint], method: ForecastMethod, horizon: int,
                               interval: str = '1 day',
                               options: Optional[ForecastOptions] = None) -> ForecastValidationMetrics:
    """Re-forecast the last ``horizon`` points from the rest of the history and score it.

    The moving-average window is capped at the training length (minimum 2).
    """
    options = options or ForecastOptions()
    history = list(history)
    if len(history) < horizon * 2:
        raise InsufficientDataError(
            f"History validation needs at least {horizon * 2} points, got {len(history)}",
            required=horizon * 2, available=len(history)
        )

    training = PreprocessedTimeSeries.from_points(history[:-horizon])
    test = history[-horizon:]
    if method == ForecastMethod.MOVING_AVERAGE:
        options = replace(options, window_size=max(2, min(options.window_size, len(training.data))))
    result = build_forecaster(method, options).forecast(training, horizon, interval)
    return calculate_forecast_errors(result.forecast, test)


def _resolve_method(method: Union[str, ForecastMethod]) -> ForecastMethod:
    try:
        return ForecastMethod(method)
    except ValueError:
        valid = [m.value for m in ForecastMethod]
        raise InvalidArgumentError(f"Unknown forecast method {method!r}. Valid methods: {valid}",
                                   argument="method", error_code="INVALID_METHOD")


def generate_forecast(store: TimeSeriesStore, series_id: str, start: datetime, end: datetime,
                      horizon: int, method: Union[str, ForecastMethod] = ForecastMethod.AUTO,
                      interval: str = '1 day', options: Optional[ForecastOptions] = None,
                      timeout_manager: Optional[ComputationTimeoutManager] = None) -> ForecastResult:
    """
    Forecast a stored series.

    Parameters:
    -----------
    store : TimeSeriesStore
        Source of the history
    series_id : str
        Metric identifier
    start, end : datetime
        History window
    horizon : int
        Number of future buckets, at least 1
    method : str or ForecastMethod
        Model to use; 'auto' selects one by holdout validation
    interval : str
        Bucket interval; unknown tags fall back to '1 day'
    options : ForecastOptions, optional
        Window size, confidence level, seasonal period, history validation
    timeout_manager : ComputationTimeoutManager, optional
        Applies the fetch and auto-selection timeouts

    Returns:
    --------
    ForecastResult
        Forecast and band of length ``horizon`` with accuracy in [0, 1]

    Raises:
    -------
    InvalidArgumentError
        Bad series id, dates, horizon or method
    InsufficientDataError
        Fewer than 2 valid points after preprocessing
    UpstreamFetchError
        The store failed
    """
    validate_request(series_id, start, end)
    if isinstance(horizon, bool) or not isinstance(horizon, (int, np.integer)) or horizon < 1:
        raise InvalidArgumentError("Invalid forecast horizon: must be at least 1",
                                   argument="horizon", error_code="INVALID_HORIZON")
    method = _resolve_method(method)
    interval = resolve_interval(interval)
    options = options or ForecastOptions()

    history = fetch_time_series(store, series_id, start, end, interval, timeout_manager)
    preprocessed = preprocess(history, PreprocessingOptions(
        fill_missing_values=True,
        normalize_timestamps=True,
        expected_interval=interval,
    ))
    if not preprocessed.validation.is_valid or len(preprocessed.data) < 2:
        raise InsufficientDataError("Not enough valid data points for forecasting",
                                    required=2, available=len(preprocessed.data), series_id=series_id)

    if method == ForecastMethod.AUTO:
        if timeout_manager is not None:
            method, _ = timeout_manager.run("auto_selection", determine_best_method, preprocessed, interval,
                                            options.seasonal_period,
                                            reason=TimeoutReason.AUTO_SELECTION_TIMEOUT)
        else:
            method, _ = determine_best_method(preprocessed, interval, options.seasonal_period)
        logger.info(f"Auto-selected forecast method: {method.value}", series_id=series_id)

    result = build_forecaster(method, options).forecast(preprocessed, horizon, interval)

    if options.validate_with_history:
        n = len(preprocessed.data)
        if n >= MIN_POINTS_FOR_HISTORY_VALIDATION and n >= horizon * 2:
            try:
                metrics = validate_forecast_accuracy(preprocessed.data, method, horizon, interval, options)
            except InsufficientDataError as e:
                result.metadata.warnings.append(f"History validation skipped: {e.message}")
            else:
                result.metadata.validation_metrics = metrics
                result.accuracy = 1 - min(1.0, metrics.mape)
        else:
            result.metadata.warnings.append(
                f"History validation skipped: needs at least {MIN_POINTS_FOR_HISTORY_VALIDATION} points "
                f"and twice the horizon ({horizon * 2}), got {n}"
            )

    get_logging_manager().metrics.record_forecast_method(result.method.value)
    logger.info("Forecast generated", series_id=series_id, method=result.method.value,
                horizon=horizon, accuracy=round(result.accuracy, 4))
    return result
