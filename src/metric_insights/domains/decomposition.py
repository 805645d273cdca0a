"""
Time Series Decomposition - additive trend/seasonal/residual split and related statistics.

Classical decomposition: a centered moving average gives the trend, per-phase
averages of the detrended series give the seasonal pattern, and whatever is
left is the residual. The same module hosts the z-score anomaly detector,
cross-series Pearson correlation and sample entropy.
"""

import math
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import scipy.stats as stats

from ..error_handler import InsufficientDataError, InvalidArgumentError
from ..logging_manager import get_logger
from ..models import DecompositionResult, TimeSeriesPoint, default_seasonal_period, resolve_interval
from ..store import TimeSeriesStore, fetch_time_series
from ..timeout_manager import ComputationTimeoutManager
from .preprocessing import PreprocessingOptions, preprocess

logger = get_logger(__name__)

MIN_TREND_WINDOW = 2
# Aligned correlation pairs points at most this far apart
ALIGNMENT_TOLERANCE = timedelta(days=1)


def extract_trend(series: Sequence[TimeSeriesPoint], window_size: int = 7) -> List[TimeSeriesPoint]:
    """
    Centered moving average trend.

    Parameters:
    -----------
    series : sequence of TimeSeriesPoint
        Sorted series
    window_size : int
        Averaging window; the half width is ``window_size // 2``. Edge points
        average over the partial window that fits, never over padding.

    Returns:
    --------
    list of TimeSeriesPoint
        Trend aligned with the input. A series shorter than the window is
        returned unchanged.
    """
    if not series:
        return []

    if window_size < MIN_TREND_WINDOW:
        logger.warning(f"Window size {window_size} is too small, using {MIN_TREND_WINDOW}")
        window_size = MIN_TREND_WINDOW

    if len(series) < window_size:
        logger.warning(f"Time series length ({len(series)}) is less than window size ({window_size}), "
                       "using original data as trend")
        return list(series)

    half_width = window_size // 2
    values = pd.Series([p.value for p in series], dtype=float)
    trend = values.rolling(window=2 * half_width + 1, center=True, min_periods=1).mean()

    return [TimeSeriesPoint(p.timestamp, float(v)) for p, v in zip(series, trend)]


def extract_seasonality(residual: Sequence[TimeSeriesPoint], period: int = 7) -> List[TimeSeriesPoint]:
    """Per-phase mean of the residuals, de-meaned and tiled over the series.

    Needs at least two full periods; otherwise the seasonal component is all
    zeros.
    """
    if period < 1:
        raise InvalidArgumentError(f"Seasonal period must be positive, got {period}", argument="period")

    if len(residual) < period * 2:
        logger.warning(f"Not enough data for seasonality extraction: {len(residual)} points, "
                       f"need {period * 2} for period {period}")
        return [TimeSeriesPoint(p.timestamp, 0.0) for p in residual]

    values = np.array([p.value for p in residual], dtype=float)
    phases = np.arange(len(values)) % period

    pattern = pd.Series(values).groupby(phases).mean().reindex(range(period), fill_value=0.0).to_numpy()
    pattern = pattern - pattern.mean()

    return [TimeSeriesPoint(p.timestamp, float(pattern[phase])) for p, phase in zip(residual, phases)]


def decompose(store: TimeSeriesStore, series_id: str, start: datetime, end: datetime,
              interval: str = '1 day', window_size: int = 7,
              seasonal_period: Optional[int] = None,
              timeout_manager: Optional[ComputationTimeoutManager] = None) -> DecompositionResult:
    """
    Decompose a stored series into trend, seasonal and residual components.

    Parameters:
    -----------
    store : TimeSeriesStore
        Source of the raw series
    series_id : str
        Metric identifier
    start, end : datetime
        Inclusive time window
    interval : str
        Bucket interval tag; also selects the default seasonal period
    window_size : int
        Trend moving-average window
    seasonal_period : int, optional
        Overrides the period implied by the interval
    timeout_manager : ComputationTimeoutManager, optional
        Applies the fetch timeout to the store read

    Returns:
    --------
    DecompositionResult
        Components of equal length with original = trend + seasonal + residual.
        All four are empty when there is no usable data.
    """
    logger.info(f"Decomposing time series for metric {series_id}")
    interval = resolve_interval(interval)

    raw = fetch_time_series(store, series_id, start, end, interval, timeout_manager)
    if not raw:
        logger.warning("No data points found for decomposition", series_id=series_id)
        return DecompositionResult()

    preprocessed = preprocess(raw, PreprocessingOptions(
        fill_missing_values=True,
        normalize_timestamps=True,
        expected_interval=interval,
    ))
    if not preprocessed.validation.is_valid:
        logger.warning("Time series failed validation, nothing to decompose",
                       series_id=series_id,
                       errors=[e.type.value for e in preprocessed.validation.errors])
        return DecompositionResult()

    original = preprocessed.data
    trend = extract_trend(original, window_size)
    detrended = [TimeSeriesPoint(p.timestamp, p.value - t.value) for p, t in zip(original, trend)]

    period = seasonal_period or default_seasonal_period(interval)
    seasonal = extract_seasonality(detrended, period)
    residual = [TimeSeriesPoint(p.timestamp, p.value - s.value) for p, s in zip(detrended, seasonal)]

    logger.info("Decomposition completed", series_id=series_id, points=len(original), period=period)
    return DecompositionResult(trend=trend, seasonal=seasonal, residual=residual, original=original)


def detect_anomalies(points: Sequence[TimeSeriesPoint], threshold: float = 3.0,
                     lookback_window: Optional[int] = None) -> List[TimeSeriesPoint]:
    """
    Z-score anomaly detection.

    Parameters:
    -----------
    points : sequence of TimeSeriesPoint
        Series in any order; it is preprocessed (sorted, missing values filled)
    threshold : float
        Points with ``|z| > threshold`` are anomalies
    lookback_window : int, optional
        When set, each point from index ``lookback_window`` on is scored
        against the mean and standard deviation of the preceding
        ``lookback_window`` points. Windows with zero variance are skipped.

    Returns:
    --------
    list of TimeSeriesPoint
        Anomalous points in time order; empty for fewer than 3 points or
        degenerate input.
    """
    preprocessed = preprocess(points, PreprocessingOptions(fill_missing_values=True))
    series = preprocessed.data
    if len(series) < 3:
        return []

    values = np.array([p.value for p in series], dtype=float)

    if not lookback_window:
        if values.std() == 0:
            return []
        z_scores = np.abs(stats.zscore(values))
        anomalies = [series[i] for i in np.where(z_scores > threshold)[0]]
    else:
        anomalies = []
        for i in range(lookback_window, len(values)):
            window = values[i - lookback_window:i]
            std = window.std()
            if std == 0:
                continue
            if abs((values[i] - window.mean()) / std) > threshold:
                anomalies.append(series[i])

    logger.debug(f"Anomaly detection found {len(anomalies)} anomalies",
                 threshold=threshold, lookback_window=lookback_window)
    return anomalies


def _align_series(series_a: Sequence[TimeSeriesPoint],
                  series_b: Sequence[TimeSeriesPoint]) -> List[Tuple[float, float]]:
    """Pair points by identical timestamp, then by nearest unused timestamp within a day."""
    used = set()
    pairs: List[Optional[Tuple[float, float]]] = [None] * len(series_a)

    by_timestamp = {}
    for j, point in enumerate(series_b):
        by_timestamp.setdefault(point.timestamp, []).append(j)

    for i, point in enumerate(series_a):
        candidates = [j for j in by_timestamp.get(point.timestamp, []) if j not in used]
        if candidates:
            used.add(candidates[0])
            pairs[i] = (point.value, series_b[candidates[0]].value)

    for i, point in enumerate(series_a):
        if pairs[i] is not None:
            continue
        best, best_distance = None, None
        for j, other in enumerate(series_b):
            if j in used:
                continue
            distance = abs(other.timestamp - point.timestamp)
            if distance <= ALIGNMENT_TOLERANCE and (best_distance is None or distance < best_distance):
                best, best_distance = j, distance
        if best is not None:
            used.add(best)
            pairs[i] = (point.value, series_b[best].value)

    return [pair for pair in pairs if pair is not None]


def calculate_correlation(series_a: Sequence[TimeSeriesPoint], series_b: Sequence[TimeSeriesPoint],
                          align_timestamps: bool = False) -> float:
    """
    Pearson correlation between two series, clamped to [-1, 1].

    Two constant series correlate at 1.0; one constant against one varying
    series gives 0.0.

    Raises:
    -------
    InvalidArgumentError
        Empty input, or unequal lengths without alignment
    InsufficientDataError
        Fewer than 2 points or matched pairs
    """
    if not series_a or not series_b:
        raise InvalidArgumentError("Time series must not be empty", argument="series",
                                   error_code="EMPTY_INPUT")

    if align_timestamps:
        pairs = _align_series(series_a, series_b)
        if len(pairs) < 2:
            raise InsufficientDataError(
                f"Need at least 2 matching timestamps, found {len(pairs)}",
                required=2, available=len(pairs), error_code="INSUFFICIENT_MATCHES"
            )
        values_a = np.array([a for a, _ in pairs], dtype=float)
        values_b = np.array([b for _, b in pairs], dtype=float)
    else:
        if len(series_a) != len(series_b):
            raise InvalidArgumentError(
                f"Time series must have the same length ({len(series_a)} != {len(series_b)})",
                argument="series", error_code="LENGTH_MISMATCH"
            )
        if len(series_a) < 2:
            raise InsufficientDataError("Time series must have at least 2 points",
                                        required=2, available=len(series_a))
        values_a = np.array([p.value for p in series_a], dtype=float)
        values_b = np.array([p.value for p in series_b], dtype=float)

    constant_a = values_a.std() == 0
    constant_b = values_b.std() == 0
    if constant_a and constant_b:
        return 1.0
    if constant_a or constant_b:
        return 0.0

    correlation, _ = stats.pearsonr(values_a, values_b)
    return float(np.clip(correlation, -1.0, 1.0))


def calculate_sample_entropy(points: Sequence[TimeSeriesPoint], m: int = 2,
                             r: Optional[float] = None) -> float:
    """Sample entropy (SampEn) of a series.

    ``r`` defaults to 0.2 times the standard deviation. Templates are compared
    with the Chebyshev distance. When no template pair matches, the upper
    bound ``ln((N - m)(N - m - 1))`` is returned.
    """
    n = len(points)
    if m < 1:
        raise InvalidArgumentError(f"Embedding dimension must be positive, got {m}", argument="m")
    if n < m + 2:
        raise InsufficientDataError(f"Need at least {m + 2} data points for sample entropy, got {n}",
                                    required=m + 2, available=n)

    values = np.array([p.value for p in points], dtype=float)
    tolerance = 0.2 * values.std() if r is None else r

    def count_matches(length: int) -> int:
        templates = np.array([values[i:i + length] for i in range(n - m)])
        matches = 0
        for i in range(len(templates) - 1):
            distances = np.max(np.abs(templates[i + 1:] - templates[i]), axis=1)
            matches += int(np.sum(distances <= tolerance))
        return matches

    b = count_matches(m)
    a = count_matches(m + 1)

    if a == 0 or b == 0:
        return math.log((n - m) * (n - m - 1))
    return -math.log(a / b)
