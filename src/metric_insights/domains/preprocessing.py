"""
Time Series Preprocessing - validation, cleaning and regularization of raw samples.

Raw metric samples arrive unsorted, with gaps, invalid timestamps and missing
values. This module turns them into a sorted, NaN-free series plus a validation
report. Data-quality problems are reported as issues, never raised.

Key Features:
- Invalid timestamp and missing value handling
- Z-score outlier flagging with optional removal
- Interval regularity analysis and timestamp normalization onto a uniform grid
- sklearn transformer interface for pipeline composition
"""

import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from sklearn.base import BaseEstimator, TransformerMixin

from ..config_manager import PreprocessingConfig, get_config_manager
from ..logging_manager import get_logger, get_logging_manager
from ..models import (
    IssueType, PreprocessedTimeSeries, PreprocessingMetadata, TimeIntervalStats,
    TimeSeriesPoint, ValidationResult, get_interval, resolve_interval
)

logger = get_logger(__name__)

# Gap spread (relative to the mean gap) below which a series counts as regular
REGULARITY_TOLERANCE = 0.10


@dataclass
class PreprocessingOptions:
    """Switches for the preprocessing pipeline."""
    fill_missing_values: bool = True
    remove_outliers: bool = False
    outlier_threshold: float = 3.0
    normalize_timestamps: bool = False
    expected_interval: str = '1 day'

    @classmethod
    def from_config(cls, config: Optional[PreprocessingConfig] = None, **overrides) -> 'PreprocessingOptions':
        """Build options from the configured defaults, then apply overrides."""
        config = config or get_config_manager().get_preprocessing_config()
        options = cls(
            fill_missing_values=config.fill_missing_values,
            remove_outliers=config.remove_outliers,
            outlier_threshold=config.outlier_threshold,
            normalize_timestamps=config.normalize_timestamps,
            expected_interval=config.expected_interval,
        )
        return replace(options, **overrides)


def _coerce_timestamp(value: Any) -> Optional[datetime]:
    """Return a valid datetime or None.

    Accepts datetimes, ISO strings, numpy datetimes and numbers, which are
    read as epoch milliseconds (UTC, returned naive).
    """
    if isinstance(value, datetime):
        return None if pd.isna(value) else value
    if isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(value, bool):
        if not math.isfinite(value):
            return None
        try:
            return pd.Timestamp(value, unit='ms').to_pydatetime()
        except (ValueError, OverflowError):
            return None
    if isinstance(value, (str, np.datetime64)):
        try:
            ts = pd.Timestamp(value)
        except (ValueError, TypeError):
            return None
        return None if pd.isna(ts) else ts.to_pydatetime()
    return None


def _coerce_value(value: Any) -> float:
    """Return a finite float or NaN."""
    if isinstance(value, bool):
        return float(value)
    try:
        result = float(value)
    except (TypeError, ValueError):
        return math.nan
    return result if math.isfinite(result) else math.nan


def _sort_key(point: Any):
    ts = _coerce_timestamp(getattr(point, 'timestamp', None))
    if ts is None:
        return (1, 0.0)
    return (0, pd.Timestamp(ts).value)


def analyze_intervals(points: Sequence[TimeSeriesPoint]) -> TimeIntervalStats:
    """Successive-gap statistics of a sorted series, in milliseconds."""
    if len(points) < 2:
        return TimeIntervalStats()

    gaps = np.array([
        (points[i].timestamp - points[i - 1].timestamp) / timedelta(milliseconds=1)
        for i in range(1, len(points))
    ])
    mean_gap = float(gaps.mean())
    min_gap = float(gaps.min())
    max_gap = float(gaps.max())
    is_regular = mean_gap > 0 and (max_gap - min_gap) / mean_gap < REGULARITY_TOLERANCE

    return TimeIntervalStats(mean=mean_gap, min=min_gap, max=max_gap, is_regular=bool(is_regular))


def normalize_timestamps(points: Sequence[TimeSeriesPoint], interval: str,
                         fill_missing_values: bool = True) -> List[TimeSeriesPoint]:
    """Re-sample a sorted series onto a uniform grid.

    The grid runs from the first to the last timestamp at ``interval``. Each
    slot takes the nearest original point within half an interval; otherwise
    it carries forward the previous normalized value when filling, or is left
    out.
    """
    if len(points) < 2:
        return list(points)

    step = get_interval(interval).delta
    first, last = points[0].timestamp, points[-1].timestamp

    grid = pd.DataFrame({'slot': pd.date_range(start=first, end=last, freq=step).as_unit('ns')})
    source = pd.DataFrame({
        'slot': pd.DatetimeIndex(pd.to_datetime([p.timestamp for p in points])).as_unit('ns'),
        'value': [p.value for p in points],
        'matched': 1.0,
    })
    merged = pd.merge_asof(grid, source, on='slot', direction='nearest',
                           tolerance=pd.Timedelta(step / 2))

    normalized: List[TimeSeriesPoint] = []
    previous: Optional[float] = None
    for slot, value, matched in merged[['slot', 'value', 'matched']].itertuples(index=False):
        if matched == 1.0:
            previous = float(value)
        elif not fill_missing_values or previous is None:
            continue
        normalized.append(TimeSeriesPoint(timestamp=slot.to_pydatetime(), value=previous))

    return normalized


def preprocess(raw: Iterable[Any], options: Optional[PreprocessingOptions] = None) -> PreprocessedTimeSeries:
    """
    Validate, clean and regularize a raw series.

    Parameters:
    -----------
    raw : iterable of TimeSeriesPoint
        Samples in any order; timestamps and values may be invalid
    options : PreprocessingOptions, optional
        Pipeline switches; package defaults when omitted

    Returns:
    --------
    PreprocessedTimeSeries
        Sorted, NaN-free data with its validation report and metadata.
        ``validation.is_valid`` holds only when at least 2 points survive.
    """
    options = options or PreprocessingOptions()
    raw = list(raw) if raw is not None else []
    validation = ValidationResult()
    metadata = PreprocessingMetadata(original_length=len(raw))

    if not raw:
        validation.is_valid = False
        validation.add_error(IssueType.EMPTY_INPUT, "Time series is empty")
        return PreprocessedTimeSeries(data=[], validation=validation, metadata=metadata)

    ordered = sorted(raw, key=_sort_key)

    data: List[TimeSeriesPoint] = []
    invalid_timestamps = 0
    missing_values = 0
    dropped_values = 0
    for point in ordered:
        timestamp = _coerce_timestamp(getattr(point, 'timestamp', None))
        if timestamp is None:
            invalid_timestamps += 1
            continue

        value = _coerce_value(getattr(point, 'value', None))
        if math.isnan(value):
            if options.fill_missing_values:
                missing_values += 1
                data.append(TimeSeriesPoint(timestamp=timestamp, value=math.nan))
            else:
                dropped_values += 1
            continue

        data.append(TimeSeriesPoint(timestamp=timestamp, value=value))

    if invalid_timestamps:
        validation.add_warning(IssueType.INVALID_TIMESTAMP,
                               f"Removed {invalid_timestamps} points with invalid timestamps",
                               {'count': invalid_timestamps})
    if missing_values:
        metadata.has_missing_values = True
        validation.add_warning(IssueType.MISSING_VALUE,
                               f"Found {missing_values} missing values to fill",
                               {'count': missing_values})
    if dropped_values:
        validation.add_warning(IssueType.MISSING_VALUE,
                               f"Removed {dropped_values} points with missing values",
                               {'count': dropped_values})

    finite_values = [p.value for p in data if not math.isnan(p.value)]
    if not data or not finite_values:
        validation.is_valid = False
        validation.add_error(IssueType.NO_VALID_POINTS, "No valid data points after cleaning")
        metadata.processed_length = 0
        _log_issues(validation)
        return PreprocessedTimeSeries(data=[], validation=validation, metadata=metadata)

    if len(finite_values) >= 3:
        data = _handle_outliers(data, finite_values, options, validation, metadata)

    metadata.time_interval = analyze_intervals(data)

    if options.normalize_timestamps and len(data) >= 2 and not metadata.time_interval.is_regular:
        interval = resolve_interval(options.expected_interval)
        normalized = normalize_timestamps(data, interval, options.fill_missing_values)
        if len(normalized) < 2:
            validation.add_warning(IssueType.NORMALIZATION_FAILED,
                                   "Timestamp normalization produced too few points, keeping original data")
        else:
            validation.add_warning(IssueType.TIMESTAMPS_NORMALIZED,
                                   f"Normalized timestamps to a regular {interval} interval",
                                   {'original_points': len(data), 'normalized_points': len(normalized)})
            data = normalized

    if options.fill_missing_values:
        fill_value = float(np.mean([p.value for p in data if not math.isnan(p.value)] or finite_values))
        data = [p if not math.isnan(p.value) else TimeSeriesPoint(p.timestamp, fill_value) for p in data]

    metadata.processed_length = len(data)
    validation.is_valid = len(data) >= 2
    if not validation.is_valid and not validation.errors:
        validation.add_error(IssueType.INSUFFICIENT_DATA,
                             "At least 2 valid points are required",
                             {'available': len(data)})

    _log_issues(validation)
    return PreprocessedTimeSeries(data=data, validation=validation, metadata=metadata)


def _handle_outliers(data: List[TimeSeriesPoint], finite_values: List[float],
                     options: PreprocessingOptions, validation: ValidationResult,
                     metadata: PreprocessingMetadata) -> List[TimeSeriesPoint]:
    mean = float(np.mean(finite_values))
    std = float(np.std(finite_values))
    if std == 0:
        return data

    outliers = [i for i, p in enumerate(data)
                if not math.isnan(p.value) and abs((p.value - mean) / std) > options.outlier_threshold]
    if not outliers:
        return data

    metadata.has_outliers = True
    validation.add_warning(IssueType.OUTLIERS_DETECTED,
                           f"Detected {len(outliers)} outliers",
                           {'indices': outliers, 'threshold': options.outlier_threshold})

    if not options.remove_outliers:
        return data

    if len(data) - len(outliers) >= 3:
        flagged = set(outliers)
        return [p for i, p in enumerate(data) if i not in flagged]

    validation.add_warning(IssueType.OUTLIERS_NOT_REMOVED,
                           "Outliers kept because removing them would leave fewer than 3 points")
    return data


def _log_issues(validation: ValidationResult) -> None:
    issues = validation.errors + validation.warnings
    if issues:
        get_logging_manager().log_data_quality(issues, component="preprocessing")


class TimeSeriesPreprocessor(BaseEstimator, TransformerMixin):
    """sklearn-style transformer wrapping ``preprocess``.

    Accepts a sequence of TimeSeriesPoint, a pandas Series with a
    DatetimeIndex, or a DataFrame with ``timestamp`` and ``value`` columns.
    """

    def __init__(self,
                 fill_missing_values: bool = True,
                 remove_outliers: bool = False,
                 outlier_threshold: float = 3.0,
                 normalize_timestamps: bool = False,
                 expected_interval: str = '1 day'):
        self.fill_missing_values = fill_missing_values
        self.remove_outliers = remove_outliers
        self.outlier_threshold = outlier_threshold
        self.normalize_timestamps = normalize_timestamps
        self.expected_interval = expected_interval

    def fit(self, X, y=None):
        """Stateless; validates the options."""
        if self.outlier_threshold <= 0:
            raise ValueError(f"outlier_threshold must be positive, got {self.outlier_threshold}")
        self.options_ = PreprocessingOptions(
            fill_missing_values=self.fill_missing_values,
            remove_outliers=self.remove_outliers,
            outlier_threshold=self.outlier_threshold,
            normalize_timestamps=self.normalize_timestamps,
            expected_interval=self.expected_interval,
        )
        self.is_fitted_ = True
        return self

    def transform(self, X) -> PreprocessedTimeSeries:
        if not getattr(self, 'is_fitted_', False):
            raise ValueError("TimeSeriesPreprocessor must be fitted before transform")
        result = preprocess(to_points(X), self.options_)
        logger.debug("Preprocessed time series",
                     original_length=result.metadata.original_length,
                     processed_length=result.metadata.processed_length,
                     is_valid=result.validation.is_valid)
        return result


def to_points(X: Union[Sequence[TimeSeriesPoint], pd.Series, pd.DataFrame]) -> List[Any]:
    """Convert supported inputs to a list of points."""
    if isinstance(X, pd.Series):
        if not isinstance(X.index, pd.DatetimeIndex):
            raise ValueError("Series input must have a DatetimeIndex")
        return [TimeSeriesPoint(ts.to_pydatetime(), value) for ts, value in X.items()]

    if isinstance(X, pd.DataFrame):
        if 'timestamp' not in X.columns or 'value' not in X.columns:
            raise ValueError("DataFrame input must have 'timestamp' and 'value' columns")
        return [TimeSeriesPoint(ts, value) for ts, value in zip(X['timestamp'], X['value'])]

    if X is None:
        return []
    return list(X)
