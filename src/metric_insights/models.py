"""Data model for the Metric Insights analytics engine.

Result structures are dataclasses with ``to_dict`` for JSON serialization.
Points are immutable; everything else is transient and created per request.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Sequence

from .logging_manager import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TimeSeriesPoint:
    """One sample of a metric."""
    timestamp: datetime
    value: float

    def to_dict(self) -> Dict[str, Any]:
        timestamp = self.timestamp.isoformat() if isinstance(self.timestamp, datetime) else self.timestamp
        return {'timestamp': timestamp, 'value': self.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TimeSeriesPoint':
        timestamp = data['timestamp']
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(timestamp=timestamp, value=data['value'])


def points_to_dicts(points: Sequence[TimeSeriesPoint]) -> List[Dict[str, Any]]:
    return [p.to_dict() for p in points]


# ============================================================================
# Intervals
# ============================================================================

@dataclass(frozen=True)
class TimeInterval:
    """Bucket width of a series."""
    interval_ms: int
    display_name: str
    seasonal_period: int

    @property
    def delta(self) -> timedelta:
        return timedelta(milliseconds=self.interval_ms)

    @property
    def days(self) -> float:
        return self.interval_ms / MS_PER_DAY


MS_PER_DAY = 24 * 60 * 60 * 1000
DEFAULT_INTERVAL = '1 day'

INTERVALS: Dict[str, TimeInterval] = {
    '1 hour': TimeInterval(60 * 60 * 1000, 'Hourly', 24),
    '1 day': TimeInterval(MS_PER_DAY, 'Daily', 7),
    '1 week': TimeInterval(7 * MS_PER_DAY, 'Weekly', 4),
    '1 month': TimeInterval(30 * MS_PER_DAY, 'Monthly', 12),
}


def resolve_interval(interval: Optional[str]) -> str:
    """Return a supported interval tag, coercing unknown tags to '1 day'."""
    if interval in INTERVALS:
        return interval
    logger.warning(f'Unknown interval "{interval}", defaulting to "{DEFAULT_INTERVAL}"')
    return DEFAULT_INTERVAL


def get_interval(interval: Optional[str]) -> TimeInterval:
    return INTERVALS.get(interval, INTERVALS[DEFAULT_INTERVAL])


def default_seasonal_period(interval: Optional[str]) -> int:
    """Seasonal period implied by the bucket interval (7 when unknown)."""
    return get_interval(interval).seasonal_period


# ============================================================================
# Preprocessing
# ============================================================================

class IssueType(str, Enum):
    """Data quality issue tags."""
    EMPTY_INPUT = "EMPTY_INPUT"
    INVALID_TIMESTAMP = "INVALID_TIMESTAMP"
    MISSING_VALUE = "MISSING_VALUE"
    OUTLIERS_DETECTED = "OUTLIERS_DETECTED"
    OUTLIERS_NOT_REMOVED = "OUTLIERS_NOT_REMOVED"
    NO_VALID_POINTS = "NO_VALID_POINTS"
    TIMESTAMPS_NORMALIZED = "TIMESTAMPS_NORMALIZED"
    NORMALIZATION_FAILED = "NORMALIZATION_FAILED"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"


@dataclass
class ValidationIssue:
    type: IssueType
    message: str
    details: Any = None

    def to_dict(self) -> Dict[str, Any]:
        result = {'type': self.type.value, 'message': self.message}
        if self.details is not None:
            result['details'] = self.details
        return result


@dataclass
class ValidationResult:
    is_valid: bool = True
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    def add_error(self, issue_type: IssueType, message: str, details: Any = None):
        self.errors.append(ValidationIssue(issue_type, message, details))

    def add_warning(self, issue_type: IssueType, message: str, details: Any = None):
        self.warnings.append(ValidationIssue(issue_type, message, details))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_valid': self.is_valid,
            'errors': [e.to_dict() for e in self.errors],
            'warnings': [w.to_dict() for w in self.warnings],
        }


@dataclass
class TimeIntervalStats:
    """Successive-gap statistics in milliseconds."""
    mean: float = 0.0
    min: float = 0.0
    max: float = 0.0
    is_regular: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {'mean': self.mean, 'min': self.min, 'max': self.max, 'is_regular': self.is_regular}


@dataclass
class PreprocessingMetadata:
    original_length: int = 0
    processed_length: int = 0
    has_missing_values: bool = False
    has_outliers: bool = False
    time_interval: TimeIntervalStats = field(default_factory=TimeIntervalStats)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'original_length': self.original_length,
            'processed_length': self.processed_length,
            'has_missing_values': self.has_missing_values,
            'has_outliers': self.has_outliers,
            'time_interval': self.time_interval.to_dict(),
        }


@dataclass
class PreprocessedTimeSeries:
    """A cleaned, sorted series plus its validation report."""
    data: List[TimeSeriesPoint]
    validation: ValidationResult
    metadata: PreprocessingMetadata

    @classmethod
    def from_points(cls, points: Sequence[TimeSeriesPoint]) -> 'PreprocessedTimeSeries':
        """Wrap already clean points, e.g. a training split of a preprocessed series."""
        data = list(points)
        return cls(
            data=data,
            validation=ValidationResult(is_valid=len(data) >= 2),
            metadata=PreprocessingMetadata(original_length=len(data), processed_length=len(data)),
        )

    @property
    def values(self) -> List[float]:
        return [p.value for p in self.data]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'data': points_to_dicts(self.data),
            'validation': self.validation.to_dict(),
            'metadata': self.metadata.to_dict(),
        }


# ============================================================================
# Decomposition
# ============================================================================

@dataclass
class DecompositionResult:
    """Additive decomposition: original = trend + seasonal + residual."""
    trend: List[TimeSeriesPoint] = field(default_factory=list)
    seasonal: List[TimeSeriesPoint] = field(default_factory=list)
    residual: List[TimeSeriesPoint] = field(default_factory=list)
    original: List[TimeSeriesPoint] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.original

    def to_dict(self) -> Dict[str, Any]:
        return {
            'trend': points_to_dicts(self.trend),
            'seasonal': points_to_dicts(self.seasonal),
            'residual': points_to_dicts(self.residual),
            'original': points_to_dicts(self.original),
        }


# ============================================================================
# Forecasting
# ============================================================================

class ForecastMethod(str, Enum):
    """Supported forecast methods."""
    NAIVE = "naive"
    SEASONAL_NAIVE = "seasonal_naive"
    MOVING_AVERAGE = "moving_average"
    LINEAR_REGRESSION = "linear_regression"
    AUTO = "auto"


@dataclass
class ForecastValidationMetrics:
    mape: float  # Mean Absolute Percentage Error
    rmse: float  # Root Mean Square Error
    mae: float   # Mean Absolute Error
    r2: float    # Coefficient of determination

    def to_dict(self) -> Dict[str, float]:
        return {'mape': self.mape, 'rmse': self.rmse, 'mae': self.mae, 'r2': self.r2}


@dataclass
class ModelParams:
    """Fitted parameters of one forecasting method."""
    method: ClassVar[ForecastMethod]

    def to_dict(self) -> Dict[str, Any]:
        result = dict(self.__dict__)
        result['method'] = self.method.value
        return result


@dataclass
class NaiveParams(ModelParams):
    method: ClassVar[ForecastMethod] = ForecastMethod.NAIVE
    last_value: float
    std_dev: float
    confidence_level: float
    z_value: float


@dataclass
class SeasonalNaiveParams(ModelParams):
    method: ClassVar[ForecastMethod] = ForecastMethod.SEASONAL_NAIVE
    seasonal_period: int
    std_dev: float
    confidence_level: float
    z_value: float


@dataclass
class MovingAverageParams(ModelParams):
    method: ClassVar[ForecastMethod] = ForecastMethod.MOVING_AVERAGE
    window_size: int
    forecast_value: float
    std_dev: float
    confidence_level: float
    z_value: float


@dataclass
class LinearRegressionParams(ModelParams):
    method: ClassVar[ForecastMethod] = ForecastMethod.LINEAR_REGRESSION
    slope: float
    intercept: float
    r_squared: float
    standard_error: float
    confidence_level: float
    t_value: float


@dataclass
class ForecastMetadata:
    validation_metrics: Optional[ForecastValidationMetrics] = None
    model_params: Optional[ModelParams] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {'warnings': list(self.warnings)}
        if self.validation_metrics is not None:
            result['validation_metrics'] = self.validation_metrics.to_dict()
        if self.model_params is not None:
            result['model_params'] = self.model_params.to_dict()
        return result


@dataclass
class ConfidenceBand:
    upper: List[TimeSeriesPoint] = field(default_factory=list)
    lower: List[TimeSeriesPoint] = field(default_factory=list)

    def widths(self) -> List[float]:
        return [u.value - l.value for u, l in zip(self.upper, self.lower)]

    def to_dict(self) -> Dict[str, Any]:
        return {'upper': points_to_dicts(self.upper), 'lower': points_to_dicts(self.lower)}


@dataclass
class ForecastResult:
    """Point forecast with confidence bounds and an accuracy score in [0, 1]."""
    forecast: List[TimeSeriesPoint]
    confidence: ConfidenceBand
    accuracy: float
    method: ForecastMethod
    metadata: ForecastMetadata = field(default_factory=ForecastMetadata)

    @property
    def horizon(self) -> int:
        return len(self.forecast)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'forecast': points_to_dicts(self.forecast),
            'confidence': self.confidence.to_dict(),
            'accuracy': self.accuracy,
            'method': self.method.value,
            'metadata': self.metadata.to_dict(),
        }


# ============================================================================
# Downsampling
# ============================================================================

class DownsampleMethod(str, Enum):
    LTTB = "lttb"
    MIN_MAX = "min-max"
    AVERAGE = "average"
    FIRST_LAST_SIGNIFICANT = "first-last-significant"
