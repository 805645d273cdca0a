"""Error handling for Metric Insights.

Custom exception hierarchy for the analytics engine. Programmer-error class
violations (bad arguments, violated preconditions) and upstream failures are
raised; data-quality problems are reported as validation issues instead.
"""

import time
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCategory(Enum):
    """Categories of errors for classification and handling."""
    INVALID_ARGUMENT = "invalid_argument"
    INSUFFICIENT_DATA = "insufficient_data"
    UPSTREAM_FETCH = "upstream_fetch"
    TIMEOUT = "timeout"
    CONFIGURATION = "configuration"
    SYSTEM = "system"


class ErrorSeverity(Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AnalyticsError(Exception):
    """Base exception for all Metric Insights errors.

    Carries structured error information: category, severity, a machine
    readable code, the series involved, free-form metadata, the underlying
    cause and recovery suggestions.
    """

    def __init__(self,
                 message: str,
                 category: ErrorCategory = ErrorCategory.SYSTEM,
                 severity: ErrorSeverity = ErrorSeverity.MEDIUM,
                 error_code: Optional[str] = None,
                 series_id: Optional[str] = None,
                 metadata: Optional[Dict[str, Any]] = None,
                 cause: Optional[Exception] = None,
                 recovery_suggestions: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.error_code = error_code or category.value.upper()
        self.series_id = series_id
        self.metadata = metadata or {}
        self.cause = cause
        self.recovery_suggestions = recovery_suggestions or []
        self.timestamp = time.time()

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging and serialization."""
        return {
            'error_code': self.error_code,
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'series_id': self.series_id,
            'metadata': self.metadata,
            'cause': str(self.cause) if self.cause else None,
            'recovery_suggestions': self.recovery_suggestions,
            'timestamp': self.timestamp
        }

    def __str__(self) -> str:
        return f"[{self.category.value.upper()}] {self.message}"


class InvalidArgumentError(AnalyticsError, ValueError):
    """Malformed input caught before any computation."""

    def __init__(self, message: str, argument: Optional[str] = None, **kwargs):
        metadata = kwargs.pop('metadata', {})
        if argument:
            metadata['argument'] = argument
        kwargs.setdefault('recovery_suggestions', [
            "Check the argument values passed to the operation",
            "Ensure dates are valid and start is not after end"
        ])
        super().__init__(
            message=message,
            category=ErrorCategory.INVALID_ARGUMENT,
            metadata=metadata,
            **kwargs
        )


class InsufficientDataError(AnalyticsError):
    """Structurally valid input without enough points for the operation."""

    def __init__(self, message: str, required: Optional[int] = None,
                 available: Optional[int] = None, **kwargs):
        metadata = kwargs.pop('metadata', {})
        if required is not None:
            metadata['required'] = required
        if available is not None:
            metadata['available'] = available
        kwargs.setdefault('severity', ErrorSeverity.LOW)
        super().__init__(
            message=message,
            category=ErrorCategory.INSUFFICIENT_DATA,
            metadata=metadata,
            recovery_suggestions=[
                "Widen the requested time window",
                "Use a finer interval",
                "Choose a method with smaller data requirements"
            ],
            **kwargs
        )


class UpstreamFetchError(AnalyticsError):
    """Failure raised by the time series store, wrapped with request context."""

    def __init__(self, message: str, series_id: Optional[str] = None,
                 window: Optional[Dict[str, Any]] = None, **kwargs):
        metadata = kwargs.pop('metadata', {})
        if window:
            metadata['window'] = window
        super().__init__(
            message=message,
            category=ErrorCategory.UPSTREAM_FETCH,
            severity=ErrorSeverity.HIGH,
            series_id=series_id,
            metadata=metadata,
            recovery_suggestions=[
                "Check connectivity to the time series store",
                "Verify the series id exists"
            ],
            **kwargs
        )


class ComputationTimeoutError(AnalyticsError):
    """A fetch or computation did not finish before its deadline."""

    def __init__(self, message: str, operation: str = "unknown",
                 execution_time: float = 0.0, timeout_limit: float = 0.0, **kwargs):
        metadata = kwargs.pop('metadata', {})
        metadata.update({
            'operation': operation,
            'execution_time': execution_time,
            'timeout_limit': timeout_limit
        })
        super().__init__(
            message=message,
            category=ErrorCategory.TIMEOUT,
            metadata=metadata,
            recovery_suggestions=[
                "Increase the configured timeout",
                "Request a shorter time window",
                "Use an explicit forecast method instead of auto"
            ],
            **kwargs
        )


class ConfigurationError(AnalyticsError):
    """Configuration related errors."""

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        metadata = kwargs.pop('metadata', {})
        if config_key:
            metadata['config_key'] = config_key
        super().__init__(
            message=message,
            category=ErrorCategory.CONFIGURATION,
            metadata=metadata,
            recovery_suggestions=[
                "Check configuration file syntax",
                "Review METRIC_INSIGHTS_* environment variables"
            ],
            **kwargs
        )
