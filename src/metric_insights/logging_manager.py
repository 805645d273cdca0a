"""Structured logging and monitoring system for Metric Insights.

Provides JSON-based logging with per-computation context and Prometheus metrics
for the analytics engine, using structlog and prometheus_client.
"""

import logging
import logging.handlers
import sys
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import structlog
from prometheus_client import Counter, Histogram, CollectorRegistry, REGISTRY
from prometheus_client import generate_latest

from .config_manager import LoggingConfig, LogLevel


@dataclass
class LogContext:
    """Context information for structured logging."""
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    series_id: Optional[str] = None
    operation: Optional[str] = None
    component: Optional[str] = None
    method: Optional[str] = None
    interval: Optional[str] = None
    start_time: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert context to dictionary for logging."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


_CONTEXT_FIELDS = {f.name for f in fields(LogContext)}


class MetricsCollector:
    """Prometheus metrics collector for Metric Insights."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize metrics collector.

        Args:
            registry: Prometheus registry to use. Defaults to global registry.
        """
        self.registry = registry or REGISTRY
        self.enabled = True

        self.computation_counter = Counter(
            'metric_insights_computations_total',
            'Total number of analytics computations',
            ['operation', 'status'],
            registry=self.registry
        )

        self.computation_duration = Histogram(
            'metric_insights_computation_duration_seconds',
            'Analytics computation time in seconds',
            ['operation'],
            buckets=[0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0],
            registry=self.registry
        )

        self.cache_events = Counter(
            'metric_insights_cache_events_total',
            'Computation cache events',
            ['event'],
            registry=self.registry
        )

        self.error_counter = Counter(
            'metric_insights_errors_total',
            'Total number of errors',
            ['error_type', 'component'],
            registry=self.registry
        )

        self.forecast_methods = Counter(
            'metric_insights_forecast_methods_total',
            'Forecasts produced per method',
            ['method'],
            registry=self.registry
        )

        self.data_quality_issues = Counter(
            'metric_insights_data_quality_issues_total',
            'Data quality issues found during preprocessing',
            ['issue_type'],
            registry=self.registry
        )

    def record_computation(self, operation: str, duration: float, status: str):
        """Record computation metrics."""
        if not self.enabled:
            return
        self.computation_counter.labels(operation=operation, status=status).inc()
        self.computation_duration.labels(operation=operation).observe(duration)

    def record_cache_event(self, event: str):
        if not self.enabled:
            return
        self.cache_events.labels(event=event).inc()

    def record_error(self, error_type: str, component: str):
        """Record error metrics."""
        if not self.enabled:
            return
        self.error_counter.labels(error_type=error_type, component=component).inc()

    def record_forecast_method(self, method: str):
        if not self.enabled:
            return
        self.forecast_methods.labels(method=method).inc()

    def record_data_quality_issue(self, issue_type: str):
        if not self.enabled:
            return
        self.data_quality_issues.labels(issue_type=issue_type).inc()

    def get_metrics(self) -> bytes:
        """Get metrics in Prometheus exposition format."""
        return generate_latest(self.registry)


class LoggingManager:
    """Centralized structured logging manager."""

    _instance: Optional['LoggingManager'] = None
    _lock = threading.Lock()

    def __new__(cls, *args, **kwargs):
        """Singleton implementation."""
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
            return cls._instance

    def __init__(self, config: Optional[LoggingConfig] = None):
        """Initialize logging manager.

        Args:
            config: Logging configuration. Uses default if None.
        """
        # Prevent re-initialization in singleton
        if hasattr(self, '_initialized'):
            return

        self.config = config or LoggingConfig()
        self.metrics = MetricsCollector()
        self.metrics.enabled = self.config.enable_metrics
        self._context = threading.local()
        self._initialized = True

        self._configure_structlog()
        self._configure_stdlib_logging()

        self.logger = structlog.get_logger()
        self.logger.debug("Structured logging system initialized",
                          level=self.config.level.value)

    def configure(self, config: LoggingConfig):
        """Apply a new logging configuration to the running manager.

        Level and handlers change immediately; loggers already bound keep
        their renderer.
        """
        self.config = config
        self.metrics.enabled = config.enable_metrics
        self._configure_structlog()
        self._configure_stdlib_logging()
        self.logger.debug("Logging reconfigured", level=config.level.value,
                          file_path=config.file_path, metrics=config.enable_metrics)

    def _configure_structlog(self):
        """Configure structlog with processors and renderers."""
        processors = [
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            self._add_context,
            self._add_correlation_id,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
        ]

        if self.config.level != LogLevel.DEBUG:
            processors.append(structlog.processors.JSONRenderer(default=str))
        else:
            processors.append(structlog.dev.ConsoleRenderer(colors=False))

        structlog.configure(
            processors=processors,
            wrapper_class=structlog.stdlib.BoundLogger,
            logger_factory=structlog.stdlib.LoggerFactory(),
            context_class=dict,
            cache_logger_on_first_use=True,
        )

    def _configure_stdlib_logging(self):
        """Configure standard library logging integration."""
        level_map = {
            LogLevel.DEBUG: logging.DEBUG,
            LogLevel.INFO: logging.INFO,
            LogLevel.WARNING: logging.WARNING,
            LogLevel.ERROR: logging.ERROR,
            LogLevel.CRITICAL: logging.CRITICAL
        }
        level = level_map[self.config.level]

        package_logger = logging.getLogger("metric_insights")
        package_logger.setLevel(level)
        for handler in list(package_logger.handlers):
            package_logger.removeHandler(handler)
            handler.close()

        if self.config.console_output:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(level)
            console_handler.setFormatter(logging.Formatter('%(message)s'))
            package_logger.addHandler(console_handler)

        # File handler with rotation
        if self.config.file_path:
            file_path = Path(self.config.file_path)
            file_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                file_path,
                maxBytes=self.config.max_file_size,
                backupCount=self.config.backup_count
            )
            file_handler.setLevel(level)
            file_handler.setFormatter(logging.Formatter('%(message)s'))
            package_logger.addHandler(file_handler)

    def _add_context(self, logger, method_name, event_dict):
        """Add context information to log entries."""
        context = getattr(self._context, 'context', None)
        if context:
            for key, value in context.to_dict().items():
                event_dict.setdefault(key, value)
        return event_dict

    def _add_correlation_id(self, logger, method_name, event_dict):
        """Add correlation ID to log entries."""
        if 'request_id' not in event_dict:
            event_dict['request_id'] = str(uuid.uuid4())
        return event_dict

    @contextmanager
    def context(self, **kwargs):
        """Context manager for structured logging context.

        Keys that are not LogContext fields are ignored.

        Example:
            with logging_manager.context(operation="forecast", series_id="opens"):
                logger.info("Fitting candidates")
        """
        old_context = getattr(self._context, 'context', None)
        values = {k: v for k, v in kwargs.items() if k in _CONTEXT_FIELDS}

        if old_context:
            new_context = LogContext(**{**old_context.__dict__, **values})
        else:
            new_context = LogContext(**values)

        self._context.context = new_context
        try:
            yield new_context
        finally:
            self._context.context = old_context

    def clear_context(self):
        """Clear current thread context."""
        self._context.context = None

    @contextmanager
    def track_computation(self, operation: str, **context):
        """Log, time and count one analytics computation.

        Example:
            with logging_manager.track_computation("decompose", series_id=sid):
                result = ...
        """
        start = time.time()
        with self.context(operation=operation, start_time=start, **context):
            self.logger.debug("Computation started", **context)
            try:
                yield
            except Exception:
                duration = time.time() - start
                self.metrics.record_computation(operation, duration, "error")
                raise
            duration = time.time() - start
            self.metrics.record_computation(operation, duration, "success")
            self.logger.info("Computation completed",
                             duration=round(duration, 6),
                             performance_category=self._categorize_performance(duration))

    def log_data_quality(self, issues: Iterable[Any], **context):
        """Log preprocessing issues and count them by type."""
        for issue in issues:
            issue_type = getattr(getattr(issue, 'type', None), 'value', str(issue))
            self.metrics.record_data_quality_issue(issue_type)
            self.logger.debug("Data quality issue",
                              issue_type=issue_type,
                              message=getattr(issue, 'message', None),
                              **context)

    def log_error(self, error: Exception, component: str, **context):
        """Log error with structured information.

        Args:
            error: Exception instance
            component: Component where error occurred
            **context: Additional context
        """
        error_type = type(error).__name__
        payload = error.to_dict() if hasattr(error, 'to_dict') else {}

        with self.context(component=component, **context):
            self.logger.error(
                f"Error in {component}: {error}",
                error_type=error_type,
                error=payload or None,
                **{k: v for k, v in context.items() if k not in _CONTEXT_FIELDS}
            )

        self.metrics.record_error(error_type, component)

    def _categorize_performance(self, duration: float) -> str:
        """Categorize computation time."""
        if duration < 0.1:
            return "fast"
        elif duration < 1.0:
            return "normal"
        elif duration < 5.0:
            return "slow"
        else:
            return "very_slow"

    def get_metrics(self) -> bytes:
        """Get Prometheus metrics."""
        return self.metrics.get_metrics()

    def get_logger(self, name: Optional[str] = None):
        """Get structured logger instance."""
        return structlog.get_logger(name)


# Global logging manager instance
_logging_manager: Optional[LoggingManager] = None


def get_logging_manager(config: Optional[LoggingConfig] = None) -> LoggingManager:
    """Get global logging manager instance.

    Args:
        config: Logging configuration. Applied to the existing manager when
            one has already been created.

    Returns:
        Global LoggingManager instance
    """
    global _logging_manager

    if _logging_manager is None:
        _logging_manager = LoggingManager(config)
    elif config is not None:
        _logging_manager.configure(config)

    return _logging_manager


def get_logger(name: Optional[str] = None):
    """Get structured logger instance.

    Args:
        name: Logger name

    Returns:
        Structured logger instance
    """
    return get_logging_manager().get_logger(name)
