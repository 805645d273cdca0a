"""Computation timeout system for Metric Insights.

Applies deadlines at the store fetch boundary and around forecast model
auto-selection. A timed-out call is abandoned and its eventual result is
discarded; callers never see a half-built result.
"""

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .config_manager import PerformanceConfig, get_config_manager
from .error_handler import ComputationTimeoutError
from .logging_manager import get_logger, get_logging_manager

logger = get_logger(__name__)


class TimeoutReason(Enum):
    """Reasons for a computation timeout."""
    FETCH_TIMEOUT = "fetch_timeout"
    AUTO_SELECTION_TIMEOUT = "auto_selection_timeout"
    USER_TIMEOUT = "user_timeout"


@dataclass
class TimeoutResult:
    """Outcome of a timeout-managed operation."""
    timed_out: bool
    timeout_reason: Optional[TimeoutReason]
    execution_time: float
    error_message: Optional[str] = None


class ComputationTimeoutManager:
    """Runs callables under a deadline and tracks the ones in flight."""

    def __init__(self, config: Optional[PerformanceConfig] = None):
        """Initialize the timeout manager.

        Args:
            config: Performance settings holding the default timeouts.
                Read from the global configuration manager when omitted.
        """
        self.config = config or get_config_manager().get_performance_config()
        self._active_operations: Dict[str, Dict[str, Any]] = {}
        self._operation_lock = threading.Lock()
        self.last_result: Optional[TimeoutResult] = None

    def default_timeout(self, reason: TimeoutReason) -> float:
        """Configured timeout for a reason, in seconds (0 disables)."""
        if reason == TimeoutReason.FETCH_TIMEOUT:
            return self.config.fetch_timeout
        if reason == TimeoutReason.AUTO_SELECTION_TIMEOUT:
            return self.config.auto_selection_timeout
        return 0.0

    def run(self, operation: str, fn: Callable[..., Any], *args,
            timeout: Optional[float] = None,
            reason: TimeoutReason = TimeoutReason.USER_TIMEOUT,
            **kwargs) -> Any:
        """Call ``fn(*args, **kwargs)`` and return its result within ``timeout`` seconds.

        ``timeout=None`` uses the configured default for ``reason``; a timeout
        of 0 runs the call inline without a deadline.

        Raises:
            ComputationTimeoutError: If the deadline passes first.
        """
        limit = self.default_timeout(reason) if timeout is None else timeout
        operation_id = str(uuid.uuid4())
        start = time.time()

        with self._operation_lock:
            self._active_operations[operation_id] = {
                'operation': operation,
                'start_time': start,
                'timeout': limit,
            }

        try:
            if not limit or limit <= 0:
                result = fn(*args, **kwargs)
                self.last_result = TimeoutResult(False, None, time.time() - start)
                return result

            executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"metric-insights-{operation}")
            future = executor.submit(fn, *args, **kwargs)
            try:
                result = future.result(timeout=limit)
            except FutureTimeoutError:
                elapsed = time.time() - start
                future.cancel()
                self.last_result = TimeoutResult(True, reason, elapsed,
                                                 f"{operation} exceeded {limit}s")
                error = ComputationTimeoutError(
                    f"Operation '{operation}' timed out after {elapsed:.2f}s (limit {limit}s)",
                    operation=operation,
                    execution_time=elapsed,
                    timeout_limit=limit
                )
                get_logging_manager().log_error(error, "timeout_manager", operation=operation)
                raise error
            finally:
                executor.shutdown(wait=False)

            self.last_result = TimeoutResult(False, None, time.time() - start)
            return result
        finally:
            with self._operation_lock:
                self._active_operations.pop(operation_id, None)

    def get_active_operations(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of operations currently running under this manager."""
        with self._operation_lock:
            now = time.time()
            return {
                op_id: {**info, 'running_time': now - info['start_time']}
                for op_id, info in self._active_operations.items()
            }

