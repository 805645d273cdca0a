"""
Time Series Downsampling - bounded-size reduction of long series for chart rendering.

Every method returns at most ``target_points`` points and keeps the first and
last source points, so a chart's time axis is unchanged.

Key Features:
- Largest-Triangle-Three-Buckets (LTTB) for visually faithful line charts
- Min-max buckets that keep peaks and valleys
- Bucket averaging for noisy series
- First/last plus significant-change selection
- Chunked and thread-parallel batch helpers for large workloads
"""

import concurrent.futures
from datetime import datetime
from typing import Callable, List, Optional, Sequence, TypeVar, Union

import numpy as np
import pandas as pd

from ..error_handler import InvalidArgumentError
from ..logging_manager import get_logger
from ..models import DownsampleMethod, TimeSeriesPoint

logger = get_logger(__name__)

T = TypeVar('T')
R = TypeVar('R')


def _to_ns(timestamp: datetime) -> int:
    return pd.Timestamp(timestamp).value


def _from_ns(ns: float, reference: datetime) -> datetime:
    # rounded to microseconds, the resolution of datetime
    micros = int(round(ns / 1000))
    return pd.Timestamp(micros * 1000, tz=getattr(reference, 'tzinfo', None)).to_pydatetime()


def _resolve_method(method: Union[str, DownsampleMethod]) -> DownsampleMethod:
    try:
        return DownsampleMethod(method)
    except ValueError:
        logger.warning(f"Unknown downsampling method: {method}, using LTTB")
        return DownsampleMethod.LTTB


def downsample(points: Sequence[TimeSeriesPoint], target_points: int = 100,
               method: Union[str, DownsampleMethod] = DownsampleMethod.LTTB,
               significance_threshold: float = 0.1) -> List[TimeSeriesPoint]:
    """
    Reduce a series to at most ``target_points`` points.

    Parameters:
    -----------
    points : sequence of TimeSeriesPoint
        Series in any order; it is sorted by timestamp first
    target_points : int
        Maximum output size, at least 2
    method : str or DownsampleMethod
        'lttb', 'min-max', 'average' or 'first-last-significant'; unknown
        methods fall back to LTTB
    significance_threshold : float
        Fraction of the value range a change must reach to count as
        significant ('first-last-significant' only)

    Returns:
    --------
    list of TimeSeriesPoint
        A copy of the input when it already fits, otherwise the reduced series
    """
    if target_points < 2:
        raise InvalidArgumentError(f"target_points must be at least 2, got {target_points}",
                                   argument="target_points")

    method = _resolve_method(method)
    logger.debug(f"Downsampling {len(points)} points to {target_points} using {method.value} method")

    if len(points) <= target_points:
        return list(points)

    ordered = sorted(points, key=lambda p: _to_ns(p.timestamp))

    if method == DownsampleMethod.MIN_MAX:
        return downsample_min_max(ordered, target_points)
    if method == DownsampleMethod.AVERAGE:
        return downsample_average(ordered, target_points)
    if method == DownsampleMethod.FIRST_LAST_SIGNIFICANT:
        return downsample_first_last_significant(ordered, target_points, significance_threshold)
    return downsample_lttb(ordered, target_points)


def downsample_lttb(series: Sequence[TimeSeriesPoint], target_points: int) -> List[TimeSeriesPoint]:
    """Largest-Triangle-Three-Buckets on a sorted series."""
    n = len(series)
    if n <= target_points:
        return list(series)
    if target_points <= 2:
        return [series[0], series[-1]]

    x = np.array([_to_ns(p.timestamp) for p in series], dtype=float)
    y = np.array([p.value for p in series], dtype=float)

    buckets = target_points - 2
    bucket_size = (n - 2) / buckets

    result = [series[0]]
    last_selected = 0
    for i in range(buckets):
        start = int(i * bucket_size) + 1
        end = int((i + 1) * bucket_size) + 1

        next_start = end
        next_end = min(int((i + 2) * bucket_size) + 1, n - 1)
        if next_end > next_start:
            avg_x = x[next_start:next_end].mean()
            avg_y = y[next_start:next_end].mean()
        else:
            # final bucket: the last point stands in for the next average
            avg_x, avg_y = x[-1], y[-1]

        ax, ay = x[last_selected], y[last_selected]
        areas = np.abs((ax - avg_x) * (y[start:end] - ay) - (ax - x[start:end]) * (avg_y - ay)) * 0.5
        last_selected = start + int(np.argmax(areas))
        result.append(series[last_selected])

    result.append(series[-1])
    return result


def downsample_min_max(series: Sequence[TimeSeriesPoint], target_points: int) -> List[TimeSeriesPoint]:
    """Keep the min and max of each interior bucket, in chronological order."""
    n = len(series)
    if n <= target_points:
        return list(series)

    result = [series[0]]
    bucket_count = (target_points - 2) // 2
    if bucket_count > 0:
        values = np.array([p.value for p in series], dtype=float)
        for bucket in np.array_split(np.arange(1, n - 1), bucket_count):
            if len(bucket) == 0:
                continue
            bucket_values = values[bucket]
            low = int(bucket[np.argmin(bucket_values)])
            high = int(bucket[np.argmax(bucket_values)])
            for index in sorted({low, high}):
                result.append(series[index])

    result.append(series[-1])
    return result


def downsample_average(series: Sequence[TimeSeriesPoint], target_points: int) -> List[TimeSeriesPoint]:
    """Mean value at the mean timestamp of each interior bucket, first and last kept."""
    n = len(series)
    if n <= target_points:
        return list(series)

    result = [series[0]]
    bucket_count = target_points - 2
    if bucket_count > 0:
        x = np.array([_to_ns(p.timestamp) for p in series], dtype=float)
        y = np.array([p.value for p in series], dtype=float)
        for bucket in np.array_split(np.arange(1, n - 1), bucket_count):
            if len(bucket) == 0:
                continue
            result.append(TimeSeriesPoint(
                timestamp=_from_ns(x[bucket].mean(), series[0].timestamp),
                value=float(y[bucket].mean()),
            ))

    result.append(series[-1])
    return result


def downsample_first_last_significant(series: Sequence[TimeSeriesPoint], target_points: int,
                                      significance_threshold: float = 0.1) -> List[TimeSeriesPoint]:
    """Keep first, last and the interior points that move by a significant share of the range."""
    n = len(series)
    if n <= target_points:
        return list(series)

    values = [p.value for p in series]
    value_range = max(values) - min(values)

    significant: List[TimeSeriesPoint] = []
    if value_range > 0:
        min_change = value_range * significance_threshold
        last_significant = series[0].value
        for point in series[1:-1]:
            if abs(point.value - last_significant) >= min_change:
                significant.append(point)
                last_significant = point.value

    budget = target_points - 2
    if len(significant) > budget:
        step = len(significant) / budget
        significant = [significant[int(i * step)] for i in range(budget)]

    return [series[0]] + significant + [series[-1]]


def _validate_chunking(chunk_size: int, concurrent_chunks: Optional[int] = None) -> None:
    if chunk_size <= 0:
        raise InvalidArgumentError(f"Chunk size must be positive, got {chunk_size}", argument="chunk_size")
    if concurrent_chunks is not None and concurrent_chunks <= 0:
        raise InvalidArgumentError(f"Concurrent chunks must be positive, got {concurrent_chunks}",
                                   argument="concurrent_chunks")


def _chunks(items: Sequence[T], chunk_size: int) -> List[Sequence[T]]:
    return [items[i:i + chunk_size] for i in range(0, len(items), chunk_size)]


def process_in_chunks(items: Sequence[T], chunk_size: int,
                      processor: Callable[[Sequence[T]], Sequence[R]]) -> List[R]:
    """Apply ``processor`` to consecutive chunks and concatenate the results."""
    _validate_chunking(chunk_size)
    logger.debug(f"Processing {len(items)} items in chunks of {chunk_size}")

    results: List[R] = []
    for chunk in _chunks(items, chunk_size):
        results.extend(processor(chunk))
    return results


def process_in_parallel_chunks(items: Sequence[T], chunk_size: int, concurrent_chunks: int,
                               processor: Callable[[Sequence[T]], Sequence[R]]) -> List[R]:
    """Like ``process_in_chunks`` with up to ``concurrent_chunks`` chunks in flight.

    Results keep the input order. The first processor exception propagates.
    """
    _validate_chunking(chunk_size, concurrent_chunks)
    logger.debug(f"Processing {len(items)} items in {concurrent_chunks} parallel chunks of {chunk_size}")

    chunks = _chunks(items, chunk_size)
    if not chunks:
        return []

    results: List[R] = []
    with concurrent.futures.ThreadPoolExecutor(max_workers=min(concurrent_chunks, len(chunks)),
                                               thread_name_prefix="metric-insights-chunk") as executor:
        for chunk_result in executor.map(processor, chunks):
            results.extend(chunk_result)
    return results
