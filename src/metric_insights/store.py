"""Time series store adapters.

The analytics engine reads data only through the ``TimeSeriesStore`` contract:
``get_time_series(series_id, start, end, interval) -> list of points``.
Pre-aggregated buckets are preferred; when a series has none for the
requested interval, raw events are bucketed and summed on the fly.
"""

import math
import threading
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, runtime_checkable

import pandas as pd
from sqlalchemy import DateTime, Float, bindparam, text
from sqlalchemy.engine import Engine

from .error_handler import AnalyticsError, InvalidArgumentError, UpstreamFetchError
from .logging_manager import get_logger
from .models import TimeSeriesPoint, resolve_interval
from .timeout_manager import ComputationTimeoutManager, TimeoutReason

logger = get_logger(__name__)

# pandas resample rules matching the bucket alignment of the aggregation tables
_RESAMPLE_RULES = {
    '1 hour': dict(rule='h'),
    '1 day': dict(rule='D'),
    '1 week': dict(rule='W-MON', label='left', closed='left'),
    '1 month': dict(rule='MS'),
}


@runtime_checkable
class TimeSeriesStore(Protocol):
    """Source of raw or pre-aggregated metric samples."""

    def get_time_series(self, series_id: str, start: datetime, end: datetime,
                        interval: str) -> List[TimeSeriesPoint]:
        ...


def validate_request(series_id: str, start: Any, end: Any) -> None:
    """Reject malformed fetch requests before any work is done.

    Raises:
        InvalidArgumentError: For an empty series id, non-datetime bounds or
            a start after the end.
    """
    if not isinstance(series_id, str) or not series_id.strip():
        raise InvalidArgumentError("Invalid series ID: series ID cannot be empty",
                                   argument="series_id", error_code="INVALID_SERIES_ID")
    if not _is_valid_instant(start):
        raise InvalidArgumentError("Invalid start date: must be a valid datetime",
                                   argument="start", error_code="INVALID_DATE")
    if not _is_valid_instant(end):
        raise InvalidArgumentError("Invalid end date: must be a valid datetime",
                                   argument="end", error_code="INVALID_DATE")
    if start > end:
        raise InvalidArgumentError("Invalid date range: start date must be before end date",
                                   argument="start", error_code="INVALID_DATE_RANGE")


def _is_valid_instant(value: Any) -> bool:
    return isinstance(value, datetime) and not pd.isna(value)


def aggregate_events(events: Iterable[TimeSeriesPoint], interval: str) -> List[TimeSeriesPoint]:
    """Bucket raw events by interval and sum the values of each bucket.

    Buckets without events are omitted. Non-numeric values count as 0.
    """
    events = list(events)
    if not events:
        return []

    interval = resolve_interval(interval)
    frame = pd.DataFrame({
        'timestamp': pd.to_datetime([e.timestamp for e in events]),
        'value': pd.to_numeric([e.value for e in events], errors='coerce'),
    }).set_index('timestamp').sort_index()

    buckets = frame['value'].fillna(0.0).resample(**_RESAMPLE_RULES[interval]).agg(['sum', 'count'])
    buckets = buckets[buckets['count'] > 0]

    return [
        TimeSeriesPoint(timestamp=ts.to_pydatetime(), value=float(row['sum']))
        for ts, row in buckets.iterrows()
    ]


def fetch_time_series(store: TimeSeriesStore, series_id: str, start: datetime, end: datetime,
                      interval: str,
                      timeout_manager: Optional[ComputationTimeoutManager] = None) -> List[TimeSeriesPoint]:
    """Validate the request and read a series from a store.

    Any store failure is wrapped in ``UpstreamFetchError`` with the series id
    and window attached. There is no retry at this layer. With a timeout
    manager the read runs under the configured fetch timeout.
    """
    validate_request(series_id, start, end)
    logger.info("Fetching time series", series_id=series_id,
                start=start.isoformat(), end=end.isoformat(), interval=interval)

    try:
        if timeout_manager is not None:
            points = timeout_manager.run("fetch", store.get_time_series, series_id, start, end, interval,
                                         reason=TimeoutReason.FETCH_TIMEOUT)
        else:
            points = store.get_time_series(series_id, start, end, interval)
    except AnalyticsError:
        raise
    except Exception as e:
        raise UpstreamFetchError(
            f"Failed to fetch time series data for '{series_id}': {e}",
            series_id=series_id,
            window={'start': start.isoformat(), 'end': end.isoformat(), 'interval': interval},
            cause=e
        ) from e

    if points is None:
        raise UpstreamFetchError(
            f"Store returned no result object for '{series_id}'",
            series_id=series_id,
            window={'start': start.isoformat(), 'end': end.isoformat(), 'interval': interval}
        )

    points = list(points)
    logger.info("Fetched time series", series_id=series_id, points=len(points))
    return points


class InMemoryTimeSeriesStore:
    """Thread-safe in-memory store holding raw events and pre-aggregated buckets."""

    def __init__(self):
        self._events: Dict[str, List[TimeSeriesPoint]] = defaultdict(list)
        self._aggregated: Dict[tuple, List[TimeSeriesPoint]] = defaultdict(list)
        self._lock = threading.Lock()

    def add_events(self, series_id: str, events: Iterable[TimeSeriesPoint]) -> None:
        with self._lock:
            self._events[series_id].extend(events)

    def add_aggregated(self, series_id: str, interval: str, buckets: Iterable[TimeSeriesPoint]) -> None:
        with self._lock:
            self._aggregated[(series_id, interval)].extend(buckets)

    def get_time_series(self, series_id: str, start: datetime, end: datetime,
                        interval: str = '1 day') -> List[TimeSeriesPoint]:
        with self._lock:
            buckets = [p for p in self._aggregated.get((series_id, interval), [])
                       if start <= p.timestamp <= end]
            events = [e for e in self._events.get(series_id, [])
                      if start <= e.timestamp <= end]

        if buckets:
            logger.debug("Using pre-aggregated data", series_id=series_id, points=len(buckets))
            return sorted(buckets, key=lambda p: p.timestamp)

        logger.debug("No pre-aggregated data found, aggregating events", series_id=series_id,
                     events=len(events))
        return aggregate_events(events, interval)


class SQLTimeSeriesStore:
    """SQLAlchemy-backed store.

    Expects two tables::

        aggregated_metrics(metric_id, bucket_size, time_bucket, sum_value)
        metric_events(metric_id, timestamp, value)
    """

    AGGREGATED_QUERY = text(
        "SELECT time_bucket, sum_value FROM aggregated_metrics "
        "WHERE metric_id = :metric_id AND bucket_size = :bucket_size "
        "AND time_bucket BETWEEN :start AND :end "
        "ORDER BY time_bucket ASC"
    ).bindparams(
        bindparam("start", type_=DateTime), bindparam("end", type_=DateTime)
    ).columns(time_bucket=DateTime, sum_value=Float)

    EVENTS_QUERY = text(
        "SELECT timestamp, value FROM metric_events "
        "WHERE metric_id = :metric_id AND timestamp BETWEEN :start AND :end "
        "ORDER BY timestamp ASC"
    ).bindparams(
        bindparam("start", type_=DateTime), bindparam("end", type_=DateTime)
    ).columns(timestamp=DateTime, value=Float)

    def __init__(self, engine: Engine):
        self.engine = engine

    def get_time_series(self, series_id: str, start: datetime, end: datetime,
                        interval: str = '1 day') -> List[TimeSeriesPoint]:
        with self.engine.connect() as conn:
            rows = conn.execute(self.AGGREGATED_QUERY, {
                'metric_id': series_id, 'bucket_size': interval, 'start': start, 'end': end
            }).fetchall()

            if rows:
                logger.info(f"Found {len(rows)} pre-aggregated data points", series_id=series_id)
                return [TimeSeriesPoint(_to_datetime(r[0]), _to_float(r[1])) for r in rows]

            logger.info("No pre-aggregated data found, calculating on the fly", series_id=series_id)
            events = conn.execute(self.EVENTS_QUERY, {
                'metric_id': series_id, 'start': start, 'end': end
            }).fetchall()

        return aggregate_events(
            [TimeSeriesPoint(_to_datetime(r[0]), _to_float(r[1])) for r in events],
            interval
        )


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return pd.Timestamp(value).to_pydatetime()


def _to_float(value: Any) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return math.nan
    return result
