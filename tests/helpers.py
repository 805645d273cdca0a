"""Series factories, store doubles and SQL tables shared by the test modules."""

import math
import time
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from sqlalchemy import Column, DateTime, Float, Integer, MetaData, String, Table

from metric_insights.models import TimeSeriesPoint
from metric_insights.store import InMemoryTimeSeriesStore

START = datetime(2024, 1, 1)


def make_series(values: Sequence[float], start: datetime = START,
                step: timedelta = timedelta(days=1)) -> List[TimeSeriesPoint]:
    """Create a regular series from a list of values"""
    return [TimeSeriesPoint(start + i * step, float(v)) for i, v in enumerate(values)]


def make_weekly_pattern(weeks: int, base: float = 100.0, amplitude: float = 20.0,
                        slope: float = 0.0) -> List[TimeSeriesPoint]:
    """Create a daily series with a 7-day sine pattern and optional linear trend"""
    values = [base + slope * i + amplitude * math.sin(2 * math.pi * i / 7) for i in range(weeks * 7)]
    return make_series(values)


def make_linear(n: int, slope: float = 2.0, intercept: float = 10.0,
                step: timedelta = timedelta(days=1)) -> List[TimeSeriesPoint]:
    """Create a perfectly linear series"""
    return make_series([intercept + slope * i for i in range(n)], step=step)


class FailingStore:
    """Store whose reads always fail"""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error or ConnectionError("database unavailable")
        self.calls = 0

    def get_time_series(self, series_id, start, end, interval):
        self.calls += 1
        raise self.error


class CountingStore(InMemoryTimeSeriesStore):
    """In-memory store that counts reads"""

    def __init__(self):
        super().__init__()
        self.calls = 0

    def get_time_series(self, series_id, start, end, interval='1 day'):
        self.calls += 1
        return super().get_time_series(series_id, start, end, interval)


class SlowStore:
    """Store that sleeps before answering"""

    def __init__(self, delay: float, points: Optional[List[TimeSeriesPoint]] = None):
        self.delay = delay
        self.points = points or []

    def get_time_series(self, series_id, start, end, interval):
        time.sleep(self.delay)
        return list(self.points)


metadata = MetaData()

aggregated_metrics = Table(
    "aggregated_metrics", metadata,
    Column("id", Integer, primary_key=True),
    Column("metric_id", String(64), nullable=False),
    Column("bucket_size", String(16), nullable=False),
    Column("time_bucket", DateTime, nullable=False),
    Column("sum_value", Float),
)

metric_events = Table(
    "metric_events", metadata,
    Column("id", Integer, primary_key=True),
    Column("metric_id", String(64), nullable=False),
    Column("timestamp", DateTime, nullable=False),
    Column("value", Float),
)
