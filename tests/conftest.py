"""
Shared fixtures for the Metric Insights test suite.
Provides series factories, stores backed by memory and in-memory SQLite, and
an isolated configuration manager.
"""

import os

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from metric_insights.config_manager import ConfigManager, LoggingConfig
from metric_insights.logging_manager import get_logging_manager
from metric_insights.store import InMemoryTimeSeriesStore
from tests.helpers import FailingStore, make_series, make_weekly_pattern, metadata


@pytest.fixture
def series_factory():
    """Expose make_series to tests"""
    return make_series


# =============================================================================
# Stores
# =============================================================================

@pytest.fixture
def memory_store():
    """Empty in-memory store"""
    return InMemoryTimeSeriesStore()


@pytest.fixture
def weekly_store():
    """In-memory store with eight weeks of daily 'opens' buckets"""
    store = InMemoryTimeSeriesStore()
    store.add_aggregated("opens", "1 day", make_weekly_pattern(8, slope=0.5))
    return store


@pytest.fixture
def failing_store():
    return FailingStore()


@pytest.fixture
def sqlite_engine():
    """In-memory SQLite database with the aggregation tables created"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    metadata.create_all(engine)
    yield engine
    engine.dispose()


# =============================================================================
# Configuration
# =============================================================================

@pytest.fixture
def config_manager(tmp_path, monkeypatch):
    """Configuration manager isolated from files and METRIC_INSIGHTS_* variables"""
    for key in list(os.environ):
        if key.startswith("METRIC_INSIGHTS_"):
            monkeypatch.delenv(key, raising=False)
    return ConfigManager(config_file=str(tmp_path / "missing.yaml"), load_env_file=False)


@pytest.fixture
def restore_logging():
    """Reset the global logging manager to the default configuration afterwards"""
    yield
    get_logging_manager(LoggingConfig())
