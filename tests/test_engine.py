"""Tests for the AnalyticsEngine facade."""

import logging
from datetime import timedelta
from logging.handlers import RotatingFileHandler

import pytest

from metric_insights import AnalyticsEngine
from metric_insights.cache import ComputationCache
from metric_insights.config_manager import ConfigManager
from metric_insights.error_handler import InvalidArgumentError, UpstreamFetchError
from metric_insights.models import ForecastMethod
from tests.helpers import START, CountingStore, make_linear, make_series, make_weekly_pattern

END = START + timedelta(days=60)


@pytest.fixture
def counting_store():
    store = CountingStore()
    store.add_aggregated("opens", "1 day", make_weekly_pattern(8, slope=0.5))
    return store


@pytest.fixture
def engine(counting_store, config_manager):
    return AnalyticsEngine(counting_store, config_manager=config_manager)


def write_config(tmp_path, text):
    config_file = tmp_path / "engine.yaml"
    config_file.write_text(text)
    return ConfigManager(config_file=str(config_file), load_env_file=False)


class TestConstruction:
    """Test how the engine wires its collaborators."""

    def test_cache_built_from_config(self, engine):
        assert isinstance(engine.cache, ComputationCache)
        assert engine.cache_stats()['size'] == 0

    def test_cache_disabled(self, counting_store, tmp_path):
        manager = write_config(tmp_path, "cache:\n  enabled: false\n")

        engine = AnalyticsEngine(counting_store, config_manager=manager)

        assert engine.cache is None
        assert engine.cache_stats() == {'enabled': False}

    def test_explicit_cache_wins(self, counting_store, config_manager):
        cache = ComputationCache(max_entries=5)

        assert AnalyticsEngine(counting_store, config_manager=config_manager, cache=cache).cache is cache

    def test_timeouts_from_config(self, counting_store, tmp_path):
        manager = write_config(tmp_path, "performance:\n  fetch_timeout: 1.5\n")

        engine = AnalyticsEngine(counting_store, config_manager=manager)

        assert engine.timeout_manager.config.fetch_timeout == 1.5

    def test_logging_config_applied(self, counting_store, tmp_path, restore_logging):
        """Test that the logging section sets the level and adds a rotating file handler."""
        log_file = tmp_path / "logs" / "metric-insights.log"
        manager = write_config(
            tmp_path,
            f"logging:\n  level: warning\n  console_output: false\n  file_path: \"{log_file}\"\n"
            "  backup_count: 2\n",
        )

        AnalyticsEngine(counting_store, config_manager=manager)

        package_logger = logging.getLogger("metric_insights")
        assert package_logger.level == logging.WARNING
        file_handlers = [h for h in package_logger.handlers if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1
        assert file_handlers[0].backupCount == 2
        assert not any(type(h) is logging.StreamHandler for h in package_logger.handlers)

        logging.getLogger("metric_insights.engine").warning("fetch slow for opens")
        file_handlers[0].flush()
        assert "fetch slow for opens" in log_file.read_text()

    def test_metrics_disabled_by_config(self, counting_store, tmp_path, restore_logging):
        manager = write_config(tmp_path, "logging:\n  enable_metrics: false\n")
        engine = AnalyticsEngine(counting_store, config_manager=manager)
        registry = engine.logging_manager.metrics.registry
        labels = {'operation': 'decompose', 'status': 'success'}
        before = registry.get_sample_value('metric_insights_computations_total', labels) or 0.0

        engine.decompose("opens", START, END)

        assert (registry.get_sample_value('metric_insights_computations_total', labels) or 0.0) == before


class TestMemoization:
    """Test that repeated requests are served from the cache."""

    def test_decompose_memoized(self, engine, counting_store):
        first = engine.decompose("opens", START, END)
        second = engine.decompose("opens", START, END)

        assert second == first
        assert counting_store.calls == 1
        assert len(first.original) == 56
        assert engine.cache_stats()['hits'] >= 1

    def test_decompose_parameters_are_part_of_key(self, engine, counting_store):
        engine.decompose("opens", START, END)
        engine.decompose("opens", START, END, window_size=3)

        assert counting_store.calls == 2

    def test_forecast_memoized(self, engine, counting_store):
        first = engine.generate_forecast("opens", START, END, horizon=7, method="naive")
        second = engine.generate_forecast("opens", START, END, horizon=7, method="naive")

        assert second == first
        assert counting_store.calls == 1

    def test_forecast_method_is_part_of_key(self, engine, counting_store):
        engine.generate_forecast("opens", START, END, horizon=7, method="naive")
        engine.generate_forecast("opens", START, END, horizon=7, method="moving_average")

        assert counting_store.calls == 2

    def test_cached_results_are_copies(self, engine, counting_store):
        """Test that changing a returned result does not change later cached answers."""
        first = engine.generate_forecast("opens", START, END, horizon=7, method="naive")
        original_accuracy = first.accuracy
        first.accuracy = -1.0
        first.metadata.warnings.append("edited by caller")
        first.forecast.clear()

        second = engine.generate_forecast("opens", START, END, horizon=7, method="naive")

        assert counting_store.calls == 1
        assert second.accuracy == original_accuracy
        assert "edited by caller" not in second.metadata.warnings
        assert len(second.forecast) == 7

    def test_no_memoization_without_cache(self, counting_store, tmp_path):
        engine = AnalyticsEngine(counting_store, config_manager=write_config(tmp_path, "cache:\n  enabled: false\n"))

        engine.decompose("opens", START, END)
        engine.decompose("opens", START, END)

        assert counting_store.calls == 2


class TestConfigDefaults:
    """Test that configured defaults flow into the domain calls."""

    def test_forecast_default_method(self, counting_store, tmp_path):
        manager = write_config(tmp_path, "forecast:\n  default_method: moving_average\n  window_size: 3\n")
        engine = AnalyticsEngine(counting_store, config_manager=manager)

        result = engine.generate_forecast("opens", START, END, horizon=5)

        assert result.method == ForecastMethod.MOVING_AVERAGE
        assert result.metadata.model_params.window_size == 3
        assert len(result.forecast) == 5

    def test_auto_selects_linear_regression_for_a_line(self, config_manager):
        store = CountingStore()
        store.add_aggregated("signups", "1 day", make_linear(30))
        engine = AnalyticsEngine(store, config_manager=config_manager)

        result = engine.generate_forecast("signups", START, END, horizon=3)

        assert result.method == ForecastMethod.LINEAR_REGRESSION

    def test_downsample_defaults(self, counting_store, tmp_path):
        manager = write_config(tmp_path, "downsampling:\n  target_points: 20\n  method: average\n")
        engine = AnalyticsEngine(counting_store, config_manager=manager)
        points = make_series(range(200))

        reduced = engine.downsample(points)

        assert len(reduced) <= 20

    def test_detect_anomalies_default_threshold(self, engine):
        points = make_series([1] * 10 + [100])

        assert [p.value for p in engine.detect_anomalies(points)] == [100.0]

    def test_preprocess_overrides(self, engine):
        points = make_series([1, 2, 3, float('nan')])

        result = engine.preprocess(points, fill_missing_values=False)

        assert len(result.data) == 3

    def test_chunk_helpers(self, engine):
        items = list(range(250))

        def double(chunk):
            return [i * 2 for i in chunk]

        assert engine.process_in_chunks(items, double) == [i * 2 for i in items]
        assert engine.process_in_parallel_chunks(items, double, chunk_size=30) == [i * 2 for i in items]

    def test_correlation_and_entropy(self, engine):
        a = make_linear(20)
        b = make_linear(20, slope=5)

        assert engine.calculate_correlation(a, b) == pytest.approx(1.0)
        assert engine.calculate_sample_entropy(make_series([1, 1, 1, 1, 1, 1])) == 0.0


class TestErrors:
    """Test error propagation and reporting."""

    def test_store_failure_reraised(self, failing_store, config_manager):
        engine = AnalyticsEngine(failing_store, config_manager=config_manager)
        registry = engine.logging_manager.metrics.registry
        labels = {'error_type': 'UpstreamFetchError', 'component': 'engine'}
        before = registry.get_sample_value('metric_insights_errors_total', labels) or 0.0

        with pytest.raises(UpstreamFetchError):
            engine.generate_forecast("opens", START, END, horizon=3, method="naive")

        assert registry.get_sample_value('metric_insights_errors_total', labels) == before + 1

    def test_invalid_horizon(self, engine, counting_store):
        with pytest.raises(InvalidArgumentError):
            engine.generate_forecast("opens", START, END, horizon=0)

        assert counting_store.calls == 0

    def test_failed_computation_not_cached(self, failing_store, config_manager):
        engine = AnalyticsEngine(failing_store, config_manager=config_manager)

        for _ in range(2):
            with pytest.raises(UpstreamFetchError):
                engine.decompose("opens", START, END)

        assert failing_store.calls == 2
        assert engine.cache_stats()['size'] == 0

    def test_metrics_exposition(self, engine):
        engine.decompose("opens", START, END)

        assert b"metric_insights_computations_total" in engine.get_metrics()
