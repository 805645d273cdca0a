"""Tests for forecasting models, error metrics, model selection and generate_forecast."""

import math
from datetime import timedelta

import pytest

from metric_insights.config_manager import ForecastConfig, PerformanceConfig
from metric_insights.domains.forecasting import (
    ForecastOptions,
    LinearRegressionForecaster,
    MovingAverageForecaster,
    NaiveForecaster,
    SeasonalNaiveForecaster,
    build_forecaster,
    calculate_forecast_errors,
    determine_best_method,
    generate_forecast,
    get_t_value,
    get_z_value,
    validate_forecast_accuracy,
)
from metric_insights.error_handler import (
    ComputationTimeoutError,
    InsufficientDataError,
    InvalidArgumentError,
    UpstreamFetchError,
)
from metric_insights.models import ForecastMethod, LinearRegressionParams, PreprocessedTimeSeries
from metric_insights.timeout_manager import ComputationTimeoutManager
from tests.helpers import START, SlowStore, make_linear, make_series, make_weekly_pattern

END = START + timedelta(days=365)

ALL_FORECASTERS = [
    NaiveForecaster(),
    SeasonalNaiveForecaster(seasonal_period=7),
    MovingAverageForecaster(window_size=7),
    LinearRegressionForecaster(),
]


def widths(result):
    return result.confidence.widths()


class TestCriticalValues:
    """Test confidence multipliers."""

    @pytest.mark.parametrize("level,expected", [
        (0.99, 2.576), (0.98, 2.326), (0.95, 1.96), (0.90, 1.645), (0.80, 1.282), (0.5, 1.96)
    ])
    def test_z_values(self, level, expected):
        assert get_z_value(level) == expected

    def test_t_value_large_sample_is_z(self):
        assert get_t_value(0.95, 31) == 1.96

    def test_t_value_small_sample_widens(self):
        assert get_t_value(0.95, 10) == pytest.approx(1.96 * math.sqrt(2))


class TestForecastContract:
    """Test the shape every model's result must have."""

    @pytest.mark.parametrize("forecaster", ALL_FORECASTERS, ids=lambda f: f.method.value)
    def test_result_shape(self, forecaster):
        """Test horizon-length output, ordered bands and accuracy bounds."""
        series = make_weekly_pattern(6, slope=0.5)

        result = forecaster.forecast(series, 10)

        assert result.horizon == 10
        assert len(result.confidence.upper) == len(result.confidence.lower) == 10
        expected = [series[-1].timestamp + timedelta(days=i) for i in range(1, 11)]
        assert [p.timestamp for p in result.forecast] == expected
        for f, u, l in zip(result.forecast, result.confidence.upper, result.confidence.lower):
            assert l.value <= f.value <= u.value
            assert l.value >= 0
        assert 0.0 <= result.accuracy <= 1.0
        assert result.method == forecaster.method

    @pytest.mark.parametrize("forecaster", ALL_FORECASTERS, ids=lambda f: f.method.value)
    def test_band_never_narrows(self, forecaster):
        """Test that band width is non-decreasing with the step."""
        result = forecaster.forecast(make_weekly_pattern(6, slope=0.5, amplitude=30), 14)

        band = widths(result)
        assert all(later >= earlier - 1e-9 for earlier, later in zip(band, band[1:]))

    def test_preprocessed_input_accepted(self):
        """Test that models accept a PreprocessedTimeSeries."""
        series = PreprocessedTimeSeries.from_points(make_series([1, 2, 3, 4]))

        assert NaiveForecaster().forecast(series, 2).forecast[0].value == 4.0


class TestNaiveForecaster:
    """Test the naive model."""

    def test_repeats_last_value(self):
        result = NaiveForecaster().forecast(make_series([10, 12, 11, 13, 12]), 3)

        assert [p.value for p in result.forecast] == [12.0, 12.0, 12.0]

    def test_accuracy_from_training_mean(self):
        """Test accuracy of the training mean against the last three points."""
        result = NaiveForecaster().forecast(make_series([10, 12, 11, 13, 12]), 1)

        mape = (0 / 11 + 2 / 13 + 1 / 12) / 3
        assert result.accuracy == pytest.approx(1 - mape)

    def test_short_series_accuracy(self):
        assert NaiveForecaster().forecast(make_series([1, 2, 3]), 1).accuracy == 0.5

    def test_band_uses_confidence_level(self):
        """Test that a higher confidence level widens the band."""
        series = make_series([10, 14, 9, 13, 11])

        narrow = NaiveForecaster(confidence_level=0.80).forecast(series, 1)
        wide = NaiveForecaster(confidence_level=0.99).forecast(series, 1)

        assert widths(wide)[0] > widths(narrow)[0]

    def test_empty_series(self):
        with pytest.raises(InsufficientDataError):
            NaiveForecaster().forecast([], 1)


class TestSeasonalNaiveForecaster:
    """Test the seasonal naive model."""

    def test_repeats_last_period(self):
        """Test that step i repeats the value one period earlier."""
        series = make_series(list(range(1, 8)) * 2)

        result = SeasonalNaiveForecaster(seasonal_period=7).forecast(series, 10)

        assert [p.value for p in result.forecast] == [1, 2, 3, 4, 5, 6, 7, 1, 2, 3]
        assert result.accuracy == pytest.approx(1.0)
        assert result.metadata.model_params.seasonal_period == 7

    def test_period_defaults_from_interval(self):
        """Test the default period for hourly data."""
        series = make_series(range(50), step=timedelta(hours=1))

        result = SeasonalNaiveForecaster().forecast(series, 3, interval='1 hour')

        assert result.metadata.model_params.seasonal_period == 24
        assert [p.value for p in result.forecast] == [26.0, 27.0, 28.0]

    def test_falls_back_to_naive(self):
        """Test fallback to naive with a warning when history is shorter than a period."""
        result = SeasonalNaiveForecaster(seasonal_period=7).forecast(make_series([1, 2, 3, 4, 5]), 3)

        assert result.method == ForecastMethod.NAIVE
        assert [p.value for p in result.forecast] == [5.0, 5.0, 5.0]
        assert any("naive" in w for w in result.metadata.warnings)


class TestMovingAverageForecaster:
    """Test the moving average model."""

    def test_flat_forecast_at_window_mean(self):
        result = MovingAverageForecaster(window_size=3).forecast(make_series(range(1, 11)), 4)

        assert [p.value for p in result.forecast] == [9.0] * 4
        assert result.metadata.model_params.window_size == 3

    def test_insufficient_data(self):
        with pytest.raises(InsufficientDataError) as exc_info:
            MovingAverageForecaster(window_size=7).forecast(make_series([1, 2, 3]), 2)

        assert exc_info.value.metadata['required'] == 7

    def test_window_floor(self):
        """Test that a window below 2 is raised to 2."""
        result = MovingAverageForecaster(window_size=1).forecast(make_series([1, 2, 3, 4]), 1)

        assert result.forecast[0].value == 3.5

    def test_exact_window_has_zero_width_band(self):
        """Test that no residuals means a zero-width band."""
        result = MovingAverageForecaster(window_size=3).forecast(make_series([4, 5, 6]), 2)

        assert widths(result) == [0.0, 0.0]
        assert result.accuracy == 0.5


class TestLinearRegressionForecaster:
    """Test the OLS linear model."""

    def test_perfect_line(self):
        """Test extrapolation of an exact line with R² accuracy 1."""
        result = LinearRegressionForecaster().forecast(make_linear(10), 3)

        assert [p.value for p in result.forecast] == pytest.approx([30.0, 32.0, 34.0])
        assert result.accuracy == pytest.approx(1.0)
        params = result.metadata.model_params
        assert isinstance(params, LinearRegressionParams)
        assert params.slope == pytest.approx(2.0)
        assert params.intercept == pytest.approx(10.0)

    def test_hourly_interval_steps(self):
        """Test that forecast steps follow the interval, not whole days."""
        series = make_linear(10, step=timedelta(hours=1))

        result = LinearRegressionForecaster().forecast(series, 2, interval='1 hour')

        assert [p.value for p in result.forecast] == pytest.approx([30.0, 32.0])
        assert result.forecast[0].timestamp == series[-1].timestamp + timedelta(hours=1)

    def test_negative_extrapolation_floored(self):
        """Test that forecasts and lower bounds never drop below zero."""
        result = LinearRegressionForecaster().forecast(make_series([10, 8, 6, 4, 2]), 4)

        assert all(p.value >= 0 for p in result.forecast)
        assert all(p.value >= 0 for p in result.confidence.lower)

    def test_constant_series(self):
        """Test that a flat series gives a flat forecast with R² 1."""
        result = LinearRegressionForecaster().forecast(make_series([5, 5, 5, 5]), 2)

        assert [p.value for p in result.forecast] == pytest.approx([5.0, 5.0])
        assert result.accuracy == 1.0

    def test_insufficient_data(self):
        with pytest.raises(InsufficientDataError):
            LinearRegressionForecaster().forecast(make_series([1, 2]), 1)


class TestForecastErrors:
    """Test forecast error metrics."""

    def test_metrics(self):
        metrics = calculate_forecast_errors(make_series([10, 20]), make_series([8, 25]))

        assert metrics.mape == pytest.approx(0.225)
        assert metrics.mae == pytest.approx(3.5)
        assert metrics.rmse == pytest.approx(math.sqrt(14.5))
        assert metrics.r2 == pytest.approx(1 - 29 / 144.5)

    def test_zero_actuals_skipped_in_mape(self):
        metrics = calculate_forecast_errors(make_series([5, 8]), make_series([0, 10]))

        assert metrics.mape == pytest.approx(0.2)

    def test_all_zero_actuals(self):
        metrics = calculate_forecast_errors(make_series([1, 2]), make_series([0, 0]))

        assert metrics.mape == 1.0
        assert metrics.r2 == 1.0

    def test_truncates_to_shorter(self):
        """Test that only the overlapping prefix is scored."""
        metrics = calculate_forecast_errors(make_series([1, 2, 3, 99]), make_series([1, 2, 3]))

        assert metrics.mae == 0.0

    def test_sorted_by_timestamp(self):
        forecast = list(reversed(make_series([1, 2, 3])))

        assert calculate_forecast_errors(forecast, make_series([1, 2, 3])).mae == 0.0

    def test_empty(self):
        with pytest.raises(InvalidArgumentError):
            calculate_forecast_errors([], make_series([1]))

    def test_non_sequence(self):
        with pytest.raises(TypeError):
            calculate_forecast_errors((p for p in make_series([1])), make_series([1]))


class TestDetermineBestMethod:
    """Test holdout-based model selection."""

    def test_short_series_defaults_to_naive(self):
        assert determine_best_method(make_series(range(9))) == (ForecastMethod.NAIVE, {})

    def test_linear_trend_selects_regression(self):
        method, scores = determine_best_method(make_linear(20))

        assert method == ForecastMethod.LINEAR_REGRESSION
        assert scores['linear_regression'] == pytest.approx(1.0)
        assert set(scores) == {'naive', 'seasonal_naive', 'moving_average', 'linear_regression'}

    def test_weekly_pattern_selects_seasonal(self):
        method, scores = determine_best_method(make_weekly_pattern(8))

        assert method == ForecastMethod.SEASONAL_NAIVE
        assert scores['seasonal_naive'] == pytest.approx(1.0)

    def test_ties_keep_earlier_candidate(self):
        """Test that a constant series keeps naive although others score the same."""
        method, scores = determine_best_method(make_series([5] * 12))

        assert method == ForecastMethod.NAIVE
        assert 'seasonal_naive' not in scores
        assert all(score == pytest.approx(1.0) for score in scores.values())


class TestValidateForecastAccuracy:
    """Test re-validation against the history tail."""

    def test_perfect_line(self):
        metrics = validate_forecast_accuracy(make_linear(12), ForecastMethod.LINEAR_REGRESSION, 3)

        assert metrics.mape == pytest.approx(0.0, abs=1e-9)

    def test_insufficient_history(self):
        with pytest.raises(InsufficientDataError):
            validate_forecast_accuracy(make_linear(5), ForecastMethod.NAIVE, 3)

    def test_moving_average_window_capped_to_training(self):
        """Test that a window longer than the training split is shortened instead of failing."""
        history = make_series([10, 12, 11, 13, 12, 11, 12, 13, 12, 11])

        metrics = validate_forecast_accuracy(history, ForecastMethod.MOVING_AVERAGE, 5,
                                             options=ForecastOptions(window_size=7))

        assert 0.0 <= metrics.mape < 0.2


class TestForecastOptions:
    """Test option construction."""

    def test_from_config_with_overrides(self):
        options = ForecastOptions.from_config(ForecastConfig(window_size=3, seasonal_period=12),
                                              confidence_level=0.8)

        assert options.window_size == 3
        assert options.seasonal_period == 12
        assert options.confidence_level == 0.8

    def test_build_forecaster_uses_options(self):
        forecaster = build_forecaster(ForecastMethod.MOVING_AVERAGE, ForecastOptions(window_size=4))

        assert isinstance(forecaster, MovingAverageForecaster)
        assert forecaster.window_size == 4

    def test_build_forecaster_rejects_auto(self):
        with pytest.raises(InvalidArgumentError):
            build_forecaster(ForecastMethod.AUTO, ForecastOptions())


class TestGenerateForecast:
    """Test forecasting stored series."""

    @pytest.fixture
    def linear_store(self, memory_store):
        memory_store.add_aggregated("signups", "1 day", make_linear(20))
        return memory_store

    @pytest.mark.parametrize("horizon", [0, -1, True, 1.5, None])
    def test_invalid_horizon(self, linear_store, horizon):
        with pytest.raises(InvalidArgumentError) as exc_info:
            generate_forecast(linear_store, "signups", START, END, horizon)

        assert exc_info.value.error_code == "INVALID_HORIZON"

    def test_invalid_method(self, linear_store):
        with pytest.raises(InvalidArgumentError) as exc_info:
            generate_forecast(linear_store, "signups", START, END, 3, method="arima")

        assert exc_info.value.error_code == "INVALID_METHOD"

    def test_empty_series_id(self, linear_store):
        with pytest.raises(InvalidArgumentError) as exc_info:
            generate_forecast(linear_store, " ", START, END, 3)

        assert exc_info.value.error_code == "INVALID_SERIES_ID"

    def test_insufficient_data(self, memory_store):
        memory_store.add_aggregated("signups", "1 day", make_series([5]))

        with pytest.raises(InsufficientDataError):
            generate_forecast(memory_store, "signups", START, END, 3)

    def test_store_failure(self, failing_store):
        with pytest.raises(UpstreamFetchError):
            generate_forecast(failing_store, "signups", START, END, 3)

    def test_auto_selects_regression(self, linear_store):
        result = generate_forecast(linear_store, "signups", START, END, 5)

        assert result.method == ForecastMethod.LINEAR_REGRESSION
        assert result.horizon == 5
        assert result.forecast[0].value == pytest.approx(50.0)

    def test_explicit_method_as_string(self, linear_store):
        result = generate_forecast(linear_store, "signups", START, END, 2, method="naive")

        assert result.method == ForecastMethod.NAIVE
        assert result.to_dict()['method'] == 'naive'

    def test_unknown_interval_falls_back_to_daily(self, memory_store):
        memory_store.add_aggregated("signups", "1 day", make_linear(10))

        result = generate_forecast(memory_store, "signups", START, END, 2, method="naive",
                                   interval="1 fortnight")

        assert result.forecast[1].timestamp - result.forecast[0].timestamp == timedelta(days=1)

    def test_validate_with_history(self, linear_store):
        """Test that history validation attaches metrics and rescores accuracy."""
        result = generate_forecast(linear_store, "signups", START, END, 3,
                                   method=ForecastMethod.LINEAR_REGRESSION,
                                   options=ForecastOptions(validate_with_history=True))

        assert result.metadata.validation_metrics is not None
        assert result.metadata.validation_metrics.mape == pytest.approx(0.0, abs=1e-9)
        assert result.accuracy == pytest.approx(1.0)

    def test_validate_with_history_skipped_for_short_series(self, memory_store):
        memory_store.add_aggregated("signups", "1 day", make_linear(6))

        result = generate_forecast(memory_store, "signups", START, END, 2, method="naive",
                                   options=ForecastOptions(validate_with_history=True))

        assert result.metadata.validation_metrics is None
        assert any("History validation skipped" in w for w in result.metadata.warnings)

    def test_validate_with_history_moving_average_on_short_series(self, memory_store):
        """Test that validation on ten points with a default window completes instead of raising."""
        memory_store.add_aggregated("signups", "1 day", make_series([10, 12, 11, 13, 12, 11, 12, 13, 12, 11]))

        result = generate_forecast(memory_store, "signups", START, END, 5, method="moving_average",
                                   options=ForecastOptions(validate_with_history=True))

        assert len(result.forecast) == 5
        assert result.metadata.validation_metrics is not None
        assert 0.0 <= result.accuracy <= 1.0

    def test_with_timeout_manager(self, linear_store):
        manager = ComputationTimeoutManager(PerformanceConfig(fetch_timeout=5.0, auto_selection_timeout=5.0))

        result = generate_forecast(linear_store, "signups", START, END, 3, timeout_manager=manager)

        assert result.method == ForecastMethod.LINEAR_REGRESSION
        assert manager.get_active_operations() == {}

    def test_fetch_timeout(self):
        manager = ComputationTimeoutManager(PerformanceConfig(fetch_timeout=0.05))
        store = SlowStore(delay=0.5, points=make_linear(10))

        with pytest.raises(ComputationTimeoutError) as exc_info:
            generate_forecast(store, "signups", START, END, 3, timeout_manager=manager)

        assert exc_info.value.metadata['operation'] == "fetch"
