"""
Analysis domains of the Metric Insights engine.

Each domain is a module of plain functions plus sklearn-compatible classes
operating on lists of TimeSeriesPoint.

Available domains:
- preprocessing: validation, cleaning and timestamp regularization
- decomposition: trend/seasonal/residual split, anomalies, correlation, entropy
- forecasting: four forecasting models with automatic selection
- downsampling: bounded-size reduction for chart rendering
"""

from .preprocessing import (
    # Core transformer
    TimeSeriesPreprocessor,

    # High-level functions
    preprocess,
    analyze_intervals,
    normalize_timestamps,

    # Options
    PreprocessingOptions
)

from .decomposition import (
    decompose,
    extract_trend,
    extract_seasonality,
    detect_anomalies,
    calculate_correlation,
    calculate_sample_entropy
)

from .forecasting import (
    # Models
    BaseForecaster,
    NaiveForecaster,
    SeasonalNaiveForecaster,
    MovingAverageForecaster,
    LinearRegressionForecaster,

    # High-level functions
    generate_forecast,
    determine_best_method,
    calculate_forecast_errors,
    validate_forecast_accuracy,
    get_z_value,
    get_t_value,

    # Options
    ForecastOptions
)

from .downsampling import (
    downsample,
    downsample_lttb,
    downsample_min_max,
    downsample_average,
    downsample_first_last_significant,
    process_in_chunks,
    process_in_parallel_chunks
)

__all__ = [
    # Preprocessing
    'TimeSeriesPreprocessor', 'preprocess', 'analyze_intervals', 'normalize_timestamps',
    'PreprocessingOptions',

    # Decomposition
    'decompose', 'extract_trend', 'extract_seasonality', 'detect_anomalies',
    'calculate_correlation', 'calculate_sample_entropy',

    # Forecasting
    'BaseForecaster', 'NaiveForecaster', 'SeasonalNaiveForecaster', 'MovingAverageForecaster',
    'LinearRegressionForecaster', 'generate_forecast', 'determine_best_method',
    'calculate_forecast_errors', 'validate_forecast_accuracy', 'get_z_value', 'get_t_value',
    'ForecastOptions',

    # Downsampling
    'downsample', 'downsample_lttb', 'downsample_min_max', 'downsample_average',
    'downsample_first_last_significant', 'process_in_chunks', 'process_in_parallel_chunks',
]
