"""
Forecast Accuracy Module

Scores forecasts against actual sales.

Metrics:
- MAPE: Mean Absolute Percentage Error (zero actuals excluded)
- MAE: Mean Absolute Error
- RMSE: Root Mean Square Error
- Bias: mean of (forecast - actual), positive = over-forecasting

All metrics return 0 for empty or mismatched inputs so callers can score
partial data without guarding every call.
"""

import numpy as np

from business_rules import FORECASTING_RULES
from inventory_models import ForecastAccuracyResult


def _as_pair(actuals, forecasts):
    """Return float arrays, or None when the inputs cannot be compared."""
    if actuals is None or forecasts is None:
        return None
    actual_arr = np.asarray(actuals, dtype=np.float64)
    forecast_arr = np.asarray(forecasts, dtype=np.float64)
    if actual_arr.size == 0 or actual_arr.shape != forecast_arr.shape:
        return None
    return actual_arr, forecast_arr


def calculate_mape(actuals, forecasts) -> float:
    """
    Calculate Mean Absolute Percentage Error

    MAPE = mean(|actual - forecast| / |actual|) * 100 over pairs with a
    non-zero actual. Zero actuals are dropped from the average rather than
    counted as 0% or 100% error.

    Args:
        actuals: Sequence of actual values
        forecasts: Sequence of forecast values (same length)

    Returns:
        float: MAPE percentage (e.g. 15.5 = 15.5% error), 0 if nothing to score
    """
    pair = _as_pair(actuals, forecasts)
    if pair is None:
        return 0.0
    actual_arr, forecast_arr = pair

    valid = actual_arr != 0
    if not valid.any():
        return 0.0

    ape = np.abs(actual_arr[valid] - forecast_arr[valid]) / np.abs(actual_arr[valid])
    return float(ape.mean() * 100)


def calculate_mae(actuals, forecasts) -> float:
    """
    Calculate Mean Absolute Error

    Args:
        actuals: Sequence of actual values
        forecasts: Sequence of forecast values (same length)

    Returns:
        float: MAE in units
    """
    pair = _as_pair(actuals, forecasts)
    if pair is None:
        return 0.0
    actual_arr, forecast_arr = pair
    return float(np.abs(actual_arr - forecast_arr).mean())


def calculate_rmse(actuals, forecasts) -> float:
    """
    Calculate Root Mean Square Error

    Args:
        actuals: Sequence of actual values
        forecasts: Sequence of forecast values (same length)

    Returns:
        float: RMSE in units
    """
    pair = _as_pair(actuals, forecasts)
    if pair is None:
        return 0.0
    actual_arr, forecast_arr = pair
    return float(np.sqrt(((actual_arr - forecast_arr) ** 2).mean()))


def calculate_bias(actuals, forecasts) -> float:
    """
    Calculate forecast bias (mean error)

    Args:
        actuals: Sequence of actual values
        forecasts: Sequence of forecast values (same length)

    Returns:
        float: Positive = over-forecasting, negative = under-forecasting
    """
    pair = _as_pair(actuals, forecasts)
    if pair is None:
        return 0.0
    actual_arr, forecast_arr = pair
    return float((forecast_arr - actual_arr).mean())


def classify_accuracy_confidence(sample_size: int, mape: float) -> str:
    """
    Classify confidence in a scored forecast.

    Args:
        sample_size: Number of scored periods
        mape: MAPE percentage

    Returns:
        str: 'high', 'medium' or 'low'
    """
    rules = FORECASTING_RULES["accuracy_confidence"]

    if sample_size >= rules["high_min_samples"] and mape <= rules["high_max_mape"]:
        return 'high'
    if sample_size < rules["low_max_samples"] or mape > rules["low_min_mape"]:
        return 'low'
    return 'medium'


def calculate_forecast_accuracy(actuals, forecasts) -> ForecastAccuracyResult:
    """
    Calculate all forecast accuracy metrics.

    Args:
        actuals: Sequence of actual values
        forecasts: Sequence of forecast values (same length)

    Returns:
        ForecastAccuracyResult with accuracy = clamp(100 - MAPE, 0, 100)
    """
    mape = calculate_mape(actuals, forecasts)
    mae = calculate_mae(actuals, forecasts)
    rmse = calculate_rmse(actuals, forecasts)
    bias = calculate_bias(actuals, forecasts)
    accuracy = max(0.0, min(100.0, 100.0 - mape))
    sample_size = len(actuals) if actuals is not None else 0

    return ForecastAccuracyResult(
        mape=mape,
        mae=mae,
        rmse=rmse,
        bias=bias,
        accuracy=accuracy,
        confidence=classify_accuracy_confidence(sample_size, mape),
        sample_size=sample_size,
    )


def empty_accuracy_result() -> ForecastAccuracyResult:
    """Result used when there is nothing to score."""
    return ForecastAccuracyResult(
        mape=0.0,
        mae=0.0,
        rmse=0.0,
        bias=0.0,
        accuracy=0.0,
        confidence='low',
        sample_size=0,
    )
