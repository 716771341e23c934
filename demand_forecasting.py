"""
Demand Forecasting Module

Generates statistical demand forecasts from daily sales history.
Uses simple, interpretable methods: moving averages, exponential smoothing,
monthly seasonal multipliers and a capped month-over-month trend.

Key Features:
- Simple and recency-weighted moving average daily rates
- Monthly seasonality detection (12 multipliers, clamped)
- Month-over-month trend estimation (capped at +/-20%)
- Day-by-day forecast generation (base x seasonal x compounded trend)
- Walk-forward backtesting against a trailing hold-out window
- Periodic per product/location forecast batch
"""

import math
from datetime import date, datetime, timedelta
from typing import List, Optional

import numpy as np
import pandas as pd

from business_rules import FORECASTING_RULES
from data_loader import load_sales_history
from forecast_accuracy import calculate_forecast_accuracy, calculate_mape, empty_accuracy_result
from inventory_models import ForecastAccuracyResult, ForecastResult

DEFAULT_SEASONAL_MULTIPLIERS = [1.0] * 12


# ===== HISTORY NORMALIZATION =====

def _to_history_frame(sales_history) -> pd.DataFrame:
    """
    Normalize sales history to a DataFrame with 'date' and 'units_sold'.

    Accepts a DataFrame with those columns, or an iterable of SalesDataPoint
    objects (or dicts with the same keys). Order is not assumed.
    """
    if sales_history is None:
        return pd.DataFrame(columns=['date', 'units_sold'])

    if isinstance(sales_history, pd.DataFrame):
        df = sales_history[['date', 'units_sold']].copy()
    else:
        rows = []
        for point in sales_history:
            if isinstance(point, dict):
                rows.append({'date': point['date'], 'units_sold': point['units_sold']})
            else:
                rows.append({'date': point.date, 'units_sold': point.units_sold})
        df = pd.DataFrame(rows, columns=['date', 'units_sold'])

    df['date'] = pd.to_datetime(df['date'])
    df['units_sold'] = pd.to_numeric(df['units_sold'], errors='coerce').fillna(0)
    return df


def _round_half_up(value: float, decimals: int = 2) -> float:
    factor = 10 ** decimals
    return math.floor(value * factor + 0.5) / factor


# ===== DEMAND RATE ESTIMATOR =====

def calculate_daily_rate(sales_history, days: int = FORECASTING_RULES["daily_rate"]["lookback_days"]) -> float:
    """
    Calculate daily rate using a simple moving average of the most recent days.

    Args:
        sales_history: Sales history (list of SalesDataPoint or DataFrame)
        days: Number of most recent data points to average

    Returns:
        float: Average units sold per data point, 0 if no history
    """
    df = _to_history_frame(sales_history)
    if df.empty or days <= 0:
        return 0.0

    recent = df.sort_values('date', ascending=False, kind='mergesort').head(days)
    return float(recent['units_sold'].mean())


def calculate_weighted_daily_rate(sales_history,
                                  days: int = FORECASTING_RULES["daily_rate"]["lookback_days"]) -> float:
    """
    Calculate a weighted moving average where recent days weigh more.

    Linear weights: the most recent point gets weight n, the oldest in the
    window gets weight 1.

    Args:
        sales_history: Sales history (list of SalesDataPoint or DataFrame)
        days: Number of most recent data points in the window

    Returns:
        float: Weighted average units per data point, 0 if no history
    """
    df = _to_history_frame(sales_history)
    if df.empty or days <= 0:
        return 0.0

    recent = df.sort_values('date', ascending=False, kind='mergesort').head(days)
    values = recent['units_sold'].to_numpy(dtype=np.float64)
    weights = np.arange(len(values), 0, -1, dtype=np.float64)

    return float(np.dot(values, weights) / weights.sum())


def calculate_exponential_smoothing(values, alpha=FORECASTING_RULES["daily_rate"]["smoothing_alpha"]):
    """
    Calculate simple exponential smoothing forecast

    Args:
        values: Array of historical values (oldest first)
        alpha: Smoothing factor (0-1), higher = more weight on recent data

    Returns:
        float: Smoothed forecast value
    """
    if len(values) == 0:
        return 0.0

    smoothed = float(values[0])
    for value in values[1:]:
        smoothed = alpha * float(value) + (1 - alpha) * smoothed

    return smoothed


# ===== SEASONALITY DETECTOR =====

def detect_seasonality(sales_history,
                       min_years_data: int = FORECASTING_RULES["seasonality"]["min_years_data"]) -> List[float]:
    """
    Detect monthly seasonality from historical data.

    Every data point is bucketed by calendar month regardless of year. Each
    month's multiplier is its average units/day divided by the mean of the 12
    monthly averages, clamped to [0.5, 2.0]. A month with no data averages 0.

    Args:
        sales_history: Sales history (list of SalesDataPoint or DataFrame)
        min_years_data: Years of daily points required (365 points per year)

    Returns:
        list: 12 multipliers, index 0 = January. All 1.0 when data is insufficient.
    """
    rules = FORECASTING_RULES["seasonality"]
    df = _to_history_frame(sales_history)

    if len(df) < min_years_data * 365:
        return list(DEFAULT_SEASONAL_MULTIPLIERS)

    monthly_avg = df.groupby(df['date'].dt.month - 1)['units_sold'].mean()
    monthly_avg = monthly_avg.reindex(range(12), fill_value=0.0)

    overall_avg = monthly_avg.mean()
    if overall_avg == 0:
        return list(DEFAULT_SEASONAL_MULTIPLIERS)

    multipliers = (monthly_avg / overall_avg).clip(lower=rules["multiplier_floor"],
                                                   upper=rules["multiplier_cap"])
    return [float(m) for m in multipliers]


def get_seasonal_multiplier(multipliers: Optional[List[float]], for_date) -> float:
    """
    Get the seasonal multiplier for a date.

    Args:
        multipliers: 12 monthly multipliers (index 0 = January)
        for_date: Date to look up

    Returns:
        float: Multiplier, 1.0 if the vector is missing or malformed
    """
    if not multipliers or len(multipliers) != 12:
        return 1.0
    return _multiplier_for_month(multipliers, pd.Timestamp(for_date).month - 1)


def _multiplier_for_month(multipliers, month_index: int) -> float:
    if not multipliers or month_index >= len(multipliers):
        return 1.0
    value = multipliers[month_index]
    if value is None or pd.isna(value) or value == 0:
        return 1.0
    return float(value)


# ===== TREND ESTIMATOR =====

def calculate_trend_rate(sales_history,
                         lookback_months: int = FORECASTING_RULES["trend"]["lookback_months"]) -> float:
    """
    Calculate trend rate as average month-over-month growth.

    Args:
        sales_history: Sales history (list of SalesDataPoint or DataFrame)
        lookback_months: Number of most recent calendar months to use

    Returns:
        float: Monthly growth rate capped to [-0.20, 0.20], 0 if not enough data
    """
    rules = FORECASTING_RULES["trend"]
    df = _to_history_frame(sales_history)

    if len(df) < rules["min_data_points"]:
        return 0.0

    df = df.sort_values('date', kind='mergesort')
    monthly_totals = df.groupby(df['date'].dt.to_period('M'))['units_sold'].sum().sort_index()
    if len(monthly_totals) < 2:
        return 0.0

    recent = monthly_totals.tail(lookback_months) if lookback_months > 0 else monthly_totals.iloc[0:0]
    if len(recent) < 2:
        return 0.0

    values = recent.to_numpy(dtype=np.float64)
    previous = values[:-1]
    current = values[1:]
    valid = previous > 0
    if not valid.any():
        return 0.0

    growth_rates = (current[valid] - previous[valid]) / previous[valid]
    avg_growth = float(growth_rates.mean())

    cap = rules["max_monthly_rate"]
    return max(-cap, min(cap, avg_growth))


# ===== FORECAST GENERATOR =====

def generate_forecast(base_rate: float, seasonal_multipliers: Optional[List[float]], trend_rate: float,
                      start_date, days: int) -> pd.DataFrame:
    """
    Generate a day-by-day forecast.

    forecast = base_rate * seasonal_multiplier[month] * (1 + trend_rate) ** (i // 30)

    Args:
        base_rate: Base daily rate (units/day)
        seasonal_multipliers: 12 monthly multipliers (missing/zero months use 1)
        trend_rate: Monthly growth rate
        start_date: First forecast day
        days: Number of days to forecast

    Returns:
        pd.DataFrame: Columns 'date' and 'forecast' (2 decimals), one row per day
    """
    if days <= 0:
        return pd.DataFrame({'date': pd.to_datetime([]), 'forecast': pd.Series([], dtype=float)})

    start = pd.Timestamp(start_date).normalize()
    dates = pd.date_range(start=start, periods=days, freq='D')

    months_from_start = np.arange(days) // 30
    seasonal = np.array([_multiplier_for_month(seasonal_multipliers, d.month - 1) for d in dates])
    trend = np.power(1.0 + trend_rate, months_from_start)

    values = base_rate * seasonal * trend
    forecasts = [_round_half_up(float(v)) for v in values]

    return pd.DataFrame({'date': dates, 'forecast': forecasts})


# ===== BACKTESTER =====

def backtest_forecast(sales_history, base_rate: float, seasonal_multipliers: Optional[List[float]],
                      trend_rate: float,
                      test_days: int = FORECASTING_RULES["backtest"]["test_days"]) -> ForecastAccuracyResult:
    """
    Backtest a forecast model against historical data (walk-forward validation).

    Holds out the most recent test_days points, forecasts them from the first
    held-out date and scores the forecast against the actuals.

    Args:
        sales_history: Sales history (list of SalesDataPoint or DataFrame)
        base_rate: Base daily rate of the model under test
        seasonal_multipliers: 12 monthly multipliers of the model
        trend_rate: Monthly growth rate of the model
        test_days: Size of the hold-out window

    Returns:
        ForecastAccuracyResult (low confidence, sample_size 0 if history is too short)
    """
    df = _to_history_frame(sales_history)
    if test_days <= 0 or len(df) <= test_days:
        return empty_accuracy_result()

    df = df.sort_values('date', kind='mergesort')
    test_set = df.tail(test_days)

    forecast_df = generate_forecast(
        base_rate,
        seasonal_multipliers,
        trend_rate,
        test_set['date'].iloc[0],
        test_days
    )

    actuals = test_set['units_sold'].to_numpy(dtype=np.float64)
    forecasts = forecast_df['forecast'].to_numpy(dtype=np.float64)

    return calculate_forecast_accuracy(actuals, forecasts)


# ===== PERIODIC FORECAST BATCH =====

def coefficient_of_variation(values) -> float:
    """Population std / mean, 0 for empty or zero-mean series."""
    values = np.asarray(values, dtype=np.float64)
    if values.size == 0:
        return 0.0
    mean = values.mean()
    if mean == 0:
        return 0.0
    return float(values.std() / mean)


def calculate_observed_seasonal_multipliers(sales_history) -> List[float]:
    """
    Monthly multipliers from whatever months the history covers.

    Each observed month's average units/day is divided by the overall daily
    average. Months with no data stay 1.0. No minimum history and no clamp.

    Args:
        sales_history: Sales history (list of SalesDataPoint or DataFrame)

    Returns:
        list: 12 multipliers, index 0 = January
    """
    df = _to_history_frame(sales_history)
    if df.empty:
        return list(DEFAULT_SEASONAL_MULTIPLIERS)

    overall_avg = df['units_sold'].mean()
    if overall_avg <= 0:
        return list(DEFAULT_SEASONAL_MULTIPLIERS)

    monthly_avg = df.groupby(df['date'].dt.month - 1)['units_sold'].mean()
    multipliers = (monthly_avg / overall_avg).reindex(range(12), fill_value=1.0)
    return [float(m) for m in multipliers]


def determine_forecast_confidence(data_points: int, mape: float, cv: float) -> str:
    """
    Determine confidence of a batch forecast from data quality.

    Args:
        data_points: Number of daily sales points used
        mape: In-sample MAPE of the moving-average predictor
        cv: Coefficient of variation of the recent window

    Returns:
        str: 'high', 'medium' or 'low'
    """
    rules = FORECASTING_RULES["forecast_batch"]

    if data_points >= rules["high_min_points"] and mape < rules["high_max_mape"] and cv < rules["high_max_cv"]:
        return 'high'
    if data_points >= rules["medium_min_points"] and mape < rules["medium_max_mape"]:
        return 'medium'
    return 'low'


def calculate_forecast(product_id: str, location_id: str, sales_history) -> Optional[ForecastResult]:
    """
    Calculate the forecast for one product/location pair.

    Args:
        product_id: Product identifier
        location_id: Location identifier
        sales_history: Sales history for this pair only

    Returns:
        ForecastResult, or None if there is no history
    """
    rate_rules = FORECASTING_RULES["daily_rate"]
    window = FORECASTING_RULES["forecast_batch"]["sma_window_days"]

    df = _to_history_frame(sales_history)
    if df.empty:
        return None

    daily_values = df.sort_values('date', kind='mergesort')['units_sold'].to_numpy(dtype=np.float64)

    # Recent window, smoothed with more weight on the latest days
    recent_values = daily_values[-min(rate_rules["lookback_days"], len(daily_values)):]
    daily_rate = calculate_exponential_smoothing(recent_values, rate_rules["smoothing_alpha"])

    # The batch window is shorter than a year, so use the observed-month rule
    seasonal_multipliers = calculate_observed_seasonal_multipliers(df)
    trend_rate = calculate_trend_rate(df)

    # One-step-ahead accuracy of a trailing simple moving average
    mape = 0.0
    if len(daily_values) > window:
        predictions = pd.Series(daily_values).rolling(window).mean().shift(1).iloc[window:].to_numpy()
        mape = calculate_mape(daily_values[window:], predictions)

    cv = coefficient_of_variation(recent_values)

    return ForecastResult(
        product_id=product_id,
        location_id=location_id,
        daily_rate=_round_half_up(daily_rate, 2),
        confidence=determine_forecast_confidence(len(daily_values), mape, cv),
        accuracy_mape=_round_half_up(mape, 2),
        seasonal_multipliers=[_round_half_up(m, 2) for m in seasonal_multipliers],
        trend_rate=_round_half_up(trend_rate, 3),
        data_points=len(daily_values),
    )


def calculate_sales_forecasts(data_source, lookback_days: int = None, today: Optional[date] = None) -> dict:
    """
    Recalculate daily-rate forecasts for every product/location with sales.

    Args:
        data_source: IntelligenceDataSource supplying sales history and storing forecasts
        lookback_days: Days of history to use (default 90)
        today: Reference date (default: today)

    Returns:
        dict: {
            'forecasts_calculated': int,
            'forecasts_upserted': int,
            'errors': list of error messages,
            'logs': list of processing messages
        }
    """
    logs = []
    errors = []
    forecasts_upserted = 0
    forecasts = []

    if lookback_days is None:
        lookback_days = FORECASTING_RULES["forecast_batch"]["sales_lookback_days"]
    today = today or date.today()
    since = today - timedelta(days=lookback_days)

    logs.append("--- Sales Forecast Calculation ---")
    logs.append(f"INFO: Using sales history since {since.isoformat()} ({lookback_days} days)")

    try:
        sales_df = load_sales_history(data_source.fetch_sales_history(since), since=since)
    except Exception as e:
        errors.append(f"Failed to fetch sales history: {str(e)}")
        logs.append(f"ERROR: {errors[-1]}")
        return {
            'forecasts_calculated': 0,
            'forecasts_upserted': 0,
            'errors': errors,
            'logs': logs
        }

    if sales_df.empty:
        logs.append("WARNING: No sales history data found")
        return {
            'forecasts_calculated': 0,
            'forecasts_upserted': 0,
            'errors': errors,
            'logs': logs
        }

    try:
        for (product_id, location_id), group in sales_df.groupby(['product_id', 'location_id'], sort=True):
            forecast = calculate_forecast(product_id, location_id, group)
            if forecast is not None:
                forecasts.append(forecast)
    except Exception as e:
        errors.append(f"Calculation error: {str(e)}")

    logs.append(f"INFO: Generated {len(forecasts)} forecasts")

    calculated_at = datetime.now()
    for forecast in forecasts:
        record = {
            'product_id': forecast.product_id,
            'location_id': forecast.location_id,
            'daily_rate': forecast.daily_rate,
            'confidence': forecast.confidence,
            'accuracy_mape': forecast.accuracy_mape,
            'seasonal_multipliers': list(forecast.seasonal_multipliers),
            'trend_rate': forecast.trend_rate,
            'last_calculated_at': calculated_at,
        }
        try:
            data_source.upsert_forecast(record)
            forecasts_upserted += 1
        except Exception as e:
            errors.append(f"Failed to upsert forecast for {forecast.product_id}: {str(e)}")

    logs.append(f"INFO: Upserted {forecasts_upserted} of {len(forecasts)} forecasts")
    if errors:
        logs.append(f"WARNING: {len(errors)} errors during forecast calculation")

    return {
        'forecasts_calculated': len(forecasts),
        'forecasts_upserted': forecasts_upserted,
        'errors': errors,
        'logs': logs
    }
