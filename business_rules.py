"""
Business Rules Configuration
Centralized definitions for inventory intelligence thresholds and ordering policy.
This file allows rules to be changed in one place without modifying engine code.
"""

from dataclasses import dataclass
from typing import Optional


# ===== INTELLIGENCE SETTINGS DEFAULTS =====

INTELLIGENCE_RULES = {
    "urgency_thresholds": {
        # Days of stock remaining at or below which each urgency tier applies
        # Anything above planned_days is "monitor" (no suggestion)
        "critical_days": 7,
        "warning_days": 14,
        "planned_days": 30,
    },

    "safety_stock": {
        # Used when a product/location has no active safety stock rule
        "default_days_of_cover": 14,
        "threshold_types": ["units", "days-of-cover"],
    },

    "in_transit": {
        # Count units on open transfers toward days of stock remaining
        "include_in_calculations": True,
    },
}


# ===== REPLENISHMENT RULES =====

REPLENISHMENT_RULES = {
    "order_sizing": {
        # Target stock = daily rate * target_days_of_cover + safety threshold
        "target_days_of_cover": 30,
        # Recommended quantities are rounded up to a multiple of this value
        "round_to_multiple": 10,
    },

    "eligible_destinations": {
        # Location types containing one of these keywords are sell-through nodes
        "location_type_keywords": ["amazon", "fba"],
    },

    "transfers": {
        # Transfer statuses whose line items count as in-transit stock
        "open_statuses": ["pending", "in_transit"],
        "default_transit_days": 7,
    },

    "purchase_orders": {
        "default_supplier_lead_time_days": 30,
    },

    "suggestion_types": ["transfer", "purchase-order"],
    "urgency_levels": ["critical", "warning", "planned", "monitor"],
}


# ===== FORECASTING RULES =====

FORECASTING_RULES = {
    "daily_rate": {
        "lookback_days": 30,
        "smoothing_alpha": 0.3,
    },

    "seasonality": {
        "min_years_data": 1,
        "multiplier_floor": 0.5,
        "multiplier_cap": 2.0,
    },

    "trend": {
        "lookback_months": 6,
        "min_data_points": 60,  # Roughly two calendar months of daily data
        "max_monthly_rate": 0.20,
    },

    "backtest": {
        "test_days": 30,
    },

    "accuracy_confidence": {
        # Confidence of a scored forecast (backtest or accuracy report)
        "high_min_samples": 30,
        "high_max_mape": 20,
        "low_max_samples": 14,  # Fewer samples than this = low
        "low_min_mape": 40,     # MAPE above this = low
    },

    "forecast_batch": {
        # Periodic sales forecast recalculation
        "sales_lookback_days": 90,
        "sma_window_days": 7,
        "high_min_points": 90,
        "high_max_mape": 20,
        "high_max_cv": 0.5,
        "medium_min_points": 30,
        "medium_max_mape": 40,
    },
}


# ===== SETTINGS VALUE =====

@dataclass(frozen=True)
class IntelligenceSettings:
    """Explicit configuration for one replenishment calculation pass."""
    critical_days: int = INTELLIGENCE_RULES["urgency_thresholds"]["critical_days"]
    warning_days: int = INTELLIGENCE_RULES["urgency_thresholds"]["warning_days"]
    planned_days: int = INTELLIGENCE_RULES["urgency_thresholds"]["planned_days"]
    default_safety_stock_days: int = INTELLIGENCE_RULES["safety_stock"]["default_days_of_cover"]
    include_in_transit_in_calculations: bool = INTELLIGENCE_RULES["in_transit"]["include_in_calculations"]

    @classmethod
    def from_record(cls, record: dict) -> "IntelligenceSettings":
        """
        Build settings from a stored settings row.

        Missing or zero thresholds fall back to the rule defaults. A missing
        in-transit flag falls back to True; an explicit False is kept.

        Args:
            record: Settings row with snake_case column names

        Returns:
            IntelligenceSettings
        """
        thresholds = INTELLIGENCE_RULES["urgency_thresholds"]
        include_in_transit = _clean_value(record.get("include_in_transit_in_calculations"))

        return cls(
            critical_days=_int_or_default(record.get("critical_threshold_days"), thresholds["critical_days"]),
            warning_days=_int_or_default(record.get("warning_threshold_days"), thresholds["warning_days"]),
            planned_days=_int_or_default(record.get("planned_threshold_days"), thresholds["planned_days"]),
            default_safety_stock_days=_int_or_default(
                record.get("default_safety_stock_days"),
                INTELLIGENCE_RULES["safety_stock"]["default_days_of_cover"]
            ),
            include_in_transit_in_calculations=(
                INTELLIGENCE_RULES["in_transit"]["include_in_calculations"]
                if include_in_transit is None else parse_bool(include_in_transit)
            ),
        )


# ===== HELPER FUNCTIONS =====

def _clean_value(value):
    # CSV-backed rows carry NaN for empty cells
    if value is None:
        return None
    if isinstance(value, float) and value != value:
        return None
    if isinstance(value, str) and value.strip() == '':
        return None
    return value


def _int_or_default(value, default: int) -> int:
    value = _clean_value(value)
    if value is None:
        return default
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return default
    return number if number != 0 else default


def parse_bool(value, default: bool = False) -> bool:
    """
    Interpret a stored flag that may arrive as bool, number or string.

    Args:
        value: Raw flag value
        default: Returned when the value is missing

    Returns:
        bool
    """
    value = _clean_value(value)
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "y", "t")
    return bool(value)


def get_target_days_of_cover() -> int:
    return REPLENISHMENT_RULES["order_sizing"]["target_days_of_cover"]


def get_order_rounding_multiple() -> int:
    return REPLENISHMENT_RULES["order_sizing"]["round_to_multiple"]


def is_fulfillment_location(location_type: Optional[str]) -> bool:
    """
    Check whether a location type identifies a sell-through/fulfillment node.

    Args:
        location_type: Location type string (e.g., "amazon_fba", "warehouse")

    Returns:
        True if the location should be evaluated as a replenishment destination
    """
    if not location_type:
        return False
    location_type = str(location_type).lower()
    keywords = REPLENISHMENT_RULES["eligible_destinations"]["location_type_keywords"]
    return any(keyword in location_type for keyword in keywords)
