"""
Stockout Prediction Module

Stock coverage and urgency calculations for a single product/location:
- Days of stock remaining from available (and optionally in-transit) stock
- Urgency tier classification (critical / warning / planned / monitor)
- Safety stock threshold from a rule or the default days-of-cover policy
- Recommended replenishment quantity (rounded up to a multiple of 10)
- Projected stockout and arrival dates
"""

import math
from datetime import date, timedelta
from typing import Optional

from business_rules import IntelligenceSettings, get_order_rounding_multiple, get_target_days_of_cover
from inventory_models import SafetyStockRule


def calculate_days_remaining(
    available_stock: float,
    daily_sales_rate: float,
    include_in_transit: bool,
    in_transit_qty: float = 0
) -> Optional[int]:
    """
    Calculate whole days of stock remaining.

    Args:
        available_stock: On-hand minus reserved units
        daily_sales_rate: Forecast units sold per day
        include_in_transit: Whether in-transit units count toward coverage
        in_transit_qty: Units on open transfers to this location

    Returns:
        int days remaining (floored), or None if there is no sales rate
    """
    if daily_sales_rate <= 0:
        return None
    effective_stock = available_stock + in_transit_qty if include_in_transit else available_stock
    return int(math.floor(effective_stock / daily_sales_rate))


def determine_urgency(days_remaining: Optional[int], settings: IntelligenceSettings) -> str:
    """
    Classify replenishment urgency from days of stock remaining.

    Args:
        days_remaining: Days of stock remaining (None = unknown rate)
        settings: Thresholds for each tier

    Returns:
        str: 'critical', 'warning', 'planned' or 'monitor'
    """
    if days_remaining is None:
        return 'monitor'
    if days_remaining <= settings.critical_days:
        return 'critical'
    if days_remaining <= settings.warning_days:
        return 'warning'
    if days_remaining <= settings.planned_days:
        return 'planned'
    return 'monitor'


def calculate_safety_stock_threshold(
    rule: Optional[SafetyStockRule],
    daily_sales_rate: float,
    default_safety_days: int
) -> float:
    """
    Calculate the safety stock threshold in units.

    Args:
        rule: Safety stock rule for this product/location, if any
        daily_sales_rate: Forecast units sold per day
        default_safety_days: Days of cover used without an active rule

    Returns:
        Threshold in units
    """
    if rule is None or not rule.is_active:
        return math.ceil(daily_sales_rate * default_safety_days)
    if rule.threshold_type == 'units':
        return rule.threshold_value
    # days-of-cover
    return math.ceil(daily_sales_rate * rule.threshold_value)


def round_up_to_ten(quantity: float) -> int:
    """Round a quantity up to the order multiple (10), never below 0."""
    multiple = get_order_rounding_multiple()
    if quantity <= 0:
        return 0
    return int(math.ceil(quantity / multiple) * multiple)


def calculate_recommended_qty(
    current_stock: float,
    safety_threshold: float,
    daily_sales_rate: float,
    target_days: int = None
) -> int:
    """
    Calculate recommended replenishment quantity.

    Formula:
    Target Stock = ceil(Daily Rate * Target Days) + Safety Threshold
    Recommended = roundUpToTen(max(0, Target Stock - Current Stock))

    Args:
        current_stock: Units currently available at the destination
        safety_threshold: Safety stock threshold in units
        daily_sales_rate: Forecast units sold per day
        target_days: Days of cover to restock to (default 30)

    Returns:
        Recommended quantity in units
    """
    if target_days is None:
        target_days = get_target_days_of_cover()
    target_stock = math.ceil(daily_sales_rate * target_days) + safety_threshold
    needed = max(0, target_stock - current_stock)
    return round_up_to_ten(needed)


def calculate_stockout_date(days_remaining: Optional[int], today: Optional[date] = None) -> Optional[date]:
    """
    Calculate the projected stockout date.

    Args:
        days_remaining: Days of stock remaining
        today: Reference date (default: today)

    Returns:
        date, or None if no stockout is projected
    """
    if days_remaining is None:
        return None
    today = today or date.today()
    return today + timedelta(days=days_remaining)


def calculate_estimated_arrival(transit_days: int, today: Optional[date] = None) -> date:
    """Arrival date for a shipment leaving today."""
    today = today or date.today()
    return today + timedelta(days=int(transit_days))
