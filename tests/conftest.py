"""
Pytest configuration and shared fixtures for all tests
Centralized mock data and utilities
"""

import pytest
import pandas as pd
import os
import sys
from datetime import date, timedelta

# Add project root to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from data_loader import DataFrameDataSource

TODAY = date(2024, 6, 1)

FBA_LOCATION = {'location_id': 'LOC-FBA', 'location_name': 'Amazon FBA East', 'location_type': 'amazon_fba'}
WAREHOUSE = {'location_id': 'LOC-WH', 'location_name': 'Main Warehouse', 'location_type': 'warehouse'}
THREE_PL = {'location_id': 'LOC-3PL', 'location_name': 'West 3PL', 'location_type': '3pl'}


# ===== SALES HISTORY BUILDERS =====

def make_daily_sales(start, days, units, product_id=None, location_id=None):
    """
    Build a daily sales history DataFrame.

    Args:
        start: First date
        days: Number of consecutive days
        units: Constant units per day, or a callable(date) -> units
        product_id: Optional product column value
        location_id: Optional location column value
    """
    dates = [start + timedelta(days=i) for i in range(days)]
    values = [units(d) if callable(units) else units for d in dates]
    df = pd.DataFrame({'date': pd.to_datetime(dates), 'units_sold': values})
    if product_id is not None:
        df.insert(0, 'location_id', location_id)
        df.insert(0, 'product_id', product_id)
    return df


def make_monthly_sales(monthly_totals, start=date(2024, 1, 1)):
    """Build daily sales covering whole calendar months that sum to the given monthly totals."""
    frames = []
    for i, total in enumerate(monthly_totals):
        month_start = pd.Timestamp(start) + pd.DateOffset(months=i)
        days = month_start.days_in_month
        frames.append(make_daily_sales(month_start.date(), days, total / days))
    return pd.concat(frames, ignore_index=True)


# ===== DATA SOURCE BUILDERS =====

def batch(product_id, location, quantity, reserved=0, sku='SKU-1', product_name='Widget'):
    return {
        'product_id': product_id,
        'sku': sku,
        'product_name': product_name,
        'location_id': location['location_id'],
        'location_name': location['location_name'],
        'location_type': location['location_type'],
        'quantity': quantity,
        'reserved_quantity': reserved,
    }


def default_settings(**overrides):
    settings = {
        'id': 'settings-1',
        'critical_threshold_days': 7,
        'warning_threshold_days': 14,
        'planned_threshold_days': 30,
        'default_safety_stock_days': 14,
        'include_in_transit_in_calculations': True,
        'last_calculated_at': None,
    }
    settings.update(overrides)
    return settings


def make_data_source(batches, forecasts=None, rules=None, routes=None, suppliers=None,
                     suggestions=None, transfer_lines=None, sales_history=None, settings=None):
    """Build a DataFrameDataSource from lists of row dicts."""
    return DataFrameDataSource(
        tables={
            'inventory_batches': batches,
            'transfer_lines': transfer_lines or [],
            'sales_forecasts': forecasts or [],
            'safety_stock_rules': rules or [],
            'shipping_routes': routes or [],
            'product_suppliers': suppliers or [],
            'replenishment_suggestions': suggestions or [],
            'sales_history': sales_history if sales_history is not None else [],
        },
        settings=settings if settings is not None else default_settings(),
    )


@pytest.fixture
def critical_po_source():
    """
    FBA location with 50 available units selling 10/day and a known supplier.
    No other location holds stock, so only a purchase order is possible.
    """
    return make_data_source(
        batches=[batch('P1', FBA_LOCATION, 50)],
        forecasts=[{'product_id': 'P1', 'location_id': 'LOC-FBA', 'daily_rate': 10,
                    'confidence': 'high', 'is_enabled': True}],
        suppliers=[{'product_id': 'P1', 'supplier_id': 'SUP-1', 'supplier_name': 'Acme Supply',
                    'lead_time_days': 45}],
    )


@pytest.fixture
def transfer_source():
    """
    FBA location running low with a warehouse holding plenty of stock on a default route.
    """
    return make_data_source(
        batches=[
            batch('P1', FBA_LOCATION, 50),
            batch('P1', WAREHOUSE, 1000, reserved=100),
        ],
        forecasts=[{'product_id': 'P1', 'location_id': 'LOC-FBA', 'daily_rate': 10,
                    'confidence': 'high', 'is_enabled': True}],
        routes=[{'id': 'R-WH-FBA', 'from_location_id': 'LOC-WH', 'to_location_id': 'LOC-FBA',
                 'method': 'ground', 'transit_days_typical': 5, 'is_default': True, 'is_active': True}],
        suppliers=[{'product_id': 'P1', 'supplier_id': 'SUP-1', 'supplier_name': 'Acme Supply',
                    'lead_time_days': 45}],
    )


# ===== HELPER FUNCTIONS =====

def assert_log_contains(logs, expected_message):
    """
    Helper to assert that a log message contains expected text

    Args:
        logs: List of log messages
        expected_message: Text expected to be in one of the logs
    """
    log_text = " ".join(logs)
    assert expected_message in log_text, f"Expected '{expected_message}' not found in logs: {log_text}"


def assert_columns_exist(df, columns):
    """
    Helper to assert that DataFrame contains required columns

    Args:
        df: Pandas DataFrame
        columns: List of column names that should exist
    """
    missing = set(columns) - set(df.columns)
    assert not missing, f"Missing required columns: {missing}"
