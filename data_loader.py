"""
Data Access Boundary

The engine reads and writes plain records through an IntelligenceDataSource.
Fetch methods return flat DataFrames (one row per stored record); the load_*
functions below map them into typed entities before any calculation runs, so
the forecasting and replenishment modules never see storage column quirks.

Implementations:
- DataFrameDataSource: in-memory tables, enforces the pending-suggestion
  uniqueness constraint on insert
- CsvDataSource: one CSV file per table in a data directory
"""

import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Dict, List, Optional, Set, Tuple

import pandas as pd

from business_rules import IntelligenceSettings, REPLENISHMENT_RULES, parse_bool
from file_loader import read_table, write_table
from inventory_models import Forecast, SafetyStockRule, ShippingRoute, StockLevel, SupplierInfo

# ===== TABLE LAYOUT =====

TABLE_COLUMNS = {
    'inventory_batches': ['id', 'product_id', 'sku', 'product_name', 'location_id',
                          'location_name', 'location_type', 'quantity', 'reserved_quantity'],
    'transfer_lines': ['transfer_id', 'status', 'destination_location_id', 'product_id', 'quantity'],
    'sales_forecasts': ['id', 'product_id', 'location_id', 'daily_rate', 'confidence', 'is_enabled',
                        'accuracy_mape', 'seasonal_multipliers', 'trend_rate', 'last_calculated_at'],
    'safety_stock_rules': ['product_id', 'location_id', 'threshold_type', 'threshold_value', 'is_active'],
    'shipping_routes': ['id', 'from_location_id', 'to_location_id', 'method',
                        'transit_days_typical', 'is_default', 'is_active'],
    'product_suppliers': ['product_id', 'supplier_id', 'supplier_name', 'lead_time_days'],
    'replenishment_suggestions': ['id', 'type', 'urgency', 'status', 'product_id', 'sku', 'product_name',
                                  'destination_location_id', 'destination_location_name',
                                  'current_stock', 'in_transit_quantity', 'reserved_quantity',
                                  'available_stock', 'daily_sales_rate', 'weekly_sales_rate',
                                  'days_of_stock_remaining', 'stockout_date', 'safety_stock_threshold',
                                  'recommended_qty', 'estimated_arrival', 'source_location_id',
                                  'source_location_name', 'source_available_qty', 'supplier_id',
                                  'supplier_name', 'supplier_lead_time_days', 'route_id', 'route_name',
                                  'route_method', 'route_transit_days', 'reasoning', 'generated_at'],
    'sales_history': ['product_id', 'location_id', 'date', 'units_sold'],
}

SETTINGS_COLUMNS = ['id', 'critical_threshold_days', 'warning_threshold_days', 'planned_threshold_days',
                    'default_safety_stock_days', 'include_in_transit_in_calculations', 'last_calculated_at']


class DataSourceError(Exception):
    """A record could not be read from or written to the data source."""


class DuplicateSuggestionError(DataSourceError):
    """A pending suggestion already exists for (product, destination, type)."""


# ===== HELPER FUNCTIONS =====

def clean_string_column(series: pd.Series) -> pd.Series:
    """
    Clean string columns by stripping whitespace and normalizing spaces.
    Missing values become empty strings.

    Args:
        series: Pandas Series with string data

    Returns:
        Cleaned Series with normalized whitespace
    """
    return series.fillna('').astype(str).str.strip().str.replace(r'\s+', ' ', regex=True)


def safe_numeric_column(series: pd.Series, remove_commas: bool = False) -> pd.Series:
    """
    Convert column to numeric with optional comma removal.

    Args:
        series: Pandas Series to convert
        remove_commas: If True, remove commas before conversion

    Returns:
        Numeric Series with NaN filled as 0
    """
    if remove_commas:
        series = series.astype(str).str.replace(',', '', regex=False)
    return pd.to_numeric(series, errors='coerce').fillna(0)


def check_columns(df, required_cols, table_name, logs=None):
    """Helper function to check for missing columns."""
    missing_cols = [col for col in required_cols if col not in df.columns]
    if missing_cols:
        if logs is not None:
            logs.append(f"ERROR: '{table_name}' is missing required columns: {', '.join(missing_cols)}")
        return False
    return True


def _ensure_columns(df: pd.DataFrame, defaults: dict) -> pd.DataFrame:
    df = df.copy()
    for col, default in defaults.items():
        if col not in df.columns:
            df[col] = default
    return df


def _bool_column(series: pd.Series, default: bool) -> pd.Series:
    return series.apply(lambda value: parse_bool(value, default=default))


def _is_blank(value) -> bool:
    if value is None:
        return True
    try:
        if pd.isna(value):
            return True
    except (TypeError, ValueError):
        return False
    return isinstance(value, str) and value.strip() == ''


# ===== RECORD MAPPING =====

def load_settings(record: Optional[dict]) -> IntelligenceSettings:
    """
    Map the stored settings row to IntelligenceSettings.

    Args:
        record: Settings row, or None if no settings are stored

    Returns:
        IntelligenceSettings

    Raises:
        DataSourceError: If no settings record exists
    """
    if not record:
        raise DataSourceError("Failed to fetch intelligence settings")
    return IntelligenceSettings.from_record(record)


def aggregate_stock_levels(batches_df: pd.DataFrame,
                           transfer_lines_df: Optional[pd.DataFrame] = None) -> Dict[Tuple[str, str], StockLevel]:
    """
    Aggregate batch-level stock into one StockLevel per product and location.

    Batches with zero or negative quantity are ignored. Quantity and reserved
    quantity are summed. In-transit quantity comes from the line items of
    open transfers, added to the destination's stock level when one exists.

    Args:
        batches_df: Inventory batch rows
        transfer_lines_df: Transfer line item rows (with destination_location_id)

    Returns:
        dict: {(product_id, location_id): StockLevel}, in first-seen batch order

    Raises:
        DataSourceError: If the batch rows lack identifying columns
    """
    if batches_df is None or batches_df.empty:
        return {}

    if not check_columns(batches_df, ['product_id', 'location_id', 'quantity'], 'inventory_batches'):
        raise DataSourceError("Stock batches are missing product_id, location_id or quantity")

    df = _ensure_columns(batches_df, {
        'sku': '', 'product_name': '', 'location_name': '', 'location_type': '', 'reserved_quantity': 0
    })
    for col in ['product_id', 'location_id', 'sku', 'product_name', 'location_name', 'location_type']:
        df[col] = clean_string_column(df[col])
    df['quantity'] = safe_numeric_column(df['quantity'], remove_commas=True)
    df['reserved_quantity'] = safe_numeric_column(df['reserved_quantity'], remove_commas=True)

    df = df[df['quantity'] > 0]
    if df.empty:
        return {}

    grouped = df.groupby(['product_id', 'location_id'], sort=False).agg(
        sku=('sku', 'first'),
        product_name=('product_name', 'first'),
        location_name=('location_name', 'first'),
        location_type=('location_type', 'first'),
        quantity=('quantity', 'sum'),
        reserved_quantity=('reserved_quantity', 'sum'),
    ).reset_index()

    stock_levels = {}
    for row in grouped.itertuples(index=False):
        stock_levels[(row.product_id, row.location_id)] = StockLevel(
            product_id=row.product_id,
            location_id=row.location_id,
            sku=row.sku,
            product_name=row.product_name,
            location_name=row.location_name,
            location_type=row.location_type,
            quantity=float(row.quantity),
            reserved_quantity=float(row.reserved_quantity),
            in_transit_quantity=0.0,
        )

    if transfer_lines_df is not None and not transfer_lines_df.empty and check_columns(
            transfer_lines_df, ['product_id', 'destination_location_id', 'quantity'], 'transfer_lines'):
        lines = transfer_lines_df.copy()
        if 'status' in lines.columns:
            open_statuses = REPLENISHMENT_RULES["transfers"]["open_statuses"]
            lines = lines[clean_string_column(lines['status']).str.lower().isin(open_statuses)].copy()
        lines['product_id'] = clean_string_column(lines['product_id'])
        lines['destination_location_id'] = clean_string_column(lines['destination_location_id'])
        lines['quantity'] = safe_numeric_column(lines['quantity'], remove_commas=True)

        in_transit = lines.groupby(['product_id', 'destination_location_id'])['quantity'].sum()
        for key, qty in in_transit.items():
            if key in stock_levels:
                stock_levels[key].in_transit_quantity += float(qty)

    return stock_levels


def load_forecasts(forecasts_df: Optional[pd.DataFrame]) -> Dict[Tuple[str, str], Forecast]:
    """
    Map enabled forecast rows to Forecast entities keyed by (product, location).
    """
    if forecasts_df is None or forecasts_df.empty:
        return {}
    if not check_columns(forecasts_df, ['product_id', 'location_id'], 'sales_forecasts'):
        return {}

    df = _ensure_columns(forecasts_df, {'daily_rate': 0, 'confidence': 'low', 'is_enabled': True})
    df['product_id'] = clean_string_column(df['product_id'])
    df['location_id'] = clean_string_column(df['location_id'])
    df['daily_rate'] = safe_numeric_column(df['daily_rate'])
    df['is_enabled'] = _bool_column(df['is_enabled'], default=True)
    df = df[df['is_enabled']]

    forecasts = {}
    for row in df.itertuples(index=False):
        confidence = row.confidence if not _is_blank(row.confidence) else 'low'
        forecasts[(row.product_id, row.location_id)] = Forecast(
            product_id=row.product_id,
            location_id=row.location_id,
            daily_rate=float(row.daily_rate),
            confidence=str(confidence),
            is_enabled=True,
        )
    return forecasts


def load_safety_stock_rules(rules_df: Optional[pd.DataFrame]) -> Dict[Tuple[str, str], SafetyStockRule]:
    """
    Map active safety stock rule rows to SafetyStockRule entities keyed by (product, location).
    """
    if rules_df is None or rules_df.empty:
        return {}
    if not check_columns(rules_df, ['product_id', 'location_id', 'threshold_type', 'threshold_value'],
                         'safety_stock_rules'):
        return {}

    df = _ensure_columns(rules_df, {'is_active': True})
    df['product_id'] = clean_string_column(df['product_id'])
    df['location_id'] = clean_string_column(df['location_id'])
    df['threshold_type'] = clean_string_column(df['threshold_type']).str.lower()
    df['threshold_value'] = safe_numeric_column(df['threshold_value'])
    df['is_active'] = _bool_column(df['is_active'], default=True)
    df = df[df['is_active']]

    rules = {}
    for row in df.itertuples(index=False):
        rules[(row.product_id, row.location_id)] = SafetyStockRule(
            product_id=row.product_id,
            location_id=row.location_id,
            threshold_type=row.threshold_type,
            threshold_value=float(row.threshold_value),
            is_active=True,
        )
    return rules


def load_shipping_routes(routes_df: Optional[pd.DataFrame]) -> List[ShippingRoute]:
    """
    Map active shipping route rows to ShippingRoute entities.

    A missing or zero typical transit time falls back to the default (7 days).
    """
    if routes_df is None or routes_df.empty:
        return []
    if not check_columns(routes_df, ['from_location_id', 'to_location_id'], 'shipping_routes'):
        return []

    default_transit = REPLENISHMENT_RULES["transfers"]["default_transit_days"]
    df = _ensure_columns(routes_df, {
        'id': '', 'method': '', 'transit_days_typical': 0, 'is_default': False, 'is_active': True
    })
    for col in ['id', 'from_location_id', 'to_location_id', 'method']:
        df[col] = clean_string_column(df[col])
    df['transit_days_typical'] = safe_numeric_column(df['transit_days_typical']).astype(int)
    df.loc[df['transit_days_typical'] == 0, 'transit_days_typical'] = default_transit
    df['is_default'] = _bool_column(df['is_default'], default=False)
    df['is_active'] = _bool_column(df['is_active'], default=True)
    df = df[df['is_active']]

    return [
        ShippingRoute(
            route_id=row.id,
            from_location_id=row.from_location_id,
            to_location_id=row.to_location_id,
            method=row.method,
            transit_days_typical=int(row.transit_days_typical),
            is_default=bool(row.is_default),
            is_active=True,
        )
        for row in df.itertuples(index=False)
    ]


def load_product_suppliers(suppliers_df: Optional[pd.DataFrame]) -> Dict[str, SupplierInfo]:
    """
    Map product -> supplier rows to SupplierInfo keyed by product_id.

    Products without a supplier are left out. A missing or zero lead time
    falls back to the default (30 days).
    """
    if suppliers_df is None or suppliers_df.empty:
        return {}
    if not check_columns(suppliers_df, ['product_id', 'supplier_id'], 'product_suppliers'):
        return {}

    default_lead_time = REPLENISHMENT_RULES["purchase_orders"]["default_supplier_lead_time_days"]
    df = _ensure_columns(suppliers_df, {'supplier_name': '', 'lead_time_days': 0})
    df = df[~df['supplier_id'].apply(_is_blank)].copy()
    df['product_id'] = clean_string_column(df['product_id'])
    df['supplier_id'] = clean_string_column(df['supplier_id'])
    df['supplier_name'] = clean_string_column(df['supplier_name'])
    df['lead_time_days'] = safe_numeric_column(df['lead_time_days']).astype(int)
    df.loc[df['lead_time_days'] == 0, 'lead_time_days'] = default_lead_time

    suppliers = {}
    for row in df.itertuples(index=False):
        suppliers[row.product_id] = SupplierInfo(
            supplier_id=row.supplier_id,
            supplier_name=row.supplier_name,
            lead_time_days=int(row.lead_time_days),
        )
    return suppliers


def load_pending_suggestion_keys(suggestions_df: Optional[pd.DataFrame]) -> Set[Tuple[str, str, str]]:
    """
    Build the (product_id, destination_location_id, type) index of pending suggestions.
    """
    if suggestions_df is None or suggestions_df.empty:
        return set()
    if not check_columns(suggestions_df, ['product_id', 'destination_location_id', 'type'],
                         'replenishment_suggestions'):
        return set()

    df = suggestions_df
    if 'status' in df.columns:
        df = df[clean_string_column(df['status']).str.lower() == 'pending']

    return set(zip(
        clean_string_column(df['product_id']),
        clean_string_column(df['destination_location_id']),
        clean_string_column(df['type']),
    ))


def load_sales_history(sales_df: Optional[pd.DataFrame], since: Optional[date] = None) -> pd.DataFrame:
    """
    Normalize sales history rows.

    Args:
        sales_df: Rows with product_id, location_id, date, units_sold
        since: Drop rows before this date

    Returns:
        pd.DataFrame sorted by date with columns product_id, location_id, date, units_sold
    """
    columns = TABLE_COLUMNS['sales_history']
    if sales_df is None or sales_df.empty:
        return pd.DataFrame(columns=columns)
    if not check_columns(sales_df, ['product_id', 'location_id', 'date'], 'sales_history'):
        raise DataSourceError("Sales history is missing product_id, location_id or date")

    df = _ensure_columns(sales_df, {'units_sold': 0})[columns].copy()
    df['product_id'] = clean_string_column(df['product_id'])
    df['location_id'] = clean_string_column(df['location_id'])
    df['date'] = pd.to_datetime(df['date'], errors='coerce')
    df['units_sold'] = safe_numeric_column(df['units_sold'])
    df = df.dropna(subset=['date'])

    if since is not None:
        df = df[df['date'] >= pd.Timestamp(since)]

    return df.sort_values('date', kind='mergesort').reset_index(drop=True)


# ===== DATA SOURCE INTERFACE =====

class IntelligenceDataSource(ABC):
    """Read/write boundary between the engine and the system of record."""

    @abstractmethod
    def fetch_settings(self) -> Optional[dict]:
        """Return the intelligence settings row, or None."""

    @abstractmethod
    def fetch_stock_batches(self) -> pd.DataFrame:
        """Return inventory batch rows with product and location columns joined in."""

    @abstractmethod
    def fetch_open_transfer_lines(self) -> pd.DataFrame:
        """Return line items of pending and in-transit transfers."""

    @abstractmethod
    def fetch_forecasts(self) -> pd.DataFrame:
        """Return sales forecast rows."""

    @abstractmethod
    def fetch_safety_stock_rules(self) -> pd.DataFrame:
        """Return safety stock rule rows."""

    @abstractmethod
    def fetch_shipping_routes(self) -> pd.DataFrame:
        """Return shipping route rows."""

    @abstractmethod
    def fetch_product_suppliers(self) -> pd.DataFrame:
        """Return product -> supplier rows with lead times."""

    @abstractmethod
    def fetch_pending_suggestions(self) -> pd.DataFrame:
        """Return currently pending replenishment suggestions."""

    @abstractmethod
    def fetch_sales_history(self, since: Optional[date] = None) -> pd.DataFrame:
        """Return daily sales rows on or after `since`."""

    @abstractmethod
    def insert_suggestion(self, record: dict) -> None:
        """Store a new suggestion. Raises DataSourceError on failure."""

    @abstractmethod
    def upsert_forecast(self, record: dict) -> None:
        """Update the forecast for (product_id, location_id), or insert it enabled."""

    @abstractmethod
    def update_last_calculated(self, timestamp: datetime) -> None:
        """Record when suggestions were last calculated."""


class DataFrameDataSource(IntelligenceDataSource):
    """
    In-memory data source.

    Tables are kept as lists of records and handed out as DataFrames. Inserting
    a suggestion enforces uniqueness of (product_id, destination_location_id,
    type) among pending suggestions, the constraint that makes the engine's
    snapshot dedup check safe when runs overlap.
    """

    def __init__(self, tables: Optional[Dict[str, pd.DataFrame]] = None, settings: Optional[dict] = None):
        self.settings = dict(settings) if settings else None
        self.tables = {name: [] for name in TABLE_COLUMNS}
        for name, table in (tables or {}).items():
            if name not in TABLE_COLUMNS:
                raise ValueError(f"Unknown table: {name}")
            if isinstance(table, pd.DataFrame):
                self.tables[name] = table.to_dict('records')
            else:
                self.tables[name] = [dict(row) for row in table]

    def _frame(self, name: str) -> pd.DataFrame:
        rows = self.tables[name]
        if not rows:
            return pd.DataFrame(columns=TABLE_COLUMNS[name])
        return pd.DataFrame(rows)

    @property
    def suggestions(self) -> List[dict]:
        return self.tables['replenishment_suggestions']

    @property
    def forecasts(self) -> List[dict]:
        return self.tables['sales_forecasts']

    def fetch_settings(self) -> Optional[dict]:
        return dict(self.settings) if self.settings else None

    def fetch_stock_batches(self) -> pd.DataFrame:
        return self._frame('inventory_batches')

    def fetch_open_transfer_lines(self) -> pd.DataFrame:
        return self._frame('transfer_lines')

    def fetch_forecasts(self) -> pd.DataFrame:
        return self._frame('sales_forecasts')

    def fetch_safety_stock_rules(self) -> pd.DataFrame:
        return self._frame('safety_stock_rules')

    def fetch_shipping_routes(self) -> pd.DataFrame:
        return self._frame('shipping_routes')

    def fetch_product_suppliers(self) -> pd.DataFrame:
        return self._frame('product_suppliers')

    def fetch_pending_suggestions(self) -> pd.DataFrame:
        df = self._frame('replenishment_suggestions')
        if df.empty or 'status' not in df.columns:
            return df
        return df[df['status'] == 'pending'].reset_index(drop=True)

    def fetch_sales_history(self, since: Optional[date] = None) -> pd.DataFrame:
        df = self._frame('sales_history')
        if since is None or df.empty:
            return df
        return df[pd.to_datetime(df['date']) >= pd.Timestamp(since)].reset_index(drop=True)

    def insert_suggestion(self, record: dict) -> None:
        key = (str(record.get('product_id')), str(record.get('destination_location_id')), record.get('type'))
        if record.get('status', 'pending') == 'pending':
            for existing in self.suggestions:
                existing_key = (str(existing.get('product_id')), str(existing.get('destination_location_id')),
                                existing.get('type'))
                if existing.get('status') == 'pending' and existing_key == key:
                    raise DuplicateSuggestionError(
                        f"Pending {key[2]} suggestion already exists for product {key[0]} at {key[1]}"
                    )

        row = dict(record)
        row.setdefault('id', str(uuid.uuid4()))
        self.suggestions.append(row)

    def upsert_forecast(self, record: dict) -> None:
        product_id = str(record['product_id'])
        location_id = str(record['location_id'])
        for existing in self.forecasts:
            if str(existing.get('product_id')) == product_id and str(existing.get('location_id')) == location_id:
                existing.update(record)
                return

        row = dict(record)
        row.setdefault('id', str(uuid.uuid4()))
        row.setdefault('is_enabled', True)
        self.forecasts.append(row)

    def update_last_calculated(self, timestamp: datetime) -> None:
        if self.settings is None:
            raise DataSourceError("No intelligence settings record to update")
        self.settings['last_calculated_at'] = timestamp


class CsvDataSource(DataFrameDataSource):
    """
    Data source backed by a directory of CSV tables.

    Each table lives in '<table>.csv'; settings are the first row of
    'intelligence_settings.csv'. Missing table files read as empty tables.
    Writes stay in memory until save() is called.
    """

    SETTINGS_FILE = 'intelligence_settings.csv'
    WRITABLE_TABLES = ['replenishment_suggestions', 'sales_forecasts']

    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        tables = {
            name: read_table(data_dir, f"{name}.csv", columns=columns)
            for name, columns in TABLE_COLUMNS.items()
        }

        settings_df = read_table(data_dir, self.SETTINGS_FILE, columns=SETTINGS_COLUMNS)
        settings = settings_df.iloc[0].to_dict() if not settings_df.empty else None

        super().__init__(tables=tables, settings=settings)

    def save(self) -> List[str]:
        """
        Write suggestions, forecasts and settings back to the data directory.

        Returns:
            list: Paths written
        """
        written = []
        for name in self.WRITABLE_TABLES:
            written.append(write_table(self.tables[name], self.data_dir, f"{name}.csv",
                                       columns=TABLE_COLUMNS[name]))
        if self.settings is not None:
            written.append(write_table([self.settings], self.data_dir, self.SETTINGS_FILE,
                                       columns=SETTINGS_COLUMNS))
        return written
