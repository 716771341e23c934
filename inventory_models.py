"""
Inventory Intelligence Models

Typed entities shared by the forecasting and replenishment modules.
Rows coming from storage are mapped into these in data_loader before any
calculation runs.
"""

from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from typing import List, Optional, Dict, Any


@dataclass(frozen=True)
class SalesDataPoint:
    """One day of unit sales for a product/location."""
    date: date
    units_sold: int


@dataclass(frozen=True)
class ForecastAccuracyResult:
    """Accuracy metrics for a forecast scored against actuals."""
    mape: float
    mae: float
    rmse: float
    bias: float
    accuracy: float
    confidence: str
    sample_size: int


@dataclass
class StockLevel:
    """Stock for one product at one location, aggregated across batches."""
    product_id: str
    location_id: str
    sku: str = ''
    product_name: str = ''
    location_name: str = ''
    location_type: str = ''
    quantity: float = 0
    reserved_quantity: float = 0
    in_transit_quantity: float = 0

    @property
    def available_stock(self) -> float:
        return self.quantity - self.reserved_quantity


@dataclass(frozen=True)
class Forecast:
    product_id: str
    location_id: str
    daily_rate: float
    confidence: str = 'low'
    is_enabled: bool = True


@dataclass(frozen=True)
class SafetyStockRule:
    product_id: str
    location_id: str
    threshold_type: str  # 'units' or 'days-of-cover'
    threshold_value: float
    is_active: bool = True


@dataclass(frozen=True)
class ShippingRoute:
    route_id: str
    from_location_id: str
    to_location_id: str
    method: str = ''
    transit_days_typical: int = 7
    is_default: bool = False
    is_active: bool = True


@dataclass(frozen=True)
class SupplierInfo:
    supplier_id: str
    supplier_name: str
    lead_time_days: int = 30


@dataclass(frozen=True)
class SourceCandidate:
    """A location able to ship stock to a destination over an active route."""
    location_id: str
    location_name: str
    available_qty: float
    route: ShippingRoute


@dataclass
class Suggestion:
    """
    A replenishment suggestion produced by one engine run.

    Transfer suggestions fill the source_* fields; purchase-order suggestions
    fill the supplier_* fields. Route fields are only set for transfers.
    """
    type: str
    urgency: str
    product_id: str
    sku: str
    product_name: str
    destination_location_id: str
    destination_location_name: str
    current_stock: float
    in_transit_quantity: float
    reserved_quantity: float
    available_stock: float
    daily_sales_rate: float
    weekly_sales_rate: float
    days_of_stock_remaining: Optional[int]
    stockout_date: Optional[date]
    safety_stock_threshold: float
    recommended_qty: int
    estimated_arrival: Optional[date]
    status: str = 'pending'
    source_location_id: Optional[str] = None
    source_location_name: Optional[str] = None
    source_available_qty: Optional[float] = None
    supplier_id: Optional[str] = None
    supplier_name: Optional[str] = None
    supplier_lead_time_days: Optional[int] = None
    route_id: Optional[str] = None
    route_name: Optional[str] = None
    route_method: Optional[str] = None
    route_transit_days: Optional[int] = None
    reasoning: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def dedup_key(self) -> tuple:
        return (self.product_id, self.destination_location_id, self.type)

    def to_record(self, generated_at: Optional[datetime] = None) -> dict:
        """
        Flatten the suggestion to a storage row.

        Args:
            generated_at: Generation timestamp (default: now)

        Returns:
            dict with one key per suggestion field plus 'generated_at'
        """
        record = asdict(self)
        record['reasoning'] = [dict(step) for step in self.reasoning]
        record['generated_at'] = generated_at or datetime.now()
        return record


@dataclass(frozen=True)
class ForecastResult:
    """Output of the periodic sales forecast batch for one product/location."""
    product_id: str
    location_id: str
    daily_rate: float
    confidence: str
    accuracy_mape: float
    seasonal_multipliers: List[float]
    trend_rate: float
    data_points: int = 0
