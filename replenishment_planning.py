"""
Replenishment Planning Module

Generates replenishment suggestions for fulfillment locations.

For each product at a fulfillment location (location type containing
'amazon' or 'fba') with an enabled forecast:
1. Safety stock threshold from the active rule or the default days of cover
2. Days of stock remaining and urgency tier (monitor = no suggestion)
3. Recommended quantity to restock to 30 days of cover plus safety stock
4. Transfer from the best other location holding enough stock, otherwise
   a purchase order from the product's supplier
5. Skip pairs that already have a pending suggestion of the same type

Every suggestion carries a reasoning trail of the facts used to build it.
"""

from datetime import date, datetime
from typing import Dict, List, Optional, Tuple

import pandas as pd

from business_rules import IntelligenceSettings, REPLENISHMENT_RULES, is_fulfillment_location
from data_loader import (
    IntelligenceDataSource,
    aggregate_stock_levels,
    load_forecasts,
    load_pending_suggestion_keys,
    load_product_suppliers,
    load_safety_stock_rules,
    load_settings,
    load_shipping_routes,
)
from inventory_models import (
    Forecast,
    SafetyStockRule,
    ShippingRoute,
    SourceCandidate,
    StockLevel,
    Suggestion,
    SupplierInfo,
)
from stockout_prediction import (
    calculate_days_remaining,
    calculate_estimated_arrival,
    calculate_recommended_qty,
    calculate_safety_stock_threshold,
    calculate_stockout_date,
    determine_urgency,
)


# ===== SOURCING =====

def find_best_source_location(
    product_id: str,
    destination_location_id: str,
    stock_levels: Dict[Tuple[str, str], StockLevel],
    routes: List[ShippingRoute]
) -> Optional[SourceCandidate]:
    """
    Find the best location to transfer stock from.

    Candidates are other locations holding the product with available stock
    and an active route to the destination. Ranking: default route first,
    then shorter typical transit, then larger available quantity.

    Args:
        product_id: Product to source
        destination_location_id: Location being replenished
        stock_levels: {(product_id, location_id): StockLevel}
        routes: Active shipping routes

    Returns:
        SourceCandidate, or None if no location can ship
    """
    candidates = []
    for (stock_product_id, location_id), stock in stock_levels.items():
        if stock_product_id != product_id or location_id == destination_location_id:
            continue

        available = stock.available_stock
        if available <= 0:
            continue

        for route in routes:
            if (route.from_location_id == location_id
                    and route.to_location_id == destination_location_id
                    and route.is_active):
                candidates.append(SourceCandidate(
                    location_id=location_id,
                    location_name=stock.location_name,
                    available_qty=available,
                    route=route,
                ))

    if not candidates:
        return None

    candidates.sort(key=lambda c: (not c.route.is_default, c.route.transit_days_typical, -c.available_qty))
    return candidates[0]


# ===== REASONING =====

def _format_qty(value):
    # 120.0 -> 120
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def build_reasoning(
    available_stock: float,
    daily_sales_rate: float,
    days_remaining: Optional[int],
    safety_threshold: float
) -> List[dict]:
    """
    Build the base reasoning trail shared by transfer and purchase-order suggestions.

    Returns:
        list of {'type', 'message', 'value'} entries
    """
    return [
        {'type': 'info', 'message': 'Current stock level', 'value': _format_qty(available_stock)},
        {'type': 'info', 'message': 'Daily sales rate', 'value': f"{daily_sales_rate:.1f}"},
        {'type': 'calculation', 'message': 'Days of stock remaining',
         'value': days_remaining if days_remaining is not None else 'Unknown'},
        {'type': 'info', 'message': 'Safety stock threshold', 'value': _format_qty(safety_threshold)},
    ]


def _base_suggestion(stock: StockLevel, suggestion_type: str, urgency: str, daily_sales_rate: float,
                     days_remaining: Optional[int], stockout_date: Optional[date],
                     safety_threshold: float, recommended_qty: int, estimated_arrival: date,
                     reasoning: List[dict]) -> Suggestion:
    return Suggestion(
        type=suggestion_type,
        urgency=urgency,
        product_id=stock.product_id,
        sku=stock.sku,
        product_name=stock.product_name,
        destination_location_id=stock.location_id,
        destination_location_name=stock.location_name,
        current_stock=stock.quantity,
        in_transit_quantity=stock.in_transit_quantity,
        reserved_quantity=stock.reserved_quantity,
        available_stock=stock.available_stock,
        daily_sales_rate=daily_sales_rate,
        weekly_sales_rate=daily_sales_rate * 7,
        days_of_stock_remaining=days_remaining,
        stockout_date=stockout_date,
        safety_stock_threshold=safety_threshold,
        recommended_qty=recommended_qty,
        estimated_arrival=estimated_arrival,
        reasoning=reasoning,
    )


def evaluate_stock_level(
    stock: StockLevel,
    forecast: Optional[Forecast],
    rule: Optional[SafetyStockRule],
    settings: IntelligenceSettings,
    stock_levels: Dict[Tuple[str, str], StockLevel],
    routes: List[ShippingRoute],
    suppliers: Dict[str, SupplierInfo],
    existing_keys: set,
    today: Optional[date] = None,
    logs: Optional[list] = None
) -> Optional[Suggestion]:
    """
    Evaluate one product/location and build its suggestion, if any.

    Args:
        stock: Destination stock level
        forecast: Enabled forecast for the pair
        rule: Active safety stock rule for the pair
        settings: Thresholds and defaults for this run
        stock_levels: All stock levels (for sourcing)
        routes: Active shipping routes
        suppliers: {product_id: SupplierInfo}
        existing_keys: Pending (product_id, destination_location_id, type) keys
        today: Reference date
        logs: Optional list to append log messages to

    Returns:
        Suggestion, or None when the pair needs no action or cannot be actioned
    """
    if not is_fulfillment_location(stock.location_type):
        return None
    if forecast is None or forecast.daily_rate <= 0:
        return None

    daily_sales_rate = forecast.daily_rate
    available_stock = stock.available_stock

    safety_threshold = calculate_safety_stock_threshold(rule, daily_sales_rate,
                                                        settings.default_safety_stock_days)
    days_remaining = calculate_days_remaining(
        available_stock,
        daily_sales_rate,
        settings.include_in_transit_in_calculations,
        stock.in_transit_quantity,
    )
    urgency = determine_urgency(days_remaining, settings)
    if urgency == 'monitor':
        return None

    recommended_qty = calculate_recommended_qty(available_stock, safety_threshold, daily_sales_rate)
    if recommended_qty <= 0:
        return None

    stockout_date = calculate_stockout_date(days_remaining, today)
    reasoning = build_reasoning(available_stock, daily_sales_rate, days_remaining, safety_threshold)

    source = find_best_source_location(stock.product_id, stock.location_id, stock_levels, routes)

    if source is not None and source.available_qty >= recommended_qty:
        if (stock.product_id, stock.location_id, 'transfer') in existing_keys:
            return None

        transit_days = source.route.transit_days_typical
        reasoning.append({
            'type': 'info',
            'message': f"Source: {source.location_name} has {_format_qty(source.available_qty)} available",
        })

        suggestion = _base_suggestion(
            stock, 'transfer', urgency, daily_sales_rate, days_remaining, stockout_date, safety_threshold,
            int(min(recommended_qty, source.available_qty)),
            calculate_estimated_arrival(transit_days, today), reasoning,
        )
        suggestion.source_location_id = source.location_id
        suggestion.source_location_name = source.location_name
        suggestion.source_available_qty = source.available_qty
        suggestion.route_id = source.route.route_id
        suggestion.route_name = f"{source.location_name} to {stock.location_name}"
        suggestion.route_method = source.route.method
        suggestion.route_transit_days = transit_days
        return suggestion

    if (stock.product_id, stock.location_id, 'purchase-order') in existing_keys:
        return None

    supplier = suppliers.get(stock.product_id)
    if supplier is None:
        if logs is not None:
            logs.append(f"WARNING: No supplier found for product {stock.sku} ({stock.product_id}) "
                        f"- skipping PO suggestion")
        return None

    reasoning.append({
        'type': 'info',
        'message': f"Supplier: {supplier.supplier_name} ({supplier.lead_time_days} day lead time)",
    })
    if source is not None:
        reasoning.append({
            'type': 'warning',
            'message': f"Insufficient stock at {source.location_name} ({_format_qty(source.available_qty)} available)",
        })

    suggestion = _base_suggestion(
        stock, 'purchase-order', urgency, daily_sales_rate, days_remaining, stockout_date, safety_threshold,
        recommended_qty, calculate_estimated_arrival(supplier.lead_time_days, today), reasoning,
    )
    suggestion.supplier_id = supplier.supplier_id
    suggestion.supplier_name = supplier.supplier_name
    suggestion.supplier_lead_time_days = supplier.lead_time_days
    return suggestion


# ===== CALCULATION PASS =====

def _fetch_secondary(fetch, loader, label, logs, empty):
    """Fetch and map a secondary signal. Failures degrade to `empty`."""
    try:
        return loader(fetch())
    except Exception as e:
        logs.append(f"WARNING: Could not load {label}, continuing without it: {e}")
        return empty


def _run_calculation_pass(data_source, settings=None, today=None):
    """
    Calculation pass behind calculate_suggestions.

    Returns:
        tuple: (transfer_suggestions, po_suggestions, errors, logs, aborted)
        where aborted is True when settings or stock could not be loaded
    """
    logs = []
    errors = []
    transfer_suggestions = []
    po_suggestions = []

    if settings is None:
        try:
            settings = load_settings(data_source.fetch_settings())
        except Exception as e:
            logs.append(f"ERROR: Failed to fetch intelligence settings: {e}")
            errors.append("Failed to fetch intelligence settings")
            return transfer_suggestions, po_suggestions, errors, logs, True

    logs.append(f"INFO: Thresholds critical={settings.critical_days}d, warning={settings.warning_days}d, "
                f"planned={settings.planned_days}d")

    try:
        batches_df = data_source.fetch_stock_batches()
    except Exception as e:
        errors.append(f"Failed to fetch stock levels: {e}")
        logs.append(f"ERROR: Failed to fetch stock levels: {e}")
        return transfer_suggestions, po_suggestions, errors, logs, True

    transfer_lines_df = _fetch_secondary(data_source.fetch_open_transfer_lines, lambda df: df,
                                         'in-transit transfers', logs, None)
    try:
        stock_levels = aggregate_stock_levels(batches_df, transfer_lines_df)
    except Exception as e:
        errors.append(f"Failed to fetch stock levels: {e}")
        logs.append(f"ERROR: Failed to fetch stock levels: {e}")
        return transfer_suggestions, po_suggestions, errors, logs, True

    forecasts = _fetch_secondary(data_source.fetch_forecasts, load_forecasts, 'forecasts', logs, {})
    rules = _fetch_secondary(data_source.fetch_safety_stock_rules, load_safety_stock_rules,
                             'safety stock rules', logs, {})
    routes = _fetch_secondary(data_source.fetch_shipping_routes, load_shipping_routes,
                              'shipping routes', logs, [])
    suppliers = _fetch_secondary(data_source.fetch_product_suppliers, load_product_suppliers,
                                 'product suppliers', logs, {})
    existing_keys = _fetch_secondary(data_source.fetch_pending_suggestions, load_pending_suggestion_keys,
                                     'pending suggestions', logs, set())

    logs.append(f"INFO: Loaded {len(stock_levels)} stock levels, {len(forecasts)} forecasts, "
                f"{len(routes)} routes, {len(existing_keys)} pending suggestions")

    # Suggestions built before an unexpected failure are kept
    try:
        for key, stock in stock_levels.items():
            suggestion = evaluate_stock_level(
                stock,
                forecasts.get(key),
                rules.get(key),
                settings,
                stock_levels,
                routes,
                suppliers,
                existing_keys,
                today=today,
                logs=logs,
            )
            if suggestion is None:
                continue

            # One suggestion per key per run, even if the snapshot missed it
            existing_keys.add(suggestion.dedup_key)
            if suggestion.type == 'transfer':
                transfer_suggestions.append(suggestion)
            else:
                po_suggestions.append(suggestion)
    except Exception as e:
        errors.append(f"Calculation error: {e}")
        logs.append(f"ERROR: Calculation error: {e}")

    logs.append(f"INFO: Generated {len(transfer_suggestions)} transfer suggestions, "
                f"{len(po_suggestions)} PO suggestions")

    return transfer_suggestions, po_suggestions, errors, logs, False


def calculate_suggestions(
    data_source: IntelligenceDataSource,
    settings: Optional[IntelligenceSettings] = None,
    today: Optional[date] = None
) -> Tuple[List[Suggestion], List[Suggestion], List[str], List[str]]:
    """
    Run one calculation pass over all stock levels.

    Args:
        data_source: Where inputs are read from
        settings: Run configuration (default: read from the data source)
        today: Reference date for stockout and arrival dates

    Returns:
        tuple: (transfer_suggestions, po_suggestions, errors, logs)
    """
    transfer_suggestions, po_suggestions, errors, logs, _ = _run_calculation_pass(data_source, settings, today)
    return transfer_suggestions, po_suggestions, errors, logs


def generate_replenishment_suggestions(data_source: IntelligenceDataSource, today: Optional[date] = None) -> dict:
    """
    Calculate and store replenishment suggestions. Never raises.

    Args:
        data_source: Where inputs are read from and suggestions are written to
        today: Reference date (default: today)

    Returns:
        dict: transfer_suggestion_count, po_suggestion_count, inserted_count,
              errors, logs, suggestions
    """
    result = {
        'transfer_suggestion_count': 0,
        'po_suggestion_count': 0,
        'inserted_count': 0,
        'errors': [],
        'logs': ["INFO: Starting suggestion calculation..."],
        'suggestions': [],
    }

    try:
        transfer_suggestions, po_suggestions, errors, logs, aborted = _run_calculation_pass(data_source,
                                                                                           today=today)
        result['errors'].extend(errors)
        result['logs'].extend(logs)
        result['transfer_suggestion_count'] = len(transfer_suggestions)
        result['po_suggestion_count'] = len(po_suggestions)

        # Fatal setup errors leave no suggestions and skip the timestamp update
        if aborted:
            return result

        all_suggestions = transfer_suggestions + po_suggestions
        result['suggestions'] = all_suggestions
        generated_at = datetime.now()

        for suggestion in all_suggestions:
            try:
                data_source.insert_suggestion(suggestion.to_record(generated_at))
                result['inserted_count'] += 1
            except Exception as e:
                result['errors'].append(f"Failed to insert suggestion for {suggestion.sku}: {e}")
                result['logs'].append(f"ERROR: Failed to insert suggestion for {suggestion.sku}: {e}")

        result['logs'].append(f"INFO: Inserted {result['inserted_count']} of {len(all_suggestions)} suggestions")

        try:
            data_source.update_last_calculated(datetime.now())
        except Exception as e:
            result['errors'].append(f"Failed to update last calculated timestamp: {e}")
            result['logs'].append(f"WARNING: Failed to update last calculated timestamp: {e}")

    except Exception as e:
        result['errors'].append(f"Calculation error: {e}")
        result['logs'].append(f"ERROR: Calculation error: {e}")

    return result


# ===== REPORTING =====

def get_suggestion_summary_by_urgency(suggestions: List[Suggestion]) -> pd.DataFrame:
    """
    Summarize suggestions by urgency tier and type.

    Args:
        suggestions: Suggestions from one run

    Returns:
        DataFrame with columns urgency, type, suggestion_count, total_qty,
        ordered critical -> planned
    """
    columns = ['urgency', 'type', 'suggestion_count', 'total_qty']
    if not suggestions:
        return pd.DataFrame(columns=columns)

    df = pd.DataFrame([
        {'urgency': s.urgency, 'type': s.type, 'recommended_qty': s.recommended_qty}
        for s in suggestions
    ])

    summary = df.groupby(['urgency', 'type']).agg(
        suggestion_count=('recommended_qty', 'size'),
        total_qty=('recommended_qty', 'sum'),
    ).reset_index()

    urgency_order = {level: i for i, level in enumerate(REPLENISHMENT_RULES["urgency_levels"])}
    summary['_order'] = summary['urgency'].map(urgency_order)
    summary = summary.sort_values(['_order', 'type']).drop(columns='_order').reset_index(drop=True)

    return summary[columns]
