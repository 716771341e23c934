"""
Tests for the replenishment suggestion engine
"""

import pytest
from datetime import timedelta

from conftest import (
    FBA_LOCATION,
    THREE_PL,
    TODAY,
    WAREHOUSE,
    assert_columns_exist,
    assert_log_contains,
    batch,
    default_settings,
    make_data_source,
)
import replenishment_planning
from business_rules import IntelligenceSettings
from data_loader import DataFrameDataSource
from inventory_models import ShippingRoute, StockLevel
from replenishment_planning import (
    build_reasoning,
    calculate_suggestions,
    find_best_source_location,
    generate_replenishment_suggestions,
    get_suggestion_summary_by_urgency,
)


def fba_forecast(product_id='P1', daily_rate=10, is_enabled=True):
    return {'product_id': product_id, 'location_id': 'LOC-FBA', 'daily_rate': daily_rate,
            'confidence': 'medium', 'is_enabled': is_enabled}


def supplier(product_id='P1', lead_time_days=45):
    return {'product_id': product_id, 'supplier_id': 'SUP-1', 'supplier_name': 'Acme Supply',
            'lead_time_days': lead_time_days}


def route(route_id, from_location, transit_days, is_default=False, is_active=True):
    return {'id': route_id, 'from_location_id': from_location['location_id'], 'to_location_id': 'LOC-FBA',
            'method': 'ground', 'transit_days_typical': transit_days, 'is_default': is_default,
            'is_active': is_active}


class TestPurchaseOrderSuggestions:
    """Test purchase-order fallback"""

    def test_critical_stock_emits_one_purchase_order(self, critical_po_source):
        """Test 50 units at 10/day is critical and falls back to the supplier"""
        transfers, pos, errors, logs = calculate_suggestions(critical_po_source, today=TODAY)

        assert errors == []
        assert transfers == []
        assert len(pos) == 1

        suggestion = pos[0]
        assert suggestion.type == 'purchase-order'
        assert suggestion.urgency == 'critical'
        assert suggestion.days_of_stock_remaining == 5
        assert suggestion.stockout_date == TODAY + timedelta(days=5)
        assert suggestion.safety_stock_threshold == 140
        # 30 days * 10 + 140 safety - 50 available
        assert suggestion.recommended_qty == 390
        assert suggestion.estimated_arrival == TODAY + timedelta(days=45)
        assert suggestion.supplier_id == 'SUP-1'
        assert suggestion.supplier_lead_time_days == 45
        assert suggestion.weekly_sales_rate == pytest.approx(70)
        assert suggestion.source_location_id is None
        assert suggestion.route_id is None

    def test_reasoning_trail(self, critical_po_source):
        """Test the reasoning entries and their order"""
        _, pos, _, _ = calculate_suggestions(critical_po_source, today=TODAY)

        assert pos[0].reasoning == [
            {'type': 'info', 'message': 'Current stock level', 'value': 50},
            {'type': 'info', 'message': 'Daily sales rate', 'value': '10.0'},
            {'type': 'calculation', 'message': 'Days of stock remaining', 'value': 5},
            {'type': 'info', 'message': 'Safety stock threshold', 'value': 140},
            {'type': 'info', 'message': 'Supplier: Acme Supply (45 day lead time)'},
        ]

    def test_no_supplier_skips_pair(self):
        """Test that a pair with no source and no supplier is skipped"""
        data_source = make_data_source(batches=[batch('P1', FBA_LOCATION, 50)], forecasts=[fba_forecast()])
        transfers, pos, errors, logs = calculate_suggestions(data_source, today=TODAY)

        assert transfers == [] and pos == []
        assert errors == []
        assert_log_contains(logs, "No supplier found for product SKU-1")

    def test_insufficient_source_falls_back_with_warning(self):
        """Test a source too small for the order gives a PO with a warning entry"""
        data_source = make_data_source(
            batches=[batch('P1', FBA_LOCATION, 50), batch('P1', WAREHOUSE, 100)],
            forecasts=[fba_forecast()],
            routes=[route('R1', WAREHOUSE, 5, is_default=True)],
            suppliers=[supplier()],
        )
        transfers, pos, _, _ = calculate_suggestions(data_source, today=TODAY)

        assert transfers == []
        assert len(pos) == 1
        assert pos[0].reasoning[-1] == {
            'type': 'warning',
            'message': 'Insufficient stock at Main Warehouse (100 available)',
        }

    def test_zero_recommended_qty_emits_nothing(self):
        """Test a planned-tier pair already at target stock needs no order"""
        data_source = make_data_source(
            batches=[batch('P1', FBA_LOCATION, 300)],
            forecasts=[fba_forecast()],
            rules=[{'product_id': 'P1', 'location_id': 'LOC-FBA', 'threshold_type': 'units',
                    'threshold_value': 0, 'is_active': True}],
            suppliers=[supplier()],
        )
        transfers, pos, errors, _ = calculate_suggestions(data_source, today=TODAY)

        assert transfers == [] and pos == [] and errors == []


class TestTransferSuggestions:
    """Test transfer sourcing"""

    def test_transfer_from_warehouse(self, transfer_source):
        """Test a warehouse with enough stock is used instead of a PO"""
        transfers, pos, errors, _ = calculate_suggestions(transfer_source, today=TODAY)

        assert errors == []
        assert pos == []
        assert len(transfers) == 1

        suggestion = transfers[0]
        assert suggestion.type == 'transfer'
        assert suggestion.recommended_qty == 390
        assert suggestion.source_location_id == 'LOC-WH'
        assert suggestion.source_available_qty == 900
        assert suggestion.route_id == 'R-WH-FBA'
        assert suggestion.route_name == 'Main Warehouse to Amazon FBA East'
        assert suggestion.route_transit_days == 5
        assert suggestion.estimated_arrival == TODAY + timedelta(days=5)
        assert suggestion.supplier_id is None
        assert suggestion.reasoning[-1]['message'] == 'Source: Main Warehouse has 900 available'

    def test_inactive_route_not_used(self):
        """Test that a source without an active route is not a candidate"""
        data_source = make_data_source(
            batches=[batch('P1', FBA_LOCATION, 50), batch('P1', WAREHOUSE, 1000)],
            forecasts=[fba_forecast()],
            routes=[route('R1', WAREHOUSE, 5, is_active=False)],
            suppliers=[supplier()],
        )
        transfers, pos, _, _ = calculate_suggestions(data_source, today=TODAY)

        assert transfers == []
        assert len(pos) == 1
        # No candidate at all, so no insufficient-stock warning
        assert all(step['type'] != 'warning' for step in pos[0].reasoning)


class TestSourceRanking:
    """Test candidate ranking"""

    def make_levels(self, warehouse_qty=500, three_pl_qty=100):
        return {
            ('P1', 'LOC-FBA'): StockLevel('P1', 'LOC-FBA', location_name='Amazon FBA East', quantity=10),
            ('P1', 'LOC-WH'): StockLevel('P1', 'LOC-WH', location_name='Main Warehouse', quantity=warehouse_qty),
            ('P1', 'LOC-3PL'): StockLevel('P1', 'LOC-3PL', location_name='West 3PL', quantity=three_pl_qty),
            ('P2', 'LOC-WH'): StockLevel('P2', 'LOC-WH', location_name='Main Warehouse', quantity=9999),
        }

    def test_default_route_wins(self):
        """Test default route ranks above faster transit and larger stock"""
        routes = [
            ShippingRoute('R-WH', 'LOC-WH', 'LOC-FBA', transit_days_typical=2),
            ShippingRoute('R-3PL', 'LOC-3PL', 'LOC-FBA', transit_days_typical=10, is_default=True),
        ]
        best = find_best_source_location('P1', 'LOC-FBA', self.make_levels(), routes)
        assert best.location_id == 'LOC-3PL'
        assert best.available_qty == 100

    def test_shorter_transit_wins(self):
        """Test shorter transit ranks above larger stock"""
        routes = [
            ShippingRoute('R-WH', 'LOC-WH', 'LOC-FBA', transit_days_typical=7),
            ShippingRoute('R-3PL', 'LOC-3PL', 'LOC-FBA', transit_days_typical=3),
        ]
        best = find_best_source_location('P1', 'LOC-FBA', self.make_levels(), routes)
        assert best.location_id == 'LOC-3PL'

    def test_larger_stock_breaks_ties(self):
        """Test larger available quantity wins when routes tie"""
        routes = [
            ShippingRoute('R-WH', 'LOC-WH', 'LOC-FBA', transit_days_typical=5),
            ShippingRoute('R-3PL', 'LOC-3PL', 'LOC-FBA', transit_days_typical=5),
        ]
        best = find_best_source_location('P1', 'LOC-FBA', self.make_levels(), routes)
        assert best.location_id == 'LOC-WH'
        assert best.route.route_id == 'R-WH'

    def test_no_available_stock_is_not_a_candidate(self):
        """Test sources with nothing available are skipped"""
        levels = self.make_levels(warehouse_qty=0, three_pl_qty=0)
        routes = [ShippingRoute('R-WH', 'LOC-WH', 'LOC-FBA')]
        assert find_best_source_location('P1', 'LOC-FBA', levels, routes) is None

    def test_destination_never_sources_itself(self):
        """Test the destination is excluded even with a self route"""
        routes = [ShippingRoute('R-SELF', 'LOC-FBA', 'LOC-FBA', is_default=True)]
        assert find_best_source_location('P1', 'LOC-FBA', self.make_levels(), routes) is None


class TestEligibility:
    """Test which pairs are evaluated"""

    def test_non_fulfillment_locations_skipped(self):
        """Test only amazon/fba location types are destinations"""
        data_source = make_data_source(
            batches=[batch('P1', THREE_PL, 5)],
            forecasts=[{'product_id': 'P1', 'location_id': 'LOC-3PL', 'daily_rate': 10, 'is_enabled': True}],
            suppliers=[supplier()],
        )
        transfers, pos, _, _ = calculate_suggestions(data_source, today=TODAY)
        assert transfers == [] and pos == []

    @pytest.mark.parametrize("forecast", [
        [],
        [fba_forecast(daily_rate=0)],
        [fba_forecast(is_enabled=False)],
    ])
    def test_missing_or_zero_forecast_skipped(self, forecast):
        """Test pairs without an enabled positive forecast are skipped"""
        data_source = make_data_source(batches=[batch('P1', FBA_LOCATION, 5)], forecasts=forecast,
                                       suppliers=[supplier()])
        transfers, pos, _, _ = calculate_suggestions(data_source, today=TODAY)
        assert transfers == [] and pos == []

    def test_well_stocked_is_monitor(self):
        """Test more than planned_days of stock emits nothing"""
        data_source = make_data_source(batches=[batch('P1', FBA_LOCATION, 310)], forecasts=[fba_forecast()],
                                       suppliers=[supplier()])
        transfers, pos, _, _ = calculate_suggestions(data_source, today=TODAY)
        assert transfers == [] and pos == []

    def test_in_transit_stock_counts_when_enabled(self):
        """Test open transfers to the destination push it out of the urgent tiers"""
        lines = [{'transfer_id': 'T1', 'status': 'in_transit', 'destination_location_id': 'LOC-FBA',
                  'product_id': 'P1', 'quantity': 400}]
        kwargs = dict(batches=[batch('P1', FBA_LOCATION, 50)], forecasts=[fba_forecast()],
                      suppliers=[supplier()], transfer_lines=lines)

        _, pos, _, _ = calculate_suggestions(make_data_source(**kwargs), today=TODAY)
        assert pos == []

        settings = default_settings(include_in_transit_in_calculations=False)
        _, pos, _, _ = calculate_suggestions(make_data_source(settings=settings, **kwargs), today=TODAY)
        assert len(pos) == 1
        assert pos[0].in_transit_quantity == 400
        assert pos[0].urgency == 'critical'

    def test_explicit_settings_override_stored(self, critical_po_source):
        """Test settings passed in are used instead of the stored row"""
        settings = IntelligenceSettings(critical_days=3, warning_days=6, planned_days=10)
        _, pos, _, _ = calculate_suggestions(critical_po_source, settings=settings, today=TODAY)
        assert pos[0].urgency == 'warning'


class TestDeduplication:
    """Test pending-suggestion deduplication"""

    def test_existing_pending_transfer_not_duplicated(self, transfer_source):
        """Test a pending transfer for the pair suppresses the new one without a PO fallback"""
        transfer_source.suggestions.append({'id': 'S1', 'type': 'transfer', 'status': 'pending',
                                            'product_id': 'P1', 'destination_location_id': 'LOC-FBA'})

        transfers, pos, errors, _ = calculate_suggestions(transfer_source, today=TODAY)
        assert transfers == [] and pos == [] and errors == []

    def test_approved_suggestion_does_not_block(self, transfer_source):
        """Test only pending suggestions count for deduplication"""
        transfer_source.suggestions.append({'id': 'S1', 'type': 'transfer', 'status': 'approved',
                                            'product_id': 'P1', 'destination_location_id': 'LOC-FBA'})

        transfers, _, _, _ = calculate_suggestions(transfer_source, today=TODAY)
        assert len(transfers) == 1

    def test_second_run_emits_nothing_new(self, critical_po_source):
        """Test rerunning over the same inputs does not duplicate suggestions"""
        first = generate_replenishment_suggestions(critical_po_source, today=TODAY)
        second = generate_replenishment_suggestions(critical_po_source, today=TODAY)

        assert first['inserted_count'] == 1
        assert second['po_suggestion_count'] == 0
        assert second['inserted_count'] == 0
        assert len(critical_po_source.suggestions) == 1

    def test_storage_rejects_duplicate_pending(self, critical_po_source):
        """Test a duplicate reaching storage is reported and siblings still insert"""
        class StaleSnapshotSource(DataFrameDataSource):
            def fetch_pending_suggestions(self):
                return super().fetch_pending_suggestions().iloc[0:0]

        data_source = StaleSnapshotSource(
            tables={name: list(rows) for name, rows in critical_po_source.tables.items()},
            settings=critical_po_source.settings,
        )
        data_source.tables['inventory_batches'].append(batch('P2', FBA_LOCATION, 20, sku='SKU-2'))
        data_source.tables['sales_forecasts'].append(fba_forecast('P2', daily_rate=5))
        data_source.tables['product_suppliers'].append(supplier('P2'))
        data_source.suggestions.append({'id': 'S1', 'type': 'purchase-order', 'status': 'pending',
                                        'product_id': 'P1', 'destination_location_id': 'LOC-FBA'})

        result = generate_replenishment_suggestions(data_source, today=TODAY)

        assert result['po_suggestion_count'] == 2
        assert result['inserted_count'] == 1
        assert len(result['errors']) == 1
        assert "Failed to insert suggestion for SKU-1" in result['errors'][0]


class TestGenerateSuggestions:
    """Test the single entry point"""

    def test_inserts_and_updates_timestamp(self, critical_po_source):
        """Test suggestions are stored and the last-calculated time is set"""
        result = generate_replenishment_suggestions(critical_po_source, today=TODAY)

        assert result['transfer_suggestion_count'] == 0
        assert result['po_suggestion_count'] == 1
        assert result['inserted_count'] == 1
        assert result['errors'] == []
        assert critical_po_source.settings['last_calculated_at'] is not None

        record = critical_po_source.suggestions[0]
        assert record['type'] == 'purchase-order'
        assert record['status'] == 'pending'
        assert record['supplier_name'] == 'Acme Supply'
        assert record['recommended_qty'] == 390
        assert 'generated_at' in record
        assert record['reasoning'][0]['message'] == 'Current stock level'

    def test_insert_failure_is_partial_success(self, critical_po_source):
        """Test one failed insert does not block the others"""
        class FlakySource(DataFrameDataSource):
            def insert_suggestion(self, record):
                if record['sku'] == 'SKU-2':
                    raise RuntimeError("write timeout")
                super().insert_suggestion(record)

        data_source = FlakySource(
            tables={name: list(rows) for name, rows in critical_po_source.tables.items()},
            settings=critical_po_source.settings,
        )
        data_source.tables['inventory_batches'].append(batch('P2', FBA_LOCATION, 20, sku='SKU-2'))
        data_source.tables['sales_forecasts'].append(fba_forecast('P2', daily_rate=5))
        data_source.tables['product_suppliers'].append(supplier('P2'))

        result = generate_replenishment_suggestions(data_source, today=TODAY)

        assert result['po_suggestion_count'] == 2
        assert result['inserted_count'] == 1
        assert result['errors'] == ["Failed to insert suggestion for SKU-2: write timeout"]
        assert data_source.settings['last_calculated_at'] is not None

    def test_missing_settings_aborts(self):
        """Test a run without settings produces nothing and reports the error"""
        data_source = DataFrameDataSource(tables={'inventory_batches': [batch('P1', FBA_LOCATION, 50)]})
        result = generate_replenishment_suggestions(data_source, today=TODAY)

        assert result['errors'] == ["Failed to fetch intelligence settings"]
        assert result['inserted_count'] == 0
        assert result['transfer_suggestion_count'] == 0
        assert result['po_suggestion_count'] == 0
        assert data_source.suggestions == []

    def test_stock_fetch_failure_aborts(self, critical_po_source):
        """Test a failed stock fetch aborts without touching the timestamp"""
        class NoStockSource(DataFrameDataSource):
            def fetch_stock_batches(self):
                raise RuntimeError("relation does not exist")

        data_source = NoStockSource(settings=default_settings())
        result = generate_replenishment_suggestions(data_source, today=TODAY)

        assert len(result['errors']) == 1
        assert result['errors'][0].startswith("Failed to fetch stock levels")
        assert data_source.settings['last_calculated_at'] is None

    def test_secondary_fetch_failure_degrades(self, critical_po_source):
        """Test a failed route fetch is a warning and the run continues"""
        class NoRoutesSource(DataFrameDataSource):
            def fetch_shipping_routes(self):
                raise RuntimeError("timeout")

        data_source = NoRoutesSource(
            tables={name: list(rows) for name, rows in critical_po_source.tables.items()},
            settings=critical_po_source.settings,
        )
        result = generate_replenishment_suggestions(data_source, today=TODAY)

        assert result['errors'] == []
        assert result['inserted_count'] == 1
        assert_log_contains(result['logs'], "WARNING: Could not load shipping routes")

    def test_write_failures_are_collected(self, critical_po_source):
        """Test failed inserts and a failed timestamp update are reported, not raised"""
        class ReadOnlySource(DataFrameDataSource):
            def insert_suggestion(self, record):
                raise RuntimeError("disk full")

            def update_last_calculated(self, timestamp):
                raise RuntimeError("read only")

        data_source = ReadOnlySource(
            tables={name: list(rows) for name, rows in critical_po_source.tables.items()},
            settings=critical_po_source.settings,
        )
        result = generate_replenishment_suggestions(data_source, today=TODAY)

        assert result['po_suggestion_count'] == 1
        assert result['inserted_count'] == 0
        assert any("disk full" in e for e in result['errors'])
        assert any("read only" in e for e in result['errors'])

    def test_unexpected_error_never_raises(self, critical_po_source, monkeypatch):
        """Test an unexpected failure is returned as a calculation error"""
        def boom(*args, **kwargs):
            raise ValueError("bad forecast row")

        monkeypatch.setattr(replenishment_planning, 'evaluate_stock_level', boom)
        result = generate_replenishment_suggestions(critical_po_source, today=TODAY)

        assert result['errors'] == ["Calculation error: bad forecast row"]
        assert result['inserted_count'] == 0
        # Not a setup failure, so the run still counts as calculated
        assert critical_po_source.settings['last_calculated_at'] is not None

    def test_calculation_error_keeps_earlier_suggestions(self, critical_po_source, monkeypatch):
        """Test suggestions built before a failing pair are still inserted"""
        critical_po_source.tables['inventory_batches'].append(batch('P2', FBA_LOCATION, 20, sku='SKU-2'))
        critical_po_source.tables['sales_forecasts'].append(fba_forecast('P2', daily_rate=5))
        critical_po_source.tables['product_suppliers'].append(supplier('P2'))

        evaluate = replenishment_planning.evaluate_stock_level

        def fail_for_p2(stock, *args, **kwargs):
            if stock.product_id == 'P2':
                raise ValueError("bad forecast row")
            return evaluate(stock, *args, **kwargs)

        monkeypatch.setattr(replenishment_planning, 'evaluate_stock_level', fail_for_p2)
        result = generate_replenishment_suggestions(critical_po_source, today=TODAY)

        assert result['errors'] == ["Calculation error: bad forecast row"]
        assert result['po_suggestion_count'] == 1
        assert result['inserted_count'] == 1
        assert critical_po_source.suggestions[0]['product_id'] == 'P1'

    def test_calculate_suggestions_returns_partial_results(self, critical_po_source, monkeypatch):
        """Test the calculation pass returns what it built alongside the error"""
        critical_po_source.tables['inventory_batches'].append(batch('P2', FBA_LOCATION, 20, sku='SKU-2'))
        evaluate = replenishment_planning.evaluate_stock_level

        def fail_for_p2(stock, *args, **kwargs):
            if stock.product_id == 'P2':
                raise ValueError("bad forecast row")
            return evaluate(stock, *args, **kwargs)

        monkeypatch.setattr(replenishment_planning, 'evaluate_stock_level', fail_for_p2)
        transfers, pos, errors, _ = calculate_suggestions(critical_po_source, today=TODAY)

        assert transfers == []
        assert [s.product_id for s in pos] == ['P1']
        assert errors == ["Calculation error: bad forecast row"]


class TestReporting:
    """Test summaries and reasoning helpers"""

    def test_build_reasoning_unknown_days(self):
        """Test days remaining shows Unknown without a rate"""
        reasoning = build_reasoning(20, 0, None, 0)
        assert reasoning[1]['value'] == '0.0'
        assert reasoning[2]['value'] == 'Unknown'

    def test_summary_by_urgency(self, critical_po_source, transfer_source):
        """Test suggestions are counted and summed per urgency and type"""
        _, pos, _, _ = calculate_suggestions(critical_po_source, today=TODAY)
        transfers, _, _, _ = calculate_suggestions(transfer_source, today=TODAY)

        summary = get_suggestion_summary_by_urgency(pos + transfers)

        assert_columns_exist(summary, ['urgency', 'type', 'suggestion_count', 'total_qty'])
        assert len(summary) == 2
        assert set(summary['type']) == {'purchase-order', 'transfer'}
        assert (summary['urgency'] == 'critical').all()
        assert summary['total_qty'].sum() == 780

    def test_summary_empty(self):
        """Test an empty run gives an empty summary"""
        summary = get_suggestion_summary_by_urgency([])
        assert summary.empty
        assert_columns_exist(summary, ['urgency', 'type', 'suggestion_count', 'total_qty'])
