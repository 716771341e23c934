"""
Scheduled inventory intelligence run over a directory of CSV tables

Usage:
  python tools/run_intelligence.py --data-dir data --forecasts --suggestions

Recalculates sales forecasts and/or replenishment suggestions, then writes
suggestions, forecasts and settings back to the data directory.
"""
import argparse
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from data_loader import CsvDataSource
from demand_forecasting import calculate_sales_forecasts
from replenishment_planning import generate_replenishment_suggestions, get_suggestion_summary_by_urgency


def print_logs(logs, verbose=False):
    for message in logs:
        if verbose or not message.startswith('INFO:'):
            print(message)


def main(argv=None):
    parser = argparse.ArgumentParser(description='Run inventory intelligence calculations')
    parser.add_argument('--data-dir', type=str, default='data', help='Directory holding the CSV tables')
    parser.add_argument('--forecasts', action='store_true', help='Recalculate sales forecasts')
    parser.add_argument('--suggestions', action='store_true', help='Generate replenishment suggestions')
    parser.add_argument('--dry-run', action='store_true', help='Do not write results back to disk')
    parser.add_argument('--verbose', action='store_true', help='Print INFO log lines')
    args = parser.parse_args(argv)

    # Neither flag = run both
    run_forecasts = args.forecasts or not args.suggestions
    run_suggestions = args.suggestions or not args.forecasts

    data_source = CsvDataSource(args.data_dir)
    exit_code = 0

    if run_forecasts:
        forecast_result = calculate_sales_forecasts(data_source)
        print_logs(forecast_result['logs'], args.verbose)
        print(f"Forecasts: {forecast_result['forecasts_calculated']} calculated, "
              f"{forecast_result['forecasts_upserted']} saved")
        if forecast_result['errors']:
            exit_code = 1

    if run_suggestions:
        result = generate_replenishment_suggestions(data_source)
        print_logs(result['logs'], args.verbose)
        print(f"Suggestions: {result['transfer_suggestion_count']} transfer, "
              f"{result['po_suggestion_count']} purchase-order, {result['inserted_count']} inserted")

        summary = get_suggestion_summary_by_urgency(result['suggestions'])
        if not summary.empty:
            print(summary.to_string(index=False))

        for error in result['errors']:
            print(f"ERROR: {error}")
        if result['errors']:
            exit_code = 1

    if not args.dry_run:
        for path in data_source.save():
            print('Wrote', path)

    return exit_code


if __name__ == '__main__':
    sys.exit(main())
