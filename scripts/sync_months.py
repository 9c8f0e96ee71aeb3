#!/usr/bin/env python3
"""
Monthly Shopify Sync

Syncs one month, a range of months, or every month since the first sync
period into the database, then triggers cohort classification and the
aggregate refresh.

Usage:
    python scripts/sync_months.py --year 2025 --month 1
    python scripts/sync_months.py --from 2025-01 --to 2025-06
    python scripts/sync_months.py --all [--force] [--skip-existing-check]
"""
import asyncio
import argparse
import sys
import os
from datetime import datetime

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cohort_sync.config import get_settings
from cohort_sync.exceptions import SyncError
from cohort_sync.services.orchestrator import PeriodResult, SyncOrchestrator
from cohort_sync.services.periods import Period, all_periods_since, parse_period, period_range
from cohort_sync.services.validation_service import format_comparison_report


def print_header(text):
    print(f"\n{'='*70}")
    print(f"  {text}")
    print('='*70)


def print_period(result: PeriodResult):
    icon = {"done": "✅", "skipped": "⏭️ ", "failed": "❌"}.get(result.state.value, "•")
    written = result.written_counts()
    print(
        f"{icon} {result.period_key}: {result.state.value} "
        f"(fetched {result.fetched_orders}, wrote {written['customers']} customers / "
        f"{written['orders']} orders / {written['line_items']} line items, "
        f"{result.duration_seconds:.1f}s)"
    )
    if result.counts:
        print(f"   stored: {result.counts}")
    for warning in result.warnings:
        print(f"   ⚠️  {warning}")
    if result.error:
        print(f"   error: {result.error}")
    if result.comparison:
        print(format_comparison_report(result.comparison))


def parse_args():
    parser = argparse.ArgumentParser(description="Sync Shopify orders month by month")
    parser.add_argument("--year", type=int, help="Year of a single month to sync")
    parser.add_argument("--month", type=int, help="Month (1-12) of a single month to sync")
    parser.add_argument("--from", dest="start", help="First month of a range (YYYY-MM)")
    parser.add_argument("--to", dest="end", help="Last month of a range (YYYY-MM, default: --from)")
    parser.add_argument("--all", action="store_true", help="Sync every month since FIRST_SYNC_PERIOD")
    parser.add_argument("--force", action="store_true", help="Re-sync and overwrite months that already have data")
    parser.add_argument("--skip-existing-check", action="store_true", help="Don't skip months that already have data")
    return parser.parse_args()


def select_periods(args, settings):
    if args.all:
        return all_periods_since(settings.first_sync_period, settings.sync_timezone)
    if args.start:
        start = parse_period(args.start)
        end = parse_period(args.end) if args.end else start
        return period_range(start, end)
    if args.year and args.month:
        return [Period(args.year, args.month)]
    return None


async def main():
    args = parse_args()
    settings = get_settings()

    try:
        periods = select_periods(args, settings)
    except ValueError as e:
        print(f"❌ {e}")
        sys.exit(2)
    if not periods:
        print("❌ Specify --year and --month, --from [--to], or --all")
        sys.exit(2)

    print_header(f"Shopify Cohort Sync: {periods[0]} to {periods[-1]} ({len(periods)} months)")
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    orchestrator = SyncOrchestrator.from_settings(settings)

    # A single month propagates its failure; a batch keeps going
    if len(periods) == 1:
        try:
            result = await orchestrator.sync_period(
                periods[0],
                force_sync=args.force,
                skip_existing_check=args.skip_existing_check,
            )
        except SyncError as e:
            print(f"\n❌ {periods[0]} failed: {e}")
            sys.exit(1)
        print_header("RESULT")
        print_period(result)
        return

    summary = await orchestrator.sync_periods(
        periods,
        force_sync=args.force,
        skip_existing_check=args.skip_existing_check,
    )

    print_header("SUMMARY")
    for result in summary.results:
        print_period(result)

    print(f"\n{len(summary.succeeded)} synced, {len(summary.skipped)} skipped, {len(summary.failed)} failed")
    if not summary.success:
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
