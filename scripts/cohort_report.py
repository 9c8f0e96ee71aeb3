#!/usr/bin/env python3
"""
Cohort Report

Compares stored counts with the reference snapshots and prints the
retention table (overall, or for one product group).

Usage:
    python scripts/cohort_report.py [--from 2025-01] [--to 2025-06] [--product 深睡寶寶]
"""
import argparse
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cohort_sync.config import get_settings
from cohort_sync.services.cohort_report import ALL_GROUPS, build_retention_report, format_retention_report
from cohort_sync.services.periods import parse_period, period_range
from cohort_sync.services.sink import DatabaseSink
from cohort_sync.services.validation_service import (
    compare_aggregates,
    format_comparison_report,
    load_reference_counts,
)


def print_header(text):
    print(f"\n{'='*70}")
    print(f"  {text}")
    print('='*70)


def main():
    parser = argparse.ArgumentParser(description="Reference comparison and cohort retention report")
    parser.add_argument("--from", dest="start", help="First cohort month (YYYY-MM)")
    parser.add_argument("--to", dest="end", help="Last cohort month (YYYY-MM)")
    parser.add_argument("--product", default=ALL_GROUPS, help="Product group filter (default: ALL)")
    args = parser.parse_args()

    settings = get_settings()
    sink = DatabaseSink.from_settings(settings)
    references = load_reference_counts(settings.reference_data_path)

    if args.start:
        periods = period_range(parse_period(args.start), parse_period(args.end or args.start))
    else:
        periods = [parse_period(key) for key in sorted(references)]

    print_header("REFERENCE COMPARISON")
    complete = 0
    for period in periods:
        reference = references.get(period.key)
        if not reference:
            print(f"{period.key}: no reference data")
            continue
        start, end = period.window(settings.sync_timezone)
        report = compare_aggregates(
            period.key,
            sink.period_counts(start, end),
            reference,
            tolerance=settings.completion_tolerance,
        )
        if report.all_within_tolerance:
            complete += 1
        print(format_comparison_report(report))
        print()
    print(f"{complete}/{len(periods)} months complete")

    print_header(f"RETENTION ({args.product})")
    facts = sink.fetch_order_facts()
    rows = build_retention_report(facts, product_filter=args.product, tz_name=settings.sync_timezone)
    if periods:
        keys = {period.key for period in periods}
        rows = [row for row in rows if row.cohort_month in keys]
    print(format_retention_report(rows, title=f"Cohort retention: {args.product}"))


if __name__ == "__main__":
    main()
