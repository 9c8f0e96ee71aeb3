"""
Aggregate Validation Service

Compares counts read back from the sink with reference snapshots for a
period. Comparison is pure; loading and formatting are kept separate.
"""
import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from cohort_sync.utils.helpers import calculate_percentage_change
from cohort_sync.utils.logger import log


METRICS = ("orders", "customers", "line_items", "new_customers", "second_orders")


@dataclass
class MetricComparison:
    """Actual vs reference for one metric"""
    metric: str
    actual: int
    reference: int
    difference: int
    percent_difference: Optional[float]  # None when the reference is 0
    exact_match: bool
    within_tolerance: bool


@dataclass
class ComparisonReport:
    """Result of comparing a period's counts against its reference"""
    period_key: str
    tolerance: float
    metrics: List[MetricComparison] = field(default_factory=list)

    @property
    def all_match(self) -> bool:
        return all(m.exact_match for m in self.metrics)

    @property
    def all_within_tolerance(self) -> bool:
        return all(m.within_tolerance for m in self.metrics)

    @property
    def mismatches(self) -> List[MetricComparison]:
        return [m for m in self.metrics if not m.exact_match]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period": self.period_key,
            "tolerance": self.tolerance,
            "all_match": self.all_match,
            "all_within_tolerance": self.all_within_tolerance,
            "metrics": {
                m.metric: {
                    "actual": m.actual,
                    "reference": m.reference,
                    "difference": m.difference,
                    "percent_difference": m.percent_difference,
                }
                for m in self.metrics
            },
        }


def compare_aggregates(
    period_key: str,
    actual_counts: Dict[str, int],
    reference_counts: Dict[str, int],
    tolerance: float = 0.95
) -> ComparisonReport:
    """
    Compare actual counts with reference counts metric by metric.

    Only metrics present in the reference are compared. A metric is within
    tolerance when actual >= tolerance * reference; an exact match is
    reported separately.
    """
    report = ComparisonReport(period_key=period_key, tolerance=tolerance)

    for metric in METRICS:
        reference = reference_counts.get(metric)
        if reference is None:
            continue

        actual = int(actual_counts.get(metric) or 0)
        reference = int(reference)
        change = calculate_percentage_change(actual, reference)

        report.metrics.append(MetricComparison(
            metric=metric,
            actual=actual,
            reference=reference,
            difference=actual - reference,
            percent_difference=round(change, 1) if change is not None else None,
            exact_match=actual == reference,
            within_tolerance=actual >= reference * tolerance,
        ))

    return report


def format_comparison_report(report: ComparisonReport) -> str:
    """Render a comparison as a text table"""
    lines = [
        f"Period {report.period_key} (tolerance {report.tolerance:.0%})",
        f"{'Metric':<16}{'Actual':>10}{'Reference':>12}{'Diff':>8}{'Diff %':>9}  Status",
        "-" * 64,
    ]
    for m in report.metrics:
        pct = f"{m.percent_difference:+.1f}%" if m.percent_difference is not None else "n/a"
        if m.exact_match:
            status = "MATCH"
        elif m.within_tolerance:
            status = "CLOSE"
        else:
            status = "MISMATCH"
        lines.append(f"{m.metric:<16}{m.actual:>10}{m.reference:>12}{m.difference:>+8}{pct:>9}  {status}")

    lines.append("-" * 64)
    if report.all_match:
        lines.append("All metrics match exactly")
    elif report.all_within_tolerance:
        lines.append("All metrics within tolerance")
    else:
        lines.append(f"{len([m for m in report.metrics if not m.within_tolerance])} metrics below tolerance")
    return "\n".join(lines)


def load_reference_counts(path: str) -> Dict[str, Dict[str, int]]:
    """
    Load reference snapshots keyed by period ("YYYY-MM").

    A missing file means no references; an unreadable one is logged.
    """
    if not path or not os.path.exists(path):
        log.info(f"No reference data at {path}")
        return {}

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        log.warning(f"Could not read reference data {path}: {e}")
        return {}

    if not isinstance(data, dict):
        log.warning(f"Reference data {path} is not an object keyed by period")
        return {}

    return {
        str(period): {k: int(v) for k, v in counts.items() if isinstance(v, (int, float))}
        for period, counts in data.items()
        if isinstance(counts, dict)
    }
