"""
Cohort Retention Report

Groups customers into monthly cohorts by their first order, splits them by
the product group of that order and measures how many came back for a
second order, month by month (m0..m11).
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import pytz

from cohort_sync.utils.helpers import safe_divide

# Highest priority first; a first order containing several groups is
# assigned to the earliest one in this list
PRODUCT_GROUPS = ("深睡寶寶", "天皇丸", "皇后丸")
OTHER_GROUP = "Others"
ALL_GROUPS = "ALL"
RETENTION_MONTHS = 12


def classify_product_group(label: Optional[str]) -> str:
    """Product group of a line item title or product type"""
    if not label:
        return OTHER_GROUP
    for group in PRODUCT_GROUPS:
        if group in label:
            return group
    return OTHER_GROUP


def primary_product_group(labels: Iterable[Optional[str]]) -> str:
    """Highest-priority product group among an order's line items"""
    groups = {classify_product_group(label) for label in labels}
    for group in PRODUCT_GROUPS:
        if group in groups:
            return group
    return OTHER_GROUP


@dataclass
class CohortRow:
    cohort_month: str
    new_customers: int = 0
    second_orders: int = 0
    monthly_counts: List[int] = field(default_factory=lambda: [0] * RETENTION_MONTHS)

    @property
    def retention_rate(self) -> float:
        return round(safe_divide(self.second_orders, self.new_customers) * 100, 1)

    @property
    def distribution(self) -> Dict[str, float]:
        """m0..m11 second-order shares of new customers, in percent"""
        return {
            f"m{i}": round(safe_divide(count, self.new_customers) * 100, 1)
            for i, count in enumerate(self.monthly_counts)
        }

    def breakdown_consistent(self, allowance: float = 0.2) -> bool:
        """Whether m0..m11 add up to the retention rate (rounding allowed)"""
        if not self.new_customers:
            return False
        return abs(sum(self.distribution.values()) - self.retention_rate) < allowance

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cohort_month": self.cohort_month,
            "new_customers": self.new_customers,
            "second_orders": self.second_orders,
            "retention_rate": self.retention_rate,
            **self.distribution,
        }


def _local(value: datetime, tz) -> datetime:
    if value.tzinfo is None:
        value = pytz.UTC.localize(value)
    return value.astimezone(tz)


def build_retention_report(
    order_facts: List[Dict[str, Any]],
    product_filter: Optional[str] = None,
    tz_name: str = "Asia/Hong_Kong"
) -> List[CohortRow]:
    """
    Build per-cohort retention rows from order facts.

    Args:
        order_facts: dicts with customer_id, processed_at (naive UTC) and
            titles/product_types of the order's line items
        product_filter: keep only customers whose first order falls in this
            product group (None or "ALL" keeps everyone)
        tz_name: timezone used for month boundaries

    Returns:
        CohortRow list sorted by cohort month
    """
    tz = pytz.timezone(tz_name)

    by_customer: Dict[Any, List[Dict[str, Any]]] = {}
    for fact in order_facts:
        if fact.get("customer_id") is None or fact.get("processed_at") is None:
            continue
        by_customer.setdefault(fact["customer_id"], []).append(fact)

    rows: Dict[str, CohortRow] = {}
    for facts in by_customer.values():
        facts.sort(key=lambda f: f["processed_at"])
        first = facts[0]

        if product_filter and product_filter != ALL_GROUPS:
            labels = list(first.get("product_types") or []) + list(first.get("titles") or [])
            if primary_product_group(labels) != product_filter:
                continue

        first_local = _local(first["processed_at"], tz)
        cohort_month = first_local.strftime("%Y-%m")
        row = rows.setdefault(cohort_month, CohortRow(cohort_month=cohort_month))
        row.new_customers += 1

        second = next((f for f in facts[1:] if f["processed_at"] > first["processed_at"]), None)
        if second is None:
            continue

        row.second_orders += 1
        second_local = _local(second["processed_at"], tz)
        month_diff = (second_local.year - first_local.year) * 12 + (second_local.month - first_local.month)
        if 0 <= month_diff < RETENTION_MONTHS:
            row.monthly_counts[month_diff] += 1

    return [rows[key] for key in sorted(rows)]


def format_retention_report(rows: List[CohortRow], title: str = "Cohort retention") -> str:
    """Render cohort rows as a text table"""
    month_headers = "".join(f"{f'm{i}':>6}" for i in range(RETENTION_MONTHS))
    lines = [
        title,
        f"{'Cohort':<9}{'New':>6}{'2nd':>6}{'Ret %':>7}{month_headers}",
    ]
    for row in rows:
        shares = "".join(f"{value:>6.1f}" for value in row.distribution.values())
        lines.append(
            f"{row.cohort_month:<9}{row.new_customers:>6}{row.second_orders:>6}{row.retention_rate:>7.1f}{shares}"
        )

    total_new = sum(row.new_customers for row in rows)
    total_second = sum(row.second_orders for row in rows)
    lines.append(
        f"{'Total':<9}{total_new:>6}{total_second:>6}"
        f"{round(safe_divide(total_second, total_new) * 100, 1):>7.1f}"
    )
    return "\n".join(lines)
