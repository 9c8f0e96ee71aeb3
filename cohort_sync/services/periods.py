"""
Calendar-month sync periods.

Month boundaries are taken in the shop's local timezone and converted to
naive UTC, which is how timestamps are stored.
"""
import calendar
import re
from dataclasses import dataclass
from datetime import datetime
from typing import List, Tuple

import pytz

_PERIOD_RE = re.compile(r"^(\d{4})-(\d{1,2})$")


@dataclass(frozen=True, order=True)
class Period:
    """One calendar month"""
    year: int
    month: int

    def __post_init__(self):
        if not 1 <= self.month <= 12:
            raise ValueError(f"Invalid month: {self.month}")

    @property
    def key(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    def bounds(self, tz_name: str = "Asia/Hong_Kong") -> Tuple[datetime, datetime]:
        """Inclusive (start, end) of the month in naive UTC"""
        tz = pytz.timezone(tz_name)
        last_day = calendar.monthrange(self.year, self.month)[1]
        start_local = tz.localize(datetime(self.year, self.month, 1, 0, 0, 0))
        end_local = tz.localize(datetime(self.year, self.month, last_day, 23, 59, 59))
        return (
            start_local.astimezone(pytz.UTC).replace(tzinfo=None),
            end_local.astimezone(pytz.UTC).replace(tzinfo=None),
        )

    def window(self, tz_name: str = "Asia/Hong_Kong") -> Tuple[datetime, datetime]:
        """Half-open [start, next month start) in naive UTC, for stored timestamps"""
        start, _ = self.bounds(tz_name)
        next_start, _ = self.next().bounds(tz_name)
        return start, next_start

    def api_bounds(self, tz_name: str = "Asia/Hong_Kong") -> Tuple[str, str]:
        """Bounds formatted for a Shopify search filter"""
        start, end = self.bounds(tz_name)
        return start.strftime("%Y-%m-%dT%H:%M:%SZ"), end.strftime("%Y-%m-%dT%H:%M:%SZ")

    def next(self) -> "Period":
        if self.month == 12:
            return Period(self.year + 1, 1)
        return Period(self.year, self.month + 1)

    def __str__(self) -> str:
        return self.key


def parse_period(value: str) -> Period:
    """Parse "YYYY-MM" into a Period"""
    match = _PERIOD_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid period '{value}', expected YYYY-MM")
    return Period(int(match.group(1)), int(match.group(2)))


def period_range(start: Period, end: Period) -> List[Period]:
    """All periods from start to end inclusive, in order"""
    if end < start:
        raise ValueError(f"Period range end {end} is before start {start}")
    periods = []
    current = start
    while current <= end:
        periods.append(current)
        current = current.next()
    return periods


def current_period(tz_name: str = "Asia/Hong_Kong") -> Period:
    now = datetime.now(pytz.timezone(tz_name))
    return Period(now.year, now.month)


def all_periods_since(first: str, tz_name: str = "Asia/Hong_Kong") -> List[Period]:
    """Every known period from the first sync month up to the current month"""
    return period_range(parse_period(first), current_period(tz_name))
