"""
Helper utilities
"""
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional

from dateutil import parser as date_parser


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """Safely divide two numbers"""
    try:
        return numerator / denominator if denominator != 0 else default
    except (TypeError, ZeroDivisionError):
        return default


def calculate_percentage_change(current: float, previous: float) -> Optional[float]:
    """Calculate percentage change between two values"""
    if previous == 0:
        return None
    return ((current - previous) / previous) * 100


def chunk_list(lst: List, chunk_size: int) -> List[List]:
    """Split list into chunks"""
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    return [lst[i:i + chunk_size] for i in range(0, len(lst), chunk_size)]


def parse_decimal(value: Any, default: Decimal = Decimal("0")) -> Decimal:
    """Parse a money amount; malformed or missing values fall back to default"""
    if value is None or isinstance(value, bool):
        return default
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return default
    if not parsed.is_finite():
        return default
    return parsed


def parse_non_negative_int(value: Any, default: int = 0) -> int:
    """Parse a count; malformed, fractional-garbage or negative values fall back to default"""
    if value is None or isinstance(value, bool):
        return default
    try:
        parsed = int(str(value).strip())
    except ValueError:
        try:
            parsed = int(Decimal(str(value).strip()))
        except (InvalidOperation, ValueError, OverflowError):
            return default
    return parsed if parsed >= 0 else default


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a timestamp to naive UTC; None when missing or unparseable"""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = date_parser.isoparse(str(value))
        except (ValueError, OverflowError):
            try:
                parsed = date_parser.parse(str(value))
            except (ValueError, OverflowError):
                return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def strip_gid(value: Any) -> Optional[str]:
    """
    Normalize a Shopify ID to its bare form.

    "gid://shopify/Customer/123" -> "123"; plain ids pass through.
    Returns None for missing or blank ids.
    """
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    if not text:
        return None
    if text.startswith("gid://"):
        text = text.rsplit("/", 1)[-1]
        # Some GIDs carry a query suffix, e.g. ".../Order/1?foo=bar"
        text = text.split("?", 1)[0]
    return text or None
