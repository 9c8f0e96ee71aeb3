"""
Shared fixtures: raw Shopify order builders, an in-memory fake sink and a
real SQLite-backed DatabaseSink.
"""
import time
from typing import Any, Dict, List, Optional

import pytest

from cohort_sync.exceptions import DatabaseError
from cohort_sync.models import create_db_engine, init_db
from cohort_sync.services.sink import DatabaseSink
from cohort_sync.utils.retry import RetryPolicy


FAST_DB_RETRY = RetryPolicy(max_attempts=3, base_delay=0.001, max_delay=0.01)


def build_line_item(line_id, title="深睡寶寶", product_type=None, quantity=1, price="100.00", sku=None) -> Dict[str, Any]:
    return {
        "id": f"gid://shopify/LineItem/{line_id}",
        "title": title,
        "quantity": quantity,
        "sku": sku,
        "vendor": "Shop",
        "originalUnitPriceSet": {"shopMoney": {"amount": price}} if price is not None else None,
        "variant": {
            "id": f"gid://shopify/ProductVariant/{line_id}0",
            "sku": sku or f"SKU-{line_id}",
            "product": {
                "id": f"gid://shopify/Product/{line_id}00",
                "productType": product_type if product_type is not None else title,
                "vendor": "Shop",
            },
        },
    }


def build_order(
    order_id,
    processed_at: Optional[str] = "2025-01-05T10:00:00Z",
    customer_id=None,
    email: Optional[str] = None,
    line_items: Optional[List[Dict[str, Any]]] = None,
    total: Any = "100.00",
    tags: Any = None,
    created_at: Optional[str] = None,
    customer: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    if customer is None and customer_id is not None:
        customer = {
            "id": f"gid://shopify/Customer/{customer_id}",
            "email": email if email is not None else f"c{customer_id}@example.com",
            "firstName": "First",
            "lastName": f"Last{customer_id}",
            "phone": None,
            "numberOfOrders": "2",
            "amountSpent": {"amount": "250.00"},
            "tags": "vip, wholesale",
            "createdAt": "2024-06-01T00:00:00Z",
            "updatedAt": "2025-03-01T00:00:00Z",
        }
    return {
        "id": f"gid://shopify/Order/{order_id}",
        "name": f"#{order_id}",
        "processedAt": processed_at,
        "createdAt": created_at if created_at is not None else processed_at,
        "tags": tags if tags is not None else [],
        "sourceName": "web",
        "displayFinancialStatus": "PAID",
        "displayFulfillmentStatus": "FULFILLED",
        "totalPriceSet": {"shopMoney": {"amount": total}},
        "customer": customer,
        "lineItems": {"edges": [{"node": item} for item in (line_items or [])]},
        "fulfillments": [],
    }


class FakeSink:
    """
    Dict-backed stand-in for DatabaseSink.

    `failures` maps (method, call number) to the exception that call raises.
    """

    def __init__(self, failures: Optional[Dict[tuple, Exception]] = None, call_delay: float = 0.0):
        self.failures = failures or {}
        self.call_delay = call_delay
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.line_items: List[Dict[str, Any]] = []
        self.calls: Dict[str, int] = {}
        self.routines: List[str] = []
        self.checkpoints: List[tuple] = []
        self.counts = {"orders": 0, "customers": 0, "line_items": 0, "new_customers": 0, "second_orders": 0}
        self.checkpoint_error: Optional[Exception] = None
        self._next_id = 1

    def _tick(self, method: str):
        self.calls[method] = self.calls.get(method, 0) + 1
        error = self.failures.get((method, self.calls[method]))
        if error is not None:
            raise error

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id - 1

    def fetch_id_map(self, table, key_column, keys=None, page_size=1000):
        self._tick("fetch_id_map")
        store = self.customers if table == "customers" else self.orders
        id_map = {key: row["id"] for key, row in store.items()}
        if keys is not None:
            wanted = set(keys)
            id_map = {key: value for key, value in id_map.items() if key in wanted}
        return id_map

    def upsert(self, table, rows, conflict_column, preserve_columns=(), returning=None):
        self._tick("upsert")
        for row in rows:
            existing = self.customers.get(row[conflict_column])
            if existing:
                existing.update({k: v for k, v in row.items() if k not in preserve_columns})
            else:
                self.customers[row[conflict_column]] = {**row, "id": self._new_id()}
        return []

    def insert(self, table, rows, returning=None):
        self._tick(f"insert:{table}")
        if table == "orders":
            inserted = []
            for row in rows:
                stored = {**row, "id": self._new_id()}
                self.orders[row["shopify_order_id"]] = stored
                inserted.append({"id": stored["id"], "shopify_order_id": stored["shopify_order_id"]})
            return inserted if returning else []
        self.line_items.extend(dict(row) for row in rows)
        return []

    def delete_orders_cascade(self, shopify_order_ids):
        self._tick("delete_orders_cascade")
        removed_ids = {self.orders.pop(key)["id"] for key in shopify_order_ids if key in self.orders}
        before = len(self.line_items)
        self.line_items = [li for li in self.line_items if li["order_id"] not in removed_ids]
        return len(removed_ids), before - len(self.line_items)

    def order_ids_with_line_items(self, order_ids):
        self._tick("order_ids_with_line_items")
        wanted = set(order_ids)
        return {li["order_id"] for li in self.line_items if li["order_id"] in wanted}

    def period_counts(self, start, end):
        self._tick("period_counts")
        return dict(self.counts)

    def call(self, function_name, args=None):
        self._tick("call")
        self.routines.append(function_name)
        if self.call_delay:
            time.sleep(self.call_delay)
        return []

    def save_checkpoint(self, period_key, status, counts=None, error=None):
        if self.checkpoint_error is not None:
            raise self.checkpoint_error
        self.checkpoints.append((period_key, status))


class FakeClient:
    """Returns canned raw orders, or raises; per_period is keyed by the month of the end bound"""

    def __init__(self, orders=None, error: Optional[Exception] = None, per_period: Optional[Dict[str, Any]] = None):
        self.orders = orders or []
        self.error = error
        self.per_period = per_period or {}
        self.requests: List[tuple] = []

    async def fetch_orders_for_period(self, period_start, period_end):
        self.requests.append((period_start, period_end))
        outcome = self.per_period.get(period_end[:7], self.orders)
        if isinstance(outcome, Exception):
            raise outcome
        if self.error is not None:
            raise self.error
        return outcome


@pytest.fixture
def make_order():
    return build_order


@pytest.fixture
def make_line_item():
    return build_line_item


@pytest.fixture
def fake_sink():
    return FakeSink()


@pytest.fixture
def sqlite_sink():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield DatabaseSink(engine)
    engine.dispose()


@pytest.fixture
def transient_db_error():
    return DatabaseError("database is locked", code="operational")


@pytest.fixture
def permanent_db_error():
    return DatabaseError("null value in column", code="integrity")


@pytest.fixture
def fake_sink_factory():
    return FakeSink


@pytest.fixture
def fake_client_factory():
    return FakeClient


@pytest.fixture
def fast_db_retry():
    return FAST_DB_RETRY
