"""
DatabaseSink against in-memory SQLite.
"""
from datetime import datetime
from decimal import Decimal

import pytest

from cohort_sync.exceptions import DatabaseError
from cohort_sync.models import Customer, Order, OrderLineItem, create_db_engine, init_db, make_session_factory
from cohort_sync.services.sink import DatabaseSink


def _customer(ext_id, email="a@example.com", created_at=datetime(2025, 1, 5)):
    return {
        "shopify_customer_id": ext_id,
        "email": email,
        "first_name": "A",
        "last_name": "B",
        "phone": None,
        "orders_count": 1,
        "total_spent": Decimal("10.00"),
        "tags": ["vip"],
        "created_at": created_at,
        "updated_at": datetime(2025, 1, 6),
    }


def _order(ext_id, customer_id, processed_at, shopify_customer_id="c1"):
    return {
        "shopify_order_id": ext_id,
        "order_number": f"#{ext_id}",
        "customer_id": customer_id,
        "shopify_customer_id": shopify_customer_id,
        "total_price": Decimal("100.00"),
        "financial_status": "PAID",
        "fulfillment_status": "FULFILLED",
        "tags": [],
        "sales_channel": "web",
        "processed_at": processed_at,
        "created_at": processed_at,
        "synced_at": datetime(2025, 7, 1),
    }


def _line_item(order_id, shopify_order_id, title="深睡寶寶"):
    return {
        "order_id": order_id,
        "shopify_order_id": shopify_order_id,
        "title": title,
        "product_type": title,
        "quantity": 1,
        "price": Decimal("100.00"),
        "created_at": datetime(2025, 1, 5),
        "synced_at": datetime(2025, 7, 1),
    }


class TestUpsert:

    def test_upsert_keeps_surrogate_id_and_created_at(self, sqlite_sink):
        sqlite_sink.upsert("customers", [_customer("c1")], conflict_column="shopify_customer_id",
                           preserve_columns=("created_at",))
        first_id = sqlite_sink.fetch_id_map("customers", "shopify_customer_id")["c1"]

        sqlite_sink.upsert(
            "customers",
            [_customer("c1", email="new@example.com", created_at=datetime(2025, 3, 1))],
            conflict_column="shopify_customer_id",
            preserve_columns=("created_at",),
        )

        db = make_session_factory(sqlite_sink.engine)()
        try:
            customer = db.query(Customer).filter(Customer.shopify_customer_id == "c1").one()
            assert customer.id == first_id
            assert customer.email == "new@example.com"
            assert customer.created_at == datetime(2025, 1, 5)
        finally:
            db.close()
        assert sqlite_sink.count("customers") == 1

    def test_insert_returns_surrogate_ids(self, sqlite_sink):
        rows = sqlite_sink.insert(
            "orders",
            [_order("o1", None, datetime(2025, 1, 5)), _order("o2", None, datetime(2025, 1, 6))],
            returning=("id", "shopify_order_id"),
        )
        assert {row["shopify_order_id"] for row in rows} == {"o1", "o2"}
        assert sqlite_sink.fetch_id_map("orders", "shopify_order_id") == {
            row["shopify_order_id"]: row["id"] for row in rows
        }

    def test_duplicate_insert_is_integrity_error(self, sqlite_sink):
        sqlite_sink.insert("orders", [_order("o1", None, datetime(2025, 1, 5))])
        with pytest.raises(DatabaseError) as exc:
            sqlite_sink.insert("orders", [_order("o1", None, datetime(2025, 1, 5))])
        assert exc.value.code == "integrity"
        assert not exc.value.transient

    def test_unknown_table(self, sqlite_sink):
        with pytest.raises(DatabaseError):
            sqlite_sink.insert("products", [{"id": 1}])


class TestIdMap:

    def test_paged_full_read(self, sqlite_sink):
        sqlite_sink.upsert("customers", [_customer(f"c{i}") for i in range(7)], conflict_column="shopify_customer_id")
        id_map = sqlite_sink.fetch_id_map("customers", "shopify_customer_id", page_size=3)
        assert len(id_map) == 7

    def test_restricted_to_keys(self, sqlite_sink):
        sqlite_sink.upsert("customers", [_customer(f"c{i}") for i in range(5)], conflict_column="shopify_customer_id")
        id_map = sqlite_sink.fetch_id_map("customers", "shopify_customer_id", keys=["c1", "c3", "missing"], page_size=2)
        assert set(id_map) == {"c1", "c3"}


def test_delete_orders_cascade(sqlite_sink):
    rows = sqlite_sink.insert(
        "orders",
        [_order("o1", None, datetime(2025, 1, 5)), _order("o2", None, datetime(2025, 1, 6))],
        returning=("id", "shopify_order_id"),
    )
    ids = {row["shopify_order_id"]: row["id"] for row in rows}
    sqlite_sink.insert("order_line_items", [_line_item(ids["o1"], "o1"), _line_item(ids["o1"], "o1"), _line_item(ids["o2"], "o2")])

    assert sqlite_sink.order_ids_with_line_items(ids.values()) == set(ids.values())
    assert sqlite_sink.delete_orders_cascade(["o1"]) == (1, 2)
    assert sqlite_sink.count("orders") == 1
    assert sqlite_sink.count("order_line_items") == 1


def test_period_counts(sqlite_sink):
    sqlite_sink.upsert("customers", [_customer("x"), _customer("y")], conflict_column="shopify_customer_id")
    cust = sqlite_sink.fetch_id_map("customers", "shopify_customer_id")
    rows = sqlite_sink.insert(
        "orders",
        [
            _order("a", cust["x"], datetime(2025, 1, 5), "x"),
            _order("b", cust["x"], datetime(2025, 3, 5), "x"),
            _order("c", cust["y"], datetime(2025, 1, 20), "y"),
            _order("g", None, datetime(2025, 1, 21), "guest-g"),
        ],
        returning=("id", "shopify_order_id"),
    )
    ids = {row["shopify_order_id"]: row["id"] for row in rows}
    sqlite_sink.insert("order_line_items", [_line_item(ids[k], k) for k in ("a", "b", "c")])

    counts = sqlite_sink.period_counts(datetime(2025, 1, 1), datetime(2025, 2, 1))

    assert counts == {"orders": 3, "customers": 2, "line_items": 2, "new_customers": 2, "second_orders": 1}


def test_period_counts_window_is_half_open(sqlite_sink):
    sqlite_sink.insert(
        "orders",
        [
            _order("last", None, datetime(2025, 1, 31, 23, 59, 59, 500000), "guest-last"),
            _order("next", None, datetime(2025, 2, 1), "guest-next"),
        ],
    )

    january = sqlite_sink.period_counts(datetime(2025, 1, 1), datetime(2025, 2, 1))
    february = sqlite_sink.period_counts(datetime(2025, 2, 1), datetime(2025, 3, 1))

    assert january["orders"] == 1
    assert february["orders"] == 1


def test_order_facts(sqlite_sink):
    sqlite_sink.upsert("customers", [_customer("x")], conflict_column="shopify_customer_id")
    cust = sqlite_sink.fetch_id_map("customers", "shopify_customer_id")
    rows = sqlite_sink.insert("orders", [_order("a", cust["x"], datetime(2025, 1, 5), "x")], returning=("id",))
    sqlite_sink.insert("order_line_items", [_line_item(rows[0]["id"], "a", title="天皇丸")])

    facts = sqlite_sink.fetch_order_facts()

    assert facts == [{
        "customer_id": cust["x"],
        "shopify_order_id": "a",
        "processed_at": datetime(2025, 1, 5),
        "titles": ["天皇丸"],
        "product_types": ["天皇丸"],
    }]


class TestCheckpoints:

    def test_round_trip(self, sqlite_sink):
        assert sqlite_sink.get_checkpoint("2025-01") is None
        sqlite_sink.save_checkpoint("2025-01", "in_progress")
        sqlite_sink.save_checkpoint("2025-01", "success", counts={"orders": 3, "customers": 2, "line_items": 3})

        checkpoint = sqlite_sink.get_checkpoint("2025-01")
        assert checkpoint["sync_status"] == "success"
        assert checkpoint["orders_synced"] == 3
        assert checkpoint["last_synced_at"] is not None

    def test_failure_keeps_error(self, sqlite_sink):
        sqlite_sink.save_checkpoint("2025-02", "failed", error="[network] boom")
        assert sqlite_sink.get_checkpoint("2025-02")["last_error"] == "[network] boom"


def test_routines_unsupported_on_sqlite(sqlite_sink):
    with pytest.raises(DatabaseError) as exc:
        sqlite_sink.call("classify_new_customers")
    assert exc.value.code == "unsupported"


def test_routine_name_validated(sqlite_sink):
    with pytest.raises(DatabaseError) as exc:
        sqlite_sink.call("x(); DROP TABLE orders; --")
    assert exc.value.code == "programming"


def test_init_db_is_repeatable():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    init_db(engine)
    sink = DatabaseSink(engine)
    assert sink.count("orders") == 0
    assert {t.name for t in (Customer.__table__, Order.__table__, OrderLineItem.__table__)} == {
        "customers", "orders", "order_line_items"
    }
    engine.dispose()
