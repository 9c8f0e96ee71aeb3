"""
Database Sink

Thin SQLAlchemy layer the writer and orchestrator talk to. Everything that
fails here surfaces as a DatabaseError with a code the retry policy can
classify.
"""
import re
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import and_, delete, distinct, func, insert, select, text
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine

from cohort_sync.exceptions import DatabaseError, SyncError
from cohort_sync.models import (
    Customer,
    Order,
    OrderLineItem,
    SyncCheckpoint,
    create_db_engine,
    init_db,
    make_session_factory,
)
from cohort_sync.utils.helpers import chunk_list
from cohort_sync.utils.logger import log

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

TABLES = {
    "customers": Customer.__table__,
    "orders": Order.__table__,
    "order_line_items": OrderLineItem.__table__,
}


class DatabaseSink:
    """
    Relational sink for customers, orders and line items

    Upserts use the INSERT .. ON CONFLICT construct of the PostgreSQL or
    SQLite dialect. Each public method runs in its own transaction.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self.dialect = engine.dialect.name
        self.schema = (engine.get_execution_options().get("schema_translate_map") or {}).get(None)
        self.SessionLocal = make_session_factory(engine)

    @classmethod
    def from_settings(cls, settings, initialize: bool = True) -> "DatabaseSink":
        engine = create_db_engine(settings.database_url, schema=settings.db_schema)
        if initialize:
            init_db(engine)
        return cls(engine)

    @contextmanager
    def _translate_errors(self, operation: str):
        """Map SQLAlchemy exceptions onto DatabaseError codes"""
        try:
            yield
        except SyncError:
            raise
        except sa_exc.OperationalError as e:
            raise DatabaseError(f"{operation} failed: {e.orig}", code="operational", original=e) from e
        except sa_exc.IntegrityError as e:
            raise DatabaseError(f"{operation} failed: {e.orig}", code="integrity", original=e) from e
        except sa_exc.DataError as e:
            raise DatabaseError(f"{operation} failed: {e.orig}", code="data", original=e) from e
        except sa_exc.ProgrammingError as e:
            raise DatabaseError(f"{operation} failed: {e.orig}", code="programming", original=e) from e
        except sa_exc.TimeoutError as e:
            raise DatabaseError(f"{operation} timed out: {e}", code="timeout", original=e) from e
        except sa_exc.SQLAlchemyError as e:
            raise DatabaseError(f"{operation} failed: {e}", code="unknown", original=e) from e

    def _table(self, name: str):
        table = TABLES.get(name)
        if table is None:
            raise DatabaseError(f"Unknown table '{name}'", code="programming")
        return table

    def _dialect_insert(self, table):
        if self.dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as dialect_insert
        elif self.dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert as dialect_insert
        else:
            raise DatabaseError(f"Upsert is not supported on {self.dialect}", code="unsupported")
        return dialect_insert(table)

    # ==================== Writes ====================

    def upsert(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        conflict_column: str,
        preserve_columns: Sequence[str] = (),
        returning: Optional[Sequence[str]] = None
    ) -> List[Dict[str, Any]]:
        """
        Insert rows, updating existing ones that collide on conflict_column.

        Columns in preserve_columns keep their stored value on update.
        Returns the requested columns of every affected row.
        """
        if not rows:
            return []

        tbl = self._table(table)
        with self._translate_errors(f"upsert into {table}"):
            stmt = self._dialect_insert(tbl).values(rows)
            skip = {conflict_column, "id", *preserve_columns}
            update_columns = {key: stmt.excluded[key] for key in rows[0] if key not in skip}
            if update_columns:
                stmt = stmt.on_conflict_do_update(index_elements=[conflict_column], set_=update_columns)
            else:
                stmt = stmt.on_conflict_do_nothing(index_elements=[conflict_column])
            if returning:
                stmt = stmt.returning(*[tbl.c[col] for col in returning])

            with self.engine.begin() as conn:
                result = conn.execute(stmt)
                return [dict(row._mapping) for row in result] if returning else []

    def insert(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        returning: Optional[Sequence[str]] = None
    ) -> List[Dict[str, Any]]:
        """Plain multi-row insert; fails the whole call on any conflict"""
        if not rows:
            return []

        tbl = self._table(table)
        with self._translate_errors(f"insert into {table}"):
            stmt = insert(tbl).values(rows)
            if returning:
                stmt = stmt.returning(*[tbl.c[col] for col in returning])
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
                return [dict(row._mapping) for row in result] if returning else []

    def delete_orders_cascade(self, shopify_order_ids: List[str]) -> Tuple[int, int]:
        """
        Delete orders and their line items in one transaction.

        Returns:
            (orders_deleted, line_items_deleted)
        """
        if not shopify_order_ids:
            return 0, 0

        orders = Order.__table__
        line_items = OrderLineItem.__table__
        orders_deleted = 0
        line_items_deleted = 0

        with self._translate_errors("delete orders"):
            with self.engine.begin() as conn:
                for chunk in chunk_list(list(shopify_order_ids), 500):
                    order_ids = select(orders.c.id).where(orders.c.shopify_order_id.in_(chunk))
                    line_items_deleted += conn.execute(
                        delete(line_items).where(line_items.c.order_id.in_(order_ids))
                    ).rowcount
                    orders_deleted += conn.execute(
                        delete(orders).where(orders.c.shopify_order_id.in_(chunk))
                    ).rowcount

        log.info(f"Deleted {orders_deleted} orders and {line_items_deleted} line items")
        return orders_deleted, line_items_deleted

    # ==================== Reads ====================

    def fetch_id_map(
        self,
        table: str,
        key_column: str,
        keys: Optional[Iterable[str]] = None,
        page_size: int = 1000
    ) -> Dict[str, int]:
        """
        External ID -> surrogate ID map for a table.

        With `keys`, only those external IDs are looked up; otherwise the
        whole table is read in pages of `page_size` rows.
        """
        tbl = self._table(table)
        key_col = tbl.c[key_column]
        id_map: Dict[str, int] = {}

        with self._translate_errors(f"read {table} id map"):
            with self.engine.connect() as conn:
                if keys is not None:
                    for chunk in chunk_list(list(keys), page_size):
                        rows = conn.execute(select(key_col, tbl.c.id).where(key_col.in_(chunk)))
                        id_map.update({key: row_id for key, row_id in rows})
                    return id_map

                last_id = 0
                while True:
                    rows = conn.execute(
                        select(key_col, tbl.c.id)
                        .where(tbl.c.id > last_id)
                        .order_by(tbl.c.id)
                        .limit(page_size)
                    ).all()
                    if not rows:
                        break
                    id_map.update({key: row_id for key, row_id in rows})
                    last_id = rows[-1][1]
                    if len(rows) < page_size:
                        break

        return id_map

    def order_ids_with_line_items(self, order_ids: Iterable[int]) -> Set[int]:
        """Subset of order surrogate IDs that already have line items"""
        line_items = OrderLineItem.__table__
        found: Set[int] = set()
        with self._translate_errors("read line item owners"):
            with self.engine.connect() as conn:
                for chunk in chunk_list(list(order_ids), 500):
                    rows = conn.execute(
                        select(distinct(line_items.c.order_id)).where(line_items.c.order_id.in_(chunk))
                    )
                    found.update(row[0] for row in rows)
        return found

    def count(self, table: str) -> int:
        tbl = self._table(table)
        with self._translate_errors(f"count {table}"):
            with self.engine.connect() as conn:
                return conn.execute(select(func.count()).select_from(tbl)).scalar_one()

    def period_counts(self, start: datetime, end: datetime) -> Dict[str, int]:
        """
        Read back what is stored for the processing-date window [start, end).

        Returns:
            orders: orders processed in the window
            customers: distinct customers ordering in the window
            line_items: line items of those orders
            new_customers: customers whose first order falls in the window
            second_orders: new customers who ordered at least twice overall
        """
        orders = Order.__table__
        line_items = OrderLineItem.__table__
        in_window = and_(orders.c.processed_at >= start, orders.c.processed_at < end)

        first_orders = (
            select(
                orders.c.customer_id.label("customer_id"),
                func.min(orders.c.processed_at).label("first_at"),
                func.count(orders.c.id).label("order_count"),
            )
            .where(orders.c.customer_id.isnot(None))
            .group_by(orders.c.customer_id)
            .subquery()
        )

        with self._translate_errors("read period counts"):
            with self.engine.connect() as conn:
                order_count = conn.execute(
                    select(func.count(orders.c.id)).where(in_window)
                ).scalar_one()
                customer_count = conn.execute(
                    select(func.count(distinct(orders.c.customer_id))).where(in_window)
                ).scalar_one()
                line_item_count = conn.execute(
                    select(func.count(line_items.c.id))
                    .select_from(line_items.join(orders, line_items.c.order_id == orders.c.id))
                    .where(in_window)
                ).scalar_one()
                new_customers = conn.execute(
                    select(func.count()).select_from(first_orders)
                    .where(first_orders.c.first_at >= start, first_orders.c.first_at < end)
                ).scalar_one()
                second_orders = conn.execute(
                    select(func.count()).select_from(first_orders)
                    .where(first_orders.c.first_at >= start, first_orders.c.first_at < end)
                    .where(first_orders.c.order_count >= 2)
                ).scalar_one()

        return {
            "orders": order_count,
            "customers": customer_count,
            "line_items": line_item_count,
            "new_customers": new_customers,
            "second_orders": second_orders,
        }

    def fetch_order_facts(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Orders of known customers with their line item titles, oldest first.

        Feeds the retention report.
        """
        orders = Order.__table__
        line_items = OrderLineItem.__table__

        query = (
            select(orders.c.id, orders.c.customer_id, orders.c.shopify_order_id, orders.c.processed_at)
            .where(orders.c.customer_id.isnot(None))
            .order_by(orders.c.processed_at, orders.c.id)
        )
        if start is not None:
            query = query.where(orders.c.processed_at >= start)
        if end is not None:
            query = query.where(orders.c.processed_at < end)

        with self._translate_errors("read order facts"):
            with self.engine.connect() as conn:
                facts = {
                    row.id: {
                        "customer_id": row.customer_id,
                        "shopify_order_id": row.shopify_order_id,
                        "processed_at": row.processed_at,
                        "titles": [],
                        "product_types": [],
                    }
                    for row in conn.execute(query)
                }
                for chunk in chunk_list(list(facts), 500):
                    rows = conn.execute(
                        select(line_items.c.order_id, line_items.c.title, line_items.c.product_type)
                        .where(line_items.c.order_id.in_(chunk))
                        .order_by(line_items.c.id)
                    )
                    for order_id, title, product_type in rows:
                        if title:
                            facts[order_id]["titles"].append(title)
                        if product_type:
                            facts[order_id]["product_types"].append(product_type)

        return list(facts.values())

    # ==================== Checkpoints ====================

    def get_checkpoint(self, period_key: str) -> Optional[Dict[str, Any]]:
        db = self.SessionLocal()
        try:
            with self._translate_errors("read checkpoint"):
                checkpoint = db.query(SyncCheckpoint).filter(SyncCheckpoint.period_key == period_key).first()
                if not checkpoint:
                    return None
                return {
                    "period_key": checkpoint.period_key,
                    "sync_status": checkpoint.sync_status,
                    "orders_synced": checkpoint.orders_synced,
                    "customers_synced": checkpoint.customers_synced,
                    "line_items_synced": checkpoint.line_items_synced,
                    "last_error": checkpoint.last_error,
                    "last_synced_at": checkpoint.last_synced_at,
                }
        finally:
            db.close()

    def save_checkpoint(
        self,
        period_key: str,
        status: str,
        counts: Optional[Dict[str, int]] = None,
        error: Optional[str] = None
    ):
        db = self.SessionLocal()
        try:
            with self._translate_errors("save checkpoint"):
                checkpoint = db.query(SyncCheckpoint).filter(SyncCheckpoint.period_key == period_key).first()
                if not checkpoint:
                    checkpoint = SyncCheckpoint(period_key=period_key)
                    db.add(checkpoint)

                checkpoint.sync_status = status
                checkpoint.last_error = error[:2000] if error else None
                if counts:
                    checkpoint.orders_synced = counts.get("orders", 0)
                    checkpoint.customers_synced = counts.get("customers", 0)
                    checkpoint.line_items_synced = counts.get("line_items", 0)
                if status in ("success", "skipped"):
                    checkpoint.last_synced_at = datetime.utcnow()

                db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ==================== Routines ====================

    def call(self, function_name: str, args: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Invoke a stored routine, e.g. `classify_new_customers`.

        Only PostgreSQL exposes routines; other dialects raise
        DatabaseError(code="unsupported").
        """
        if not _IDENTIFIER_RE.match(function_name or ""):
            raise DatabaseError(f"Invalid routine name '{function_name}'", code="programming")
        if self.dialect != "postgresql":
            raise DatabaseError(f"Routines are not supported on {self.dialect}", code="unsupported")

        args = args or {}
        for name in args:
            if not _IDENTIFIER_RE.match(name):
                raise DatabaseError(f"Invalid argument name '{name}'", code="programming")

        qualified = f"{self.schema}.{function_name}" if self.schema else function_name
        params = ", ".join(f"{name} => :{name}" for name in args)

        with self._translate_errors(f"call {function_name}"):
            with self.engine.begin() as conn:
                result = conn.execute(text(f"SELECT * FROM {qualified}({params})"), args)
                return [dict(row._mapping) for row in result] if result.returns_rows else []
