"""
Batch Upsert Writer

Persists extracted rows in fixed-size batches. A failing batch is logged,
counted and skipped; the remaining batches are always attempted.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from cohort_sync.utils.helpers import chunk_list
from cohort_sync.utils.logger import log
from cohort_sync.utils.retry import RetryContext, RetryPolicy


@dataclass
class CustomerUpsertResult:
    inserted_count: int = 0
    updated_count: int = 0
    failed_count: int = 0
    failed_batches: List[int] = field(default_factory=list)


@dataclass
class OrderInsertResult:
    inserted_count: int = 0
    surrogate_id_by_external_id: Dict[str, int] = field(default_factory=dict)
    skipped_existing: int = 0
    deleted_count: int = 0
    failed_count: int = 0
    failed_batches: List[int] = field(default_factory=list)


@dataclass
class LineItemInsertResult:
    inserted_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0  # items of orders that already had line items
    failed_batches: List[int] = field(default_factory=list)


class BatchUpsertWriter:
    """
    Writes customers, orders and line items through a DatabaseSink

    Each batch write is retried under `retry_policy` for transient database
    errors only; anything else fails the batch immediately.
    """

    def __init__(
        self,
        sink,
        batch_size: int = 50,
        retry_policy: Optional[RetryPolicy] = None,
        id_map_page_size: int = 1000
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.sink = sink
        self.batch_size = batch_size
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0)
        self.id_map_page_size = id_map_page_size

    @classmethod
    def from_settings(cls, settings, sink) -> "BatchUpsertWriter":
        return cls(
            sink,
            batch_size=settings.batch_size,
            retry_policy=RetryPolicy(
                max_attempts=settings.db_max_attempts,
                base_delay=settings.db_retry_base_delay,
                max_delay=settings.db_retry_base_delay * 10,
            ),
            id_map_page_size=settings.id_map_page_size,
        )

    async def _write(self, operation_name: str, func, *args, **kwargs):
        """Run a blocking sink call in a worker thread under the database retry policy"""
        retry = RetryContext(self.retry_policy, operation_name=operation_name)
        return await asyncio.to_thread(retry.execute_sync, func, *args, **kwargs)

    async def fetch_customer_id_map(self) -> Dict[str, int]:
        """Full external -> surrogate customer ID map"""
        return await self._write(
            "Fetch customer ID map",
            self.sink.fetch_id_map,
            "customers",
            "shopify_customer_id",
            page_size=self.id_map_page_size,
        )

    async def upsert_customers(self, customers: List[Dict[str, Any]]) -> CustomerUpsertResult:
        """
        Upsert customers on shopify_customer_id.

        Every field is overwritten except created_at, which keeps the value
        of rows that already existed.
        """
        result = CustomerUpsertResult()
        if not customers:
            return result

        existing_ids = await self.fetch_customer_id_map()
        batches = chunk_list(customers, self.batch_size)
        log.info(f"Upserting {len(customers)} customers in {len(batches)} batches ({len(existing_ids)} already stored)")

        for index, batch in enumerate(batches, start=1):
            try:
                await self._write(
                    f"Customer batch {index}/{len(batches)}",
                    self.sink.upsert,
                    "customers",
                    batch,
                    conflict_column="shopify_customer_id",
                    preserve_columns=("created_at",),
                )
            except Exception as e:
                result.failed_count += len(batch)
                result.failed_batches.append(index)
                log.error(f"Customer batch {index}/{len(batches)} failed ({len(batch)} rows): {e}")
                continue

            updated = sum(1 for row in batch if row["shopify_customer_id"] in existing_ids)
            result.updated_count += updated
            result.inserted_count += len(batch) - updated

        log.info(
            f"Customers: {result.inserted_count} inserted, {result.updated_count} updated, "
            f"{result.failed_count} failed"
        )
        return result

    async def insert_orders(self, orders: List[Dict[str, Any]], force_overwrite: bool = False) -> OrderInsertResult:
        """
        Insert orders that are not stored yet.

        With force_overwrite, stored orders matching the input (and their
        line items) are deleted first and the full input is inserted.
        The returned map covers new and pre-existing orders alike.
        """
        result = OrderInsertResult()
        if not orders:
            return result

        incoming_ids = [row["shopify_order_id"] for row in orders]
        existing = await self._write(
            "Fetch existing order IDs",
            self.sink.fetch_id_map,
            "orders",
            "shopify_order_id",
            keys=incoming_ids,
            page_size=self.id_map_page_size,
        )

        if force_overwrite and existing:
            log.warning(f"Force overwrite: replacing {len(existing)} existing orders")
            orders_deleted, _ = await self._write(
                "Delete existing orders",
                self.sink.delete_orders_cascade,
                list(existing),
            )
            result.deleted_count = orders_deleted
            existing = {}
            to_insert = orders
        else:
            to_insert = [row for row in orders if row["shopify_order_id"] not in existing]
            result.skipped_existing = len(orders) - len(to_insert)
            result.surrogate_id_by_external_id.update(existing)

        batches = chunk_list(to_insert, self.batch_size) if to_insert else []
        log.info(
            f"Inserting {len(to_insert)} orders in {len(batches)} batches "
            f"({result.skipped_existing} already stored)"
        )

        for index, batch in enumerate(batches, start=1):
            try:
                returned = await self._write(
                    f"Order batch {index}/{len(batches)}",
                    self.sink.insert,
                    "orders",
                    batch,
                    returning=("id", "shopify_order_id"),
                )
            except Exception as e:
                result.failed_count += len(batch)
                result.failed_batches.append(index)
                log.error(f"Order batch {index}/{len(batches)} failed ({len(batch)} rows): {e}")
                continue

            for row in returned:
                result.surrogate_id_by_external_id[row["shopify_order_id"]] = row["id"]
            result.inserted_count += len(returned)

        log.info(
            f"Orders: {result.inserted_count} inserted, {result.skipped_existing} existing, "
            f"{result.failed_count} failed"
        )
        return result

    async def insert_line_items(self, items: List[Dict[str, Any]]) -> LineItemInsertResult:
        """
        Insert line items, skipping orders that already have some.

        Line items are never updated in place.
        """
        result = LineItemInsertResult()
        if not items:
            return result

        order_ids = {row["order_id"] for row in items}
        already_written = await self._write(
            "Check existing line items",
            self.sink.order_ids_with_line_items,
            order_ids,
        )

        to_insert = [row for row in items if row["order_id"] not in already_written]
        result.skipped_count = len(items) - len(to_insert)

        batches = chunk_list(to_insert, self.batch_size) if to_insert else []
        log.info(
            f"Inserting {len(to_insert)} line items in {len(batches)} batches "
            f"({result.skipped_count} skipped for orders already itemized)"
        )

        for index, batch in enumerate(batches, start=1):
            try:
                await self._write(
                    f"Line item batch {index}/{len(batches)}",
                    self.sink.insert,
                    "order_line_items",
                    batch,
                )
            except Exception as e:
                result.failed_count += len(batch)
                result.failed_batches.append(index)
                log.error(f"Line item batch {index}/{len(batches)} failed ({len(batch)} rows): {e}")
                continue

            result.inserted_count += len(batch)

        log.info(
            f"Line items: {result.inserted_count} inserted, {result.skipped_count} skipped, "
            f"{result.failed_count} failed"
        )
        return result
