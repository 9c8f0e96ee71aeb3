"""
Sync Orchestrator

Runs the per-period pipeline:

    CHECK -> (SKIPPED) | FETCH -> EXTRACT -> WRITE_CUSTOMERS -> WRITE_ORDERS
          -> WRITE_LINE_ITEMS -> CLASSIFY -> REFRESH -> DONE

Any step before CLASSIFY can move the period to FAILED. CLASSIFY and
REFRESH are best-effort and only ever produce warnings.
"""
import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from cohort_sync.connectors.shopify_graphql import ShopifyGraphQLClient
from cohort_sync.services.extractor import extract_customers, extract_line_items, extract_orders
from cohort_sync.services.periods import Period
from cohort_sync.services.sink import DatabaseSink
from cohort_sync.services.validation_service import (
    ComparisonReport,
    compare_aggregates,
    format_comparison_report,
    load_reference_counts,
)
from cohort_sync.services.writer import (
    BatchUpsertWriter,
    CustomerUpsertResult,
    LineItemInsertResult,
    OrderInsertResult,
)
from cohort_sync.utils.logger import log


class PeriodState(str, Enum):
    CHECK = "check"
    SKIPPED = "skipped"
    FETCH = "fetch"
    EXTRACT = "extract"
    WRITE_CUSTOMERS = "write_customers"
    WRITE_ORDERS = "write_orders"
    WRITE_LINE_ITEMS = "write_line_items"
    CLASSIFY = "classify"
    REFRESH = "refresh"
    DONE = "done"
    FAILED = "failed"


@dataclass
class StepOutcome:
    """Result of a best-effort step"""
    ok: bool
    warning: Optional[str] = None


@dataclass
class PeriodResult:
    """Everything known about one period's run, including partial progress"""
    period_key: str
    state: PeriodState = PeriodState.CHECK
    failed_step: Optional[PeriodState] = None
    fetched_orders: int = 0
    customers_skipped: int = 0
    orders_rejected: int = 0
    line_items_dropped: int = 0
    customers: Optional[CustomerUpsertResult] = None
    orders: Optional[OrderInsertResult] = None
    line_items: Optional[LineItemInsertResult] = None
    classify: Optional[StepOutcome] = None
    refresh: Optional[StepOutcome] = None
    counts: Dict[str, int] = field(default_factory=dict)
    comparison: Optional[ComparisonReport] = None
    error: Optional[str] = None
    exception: Optional[BaseException] = field(default=None, repr=False)
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.state in (PeriodState.DONE, PeriodState.SKIPPED)

    @property
    def warnings(self) -> List[str]:
        return [step.warning for step in (self.classify, self.refresh) if step and step.warning]

    def written_counts(self) -> Dict[str, int]:
        """Rows written so far in this run"""
        return {
            "customers": (self.customers.inserted_count + self.customers.updated_count) if self.customers else 0,
            "orders": self.orders.inserted_count if self.orders else 0,
            "line_items": self.line_items.inserted_count if self.line_items else 0,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period": self.period_key,
            "state": self.state.value,
            "failed_step": self.failed_step.value if self.failed_step else None,
            "fetched_orders": self.fetched_orders,
            "written": self.written_counts(),
            "counts": self.counts,
            "warnings": self.warnings,
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 1),
        }


@dataclass
class BatchSummary:
    """Outcome of a multi-period run"""
    results: List[PeriodResult] = field(default_factory=list)

    @property
    def succeeded(self) -> List[str]:
        return [r.period_key for r in self.results if r.state == PeriodState.DONE]

    @property
    def skipped(self) -> List[str]:
        return [r.period_key for r in self.results if r.state == PeriodState.SKIPPED]

    @property
    def failed(self) -> List[str]:
        return [r.period_key for r in self.results if r.state == PeriodState.FAILED]

    @property
    def errors(self) -> Dict[str, str]:
        return {r.period_key: r.error for r in self.results if r.state == PeriodState.FAILED}

    @property
    def success(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "periods": len(self.results),
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": self.errors,
        }


class SyncOrchestrator:
    """
    Drives the pipeline for one period or a sequence of periods

    Periods are always processed one at a time, in the order given.
    """

    def __init__(
        self,
        client,
        sink,
        writer: BatchUpsertWriter,
        references: Optional[Dict[str, Dict[str, int]]] = None,
        tz_name: str = "Asia/Hong_Kong",
        classify_function: str = "classify_new_customers",
        refresh_function: str = "refresh_cohort_aggregates",
        classify_timeout_seconds: float = 60.0,
        refresh_timeout_seconds: float = 120.0,
        tolerance: float = 0.95
    ):
        self.client = client
        self.sink = sink
        self.writer = writer
        self.references = references or {}
        self.tz_name = tz_name
        self.classify_function = classify_function
        self.refresh_function = refresh_function
        self.classify_timeout_seconds = classify_timeout_seconds
        self.refresh_timeout_seconds = refresh_timeout_seconds
        self.tolerance = tolerance

    @classmethod
    def from_settings(cls, settings, transport=None) -> "SyncOrchestrator":
        sink = DatabaseSink.from_settings(settings)
        return cls(
            client=ShopifyGraphQLClient.from_settings(settings, transport=transport),
            sink=sink,
            writer=BatchUpsertWriter.from_settings(settings, sink),
            references=load_reference_counts(settings.reference_data_path),
            tz_name=settings.sync_timezone,
            classify_function=settings.classify_function,
            refresh_function=settings.refresh_function,
            classify_timeout_seconds=settings.classify_timeout_seconds,
            refresh_timeout_seconds=settings.refresh_timeout_seconds,
            tolerance=settings.completion_tolerance,
        )

    # ==================== Public API ====================

    async def sync_period(self, period: Period, force_sync: bool = False, skip_existing_check: bool = False) -> PeriodResult:
        """
        Sync one period.

        Raises whatever stopped the period, after logging the partial counts.
        """
        result = await self._run_period(period, force_sync, skip_existing_check)
        if result.exception is not None:
            raise result.exception
        return result

    async def sync_periods(
        self,
        periods: List[Period],
        force_sync: bool = False,
        skip_existing_check: bool = False
    ) -> BatchSummary:
        """Sync periods in order; a failed period does not stop the batch"""
        summary = BatchSummary()
        log.info(f"Starting batch sync of {len(periods)} periods")

        for index, period in enumerate(periods, start=1):
            log.info(f"Period {index}/{len(periods)}: {period.key}")
            summary.results.append(await self._run_period(period, force_sync, skip_existing_check))

        log.info(
            f"Batch sync finished: {len(summary.succeeded)} synced, {len(summary.skipped)} skipped, "
            f"{len(summary.failed)} failed"
        )
        for period_key, error in summary.errors.items():
            log.error(f"  {period_key}: {error}")
        return summary

    # ==================== Pipeline ====================

    def _enter(self, result: PeriodResult, state: PeriodState):
        result.state = state
        log.debug(f"[{result.period_key}] {state.value}")

    async def _run_period(self, period: Period, force_sync: bool, skip_existing_check: bool) -> PeriodResult:
        result = PeriodResult(period_key=period.key)
        started = time.monotonic()
        start, end = period.window(self.tz_name)

        log.info(
            f"Syncing period {period.key} "
            f"(force_sync={force_sync}, skip_existing_check={skip_existing_check})"
        )

        try:
            self._enter(result, PeriodState.CHECK)
            if not (force_sync or skip_existing_check):
                existing = self._existing_counts(period.key, start, end)
                if existing.get("orders") or existing.get("customers"):
                    result.counts = existing
                    result.comparison = self._compare(period.key, existing)
                    self._enter(result, PeriodState.SKIPPED)
                    log.info(
                        f"Period {period.key} already has {existing.get('orders', 0)} orders and "
                        f"{existing.get('customers', 0)} customers, skipping"
                    )
                    self._checkpoint(period.key, "skipped", counts=existing)
                    return result

            self._checkpoint(period.key, "in_progress")

            self._enter(result, PeriodState.FETCH)
            api_start, api_end = period.api_bounds(self.tz_name)
            raw_orders = await self.client.fetch_orders_for_period(api_start, api_end)
            result.fetched_orders = len(raw_orders)

            self._enter(result, PeriodState.EXTRACT)
            customers = extract_customers(raw_orders)
            result.customers_skipped = customers.skipped_count

            self._enter(result, PeriodState.WRITE_CUSTOMERS)
            result.customers = await self.writer.upsert_customers(customers.rows)
            customer_id_map = await self.writer.fetch_customer_id_map()

            self._enter(result, PeriodState.WRITE_ORDERS)
            orders = extract_orders(raw_orders, customer_id_map)
            result.orders_rejected = orders.skipped_count
            result.orders = await self.writer.insert_orders(orders.orders, force_overwrite=force_sync)

            self._enter(result, PeriodState.WRITE_LINE_ITEMS)
            line_items = extract_line_items(raw_orders, result.orders.surrogate_id_by_external_id)
            result.line_items_dropped = line_items.dropped_count
            result.line_items = await self.writer.insert_line_items(line_items.line_items)

            self._enter(result, PeriodState.CLASSIFY)
            result.classify = await self._best_effort(self.classify_function, self.classify_timeout_seconds)

            self._enter(result, PeriodState.REFRESH)
            result.refresh = await self._best_effort(self.refresh_function, self.refresh_timeout_seconds)

            result.counts = self._final_counts(result, start, end)
            result.comparison = self._compare(period.key, result.counts)
            self._enter(result, PeriodState.DONE)
            self._checkpoint(period.key, "success", counts=result.counts)

            log.info(
                f"Period {period.key} done: {result.counts.get('orders', 0)} orders, "
                f"{result.counts.get('customers', 0)} customers, {result.counts.get('line_items', 0)} line items"
            )
            for warning in result.warnings:
                log.warning(f"Period {period.key}: {warning}")

        except Exception as e:
            result.failed_step = result.state
            result.state = PeriodState.FAILED
            result.error = str(e)
            result.exception = e
            log.error(f"Period {period.key} failed during {result.failed_step.value}: {e}")
            log.error(f"Period {period.key} partial counts: fetched={result.fetched_orders} {result.written_counts()}")
            self._checkpoint(period.key, "failed", counts=result.written_counts(), error=str(e))

        finally:
            result.duration_seconds = time.monotonic() - started

        return result

    async def _best_effort(self, function_name: str, timeout_seconds: float) -> StepOutcome:
        """Call a sink routine with a bounded wait; never raises"""
        log.info(f"Calling {function_name} (timeout {timeout_seconds:.0f}s)")
        try:
            await asyncio.wait_for(asyncio.to_thread(self.sink.call, function_name), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            warning = f"{function_name} did not finish within {timeout_seconds:.0f}s"
        except Exception as e:
            warning = f"{function_name} failed: {e}"
        else:
            return StepOutcome(ok=True)

        log.warning(warning)
        return StepOutcome(ok=False, warning=warning)

    def _existing_counts(self, period_key: str, start, end) -> Dict[str, int]:
        """Counts already stored for the period; unreadable counts never block the sync"""
        try:
            return self.sink.period_counts(start, end)
        except Exception as e:
            log.warning(f"Could not check existing data for {period_key}, syncing anyway: {e}")
            return {}

    def _final_counts(self, result: PeriodResult, start, end) -> Dict[str, int]:
        """Stored counts for the period, or what this run wrote if they can't be read"""
        try:
            return self.sink.period_counts(start, end)
        except Exception as e:
            log.warning(f"Could not read back counts for {result.period_key}: {e}")
            return result.written_counts()

    def _compare(self, period_key: str, counts: Dict[str, int]) -> Optional[ComparisonReport]:
        reference = self.references.get(period_key)
        if not reference:
            return None

        report = compare_aggregates(period_key, counts, reference, tolerance=self.tolerance)
        if report.all_match:
            log.info(f"Period {period_key} matches reference data")
        else:
            log.warning(f"Period {period_key} differs from reference data:\n{format_comparison_report(report)}")
        return report

    def _checkpoint(self, period_key: str, status: str, counts: Optional[Dict[str, int]] = None, error: Optional[str] = None):
        """Best-effort checkpoint write"""
        try:
            self.sink.save_checkpoint(period_key, status, counts=counts, error=error)
        except Exception as e:
            log.warning(f"Could not save checkpoint for {period_key} ({status}): {e}")
