"""Streaming extract-load pipeline.

One `SyncPipeline.run` call takes a claimed job through

    locking → validating → loading → reconciling → completed

or ends early in `failed` / `cancelled`. Rows are read from a server-side
cursor in fixed-size chunks, transformed, and flushed to ClickHouse in
fixed-size insert batches; the process never holds more than one read
chunk plus one insert buffer.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Optional

from etl_worker.exceptions import EtlError, InvalidJobTransition, LockStoreUnavailable, SchemaMismatch
from etl_worker.schemas.dataset import ColumnMapping, ResolvedDataset
from etl_worker.schemas.job import EtlJobRequest, SyncAction
from etl_worker.schemas.validation import DataValidationResult
from etl_worker.services.consistency import ConsistencyValidator
from etl_worker.services.extraction import (
    ExtractionPlan,
    pk_column,
    plan_extraction,
    row_cap,
    sync_strategy,
    target_column_for,
)
from etl_worker.services.memory_guard import MemoryGuard
from etl_worker.services.transform import RowTransformer
from etl_worker.services.type_reconciler import expected_type, target_table_layout, validate_schema
from etl_worker.sources import open_source

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    idle = "idle"
    locking = "locking"
    validating = "validating"
    loading = "loading"
    reconciling = "reconciling"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


@dataclass
class JobOutcome:
    status: str
    rows_processed: int
    flushes: int = 0
    validation: Optional[DataValidationResult] = None
    error: Optional[str] = None


@dataclass
class _LoadProgress:
    rows: int = 0
    flushes: int = 0
    cancelled: bool = False


class _BatchLoader:
    """Insert buffer for one job: fills, flushes, and watches memory and cancellation."""

    def __init__(
        self,
        pipeline: "SyncPipeline",
        job_id: int,
        table: str,
        transformer: Optional[RowTransformer],
        target_types: dict[str, str],
        cap: Optional[int],
        progress: _LoadProgress,
    ) -> None:
        self._pipeline = pipeline
        self._job_id = job_id
        self._table = table
        self._transformer = transformer
        self._target_types = target_types
        self._cap = cap
        self._progress = progress
        self._buffer: list[list[Any]] = []
        self._extracted = 0
        self._over_budget_streak = 0
        self.batch_size = pipeline.insert_batch_size
        self.stopped = False

    @property
    def cap_reached(self) -> bool:
        return self._cap is not None and self._extracted >= self._cap

    def _ensure_transformer(self, first_row: dict[str, Any]) -> RowTransformer:
        if self._transformer is None:
            # no mapping in the catalog: copy columns through under sanitised names
            mappings = [
                ColumnMapping(source_column=str(k), target_column=re.sub(r"[^A-Za-z0-9_]", "_", str(k)))
                for k in first_row.keys()
            ]
            self._transformer = RowTransformer(mappings, self._target_types)
        return self._transformer

    async def add_rows(self, rows: list[dict[str, Any]]) -> None:
        if not rows:
            return
        transformer = self._ensure_transformer(rows[0])
        for row in rows:
            if self.stopped or self.cap_reached:
                break
            self._buffer.append(transformer(row))
            self._extracted += 1
            if len(self._buffer) >= self.batch_size:
                await self._flush()
        if self.cap_reached and not self.stopped:
            await self._flush(last=True)
            self.stopped = True

    async def finish(self) -> None:
        if not self.stopped:
            await self._flush(last=True)

    async def _flush(self, last: bool = False) -> None:
        """Insert the buffer; unless it is the last batch, honour a pending cancel."""
        if not self._buffer:
            return
        batch, self._buffer = self._buffer, []
        await self._pipeline._with_retry(
            f"insert into {self._table}",
            partial(self._pipeline.target.insert_rows, self._table, self._transformer.column_names, batch),
        )
        self._progress.rows += len(batch)
        self._progress.flushes += 1
        del batch

        await self._pipeline.job_store.update_progress(
            self._job_id,
            self._progress.rows,
            f"Batch {self._progress.flushes}: {self._progress.rows} rows",
        )
        if self._progress.flushes % self._pipeline.memory_check_every == 0:
            self._check_memory()
        # nothing is left to stop once the source is exhausted
        if not last and await self._pipeline.is_cancelled(self._job_id):
            logger.info("ETL job %s: cancellation observed after batch %d (%d rows)", self._job_id, self._progress.flushes, self._progress.rows)
            self._progress.cancelled = True
            self.stopped = True

    def _check_memory(self) -> None:
        guard = self._pipeline.memory_guard
        status = guard.check_memory()
        if status.ok:
            self._over_budget_streak = 0
            return
        guard.force_reclaim()
        self._over_budget_streak += 1
        if self._over_budget_streak >= 2 and self.batch_size > self._pipeline.min_insert_batch_size:
            self.batch_size = max(self.batch_size // 2, self._pipeline.min_insert_batch_size)
            logger.warning(
                "ETL job %s: memory still over budget (%d MB), insert batch size reduced to %d",
                self._job_id, status.used_mb, self.batch_size,
            )


class SyncPipeline:
    def __init__(
        self,
        *,
        job_store,
        catalog,
        target,
        locks,
        memory_guard: MemoryGuard,
        consistency: Optional[ConsistencyValidator] = None,
        source_factory: Callable = open_source,
        shutdown_event: Optional[asyncio.Event] = None,
        stream_batch_size: int = 10_000,
        insert_batch_size: int = 5_000,
        min_insert_batch_size: int = 500,
        memory_check_every: int = 10,
        io_retry_attempts: int = 3,
        io_retry_delay: float = 2.0,
    ) -> None:
        self.job_store = job_store
        self.catalog = catalog
        self.target = target
        self.locks = locks
        self.memory_guard = memory_guard
        self.consistency = consistency or ConsistencyValidator(target)
        self._source_factory = source_factory
        self.shutdown_event = shutdown_event or asyncio.Event()
        self.stream_batch_size = stream_batch_size
        self.insert_batch_size = insert_batch_size
        self.min_insert_batch_size = min(min_insert_batch_size, insert_batch_size)
        self.memory_check_every = max(memory_check_every, 1)
        self.io_retry_attempts = max(io_retry_attempts, 1)
        self.io_retry_delay = io_retry_delay
        self.state = PipelineState.idle

    async def is_cancelled(self, job_id: int) -> bool:
        if self.shutdown_event.is_set():
            return True
        return await self.locks.is_cancelled(job_id)

    async def _with_retry(self, what: str, call: Callable[[], Awaitable[Any]]) -> Any:
        for attempt in range(1, self.io_retry_attempts + 1):
            try:
                return await call()
            except Exception as e:
                if attempt >= self.io_retry_attempts:
                    raise
                logger.warning("ETL %s: attempt %d/%d failed, retrying: %s", what, attempt, self.io_retry_attempts, e)
                await asyncio.sleep(self.io_retry_delay)

    async def run(self, job_id: int, request: EtlJobRequest) -> JobOutcome:
        dataset_id = request.dataset_id
        logger.info("ETL job %s starting: dataset=%s action=%s", job_id, dataset_id, request.action.value)

        self.state = PipelineState.locking
        try:
            acquired = await self.locks.acquire(dataset_id, job_id)
        except LockStoreUnavailable as e:
            return await self._finish(
                job_id, PipelineState.failed, JobOutcome(status="failed", rows_processed=0, error=str(e)),
            )
        if not acquired:
            return await self._finish(
                job_id, PipelineState.failed, JobOutcome(
                    status="failed",
                    rows_processed=0,
                    error=f"Dataset {dataset_id} is already being synchronised by another job",
                ),
            )

        progress = _LoadProgress()
        try:
            dataset = await self.catalog.load(dataset_id)

            self.state = PipelineState.validating
            verdict = await validate_schema(dataset, self.target)
            if not verdict.valid:
                raise SchemaMismatch(f"{verdict.warning}. Drop and recreate the target table.")
            if verdict.warning:
                logger.warning("ETL job %s: %s", job_id, verdict.warning)

            self.state = PipelineState.loading
            await self._load(job_id, dataset, request, progress)

            if progress.cancelled:
                return await self._finish(job_id, PipelineState.cancelled, JobOutcome(
                    status="cancelled", rows_processed=progress.rows, flushes=progress.flushes,
                ))

            self.state = PipelineState.reconciling
            validation = await self.consistency.reconcile(dataset, progress.rows)
            await self.job_store.attach_validation(job_id, validation)
            if not validation.is_consistent:
                logger.warning("ETL job %s: %s", job_id, validation.message)

            return await self._finish(job_id, PipelineState.completed, JobOutcome(
                status="completed",
                rows_processed=progress.rows,
                flushes=progress.flushes,
                validation=validation,
            ))
        except Exception as e:
            logger.error("ETL job %s failed after %d rows: %s", job_id, progress.rows, e)
            return await self._finish(job_id, PipelineState.failed, JobOutcome(
                status="failed", rows_processed=progress.rows, flushes=progress.flushes, error=str(e),
            ))
        finally:
            await self.locks.release(dataset_id)
            await self.locks.clear_cancel(job_id)

    async def _finish(self, job_id: int, state: PipelineState, outcome: JobOutcome) -> JobOutcome:
        self.state = state
        message = None
        if outcome.validation is not None:
            message = outcome.validation.message
        elif outcome.status == "cancelled":
            message = f"Cancelled after {outcome.rows_processed} rows"
        try:
            await self.job_store.transition(
                job_id,
                outcome.status,
                rows_processed=outcome.rows_processed,
                error=outcome.error,
                message=message,
            )
        except InvalidJobTransition as e:
            logger.warning("ETL job %s: could not record %s: %s", job_id, outcome.status, e)
        logger.info("ETL job %s %s: %d rows in %d batches", job_id, outcome.status, outcome.rows_processed, outcome.flushes)
        return outcome

    async def _plan(self, dataset: ResolvedDataset, request: EtlJobRequest, dialect: str) -> ExtractionPlan:
        table = dataset.clickhouse_table
        since = None
        after_id = None
        if request.action in (SyncAction.incremental_sync, SyncAction.manual_sync) and dataset.reference_column:
            ref_target = target_column_for(dataset, dataset.reference_column)
            strategy = sync_strategy(dataset)
            if strategy == "timestamp":
                since = await self.target.max_value(table, ref_target)
            elif strategy == "id":
                since = await self.target.max_id_value(table, ref_target)
        if request.action == SyncAction.new_records_sync and request.after_id is None:
            current_max = await self.target.max_value(table, target_column_for(dataset, pk_column(dataset, request)))
            after_id = int(current_max) if current_max is not None else 0
        return plan_extraction(dataset, request, dialect, since=since, after_id=after_id)

    async def _read_target_schema(self, dataset: ResolvedDataset) -> Optional[dict[str, str]]:
        """Target {column: type}; None when the table is missing, {} when it could not be read."""
        try:
            return await self.target.describe_table(dataset.clickhouse_table)
        except Exception as e:
            logger.warning("Could not read target schema for %s, using mapped types: %s", dataset.clickhouse_table, e)
            return {}

    async def _create_target(self, job_id: int, dataset: ResolvedDataset) -> dict[str, str]:
        layout = target_table_layout(dataset)
        await self._with_retry(
            f"create table {dataset.clickhouse_table}",
            partial(self.target.create_table, dataset.clickhouse_table, layout.columns, layout.order_by),
        )
        logger.info("ETL job %s: created target table %s", job_id, dataset.clickhouse_table)
        return dict(layout.columns)

    async def _load(self, job_id: int, dataset: ResolvedDataset, request: EtlJobRequest, progress: _LoadProgress) -> None:
        table = dataset.clickhouse_table
        source = self._source_factory(dataset.connection)
        try:
            schema = await self._read_target_schema(dataset)
            if schema is None:
                schema = await self._create_target(job_id, dataset)
            target_types = {m.target_column: expected_type(m) for m in dataset.column_mapping}
            target_types.update(schema)

            plan = await self._plan(dataset, request, source.dialect)
            for note in plan.notes:
                logger.warning("ETL job %s: %s", job_id, note)
            if plan.reset_target:
                await self.target.truncate(table)
                logger.info("ETL job %s: target %s cleared for full refresh", job_id, table)
            if plan.delete_since is not None:
                window_target = target_column_for(dataset, plan.delete_column)
                await self.target.delete_since(table, window_target, plan.delete_since)
                logger.info("ETL job %s: target rows of %s with %s since %s deleted", job_id, table, window_target, plan.delete_since)

            transformer = RowTransformer(dataset.column_mapping, target_types) if dataset.column_mapping else None
            loader = _BatchLoader(self, job_id, table, transformer, target_types, row_cap(dataset, request), progress)

            for scan in plan.scans:
                if loader.stopped:
                    break
                logger.info("ETL job %s: reading %s", job_id, scan.label)
                cursor = await self._with_retry(
                    f"open source scan ({scan.label})",
                    partial(source.open_scan, scan.sql, scan.params, self.stream_batch_size),
                )
                try:
                    while not loader.stopped:
                        rows = await cursor.fetch(self.stream_batch_size)
                        if not rows:
                            break
                        await loader.add_rows(rows)
                finally:
                    await cursor.close()

            await loader.finish()
        finally:
            await source.close()
            self.memory_guard.force_reclaim()


def build_request(job) -> EtlJobRequest:
    """Rebuild the validated request from a stored job row."""
    try:
        return EtlJobRequest.from_record(job.dataset_id, job.action, job.triggered_by, job.params)
    except ValueError as e:
        raise EtlError(f"Stored job {job.id} is not a valid request: {e}") from e
