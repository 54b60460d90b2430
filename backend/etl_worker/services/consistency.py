import logging
import math
from datetime import date

from etl_worker.schemas.dataset import ResolvedDataset
from etl_worker.schemas.validation import DataValidationResult

logger = logging.getLogger(__name__)

TOLERANCE_RATIO = 0.01


def is_within_tolerance(source_count: int, target_count: int) -> bool:
    return abs(target_count - source_count) <= math.ceil(source_count * TOLERANCE_RATIO)


class ConsistencyValidator:
    """Post-load audit of a ClickHouse table. Nothing here raises."""

    def __init__(self, target) -> None:
        self._target = target

    async def merge_duplicates(self, table: str) -> int:
        """Force a ReplacingMergeTree merge and return how many rows it removed."""
        try:
            before = await self._target.count_rows(table)
            await self._target.optimize_final(table)
            after = await self._target.count_rows(table)
        except Exception as e:
            logger.warning("OPTIMIZE failed for %s (non-critical): %s", table, e)
            return 0
        removed = max(before - after, 0)
        if removed:
            logger.info("Duplicates removed by OPTIMIZE on %s: %d (before=%d after=%d)", table, removed, before, after)
        return removed

    async def reconcile(self, dataset: ResolvedDataset, expected_row_count: int) -> DataValidationResult:
        table = dataset.clickhouse_table
        try:
            loaded_count = await self._target.count_rows(table)
            duplicate_count = await self.merge_duplicates(table)
            target_count = max(loaded_count - duplicate_count, 0)
        except Exception as e:
            logger.error("Data validation for %s failed: %s", table, e)
            return DataValidationResult(
                source_count=expected_row_count,
                target_count=0,
                is_consistent=False,
                duplicate_count=0,
                message=f"Validation error: {e}",
            )

        consistent = is_within_tolerance(expected_row_count, target_count)
        if consistent:
            message = f"Data consistent: {target_count} rows (expected: {expected_row_count})"
        else:
            diff = abs(target_count - expected_row_count)
            message = f"Data mismatch: {target_count} rows (expected: {expected_row_count}, diff: {diff})"

        result = DataValidationResult(
            source_count=expected_row_count,
            target_count=target_count,
            is_consistent=consistent,
            duplicate_count=duplicate_count,
            message=message,
        )
        logger.info("Data validation for %s: %s", table, message)
        return result

    async def count_for_partition_date(self, table: str, partition_column: str, day: date) -> int:
        try:
            return await self._target.count_for_date(table, partition_column, day)
        except Exception as e:
            logger.warning("Partition probe on %s.%s for %s failed: %s", table, partition_column, day, e)
            return 0
