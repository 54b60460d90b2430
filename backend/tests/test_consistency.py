from datetime import date
from unittest.mock import AsyncMock

import pytest

from etl_worker.schemas.dataset import ConnectionInfo, ResolvedDataset
from etl_worker.services.consistency import ConsistencyValidator, is_within_tolerance

_DATASET = ResolvedDataset(
    id="ds-1",
    name="orders",
    clickhouse_table="orders",
    source_table="orders",
    connection=ConnectionInfo(id="c-1", type="postgresql", host="db", database_name="shop"),
)


def _target(before: int, after: int) -> AsyncMock:
    target = AsyncMock()
    target.count_rows.side_effect = [before, before, after]
    return target


def test_tolerance_boundary():
    assert is_within_tolerance(1000, 1009)
    assert is_within_tolerance(1000, 1010)
    assert not is_within_tolerance(1000, 1011)
    assert is_within_tolerance(1000, 990)
    assert is_within_tolerance(0, 0)
    assert not is_within_tolerance(0, 1)


@pytest.mark.asyncio
async def test_reconcile_within_tolerance():
    validator = ConsistencyValidator(_target(1009, 1009))

    result = await validator.reconcile(_DATASET, 1000)

    assert result.is_consistent is True
    assert result.source_count == 1000
    assert result.target_count == 1009
    assert result.message == "Data consistent: 1009 rows (expected: 1000)"


@pytest.mark.asyncio
async def test_reconcile_outside_tolerance():
    validator = ConsistencyValidator(_target(1011, 1011))

    result = await validator.reconcile(_DATASET, 1000)

    assert result.is_consistent is False
    assert result.message == "Data mismatch: 1011 rows (expected: 1000, diff: 11)"


@pytest.mark.asyncio
async def test_reconcile_counts_merged_duplicates():
    validator = ConsistencyValidator(_target(1050, 1000))

    result = await validator.reconcile(_DATASET, 1000)

    assert result.duplicate_count == 50
    assert result.target_count == 1000
    assert result.is_consistent is True


@pytest.mark.asyncio
async def test_merge_failure_is_not_fatal():
    target = AsyncMock()
    target.count_rows.return_value = 500
    target.optimize_final.side_effect = RuntimeError("merges are disabled")
    validator = ConsistencyValidator(target)

    assert await validator.merge_duplicates("orders") == 0
    result = await validator.reconcile(_DATASET, 500)
    assert result.is_consistent is True
    assert result.duplicate_count == 0


@pytest.mark.asyncio
async def test_reconcile_reports_count_failure():
    target = AsyncMock()
    target.count_rows.side_effect = ConnectionError("connection refused")

    result = await ConsistencyValidator(target).reconcile(_DATASET, 10)

    assert result.is_consistent is False
    assert result.target_count == 0
    assert result.message == "Validation error: connection refused"


@pytest.mark.asyncio
async def test_partition_probe_returns_zero_on_error():
    target = AsyncMock()
    target.count_for_date.side_effect = [42, RuntimeError("boom")]
    validator = ConsistencyValidator(target)

    assert await validator.count_for_partition_date("orders", "created_at", date(2024, 1, 15)) == 42
    assert await validator.count_for_partition_date("orders", "created_at", date(2024, 1, 16)) == 0
