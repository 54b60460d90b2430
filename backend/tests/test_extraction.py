from datetime import date

import pytest

from etl_worker.exceptions import EtlError
from etl_worker.schemas.dataset import ColumnMapping, ConnectionInfo, ResolvedDataset
from etl_worker.schemas.job import EtlJobRequest
from etl_worker.services.extraction import plan_extraction, quote, sync_strategy

_TODAY = date(2024, 3, 10)


def _dataset(**overrides) -> ResolvedDataset:
    fields = dict(
        id="ds-1",
        name="orders",
        clickhouse_table="orders",
        source_table="sales.orders",
        reference_column="updated_at",
        partition_column="order_date",
        connection=ConnectionInfo(id="c-1", type="postgresql", host="db", database_name="shop"),
    )
    fields.update(overrides)
    return ResolvedDataset(**fields)


def _request(action: str, **params) -> EtlJobRequest:
    return EtlJobRequest(dataset_id="ds-1", action=action, **params)


def test_quote_per_dialect():
    assert quote("postgresql", "sales.orders") == '"sales"."orders"'
    assert quote("mssql", "dbo.Orders") == "[dbo].[Orders]"
    assert quote("mysql", "shop.orders") == "`shop`.`orders`"
    with pytest.raises(EtlError):
        quote("postgresql", "orders; DROP TABLE x")


def test_initial_sync_is_unbounded():
    plan = plan_extraction(_dataset(), _request("initial_sync"), "postgresql", today=_TODAY)

    assert len(plan.scans) == 1
    assert plan.scans[0].sql == 'SELECT * FROM "sales"."orders"'
    assert plan.reset_target is False


def test_full_refresh_resets_target_and_keeps_custom_where():
    plan = plan_extraction(
        _dataset(custom_where="status <> 'void'"), _request("full_refresh"), "mssql", today=_TODAY
    )

    assert plan.reset_target is True
    assert plan.scans[0].sql == "SELECT * FROM [sales].[orders] WITH (NOLOCK) WHERE (status <> 'void')"


def test_incremental_uses_target_high_water_mark():
    plan = plan_extraction(
        _dataset(), _request("incremental_sync"), "postgresql", since="2024-03-01 00:00:00", today=_TODAY
    )

    scan = plan.scans[0]
    assert '"updated_at" > :since' in scan.sql
    assert scan.sql.endswith('ORDER BY "updated_at" ASC')
    assert scan.params == {"since": "2024-03-01 00:00:00"}


def test_incremental_without_high_water_mark_reads_everything():
    plan = plan_extraction(_dataset(), _request("manual_sync"), "postgresql", today=_TODAY)

    assert "WHERE" not in plan.scans[0].sql
    assert plan.scans[0].params == {}


def test_incremental_without_reference_column_degrades_to_full_refresh():
    plan = plan_extraction(_dataset(reference_column=None), _request("incremental_sync"), "postgresql")

    assert plan.reset_target is True
    assert plan.notes and "full refresh" in plan.notes[0]


def test_partial_refresh_window():
    plan = plan_extraction(_dataset(refresh_window_days=30), _request("partial_refresh", days=3), "postgresql", today=_TODAY)

    assert plan.delete_since == date(2024, 3, 7)
    assert '"order_date" >= :cutoff' in plan.scans[0].sql
    assert plan.scans[0].params == {"cutoff": date(2024, 3, 7)}


def test_partial_refresh_falls_back_to_dataset_window_then_default():
    with_window = plan_extraction(_dataset(refresh_window_days=30), _request("partial_refresh"), "postgresql", today=_TODAY)
    default = plan_extraction(_dataset(), _request("partial_refresh"), "postgresql", today=_TODAY)

    assert with_window.delete_since == date(2024, 2, 9)
    assert default.delete_since == date(2024, 3, 3)


def test_missing_sync_one_scan_per_range():
    request = _request(
        "missing_sync",
        pk_column="order_id",
        ranges=[{"start": 1, "end": 100}, {"start": 500, "end": 650, "missing_count": 12}],
    )

    plan = plan_extraction(_dataset(), request, "mssql", today=_TODAY)

    assert len(plan.scans) == 2
    assert "[order_id] BETWEEN :range_start AND :range_end" in plan.scans[0].sql
    assert plan.scans[1].params == {"range_start": 500, "range_end": 650}


def test_new_records_sync_after_explicit_id_with_limit():
    plan = plan_extraction(
        _dataset(), _request("new_records_sync", pk_column="order_id", after_id=1000, limit=1800), "postgresql"
    )

    scan = plan.scans[0]
    assert scan.sql == (
        'SELECT * FROM "sales"."orders" WHERE ("order_id" > :after_id) ORDER BY "order_id" ASC LIMIT :row_cap'
    )
    assert scan.params == {"after_id": 1000, "row_cap": 1800}


def test_new_records_sync_defaults_to_target_max():
    plan = plan_extraction(_dataset(reference_column=None), _request("new_records_sync"), "mssql", after_id=77)

    scan = plan.scans[0]
    assert scan.params == {"after_id": 77}
    assert "[id] > :after_id" in scan.sql


def test_row_limit_uses_top_on_mssql():
    plan = plan_extraction(_dataset(row_limit=500), _request("initial_sync", limit=900), "mssql")

    assert plan.scans[0].sql.startswith("SELECT TOP (:row_cap) * FROM")
    assert plan.scans[0].params == {"row_cap": 500}


def test_source_query_drops_trailing_limit():
    dataset = _dataset(source_table=None, source_query="SELECT id, total FROM orders WHERE total > 0 LIMIT 100;")

    plan = plan_extraction(dataset, _request("initial_sync"), "postgresql")

    assert plan.scans[0].sql == "SELECT * FROM (SELECT id, total FROM orders WHERE total > 0) AS src"


def test_dataset_without_source_is_rejected():
    with pytest.raises(EtlError):
        plan_extraction(_dataset(source_table=None), _request("initial_sync"), "postgresql")


def test_mapping_is_ignored_for_source_side_names():
    dataset = _dataset(column_mapping=[ColumnMapping(source_column="updated_at", target_column="modified")])

    plan = plan_extraction(dataset, _request("incremental_sync"), "postgresql", since="x")

    assert '"updated_at" > :since' in plan.scans[0].sql


def test_mysql_uses_backticks_and_limit():
    plan = plan_extraction(_dataset(row_limit=250), _request("incremental_sync"), "mysql", since="2024-03-01", today=_TODAY)

    assert plan.scans[0].sql == (
        "SELECT * FROM `sales`.`orders` WHERE (`updated_at` > :since) ORDER BY `updated_at` ASC LIMIT :row_cap"
    )
    assert plan.scans[0].params == {"since": "2024-03-01", "row_cap": 250}


def test_missing_strategy_defaults_to_timestamp_and_unknown_to_full_refresh():
    assert sync_strategy(_dataset()) == "timestamp"
    assert sync_strategy(_dataset(sync_strategy=" ID ")) == "id"
    assert sync_strategy(_dataset(sync_strategy="hourly")) == "full_refresh"


def test_id_strategy_reads_past_target_max_key():
    plan = plan_extraction(
        _dataset(sync_strategy="id", reference_column="order_id"), _request("manual_sync"), "postgresql", since=4200
    )

    assert plan.reset_target is False
    assert '"order_id" > :since' in plan.scans[0].sql
    assert plan.scans[0].params == {"since": 4200}


def test_full_refresh_strategy_clears_target_on_incremental_runs():
    plan = plan_extraction(_dataset(sync_strategy="full_refresh"), _request("incremental_sync"), "postgresql", since="x")

    assert plan.reset_target is True
    assert plan.scans[0].sql == 'SELECT * FROM "sales"."orders"'
    assert plan.scans[0].params == {}


def test_date_partition_strategy_rereads_refresh_window():
    plan = plan_extraction(
        _dataset(sync_strategy="date_partition", refresh_window_days=14),
        _request("incremental_sync"), "postgresql", since="ignored", today=_TODAY,
    )

    assert plan.delete_since == date(2024, 2, 25)
    assert plan.delete_column == "order_date"
    assert '"order_date" >= :cutoff' in plan.scans[0].sql
    assert "since" not in plan.scans[0].params


def test_date_partition_strategy_without_partition_column_degrades():
    plan = plan_extraction(
        _dataset(sync_strategy="date_partition", partition_column=None), _request("incremental_sync"), "postgresql"
    )

    assert plan.reset_target is True
    assert "partition column" in plan.notes[0]


def test_date_delete_insert_deletes_last_days_of_reference_column():
    plan = plan_extraction(
        _dataset(sync_strategy="date_delete_insert", delete_days=3),
        _request("manual_sync"), "mssql", today=_TODAY,
    )

    assert plan.delete_since == date(2024, 3, 7)
    assert plan.delete_column == "updated_at"
    assert "[updated_at] >= :cutoff" in plan.scans[0].sql
    assert plan.scans[0].params == {"cutoff": date(2024, 3, 7)}


def test_date_delete_insert_defaults_to_one_day_and_zero_means_today():
    default = plan_extraction(_dataset(sync_strategy="date_delete_insert"), _request("incremental_sync"), "postgresql", today=_TODAY)
    today_only = plan_extraction(
        _dataset(sync_strategy="date_delete_insert", delete_days=0), _request("incremental_sync"), "postgresql", today=_TODAY
    )

    assert default.delete_since == date(2024, 3, 9)
    assert today_only.delete_since == _TODAY


def test_strategy_does_not_change_explicit_actions():
    dataset = _dataset(sync_strategy="date_delete_insert", delete_days=2)

    full = plan_extraction(dataset, _request("full_refresh"), "postgresql", today=_TODAY)
    partial = plan_extraction(dataset, _request("partial_refresh", days=5), "postgresql", today=_TODAY)

    assert full.reset_target is True and full.delete_since is None
    assert partial.delete_column == "order_date"
    assert partial.delete_since == date(2024, 3, 5)
