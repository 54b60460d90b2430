import logging
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Optional

from etl_worker.exceptions import EtlError
from etl_worker.schemas.dataset import ResolvedDataset
from etl_worker.schemas.job import EtlJobRequest, SyncAction

logger = logging.getLogger(__name__)

DEFAULT_PK_COLUMN = "id"
DEFAULT_REFRESH_DAYS = 7
DEFAULT_DELETE_DAYS = 1

# How incremental and manual runs read a dataset, per the catalog's sync_strategy.
SYNC_STRATEGIES = ("timestamp", "id", "date_partition", "date_delete_insert", "full_refresh")
DEFAULT_SYNC_STRATEGY = "timestamp"

_TRAILING_LIMIT = re.compile(r"\s+LIMIT\s+\d+\s*;?\s*$", re.IGNORECASE)
_IDENTIFIER_PART = re.compile(r"^[A-Za-z_][A-Za-z0-9_$ ]*$")


@dataclass(frozen=True)
class SourceScan:
    sql: str
    params: dict[str, Any]
    label: str


@dataclass
class ExtractionPlan:
    scans: list[SourceScan]
    # full_refresh semantics: clear the whole target first
    reset_target: bool = False
    # windowed refresh: delete target rows whose delete_column is on/after this date first
    delete_since: Optional[date] = None
    # source column bounding the window; the pipeline maps it to the target name
    delete_column: Optional[str] = None
    notes: list[str] = field(default_factory=list)


def quote(dialect: str, name: str) -> str:
    parts = [p.strip().strip('"[]`') for p in name.split(".")]
    for part in parts:
        if not _IDENTIFIER_PART.match(part):
            raise EtlError(f"Invalid identifier: {name!r}")
    if dialect == "mssql":
        return ".".join(f"[{p}]" for p in parts)
    if dialect == "mysql":
        return ".".join(f"`{p}`" for p in parts)
    return ".".join(f'"{p}"' for p in parts)


def sync_strategy(dataset: ResolvedDataset) -> str:
    strategy = (dataset.sync_strategy or DEFAULT_SYNC_STRATEGY).strip().lower()
    if strategy not in SYNC_STRATEGIES:
        logger.warning("Dataset %s: unknown sync strategy %r, using full_refresh", dataset.id, dataset.sync_strategy)
        return "full_refresh"
    return strategy


def _relation(dataset: ResolvedDataset, dialect: str) -> str:
    if dataset.source_query and dataset.source_query.strip():
        # catalog preview queries are often saved with a LIMIT; syncs read everything
        query = _TRAILING_LIMIT.sub("", dataset.source_query.strip()).rstrip(";").strip()
        return f"({query}) AS src"
    if dataset.source_table:
        table = quote(dialect, dataset.source_table)
        return f"{table} WITH (NOLOCK)" if dialect == "mssql" else table
    raise EtlError(f"Dataset {dataset.id} has neither a source table nor a source query")


def _select(
    dialect: str,
    relation: str,
    conditions: list[str],
    order_by: Optional[str] = None,
    row_cap: Optional[int] = None,
) -> str:
    top = "TOP (:row_cap) " if dialect == "mssql" and row_cap else ""
    sql = f"SELECT {top}* FROM {relation}"
    if conditions:
        sql += " WHERE " + " AND ".join(f"({c})" for c in conditions)
    if order_by:
        sql += f" ORDER BY {order_by} ASC"
    if dialect != "mssql" and row_cap:
        sql += " LIMIT :row_cap"
    return sql


def row_cap(dataset: ResolvedDataset, request: EtlJobRequest) -> Optional[int]:
    caps = [c for c in (request.limit, dataset.row_limit) if c]
    return min(caps) if caps else None


def pk_column(dataset: ResolvedDataset, request: EtlJobRequest) -> str:
    return request.pk_column or dataset.reference_column or DEFAULT_PK_COLUMN


def target_column_for(dataset: ResolvedDataset, source_column: str) -> str:
    """Name the target uses for a source column (identity when unmapped)."""
    for mapping in dataset.column_mapping:
        if mapping.source_column.lower() == source_column.lower():
            return mapping.target_column
    return source_column


def refresh_days(dataset: ResolvedDataset, request: EtlJobRequest) -> int:
    return request.days or dataset.refresh_window_days or DEFAULT_REFRESH_DAYS


def plan_extraction(
    dataset: ResolvedDataset,
    request: EtlJobRequest,
    dialect: str,
    *,
    since: Any = None,
    after_id: Optional[int] = None,
    today: Optional[date] = None,
) -> ExtractionPlan:
    """Build the source scans for a job.

    `since` is the target's current high-water mark of the reference column
    (incremental actions under the timestamp and id strategies) and
    `after_id` the exclusive pk lower bound for new_records_sync when the
    job did not carry one.

    Incremental and manual runs follow the dataset's sync strategy:

    - timestamp / id: rows whose reference column is past `since`
    - date_partition: re-read the last refresh_window_days of the partition column
    - date_delete_insert: re-read the last delete_days of the reference column (0 = today only)
    - full_refresh: clear the target and read everything
    """
    today = today or date.today()
    relation = _relation(dataset, dialect)
    base_conditions = [dataset.custom_where.strip()] if dataset.custom_where and dataset.custom_where.strip() else []
    cap = row_cap(dataset, request)
    action = request.action

    def _full(reset: bool, label: str, notes: Optional[list[str]] = None) -> ExtractionPlan:
        params = {"row_cap": cap} if cap else {}
        return ExtractionPlan(
            scans=[SourceScan(_select(dialect, relation, base_conditions, row_cap=cap), params, label)],
            reset_target=reset,
            notes=notes or [],
        )

    def _degraded(missing: str) -> ExtractionPlan:
        note = f"Dataset {dataset.id} has no {missing}; running a full refresh instead"
        logger.warning(note)
        return _full(True, f"full refresh (no {missing})", [note])

    def _window(column: str, days: int) -> ExtractionPlan:
        cutoff = today - timedelta(days=days)
        params: dict[str, Any] = {"cutoff": cutoff}
        if cap:
            params["row_cap"] = cap
        sql = _select(dialect, relation, base_conditions + [f"{quote(dialect, column)} >= :cutoff"], row_cap=cap)
        label = "today" if days == 0 else f"last {days} days"
        return ExtractionPlan(
            scans=[SourceScan(sql, params, f"{column} {label}")],
            delete_since=cutoff,
            delete_column=column,
        )

    if action == SyncAction.initial_sync:
        return _full(False, "initial")

    if action == SyncAction.full_refresh:
        return _full(True, "full refresh")

    if action in (SyncAction.incremental_sync, SyncAction.manual_sync):
        strategy = sync_strategy(dataset)
        if strategy == "full_refresh":
            return _full(True, "full refresh (dataset strategy)")
        if strategy == "date_partition":
            if not dataset.partition_column:
                return _degraded("partition column")
            return _window(dataset.partition_column, dataset.refresh_window_days or DEFAULT_REFRESH_DAYS)
        if not dataset.reference_column:
            return _degraded("reference column")
        if strategy == "date_delete_insert":
            days = dataset.delete_days if dataset.delete_days is not None else DEFAULT_DELETE_DAYS
            return _window(dataset.reference_column, max(days, 0))

        ref = quote(dialect, dataset.reference_column)
        conditions = list(base_conditions)
        params = {}
        if since is not None:
            conditions.append(f"{ref} > :since")
            params["since"] = since
        if cap:
            params["row_cap"] = cap
        sql = _select(dialect, relation, conditions, order_by=ref, row_cap=cap)
        return ExtractionPlan(scans=[SourceScan(sql, params, f"{strategy} since {since!r}")])

    if action == SyncAction.partial_refresh:
        if not dataset.partition_column:
            return _degraded("partition column")
        return _window(dataset.partition_column, refresh_days(dataset, request))

    pk = quote(dialect, pk_column(dataset, request))

    if action == SyncAction.missing_sync:
        scans = []
        for i, key_range in enumerate(request.ranges or [], start=1):
            sql = _select(
                dialect, relation,
                base_conditions + [f"{pk} BETWEEN :range_start AND :range_end"],
                order_by=pk,
            )
            scans.append(SourceScan(
                sql,
                {"range_start": key_range.start, "range_end": key_range.end},
                f"range {i}/{len(request.ranges)} [{key_range.start}, {key_range.end}]",
            ))
        return ExtractionPlan(scans=scans)

    if action == SyncAction.new_records_sync:
        lower = request.after_id if request.after_id is not None else (after_id or 0)
        params = {"after_id": lower}
        if cap:
            params["row_cap"] = cap
        sql = _select(dialect, relation, base_conditions + [f"{pk} > :after_id"], order_by=pk, row_cap=cap)
        return ExtractionPlan(scans=[SourceScan(sql, params, f"{pk_column(dataset, request)} > {lower}")])

    raise EtlError(f"Unsupported action: {action}")
