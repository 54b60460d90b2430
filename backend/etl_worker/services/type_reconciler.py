import logging
import re
from dataclasses import dataclass
from typing import Optional

from etl_worker.exceptions import EtlError
from etl_worker.schemas.dataset import ColumnMapping, ResolvedDataset
from etl_worker.schemas.validation import SchemaValidation, TypeMismatch

logger = logging.getLogger(__name__)

STRING_TYPE = "String"

_SQL_TO_CLICKHOUSE = {
    # integers
    "tinyint": "Int8",
    "smallint": "Int16", "int2": "Int16", "smallserial": "Int16", "year": "Int16",
    "int": "Int32", "int4": "Int32", "integer": "Int32", "serial": "Int32", "mediumint": "Int32",
    "pls_integer": "Int32", "binary_integer": "Int32",
    "bigint": "Int64", "int8": "Int64", "bigserial": "Int64",
    "oid": "UInt32",
    # floats / decimals
    "real": "Float32", "float4": "Float32", "binary_float": "Float32",
    "float": "Float64", "float8": "Float64", "double": "Float64", "double precision": "Float64",
    "decimal": "Float64", "numeric": "Float64", "number": "Float64", "newdecimal": "Float64",
    "money": "Float64", "smallmoney": "Float64", "binary_double": "Float64",
    # strings
    "text": "String", "varchar": "String", "char": "String", "character varying": "String",
    "character": "String", "bpchar": "String", "name": "String", "citext": "String",
    "nvarchar": "String", "nchar": "String", "ntext": "String", "varchar2": "String", "nvarchar2": "String",
    "tinytext": "String", "mediumtext": "String", "longtext": "String", "clob": "String", "nclob": "String",
    "uuid": "String", "uniqueidentifier": "String", "json": "String", "jsonb": "String", "xml": "String",
    "enum": "String", "set": "String", "inet": "String", "cidr": "String", "macaddr": "String",
    "sql_variant": "String", "sysname": "String", "time": "String", "timetz": "String", "interval": "String",
    "bytea": "String", "blob": "String", "binary": "String", "varbinary": "String", "image": "String",
    "geometry": "String", "geography": "String", "point": "String",
    # dates
    "date": "Date", "newdate": "Date",
    "datetime": "DateTime", "datetime2": "DateTime", "smalldatetime": "DateTime", "datetimeoffset": "DateTime",
    "timestamp": "DateTime", "timestamptz": "DateTime",
    "timestamp without time zone": "DateTime", "timestamp with time zone": "DateTime",
    "timestamp with local time zone": "DateTime",
    # booleans
    "boolean": "UInt8", "bool": "UInt8", "bit": "UInt8",
}

_WRAPPER = re.compile(r"^(?:Nullable|LowCardinality)\((.*)\)$")
_SIGNED_INT = re.compile(r"^Int\d+$")
_UNSIGNED_INT = re.compile(r"^UInt\d+$")
_FLOAT = re.compile(r"^Float\d+$")


def map_type(source_type: Optional[str]) -> str:
    """Map a source SQL type name to a ClickHouse type. Never raises."""
    if not source_type or not isinstance(source_type, str):
        return STRING_TYPE
    # "Timestamp(3)  WITH time zone" → "timestamp with time zone"
    base = " ".join(re.sub(r"\(.*?\)", " ", source_type.lower()).split())
    return _SQL_TO_CLICKHOUSE.get(base, STRING_TYPE)


def unwrap_type(ch_type: str) -> str:
    ch_type = (ch_type or "").strip()
    match = _WRAPPER.match(ch_type)
    while match:
        ch_type = match.group(1).strip()
        match = _WRAPPER.match(ch_type)
    return ch_type


def are_compatible(expected: str, actual: str) -> bool:
    expected, actual = unwrap_type(expected), unwrap_type(actual)
    if expected == actual:
        return True
    for family in (_SIGNED_INT, _UNSIGNED_INT, _FLOAT):
        if family.match(expected) and family.match(actual):
            return True
    # a String column can receive any value
    return actual == STRING_TYPE


def expected_type(mapping: ColumnMapping) -> str:
    return mapping.explicit_target_type or map_type(mapping.source_type)


async def validate_schema(dataset: ResolvedDataset, target) -> SchemaValidation:
    if not dataset.column_mapping:
        logger.warning("Dataset %s: no column mapping, skipping type validation", dataset.id)
        return SchemaValidation(valid=True, warning="No column mapping defined; type validation skipped")

    try:
        actual_types = await target.describe_table(dataset.clickhouse_table)
    except Exception as e:
        logger.warning("Dataset %s: type validation failed, proceeding: %s", dataset.id, e)
        return SchemaValidation(valid=True, warning=f"Type validation failed: {e}")

    if not actual_types:
        return SchemaValidation(
            valid=True,
            warning=f"Target table {dataset.clickhouse_table} does not exist yet; type validation skipped",
        )

    mismatches = []
    for mapping in dataset.column_mapping:
        actual = actual_types.get(mapping.target_column)
        if actual is None:
            continue
        expected = expected_type(mapping)
        if not are_compatible(expected, actual):
            mismatches.append(
                TypeMismatch(column=mapping.target_column, source_type=expected, clickhouse_type=actual)
            )

    if mismatches:
        summary = ", ".join(f"{m.column}({m.source_type}→{m.clickhouse_type})" for m in mismatches)
        logger.error("Dataset %s: type mismatch detected: %s", dataset.id, summary)
        return SchemaValidation(valid=False, mismatches=mismatches, warning=f"Type mismatch: {summary}")

    return SchemaValidation(valid=True)


# Sorting-key candidates for tables created on first sync, most specific first.
_KEY_CANDIDATES = ("id", "uuid", "code", "pk", "_id")


@dataclass
class TargetTableLayout:
    columns: list[tuple[str, str]]
    order_by: list[str]


def target_table_layout(dataset: ResolvedDataset) -> TargetTableLayout:
    """Columns and sorting key for a target table that does not exist yet.

    Sorting-key columns keep their plain type; every other column is
    Nullable so source NULLs survive the load.
    """
    if not dataset.column_mapping:
        raise EtlError(
            f"Dataset {dataset.id} has no column mapping; cannot create target table {dataset.clickhouse_table}"
        )
    names = [m.target_column for m in dataset.column_mapping]
    lowered = {n.lower(): n for n in names}

    order_by: list[str] = []
    key = next((lowered[c] for c in _KEY_CANDIDATES if c in lowered), None)
    if key:
        order_by = [key]
    else:
        for column in (dataset.partition_column, dataset.reference_column):
            match = next((m.target_column for m in dataset.column_mapping
                          if column and column.lower() in (m.source_column.lower(), m.target_column.lower())), None)
            if match:
                order_by = [match] + [n for n in names if n != match][:4]
                break
    if not order_by:
        order_by = names[:5]

    columns = []
    for mapping in dataset.column_mapping:
        ch_type = unwrap_type(expected_type(mapping))
        if mapping.target_column not in order_by:
            ch_type = f"Nullable({ch_type})"
        columns.append((mapping.target_column, ch_type))
    return TargetTableLayout(columns=columns, order_by=order_by)
