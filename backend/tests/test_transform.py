from datetime import date, datetime
from decimal import Decimal

import pytest

from etl_worker.schemas.dataset import ColumnMapping
from etl_worker.services.transform import EPOCH_DATE, EPOCH_DATETIME, RowTransformer, coerce_value, parse_datetime


@pytest.mark.parametrize(
    "text, expected",
    [
        ("2024-01-15", datetime(2024, 1, 15)),
        ("2024-01-15 10:30:00", datetime(2024, 1, 15, 10, 30)),
        ("2024-01-15T10:30:00Z", datetime(2024, 1, 15, 10, 30)),
        ("2024-01-15T12:30:00+02:00", datetime(2024, 1, 15, 10, 30)),
        ("2024-01-15T10:30:00.1234567", datetime(2024, 1, 15, 10, 30, 0, 123456)),
        ("15.01.2024", datetime(2024, 1, 15)),
        ("05/03/2024", datetime(2024, 3, 5)),
        ("01/25/2024", datetime(2024, 1, 25)),
        ("15.01.2024 08:05", datetime(2024, 1, 15, 8, 5)),
        ("20240115", datetime(2024, 1, 15)),
    ],
)
def test_parse_datetime(text, expected):
    assert parse_datetime(text) == expected


@pytest.mark.parametrize("text", ["", "yesterday", "32.13.2024", "2024-13-45"])
def test_parse_datetime_rejects_garbage(text):
    assert parse_datetime(text) is None


def test_null_defaults_by_type():
    assert coerce_value(None, "Int64") == 0
    assert coerce_value(None, "Float64") == 0
    assert coerce_value(None, "Date") == EPOCH_DATE
    assert coerce_value(None, "DateTime") == EPOCH_DATETIME
    assert coerce_value(None, "String") == ""
    assert coerce_value(None, "Nullable(Int64)") is None
    assert coerce_value(None, "LowCardinality(Nullable(String))") is None


def test_value_casts():
    assert coerce_value(Decimal("12.50"), "Float64") == 12.5
    assert coerce_value(True, "UInt8") == 1
    assert coerce_value("42", "Int32") == 42
    assert coerce_value(datetime(2024, 1, 15, 9, 0), "Date") == date(2024, 1, 15)
    assert coerce_value(date(2024, 1, 15), "DateTime") == datetime(2024, 1, 15)
    assert coerce_value("15.01.2024", "Date") == date(2024, 1, 15)
    assert coerce_value(123, "String") == "123"
    assert coerce_value(b"abc", "String") == "abc"


def test_unparseable_date_falls_back():
    assert coerce_value("not a date", "Date") == EPOCH_DATE
    assert coerce_value("not a date", "Nullable(DateTime)") is None


def test_row_transformer_orders_columns_and_matches_case_insensitively():
    transformer = RowTransformer(
        [
            ColumnMapping(source_column="OrderId", target_column="order_id"),
            ColumnMapping(source_column="Amount", target_column="amount"),
            ColumnMapping(source_column="Missing", target_column="missing"),
        ],
        {"order_id": "Int64", "amount": "Float64", "missing": "Nullable(String)"},
    )

    rows = [
        transformer({"orderid": 1, "AMOUNT": Decimal("9.99"), "ignored": "x"}),
        transformer({"orderid": 2, "AMOUNT": None, "ignored": "y"}),
    ]

    assert transformer.column_names == ["order_id", "amount", "missing"]
    assert rows == [[1, 9.99, None], [2, 0, None]]
