import logging
import re
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Mapping, Sequence

from etl_worker.schemas.dataset import ColumnMapping
from etl_worker.services.type_reconciler import unwrap_type

logger = logging.getLogger(__name__)

EPOCH_DATE = date(1970, 1, 1)
EPOCH_DATETIME = datetime(1970, 1, 1)

_DAY_FIRST = re.compile(r"^(\d{2})[./-](\d{2})[./-](\d{4})(?:\s+(\d{2}):(\d{2})(?::(\d{2}))?)?$")
_COMPACT = re.compile(r"^(\d{4})(\d{2})(\d{2})$")


def parse_datetime(value: str) -> datetime | None:
    """Parse the date/time spellings sources commonly hand back as text."""
    text = value.strip()
    if not text:
        return None
    iso = text.replace("Z", "+00:00") if text.endswith("Z") else text
    # SQL Server datetime2 carries 7 fractional digits; fromisoformat wants at most 6
    iso = re.sub(r"(\.\d{6})\d+", r"\1", iso)
    try:
        parsed = datetime.fromisoformat(iso)
    except ValueError:
        parsed = None
    if parsed is not None:
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed

    match = _DAY_FIRST.match(text)
    if match:
        day, month, year = int(match.group(1)), int(match.group(2)), int(match.group(3))
        if month > 12 and day <= 12:
            day, month = month, day
        hh, mm, ss = (int(match.group(i) or 0) for i in (4, 5, 6))
        try:
            return datetime(year, month, day, hh, mm, ss)
        except ValueError:
            return None

    match = _COMPACT.match(text)
    if match:
        try:
            return datetime(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        except ValueError:
            return None
    return None


def _is_nullable(ch_type: str) -> bool:
    return ch_type.replace("LowCardinality(", "").startswith("Nullable(")


def _default_for(base: str) -> Any:
    if base.startswith(("Int", "UInt", "Float", "Decimal")):
        return 0
    if base == "Date" or base.startswith("Date32"):
        return EPOCH_DATE
    if base.startswith("DateTime"):
        return EPOCH_DATETIME
    return ""


def coerce_value(value: Any, ch_type: str) -> Any:
    base = unwrap_type(ch_type)
    if value is None:
        return None if _is_nullable(ch_type) else _default_for(base)

    if base.startswith(("Int", "UInt")):
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (int, float, Decimal)):
            return int(value)
        if isinstance(value, str):
            text = value.strip().lower()
            if text in ("true", "false"):
                return int(text == "true")
            return int(Decimal(text)) if text else _default_for(base)
        return int(value)

    if base.startswith(("Float", "Decimal")):
        if isinstance(value, str):
            return float(value) if value.strip() else 0.0
        return float(value)

    if base == "Date" or base.startswith("Date32"):
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        parsed = parse_datetime(str(value))
        if parsed is None:
            logger.warning("Unknown date format %r, using default", value)
            return None if _is_nullable(ch_type) else EPOCH_DATE
        return parsed.date()

    if base.startswith("DateTime"):
        if isinstance(value, datetime):
            if value.tzinfo is not None:
                return value.astimezone(timezone.utc).replace(tzinfo=None)
            return value
        if isinstance(value, date):
            return datetime.combine(value, time.min)
        parsed = parse_datetime(str(value))
        if parsed is None:
            logger.warning("Unknown datetime format %r, using default", value)
            return None if _is_nullable(ch_type) else EPOCH_DATETIME
        return parsed

    if base == "String":
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        if isinstance(value, (datetime, date)):
            return value.isoformat(sep=" ") if isinstance(value, datetime) else value.isoformat()
        return value if isinstance(value, str) else str(value)

    return value


class RowTransformer:
    """Turns source rows (mappings by column name) into ClickHouse insert tuples."""

    def __init__(self, mappings: Sequence[ColumnMapping], target_types: Mapping[str, str]) -> None:
        self.mappings = list(mappings)
        self.column_names = [m.target_column for m in self.mappings]
        self._types = [target_types.get(m.target_column, "String") for m in self.mappings]
        self._keys: list[str] | None = None

    def _resolve_keys(self, row: Mapping[str, Any]) -> list[str]:
        by_lower = {str(k).lower(): k for k in row.keys()}
        keys = []
        for m in self.mappings:
            if m.source_column in row:
                keys.append(m.source_column)
            else:
                keys.append(by_lower.get(m.source_column.lower(), m.source_column))
        return keys

    def __call__(self, row: Mapping[str, Any]) -> list:
        if self._keys is None:
            self._keys = self._resolve_keys(row)
        return [
            coerce_value(row.get(key), ch_type)
            for key, ch_type in zip(self._keys, self._types)
        ]
