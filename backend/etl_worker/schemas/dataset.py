from typing import Any, List, Optional

from pydantic import BaseModel, model_validator

# The catalog has stored mappings under several key spellings over time.
_MAPPING_KEYS = {
    "source_column": ("source_column", "sourceColumn", "source", "sourceName"),
    "target_column": ("target_column", "targetColumn", "target", "targetName"),
    "source_type": ("source_type", "sourceType", "sqlType", "type"),
    "explicit_target_type": ("explicit_target_type", "clickhouseType", "clickhouse_type"),
}


class ColumnMapping(BaseModel):
    """One source→target column pair, resolved once when a dataset is loaded."""

    source_column: str
    target_column: str
    source_type: str = ""
    explicit_target_type: Optional[str] = None

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def _fold_legacy_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        folded = {
            field: next((data[k] for k in keys if data.get(k)), None)
            for field, keys in _MAPPING_KEYS.items()
        }
        folded["source_column"] = folded["source_column"] or folded["target_column"]
        folded["target_column"] = folded["target_column"] or folded["source_column"]
        folded["source_type"] = folded["source_type"] or ""
        return folded


class ConnectionInfo(BaseModel):
    id: str
    type: str
    host: str
    port: Optional[int] = None
    database_name: str
    username: Optional[str] = None
    password: Optional[str] = None


class ResolvedDataset(BaseModel):
    id: str
    name: str
    clickhouse_table: str
    source_table: Optional[str] = None
    source_query: Optional[str] = None
    column_mapping: List[ColumnMapping] = []
    reference_column: Optional[str] = None
    partition_column: Optional[str] = None
    sync_strategy: Optional[str] = None
    refresh_window_days: Optional[int] = None
    delete_days: Optional[int] = None
    custom_where: Optional[str] = None
    row_limit: Optional[int] = None
    connection: ConnectionInfo
