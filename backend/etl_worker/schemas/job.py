import re
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SyncAction(str, Enum):
    initial_sync = "initial_sync"
    incremental_sync = "incremental_sync"
    full_refresh = "full_refresh"
    manual_sync = "manual_sync"
    partial_refresh = "partial_refresh"
    missing_sync = "missing_sync"
    new_records_sync = "new_records_sync"


class JobStatus(str, Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


# Which optional fields each action may carry. `limit` is accepted everywhere.
_ACTION_FIELDS = {
    "days": {SyncAction.partial_refresh},
    "ranges": {SyncAction.missing_sync},
    "pk_column": {SyncAction.missing_sync, SyncAction.new_records_sync},
    "after_id": {SyncAction.new_records_sync},
}


class KeyRange(BaseModel):
    start: int
    end: int
    missing_count: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _ordered(self) -> "KeyRange":
        if self.start > self.end:
            raise ValueError(f"range start {self.start} is greater than end {self.end}")
        return self


class EtlJobRequest(BaseModel):
    dataset_id: str = Field(min_length=1)
    action: SyncAction
    triggered_by: Optional[str] = None
    days: Optional[int] = Field(default=None, gt=0)
    ranges: Optional[List[KeyRange]] = None
    pk_column: Optional[str] = None
    after_id: Optional[int] = Field(default=None, ge=0)
    limit: Optional[int] = Field(default=None, gt=0)

    @field_validator("pk_column")
    @classmethod
    def _plain_identifier(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _IDENTIFIER.match(value):
            raise ValueError("pk_column must be a plain column name")
        return value

    @model_validator(mode="after")
    def _fields_match_action(self) -> "EtlJobRequest":
        for field, allowed in _ACTION_FIELDS.items():
            if getattr(self, field) is not None and self.action not in allowed:
                raise ValueError(f"'{field}' is not valid for action '{self.action.value}'")
        if self.action == SyncAction.missing_sync and not self.ranges:
            raise ValueError("missing_sync requires at least one range")
        return self

    def params(self) -> dict:
        return self.model_dump(
            mode="json",
            exclude={"dataset_id", "action", "triggered_by"},
            exclude_none=True,
        )

    @classmethod
    def from_record(cls, dataset_id: str, action: str, triggered_by: Optional[str], params: Optional[dict]) -> "EtlJobRequest":
        return cls(dataset_id=dataset_id, action=action, triggered_by=triggered_by, **(params or {}))


class JobEventRecord(BaseModel):
    status: str
    rows_processed: int
    message: Optional[str] = None
    created_at: datetime


class JobRecord(BaseModel):
    id: int
    dataset_id: str
    action: str
    status: str
    triggered_by: Optional[str] = None
    params: dict = {}
    rows_processed: int = 0
    progress_message: Optional[str] = None
    validation: Optional[dict] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    events: List[JobEventRecord] = []

    model_config = {"from_attributes": True}
