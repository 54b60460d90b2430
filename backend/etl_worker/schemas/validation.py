from typing import List, Optional

from pydantic import BaseModel


class TypeMismatch(BaseModel):
    column: str
    source_type: str
    clickhouse_type: str
    compatible: bool = False


class SchemaValidation(BaseModel):
    valid: bool
    mismatches: List[TypeMismatch] = []
    warning: Optional[str] = None


class DataValidationResult(BaseModel):
    source_count: int
    target_count: int
    is_consistent: bool
    duplicate_count: int
    message: str
