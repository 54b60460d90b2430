class EtlError(Exception):
    code = "etl_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class DatasetNotFound(EtlError):
    code = "dataset_not_found"


class SchemaMismatch(EtlError):
    code = "schema_mismatch"


class UnsupportedSource(EtlError):
    code = "unsupported_source"


class InvalidJobTransition(EtlError):
    code = "invalid_job_transition"


class LockStoreUnavailable(EtlError):
    code = "lock_store_unavailable"
