import pytest
from pydantic import ValidationError

from etl_worker.schemas.job import EtlJobRequest, SyncAction
from etl_worker.services.job_store import can_transition


def test_minimal_request():
    request = EtlJobRequest(dataset_id="ds-1", action="incremental_sync")

    assert request.action == SyncAction.incremental_sync
    assert request.params() == {}


def test_params_roundtrip_through_record():
    request = EtlJobRequest(
        dataset_id="ds-1",
        action="missing_sync",
        triggered_by="scheduler",
        pk_column="order_id",
        ranges=[{"start": 10, "end": 20}],
    )

    params = request.params()
    rebuilt = EtlJobRequest.from_record("ds-1", "missing_sync", "scheduler", params)

    assert params == {"pk_column": "order_id", "ranges": [{"start": 10, "end": 20}]}
    assert rebuilt == request


@pytest.mark.parametrize(
    "payload",
    [
        {"dataset_id": "ds-1", "action": "teleport"},
        {"dataset_id": "", "action": "initial_sync"},
        {"dataset_id": "ds-1", "action": "partial_refresh", "days": 0},
        {"dataset_id": "ds-1", "action": "initial_sync", "days": 3},
        {"dataset_id": "ds-1", "action": "incremental_sync", "after_id": 5},
        {"dataset_id": "ds-1", "action": "missing_sync"},
        {"dataset_id": "ds-1", "action": "missing_sync", "ranges": [{"start": 9, "end": 1}]},
        {"dataset_id": "ds-1", "action": "new_records_sync", "pk_column": "id; drop"},
        {"dataset_id": "ds-1", "action": "new_records_sync", "after_id": -1},
        {"dataset_id": "ds-1", "action": "initial_sync", "limit": 0},
    ],
)
def test_invalid_requests_are_rejected(payload):
    with pytest.raises(ValidationError):
        EtlJobRequest(**payload)


def test_status_transitions():
    assert can_transition("pending", "running")
    assert can_transition("pending", "cancelled")
    assert can_transition("running", "completed")
    assert can_transition("running", "cancelled")

    assert not can_transition("pending", "completed")
    assert not can_transition("completed", "running")
    assert not can_transition("failed", "pending")
    assert not can_transition("cancelled", "cancelled")
