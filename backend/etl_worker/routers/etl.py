import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from etl_worker.clickhouse import get_clickhouse
from etl_worker.config import settings
from etl_worker.exceptions import DatasetNotFound, InvalidJobTransition
from etl_worker.models.etl_job import TERMINAL_STATUSES
from etl_worker.redis_client import get_redis
from etl_worker.schemas.job import EtlJobRequest, JobEventRecord, JobRecord, JobStatus
from etl_worker.services.catalog import DatasetCatalog
from etl_worker.services.consistency import ConsistencyValidator
from etl_worker.services.extraction import target_column_for
from etl_worker.services.job_store import JobStore
from etl_worker.services.liveness import LivenessReporter
from etl_worker.services.locks import DatasetLockManager

logger = logging.getLogger(__name__)
router = APIRouter()


# ---------------------------------------------------------------------------
# Dependencies (overridden in tests)
# ---------------------------------------------------------------------------

def get_job_store() -> JobStore:
    return JobStore()


def get_catalog() -> DatasetCatalog:
    return DatasetCatalog()


def get_lock_manager() -> DatasetLockManager:
    return DatasetLockManager(
        get_redis(),
        ttl_seconds=settings.etl_lock_ttl_seconds,
        cancel_ttl_seconds=settings.etl_cancel_ttl_seconds,
    )


def get_liveness() -> LivenessReporter:
    return LivenessReporter(get_redis())


def get_validator() -> ConsistencyValidator:
    return ConsistencyValidator(get_clickhouse())


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

@router.post("/etl/jobs", response_model=JobRecord, status_code=201)
async def submit_job(
    request: EtlJobRequest,
    store: JobStore = Depends(get_job_store),
    catalog: DatasetCatalog = Depends(get_catalog),
) -> JobRecord:
    if not await catalog.exists(request.dataset_id):
        raise HTTPException(status_code=404, detail=f"Dataset not found: {request.dataset_id}")
    job = await store.create(request)
    return JobRecord.model_validate(job)


@router.get("/etl/jobs", response_model=List[JobRecord])
async def list_jobs(
    status: Optional[JobStatus] = None,
    dataset_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    store: JobStore = Depends(get_job_store),
) -> List[JobRecord]:
    jobs = await store.list_recent(limit=limit, status=status.value if status else None, dataset_id=dataset_id)
    return [JobRecord.model_validate(j) for j in jobs]


@router.get("/etl/jobs/{job_id}", response_model=JobRecord)
async def get_job(job_id: int, store: JobStore = Depends(get_job_store)) -> JobRecord:
    job = await store.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    record = JobRecord.model_validate(job)
    record.events = [JobEventRecord.model_validate(e, from_attributes=True) for e in await store.history(job_id)]
    return record


@router.post("/etl/jobs/{job_id}/cancel")
async def cancel_job(
    job_id: int,
    store: JobStore = Depends(get_job_store),
    locks: DatasetLockManager = Depends(get_lock_manager),
) -> dict:
    job = await store.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.status in TERMINAL_STATUSES:
        raise HTTPException(status_code=409, detail=f"Job {job_id} is already {job.status}")

    if job.status == "pending":
        try:
            await store.transition(job_id, "cancelled", message="Cancelled before start")
            return {"job_id": job_id, "status": "cancelled"}
        except InvalidJobTransition as e:
            # claimed by a worker between the read and the update
            job = await store.get(job_id)
            if job is None or job.status != "running":
                raise HTTPException(status_code=409, detail=str(e))

    await locks.request_cancel(job_id)
    return {"job_id": job_id, "status": "cancelling"}


# ---------------------------------------------------------------------------
# Worker / datasets
# ---------------------------------------------------------------------------

@router.get("/etl/worker/health")
async def worker_health(liveness: LivenessReporter = Depends(get_liveness)) -> dict:
    status = await liveness.is_alive(settings.heartbeat_stale_seconds)
    return {
        "is_alive": status.is_alive,
        "last_heartbeat": status.last_heartbeat,
        "message": status.message,
    }


@router.get("/etl/datasets/{dataset_id}/partition-count")
async def partition_count(
    dataset_id: str,
    day: date = Query(..., alias="date"),
    catalog: DatasetCatalog = Depends(get_catalog),
    validator: ConsistencyValidator = Depends(get_validator),
) -> dict:
    try:
        dataset = await catalog.load(dataset_id)
    except DatasetNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    if not dataset.partition_column:
        raise HTTPException(status_code=400, detail=f"Dataset {dataset_id} has no partition column")
    column = target_column_for(dataset, dataset.partition_column)
    count = await validator.count_for_partition_date(dataset.clickhouse_table, column, day)
    return {"dataset_id": dataset_id, "date": day.isoformat(), "count": count}
