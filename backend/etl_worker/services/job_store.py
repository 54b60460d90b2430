import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from etl_worker.exceptions import InvalidJobTransition
from etl_worker.models.etl_job import TERMINAL_STATUSES, EtlJob, EtlJobEvent
from etl_worker.pg_database import AsyncSessionLocal
from etl_worker.schemas.job import EtlJobRequest
from etl_worker.schemas.validation import DataValidationResult

logger = logging.getLogger(__name__)

_ALLOWED = {
    "pending": {"running", "failed", "cancelled"},
    "running": {"completed", "failed", "cancelled"},
}


def can_transition(current: str, new: str) -> bool:
    return new in _ALLOWED.get(current, set())


class JobStore:
    """Job status rows plus their append-only event history."""

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal) -> None:
        self._session_factory = session_factory

    async def create(self, request: EtlJobRequest) -> EtlJob:
        async with self._session_factory() as db:
            job = EtlJob(
                dataset_id=request.dataset_id,
                action=request.action.value,
                status="pending",
                triggered_by=request.triggered_by,
                params=request.params(),
                rows_processed=0,
            )
            db.add(job)
            await db.flush()
            db.add(EtlJobEvent(job_id=job.id, status="pending", rows_processed=0, message="Job submitted"))
            await db.commit()
            await db.refresh(job)
        logger.info("ETL job %s queued: dataset=%s action=%s", job.id, job.dataset_id, job.action)
        return job

    async def claim_next(self) -> Optional[EtlJob]:
        """Atomically move the oldest pending job to running and return it."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(EtlJob)
                .where(EtlJob.status == "pending")
                .order_by(EtlJob.created_at, EtlJob.id)
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            job = result.scalar_one_or_none()
            if job is None:
                return None
            job.status = "running"
            job.started_at = datetime.now(timezone.utc)
            db.add(EtlJobEvent(job_id=job.id, status="running", rows_processed=0, message="Picked up by worker"))
            await db.commit()
            await db.refresh(job)
            return job

    async def transition(
        self,
        job_id: int,
        status: str,
        rows_processed: Optional[int] = None,
        error: Optional[str] = None,
        message: Optional[str] = None,
    ) -> EtlJob:
        async with self._session_factory() as db:
            job = await db.get(EtlJob, job_id, with_for_update=True)
            if job is None:
                raise InvalidJobTransition(f"Job {job_id} does not exist")
            if not can_transition(job.status, status):
                raise InvalidJobTransition(f"Job {job_id} cannot move from {job.status} to {status}")
            now = datetime.now(timezone.utc)
            job.status = status
            if rows_processed is not None:
                job.rows_processed = rows_processed
            if error is not None:
                job.error_message = error
            if status == "running" and job.started_at is None:
                job.started_at = now
            if status in TERMINAL_STATUSES:
                job.completed_at = now
            db.add(EtlJobEvent(
                job_id=job_id,
                status=status,
                rows_processed=job.rows_processed,
                message=error or message,
            ))
            await db.commit()
            await db.refresh(job)
            return job

    async def update_progress(self, job_id: int, rows_processed: int, message: Optional[str] = None) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(EtlJob)
                .where(EtlJob.id == job_id, EtlJob.status == "running")
                .values(rows_processed=rows_processed, progress_message=message)
            )
            await db.commit()

    async def attach_validation(self, job_id: int, result: DataValidationResult) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(EtlJob)
                .where(EtlJob.id == job_id, EtlJob.status == "running")
                .values(validation=result.model_dump())
            )
            await db.commit()

    async def get(self, job_id: int) -> Optional[EtlJob]:
        async with self._session_factory() as db:
            return await db.get(EtlJob, job_id)

    async def history(self, job_id: int) -> list[EtlJobEvent]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(EtlJobEvent).where(EtlJobEvent.job_id == job_id).order_by(EtlJobEvent.id)
            )
            return list(result.scalars().all())

    async def list_recent(
        self,
        limit: int = 50,
        status: Optional[str] = None,
        dataset_id: Optional[str] = None,
    ) -> list[EtlJob]:
        query = select(EtlJob).order_by(EtlJob.created_at.desc(), EtlJob.id.desc()).limit(limit)
        if status:
            query = query.where(EtlJob.status == status)
        if dataset_id:
            query = query.where(EtlJob.dataset_id == dataset_id)
        async with self._session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def running_jobs(self) -> list[EtlJob]:
        async with self._session_factory() as db:
            result = await db.execute(select(EtlJob).where(EtlJob.status == "running"))
            return list(result.scalars().all())

    async def mark_interrupted(self, job_ids: list[int]) -> int:
        """Fail jobs left running by a worker process that no longer exists."""
        if not job_ids:
            return 0
        async with self._session_factory() as db:
            result = await db.execute(
                select(EtlJob).where(EtlJob.id.in_(job_ids), EtlJob.status == "running").with_for_update()
            )
            jobs = list(result.scalars().all())
            now = datetime.now(timezone.utc)
            for job in jobs:
                job.status = "failed"
                job.error_message = "Interrupted by worker restart"
                job.completed_at = now
                db.add(EtlJobEvent(
                    job_id=job.id,
                    status="failed",
                    rows_processed=job.rows_processed,
                    message="Interrupted by worker restart",
                ))
            await db.commit()
        if jobs:
            logger.warning("Marked %d interrupted ETL job(s) as failed", len(jobs))
        return len(jobs)
