import asyncio
import logging
from typing import Optional

from etl_worker.exceptions import EtlError
from etl_worker.services.job_store import JobStore
from etl_worker.services.liveness import LivenessReporter
from etl_worker.services.locks import DatasetLockManager
from etl_worker.services.memory_guard import MemoryGuard
from etl_worker.services.pipeline import JobOutcome, SyncPipeline, build_request

logger = logging.getLogger(__name__)


class Worker:
    """Runs claimed jobs one at a time and owns the periodic worker chores.

    The scheduler calls `poll_once`, `heartbeat` and `sample_memory` on
    their own intervals; `drain` is used on shutdown.
    """

    def __init__(
        self,
        *,
        job_store: JobStore,
        locks: DatasetLockManager,
        liveness: LivenessReporter,
        pipeline: SyncPipeline,
        memory_guard: MemoryGuard,
    ) -> None:
        self.job_store = job_store
        self.locks = locks
        self.liveness = liveness
        self.pipeline = pipeline
        self.memory_guard = memory_guard
        self.shutdown_event = pipeline.shutdown_event
        self.idle = asyncio.Event()
        self.idle.set()
        self.current_job_id: Optional[int] = None
        self._busy = False

    async def recover(self) -> int:
        """Fail jobs a dead worker left in `running`.

        A running job whose dataset lock is still held belongs to a live
        worker elsewhere and is left alone.
        """
        orphaned = []
        for job in await self.job_store.running_jobs():
            if await self.locks.holder(job.dataset_id) is None:
                orphaned.append(job.id)
            else:
                logger.info("ETL job %s still holds its dataset lock, leaving it running", job.id)
        return await self.job_store.mark_interrupted(orphaned)

    async def poll_once(self) -> Optional[JobOutcome]:
        if self._busy or self.shutdown_event.is_set():
            return None
        self._busy = True
        self.idle.clear()
        try:
            job = await self.job_store.claim_next()
            if job is None:
                return None
            self.current_job_id = job.id
            try:
                request = build_request(job)
            except EtlError as e:
                logger.error("ETL job %s rejected: %s", job.id, e)
                await self.job_store.transition(job.id, "failed", rows_processed=0, error=str(e))
                return JobOutcome(status="failed", rows_processed=0, error=str(e))
            return await self.pipeline.run(job.id, request)
        except Exception as e:
            logger.error("ETL worker poll failed: %s", e)
            return None
        finally:
            self.current_job_id = None
            self._busy = False
            self.idle.set()

    async def heartbeat(self) -> None:
        await self.liveness.beat()

    def sample_memory(self) -> None:
        status = self.memory_guard.check_memory()
        if status.ok:
            logger.info("Worker memory: %d MB of %d MB", status.used_mb, self.memory_guard.max_memory_mb)
        else:
            logger.warning("Worker memory over budget: %d MB of %d MB", status.used_mb, self.memory_guard.max_memory_mb)
            self.memory_guard.force_reclaim()

    def request_shutdown(self) -> None:
        if not self.shutdown_event.is_set():
            logger.info("ETL worker shutdown requested (job in flight: %s)", self.current_job_id)
        self.shutdown_event.set()

    async def drain(self, timeout: float) -> bool:
        """Stop taking jobs and wait for the in-flight one to reach a batch boundary."""
        self.request_shutdown()
        try:
            await asyncio.wait_for(self.idle.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning("ETL job %s did not stop within %ss", self.current_job_id, timeout)
            return False
