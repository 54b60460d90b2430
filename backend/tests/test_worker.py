import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from etl_worker.schemas.job import SyncAction
from etl_worker.services.liveness import LivenessReporter
from etl_worker.services.locks import DatasetLockManager
from etl_worker.services.memory_guard import MemoryGuard
from etl_worker.services.pipeline import JobOutcome
from etl_worker.worker import Worker


def _job(job_id=1, dataset_id="ds-1", action="incremental_sync", params=None):
    return SimpleNamespace(id=job_id, dataset_id=dataset_id, action=action, triggered_by="test", params=params or {})


def _worker(redis, job_store=None, pipeline=None):
    pipeline = pipeline or MagicMock()
    pipeline.shutdown_event = asyncio.Event()
    return Worker(
        job_store=job_store or AsyncMock(),
        locks=DatasetLockManager(redis),
        liveness=LivenessReporter(redis),
        pipeline=pipeline,
        memory_guard=MemoryGuard(max_memory_mb=1024, probe=lambda: 0),
    )


@pytest.mark.asyncio
async def test_poll_runs_claimed_job(fake_redis):
    store = AsyncMock()
    store.claim_next.return_value = _job()
    pipeline = MagicMock()
    pipeline.run = AsyncMock(return_value=JobOutcome(status="completed", rows_processed=10))
    worker = _worker(fake_redis, store, pipeline)

    outcome = await worker.poll_once()

    assert outcome.status == "completed"
    job_id, request = pipeline.run.await_args.args
    assert job_id == 1
    assert request.action == SyncAction.incremental_sync
    assert worker.idle.is_set()


@pytest.mark.asyncio
async def test_poll_without_pending_jobs(fake_redis):
    store = AsyncMock()
    store.claim_next.return_value = None
    worker = _worker(fake_redis, store)

    assert await worker.poll_once() is None


@pytest.mark.asyncio
async def test_malformed_stored_job_is_failed(fake_redis):
    store = AsyncMock()
    store.claim_next.return_value = _job(action="missing_sync", params={})
    pipeline = MagicMock()
    pipeline.run = AsyncMock()
    worker = _worker(fake_redis, store, pipeline)

    outcome = await worker.poll_once()

    assert outcome.status == "failed"
    pipeline.run.assert_not_called()
    assert store.transition.await_args.args == (1, "failed")


@pytest.mark.asyncio
async def test_poll_skipped_while_busy_or_shutting_down(fake_redis):
    store = AsyncMock()
    worker = _worker(fake_redis, store)

    worker._busy = True
    assert await worker.poll_once() is None
    worker._busy = False
    worker.request_shutdown()
    assert await worker.poll_once() is None

    store.claim_next.assert_not_called()


@pytest.mark.asyncio
async def test_recover_skips_jobs_whose_lock_is_still_held(fake_redis):
    store = AsyncMock()
    store.running_jobs.return_value = [_job(1, "ds-1"), _job(2, "ds-2")]
    store.mark_interrupted.return_value = 1
    worker = _worker(fake_redis, store)
    await worker.locks.acquire("ds-2", job_id=2)

    assert await worker.recover() == 1
    store.mark_interrupted.assert_awaited_once_with([1])


@pytest.mark.asyncio
async def test_drain_waits_for_idle(fake_redis):
    worker = _worker(fake_redis)
    worker.idle.clear()

    assert await worker.drain(timeout=0.01) is False
    assert worker.shutdown_event.is_set()

    worker.idle.set()
    assert await worker.drain(timeout=0.01) is True


@pytest.mark.asyncio
async def test_heartbeat_is_written(fake_redis):
    worker = _worker(fake_redis)

    await worker.heartbeat()

    assert "etl:worker:heartbeat" in fake_redis.store
