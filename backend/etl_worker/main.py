import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from etl_worker.clickhouse import close_clickhouse, get_clickhouse, init_clickhouse
from etl_worker.config import settings
from etl_worker.pg_database import engine, init_pg
from etl_worker.redis_client import close_redis, get_redis, init_redis
from etl_worker.routers.etl import router as etl_router
from etl_worker.services.catalog import DatasetCatalog
from etl_worker.services.job_store import JobStore
from etl_worker.services.liveness import LivenessReporter
from etl_worker.services.locks import DatasetLockManager
from etl_worker.services.memory_guard import MemoryGuard
from etl_worker.services.pipeline import SyncPipeline
from etl_worker.worker import Worker

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def build_worker(redis, target) -> Worker:
    locks = DatasetLockManager(
        redis,
        ttl_seconds=settings.etl_lock_ttl_seconds,
        cancel_ttl_seconds=settings.etl_cancel_ttl_seconds,
    )
    memory_guard = MemoryGuard(max_memory_mb=settings.etl_max_memory_mb)
    job_store = JobStore()
    pipeline = SyncPipeline(
        job_store=job_store,
        catalog=DatasetCatalog(),
        target=target,
        locks=locks,
        memory_guard=memory_guard,
        shutdown_event=asyncio.Event(),
        stream_batch_size=settings.etl_stream_batch_size,
        insert_batch_size=settings.etl_insert_batch_size,
        min_insert_batch_size=settings.etl_min_insert_batch_size,
        memory_check_every=settings.etl_memory_check_every_batches,
        io_retry_attempts=settings.etl_io_retry_attempts,
        io_retry_delay=settings.etl_io_retry_delay_seconds,
    )
    return Worker(
        job_store=job_store,
        locks=locks,
        liveness=LivenessReporter(redis),
        pipeline=pipeline,
        memory_guard=memory_guard,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_pg()
    redis = await init_redis()
    target = init_clickhouse()

    worker = build_worker(redis, target)
    app.state.worker = worker
    # Jobs left "running" by a crashed worker would otherwise never finish
    await worker.recover()

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        worker.heartbeat,
        "interval",
        seconds=settings.heartbeat_interval_seconds,
        next_run_time=datetime.now(timezone.utc),
    )
    scheduler.add_job(
        worker.poll_once,
        "interval",
        seconds=settings.pending_poll_seconds,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        worker.sample_memory,
        "interval",
        seconds=settings.memory_sample_seconds,
    )
    scheduler.start()
    logger.info(
        "ETL worker started: heartbeat every %ss, polling for jobs every %ss",
        settings.heartbeat_interval_seconds,
        settings.pending_poll_seconds,
    )

    yield

    await worker.drain(settings.shutdown_grace_seconds)
    scheduler.shutdown(wait=False)
    close_clickhouse()
    await close_redis()
    await engine.dispose()
    logger.info("ETL worker stopped")


app = FastAPI(title="ETL Sync Worker", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(etl_router, prefix="/api")


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/api/health/dependencies")
async def health_dependencies() -> dict:
    result = {}

    async def _postgres():
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def _redis():
        await get_redis().ping()

    async def _clickhouse():
        if not await get_clickhouse().ping():
            raise RuntimeError("ping returned false")

    for name, check in (("postgres", _postgres), ("redis", _redis), ("clickhouse", _clickhouse)):
        try:
            await asyncio.wait_for(check(), timeout=5.0)
            result[name] = "ok"
        except asyncio.TimeoutError:
            result[name] = "error: timed out"
        except Exception as e:
            result[name] = f"error: {e}"
    return result
