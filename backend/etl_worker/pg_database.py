from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from etl_worker.config import settings

engine = create_async_engine(settings.postgres_url, echo=False, pool_pre_ping=True)

AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def init_pg() -> None:
    # Only the job tables are owned here; datasets/data_connections belong to the catalog
    from etl_worker.models.etl_job import EtlJob, EtlJobEvent

    async with engine.begin() as conn:
        await conn.run_sync(
            Base.metadata.create_all,
            tables=[EtlJob.__table__, EtlJobEvent.__table__],
        )
