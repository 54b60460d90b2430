import json
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from etl_worker.exceptions import DatasetNotFound
from etl_worker.models.dataset import DataConnection, Dataset
from etl_worker.pg_database import AsyncSessionLocal
from etl_worker.schemas.dataset import ColumnMapping, ConnectionInfo, ResolvedDataset

logger = logging.getLogger(__name__)


class DatasetCatalog:
    """Read-only view of the dataset/connection definitions."""

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal) -> None:
        self._session_factory = session_factory

    async def load(self, dataset_id: str) -> ResolvedDataset:
        async with self._session_factory() as db:
            dataset = await db.get(Dataset, dataset_id)
            if dataset is None:
                raise DatasetNotFound(f"Dataset not found: {dataset_id}")
            connection = await db.get(DataConnection, dataset.connection_id)
            if connection is None:
                raise DatasetNotFound(f"Connection {dataset.connection_id} for dataset {dataset_id} not found")
        return resolve_dataset(dataset, connection)

    async def exists(self, dataset_id: str) -> bool:
        async with self._session_factory() as db:
            return await db.get(Dataset, dataset_id) is not None


def resolve_dataset(dataset: Dataset, connection: DataConnection) -> ResolvedDataset:
    raw_mapping = dataset.column_mapping or []
    if isinstance(raw_mapping, str):
        raw_mapping = json.loads(raw_mapping) if raw_mapping.strip() else []
    mappings = [ColumnMapping.model_validate(m) for m in raw_mapping]
    return ResolvedDataset(
        id=str(dataset.id),
        name=dataset.name,
        clickhouse_table=dataset.clickhouse_table,
        source_table=dataset.source_table,
        source_query=dataset.source_query,
        column_mapping=mappings,
        reference_column=dataset.reference_column,
        partition_column=dataset.partition_column,
        sync_strategy=dataset.sync_strategy,
        refresh_window_days=dataset.refresh_window_days,
        delete_days=dataset.delete_days,
        custom_where=dataset.custom_where,
        row_limit=dataset.row_limit,
        connection=ConnectionInfo(
            id=str(connection.id),
            type=connection.type,
            host=connection.host,
            port=connection.port,
            database_name=connection.database_name,
            username=connection.username,
            password=connection.password,
        ),
    )
