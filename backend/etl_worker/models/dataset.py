from sqlalchemy import JSON, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from etl_worker.pg_database import Base


# Both tables are owned by the catalog service; this worker only reads them.
class DataConnection(Base):
    __tablename__ = "data_connections"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)  # "postgresql" | "mysql" | "mssql"
    host: Mapped[str] = mapped_column(String(255), nullable=False)
    port: Mapped[int | None] = mapped_column(Integer, nullable=True)
    database_name: Mapped[str] = mapped_column(String(255), nullable=False)
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    password: Mapped[str | None] = mapped_column(String(500), nullable=True)


class Dataset(Base):
    __tablename__ = "datasets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    connection_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source_table: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source_query: Mapped[str | None] = mapped_column(Text, nullable=True)
    column_mapping: Mapped[list | None] = mapped_column(JSON, nullable=True)
    clickhouse_table: Mapped[str] = mapped_column(String(255), nullable=False)
    reference_column: Mapped[str | None] = mapped_column(String(255), nullable=True)
    partition_column: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sync_strategy: Mapped[str | None] = mapped_column(String(32), nullable=True)
    refresh_window_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    delete_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    custom_where: Mapped[str | None] = mapped_column(Text, nullable=True)
    row_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
