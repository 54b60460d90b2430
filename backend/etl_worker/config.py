from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # PostgreSQL (catalog + job status store)
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "analytics"
    postgres_user: str = "analytics"
    postgres_password: str = ""

    # Redis: dataset locks, cancel flags, worker heartbeat
    redis_url: str = "redis://localhost:6379/0"
    redis_max_connections: int = 20

    # ClickHouse (target)
    clickhouse_host: str = "localhost"
    clickhouse_port: int = 8123
    clickhouse_username: str = "default"
    clickhouse_password: str = ""
    clickhouse_database: str = "analytics"
    clickhouse_secure: bool = False

    # MSSQL sources are reached through ODBC
    mssql_driver: str = "ODBC Driver 18 for SQL Server"

    # Streaming / memory
    etl_max_memory_mb: int = 1024
    etl_stream_batch_size: int = 10_000
    etl_insert_batch_size: int = 5_000
    etl_min_insert_batch_size: int = 500
    etl_memory_check_every_batches: int = 10

    # Locks and retries
    etl_lock_ttl_seconds: int = 3600
    etl_cancel_ttl_seconds: int = 3600
    etl_io_retry_attempts: int = 3
    etl_io_retry_delay_seconds: float = 2.0

    # Worker timers
    heartbeat_interval_seconds: int = 10
    heartbeat_stale_seconds: int = 60
    pending_poll_seconds: int = 5
    memory_sample_seconds: int = 30
    shutdown_grace_seconds: int = 30

    cors_origins: list[str] = ["http://localhost:5173"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def postgres_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )


settings = Settings()
