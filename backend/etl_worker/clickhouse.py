import asyncio
import logging
import re
from datetime import date
from typing import Any, Sequence

import clickhouse_connect

from etl_worker.config import settings

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# ReplacingMergeTree version column on tables this worker creates
VERSION_COLUMN = "_synced_at"


def quote_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name or ""):
        raise ValueError(f"Invalid ClickHouse identifier: {name!r}")
    return f"`{name}`"


class ClickHouseTarget:
    """Async facade over a clickhouse-connect client.

    clickhouse-connect is synchronous, so every call is pushed to a worker
    thread to keep the event loop (and the heartbeat timer) responsive.
    """

    def __init__(self, client, database: str) -> None:
        self._client = client
        self.database = database

    def qualified(self, table: str) -> str:
        return f"{quote_identifier(self.database)}.{quote_identifier(table)}"

    async def _query(self, sql: str, parameters: dict | None = None) -> list[tuple]:
        result = await asyncio.to_thread(self._client.query, sql, parameters=parameters)
        return list(result.result_rows)

    async def _command(self, sql: str, parameters: dict | None = None) -> Any:
        return await asyncio.to_thread(self._client.command, sql, parameters=parameters)

    async def ping(self) -> bool:
        rows = await self._query("SELECT 1")
        return bool(rows and rows[0][0] == 1)

    async def table_exists(self, table: str) -> bool:
        rows = await self._query(
            "SELECT count() FROM system.tables WHERE database = {db:String} AND name = {name:String}",
            {"db": self.database, "name": table},
        )
        return bool(rows and int(rows[0][0]) > 0)

    async def describe_table(self, table: str) -> dict[str, str] | None:
        """Return {column: type} for the table, or None when it does not exist."""
        if not await self.table_exists(table):
            return None
        rows = await self._query(f"DESCRIBE TABLE {self.qualified(table)}")
        return {row[0]: row[1] for row in rows}

    async def count_rows(self, table: str) -> int:
        rows = await self._query(f"SELECT count() FROM {self.qualified(table)}")
        return int(rows[0][0]) if rows else 0

    async def max_value(self, table: str, column: str) -> Any:
        rows = await self._query(
            f"SELECT max({quote_identifier(column)}), count() FROM {self.qualified(table)}"
        )
        if not rows or int(rows[0][1]) == 0:
            return None
        return rows[0][0]

    async def max_id_value(self, table: str, column: str) -> int:
        """Highest numeric key in the column; keys stored as strings are parsed, junk counts as 0."""
        rows = await self._query(
            f"SELECT max(toInt64OrZero(toString({quote_identifier(column)}))) FROM {self.qualified(table)}"
        )
        return int(rows[0][0] or 0) if rows else 0

    async def create_table(
        self,
        table: str,
        columns: Sequence[tuple[str, str]],
        order_by: Sequence[str],
        version_column: str = VERSION_COLUMN,
    ) -> None:
        """Create a ReplacingMergeTree table versioned by its load timestamp."""
        definitions = [f"{quote_identifier(name)} {ch_type}" for name, ch_type in columns]
        definitions.append(f"{quote_identifier(version_column)} DateTime DEFAULT now()")
        key = ", ".join(quote_identifier(c) for c in order_by) if order_by else "tuple()"
        sql = (
            f"CREATE TABLE IF NOT EXISTS {self.qualified(table)} ({', '.join(definitions)}) "
            f"ENGINE = ReplacingMergeTree({quote_identifier(version_column)}) "
            f"ORDER BY ({key})"
        )
        await self._command(sql)
        logger.info("ClickHouse: created table %s ordered by (%s)", table, key)

    async def count_for_date(self, table: str, column: str, day: date) -> int:
        rows = await self._query(
            f"SELECT count() FROM {self.qualified(table)} WHERE toDate({quote_identifier(column)}) = {{day:Date}}",
            {"day": day},
        )
        return int(rows[0][0]) if rows else 0

    async def insert_rows(self, table: str, column_names: Sequence[str], rows: Sequence[Sequence[Any]]) -> None:
        if not rows:
            return
        await asyncio.to_thread(
            self._client.insert,
            table,
            rows,
            column_names=list(column_names),
            database=self.database,
        )

    async def truncate(self, table: str) -> None:
        try:
            await self._command(f"TRUNCATE TABLE {self.qualified(table)}")
        except Exception as e:
            logger.warning("ClickHouse: TRUNCATE %s refused, falling back to DELETE: %s", table, e)
            await self._command(f"ALTER TABLE {self.qualified(table)} DELETE WHERE 1 SETTINGS mutations_sync = 1")

    async def delete_since(self, table: str, column: str, cutoff: date) -> None:
        await self._command(
            f"ALTER TABLE {self.qualified(table)} DELETE WHERE toDate({quote_identifier(column)}) >= {{cutoff:Date}}"
            " SETTINGS mutations_sync = 1",
            {"cutoff": cutoff},
        )

    async def optimize_final(self, table: str) -> None:
        await self._command(f"OPTIMIZE TABLE {self.qualified(table)} FINAL")


_target: ClickHouseTarget | None = None


def init_clickhouse() -> ClickHouseTarget:
    global _target
    client = clickhouse_connect.get_client(
        host=settings.clickhouse_host,
        port=settings.clickhouse_port,
        username=settings.clickhouse_username,
        password=settings.clickhouse_password,
        secure=settings.clickhouse_secure,
        # shared between the pipeline thread and health/probe requests
        autogenerate_session_id=False,
    )
    _target = ClickHouseTarget(client, settings.clickhouse_database)
    logger.info("ClickHouse client initialised (%s:%s/%s)", settings.clickhouse_host, settings.clickhouse_port, settings.clickhouse_database)
    return _target


def close_clickhouse() -> None:
    global _target
    if _target is not None:
        try:
            _target._client.close()
        except Exception as e:
            logger.warning("ClickHouse client close failed: %s", e)
    _target = None


def get_clickhouse() -> ClickHouseTarget:
    if _target is None:
        raise RuntimeError("ClickHouse client is not initialised")
    return _target
