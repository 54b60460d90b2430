import asyncio
import logging
import re
from typing import Any, Protocol
from urllib.parse import quote_plus

import mysql.connector
import pyodbc
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from etl_worker.config import settings
from etl_worker.exceptions import UnsupportedSource
from etl_worker.schemas.dataset import ConnectionInfo

logger = logging.getLogger(__name__)

# same shape SQLAlchemy uses for text() binds: ":name" but not "::cast"
_NAMED_PARAM = re.compile(r"(?<![:\w\\]):([A-Za-z_]\w*)(?!:)")


class SourceCursor(Protocol):
    async def fetch(self, size: int) -> list[dict[str, Any]]: ...

    async def close(self) -> None: ...


class SourceReader(Protocol):
    dialect: str

    async def open_scan(self, sql: str, params: dict[str, Any], chunk_size: int) -> SourceCursor: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# PostgreSQL: asyncpg server-side cursor via SQLAlchemy streaming results
# ---------------------------------------------------------------------------

class _PostgresCursor:
    def __init__(self, conn, result) -> None:
        self._conn = conn
        self._result = result

    async def fetch(self, size: int) -> list[dict[str, Any]]:
        rows = await self._result.fetchmany(size)
        return [dict(r) for r in rows]

    async def close(self) -> None:
        try:
            await self._result.close()
        finally:
            await self._conn.close()


class PostgresSource:
    dialect = "postgresql"

    def __init__(self, connection: ConnectionInfo) -> None:
        password = quote_plus(connection.password or "")
        user = quote_plus(connection.username or "")
        url = (
            f"postgresql+asyncpg://{user}:{password}"
            f"@{connection.host}:{connection.port or 5432}/{connection.database_name}"
        )
        self._engine: AsyncEngine = create_async_engine(url, echo=False, pool_pre_ping=True, pool_size=1, max_overflow=0)

    async def open_scan(self, sql: str, params: dict[str, Any], chunk_size: int) -> _PostgresCursor:
        conn = await self._engine.connect()
        try:
            result = await conn.stream(text(sql).execution_options(yield_per=chunk_size), params)
        except Exception:
            await conn.close()
            raise
        return _PostgresCursor(conn, result.mappings())

    async def close(self) -> None:
        await self._engine.dispose()


# ---------------------------------------------------------------------------
# MSSQL: pyodbc cursor drained with fetchmany in a worker thread
# ---------------------------------------------------------------------------

def to_qmark(sql: str, params: dict[str, Any]) -> tuple[str, tuple]:
    """Rewrite :name binds to ODBC '?' placeholders, preserving order."""
    values: list[Any] = []

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name not in params:
            return match.group(0)
        values.append(params[name])
        return "?"

    return _NAMED_PARAM.sub(_replace, sql), tuple(values)


class _MssqlCursor:
    def __init__(self, conn, cursor) -> None:
        self._conn = conn
        self._cursor = cursor
        self._columns = [col[0] for col in cursor.description]

    async def fetch(self, size: int) -> list[dict[str, Any]]:
        rows = await asyncio.to_thread(self._cursor.fetchmany, size)
        return [dict(zip(self._columns, row)) for row in rows]

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)


class MssqlSource:
    dialect = "mssql"

    def __init__(self, connection: ConnectionInfo) -> None:
        self._connection_string = (
            f"DRIVER={{{settings.mssql_driver}}};"
            f"SERVER={connection.host},{connection.port or 1433};"
            f"DATABASE={connection.database_name};"
            f"UID={connection.username or ''};"
            f"PWD={connection.password or ''};"
            f"TrustServerCertificate=yes;"
        )

    def _open_sync(self, sql: str, args: tuple) -> _MssqlCursor:
        conn = pyodbc.connect(self._connection_string)
        try:
            cursor = conn.cursor()
            cursor.execute(sql, args)
            return _MssqlCursor(conn, cursor)
        except Exception:
            conn.close()
            raise

    async def open_scan(self, sql: str, params: dict[str, Any], chunk_size: int) -> _MssqlCursor:
        query, args = to_qmark(sql, params)
        return await asyncio.to_thread(self._open_sync, query, args)

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# MySQL: unbuffered mysql.connector cursor drained with fetchmany in a worker thread
# ---------------------------------------------------------------------------

def to_pyformat(sql: str, params: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    """Rewrite :name binds to mysql.connector's %(name)s placeholders."""
    used: dict[str, Any] = {}

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name not in params:
            return match.group(0)
        used[name] = params[name]
        return f"%({name})s"

    return _NAMED_PARAM.sub(_replace, sql), used


class _MysqlCursor:
    def __init__(self, conn, cursor) -> None:
        self._conn = conn
        self._cursor = cursor

    async def fetch(self, size: int) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._cursor.fetchmany, size)

    def _close_sync(self) -> None:
        try:
            self._cursor.close()
        finally:
            self._conn.close()

    async def close(self) -> None:
        await asyncio.to_thread(self._close_sync)


class MysqlSource:
    dialect = "mysql"

    def __init__(self, connection: ConnectionInfo) -> None:
        self._config = {
            "host": connection.host,
            "port": connection.port or 3306,
            "user": connection.username or "",
            "password": connection.password or "",
            "database": connection.database_name,
            "connection_timeout": 20,
            # lets close() discard rows left unread after a cancel
            "consume_results": True,
        }

    def _open_sync(self, sql: str, args: dict[str, Any]) -> _MysqlCursor:
        conn = mysql.connector.connect(**self._config)
        try:
            cursor = conn.cursor(dictionary=True)
            cursor.execute(sql, args or None)
            return _MysqlCursor(conn, cursor)
        except Exception:
            conn.close()
            raise

    async def open_scan(self, sql: str, params: dict[str, Any], chunk_size: int) -> _MysqlCursor:
        query, args = to_pyformat(sql, params)
        return await asyncio.to_thread(self._open_sync, query, args)

    async def close(self) -> None:
        return None


def open_source(connection: ConnectionInfo) -> SourceReader:
    kind = (connection.type or "").lower()
    if kind in ("postgresql", "postgres"):
        return PostgresSource(connection)
    if kind in ("mysql", "mariadb"):
        return MysqlSource(connection)
    if kind in ("mssql", "sqlserver"):
        return MssqlSource(connection)
    raise UnsupportedSource(f"Unsupported source connection type: {connection.type}")
