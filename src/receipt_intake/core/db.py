from __future__ import annotations

from collections.abc import AsyncIterator, Iterator, Mapping
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import CursorResult
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.sql.base import Executable

from receipt_intake.core.logging import get_logger, log_event, log_exception

logger = get_logger(__name__)

Params = Mapping[str, Any] | None


class StorageError(RuntimeError):
    pass


class StorageIntegrityError(StorageError):
    pass


@dataclass(frozen=True)
class ExecuteResult:
    last_row_id: int | None
    rows_changed: int


@contextmanager
def _storage_errors() -> Iterator[None]:
    try:
        yield
    except IntegrityError as e:
        raise StorageIntegrityError(str(e.orig or e)) from e
    except SQLAlchemyError as e:
        raise StorageError(str(e)) from e


def _execute_result(result: CursorResult) -> ExecuteResult:
    last_row_id: int | None = None
    if result.is_insert:
        pk = result.inserted_primary_key
        if pk:
            last_row_id = pk[0]
    return ExecuteResult(last_row_id=last_row_id, rows_changed=result.rowcount)


class Commands:
    """The three storage primitives, bound to one open connection."""

    def __init__(self, conn: AsyncConnection):
        self._conn = conn

    async def execute(self, statement: Executable, params: Params = None) -> ExecuteResult:
        with _storage_errors():
            result = await self._conn.execute(statement, params)
        return _execute_result(result)

    async def fetch_one(self, query: Executable, params: Params = None) -> dict[str, Any] | None:
        with _storage_errors():
            result = await self._conn.execute(query, params)
            row = result.mappings().first()
        return dict(row) if row is not None else None

    async def fetch_all(self, query: Executable, params: Params = None) -> list[dict[str, Any]]:
        with _storage_errors():
            result = await self._conn.execute(query, params)
            rows = result.mappings().all()
        return [dict(r) for r in rows]


class Database:
    """
    Async handle over the relational store.

    Constructed once at startup and passed to whoever needs it. Standalone calls
    to execute/fetch_one/fetch_all each run in their own short transaction; use
    ``transaction()`` when several statements must commit together.
    """

    def __init__(self, url: str, *, echo: bool = False):
        self._url = make_url(url)
        self._engine: AsyncEngine = create_async_engine(url, echo=echo, pool_pre_ping=True)
        if self._url.drivername.startswith("sqlite"):
            event.listen(self._engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

    async def execute(self, statement: Executable, params: Params = None) -> ExecuteResult:
        async with self.transaction() as unit:
            return await unit.execute(statement, params)

    async def fetch_one(self, query: Executable, params: Params = None) -> dict[str, Any] | None:
        with _storage_errors():
            async with self._engine.connect() as conn:
                return await Commands(conn).fetch_one(query, params)

    async def fetch_all(self, query: Executable, params: Params = None) -> list[dict[str, Any]]:
        with _storage_errors():
            async with self._engine.connect() as conn:
                return await Commands(conn).fetch_all(query, params)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Commands]:
        with _storage_errors():
            conn = await self._engine.connect()
        try:
            with _storage_errors():
                await conn.begin()
            try:
                yield Commands(conn)
            except Exception:
                try:
                    await conn.rollback()
                except Exception:  # noqa: BLE001
                    # The original error is the one worth surfacing.
                    log_exception(logger, "db.transaction.rollback_failed")
                raise
            with _storage_errors():
                await conn.commit()
        finally:
            await conn.close()

    async def create_all(self) -> None:
        import receipt_intake.models  # noqa: F401
        from receipt_intake.core.models import Base

        with _storage_errors():
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        log_event(logger, "db.schema.ready", driver=self._url.drivername)

    async def dispose(self) -> None:
        await self._engine.dispose()


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
