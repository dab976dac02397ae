from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Sequence, TypeVar

from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

T = TypeVar("T")


def create_pool(
    dsn: str,
    *,
    min_size: Optional[int] = None,
    max_size: Optional[int] = None,
) -> AsyncConnectionPool:
    pool_kwargs: Dict[str, Any] = {"open": False, "kwargs": {"row_factory": dict_row}}
    if min_size is not None:
        pool_kwargs["min_size"] = int(min_size)
    if max_size is not None:
        pool_kwargs["max_size"] = int(max_size)
    return AsyncConnectionPool(dsn, **pool_kwargs)


class BaseStore:
    def __init__(
        self,
        dsn: Optional[str] = None,
        *,
        pool: Optional[AsyncConnectionPool] = None,
        min_size: Optional[int] = None,
        max_size: Optional[int] = None,
    ) -> None:
        if pool is not None:
            self.pool = pool
            self._owns_pool = False
            return
        if not dsn:
            raise ValueError("dsn is required when pool is not provided")
        self.pool = create_pool(str(dsn), min_size=min_size, max_size=max_size)
        self._owns_pool = True

    async def open(self) -> None:
        if self._owns_pool:
            await self.pool.open()

    async def close(self, *, timeout: Optional[float] = None) -> None:
        if not self._owns_pool:
            return
        if timeout is None:
            await self.pool.close()
        else:
            await self.pool.close(timeout=timeout)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        """Yield a connection inside one DB transaction (commit on exit, rollback on error)."""
        async with self.pool.connection() as conn:
            async with conn.transaction():
                yield conn

    async def _run(self, fn: Callable[[Any], Awaitable[T]], *, conn: Any = None) -> T:
        """Run `fn` on the caller's connection when given, else on a pooled one."""
        if conn is not None:
            return await fn(conn)
        async with self.pool.connection() as own_conn:
            return await fn(own_conn)

    async def _query(
        self,
        sql: str,
        params: Sequence[Any] | None,
        read: Callable[[Any], Awaitable[T]],
        *,
        conn: Any = None,
    ) -> T:
        query_params = tuple(params or ())

        async def _go(c: Any) -> T:
            return await read(await c.execute(sql, query_params))

        return await self._run(_go, conn=conn)

    async def fetch_one(self, sql: str, params: Sequence[Any] | None = None, *, conn: Any = None) -> Any:
        return await self._query(sql, params, lambda res: res.fetchone(), conn=conn)

    async def fetch_all(self, sql: str, params: Sequence[Any] | None = None, *, conn: Any = None) -> list[Any]:
        return await self._query(sql, params, lambda res: res.fetchall(), conn=conn)

    async def execute(self, sql: str, params: Sequence[Any] | None = None, *, conn: Any = None) -> int:
        """Run a write; returns the affected row count."""

        async def _rowcount(res: Any) -> int:
            return int(res.rowcount or 0)

        return await self._query(sql, params, _rowcount, conn=conn)

    async def execute_many(self, sql: str, rows: Sequence[Sequence[Any]], *, conn: Any = None) -> int:
        if not rows:
            return 0

        async def _go(c: Any) -> int:
            async with c.cursor() as cur:
                await cur.executemany(sql, [tuple(r) for r in rows])
            return len(rows)

        return await self._run(_go, conn=conn)
