from __future__ import annotations

from typing import Any, Iterable

from psycopg_pool import AsyncConnectionPool

from core.utils import to_jsonb

from .base import BaseStore


class DiagnosticStore(BaseStore):
    def __init__(
        self,
        dsn: str | None = None,
        *,
        pool: AsyncConnectionPool | None = None,
        min_size: int | None = None,
        max_size: int | None = None,
    ):
        super().__init__(dsn, pool=pool, min_size=min_size, max_size=max_size)

    async def insert_records(self, records: Iterable[Any], *, conn: Any = None) -> int:
        """Persist buffered diagnostic records in one round trip. Returns rows written."""
        rows = [
            (
                rec.diagnostic_id,
                rec.session_id,
                rec.turn_id,
                rec.level,
                rec.message,
                to_jsonb(rec.data or {}),
                rec.created_at,
            )
            for rec in records
        ]
        return await self.execute_many(
            """
            INSERT INTO agent.turn_diagnostics (
                diagnostic_id, session_id, turn_id, level, message, data, created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s)
            """,
            rows,
            conn=conn,
        )
