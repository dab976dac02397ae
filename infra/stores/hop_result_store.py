from __future__ import annotations

from typing import Any, Dict, List

from psycopg_pool import AsyncConnectionPool

from core.utils import to_jsonb

from .base import BaseStore


class HopResultStore(BaseStore):
    """Append-once ledger of hop outcomes, keyed by (turn_id, result_key)."""

    def __init__(
        self,
        dsn: str | None = None,
        *,
        pool: AsyncConnectionPool | None = None,
        min_size: int | None = None,
        max_size: int | None = None,
    ):
        super().__init__(dsn, pool=pool, min_size=min_size, max_size=max_size)

    async def save_hop_result(
        self,
        *,
        session_id: str,
        turn_id: str,
        cycle_count: int,
        hop_kind: str,
        result_key: str,
        success: bool,
        payload: Dict[str, Any],
        conn: Any = None,
    ) -> bool:
        """Insert the outcome; returns False if this key was already recorded."""
        inserted = await self.execute(
            """
            INSERT INTO agent.hop_results (
                turn_id, result_key, session_id, cycle_count, hop_kind, success, payload, created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb, NOW())
            ON CONFLICT (turn_id, result_key) DO NOTHING
            """,
            (
                turn_id,
                result_key,
                session_id,
                int(cycle_count),
                str(hop_kind),
                bool(success),
                to_jsonb(payload),
            ),
            conn=conn,
        )
        return inserted == 1

    async def list_for_turn(self, turn_id: str, *, conn: Any = None) -> List[Dict[str, Any]]:
        rows = await self.fetch_all(
            """
            SELECT turn_id, result_key, session_id, cycle_count, hop_kind, success, payload, created_at
            FROM agent.hop_results
            WHERE turn_id=%s
            ORDER BY created_at ASC
            """,
            (turn_id,),
            conn=conn,
        )
        return [dict(row) for row in rows]
