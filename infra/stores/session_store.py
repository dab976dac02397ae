from __future__ import annotations

from typing import Any, List, Optional

from psycopg_pool import AsyncConnectionPool

from core.state import SessionState
from core.status import IN_FLIGHT_STATUSES
from core.time_utils import cutoff_before
from .base import BaseStore

_UNSET = object()

_SESSION_COLUMNS = """
    session_id, user_id, agent_id, status, current_turn_id, cycle_count,
    step_description, last_error, last_error_code, last_result_ref, updated_at
"""


class SessionStore(BaseStore):
    """Persistence for agent.chat_sessions.

    Reads that feed a transition must go through `fetch_for_update` on the
    caller's transaction; writes are compare-and-set on `current_turn_id`.
    """

    def __init__(
        self,
        dsn: str | None = None,
        *,
        pool: AsyncConnectionPool | None = None,
        min_size: int | None = None,
        max_size: int | None = None,
    ):
        super().__init__(dsn, pool=pool, min_size=min_size, max_size=max_size)

    async def ensure_session(
        self,
        session_id: str,
        *,
        user_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        conn: Any = None,
    ) -> None:
        """Insert an idle session row if missing."""
        await self.execute(
            """
            INSERT INTO agent.chat_sessions (session_id, user_id, agent_id, status, cycle_count, updated_at)
            VALUES (%s, %s, %s, 'idle', 0, NOW())
            ON CONFLICT (session_id) DO NOTHING
            """,
            (session_id, user_id, agent_id),
            conn=conn,
        )

    async def fetch(self, session_id: str, *, conn: Any = None) -> Optional[SessionState]:
        data = await self.fetch_one(
            f"SELECT {_SESSION_COLUMNS} FROM agent.chat_sessions WHERE session_id=%s",
            (session_id,),
            conn=conn,
        )
        if not data:
            return None
        return SessionState.from_row(data)

    async def fetch_for_update(self, session_id: str, *, conn: Any) -> Optional[SessionState]:
        """Read the session row and hold its lock until the caller's transaction ends."""
        data = await self.fetch_one(
            f"SELECT {_SESSION_COLUMNS} FROM agent.chat_sessions WHERE session_id=%s FOR UPDATE",
            (session_id,),
            conn=conn,
        )
        if not data:
            return None
        return SessionState.from_row(data)

    async def write_transition(
        self,
        conn: Any,
        *,
        session_id: str,
        expect_turn_id: Optional[str],
        new_status: str,
        current_turn_id: Any = _UNSET,
        cycle_count: Any = _UNSET,
        step_description: Any = _UNSET,
        last_error: Any = _UNSET,
        last_error_code: Any = _UNSET,
        last_result_ref: Any = _UNSET,
    ) -> bool:
        """Apply one status transition guarded on the current turn id.

        Returns False when the row no longer belongs to `expect_turn_id`.
        """
        clauses = ["status=%s", "updated_at=NOW()"]
        params: List[Any] = [new_status]

        if current_turn_id is not _UNSET:
            clauses.append("current_turn_id=%s")
            params.append(current_turn_id)
        if cycle_count is not _UNSET:
            clauses.append("cycle_count=%s")
            params.append(int(cycle_count))
        if step_description is not _UNSET:
            clauses.append("step_description=%s")
            params.append(step_description)
        if last_error is not _UNSET:
            clauses.append("last_error=%s")
            params.append(last_error)
        if last_error_code is not _UNSET:
            clauses.append("last_error_code=%s")
            params.append(last_error_code)
        if last_result_ref is not _UNSET:
            clauses.append("last_result_ref=%s")
            params.append(last_result_ref)

        sql = f"""
            UPDATE agent.chat_sessions
            SET {', '.join(clauses)}
            WHERE session_id=%s
              AND current_turn_id IS NOT DISTINCT FROM %s
        """
        params.extend([session_id, expect_turn_id])

        res = await conn.execute(sql, tuple(params))
        return res.rowcount == 1

    async def list_stuck(
        self,
        *,
        older_than_seconds: float,
        limit: int = 100,
        conn: Any = None,
    ) -> List[SessionState]:
        """Sessions whose turn has been in flight without progress for too long."""
        rows = await self.fetch_all(
            f"""
            SELECT {_SESSION_COLUMNS}
            FROM agent.chat_sessions
            WHERE status = ANY(%s)
              AND updated_at < %s
            ORDER BY updated_at ASC
            LIMIT %s
            """,
            (sorted(IN_FLIGHT_STATUSES), cutoff_before(older_than_seconds), int(limit)),
            conn=conn,
        )
        return [SessionState.from_row(row) for row in rows]
