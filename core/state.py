from typing import Optional, Any
from datetime import datetime
from pydantic import BaseModel, ConfigDict

from core.status import SessionStatus


class SessionState(BaseModel):
    """DB row mirror for agent.chat_sessions.

    The row is the single owner of the live turn; TurnLifecycle reads it under
    a row lock and writes it back guarded on `current_turn_id`.
    """

    model_config = ConfigDict(extra="ignore")

    session_id: str
    user_id: Optional[str] = None
    agent_id: Optional[str] = None
    status: SessionStatus = "idle"
    current_turn_id: Optional[str] = None
    cycle_count: int = 0
    step_description: Optional[str] = None
    last_error: Optional[str] = None
    last_error_code: Optional[str] = None
    last_result_ref: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "SessionState":
        """Create from DB row. Supports dict or record with attributes."""

        def _get(key: str, default=None):
            if isinstance(row, dict):
                return row.get(key, default)
            return getattr(row, key, default)

        return cls(
            session_id=str(_get("session_id")),
            user_id=_get("user_id"),
            agent_id=_get("agent_id"),
            status=_get("status") or "idle",
            current_turn_id=_get("current_turn_id"),
            cycle_count=_get("cycle_count", 0) or 0,
            step_description=_get("step_description"),
            last_error=_get("last_error"),
            last_error_code=_get("last_error_code"),
            last_result_ref=_get("last_result_ref"),
            updated_at=_get("updated_at"),
        )
