from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, ConfigDict

from core.status import SessionStatus


class TurnStatePayload(BaseModel):
    """Subject: evt.session.{id}.state"""

    model_config = ConfigDict(extra="ignore")

    session_id: str
    turn_id: str
    status: SessionStatus
    cycle_count: int
    updated_at: str  # ISO timestamp
    step_description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TurnResultPayload(BaseModel):
    """Subject: evt.session.{id}.result

    Terminal outcome of a turn. `final_result_ref` points at the final
    assistant message; `error_details` is already truncated.
    """

    model_config = ConfigDict(extra="ignore")

    session_id: str
    turn_id: str
    is_success: bool
    final_message: Optional[str] = None
    final_result_ref: Optional[str] = None
    error_details: Optional[str] = None
    error_code: Optional[str] = None


class TransientMessagePayload(BaseModel):
    """Subject: evt.session.{id}.transient"""

    model_config = ConfigDict(extra="ignore")

    session_id: str
    turn_id: str
    message_id: str
    content: str
    cycle_count: int
