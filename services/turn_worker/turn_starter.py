from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from core.errors import InputValidationError
from core.hop import HopKind, HopRequest
from infra.hop_dispatcher import DispatchGateway

from .lifecycle import TurnLifecycle

logger = logging.getLogger("TurnStarter")


@dataclass(frozen=True, slots=True, kw_only=True)
class StartTurnRequest:
    session_id: str
    user_id: Optional[str] = None
    agent_id: Optional[str] = None
    agent_config_id: Optional[str] = None
    related_record_id: Optional[str] = None
    turn_id: Optional[str] = None
    trace_id: Optional[str] = None


class TurnStarter:
    """Inbound entry point: open a turn and hand cycle 1 to a follow-up hop.

    The first model call runs asynchronously like every later one, so the
    caller gets the turn id back as soon as the hop is queued.
    """

    def __init__(self, *, lifecycle: TurnLifecycle, gateway: DispatchGateway) -> None:
        self.lifecycle = lifecycle
        self.gateway = gateway

    async def start_turn(self, req: StartTurnRequest) -> str:
        if not (req.session_id or "").strip():
            raise InputValidationError("session_id is required")

        turn_id = await self.lifecycle.begin_turn(
            req.session_id,
            user_id=req.user_id,
            agent_id=req.agent_id,
            turn_id=req.turn_id,
            trace_id=req.trace_id,
            await_follow_up=True,
        )

        hop = HopRequest(
            session_id=req.session_id,
            turn_id=turn_id,
            cycle_count=1,
            hop_kind=HopKind.FOLLOW_UP,
            user_id=req.user_id,
            agent_id=req.agent_id,
            agent_config_id=req.agent_config_id,
            related_record_id=req.related_record_id,
            trace_id=req.trace_id,
        )
        # DispatchError propagates: the gateway has already failed the turn.
        await self.gateway.dispatch(HopKind.FOLLOW_UP, hop, req.session_id, turn_id)
        logger.info("Turn %s queued for session %s", turn_id, req.session_id)
        return turn_id
