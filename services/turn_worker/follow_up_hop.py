from __future__ import annotations

import logging
from typing import Optional

from core.errors import LLM_CALL_FAILED, UNEXPECTED_ERROR, classify_exception, normalize_error
from core.hop import HopKind, HopRequest
from core.status import AWAITING_FOLLOWUP
from core.utils import hop_result_key
from infra.diagnostics import DiagnosticBuffer

from .collaborators import FollowUpOrchestrator, LLMInteraction
from .hop_processor import HopProcessor
from .lifecycle import TurnClaim

logger = logging.getLogger("FollowUpHop")


class FollowUpHop(HopProcessor):
    """Call the model for the current cycle and act on its decision.

    The session stays in awaiting_followup, locked, for the duration of the call.
    """

    hop_kind = HopKind.FOLLOW_UP
    expect_status = AWAITING_FOLLOWUP

    def __init__(self, *, llm: LLMInteraction, orchestrator: FollowUpOrchestrator, **kwargs) -> None:
        super().__init__(**kwargs)
        self.llm = llm
        self.orchestrator = orchestrator

    async def run(self, claim: TurnClaim, diag: DiagnosticBuffer) -> Optional[HopRequest]:
        request = claim.request
        try:
            provider_result = await self.llm.call(
                session_id=request.session_id,
                user_id=request.user_id,
                agent_config_id=request.agent_config_id,
                turn_id=request.turn_id,
                cycle_count=request.cycle_count,
                related_record_id=request.related_record_id,
            )
        except Exception as exc:  # noqa: BLE001
            _, message, _ = classify_exception(exc)
            logger.warning(
                "LLM call failed session=%s turn=%s cycle=%s: %s",
                request.session_id,
                request.turn_id,
                request.cycle_count,
                message,
            )
            diag.error("llm call failed", error=normalize_error(exc, default_code=LLM_CALL_FAILED, source="llm"))
            await claim.fail_turn(f"LLM call failed: {message}", LLM_CALL_FAILED)
            return None

        await self._persist(
            claim,
            result_key=hop_result_key(request.cycle_count, "followup"),
            success=True,
            payload={"message_id": provider_result.message_id, "content": provider_result.content},
        )

        decision = await self.orchestrator.decide(request, provider_result)
        diag.info("follow-up decision", outcome=decision.outcome)

        if decision.outcome == "complete":
            await claim.complete_successfully(
                decision.final_result_ref or provider_result.message_id,
                decision.final_message if decision.final_message is not None else provider_result.content,
            )
            return None

        if decision.outcome == "action":
            action_request = decision.action_request(request)
            if decision.interim_message:
                claim.add_transient_message(decision.interim_message, message_id=decision.interim_message_id)
            await claim.pause_for_action(action_request.tool_label())
            return action_request

        await claim.fail_turn(
            decision.error_message or "Follow-up orchestration failed",
            decision.error_code or UNEXPECTED_ERROR,
        )
        return None
