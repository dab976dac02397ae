from __future__ import annotations

import logging
from typing import Optional

from core.config_defaults import DEFAULT_TURN_MAX_CYCLES
from core.errors import ACTION_EXECUTION_FAILED, ACTION_HANDLER_NULL_RESULT, MAX_TURNS_EXCEEDED
from core.hop import ActionContext, HopKind, HopRequest, HopResult
from core.status import AWAITING_ACTION
from core.utils import hop_result_key
from infra.diagnostics import DiagnosticBuffer

from .collaborators import ActionExecutor
from .hop_processor import HopProcessor
from .lifecycle import TurnClaim

logger = logging.getLogger("ActionHop")


class ActionHop(HopProcessor):
    """Run one tool/action call, record it, then hand the turn back to the model."""

    hop_kind = HopKind.ACTION
    expect_status = AWAITING_ACTION

    def __init__(self, *, action_executor: ActionExecutor, max_cycles: int = DEFAULT_TURN_MAX_CYCLES, **kwargs) -> None:
        super().__init__(**kwargs)
        self.action_executor = action_executor
        self.max_cycles = int(max_cycles)

    async def run(self, claim: TurnClaim, diag: DiagnosticBuffer) -> Optional[HopRequest]:
        request = claim.request
        await claim.start_processing()

        result = await self._execute(request, diag)
        await self._persist(
            claim,
            result_key=hop_result_key(request.cycle_count, "action"),
            success=result.success,
            payload={
                "tool_call_id": request.tool_call_id,
                "tool_name": request.tool_name,
                **result.to_record(),
            },
        )

        next_cycle = request.cycle_count + 1
        if next_cycle > self.max_cycles:
            diag.warning("cycle limit reached", cycle_count=request.cycle_count, max_cycles=self.max_cycles)
            await claim.fail_turn(
                f"Maximum number of cycles ({self.max_cycles}) exceeded",
                MAX_TURNS_EXCEEDED,
            )
            return None

        await claim.resume_for_follow_up(next_cycle)
        return request.next_follow_up(next_cycle)

    async def _execute(self, request: HopRequest, diag: DiagnosticBuffer) -> HopResult:
        """Call the executor; its failures become a failed HopResult fed back to the model."""
        context = ActionContext.from_request(request)
        config_json = request.capability.config_json if request.capability else None
        try:
            result = await self.action_executor.execute(config_json, request.arguments_json, context)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Action %s raised session=%s turn=%s: %s",
                request.tool_label(),
                request.session_id,
                request.turn_id,
                exc,
            )
            diag.error("action handler raised", tool=request.tool_label(), error=f"{type(exc).__name__}: {exc}")
            return HopResult.from_exception(exc, error_code=ACTION_EXECUTION_FAILED)

        if result is None:
            diag.error("action handler returned no result", tool=request.tool_label())
            return HopResult.failure(
                ACTION_HANDLER_NULL_RESULT,
                output="Error: the action returned no result.",
                internal_detail=f"{request.tool_label()} returned None",
            )
        if not result.success:
            diag.warning("action reported failure", tool=request.tool_label(), error_code=result.error_code)
        return result
