"""Shared skeleton for one asynchronous hop invocation.

Order of operations for every hop:

1. claim the session row (stale deliveries return here, silently)
2. do the hop's work and persist its outcome under the same lock
3. apply the next transition, then commit
4. dispatch the next hop, if any, outside the lock
5. flush diagnostics, whatever happened above
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Optional

from core.errors import DispatchError, UNEXPECTED_ERROR, classify_exception, normalize_error
from core.hop import HopKind, HopRequest
from infra.diagnostics import DiagnosticBuffer, DiagnosticSink
from infra.hop_dispatcher import DispatchGateway

from .collaborators import HopResultSink
from .lifecycle import TurnClaim, TurnLifecycle

logger = logging.getLogger("HopProcessor")


class HopOutcome(str, Enum):
    STALE = "stale"
    DISPATCHED = "dispatched"
    FINISHED = "finished"
    FAILED = "failed"


class HopProcessor(ABC):
    hop_kind: HopKind
    expect_status: str

    def __init__(
        self,
        *,
        lifecycle: TurnLifecycle,
        gateway: DispatchGateway,
        result_sink: HopResultSink,
        diagnostics_sink: Optional[DiagnosticSink] = None,
    ) -> None:
        self.lifecycle = lifecycle
        self.gateway = gateway
        self.result_sink = result_sink
        self.diagnostics_sink = diagnostics_sink

    @abstractmethod
    async def run(self, claim: TurnClaim, diag: DiagnosticBuffer) -> Optional[HopRequest]:
        """Do the hop's work under the claim. Returns the next hop to dispatch, if any."""

    async def process(self, request: HopRequest) -> HopOutcome:
        diag = DiagnosticBuffer(self.diagnostics_sink, session_id=request.session_id, turn_id=request.turn_id)
        try:
            return await self._process(request, diag)
        finally:
            await diag.flush()

    async def _process(self, request: HopRequest, diag: DiagnosticBuffer) -> HopOutcome:
        try:
            async with self.lifecycle.claim(request, self.expect_status) as claim:
                if claim is None:
                    return HopOutcome.STALE
                diag.info(
                    f"{self.hop_kind.value} hop started",
                    cycle_count=request.cycle_count,
                    tool_call_id=request.tool_call_id,
                )
                next_hop = await self.run(claim, diag)

            if next_hop is None:
                return HopOutcome.FINISHED
            await self.gateway.dispatch(next_hop.hop_kind, next_hop, request.session_id, request.turn_id)
            return HopOutcome.DISPATCHED
        except DispatchError as exc:
            # the gateway already failed the turn
            diag.error("next hop dispatch failed", error=str(exc), hop_kind=exc.hop_kind)
            return HopOutcome.FAILED
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "Unhandled error in %s hop session=%s turn=%s",
                self.hop_kind.value,
                request.session_id,
                request.turn_id,
            )
            diag.error("unhandled hop error", error=normalize_error(exc, source=type(self).__name__))
            await self._fail_unexpected(request, exc)
            return HopOutcome.FAILED

    async def _fail_unexpected(self, request: HopRequest, exc: Exception) -> None:
        _, message, _ = classify_exception(exc)
        try:
            await self.lifecycle.fail_turn(
                request.session_id,
                request.turn_id,
                f"Unexpected error: {message}",
                UNEXPECTED_ERROR,
                trace_id=request.trace_id,
            )
        except Exception as fail_exc:  # noqa: BLE001
            logger.error(
                "Fallback fail_turn also failed session=%s turn=%s: %s",
                request.session_id,
                request.turn_id,
                fail_exc,
            )

    async def _persist(
        self,
        claim: TurnClaim,
        *,
        result_key: str,
        success: bool,
        payload: dict[str, Any],
    ) -> bool:
        request = claim.request
        return await self.result_sink.save_hop_result(
            session_id=request.session_id,
            turn_id=request.turn_id,
            cycle_count=request.cycle_count,
            hop_kind=self.hop_kind.value,
            result_key=result_key,
            success=success,
            payload=payload,
            conn=claim.conn,
        )
