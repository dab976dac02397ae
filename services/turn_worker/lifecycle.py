"""Turn state machine.

TurnLifecycle is the only writer of `agent.chat_sessions.status`. Every
transition is read-guard-write under the session row lock, and every applied
transition publishes a best-effort notification after the write commits.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import uuid6

from core.errors import (
    ERROR_CODES,
    UNEXPECTED_ERROR,
    InvalidTransitionError,
    TurnInFlightError,
    truncate_message,
)
from core.config_defaults import (
    DEFAULT_TURN_ERROR_MESSAGE_MAX_CHARS,
    DEFAULT_TURN_NOTIFY_TIMEOUT_SECONDS,
)
from core.hop import HopRequest
from core.state import SessionState
from core.status import (
    AWAITING_ACTION,
    AWAITING_FOLLOWUP,
    FAILED,
    IDLE,
    PROCESSING,
    can_transition,
    is_in_flight,
)
from core.turn_context import TurnContext
from infra.event_emitter import (
    NotifyOutcome,
    emit_transient_message,
    emit_turn_result,
    emit_turn_state,
    publish_best_effort,
)
from infra.nats_client import NATSClient
from infra.stores import SessionStore
from infra.worker_helpers import HopGuard

logger = logging.getLogger("TurnLifecycle")


class TransitionResult(str, Enum):
    APPLIED = "applied"
    # already in the target status for this turn
    UNCHANGED = "unchanged"
    # session missing or owned by another turn; nothing written
    STALE = "stale"


@dataclass(frozen=True, slots=True)
class Notice:
    kind: str  # state | result | transient
    ctx: TurnContext
    data: Dict[str, Any]


def new_turn_id() -> str:
    return f"turn_{uuid6.uuid7().hex}"


class TurnLifecycle:
    def __init__(
        self,
        *,
        session_store: SessionStore,
        nats: NATSClient,
        error_message_max_chars: int = DEFAULT_TURN_ERROR_MESSAGE_MAX_CHARS,
        notify_timeout_seconds: float = DEFAULT_TURN_NOTIFY_TIMEOUT_SECONDS,
        transient_messages_enabled: bool = False,
        turn_id_factory: Callable[[], str] = new_turn_id,
    ) -> None:
        self.session_store = session_store
        self.nats = nats
        self.error_message_max_chars = int(error_message_max_chars)
        self.notify_timeout_seconds = float(notify_timeout_seconds)
        self.transient_messages_enabled = bool(transient_messages_enabled)
        self._turn_id_factory = turn_id_factory

    @classmethod
    def from_config(cls, cfg: Any, *, session_store: SessionStore, nats: NATSClient) -> "TurnLifecycle":
        turn = cfg.turn
        return cls(
            session_store=session_store,
            nats=nats,
            error_message_max_chars=turn.error_message_max_chars,
            notify_timeout_seconds=turn.notify_timeout_seconds,
            transient_messages_enabled=turn.transient_messages_enabled,
        )

    # ----------------------------- turn start ----------------------------- #

    async def begin_turn(
        self,
        session_id: str,
        *,
        user_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        turn_id: Optional[str] = None,
        trace_id: Optional[str] = None,
        await_follow_up: bool = False,
    ) -> str:
        """Open a new turn at cycle 1 in `processing`. Raises TurnInFlightError if one is live.

        With ``await_follow_up`` the turn moves on to `awaiting_followup` in the
        same transaction, ready for its first follow-up hop.
        """
        new_id = turn_id or self._turn_id_factory()
        ctx = TurnContext(session_id=session_id, turn_id=new_id, trace_id=trace_id)
        notices: List[Notice] = []
        async with self.session_store.transaction() as conn:
            await self.session_store.ensure_session(session_id, user_id=user_id, agent_id=agent_id, conn=conn)
            state = await self.session_store.fetch_for_update(session_id, conn=conn)
            if state is None:
                raise InvalidTransitionError(f"session {session_id} vanished during begin_turn")
            if is_in_flight(state.status):
                raise TurnInFlightError(
                    f"session {session_id} already has turn {state.current_turn_id} in {state.status}",
                    detail={"current_turn_id": state.current_turn_id, "status": state.status},
                )
            ok = await self.session_store.write_transition(
                conn,
                session_id=session_id,
                expect_turn_id=state.current_turn_id,
                new_status=PROCESSING,
                current_turn_id=new_id,
                cycle_count=1,
                step_description=None,
                last_error=None,
                last_error_code=None,
                last_result_ref=None,
            )
            if not ok:
                raise TurnInFlightError(f"session {session_id} changed while starting a turn")
            notices.append(Notice("state", ctx, {"status": PROCESSING, "cycle_count": 1}))
            if await_follow_up:
                await self._apply(
                    conn,
                    session_id,
                    new_id,
                    AWAITING_FOLLOWUP,
                    {"step_description": None, "cycle_count": 1},
                    None,
                    notices,
                    trace_id,
                )

        await self.publish(notices)
        logger.info("Turn started session=%s turn=%s", session_id, new_id)
        return new_id

    # ----------------------------- transitions ----------------------------- #

    async def start_processing(
        self,
        session_id: str,
        turn_id: str,
        *,
        conn: Any = None,
        deferred: Optional[List[Notice]] = None,
        trace_id: Optional[str] = None,
    ) -> TransitionResult:
        return await self._transition(
            session_id,
            turn_id,
            PROCESSING,
            fields={},
            conn=conn,
            deferred=deferred,
            trace_id=trace_id,
        )

    async def pause_for_action(
        self,
        session_id: str,
        turn_id: str,
        tool_label: str,
        *,
        conn: Any = None,
        deferred: Optional[List[Notice]] = None,
        trace_id: Optional[str] = None,
    ) -> TransitionResult:
        return await self._transition(
            session_id,
            turn_id,
            AWAITING_ACTION,
            fields={"step_description": f"Executing: {tool_label}"},
            conn=conn,
            deferred=deferred,
            trace_id=trace_id,
        )

    async def resume_for_follow_up(
        self,
        session_id: str,
        turn_id: str,
        cycle_count: Optional[int] = None,
        *,
        conn: Any = None,
        deferred: Optional[List[Notice]] = None,
        trace_id: Optional[str] = None,
    ) -> TransitionResult:
        fields: Dict[str, Any] = {"step_description": None}
        if cycle_count is not None:
            fields["cycle_count"] = int(cycle_count)
        return await self._transition(
            session_id,
            turn_id,
            AWAITING_FOLLOWUP,
            fields=fields,
            conn=conn,
            deferred=deferred,
            trace_id=trace_id,
        )

    async def complete_successfully(
        self,
        session_id: str,
        turn_id: str,
        final_result_ref: Optional[str],
        final_message: Optional[str] = None,
        *,
        conn: Any = None,
        deferred: Optional[List[Notice]] = None,
        trace_id: Optional[str] = None,
    ) -> TransitionResult:
        return await self._transition(
            session_id,
            turn_id,
            IDLE,
            fields={"step_description": None, "last_result_ref": final_result_ref},
            result={
                "is_success": True,
                "final_message": final_message,
                "final_result_ref": final_result_ref,
            },
            conn=conn,
            deferred=deferred,
            trace_id=trace_id,
        )

    async def fail_turn(
        self,
        session_id: str,
        turn_id: str,
        message: str,
        error_code: str,
        *,
        conn: Any = None,
        deferred: Optional[List[Notice]] = None,
        trace_id: Optional[str] = None,
        guard: Optional[HopGuard] = None,
    ) -> TransitionResult:
        """Move the turn to `failed`.

        With a guard, the write only happens while the session still shows
        the guarded status and cycle; otherwise the result is STALE.
        """
        if error_code not in ERROR_CODES:
            logger.warning("Unknown error code %r for turn %s; recording %s", error_code, turn_id, UNEXPECTED_ERROR)
            error_code = UNEXPECTED_ERROR
        short = truncate_message(message, self.error_message_max_chars)
        return await self._transition(
            session_id,
            turn_id,
            FAILED,
            fields={"step_description": None, "last_error": short, "last_error_code": error_code},
            result={"is_success": False, "error_details": short, "error_code": error_code},
            conn=conn,
            deferred=deferred,
            trace_id=trace_id,
            guard=guard,
        )

    async def _transition(
        self,
        session_id: str,
        turn_id: str,
        target: str,
        *,
        fields: Dict[str, Any],
        result: Optional[Dict[str, Any]] = None,
        conn: Any = None,
        deferred: Optional[List[Notice]] = None,
        trace_id: Optional[str] = None,
        guard: Optional[HopGuard] = None,
    ) -> TransitionResult:
        if conn is None:
            notices: List[Notice] = []
            async with self.session_store.transaction() as own_conn:
                outcome = await self._apply(
                    own_conn, session_id, turn_id, target, fields, result, notices, trace_id, guard
                )
            await self.publish(notices)
            return outcome

        # Caller owns the transaction; notices wait for its commit when it
        # passes a deferred list.
        notices = deferred if deferred is not None else []
        outcome = await self._apply(conn, session_id, turn_id, target, fields, result, notices, trace_id, guard)
        if deferred is None:
            await self.publish(notices)
        return outcome

    async def _apply(
        self,
        conn: Any,
        session_id: str,
        turn_id: str,
        target: str,
        fields: Dict[str, Any],
        result: Optional[Dict[str, Any]],
        notices: List[Notice],
        trace_id: Optional[str],
        guard: Optional[HopGuard] = None,
    ) -> TransitionResult:
        state = await self.session_store.fetch_for_update(session_id, conn=conn)
        if state is None or state.current_turn_id != turn_id:
            logger.debug(
                "Transition to %s skipped: session=%s turn=%s owner=%s",
                target,
                session_id,
                turn_id,
                state.current_turn_id if state else None,
            )
            return TransitionResult.STALE
        if guard is not None and not guard.matches(state):
            logger.debug("Transition to %s skipped: %s", target, guard.mismatch_detail(state))
            return TransitionResult.STALE
        if state.status == target:
            return TransitionResult.UNCHANGED
        if not can_transition(state.status, target):
            raise InvalidTransitionError(
                f"illegal transition {state.status} -> {target} for turn {turn_id}",
                detail={"session_id": session_id, "from": state.status, "to": target},
            )

        ok = await self.session_store.write_transition(
            conn,
            session_id=session_id,
            expect_turn_id=turn_id,
            new_status=target,
            **fields,
        )
        if not ok:
            return TransitionResult.STALE

        ctx = TurnContext(session_id=session_id, turn_id=turn_id, trace_id=trace_id)
        notices.append(
            Notice(
                "state",
                ctx,
                {
                    "status": target,
                    "cycle_count": int(fields.get("cycle_count", state.cycle_count)),
                    "step_description": fields.get("step_description"),
                },
            )
        )
        if result is not None:
            notices.append(Notice("result", ctx, dict(result)))
        logger.info(
            "Turn %s %s -> %s (session=%s cycle=%s)",
            turn_id,
            state.status,
            target,
            session_id,
            fields.get("cycle_count", state.cycle_count),
        )
        return TransitionResult.APPLIED

    # ----------------------------- notifications ----------------------------- #

    async def publish(self, notices: List[Notice]) -> List[NotifyOutcome]:
        outcomes: List[NotifyOutcome] = []
        for notice in notices:
            outcomes.append(await self._publish_one(notice))
        return outcomes

    async def _publish_one(self, notice: Notice) -> NotifyOutcome:
        if notice.kind == "state":
            publish = emit_turn_state(nats=self.nats, ctx=notice.ctx, **notice.data)
        elif notice.kind == "result":
            publish = emit_turn_result(nats=self.nats, ctx=notice.ctx, **notice.data)
        elif notice.kind == "transient":
            publish = emit_transient_message(nats=self.nats, ctx=notice.ctx, **notice.data)
        else:
            logger.warning("Unknown notice kind %r dropped", notice.kind)
            return NotifyOutcome(delivered=False, error="unknown kind")
        return await publish_best_effort(
            publish,
            what=f"{notice.kind}:{notice.ctx.session_id}",
            timeout_seconds=self.notify_timeout_seconds,
        )

    # ----------------------------- hop claims ----------------------------- #

    @asynccontextmanager
    async def claim(self, request: HopRequest, expect_status: str) -> AsyncIterator[Optional["TurnClaim"]]:
        """Lock the session for one hop delivery.

        Yields None when the delivery is stale (wrong turn, status or cycle).
        Otherwise yields a TurnClaim whose transitions share this transaction;
        their notifications go out only after the commit.
        """
        guard = HopGuard(turn_id=request.turn_id, cycle_count=request.cycle_count, expect_status=expect_status)
        async with self.session_store.transaction() as conn:
            state = await self.session_store.fetch_for_update(request.session_id, conn=conn)
            if not guard.matches(state):
                yield None
                return
            claim = TurnClaim(lifecycle=self, conn=conn, request=request, state=state)
            yield claim
        await self.publish(claim.deferred)


@dataclass
class TurnClaim:
    """Locked view of one session for the duration of a hop."""

    lifecycle: TurnLifecycle
    conn: Any
    request: HopRequest
    state: SessionState
    deferred: List[Notice] = field(default_factory=list)

    @property
    def session_id(self) -> str:
        return self.request.session_id

    @property
    def turn_id(self) -> str:
        return self.request.turn_id

    def _kwargs(self) -> Dict[str, Any]:
        return {"conn": self.conn, "deferred": self.deferred, "trace_id": self.request.trace_id}

    async def start_processing(self) -> TransitionResult:
        return await self.lifecycle.start_processing(self.session_id, self.turn_id, **self._kwargs())

    async def pause_for_action(self, tool_label: str) -> TransitionResult:
        return await self.lifecycle.pause_for_action(self.session_id, self.turn_id, tool_label, **self._kwargs())

    async def resume_for_follow_up(self, cycle_count: Optional[int] = None) -> TransitionResult:
        return await self.lifecycle.resume_for_follow_up(
            self.session_id, self.turn_id, cycle_count, **self._kwargs()
        )

    async def complete_successfully(
        self, final_result_ref: Optional[str], final_message: Optional[str] = None
    ) -> TransitionResult:
        return await self.lifecycle.complete_successfully(
            self.session_id, self.turn_id, final_result_ref, final_message, **self._kwargs()
        )

    async def fail_turn(self, message: str, error_code: str) -> TransitionResult:
        return await self.lifecycle.fail_turn(self.session_id, self.turn_id, message, error_code, **self._kwargs())

    def add_transient_message(self, content: str, *, message_id: Optional[str] = None) -> bool:
        """Queue an interim assistant message for after commit. No-op when disabled."""
        if not self.lifecycle.transient_messages_enabled or not content:
            return False
        ctx = TurnContext(session_id=self.session_id, turn_id=self.turn_id, trace_id=self.request.trace_id)
        self.deferred.append(
            Notice(
                "transient",
                ctx,
                {
                    "message_id": message_id or uuid6.uuid7().hex,
                    "content": content,
                    "cycle_count": self.request.cycle_count,
                },
            )
        )
        return True
