from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Optional

from core.config_defaults import DEFAULT_PROTOCOL_VERSION, DEFAULT_TURN_NOTIFY_TIMEOUT_SECONDS
from core.events import TransientMessagePayload, TurnResultPayload, TurnStatePayload
from core.subject import session_evt_subject
from core.time_utils import utc_now_iso
from core.turn_context import TurnContext
from core.utils import optional_str
from infra.nats_client import NATSClient

logger = logging.getLogger("EventEmitter")


@dataclass(frozen=True, slots=True)
class NotifyOutcome:
    delivered: bool
    error: Optional[str] = None


def _protocol_version(nats: Any) -> str:
    return str(getattr(nats, "protocol_version", None) or DEFAULT_PROTOCOL_VERSION)


def _require_ids(ctx: TurnContext) -> tuple[str, str]:
    session_id = str(ctx.session_id or "")
    turn_id = str(ctx.turn_id or "")
    if not session_id or not turn_id:
        raise ValueError("emit_turn_* requires session and turn ids")
    return session_id, turn_id


async def emit_turn_state(
    *,
    nats: NATSClient,
    ctx: TurnContext,
    status: str,
    cycle_count: int,
    step_description: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    session_id, turn_id = _require_ids(ctx)
    subject = session_evt_subject(session_id, "state", _protocol_version(nats))
    payload = TurnStatePayload(
        session_id=session_id,
        turn_id=turn_id,
        status=status,  # type: ignore[arg-type]
        cycle_count=int(cycle_count),
        updated_at=utc_now_iso(),
        step_description=step_description,
        metadata=dict(metadata or {}),
    )
    await nats.publish_event(subject, payload.model_dump(), headers=ctx.publish_headers())


async def emit_turn_result(
    *,
    nats: NATSClient,
    ctx: TurnContext,
    is_success: bool,
    final_message: Optional[str] = None,
    final_result_ref: Optional[str] = None,
    error_details: Optional[str] = None,
    error_code: Optional[str] = None,
) -> None:
    session_id, turn_id = _require_ids(ctx)
    subject = session_evt_subject(session_id, "result", _protocol_version(nats))
    payload = TurnResultPayload(
        session_id=session_id,
        turn_id=turn_id,
        is_success=bool(is_success),
        final_message=final_message,
        final_result_ref=optional_str(final_result_ref),
        error_details=error_details,
        error_code=error_code,
    )
    await nats.publish_event(subject, payload.model_dump(), headers=ctx.publish_headers())


async def emit_transient_message(
    *,
    nats: NATSClient,
    ctx: TurnContext,
    message_id: str,
    content: str,
    cycle_count: int,
) -> None:
    session_id, turn_id = _require_ids(ctx)
    subject = session_evt_subject(session_id, "transient", _protocol_version(nats))
    payload = TransientMessagePayload(
        session_id=session_id,
        turn_id=turn_id,
        message_id=str(message_id),
        content=content,
        cycle_count=int(cycle_count),
    )
    headers = ctx.publish_headers()
    # consumers dedupe interim messages on this id
    headers["Nats-Msg-Id"] = f"transient:{message_id}"
    await nats.publish_event(subject, payload.model_dump(), headers=headers)


async def publish_best_effort(
    publish: Awaitable[Any],
    *,
    what: str,
    timeout_seconds: float = DEFAULT_TURN_NOTIFY_TIMEOUT_SECONDS,
) -> NotifyOutcome:
    """Await a notification publish, never letting its failure escape."""
    try:
        if timeout_seconds and timeout_seconds > 0:
            await asyncio.wait_for(publish, timeout=timeout_seconds)
        else:
            await publish
        return NotifyOutcome(delivered=True)
    except asyncio.TimeoutError:
        logger.warning("Notification %s timed out after %ss", what, timeout_seconds)
        return NotifyOutcome(delivered=False, error="timeout")
    except Exception as exc:  # noqa: BLE001
        logger.warning("Notification %s failed: %s", what, exc)
        return NotifyOutcome(delivered=False, error=str(exc) or type(exc).__name__)
