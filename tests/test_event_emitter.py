import asyncio

import pytest

from core.turn_context import TurnContext
from core.subject import session_evt_subject
from infra.event_emitter import (
    emit_transient_message,
    emit_turn_result,
    emit_turn_state,
    publish_best_effort,
)


class FakeNATS:
    protocol_version = "v1"

    def __init__(self) -> None:
        self.calls = []

    async def publish_event(self, subject, payload, headers=None, **kwargs):
        self.calls.append(
            {
                "subject": subject,
                "payload": payload,
                "headers": headers or {},
                "kwargs": kwargs,
            }
        )


@pytest.mark.asyncio
async def test_emit_turn_state_builds_payload_and_headers() -> None:
    nats = FakeNATS()
    await emit_turn_state(
        nats=nats,
        ctx=TurnContext(session_id="s1", turn_id="t1", trace_id="trace_1", headers={"h": "1"}),
        status="awaiting_action",
        cycle_count=3,
        step_description="Executing: search",
    )

    [call] = nats.calls
    assert call["subject"] == session_evt_subject("s1", "state") == "tr.v1.evt.session.s1.state"
    payload = call["payload"]
    assert payload["status"] == "awaiting_action"
    assert payload["cycle_count"] == 3
    assert payload["step_description"] == "Executing: search"
    assert payload["updated_at"].endswith("Z")
    assert call["headers"] == {"h": "1", "TR-Trace-Id": "trace_1", "TR-Turn-Id": "t1"}


@pytest.mark.asyncio
async def test_emit_turn_result_failure() -> None:
    nats = FakeNATS()
    await emit_turn_result(
        nats=nats,
        ctx=TurnContext(session_id="s1", turn_id="t1"),
        is_success=False,
        error_details="LLM call failed: timeout",
        error_code="LLM_CALL_FAILED",
    )

    [call] = nats.calls
    assert call["subject"] == "tr.v1.evt.session.s1.result"
    assert call["payload"]["is_success"] is False
    assert call["payload"]["error_code"] == "LLM_CALL_FAILED"
    assert call["payload"]["final_result_ref"] is None
    assert "TR-Trace-Id" not in call["headers"]


@pytest.mark.asyncio
async def test_emit_transient_message_sets_dedupe_header() -> None:
    nats = FakeNATS()
    await emit_transient_message(
        nats=nats,
        ctx=TurnContext(session_id="s1", turn_id="t1"),
        message_id="msg_5",
        content="One moment...",
        cycle_count=2,
    )

    [call] = nats.calls
    assert call["subject"] == "tr.v1.evt.session.s1.transient"
    assert call["headers"]["Nats-Msg-Id"] == "transient:msg_5"
    assert call["payload"]["content"] == "One moment..."


@pytest.mark.asyncio
async def test_emit_requires_session_and_turn_ids() -> None:
    with pytest.raises(ValueError):
        await emit_turn_state(nats=FakeNATS(), ctx=TurnContext(session_id="s1", turn_id=""), status="idle", cycle_count=1)


@pytest.mark.asyncio
async def test_publish_best_effort_reports_timeout() -> None:
    outcome = await publish_best_effort(asyncio.sleep(5), what="slow", timeout_seconds=0.01)

    assert outcome.delivered is False
    assert outcome.error == "timeout"


@pytest.mark.asyncio
async def test_publish_best_effort_swallows_errors() -> None:
    async def _boom():
        raise ConnectionError("no servers available")

    outcome = await publish_best_effort(_boom(), what="boom")

    assert outcome.delivered is False
    assert outcome.error == "no servers available"


@pytest.mark.asyncio
async def test_publish_best_effort_success() -> None:
    async def _ok():
        return None

    outcome = await publish_best_effort(_ok(), what="ok", timeout_seconds=0)

    assert outcome.delivered is True
