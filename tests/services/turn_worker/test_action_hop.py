import asyncio

import pytest

from core.errors import (
    ACTION_EXECUTION_FAILED,
    ACTION_HANDLER_NULL_RESULT,
    MAX_TURNS_EXCEEDED,
    SYSTEM_LIMIT_EXCEEDED,
    UNEXPECTED_ERROR,
)
from core.hop import Capability, HopKind, HopRequest, HopResult
from infra.hop_dispatcher import DispatchGateway, QueueDispatcher
from services.turn_worker.action_hop import ActionHop
from services.turn_worker.hop_processor import HopOutcome
from services.turn_worker.lifecycle import TurnLifecycle


def _request(cycle_count: int = 3, **overrides) -> HopRequest:
    data = dict(
        session_id="s1",
        turn_id="t1",
        cycle_count=cycle_count,
        hop_kind=HopKind.ACTION,
        user_id="u1",
        agent_config_id="cfg_1",
        trace_id="trace_1",
        tool_call_id="call_1",
        tool_name="search",
        arguments_json='{"q": "weather"}',
    )
    data.update(overrides)
    return HopRequest(**data)


def _hop(hop_deps, executor, *, max_cycles: int = 10) -> ActionHop:
    return ActionHop(action_executor=executor, max_cycles=max_cycles, **hop_deps)


@pytest.mark.asyncio
async def test_action_hop_continues_to_next_follow_up(db, nats, hop_deps, fakes) -> None:
    db.seed("s1", status="awaiting_action", turn_id="t1", cycle_count=3)
    executor = fakes.ActionExecutor(HopResult.ok("sunny"))

    outcome = await _hop(hop_deps, executor).process(_request())

    assert outcome is HopOutcome.DISPATCHED
    state = db.state("s1")
    assert state.status == "awaiting_followup"
    assert state.cycle_count == 4
    assert state.current_turn_id == "t1"

    saved = db.hop_results[("t1", "cycle-3-action")]
    assert saved["success"] is True
    assert saved["payload"]["output"] == "sunny"
    assert saved["payload"]["tool_call_id"] == "call_1"

    [dispatched] = nats.on("tr.v1.cmd.hop.follow_up")
    payload = dispatched["payload"]
    assert payload["cycle_count"] == 4
    assert payload["hop_kind"] == "follow_up"
    assert payload["tool_name"] is None
    assert payload["arguments_json"] is None
    assert dispatched["headers"]["TR-Turn-Id"] == "t1"
    assert dispatched["headers"]["TR-Trace-Id"] == "trace_1"

    states = [c["payload"]["status"] for c in nats.on("tr.v1.evt.session.s1.state")]
    assert states == ["processing", "awaiting_followup"]
    # notifications for the committed transitions go out before the next hop
    assert nats.subjects().index("tr.v1.cmd.hop.follow_up") > nats.subjects().index("tr.v1.evt.session.s1.state")


@pytest.mark.asyncio
async def test_action_hop_passes_capability_to_executor(db, hop_deps, fakes) -> None:
    db.seed("s1", status="awaiting_action", turn_id="t1", cycle_count=1)
    executor = fakes.ActionExecutor(HopResult.ok("ok"))
    capability = Capability(capability_id="cap_1", name="Web Search", config_json='{"k": 1}', pre_hook="audit")

    await _hop(hop_deps, executor).process(_request(cycle_count=1, capability=capability))

    config_json, arguments_json, context = executor.calls[0]
    assert config_json == '{"k": 1}'
    assert arguments_json == '{"q": "weather"}'
    assert context.capability_id == "cap_1"
    assert context.pre_hook == "audit"
    assert context.cycle_count == 1
    assert context.agent_config_id == "cfg_1"


@pytest.mark.asyncio
async def test_action_hop_fails_turn_when_cycle_limit_reached(db, nats, hop_deps, fakes) -> None:
    db.seed("s1", status="awaiting_action", turn_id="t1", cycle_count=3)
    executor = fakes.ActionExecutor(HopResult.ok("sunny"))

    outcome = await _hop(hop_deps, executor, max_cycles=3).process(_request())

    assert outcome is HopOutcome.FINISHED
    state = db.state("s1")
    assert state.status == "failed"
    assert state.last_error_code == MAX_TURNS_EXCEEDED
    assert state.last_error == "Maximum number of cycles (3) exceeded"
    # the action outcome is still recorded
    assert ("t1", "cycle-3-action") in db.hop_results
    assert not any(s.startswith("tr.v1.cmd.hop") for s in nats.subjects())

    [result] = nats.on("tr.v1.evt.session.s1.result")
    assert result["payload"]["is_success"] is False
    assert result["payload"]["error_code"] == MAX_TURNS_EXCEEDED


@pytest.mark.asyncio
async def test_duplicate_action_delivery_is_dropped(db, nats, hop_deps, fakes) -> None:
    db.seed("s1", status="awaiting_action", turn_id="t1", cycle_count=3)
    executor = fakes.ActionExecutor(HopResult.ok("sunny"))
    hop = _hop(hop_deps, executor)

    first = await hop.process(_request())
    published = len(nats.calls)
    second = await hop.process(_request())

    assert first is HopOutcome.DISPATCHED
    assert second is HopOutcome.STALE
    assert len(executor.calls) == 1
    assert len(nats.calls) == published
    assert db.state("s1").cycle_count == 4


@pytest.mark.asyncio
async def test_concurrent_duplicate_action_deliveries_run_once(db, nats, hop_deps, fakes) -> None:
    db.seed("s1", status="awaiting_action", turn_id="t1", cycle_count=3)
    executor = fakes.ActionExecutor(HopResult.ok("sunny"))
    hop = _hop(hop_deps, executor)

    outcomes = await asyncio.gather(hop.process(_request()), hop.process(_request()))

    assert sorted(o.value for o in outcomes) == ["dispatched", "stale"]
    assert len(executor.calls) == 1
    assert len(nats.on("tr.v1.cmd.hop.follow_up")) == 1


@pytest.mark.asyncio
async def test_action_exception_is_fed_back_and_turn_continues(db, hop_deps, fakes) -> None:
    db.seed("s1", status="awaiting_action", turn_id="t1", cycle_count=3)
    executor = fakes.ActionExecutor(exc=RuntimeError("boom"))

    outcome = await _hop(hop_deps, executor).process(_request())

    assert outcome is HopOutcome.DISPATCHED
    saved = db.hop_results[("t1", "cycle-3-action")]
    assert saved["success"] is False
    assert saved["payload"]["output"] == "Error: boom"
    assert saved["payload"]["error_code"] == ACTION_EXECUTION_FAILED
    assert saved["payload"]["internal_detail"] == "RuntimeError: boom"
    assert db.state("s1").status == "awaiting_followup"


@pytest.mark.asyncio
async def test_action_returning_none_is_recorded_as_null_result(db, hop_deps, fakes) -> None:
    db.seed("s1", status="awaiting_action", turn_id="t1", cycle_count=2)
    executor = fakes.ActionExecutor(None)

    outcome = await _hop(hop_deps, executor).process(_request(cycle_count=2))

    assert outcome is HopOutcome.DISPATCHED
    saved = db.hop_results[("t1", "cycle-2-action")]
    assert saved["success"] is False
    assert saved["payload"]["error_code"] == ACTION_HANDLER_NULL_RESULT
    assert db.state("s1").cycle_count == 3


@pytest.mark.asyncio
async def test_action_hop_for_superseded_turn_is_stale(db, nats, hop_deps, fakes) -> None:
    db.seed("s1", status="awaiting_action", turn_id="t2", cycle_count=3)
    executor = fakes.ActionExecutor(HopResult.ok("sunny"))

    outcome = await _hop(hop_deps, executor).process(_request())

    assert outcome is HopOutcome.STALE
    assert executor.calls == []
    assert nats.calls == []
    assert db.hop_results == {}


@pytest.mark.asyncio
async def test_action_hop_dispatch_failure_fails_turn(db, nats, hop_deps, diag_sink, fakes) -> None:
    db.seed("s1", status="awaiting_action", turn_id="t1", cycle_count=3)
    nats.fail_prefixes.append("tr.v1.cmd.hop")
    executor = fakes.ActionExecutor(HopResult.ok("sunny"))

    outcome = await _hop(hop_deps, executor).process(_request())

    assert outcome is HopOutcome.FAILED
    state = db.state("s1")
    assert state.status == "failed"
    assert state.last_error_code == SYSTEM_LIMIT_EXCEEDED
    assert state.last_error.startswith("Failed to dispatch follow_up step:")
    # the action result committed before the dispatch attempt
    assert ("t1", "cycle-3-action") in db.hop_results
    assert any(rec.level == "ERROR" for rec in diag_sink.records)


@pytest.mark.asyncio
async def test_action_hop_flushes_diagnostics_once(db, hop_deps, diag_sink, fakes) -> None:
    db.seed("s1", status="awaiting_action", turn_id="t1", cycle_count=3)

    await _hop(hop_deps, fakes.ActionExecutor(HopResult.ok("x"))).process(_request())

    assert len(diag_sink.batches) == 1
    assert all(rec.turn_id == "t1" for rec in diag_sink.records)


class _BrokenResultSink:
    def __init__(self) -> None:
        self.calls = 0

    async def save_hop_result(self, **kwargs) -> bool:
        self.calls += 1
        raise ConnectionError("hop_results insert failed")


class _UnfailableLifecycle(TurnLifecycle):
    async def fail_turn(self, *args, **kwargs):
        raise ConnectionError("database is gone")


@pytest.mark.asyncio
async def test_result_write_error_rolls_back_and_fails_turn(db, nats, hop_deps, diag_sink, fakes) -> None:
    db.seed("s1", status="awaiting_action", turn_id="t1", cycle_count=3)
    sink = _BrokenResultSink()
    deps = dict(hop_deps, result_sink=sink)

    outcome = await _hop(deps, fakes.ActionExecutor(HopResult.ok("sunny"))).process(_request())

    assert outcome is HopOutcome.FAILED
    assert sink.calls == 1
    state = db.state("s1")
    assert state.status == "failed"
    assert state.cycle_count == 3
    assert state.last_error_code == UNEXPECTED_ERROR
    assert "hop_results insert failed" in state.last_error
    assert db.rollbacks == 1
    assert nats.on("tr.v1.cmd.hop.follow_up") == []
    # the uncommitted processing transition was never announced
    assert [c["payload"]["status"] for c in nats.on("tr.v1.evt.session.s1.state")] == ["failed"]
    assert len(diag_sink.batches) == 1
    assert any(rec.level == "ERROR" for rec in diag_sink.records)


@pytest.mark.asyncio
async def test_failure_to_record_the_failure_still_reports_failed(db, nats, diag_sink, fakes) -> None:
    db.seed("s1", status="awaiting_action", turn_id="t1", cycle_count=3)
    lifecycle = _UnfailableLifecycle(session_store=db, nats=nats, notify_timeout_seconds=1.0)
    hop = ActionHop(
        action_executor=fakes.ActionExecutor(HopResult.ok("sunny")),
        lifecycle=lifecycle,
        gateway=DispatchGateway(QueueDispatcher(nats), lifecycle),
        result_sink=_BrokenResultSink(),
        diagnostics_sink=diag_sink,
    )

    outcome = await hop.process(_request())

    assert outcome is HopOutcome.FAILED
    # nothing committed; the reaper picks the turn up later
    state = db.state("s1")
    assert state.status == "awaiting_action"
    assert state.cycle_count == 3
    assert nats.calls == []
    assert len(diag_sink.batches) == 1


class _DownDiagnosticSink:
    def __init__(self) -> None:
        self.attempts = 0

    async def insert_records(self, records):
        self.attempts += 1
        raise ConnectionError("diag db down")


@pytest.mark.asyncio
async def test_diagnostics_flush_once_on_error_path_even_when_sink_is_down(db, hop_deps, fakes) -> None:
    db.seed("s1", status="awaiting_action", turn_id="t1", cycle_count=3)
    down = _DownDiagnosticSink()
    deps = dict(hop_deps, result_sink=_BrokenResultSink(), diagnostics_sink=down)

    outcome = await _hop(deps, fakes.ActionExecutor(HopResult.ok("x"))).process(_request())

    assert outcome is HopOutcome.FAILED
    assert db.state("s1").status == "failed"
    assert down.attempts == 1
