import pytest

from core.errors import SYSTEM_LIMIT_EXCEEDED, DispatchError, InputValidationError, TurnInFlightError
from services.turn_worker.turn_starter import StartTurnRequest, TurnStarter


@pytest.mark.asyncio
async def test_start_turn_queues_first_follow_up(db, nats, lifecycle, gateway) -> None:
    starter = TurnStarter(lifecycle=lifecycle, gateway=gateway)

    turn_id = await starter.start_turn(
        StartTurnRequest(session_id="s1", user_id="u1", agent_config_id="cfg", turn_id="t1", trace_id="trace_1")
    )

    assert turn_id == "t1"
    state = db.state("s1")
    assert state.status == "awaiting_followup"
    assert state.cycle_count == 1

    [dispatched] = nats.on("tr.v1.cmd.hop.follow_up")
    assert dispatched["payload"]["cycle_count"] == 1
    assert dispatched["payload"]["agent_config_id"] == "cfg"
    assert dispatched["headers"]["TR-Trace-Id"] == "trace_1"
    states = [c["payload"]["status"] for c in nats.on("tr.v1.evt.session.s1.state")]
    assert states == ["processing", "awaiting_followup"]


@pytest.mark.asyncio
async def test_start_turn_requires_session_id(lifecycle, gateway) -> None:
    with pytest.raises(InputValidationError):
        await TurnStarter(lifecycle=lifecycle, gateway=gateway).start_turn(StartTurnRequest(session_id="  "))


@pytest.mark.asyncio
async def test_start_turn_rejects_session_with_live_turn(db, nats, lifecycle, gateway) -> None:
    db.seed("s1", status="awaiting_followup", turn_id="t0", cycle_count=2)

    with pytest.raises(TurnInFlightError):
        await TurnStarter(lifecycle=lifecycle, gateway=gateway).start_turn(StartTurnRequest(session_id="s1"))

    assert nats.calls == []
    assert db.state("s1").current_turn_id == "t0"


@pytest.mark.asyncio
async def test_start_turn_dispatch_failure_fails_turn(db, nats, lifecycle, gateway) -> None:
    nats.fail_prefixes.append("tr.v1.cmd.hop")

    with pytest.raises(DispatchError):
        await TurnStarter(lifecycle=lifecycle, gateway=gateway).start_turn(
            StartTurnRequest(session_id="s1", turn_id="t1")
        )

    state = db.state("s1")
    assert state.status == "failed"
    assert state.last_error_code == SYSTEM_LIMIT_EXCEEDED


@pytest.mark.asyncio
async def test_start_turn_opens_and_readies_turn_in_one_commit(db, nats, lifecycle, gateway) -> None:
    db.seed("s1", status="idle", turn_id="t0", cycle_count=4)

    await TurnStarter(lifecycle=lifecycle, gateway=gateway).start_turn(StartTurnRequest(session_id="s1", turn_id="t1"))

    assert db.commits == 1
    state = db.state("s1")
    assert (state.current_turn_id, state.status, state.cycle_count) == ("t1", "awaiting_followup", 1)


@pytest.mark.asyncio
async def test_start_turn_write_error_leaves_no_half_started_turn(db, nats, lifecycle, gateway) -> None:
    db.seed("s1", status="idle", turn_id="t0", cycle_count=4)
    write_transition = db.write_transition
    writes = []

    async def _second_write_fails(conn, **kwargs):
        writes.append(kwargs["new_status"])
        if len(writes) == 2:
            raise ConnectionError("connection reset")
        return await write_transition(conn, **kwargs)

    db.write_transition = _second_write_fails

    with pytest.raises(ConnectionError):
        await TurnStarter(lifecycle=lifecycle, gateway=gateway).start_turn(
            StartTurnRequest(session_id="s1", turn_id="t1")
        )

    assert writes == ["processing", "awaiting_followup"]
    state = db.state("s1")
    assert (state.current_turn_id, state.status) == ("t0", "idle")
    assert db.rollbacks == 1
    assert nats.calls == []
