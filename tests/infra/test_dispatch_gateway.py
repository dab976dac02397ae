import pytest

from core.errors import SYSTEM_LIMIT_EXCEEDED, ConfigError, DispatchError
from core.hop import HopKind, HopRequest
from infra.hop_dispatcher import BroadcastDispatcher, DispatchGateway, QueueDispatcher, build_dispatcher


class FakeNATS:
    protocol_version = "v1"

    def __init__(self, exc: Exception | None = None) -> None:
        self.calls = []
        self.exc = exc

    async def publish_event(self, subject, payload, headers=None, **kwargs):
        if self.exc is not None:
            raise self.exc
        self.calls.append({"subject": subject, "payload": payload, "headers": headers or {}})


class RecordingLifecycle:
    def __init__(self, exc: Exception | None = None) -> None:
        self.failed = []
        self.exc = exc

    async def fail_turn(self, session_id, turn_id, message, error_code, **kwargs):
        self.failed.append((session_id, turn_id, message, error_code))
        if self.exc is not None:
            raise self.exc


def _request(kind: HopKind = HopKind.ACTION, **overrides) -> HopRequest:
    data = dict(
        session_id="s1",
        turn_id="t1",
        cycle_count=2,
        hop_kind=kind,
        trace_id="trace_1",
        tool_name="search",
    )
    data.update(overrides)
    return HopRequest(**data)


@pytest.mark.asyncio
async def test_queue_dispatch_publishes_to_command_subject() -> None:
    nats = FakeNATS()
    lifecycle = RecordingLifecycle()
    gateway = DispatchGateway(QueueDispatcher(nats), lifecycle)

    await gateway.dispatch(HopKind.ACTION, _request(), "s1", "t1")

    [call] = nats.calls
    assert call["subject"] == "tr.v1.cmd.hop.action"
    assert call["payload"]["__msg_type__"] == "hop_request"
    assert call["payload"]["tool_name"] == "search"
    assert call["headers"] == {"TR-Turn-Id": "t1", "TR-Trace-Id": "trace_1"}
    assert lifecycle.failed == []


@pytest.mark.asyncio
async def test_broadcast_dispatch_publishes_to_event_subject() -> None:
    nats = FakeNATS()
    gateway = DispatchGateway(BroadcastDispatcher(nats), RecordingLifecycle())

    await gateway.dispatch(HopKind.FOLLOW_UP, _request(HopKind.FOLLOW_UP, tool_name=None), "s1", "t1")

    assert gateway.mode == "broadcast"
    assert nats.calls[0]["subject"] == "tr.v1.evt.hop.follow_up"


@pytest.mark.asyncio
async def test_dispatch_failure_fails_turn_then_raises() -> None:
    nats = FakeNATS(exc=ConnectionError("nats down"))
    lifecycle = RecordingLifecycle()
    gateway = DispatchGateway(QueueDispatcher(nats), lifecycle)

    with pytest.raises(DispatchError) as excinfo:
        await gateway.dispatch(HopKind.ACTION, _request(), "s1", "t1")

    assert excinfo.value.hop_kind == "action"
    assert excinfo.value.code == SYSTEM_LIMIT_EXCEEDED
    assert isinstance(excinfo.value.__cause__, ConnectionError)
    assert lifecycle.failed == [("s1", "t1", "Failed to dispatch action step: nats down", SYSTEM_LIMIT_EXCEEDED)]


@pytest.mark.asyncio
async def test_dispatch_failure_still_raises_when_fail_turn_breaks() -> None:
    nats = FakeNATS(exc=ConnectionError("nats down"))
    lifecycle = RecordingLifecycle(exc=RuntimeError("db gone"))
    gateway = DispatchGateway(QueueDispatcher(nats), lifecycle)

    with pytest.raises(DispatchError):
        await gateway.dispatch(HopKind.ACTION, _request(), "s1", "t1")

    assert len(lifecycle.failed) == 1


@pytest.mark.asyncio
async def test_dispatch_rejects_kind_mismatch() -> None:
    nats = FakeNATS()
    lifecycle = RecordingLifecycle()
    gateway = DispatchGateway(QueueDispatcher(nats), lifecycle)

    with pytest.raises(DispatchError):
        await gateway.dispatch(HopKind.FOLLOW_UP, _request(HopKind.ACTION), "s1", "t1")

    assert nats.calls == []
    assert lifecycle.failed[0][3] == SYSTEM_LIMIT_EXCEEDED


def test_build_dispatcher_by_mode() -> None:
    nats = FakeNATS()
    assert isinstance(build_dispatcher("QUEUE", nats), QueueDispatcher)
    assert isinstance(build_dispatcher("broadcast", nats), BroadcastDispatcher)
    assert build_dispatcher("queue", nats, protocol_version="v2").subject_for(HopKind.ACTION) == "tr.v2.cmd.hop.action"
    with pytest.raises(ConfigError):
        build_dispatcher("fanout", nats)
