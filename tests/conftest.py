from __future__ import annotations

import asyncio
import os
import sys
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple


# When running via the `pytest` console script, Python sets `sys.path[0]` to the
# script location (e.g. `.venv/bin`) rather than the repo root. Ensure local
# top-level packages like `services/`, `core/`, `infra/` are importable.
_REPO_ROOT = os.path.dirname(os.path.dirname(__file__))
if _REPO_ROOT not in sys.path:
    sys.path.insert(0, _REPO_ROOT)

import pytest  # noqa: E402

from core.hop import ProviderResult  # noqa: E402
from core.state import SessionState  # noqa: E402
from core.status import IN_FLIGHT_STATUSES  # noqa: E402
from core.time_utils import cutoff_before, utc_now  # noqa: E402
from infra.hop_dispatcher import DispatchGateway, QueueDispatcher  # noqa: E402
from services.turn_worker.lifecycle import TurnLifecycle  # noqa: E402


class FakeTx:
    """One open transaction against FakeSessionStore."""

    def __init__(self) -> None:
        self.rows: Dict[str, SessionState] = {}
        self.results: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.locked: set[str] = set()
        self.writes: List[Tuple[str, Dict[str, Any]]] = []


class FakeSessionStore:
    """In-memory stand-in for SessionStore + the hop_results table.

    Writes are staged per transaction and applied on a clean exit; row locks
    are per-session asyncio locks held until the owning transaction ends.
    """

    def __init__(self) -> None:
        self.rows: Dict[str, SessionState] = {}
        self.hop_results: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self.commits = 0
        self.rollbacks = 0

    def seed(
        self,
        session_id: str,
        *,
        status: str = "idle",
        turn_id: Optional[str] = None,
        cycle_count: int = 0,
        age_seconds: float = 0.0,
        **extra: Any,
    ) -> SessionState:
        state = SessionState(
            session_id=session_id,
            status=status,
            current_turn_id=turn_id,
            cycle_count=cycle_count,
            updated_at=utc_now() - timedelta(seconds=age_seconds),
            **extra,
        )
        self.rows[session_id] = state
        return state

    def state(self, session_id: str) -> Optional[SessionState]:
        return self.rows.get(session_id)

    @asynccontextmanager
    async def transaction(self):
        tx = FakeTx()
        try:
            yield tx
        except BaseException:
            self.rollbacks += 1
            raise
        else:
            self.rows.update(tx.rows)
            self.hop_results.update(tx.results)
            self.commits += 1
        finally:
            for session_id in tx.locked:
                self._locks[session_id].release()

    def _read(self, session_id: str, conn: Optional[FakeTx]) -> Optional[SessionState]:
        if conn is not None and session_id in conn.rows:
            return conn.rows[session_id]
        return self.rows.get(session_id)

    async def ensure_session(self, session_id, *, user_id=None, agent_id=None, conn=None) -> None:
        if self._read(session_id, conn) is not None:
            return
        state = SessionState(session_id=session_id, user_id=user_id, agent_id=agent_id, updated_at=utc_now())
        if conn is None:
            self.rows[session_id] = state
        else:
            conn.rows[session_id] = state

    async def fetch(self, session_id, *, conn=None) -> Optional[SessionState]:
        state = self._read(session_id, conn)
        return state.model_copy() if state else None

    async def fetch_for_update(self, session_id, *, conn) -> Optional[SessionState]:
        if session_id not in conn.locked:
            lock = self._locks.setdefault(session_id, asyncio.Lock())
            await lock.acquire()
            conn.locked.add(session_id)
        state = self._read(session_id, conn)
        return state.model_copy() if state else None

    async def write_transition(self, conn, *, session_id, expect_turn_id, new_status, **fields) -> bool:
        state = self._read(session_id, conn)
        if state is None or state.current_turn_id != expect_turn_id:
            return False
        updates = {"status": new_status, "updated_at": utc_now(), **fields}
        conn.rows[session_id] = state.model_copy(update=updates)
        conn.writes.append((session_id, updates))
        return True

    async def list_stuck(self, *, older_than_seconds, limit=100, conn=None) -> List[SessionState]:
        cutoff = cutoff_before(older_than_seconds)
        stuck = [
            s for s in self.rows.values() if s.status in IN_FLIGHT_STATUSES and s.updated_at and s.updated_at < cutoff
        ]
        stuck.sort(key=lambda s: s.updated_at)
        return [s.model_copy() for s in stuck[:limit]]


class FakeHopResultSink:
    def __init__(self, db: FakeSessionStore) -> None:
        self.db = db
        self.calls: List[Dict[str, Any]] = []

    async def save_hop_result(
        self, *, session_id, turn_id, cycle_count, hop_kind, result_key, success, payload, conn=None
    ) -> bool:
        record = {
            "session_id": session_id,
            "turn_id": turn_id,
            "cycle_count": cycle_count,
            "hop_kind": hop_kind,
            "result_key": result_key,
            "success": success,
            "payload": payload,
        }
        self.calls.append(record)
        key = (turn_id, result_key)
        if key in self.db.hop_results or (conn is not None and key in conn.results):
            return False
        if conn is None:
            self.db.hop_results[key] = record
        else:
            conn.results[key] = record
        return True


class FakeNATS:
    protocol_version = "v1"

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        # publishes to subjects starting with any of these raise
        self.fail_prefixes: List[str] = []
        self.delay = 0.0

    async def publish_event(self, subject, payload, headers=None, **kwargs):
        if self.delay:
            await asyncio.sleep(self.delay)
        for prefix in self.fail_prefixes:
            if subject.startswith(prefix):
                raise ConnectionError("nats down")
        self.calls.append({"subject": subject, "payload": payload, "headers": headers or {}, "kwargs": kwargs})

    def subjects(self) -> List[str]:
        return [c["subject"] for c in self.calls]

    def on(self, subject: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["subject"] == subject]


class FakeActionExecutor:
    def __init__(self, result: Any = None, *, exc: Optional[BaseException] = None) -> None:
        self.result = result
        self.exc = exc
        self.calls: List[Tuple[Any, Any, Any]] = []

    async def execute(self, config_json, arguments_json, context):
        self.calls.append((config_json, arguments_json, context))
        await asyncio.sleep(0)
        if self.exc is not None:
            raise self.exc
        return self.result


class FakeLLM:
    def __init__(self, result: Optional[ProviderResult] = None, *, exc: Optional[BaseException] = None) -> None:
        self.result = result or ProviderResult(message_id="msg_1", content="hello")
        self.exc = exc
        self.calls: List[Dict[str, Any]] = []

    async def call(self, **kwargs):
        self.calls.append(kwargs)
        if self.exc is not None:
            raise self.exc
        return self.result


class FakeOrchestrator:
    def __init__(self, decision: Any = None, *, exc: Optional[BaseException] = None) -> None:
        self.decision = decision
        self.exc = exc
        self.calls: List[Tuple[Any, Any]] = []

    async def decide(self, request, provider_result):
        self.calls.append((request, provider_result))
        if self.exc is not None:
            raise self.exc
        return self.decision


class FakeDiagnosticSink:
    def __init__(self, *, exc: Optional[BaseException] = None) -> None:
        self.batches: List[List[Any]] = []
        self.exc = exc

    async def insert_records(self, records):
        if self.exc is not None:
            raise self.exc
        self.batches.append(list(records))
        return len(records)

    @property
    def records(self) -> List[Any]:
        return [rec for batch in self.batches for rec in batch]


@pytest.fixture
def db() -> FakeSessionStore:
    return FakeSessionStore()


@pytest.fixture
def nats() -> FakeNATS:
    return FakeNATS()


@pytest.fixture
def result_sink(db) -> FakeHopResultSink:
    return FakeHopResultSink(db)


@pytest.fixture
def diag_sink() -> FakeDiagnosticSink:
    return FakeDiagnosticSink()


@pytest.fixture
def lifecycle(db, nats) -> TurnLifecycle:
    return TurnLifecycle(session_store=db, nats=nats, notify_timeout_seconds=1.0)


@pytest.fixture
def gateway(nats, lifecycle) -> DispatchGateway:
    return DispatchGateway(QueueDispatcher(nats), lifecycle)


@pytest.fixture
def hop_deps(lifecycle, gateway, result_sink, diag_sink) -> Dict[str, Any]:
    return {
        "lifecycle": lifecycle,
        "gateway": gateway,
        "result_sink": result_sink,
        "diagnostics_sink": diag_sink,
    }


@pytest.fixture
def fakes():
    """Fake collaborator classes for tests that build their own instances."""

    class _Fakes:
        ActionExecutor = FakeActionExecutor
        LLM = FakeLLM
        Orchestrator = FakeOrchestrator
        DiagnosticSink = FakeDiagnosticSink
        NATS = FakeNATS
        SessionStore = FakeSessionStore

    return _Fakes
