from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Protocol

from core.config_defaults import DEFAULT_PROTOCOL_VERSION
from core.errors import ConfigError, DispatchError, SYSTEM_LIMIT_EXCEEDED
from core.hop import HopKind, HopRequest
from core.subject import hop_cmd_subject, hop_evt_subject
from infra.nats_client import NATSClient, TRACE_HEADER

logger = logging.getLogger("DispatchGateway")


class Dispatcher(ABC):
    """Transport strategy for handing a hop to the next worker."""

    mode: str = ""

    def __init__(self, nats: NATSClient, *, protocol_version: Optional[str] = None) -> None:
        self.nats = nats
        self.protocol_version = protocol_version or getattr(nats, "protocol_version", None) or DEFAULT_PROTOCOL_VERSION

    @abstractmethod
    def subject_for(self, hop_kind: HopKind) -> str: ...

    async def submit(self, hop_kind: HopKind, message: Dict[str, Any], headers: Dict[str, str]) -> None:
        await self.nats.publish_event(self.subject_for(hop_kind), message, headers=headers)


class QueueDispatcher(Dispatcher):
    """Work-queue delivery: one worker per hop, no ordering across hops."""

    mode = "queue"

    def subject_for(self, hop_kind: HopKind) -> str:
        return hop_cmd_subject(hop_kind, self.protocol_version)


class BroadcastDispatcher(Dispatcher):
    """Event-bus delivery: every subscribed worker sees the hop, possibly more than once."""

    mode = "broadcast"

    def subject_for(self, hop_kind: HopKind) -> str:
        return hop_evt_subject(hop_kind, self.protocol_version)


_DISPATCHERS = {
    QueueDispatcher.mode: QueueDispatcher,
    BroadcastDispatcher.mode: BroadcastDispatcher,
}


def build_dispatcher(mode: str, nats: NATSClient, *, protocol_version: Optional[str] = None) -> Dispatcher:
    key = str(mode or "").strip().lower()
    cls = _DISPATCHERS.get(key)
    if cls is None:
        raise ConfigError(f"unknown dispatch mode {mode!r}; expected one of {sorted(_DISPATCHERS)}")
    return cls(nats, protocol_version=protocol_version)


class TurnFailer(Protocol):
    async def fail_turn(self, session_id: str, turn_id: str, message: str, error_code: str, **kwargs: Any) -> Any: ...


class DispatchGateway:
    """Submit the next hop of a turn.

    Any serialization or transport failure fails the turn with
    SYSTEM_LIMIT_EXCEEDED and is then raised as DispatchError.
    """

    def __init__(self, dispatcher: Dispatcher, lifecycle: TurnFailer) -> None:
        self.dispatcher = dispatcher
        self.lifecycle = lifecycle

    @property
    def mode(self) -> str:
        return self.dispatcher.mode

    async def dispatch(
        self,
        hop_kind: HopKind,
        request: HopRequest,
        current_session_id: str,
        current_turn_id: str,
    ) -> None:
        kind = HopKind(hop_kind)
        try:
            if request.hop_kind != kind:
                raise ValueError(f"request hop_kind {request.hop_kind.value} does not match {kind.value}")
            message = request.to_message()
            headers: Dict[str, str] = {"TR-Turn-Id": request.turn_id}
            if request.trace_id:
                headers[TRACE_HEADER] = request.trace_id
            await self.dispatcher.submit(kind, message, headers)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Dispatch of %s hop failed session=%s turn=%s cycle=%s: %s",
                kind.value,
                current_session_id,
                current_turn_id,
                request.cycle_count,
                exc,
            )
            await self._fail_after_dispatch_error(kind, current_session_id, current_turn_id, exc)
            raise DispatchError(
                f"failed to dispatch {kind.value} hop: {exc}",
                hop_kind=kind.value,
                detail={"session_id": current_session_id, "turn_id": current_turn_id},
            ) from exc

        logger.info(
            "Dispatched %s hop via %s session=%s turn=%s cycle=%s",
            kind.value,
            self.dispatcher.mode,
            current_session_id,
            current_turn_id,
            request.cycle_count,
        )

    async def _fail_after_dispatch_error(
        self,
        kind: HopKind,
        session_id: str,
        turn_id: str,
        exc: Exception,
    ) -> None:
        try:
            await self.lifecycle.fail_turn(
                session_id,
                turn_id,
                f"Failed to dispatch {kind.value} step: {exc}",
                SYSTEM_LIMIT_EXCEEDED,
            )
        except Exception as fail_exc:  # noqa: BLE001
            logger.error(
                "Could not mark turn failed after dispatch error session=%s turn=%s: %s",
                session_id,
                turn_id,
                fail_exc,
            )
