"""Turn Worker service entrypoint (hop delivery -> HopProcessor)."""

from __future__ import annotations

import asyncio
import logging
import os
import socket
from typing import Any, Dict, Optional

from core.app_config import AppConfig, load_app_config
from core.errors import InputValidationError
from core.hop import HopKind, HopRequest
from core.subject import hop_cmd_subject, hop_evt_subject, parse_subject
from core.utils import consumer_label, set_loop_policy
from infra.hop_dispatcher import DispatchGateway, build_dispatcher
from infra.service_runtime import ServiceBase

from .action_hop import ActionHop
from .collaborators import Collaborators, load_collaborators
from .follow_up_hop import FollowUpHop
from .hop_processor import HopOutcome, HopProcessor
from .lifecycle import TurnLifecycle
from .turn_starter import TurnStarter

set_loop_policy()


def _configure_logging() -> None:
    level_name = str(os.getenv("TR_LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


_configure_logging()
logger = logging.getLogger("TurnWorker")


class TurnWorkerService(ServiceBase):
    def __init__(
        self,
        cfg: Optional[AppConfig | Dict[str, Any]] = None,
        *,
        collaborators: Optional[Collaborators] = None,
        consumer_name: Optional[str] = None,
    ) -> None:
        super().__init__(cfg, use_nats=True)
        turn_cfg = self.app.turn
        worker_cfg = self.app.worker

        max_inflight = int(worker_cfg.max_inflight)
        if max_inflight < 1:
            logger.warning("worker.max_inflight=%s is invalid; clamping to 1", max_inflight)
            max_inflight = 1
        self.max_inflight = max_inflight

        self.session_store = self.register_store(self.ctx.stores.session_store())
        self.hop_result_store = self.register_store(self.ctx.stores.hop_result_store())
        self.diagnostic_store = self.register_store(self.ctx.stores.diagnostic_store())

        self.lifecycle = TurnLifecycle.from_config(self.app, session_store=self.session_store, nats=self.nats)
        self.gateway = DispatchGateway(
            build_dispatcher(turn_cfg.dispatch_mode, self.nats, protocol_version=self.app.protocol.version),
            self.lifecycle,
        )
        self.starter = TurnStarter(lifecycle=self.lifecycle, gateway=self.gateway)

        if collaborators is None:
            collaborators = load_collaborators(worker_cfg.collaborators, config=self.app)
        self.collaborators = collaborators
        close_llm = getattr(collaborators.llm, "close", None)
        if close_llm is not None:
            self.runtime.on_close("llm collaborator", close_llm)
        self.processors = self._build_processors(collaborators, max_cycles=turn_cfg.max_cycles)

        # one broadcast durable per host, reused across restarts
        self.consumer_name = consumer_label(consumer_name or socket.gethostname())
        self._stop = asyncio.Event()

    def _build_processors(self, collaborators: Collaborators, *, max_cycles: int) -> Dict[HopKind, HopProcessor]:
        common = {
            "lifecycle": self.lifecycle,
            "gateway": self.gateway,
            "result_sink": collaborators.result_sink or self.hop_result_store,
            "diagnostics_sink": self.diagnostic_store,
        }
        return {
            HopKind.ACTION: ActionHop(
                action_executor=collaborators.action_executor,
                max_cycles=max_cycles,
                **common,
            ),
            HopKind.FOLLOW_UP: FollowUpHop(
                llm=collaborators.llm,
                orchestrator=collaborators.orchestrator,
                **common,
            ),
        }

    async def start(self) -> None:
        await self.open()
        version = self.app.protocol.version
        if self.gateway.mode == "broadcast":
            subject = hop_evt_subject("*", version)
            consumer = f"{self.app.worker.durable_prefix}_{self.consumer_name}"
            logger.info("Listening on %s (broadcast consumer=%s)", subject, consumer)
            await self.nats.subscribe_broadcast(
                subject,
                consumer,
                self.handle_message,
                ack_wait=self.app.worker.ack_wait_seconds,
                max_deliver=self.app.worker.max_deliver,
                max_inflight=self.max_inflight,
                inactive_seconds=self.app.worker.broadcast_inactive_seconds,
            )
        else:
            subject = hop_cmd_subject("*", version)
            logger.info("Listening on %s (queue=%s)", subject, self.app.worker.queue_group)
            await self.nats.subscribe_queue(
                subject,
                self.app.worker.queue_group,
                self.handle_message,
                ack_wait=self.app.worker.ack_wait_seconds,
                max_deliver=self.app.worker.max_deliver,
                max_inflight=self.max_inflight,
            )
        await self._stop.wait()

    def stop(self) -> None:
        self._stop.set()

    async def handle_message(self, subject: str, data: Dict[str, Any], headers: Dict[str, str]) -> Optional[HopOutcome]:
        try:
            request = HopRequest.from_message(data)
        except InputValidationError as exc:
            logger.warning("Dropping malformed hop payload subject=%s: %s", subject, exc)
            return None

        parts = parse_subject(subject)
        if parts is not None and parts.target != request.hop_kind.value:
            logger.warning(
                "Dropping hop: subject kind %s does not match payload kind %s",
                parts.target,
                request.hop_kind.value,
            )
            return None

        processor = self.processors[request.hop_kind]
        outcome = await processor.process(request)
        if outcome is not HopOutcome.STALE:
            logger.info(
                "%s hop session=%s turn=%s cycle=%s -> %s",
                request.hop_kind.value,
                request.session_id,
                request.turn_id,
                request.cycle_count,
                outcome.value,
            )
        return outcome

    async def close(self) -> None:
        self.stop()
        await super().close()


async def main() -> None:
    cfg = load_app_config()
    service = TurnWorkerService(cfg)
    try:
        await service.start()
    finally:
        await service.close()


def cli() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
