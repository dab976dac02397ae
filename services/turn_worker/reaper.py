"""
Stuck Turn Reaper

Periodically fails turns that have sat in an in-flight status past the
configured timeout (worker crash, lost hop message).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from core.app_config import AppConfig, load_app_config
from core.errors import SYSTEM_LIMIT_EXCEEDED
from core.utils import set_loop_policy
from infra.service_runtime import ServiceBase
from infra.worker_helpers import HopGuard

from .lifecycle import TransitionResult, TurnLifecycle

set_loop_policy()


def _configure_logging() -> None:
    level_name = str(os.getenv("TR_LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


_configure_logging()
logger = logging.getLogger("StuckTurnReaper")


@dataclass(frozen=True, slots=True)
class ReapReport:
    examined: int
    failed: int
    skipped: int
    dry_run: bool = False


async def reap_stuck_turns(
    *,
    session_store: Any,
    lifecycle: TurnLifecycle,
    older_than_seconds: float,
    limit: int = 100,
    dry_run: bool = False,
) -> ReapReport:
    rows = await session_store.list_stuck(older_than_seconds=older_than_seconds, limit=limit)
    failed = 0
    skipped = 0
    for state in rows:
        if not state.current_turn_id:
            skipped += 1
            continue
        if dry_run:
            logger.info(
                "[dry-run] would fail turn %s (session=%s status=%s updated_at=%s)",
                state.current_turn_id,
                state.session_id,
                state.status,
                state.updated_at,
            )
            continue
        result = await lifecycle.fail_turn(
            state.session_id,
            state.current_turn_id,
            f"Turn timed out in {state.status} after {int(older_than_seconds)}s without progress",
            SYSTEM_LIMIT_EXCEEDED,
            guard=HopGuard(
                turn_id=state.current_turn_id,
                cycle_count=state.cycle_count,
                expect_status=state.status,
            ),
        )
        if result == TransitionResult.APPLIED:
            failed += 1
            logger.warning("Reaped stuck turn %s (session=%s)", state.current_turn_id, state.session_id)
        else:
            # the turn progressed between the scan and the lock
            skipped += 1
    return ReapReport(examined=len(rows), failed=failed, skipped=skipped, dry_run=dry_run)


class StuckTurnReaper(ServiceBase):
    def __init__(
        self,
        cfg: Optional[AppConfig | Dict[str, Any]] = None,
        *,
        interval_seconds: float = 60.0,
        batch_size: int = 100,
        older_than_seconds: Optional[float] = None,
    ) -> None:
        super().__init__(cfg, use_nats=True)
        self.session_store = self.register_store(self.ctx.stores.session_store())
        self.lifecycle = TurnLifecycle.from_config(self.app, session_store=self.session_store, nats=self.nats)
        self.interval_seconds = float(interval_seconds)
        self.batch_size = int(batch_size)
        self.older_than_seconds = float(
            older_than_seconds if older_than_seconds is not None else self.app.turn.stuck_turn_timeout_seconds
        )

    async def reap_once(self, *, dry_run: bool = False) -> ReapReport:
        return await reap_stuck_turns(
            session_store=self.session_store,
            lifecycle=self.lifecycle,
            older_than_seconds=self.older_than_seconds,
            limit=self.batch_size,
            dry_run=dry_run,
        )

    async def start(self) -> None:
        await self.open()
        logger.info(
            "Stuck turn reaper started (interval=%ss timeout=%ss batch=%s)",
            self.interval_seconds,
            self.older_than_seconds,
            self.batch_size,
        )
        try:
            while True:
                try:
                    report = await self.reap_once()
                    if report.failed:
                        logger.info("Reaper pass: examined=%s failed=%s", report.examined, report.failed)
                except Exception as exc:  # noqa: BLE001
                    logger.error("Reaper loop error: %s", exc)
                await asyncio.sleep(self.interval_seconds)
        finally:
            await self.close()


async def _run_once(reaper: StuckTurnReaper, *, dry_run: bool) -> ReapReport:
    async with reaper:
        return await reaper.reap_once(dry_run=dry_run)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Fail turns stuck in an in-flight status.")
    parser.add_argument("--older-than", type=float, default=None, help="seconds without progress (default: config)")
    parser.add_argument("--limit", type=int, default=100, help="max sessions per pass")
    parser.add_argument("--interval", type=float, default=60.0, help="seconds between passes")
    parser.add_argument("--once", action="store_true", help="run a single pass and exit")
    parser.add_argument("--dry-run", action="store_true", help="only report what would be failed")
    args = parser.parse_args(argv)

    reaper = StuckTurnReaper(
        load_app_config(),
        interval_seconds=args.interval,
        batch_size=args.limit,
        older_than_seconds=args.older_than,
    )
    if args.once or args.dry_run:
        report = asyncio.run(_run_once(reaper, dry_run=args.dry_run))
        print(f"examined={report.examined} failed={report.failed} skipped={report.skipped}")
        return 0
    asyncio.run(reaper.start())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
