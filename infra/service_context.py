from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from psycopg_pool import AsyncConnectionPool

from core.app_config import AppConfig, normalize_config
from infra.nats_client import NATSClient
from infra.stores import DiagnosticStore, HopResultStore, SessionStore, create_pool


@dataclass(frozen=True)
class StoreFactory:
    dsn: str
    min_size: Optional[int]
    max_size: Optional[int]
    pool: AsyncConnectionPool

    def session_store(self) -> SessionStore:
        return SessionStore(pool=self.pool, dsn=self.dsn, min_size=self.min_size, max_size=self.max_size)

    def hop_result_store(self) -> HopResultStore:
        return HopResultStore(pool=self.pool, dsn=self.dsn, min_size=self.min_size, max_size=self.max_size)

    def diagnostic_store(self) -> DiagnosticStore:
        return DiagnosticStore(pool=self.pool, dsn=self.dsn, min_size=self.min_size, max_size=self.max_size)


@dataclass(frozen=True)
class ServiceContext:
    app: AppConfig
    cfg: Dict[str, Any]
    dsn: str
    pool: AsyncConnectionPool
    nats: NATSClient
    stores: StoreFactory

    @classmethod
    def from_config(cls, config: Optional[AppConfig | Dict[str, Any]] = None) -> "ServiceContext":
        app = normalize_config(config)
        cfg = app.model_dump(mode="python")
        pg = app.postgres
        pool = create_pool(pg.dsn, min_size=pg.min_size, max_size=pg.max_size)
        store_factory = StoreFactory(dsn=pg.dsn, min_size=pg.min_size, max_size=pg.max_size, pool=pool)
        return cls(
            app=app,
            cfg=cfg,
            dsn=pg.dsn,
            pool=pool,
            nats=NATSClient(config=cfg.get("nats", {}), protocol_version=app.protocol.version),
            stores=store_factory,
        )

    async def open_pool(self) -> None:
        await self.pool.open()

    async def close_pool(self, *, timeout: Optional[float] = None) -> None:
        if timeout is None:
            await self.pool.close()
        else:
            await self.pool.close(timeout=timeout)
