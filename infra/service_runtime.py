from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from core.app_config import AppConfig
from infra.service_context import ServiceContext
from infra.stores.base import BaseStore


logger = logging.getLogger("ServiceRuntime")

Closer = Callable[[], Awaitable[Any]]


@dataclass
class ServiceRuntime:
    """Opens the pool, NATS and registered stores in order; closes them in reverse."""

    ctx: ServiceContext
    use_nats: bool = True
    service_name: str = "service"
    stores: List[BaseStore] = field(default_factory=list)
    closers: List[Tuple[str, Closer]] = field(default_factory=list)
    _opened: bool = False

    @property
    def opened(self) -> bool:
        return self._opened

    def register_store(self, store: BaseStore) -> BaseStore:
        self.stores.append(store)
        return store

    def on_close(self, label: str, closer: Closer) -> None:
        self.closers.append((label, closer))

    async def open(self) -> None:
        if self._opened:
            return
        await self.ctx.open_pool()
        if self.use_nats:
            await self.ctx.nats.connect()
        for store in self.stores:
            await store.open()
        self._opened = True
        logger.info("%s opened (stores=%s nats=%s)", self.service_name, len(self.stores), self.use_nats)

    async def _close_quietly(self, label: str, closer: Closer) -> None:
        try:
            await closer()
        except Exception as exc:  # noqa: BLE001
            logger.warning("%s: closing %s failed: %s", self.service_name, label, exc, exc_info=True)

    async def close(self, *, pool_timeout: Optional[float] = None) -> None:
        if not self._opened:
            return
        for label, closer in reversed(self.closers):
            await self._close_quietly(label, closer)
        for store in reversed(self.stores):
            await self._close_quietly(type(store).__name__, store.close)
        if self.use_nats:
            await self._close_quietly("NATS", self.ctx.nats.close)
        try:
            await self.ctx.close_pool(timeout=pool_timeout)
        finally:
            self._opened = False
            logger.info("%s closed", self.service_name)


class ServiceBase:
    """Shared wiring for long-running processes; usable as ``async with service:``."""

    def __init__(
        self,
        config: Optional[AppConfig | Dict[str, Any]] = None,
        *,
        use_nats: bool = True,
        service_name: Optional[str] = None,
    ) -> None:
        self.ctx = ServiceContext.from_config(config)
        self.runtime = ServiceRuntime(
            ctx=self.ctx,
            use_nats=use_nats,
            service_name=service_name or self.__class__.__name__,
        )
        self.app = self.ctx.app
        self.nats = self.ctx.nats

    def register_store(self, store: BaseStore) -> BaseStore:
        return self.runtime.register_store(store)

    async def open(self) -> None:
        await self.runtime.open()

    async def close(self) -> None:
        await self.runtime.close()

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
