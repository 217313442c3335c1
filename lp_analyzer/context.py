from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from lp_analyzer.backend import BackendClient
from lp_analyzer.dashboard import DashboardService
from lp_analyzer.offline_cache import OfflineCache, OfflineRegistration
from lp_analyzer.offline_messages import ClientRegistry, OfflineMessenger
from lp_analyzer.offline_storage import CacheStorage, DiskCacheStorage, MemoryCacheStorage
from lp_analyzer.scheduler import start_scheduler
from lp_analyzer.settings import DATA_DIR, Settings
from lp_analyzer.store import LPStrategyStore

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Everything the app shares, built once at startup and passed around."""

    settings: Settings
    store: LPStrategyStore
    network: httpx.AsyncBaseTransport
    storage: CacheStorage
    clients: ClientRegistry
    offline: OfflineRegistration
    client: BackendClient
    messenger: OfflineMessenger
    service: DashboardService
    clock: Callable[[], float] = time.time
    scheduler: AsyncIOScheduler | None = None
    _started: bool = field(default=False, repr=False)

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        network: httpx.AsyncBaseTransport | None = None,
        storage: CacheStorage | None = None,
        data_dir: Path | None = None,
        clock: Callable[[], float] = time.time,
    ) -> "AppContext":
        data_dir = data_dir or DATA_DIR
        if storage is None:
            if settings.offline_storage == "disk":
                storage = DiskCacheStorage(data_dir / "offline")
            else:
                storage = MemoryCacheStorage()
        network = network or httpx.AsyncHTTPTransport(retries=0)

        store = LPStrategyStore.from_disk(data_dir / "store.json", clock=clock)
        clients = ClientRegistry()
        offline = OfflineRegistration(network=network)
        client = BackendClient(
            base_url=settings.backend_url,
            timeout_seconds=settings.backend_timeout_seconds,
            transport=offline,
        )
        messenger = OfflineMessenger(offline, clients)
        service = DashboardService(
            store=store,
            client=client,
            offline=offline,
            messenger=messenger,
            backend_url=settings.backend_url,
        )
        return cls(
            settings=settings,
            store=store,
            network=network,
            storage=storage,
            clients=clients,
            offline=offline,
            client=client,
            messenger=messenger,
            service=service,
            clock=clock,
        )

    def new_offline_worker(self, *, version: str | None = None) -> OfflineCache:
        kwargs = {"version": version} if version else {}
        return OfflineCache(
            network=self.network,
            storage=self.storage,
            clients=self.clients,
            origin=self.settings.backend_url,
            static_assets=self.settings.offline_static_assets,
            clock=self.clock,
            timeout_seconds=self.settings.backend_timeout_seconds,
            **kwargs,
        )

    async def start(self, *, with_scheduler: bool = True) -> None:
        if self._started:
            return
        await self.offline.register(self.new_offline_worker())
        if with_scheduler:
            self.scheduler = start_scheduler(settings=self.settings, offline=self.offline, store=self.store)
        self._started = True

    async def close(self) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        self.messenger.close()
        self.store.flush()
        await self.client.close()
        self._started = False
