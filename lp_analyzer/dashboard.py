from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any

from lp_analyzer.backend import BackendClient, BackendError
from lp_analyzer.cache_keys import generate_ohlcv_key
from lp_analyzer.models import LPStrategyForm, Pool, PoolValidation, validate_form
from lp_analyzer.offline_cache import SYNC_PATH, OfflineRegistration
from lp_analyzer.offline_messages import OfflineMessenger
from lp_analyzer.store import LPStrategyStore

logger = logging.getLogger(__name__)


class FormError(ValueError):
    pass


@dataclass(frozen=True)
class AnalysisOutcome:
    key: str
    results: dict[str, Any]
    cached: bool
    duration_ms: float | None = None


class DashboardService:
    """Read-through access to backend data: state cache first, then the client."""

    def __init__(
        self,
        *,
        store: LPStrategyStore,
        client: BackendClient,
        offline: OfflineRegistration,
        messenger: OfflineMessenger,
        backend_url: str,
    ) -> None:
        self.store = store
        self.client = client
        self.offline = offline
        self.messenger = messenger
        self._backend_url = backend_url.rstrip("/")

    async def get_pools(self, *, force: bool = False) -> list[Pool]:
        pools = None if force else self.store.get_cached_pools()
        if pools is None:
            pools = await self.client.get_pools()
            self.store.set_cached_pools(pools)
        self.store.set_available_pools(pools)
        return pools

    async def select_pool(self, pool_id: str) -> Pool:
        pool_id = (pool_id or "").strip()
        for p in self.store.available_pools or await self.get_pools():
            if p.id == pool_id:
                self.store.set_selected_pool(p)
                return p
        raise LookupError(f"pool not found: {pool_id}")

    async def validate_pool(self, pool_id: str) -> PoolValidation:
        return await self.client.validate_pool(pool_id.strip())

    async def get_ohlcv(self, pool_id: str, timeframe: str = "1H", lookback_days: int = 30) -> list[dict[str, Any]]:
        key = generate_ohlcv_key(pool_id, timeframe, lookback_days)
        candles = self.store.get_cached_ohlcv(key)
        if candles is None:
            candles = await self.client.get_ohlcv(pool_id, timeframe, lookback_days)
            self.store.set_cached_ohlcv(key, candles)
        return candles

    async def run_analysis(self, updates: dict[str, Any] | None = None) -> AnalysisOutcome:
        form = self.store.set_form(updates) if updates else self.store.form
        err = validate_form(form, selected_pool=self.store.selected_pool)
        if err:
            self.store.set_error(err)
            raise FormError(err)

        key = self.store.generate_cache_key(form.pool_id, form)
        cached = self.store.get_cached_analysis(key)
        if cached is not None:
            self.store.set_error(None)
            self.store.set_results(cached)
            return AnalysisOutcome(key=key, results=cached, cached=True)

        self.store.set_loading(True)
        self.store.set_error(None)
        started = time.perf_counter()
        try:
            results = await self.client.analyze_strategy(form)
        except BackendError as e:
            self.store.set_error(e.message)
            self.store.set_results(None)
            if e.status_code is None:
                await self._queue_for_sync(form)
            raise
        finally:
            self.store.set_loading(False)

        duration_ms = (time.perf_counter() - started) * 1000.0
        self.store.track_analysis(duration_ms)
        self.store.set_cached_analysis(key, results)
        self.store.set_results(results)
        await self.messenger.cache_analysis_data(results)
        logger.info("analysis for pool %s finished in %.0f ms", form.pool_id, duration_ms)
        return AnalysisOutcome(key=key, results=results, cached=False, duration_ms=duration_ms)

    async def _queue_for_sync(self, form: LPStrategyForm) -> None:
        # Network-level failure: keep the request so background sync can land it later.
        worker = self.offline.active
        if worker is None:
            return
        body = json.dumps(form.model_dump()).encode("utf-8")
        await worker.queue_request("POST", f"{self._backend_url}{SYNC_PATH}", body)
        logger.info("analysis request for pool %s queued for background sync", form.pool_id)

    async def get_health(self) -> dict[str, Any]:
        return await self.client.get_health()

    async def get_liquidity_distribution(self, pool_id: str, price_points: int = 100) -> Any:
        return await self.client.get_liquidity_distribution(pool_id, price_points)

    async def get_range_comparison(self, pool_id: str, ranges: str, liquidity_usd: float) -> Any:
        return await self.client.get_range_comparison(pool_id, ranges, liquidity_usd)

    async def get_offline_analysis(self) -> Any | None:
        worker = self.offline.active
        if worker is None:
            return None
        return await worker.get_offline_analysis()
