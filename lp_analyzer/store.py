from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from lp_analyzer.cache_keys import generate_cache_key
from lp_analyzer.models import LPStrategyForm, Pool, UIState, UserPreferences
from lp_analyzer.settings import DATA_DIR
from lp_analyzer.state_cache import PerformanceMetrics, TTLCache

logger = logging.getLogger(__name__)

STORE_PATH = DATA_DIR / "store.json"

_POOLS_KEY = "pools"


class PersistedState(BaseModel):
    # Cache contents and results are never persisted; counters keep accumulating across runs.
    form: LPStrategyForm = Field(default_factory=LPStrategyForm)
    preferences: UserPreferences = Field(default_factory=UserPreferences)
    performance: PerformanceMetrics = Field(default_factory=PerformanceMetrics)


def load_persisted_state(path: Path | None = None) -> PersistedState:
    p = path or STORE_PATH
    try:
        if not p.exists():
            return PersistedState()
        raw = p.read_text(encoding="utf-8").strip()
        if not raw:
            return PersistedState()
        return PersistedState.model_validate_json(raw)
    except Exception:
        logger.warning("ignoring unreadable persisted state at %s", p, exc_info=True)
        return PersistedState()


def save_persisted_state(state: PersistedState, path: Path | None = None) -> None:
    p = path or STORE_PATH
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(state.model_dump_json(indent=2), encoding="utf-8")


class LPStrategyStore:
    """Application state: form, selection, UI flags, results and the state caches.

    The caches are owned here and only mutated through these methods.
    """

    def __init__(
        self,
        *,
        persisted: PersistedState | None = None,
        persist_path: Path | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        persisted = persisted or PersistedState()
        self._persist_path = persist_path
        self._clock = clock

        self.form: LPStrategyForm = persisted.form
        self.preferences: UserPreferences = persisted.preferences
        self.results: dict[str, Any] | None = None
        self.selected_pool: Pool | None = None
        self.available_pools: list[Pool] = []
        self.ui = UIState()
        self.chart_data: dict[str, Any] = {}

        self.performance: PerformanceMetrics = persisted.performance
        self.analyses: TTLCache[dict[str, Any]] = TTLCache(
            expiry_seconds=self._expiry_seconds,
            metrics=self.performance,
            max_size=self._max_cache_size,
            clock=clock,
        )
        self.ohlcv: TTLCache[list[dict[str, Any]]] = TTLCache(
            expiry_seconds=self._expiry_seconds,
            metrics=self.performance,
            max_size=self._max_cache_size,
            clock=clock,
        )
        self.pools: TTLCache[list[Pool]] = TTLCache(
            expiry_seconds=self._expiry_seconds,
            metrics=self.performance,
            clock=clock,
        )

    @classmethod
    def from_disk(cls, path: Path | None = None, *, clock: Callable[[], float] = time.time) -> "LPStrategyStore":
        p = path or STORE_PATH
        return cls(persisted=load_persisted_state(p), persist_path=p, clock=clock)

    def _expiry_seconds(self) -> float:
        return float(self.preferences.cache_expiry) * 60.0

    def _max_cache_size(self) -> int | None:
        return int(self.preferences.max_cache_size)

    def _persist(self) -> None:
        if self._persist_path is None or not self.preferences.auto_save:
            return
        try:
            save_persisted_state(
                PersistedState(form=self.form, preferences=self.preferences, performance=self.performance),
                self._persist_path,
            )
        except OSError:
            logger.warning("failed to persist store to %s", self._persist_path, exc_info=True)

    # form / selection / ui

    def set_form(self, updates: dict[str, Any]) -> LPStrategyForm:
        self.form = LPStrategyForm.model_validate({**self.form.model_dump(), **updates})
        self._persist()
        return self.form

    def reset_form(self) -> LPStrategyForm:
        self.form = LPStrategyForm()
        self._persist()
        return self.form

    def set_results(self, results: dict[str, Any] | None) -> None:
        self.results = results

    def set_selected_pool(self, pool: Pool | None) -> None:
        self.selected_pool = pool
        if pool is not None and pool.id != self.form.pool_id:
            self.set_form({"pool_id": pool.id})

    def set_available_pools(self, pools: list[Pool]) -> None:
        self.available_pools = list(pools)

    def set_ui(self, updates: dict[str, Any]) -> UIState:
        self.ui = UIState.model_validate({**self.ui.model_dump(), **updates})
        return self.ui

    def set_loading(self, loading: bool) -> None:
        self.ui.is_loading = bool(loading)

    def set_error(self, error: str | None) -> None:
        self.ui.error = error

    def set_selected_tab(self, tab: str) -> None:
        self.set_ui({"selected_tab": tab})

    def set_chart_data(self, chart_id: str, data: Any) -> None:
        self.chart_data = {**self.chart_data, chart_id: data}

    def update_preferences(self, updates: dict[str, Any]) -> UserPreferences:
        self.preferences = UserPreferences.model_validate({**self.preferences.model_dump(), **updates})
        self._persist()
        return self.preferences

    # state cache

    def generate_cache_key(self, pool_id: str, form: LPStrategyForm | dict[str, Any]) -> str:
        return generate_cache_key(pool_id, form)

    def is_data_stale(self, timestamp: float) -> bool:
        return self._clock() - timestamp > self._expiry_seconds()

    def get_cached_analysis(self, key: str) -> dict[str, Any] | None:
        return self.analyses.get(key)

    def set_cached_analysis(self, key: str, data: dict[str, Any]) -> None:
        self.analyses.set(key, data)

    def get_cached_pools(self) -> list[Pool] | None:
        return self.pools.get(_POOLS_KEY)

    def set_cached_pools(self, pools: list[Pool]) -> None:
        self.pools.set(_POOLS_KEY, list(pools))

    def get_cached_ohlcv(self, key: str) -> list[dict[str, Any]] | None:
        return self.ohlcv.get(key)

    def set_cached_ohlcv(self, key: str, data: list[dict[str, Any]]) -> None:
        self.ohlcv.set(key, data)

    def clear_cache(self) -> None:
        self.analyses.clear()
        self.ohlcv.clear()
        self.pools.clear()

    def prune_cache(self) -> None:
        self.analyses.prune()

    def optimize_state(self) -> None:
        self.analyses.prune()
        self.ohlcv.prune()
        self._persist()

    # performance

    def track_analysis(self, duration_ms: float) -> None:
        self.performance.record_analysis(duration_ms, now=self._clock())
        self._persist()

    def track_cache_hit(self) -> None:
        self.performance.record_hit()

    def track_cache_miss(self) -> None:
        self.performance.record_miss()

    def flush(self) -> None:
        # Hits and misses are not written one by one; this saves them.
        self._persist()

    def get_performance_stats(self) -> dict[str, Any]:
        stats = self.performance.to_dict()
        stats["cache_sizes"] = {
            "analyses": len(self.analyses),
            "ohlcv": len(self.ohlcv),
            "pools": len(self.pools),
        }
        return stats
