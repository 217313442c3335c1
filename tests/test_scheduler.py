import asyncio

from lp_analyzer.scheduler import optimize_job, start_scheduler, sync_job
from lp_analyzer.settings import Settings
from lp_analyzer.store import LPStrategyStore


class _StubOffline:
    def __init__(self) -> None:
        self.tags: list[str] = []

    async def sync(self, tag: str) -> list:
        self.tags.append(tag)
        return []


def test_sync_job_uses_analysis_tag() -> None:
    offline = _StubOffline()
    asyncio.run(sync_job(offline=offline))
    assert offline.tags == ["sync-analysis"]


def test_optimize_job_prunes_to_preference() -> None:
    store = LPStrategyStore()
    for i in range(4):
        store.set_cached_ohlcv(f"o{i}", [])
    store.preferences = store.preferences.model_copy(update={"max_cache_size": 2})
    optimize_job(store=store)
    assert len(store.ohlcv) == 2


def test_scheduler_registers_both_jobs() -> None:
    settings = Settings(
        backend_url="https://backend.example",
        backend_timeout_seconds=5.0,
        offline_storage="memory",
        offline_static_assets=[],
        sync_interval_seconds=30,
        log_level="INFO",
    )

    async def run():
        scheduler = start_scheduler(settings=settings, offline=_StubOffline(), store=LPStrategyStore())
        try:
            return sorted(job.id for job in scheduler.get_jobs())
        finally:
            scheduler.shutdown(wait=False)

    assert asyncio.run(run()) == ["offline_sync", "optimize_state"]
