from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from lp_analyzer.offline_cache import SYNC_TAG, OfflineRegistration
from lp_analyzer.settings import Settings
from lp_analyzer.store import LPStrategyStore

logger = logging.getLogger(__name__)


async def sync_job(*, offline: OfflineRegistration) -> None:
    # Retries every queued entry each run; no backoff.
    synced = await offline.sync(SYNC_TAG)
    if synced:
        logger.info("background sync landed %d queued request(s)", len(synced))


def optimize_job(*, store: LPStrategyStore) -> None:
    store.optimize_state()


def start_scheduler(*, settings: Settings, offline: OfflineRegistration, store: LPStrategyStore) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        sync_job,
        trigger="interval",
        seconds=settings.sync_interval_seconds,
        kwargs={"offline": offline},
        id="offline_sync",
        replace_existing=True,
        max_instances=1,
    )
    scheduler.add_job(
        optimize_job,
        trigger="interval",
        seconds=max(60, settings.sync_interval_seconds),
        kwargs={"store": store},
        id="optimize_state",
        replace_existing=True,
    )
    scheduler.start()
    return scheduler
