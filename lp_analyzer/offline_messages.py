"""Typed command/event channel between the app and the offline cache.

Commands flow app -> offline cache (``SkipWaiting``, ``CacheAnalysis``);
events flow offline cache -> every subscribed client (``SyncSuccess``).
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Union

logger = logging.getLogger(__name__)

SKIP_WAITING = "SKIP_WAITING"
CACHE_ANALYSIS = "CACHE_ANALYSIS"
SYNC_SUCCESS = "SYNC_SUCCESS"

MAX_PENDING_EVENTS = 100


@dataclass(frozen=True)
class SkipWaiting:
    type: str = SKIP_WAITING


@dataclass(frozen=True)
class CacheAnalysis:
    payload: Any
    type: str = CACHE_ANALYSIS


@dataclass(frozen=True)
class SyncSuccess:
    url: str
    type: str = SYNC_SUCCESS

    def to_dict(self) -> dict:
        return {"type": self.type, "data": {"url": self.url}}


OfflineCommand = Union[SkipWaiting, CacheAnalysis]
OfflineEvent = SyncSuccess


class UnknownMessageError(ValueError):
    pass


def parse_command(raw: dict[str, Any]) -> OfflineCommand:
    kind = str((raw or {}).get("type") or "").strip().upper()
    if kind == SKIP_WAITING:
        return SkipWaiting()
    if kind == CACHE_ANALYSIS:
        return CacheAnalysis(payload=raw.get("payload"))
    raise UnknownMessageError(f"unknown message type: {kind or '<missing>'}")


EventListener = Callable[[OfflineEvent], None]


class ClientRegistry:
    """Open clients of the offline cache; ``broadcast`` reaches all of them."""

    def __init__(self) -> None:
        self._clients: list[EventListener] = []

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        self._clients.append(listener)

        def _unsubscribe() -> None:
            if listener in self._clients:
                self._clients.remove(listener)

        return _unsubscribe

    def broadcast(self, event: OfflineEvent) -> None:
        for client in list(self._clients):
            try:
                client(event)
            except Exception:
                logger.exception("offline client failed to handle %s", event.type)

    def __len__(self) -> int:
        return len(self._clients)


class OfflineMessenger:
    """App-side endpoint of the channel.

    Posts commands to the offline cache and re-dispatches ``SyncSuccess`` to
    in-process listeners. Events also wait in a bounded buffer until the UI
    drains them, so syncs run by the scheduler still reach it.
    """

    def __init__(self, offline_cache, clients: ClientRegistry, *, max_pending: int = MAX_PENDING_EVENTS) -> None:
        self._offline_cache = offline_cache
        self._listeners: list[Callable[[SyncSuccess], None]] = []
        self.sync_events: deque[SyncSuccess] = deque(maxlen=max_pending)
        self._unsubscribe = clients.subscribe(self._on_event)

    def _on_event(self, event: OfflineEvent) -> None:
        if isinstance(event, SyncSuccess):
            self.sync_events.append(event)
            for listener in list(self._listeners):
                listener(event)

    def on_sync_success(self, listener: Callable[[SyncSuccess], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def drain_sync_events(self) -> list[SyncSuccess]:
        events = list(self.sync_events)
        self.sync_events.clear()
        return events

    async def post_message(self, message: OfflineCommand) -> None:
        await self._offline_cache.handle_message(message)

    async def cache_analysis_data(self, data: Any) -> None:
        await self.post_message(CacheAnalysis(payload=data))

    async def request_background_sync(self, tag: str) -> list[SyncSuccess]:
        return await self._offline_cache.sync(tag)

    def close(self) -> None:
        self._unsubscribe()
