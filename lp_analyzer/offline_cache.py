"""Offline cache: an httpx transport that intercepts every outbound request.

Requests are classified by URL shape and served with one of three
strategies: network-first (documents and anything unclassified),
cache-first (static assets) and the API strategy (freshness-checked cache,
then network, then stale copy). Responses are kept in two named buckets
whose names carry the cache version; activating a new version drops every
other bucket.

``OfflineRegistration`` plays the role of the page's controller: it routes
requests to the active version, keeps a freshly installed version waiting
until it is told to take over, and leaves the old version serving when an
install fails.
"""

from __future__ import annotations

import enum
import json
import logging
import re
import time
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from email.utils import formatdate, parsedate_to_datetime
from typing import Any
from urllib.parse import urljoin

import httpx

from lp_analyzer.offline_messages import (
    CacheAnalysis,
    ClientRegistry,
    OfflineCommand,
    SkipWaiting,
    SyncSuccess,
)
from lp_analyzer.offline_storage import CacheStorage, StoredResponse, request_key

logger = logging.getLogger(__name__)

CACHE_VERSION = "v1.0.0"

STATIC_ASSETS = [
    "/",
    "/index.html",
    "/static/js/main.js",
    "/static/css/main.css",
    "/manifest.json",
]

API_PATH_PATTERNS = [
    re.compile(r"^/api/"),
    re.compile(r"^/pools(/|$)"),
    re.compile(r"^/health(/|$)"),
    re.compile(r"^/ohlcv(/|$)"),
    re.compile(r"^/advanced-lp-strategy(/|$)"),
    re.compile(r"^/test-pool-id(/|$)"),
    re.compile(r"^/test-any-pool(/|$)"),
    re.compile(r"^/find-active-pools(/|$)"),
    re.compile(r"^/range-comparison-chart(/|$)"),
    re.compile(r"^/liquidity-distribution(/|$)"),
]

HEALTH_PATH = re.compile(r"^/health(/|$)")

STATIC_PREFIXES = ("/static/", "/assets/")
STATIC_EXTENSIONS = re.compile(r"\.(js|css|png|jpg|jpeg|gif|svg|woff|woff2|ttf|eot)$")

API_FRESHNESS_SECONDS = 5 * 60
REQUEST_TIMEOUT_SECONDS = 30.0

SYNC_TAG = "sync-analysis"
SYNC_PATH = "/advanced-lp-strategy"
OFFLINE_ANALYSIS_PATH = "/offline-analysis"
OFFLINE_PAGE_PATH = "/offline.html"

OFFLINE_HTML = "<html><body><h1>Offline</h1><p>Please check your internet connection.</p></body></html>"


def static_cache_name(version: str = CACHE_VERSION) -> str:
    return f"lp-analyzer-static-{version}"


def dynamic_cache_name(version: str = CACHE_VERSION) -> str:
    return f"lp-analyzer-dynamic-{version}"


class WorkerState(str, enum.Enum):
    PARSED = "parsed"
    INSTALLING = "installing"
    WAITING = "installed"
    ACTIVATING = "activating"
    ACTIVE = "activated"
    REDUNDANT = "redundant"


class ResourceClass(str, enum.Enum):
    PASSTHROUGH = "passthrough"
    DOCUMENT = "document"
    API = "api"
    STATIC = "static"
    OTHER = "other"


class InstallError(Exception):
    pass


def is_api_path(path: str) -> bool:
    return any(p.search(path) for p in API_PATH_PATTERNS)


def is_static_path(path: str) -> bool:
    return path.startswith(STATIC_PREFIXES) or STATIC_EXTENSIONS.search(path) is not None


def is_document_request(request: httpx.Request) -> bool:
    accept = request.headers.get("accept", "")
    if "text/html" in accept:
        return True
    path = request.url.path or "/"
    return path == "/" or path.endswith(".html")


def classify_request(request: httpx.Request) -> ResourceClass:
    if request.method.upper() != "GET":
        return ResourceClass.PASSTHROUGH
    # Same precedence as the fetch handler: document, then API, then static.
    if is_document_request(request):
        return ResourceClass.DOCUMENT
    path = request.url.path or "/"
    if is_api_path(path):
        return ResourceClass.API
    if is_static_path(path):
        return ResourceClass.STATIC
    return ResourceClass.OTHER


def response_date_epoch(entry: StoredResponse) -> float:
    # Missing or unparsable Date reads as epoch 0, i.e. always stale.
    raw = entry.header("date")
    if not raw:
        return 0.0
    try:
        return parsedate_to_datetime(raw).timestamp()
    except (TypeError, ValueError):
        pass
    try:
        dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return 0.0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _is_ok(status_code: int) -> bool:
    return 200 <= status_code < 300


async def _read_raw(response: httpx.Response) -> bytes:
    # Raw (still content-encoded) bytes, so a replayed copy decodes the same way.
    try:
        return b"".join([chunk async for chunk in response.stream])
    finally:
        await response.aclose()


class OfflineCache(httpx.AsyncBaseTransport):
    def __init__(
        self,
        *,
        network: httpx.AsyncBaseTransport,
        storage: CacheStorage,
        clients: ClientRegistry,
        origin: str,
        static_assets: Iterable[str] | None = None,
        version: str = CACHE_VERSION,
        clock: Callable[[], float] = time.time,
        timeout_seconds: float = REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self._network = network
        self._timeout = httpx.Timeout(timeout_seconds)
        self._storage = storage
        self._clients = clients
        self._origin = origin.rstrip("/") + "/"
        self._clock = clock
        self.version = version
        self.static_assets = list(STATIC_ASSETS if static_assets is None else static_assets)
        self.static_cache_name = static_cache_name(version)
        self.dynamic_cache_name = dynamic_cache_name(version)
        self.state = WorkerState.PARSED

    def url_for(self, path: str) -> str:
        return urljoin(self._origin, path.lstrip("/"))

    def _timeout_extensions(self) -> dict:
        return {"timeout": self._timeout.as_dict()}

    # lifecycle

    async def install(self) -> None:
        """Fetch the whole static manifest, then commit it in one go.

        Nothing is written unless every asset came back 2xx.
        """
        self.state = WorkerState.INSTALLING
        logger.info("offline cache %s installing (%d static assets)", self.version, len(self.static_assets))
        fetched: list[StoredResponse] = []
        try:
            for path in self.static_assets:
                stored = await self._fetch(
                    httpx.Request("GET", self.url_for(path), extensions=self._timeout_extensions())
                )
                if not _is_ok(stored.status_code):
                    raise InstallError(f"static asset {path} returned {stored.status_code}")
                fetched.append(stored)
        except (httpx.TransportError, InstallError) as e:
            self.state = WorkerState.REDUNDANT
            logger.error("offline cache %s failed to cache static assets: %s", self.version, e)
            if isinstance(e, InstallError):
                raise
            raise InstallError(str(e) or type(e).__name__) from e

        try:
            bucket = await self._storage.open(self.static_cache_name)
            for stored in fetched:
                await bucket.put(stored)
        except Exception as e:
            self.state = WorkerState.REDUNDANT
            await self._storage.delete(self.static_cache_name)
            logger.error("offline cache %s failed to store static assets: %s", self.version, e)
            raise InstallError(str(e) or type(e).__name__) from e

        self.state = WorkerState.WAITING
        logger.info("offline cache %s installed", self.version)

    async def activate(self) -> list[str]:
        self.state = WorkerState.ACTIVATING
        keep = {self.static_cache_name, self.dynamic_cache_name}
        deleted: list[str] = []
        for name in await self._storage.names():
            if name in keep:
                continue
            logger.info("offline cache deleting old bucket %s", name)
            await self._storage.delete(name)
            deleted.append(name)
        await self._storage.open(self.dynamic_cache_name)
        self.state = WorkerState.ACTIVE
        logger.info("offline cache %s activated", self.version)
        return deleted

    # fetch handling

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        kind = classify_request(request)
        if kind is ResourceClass.PASSTHROUGH:
            return await self._network.handle_async_request(request)
        if kind is ResourceClass.API:
            return await self.api_strategy(request)
        if kind is ResourceClass.STATIC:
            return await self.cache_first(request)
        return await self.network_first(request, document=kind is ResourceClass.DOCUMENT)

    async def _fetch(self, request: httpx.Request) -> StoredResponse:
        response = await self._network.handle_async_request(request)
        content = await _read_raw(response)
        return StoredResponse(
            url=str(request.url),
            status_code=response.status_code,
            headers=response.headers.multi_items(),
            content=content,
            method=request.method.upper(),
        )

    async def _put(self, bucket_name: str, stored: StoredResponse) -> None:
        try:
            bucket = await self._storage.open(bucket_name)
            await bucket.put(stored)
        except Exception:
            logger.warning("offline cache failed to store %s in %s", stored.url, bucket_name, exc_info=True)

    async def _match(self, request: httpx.Request) -> StoredResponse | None:
        try:
            return await self._storage.match(request_key(request.method, str(request.url)))
        except Exception:
            logger.warning("offline cache lookup failed for %s", request.url, exc_info=True)
            return None

    async def network_first(self, request: httpx.Request, *, document: bool = False) -> httpx.Response:
        try:
            stored = await self._fetch(request)
        except httpx.TransportError:
            logger.info("network failed, trying cache: %s", request.url)
            cached = await self._match(request)
            if cached is not None:
                return cached.to_response(request)
            if document:
                page = await self._match(httpx.Request("GET", self.url_for(OFFLINE_PAGE_PATH)))
                if page is not None:
                    return page.to_response(request)
                return httpx.Response(200, headers={"Content-Type": "text/html"}, text=OFFLINE_HTML, request=request)
            raise
        if _is_ok(stored.status_code):
            await self._put(self.dynamic_cache_name, stored)
        return stored.to_response(request)

    async def cache_first(self, request: httpx.Request) -> httpx.Response:
        cached = await self._match(request)
        if cached is not None:
            return cached.to_response(request)
        try:
            stored = await self._fetch(request)
        except httpx.TransportError as e:
            logger.error("failed to fetch static asset %s: %s", request.url, e)
            raise
        if _is_ok(stored.status_code):
            await self._put(self.static_cache_name, stored)
        return stored.to_response(request)

    def is_fresh(self, entry: StoredResponse) -> bool:
        return self._clock() - response_date_epoch(entry) < API_FRESHNESS_SECONDS

    async def api_strategy(self, request: httpx.Request) -> httpx.Response:
        if HEALTH_PATH.search(request.url.path or ""):
            try:
                stored = await self._fetch(request)
            except httpx.TransportError:
                cached = await self._match(request)
                if cached is not None:
                    return cached.to_response(request)
                return httpx.Response(
                    503,
                    json={"status": "offline", "message": "Service worker offline mode"},
                    request=request,
                )
            return stored.to_response(request)

        cached = await self._match(request)
        if cached is not None and self.is_fresh(cached):
            return cached.to_response(request)

        try:
            stored = await self._fetch(request)
        except httpx.TransportError:
            if cached is not None:
                logger.info("network failed, returning stale cache: %s", request.url)
                return cached.to_response(request)
            raise
        if _is_ok(stored.status_code):
            await self._put(self.dynamic_cache_name, stored)
        return stored.to_response(request)

    # background sync and messages

    async def queue_request(self, method: str, url: str, content: bytes = b"") -> StoredResponse:
        pending = StoredResponse(
            url=url,
            status_code=0,
            headers=[],
            content=b"",
            method=method.upper(),
            request_content=content,
            queue_id=uuid.uuid4().hex,
        )
        await self._put(self.dynamic_cache_name, pending)
        return pending

    async def sync(self, tag: str) -> list[SyncSuccess]:
        logger.info("background sync triggered: %s", tag)
        if tag != SYNC_TAG:
            return []
        synced: list[SyncSuccess] = []
        try:
            bucket = await self._storage.open(self.dynamic_cache_name)
            for key in await bucket.keys():
                entry = await bucket.get(key)
                if entry is None or entry.method != "POST" or SYNC_PATH not in entry.url:
                    continue
                try:
                    replay = await self._fetch(entry.to_request(extensions=self._timeout_extensions()))
                except httpx.TransportError as e:
                    logger.error("failed to sync analysis %s: %s", entry.url, e)
                    continue
                if not _is_ok(replay.status_code):
                    continue
                await bucket.delete(key)
                event = SyncSuccess(url=entry.url)
                synced.append(event)
                self._clients.broadcast(event)
        except Exception:
            logger.exception("background sync failed")
        return synced

    async def cache_analysis_data(self, payload: Any) -> None:
        stored = StoredResponse(
            url=self.url_for(OFFLINE_ANALYSIS_PATH),
            status_code=200,
            headers=[
                ("Content-Type", "application/json"),
                ("Date", formatdate(self._clock(), usegmt=True)),
            ],
            content=json.dumps(payload).encode("utf-8"),
        )
        await self._put(self.dynamic_cache_name, stored)
        logger.info("analysis data cached for offline use")

    async def get_offline_analysis(self) -> Any | None:
        cached = await self._match(httpx.Request("GET", self.url_for(OFFLINE_ANALYSIS_PATH)))
        if cached is None:
            return None
        try:
            return json.loads(cached.content.decode("utf-8"))
        except ValueError:
            return None


class OfflineRegistration(httpx.AsyncBaseTransport):
    def __init__(self, *, network: httpx.AsyncBaseTransport) -> None:
        self._network = network
        self.active: OfflineCache | None = None
        self.waiting: OfflineCache | None = None

    async def register(self, worker: OfflineCache) -> OfflineCache | None:
        """Install ``worker``; the current active version keeps serving if that fails."""
        try:
            await worker.install()
        except InstallError:
            return None
        if self.waiting is not None:
            self.waiting.state = WorkerState.REDUNDANT
        self.waiting = worker
        if self.active is None:
            await self._activate_waiting()
        return worker

    async def skip_waiting(self) -> OfflineCache | None:
        if self.waiting is None:
            return self.active
        return await self._activate_waiting()

    async def _activate_waiting(self) -> OfflineCache | None:
        worker = self.waiting
        if worker is None:
            return self.active
        self.waiting = None
        await worker.activate()
        if self.active is not None:
            self.active.state = WorkerState.REDUNDANT
        self.active = worker
        return worker

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if self.active is None:
            return await self._network.handle_async_request(request)
        return await self.active.handle_async_request(request)

    async def handle_message(self, message: OfflineCommand) -> None:
        logger.debug("offline message received: %s", message.type)
        if isinstance(message, SkipWaiting):
            await self.skip_waiting()
        elif isinstance(message, CacheAnalysis):
            if self.active is None:
                logger.warning("no active offline cache; dropping CACHE_ANALYSIS")
                return
            await self.active.cache_analysis_data(message.payload)

    async def sync(self, tag: str) -> list[SyncSuccess]:
        if self.active is None:
            return []
        return await self.active.sync(tag)

    def status(self) -> dict:
        return {
            "active": self.active.version if self.active else None,
            "active_state": self.active.state.value if self.active else None,
            "waiting": self.waiting.version if self.waiting else None,
        }

    async def aclose(self) -> None:
        await self._network.aclose()
