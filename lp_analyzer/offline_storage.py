"""Named response buckets for the offline cache.

``MemoryCacheStorage`` lives for the process; ``DiskCacheStorage`` keeps one
JSON file per bucket under a directory so entries survive restarts. Both
serialize access to a bucket with an ``asyncio.Lock``.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)


def request_key(method: str, url: str) -> str:
    m = (method or "GET").upper()
    return url if m == "GET" else f"{m} {url}"


@dataclass(frozen=True)
class StoredResponse:
    url: str
    status_code: int
    headers: list[tuple[str, str]]
    content: bytes
    method: str = "GET"
    # Body of a queued (non-GET) request awaiting replay.
    request_content: bytes = b""
    # Set on queued requests so several bodies for one URL are kept apart.
    queue_id: str = ""

    @property
    def key(self) -> str:
        base = request_key(self.method, self.url)
        return f"{base}#{self.queue_id}" if self.queue_id else base

    def header(self, name: str) -> str | None:
        lname = name.lower()
        for k, v in self.headers:
            if k.lower() == lname:
                return v
        return None

    def to_response(self, request: httpx.Request | None = None) -> httpx.Response:
        return httpx.Response(
            status_code=self.status_code,
            headers=self.headers,
            content=self.content,
            request=request,
        )

    def to_request(self, *, extensions: dict | None = None) -> httpx.Request:
        return httpx.Request(self.method, self.url, content=self.request_content, extensions=extensions)

    def to_json(self) -> dict:
        d = asdict(self)
        d["headers"] = [list(h) for h in self.headers]
        d["content"] = base64.b64encode(self.content).decode("ascii")
        d["request_content"] = base64.b64encode(self.request_content).decode("ascii")
        return d

    @staticmethod
    def from_json(d: dict) -> "StoredResponse":
        return StoredResponse(
            url=str(d["url"]),
            status_code=int(d["status_code"]),
            headers=[(str(k), str(v)) for k, v in d.get("headers") or []],
            content=base64.b64decode(d.get("content") or ""),
            method=str(d.get("method") or "GET"),
            request_content=base64.b64decode(d.get("request_content") or ""),
            queue_id=str(d.get("queue_id") or ""),
        )


class CacheBucket(Protocol):
    name: str

    async def get(self, key: str) -> StoredResponse | None: ...

    async def put(self, entry: StoredResponse) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def keys(self) -> list[str]: ...


class CacheStorage(Protocol):
    async def open(self, name: str) -> CacheBucket: ...

    async def delete(self, name: str) -> bool: ...

    async def names(self) -> list[str]: ...

    async def match(self, key: str) -> StoredResponse | None: ...


@dataclass
class MemoryCacheBucket:
    name: str
    _entries: dict[str, StoredResponse] = field(default_factory=dict)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def get(self, key: str) -> StoredResponse | None:
        async with self._lock:
            return self._entries.get(key)

    async def put(self, entry: StoredResponse) -> None:
        async with self._lock:
            self._entries[entry.key] = entry

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None

    async def keys(self) -> list[str]:
        async with self._lock:
            return list(self._entries)


class MemoryCacheStorage:
    def __init__(self) -> None:
        self._buckets: dict[str, MemoryCacheBucket] = {}

    async def open(self, name: str) -> MemoryCacheBucket:
        bucket = self._buckets.get(name)
        if bucket is None:
            bucket = MemoryCacheBucket(name=name)
            self._buckets[name] = bucket
        return bucket

    async def delete(self, name: str) -> bool:
        return self._buckets.pop(name, None) is not None

    async def names(self) -> list[str]:
        return list(self._buckets)

    async def match(self, key: str) -> StoredResponse | None:
        # Buckets are searched in creation order, like CacheStorage.match().
        for bucket in list(self._buckets.values()):
            hit = await bucket.get(key)
            if hit is not None:
                return hit
        return None


class DiskCacheBucket:
    def __init__(self, name: str, path: Path, seq: int) -> None:
        self.name = name
        # Creation order across the storage; names() sorts on it.
        self.seq = seq
        self._path = path
        self._lock = asyncio.Lock()

    def _load(self) -> dict[str, StoredResponse]:
        if not self._path.exists():
            return {}
        raw = self._path.read_text(encoding="utf-8").strip()
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except Exception:
            logger.warning("offline bucket %s is unreadable; treating as empty", self.name)
            return {}
        out: dict[str, StoredResponse] = {}
        for it in (data.get("entries") or []) if isinstance(data, dict) else []:
            try:
                entry = StoredResponse.from_json(it)
            except Exception:
                continue
            out[entry.key] = entry
        return out

    def _save(self, entries: dict[str, StoredResponse]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"name": self.name, "seq": self.seq, "entries": [e.to_json() for e in entries.values()]}
        tmp = self._path.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload), encoding="utf-8")
        tmp.replace(self._path)

    async def get(self, key: str) -> StoredResponse | None:
        async with self._lock:
            return self._load().get(key)

    async def put(self, entry: StoredResponse) -> None:
        async with self._lock:
            entries = self._load()
            entries[entry.key] = entry
            self._save(entries)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            entries = self._load()
            if entries.pop(key, None) is None:
                return False
            self._save(entries)
            return True

    async def keys(self) -> list[str]:
        async with self._lock:
            return list(self._load())


class DiskCacheStorage:
    def __init__(self, root: Path) -> None:
        self._root = root
        self._buckets: dict[str, DiskCacheBucket] = {}

    def _path_for(self, name: str) -> Path:
        digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:16]
        return self._root / f"{digest}.json"

    def _read_header(self, path: Path) -> tuple[int, str] | None:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except Exception:
            return None
        if not isinstance(data, dict) or not data.get("name"):
            return None
        try:
            seq = int(data.get("seq") or 0)
        except (TypeError, ValueError):
            seq = 0
        return seq, str(data["name"])

    def _headers(self) -> list[tuple[int, str]]:
        if not self._root.exists():
            return []
        out = [h for h in (self._read_header(p) for p in self._root.glob("*.json")) if h is not None]
        out.sort()
        return out

    async def open(self, name: str) -> DiskCacheBucket:
        bucket = self._buckets.get(name)
        if bucket is not None:
            return bucket
        path = self._path_for(name)
        header = self._read_header(path) if path.exists() else None
        if header is not None:
            bucket = DiskCacheBucket(name, path, header[0])
        else:
            seq = max((s for s, _ in self._headers()), default=0) + 1
            bucket = DiskCacheBucket(name, path, seq)
            bucket._save({})
        self._buckets[name] = bucket
        return bucket

    async def delete(self, name: str) -> bool:
        self._buckets.pop(name, None)
        path = self._path_for(name)
        if not path.exists():
            return False
        path.unlink()
        return True

    async def names(self) -> list[str]:
        # Creation order, same as the in-memory storage.
        return [name for _, name in self._headers()]

    async def match(self, key: str) -> StoredResponse | None:
        for name in await self.names():
            hit = await (await self.open(name)).get(key)
            if hit is not None:
                return hit
        return None
