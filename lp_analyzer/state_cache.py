from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from dataclasses import asdict, dataclass, field
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    data: T
    timestamp: float
    access_count: int = 0
    last_accessed: float = 0.0

    def touch(self, now: float) -> None:
        self.access_count += 1
        # Clock may step backwards; last_accessed never precedes creation.
        self.last_accessed = max(now, self.timestamp, self.last_accessed)


@dataclass
class PerformanceMetrics:
    analyses_run: int = 0
    last_analysis_time: float | None = None
    average_analysis_time: float = 0.0
    total_cache_hits: int = 0
    total_cache_misses: int = 0

    @property
    def cache_hit_rate(self) -> float | None:
        total = self.total_cache_hits + self.total_cache_misses
        if total == 0:
            return None
        return self.total_cache_hits / total

    def record_hit(self) -> None:
        self.total_cache_hits += 1

    def record_miss(self) -> None:
        self.total_cache_misses += 1

    def record_analysis(self, duration_ms: float, *, now: float) -> None:
        self.analyses_run += 1
        self.last_analysis_time = now
        n = self.analyses_run
        self.average_analysis_time = (self.average_analysis_time * (n - 1) + float(duration_ms)) / n

    def to_dict(self) -> dict:
        d = asdict(self)
        d["cache_hit_rate"] = self.cache_hit_rate
        return d


@dataclass
class TTLCache(Generic[T]):
    """In-memory TTL map with least-recently-accessed pruning.

    ``expiry_seconds`` and ``max_size`` are callables so a preferences change
    takes effect on the next read or write. Entries that went stale under an
    older expiry are not purged up front; staleness is only checked in ``get``.
    """

    expiry_seconds: Callable[[], float]
    metrics: PerformanceMetrics
    max_size: Callable[[], int | None] = lambda: None
    clock: Callable[[], float] = time.time
    _entries: dict[str, CacheEntry[T]] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    def is_stale(self, timestamp: float) -> bool:
        return self.clock() - timestamp > self.expiry_seconds()

    def peek(self, key: str) -> CacheEntry[T] | None:
        # No stats, no staleness check.
        return self._entries.get(key)

    def get(self, key: str) -> T | None:
        entry = self._entries.get(key)
        if entry is None:
            self.metrics.record_miss()
            return None
        if self.is_stale(entry.timestamp):
            del self._entries[key]
            self.metrics.record_miss()
            return None
        entry.touch(self.clock())
        self.metrics.record_hit()
        return entry.data

    def set(self, key: str, data: T) -> None:
        now = self.clock()
        self._entries[key] = CacheEntry(data=data, timestamp=now, access_count=0, last_accessed=now)
        limit = self.max_size()
        if limit is not None and len(self._entries) > limit:
            self.prune()

    def prune(self) -> None:
        limit = self.max_size()
        if limit is None or len(self._entries) <= limit:
            return
        # sorted() is stable: equal last_accessed evicts the earlier insert first.
        by_recency = sorted(self._entries.items(), key=lambda kv: kv[1].last_accessed)
        for key, _ in by_recency[: len(by_recency) - max(0, limit)]:
            del self._entries[key]

    def clear(self) -> None:
        self._entries.clear()
