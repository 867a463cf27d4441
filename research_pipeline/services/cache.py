"""
In-process result cache with TTL expiry and FIFO eviction.

Shared by retrieval (search results, fetched pages) and credibility
validation. Capacity overflow evicts the oldest *inserted* entry regardless
of how recently it was read; entries older than ``ttl`` read as misses.
"""

from __future__ import annotations

import hashlib
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional

import structlog
from cachetools import FIFOCache

logger = structlog.get_logger(__name__)

_MAX_PLAIN_KEY = 200


@dataclass(frozen=True)
class CacheEntry:
    key: str
    payload: Any
    inserted_at: float


class ResultCache:
    """Bounded TTL cache keyed by query + evidence set."""

    def __init__(
        self,
        maxsize: int = 1000,
        ttl: float = 3600.0,
        *,
        name: str = "results",
        timer: Callable[[], float] = time.monotonic,
    ):
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self.name = name
        self.ttl = float(ttl)
        self._timer = timer
        self._data: FIFOCache = FIFOCache(maxsize=maxsize)
        self._lock = threading.RLock()
        self.hit_count = 0
        self.miss_count = 0

    @staticmethod
    def make_key(query: str, urls: Iterable[str] = ()) -> str:
        """Deterministic key: the query plus the sorted candidate URLs.

        Changing either the query or the evidence set yields a different key.
        """
        key_string = "|".join([(query or "").strip(), *sorted(set(u for u in urls if u))])
        if len(key_string) > _MAX_PLAIN_KEY:
            return "hash:" + hashlib.md5(key_string.encode("utf-8")).hexdigest()
        return key_string

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.inserted_at > self.ttl

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry: Optional[CacheEntry] = self._data.get(key)
            if entry is None:
                self.miss_count += 1
                return None
            if self._expired(entry, self._timer()):
                del self._data[key]
                self.miss_count += 1
                return None
            self.hit_count += 1
            return entry.payload

    def set(self, key: str, payload: Any) -> None:
        with self._lock:
            # Re-inserting moves the key to the back of the eviction order
            if key in self._data:
                del self._data[key]
            self._data[key] = CacheEntry(key=key, payload=payload, inserted_at=self._timer())

    def get_for(self, query: str, urls: Iterable[str] = ()) -> Optional[Any]:
        return self.get(self.make_key(query, urls))

    def set_for(self, query: str, urls: Iterable[str], payload: Any) -> None:
        self.set(self.make_key(query, urls), payload)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._data.get(key)
            return entry is not None and not self._expired(entry, self._timer())

    def __len__(self) -> int:
        return len(self._data)

    def cleanup(self) -> int:
        """Purge every expired entry; returns how many were removed."""
        with self._lock:
            now = self._timer()
            stale = [k for k, entry in self._data.items() if self._expired(entry, now)]
            for k in stale:
                del self._data[k]
        if stale:
            logger.debug("Cache cleanup", cache=self.name, purged=len(stale))
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
            self.hit_count = 0
            self.miss_count = 0

    def stats(self) -> Dict[str, Any]:
        total = self.hit_count + self.miss_count
        return {
            "name": self.name,
            "size": len(self._data),
            "maxsize": self._data.maxsize,
            "ttl": self.ttl,
            "hits": self.hit_count,
            "misses": self.miss_count,
            "hit_rate": round(self.hit_count / total, 3) if total else 0.0,
        }
