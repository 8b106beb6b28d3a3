"""Short-lived in-memory store of recent search results for follow-up refinement."""

from __future__ import annotations

from dataclasses import dataclass, field
import threading
import time
from typing import Callable
import uuid

from personal_shopper.catalog import Product


@dataclass
class CachedSearch:
    key: str
    query: str
    products: list[Product]
    categories: list[str] = field(default_factory=list)
    created_at: float = 0.0


class ResultCache:
    def __init__(self, ttl_seconds: float = 300.0, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._entries: dict[str, CachedSearch] = {}
        self._lock = threading.Lock()

    def _expired(self, entry: CachedSearch, now: float) -> bool:
        return now - entry.created_at > self.ttl_seconds

    def put(self, query: str, products: list[Product], categories: list[str] | None = None) -> str:
        key = uuid.uuid4().hex
        entry = CachedSearch(
            key=key,
            query=query,
            products=list(products),
            categories=list(categories or []),
            created_at=self._clock(),
        )
        with self._lock:
            self._entries[key] = entry
        return key

    def get(self, key: str) -> CachedSearch | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._expired(entry, self._clock()):
                return None
            return entry

    def latest(self) -> CachedSearch | None:
        now = self._clock()
        with self._lock:
            live = [entry for entry in self._entries.values() if not self._expired(entry, now)]
        newest: CachedSearch | None = None
        for entry in live:
            if newest is None or entry.created_at >= newest.created_at:
                newest = entry
        return newest

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [key for key, entry in self._entries.items() if self._expired(entry, now)]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
