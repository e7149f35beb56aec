"""
utils/cache.py — Keyed table cache with an injected expiry policy.

The ingestion core itself holds no state across calls. Anything that wants
to reuse a fetched table between calls (the query service, a chat session)
passes a TableCache in explicitly.

Usage:
    cache = InMemoryTableCache(ttl_s=600)
    cache.set(resource.cache_key, table)
    table = cache.get(resource.cache_key)   # None once older than ttl_s
    cache.evict_expired()                   # also runs on every set()

    # Deterministic expiry in tests:
    clock = FakeClock()
    cache = InMemoryTableCache(ttl_s=10, clock=clock)
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import structlog

from opendata_shared.config import settings
from opendata_shared.models import MaterializedTable

log = structlog.get_logger(__name__)


class TableCache(Protocol):
    def get(self, key: str) -> MaterializedTable | None: ...

    def set(self, key: str, table: MaterializedTable) -> None: ...

    def invalidate(self, key: str) -> None: ...


@dataclass
class _Entry:
    table: MaterializedTable
    stored_at: float


class InMemoryTableCache:
    """Dict-backed TableCache; expired entries go on read and on every set()."""

    def __init__(
        self,
        ttl_s: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_s = ttl_s if ttl_s is not None else settings.cache_ttl_s
        self._clock = clock
        self._entries: dict[str, _Entry] = {}

    def get(self, key: str) -> MaterializedTable | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        age = self._clock() - entry.stored_at
        if age >= self._ttl_s:
            del self._entries[key]
            log.debug("cache_expired", key=key, age_s=round(age, 1))
            return None
        return entry.table

    def set(self, key: str, table: MaterializedTable) -> None:
        self.evict_expired()
        self._entries[key] = _Entry(table=table, stored_at=self._clock())
        log.debug("cache_stored", key=key, rows=len(table.rows))

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def evict_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now - e.stored_at >= self._ttl_s]
        for key in expired:
            del self._entries[key]
        if expired:
            log.debug("cache_evicted", count=len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None
