"""
Result cache for the query executor.

Keys are fingerprints of what a sub-query means (tenant, model, operation,
domain or filter text, date range, grouping, limit, projection, order), so
two tool calls asking the same thing share one remote round-trip.  The
caller-assigned id and the internal retry flag do not take part.

One ``ResultCache`` is built by the caller and injected into the executor;
entries expire after a fixed TTL and, when the cache is full, the entry
inserted first is dropped.
"""
from __future__ import annotations

import hashlib
import json
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable

from erpcopilot.copilot.spec import QueryResult, SubQuery
from erpcopilot.core.config import get_settings
from erpcopilot.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class CacheEntry:
    result: QueryResult
    expires_at: float
    hits: int = 0


def fingerprint(tenant_id: str, query: SubQuery) -> str:
    """Deterministic cache key for *query* under *tenant_id*."""
    rng = query.date_range
    payload = {
        "tenant": tenant_id,
        "model": query.model,
        "op": query.operation,
        "where": query.domain or " ".join(query.filters.lower().split()),
        "range": [rng.start.isoformat(), rng.end.isoformat()] if rng else None,
        "group_by": query.group_by,
        "limit": query.limit,
        "fields": query.fields,
        "order": query.order_by or "",
    }
    raw = json.dumps(payload, sort_keys=True, default=str, ensure_ascii=False)
    return hashlib.sha256(raw.encode()).hexdigest()


class ResultCache:
    """Thread-safe TTL cache of ``QueryResult`` objects.

    Parameters
    ----------
    ttl : float | None
        Seconds an entry stays valid; defaults to ``Settings.cache_ttl_seconds``.
    max_size : int | None
        Entry cap; defaults to ``Settings.cache_max_size``.
    clock : callable
        Monotonic seconds, injectable for tests.
    """

    def __init__(
        self,
        ttl: float | None = None,
        max_size: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings()
        self._ttl = float(settings.cache_ttl_seconds if ttl is None else ttl)
        self._max_size = max(1, settings.cache_max_size if max_size is None else max_size)
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._hits = self._misses = self._evictions = 0

    def get(self, key: str) -> QueryResult | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at <= self._clock():
                del self._entries[key]
                entry = None
            if entry is None:
                self._misses += 1
                return None
            entry.hits += 1
            self._hits += 1
        logger.debug("Cache hit %s (x%d)", key[:12], entry.hits)
        return entry.result

    def put(self, key: str, result: QueryResult) -> None:
        """Insert or replace *key*; a new key on a full cache drops the oldest one."""
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            elif len(self._entries) >= self._max_size:
                dropped, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug("Cache evicted %s", dropped[:12])
            self._entries[key] = CacheEntry(result=result, expires_at=self._clock() + self._ttl)

    def purge_expired(self) -> int:
        """Drop every expired entry and return how many went."""
        with self._lock:
            now = self._clock()
            stale = [k for k, e in self._entries.items() if e.expires_at <= now]
            for k in stale:
                del self._entries[k]
        return len(stale)

    def clear(self) -> int:
        with self._lock:
            n = len(self._entries)
            self._entries.clear()
            self._hits = self._misses = self._evictions = 0
        return n

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "size": len(self._entries),
                "max_size": self._max_size,
                "ttl_seconds": self._ttl,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_rate": round(self._hits / lookups, 3) if lookups else 0.0,
            }
