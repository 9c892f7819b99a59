"""
Adaptive verdict cache.

Entries are keyed by (source_id, tier, keyword). Each entry's lifetime is the tier's
base TTL scaled by the verdict's status, so bad verdicts are revalidated sooner than
good ones. Expiry is lazy (checked on read); capacity overflow evicts in insertion
order, oldest first. An optional periodic pass drops entries past an absolute age.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from sourcewatch.config import CacheConfig
from sourcewatch.models import AssessmentResult, CheckTier, SourceStatus
from sourcewatch.observability import metrics as obs_metrics

logger = structlog.get_logger()

CacheKey = tuple[str, str, str]


@dataclass
class CacheEntry:
    result: AssessmentResult
    stored_at: float
    expires_at: float


def _key(source_id: str, tier: CheckTier, keyword: Optional[str]) -> CacheKey:
    return (source_id, CheckTier(tier).value, keyword or "")


class AdaptiveCache:
    """
    Thread-safe TTL cache for assessment verdicts.

    ``clock`` returns seconds as a float (``time.time`` by default); tests inject a
    fake clock to step through expiry.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or CacheConfig()
        self._clock = clock
        self._entries: OrderedDict[CacheKey, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._cleanup_task: Optional[asyncio.Task[None]] = None

    # ─── TTL policy ─────────────────────────────────────────────

    def base_ttl(self, tier: CheckTier) -> float:
        return {
            CheckTier.BASIC: self._config.basic_ttl_seconds,
            CheckTier.FUNCTIONAL: self._config.functional_ttl_seconds,
            CheckTier.CONTENT: self._config.content_ttl_seconds,
            CheckTier.DEEP: self._config.deep_ttl_seconds,
        }[CheckTier(tier)]

    def ttl_for(self, tier: CheckTier, status: SourceStatus) -> float:
        """Base TTL for ``tier`` multiplied by the factor for ``status``."""
        multiplier = self._config.status_multipliers.get(SourceStatus(status).value, 1.0)
        return self.base_ttl(tier) * multiplier

    # ─── Get / put ──────────────────────────────────────────────

    def get(
        self,
        source_id: str,
        tier: CheckTier,
        keyword: Optional[str] = None,
    ) -> Optional[AssessmentResult]:
        key = _key(source_id, tier, keyword)
        now = self._clock()
        expired = False
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and now >= entry.expires_at:
                del self._entries[key]
                self._evictions += 1
                entry = None
                expired = True
            if entry is None:
                self._misses += 1
            else:
                self._hits += 1
        obs_metrics.record_cache_lookup(hit=entry is not None)
        if expired:
            obs_metrics.record_cache_eviction("ttl")
        return entry.result if entry is not None else None

    def put(
        self,
        source_id: str,
        tier: CheckTier,
        result: AssessmentResult,
        keyword: Optional[str] = None,
    ) -> float:
        """Store ``result``; returns the TTL applied, in seconds."""
        key = _key(source_id, tier, keyword)
        ttl = self.ttl_for(tier, result.status)
        now = self._clock()
        evicted = 0
        with self._lock:
            # Re-inserting moves the key to the newest position
            self._entries.pop(key, None)
            self._entries[key] = CacheEntry(result=result, stored_at=now, expires_at=now + ttl)
            while len(self._entries) > self._config.max_entries:
                self._entries.popitem(last=False)
                evicted += 1
            self._evictions += evicted
        if evicted:
            obs_metrics.record_cache_eviction("capacity", evicted)
            logger.debug("cache_evicted", reason="capacity", count=evicted)
        return ttl

    def invalidate(self, source_id: str) -> int:
        """Drop every entry for ``source_id``; returns how many were removed."""
        with self._lock:
            keys = [k for k in self._entries if k[0] == source_id]
            for k in keys:
                del self._entries[k]
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0

    def cleanup(self, max_age_seconds: Optional[float] = None) -> int:
        """Drop entries older than ``max_age_seconds`` (default from config) or already expired."""
        max_age = self._config.max_age_seconds if max_age_seconds is None else max_age_seconds
        now = self._clock()
        with self._lock:
            stale = [
                k
                for k, e in self._entries.items()
                if now - e.stored_at >= max_age or now >= e.expires_at
            ]
            for k in stale:
                del self._entries[k]
            self._evictions += len(stale)
        if stale:
            obs_metrics.record_cache_eviction("age", len(stale))
            logger.info("cache_evicted", reason="age", count=len(stale))
        return len(stale)

    # ─── Periodic cleanup ───────────────────────────────────────

    def start_periodic_cleanup(self, interval_seconds: Optional[float] = None) -> asyncio.Task[None]:
        """Start the background cleanup loop on the running event loop (idempotent)."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return self._cleanup_task
        interval = interval_seconds or self._config.cleanup_interval_seconds
        self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop(interval))
        return self._cleanup_task

    async def stop_periodic_cleanup(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _cleanup_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.cleanup()

    # ─── Introspection / persistence ────────────────────────────

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "size": len(self._entries),
                "max_entries": self._config.max_entries,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
            }

    def snapshot(self) -> list[dict[str, Any]]:
        """Live entries as JSON-compatible dicts, oldest first."""
        now = self._clock()
        with self._lock:
            return [
                {
                    "source_id": k[0],
                    "tier": k[1],
                    "keyword": k[2] or None,
                    "stored_at": e.stored_at,
                    "expires_at": e.expires_at,
                    "result": e.result.model_dump(mode="json"),
                }
                for k, e in self._entries.items()
                if now < e.expires_at
            ]

    def restore(self, entries: list[dict[str, Any]]) -> int:
        """Load entries produced by ``snapshot``; already-expired ones are skipped."""
        now = self._clock()
        loaded = 0
        with self._lock:
            for item in entries:
                expires_at = float(item["expires_at"])
                if now >= expires_at:
                    continue
                key = _key(item["source_id"], CheckTier(item["tier"]), item.get("keyword"))
                self._entries.pop(key, None)
                self._entries[key] = CacheEntry(
                    result=AssessmentResult.model_validate(item["result"]),
                    stored_at=float(item.get("stored_at", now)),
                    expires_at=expires_at,
                )
                loaded += 1
            while len(self._entries) > self._config.max_entries:
                self._entries.popitem(last=False)
        return loaded
