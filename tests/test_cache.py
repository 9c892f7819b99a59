"""Tests for the adaptive verdict cache: TTLs, status multipliers, capacity, cleanup."""

import asyncio

import pytest

from sourcewatch.cache import AdaptiveCache
from sourcewatch.config import CacheConfig
from sourcewatch.models import CheckTier, SourceStatus


class TestRoundTrip:
    def test_put_then_get_returns_identical_result(self, clock, make_result) -> None:
        cache = AdaptiveCache(CacheConfig(), clock=clock)
        result = make_result()
        cache.put("example", CheckTier.FUNCTIONAL, result)
        assert cache.get("example", CheckTier.FUNCTIONAL) is result

    def test_miss_for_other_tier(self, clock, make_result) -> None:
        cache = AdaptiveCache(CacheConfig(), clock=clock)
        cache.put("example", CheckTier.FUNCTIONAL, make_result())
        assert cache.get("example", CheckTier.BASIC) is None

    def test_keyword_is_part_of_the_key(self, clock, make_result) -> None:
        cache = AdaptiveCache(CacheConfig(), clock=clock)
        cache.put("example", CheckTier.CONTENT, make_result(tier=CheckTier.CONTENT), keyword="MIMK-186")
        assert cache.get("example", CheckTier.CONTENT, keyword="MIMK-186") is not None
        assert cache.get("example", CheckTier.CONTENT, keyword="ABP-123") is None
        assert cache.get("example", CheckTier.CONTENT) is None


class TestAdaptiveTTL:
    def test_available_uses_base_ttl(self, clock, make_result) -> None:
        cache = AdaptiveCache(CacheConfig(), clock=clock)
        ttl = cache.put("example", CheckTier.FUNCTIONAL, make_result())
        assert ttl == 600.0
        clock.advance(599)
        assert cache.get("example", CheckTier.FUNCTIONAL) is not None
        clock.advance(1)
        assert cache.get("example", CheckTier.FUNCTIONAL) is None

    @pytest.mark.parametrize(
        ("status", "tier", "expected"),
        [
            (SourceStatus.AVAILABLE, CheckTier.BASIC, 300.0),
            (SourceStatus.UNAVAILABLE, CheckTier.FUNCTIONAL, 300.0),
            (SourceStatus.TIMEOUT, CheckTier.CONTENT, 270.0),
            (SourceStatus.ERROR, CheckTier.DEEP, 360.0),
        ],
    )
    def test_status_multiplier(self, clock, status, tier, expected) -> None:
        cache = AdaptiveCache(CacheConfig(), clock=clock)
        assert cache.ttl_for(tier, status) == pytest.approx(expected)

    def test_unavailable_expires_sooner(self, clock, make_result) -> None:
        cache = AdaptiveCache(CacheConfig(), clock=clock)
        cache.put("up", CheckTier.FUNCTIONAL, make_result("up"))
        cache.put("down", CheckTier.FUNCTIONAL, make_result("down", status=SourceStatus.UNAVAILABLE))
        clock.advance(301)
        assert cache.get("down", CheckTier.FUNCTIONAL) is None
        assert cache.get("up", CheckTier.FUNCTIONAL) is not None

    def test_expired_read_counts_as_eviction(self, clock, make_result) -> None:
        cache = AdaptiveCache(CacheConfig(), clock=clock)
        cache.put("example", CheckTier.BASIC, make_result())
        clock.advance(1000)
        cache.get("example", CheckTier.BASIC)
        stats = cache.stats()
        assert stats["evictions"] == 1
        assert stats["size"] == 0


class TestCapacity:
    def test_oldest_inserted_is_evicted(self, clock, make_result) -> None:
        cache = AdaptiveCache(CacheConfig(max_entries=3), clock=clock)
        for sid in ("a", "b", "c", "d"):
            cache.put(sid, CheckTier.BASIC, make_result(sid))
        assert len(cache) == 3
        assert cache.get("a", CheckTier.BASIC) is None
        assert cache.get("d", CheckTier.BASIC) is not None

    def test_reads_do_not_refresh_position(self, clock, make_result) -> None:
        cache = AdaptiveCache(CacheConfig(max_entries=2), clock=clock)
        cache.put("a", CheckTier.BASIC, make_result("a"))
        cache.put("b", CheckTier.BASIC, make_result("b"))
        cache.get("a", CheckTier.BASIC)
        cache.put("c", CheckTier.BASIC, make_result("c"))
        assert cache.get("a", CheckTier.BASIC) is None
        assert cache.get("b", CheckTier.BASIC) is not None

    def test_reinsert_moves_to_newest(self, clock, make_result) -> None:
        cache = AdaptiveCache(CacheConfig(max_entries=2), clock=clock)
        cache.put("a", CheckTier.BASIC, make_result("a"))
        cache.put("b", CheckTier.BASIC, make_result("b"))
        cache.put("a", CheckTier.BASIC, make_result("a"))
        cache.put("c", CheckTier.BASIC, make_result("c"))
        assert cache.get("a", CheckTier.BASIC) is not None
        assert cache.get("b", CheckTier.BASIC) is None


class TestMaintenance:
    def test_cleanup_drops_entries_past_absolute_age(self, clock, make_result) -> None:
        cache = AdaptiveCache(CacheConfig(basic_ttl_seconds=200000.0), clock=clock)
        cache.put("old", CheckTier.BASIC, make_result("old"))
        clock.advance(86000)
        cache.put("new", CheckTier.BASIC, make_result("new"))
        clock.advance(401)
        assert cache.cleanup() == 1
        assert cache.get("old", CheckTier.BASIC) is None
        assert cache.get("new", CheckTier.BASIC) is not None

    def test_invalidate_and_clear(self, clock, make_result) -> None:
        cache = AdaptiveCache(CacheConfig(), clock=clock)
        cache.put("a", CheckTier.BASIC, make_result("a"))
        cache.put("a", CheckTier.FUNCTIONAL, make_result("a"))
        cache.put("b", CheckTier.BASIC, make_result("b"))
        assert cache.invalidate("a") == 2
        assert len(cache) == 1
        cache.clear()
        assert len(cache) == 0
        assert cache.stats()["hits"] == 0

    def test_hit_rate(self, clock, make_result) -> None:
        cache = AdaptiveCache(CacheConfig(), clock=clock)
        cache.put("a", CheckTier.BASIC, make_result("a"))
        cache.get("a", CheckTier.BASIC)
        cache.get("b", CheckTier.BASIC)
        stats = cache.stats()
        assert (stats["hits"], stats["misses"]) == (1, 1)
        assert stats["hit_rate"] == 0.5

    def test_snapshot_restore(self, clock, make_result) -> None:
        cache = AdaptiveCache(CacheConfig(), clock=clock)
        cache.put("a", CheckTier.CONTENT, make_result("a", tier=CheckTier.CONTENT), keyword="ABP-123")
        cache.put("b", CheckTier.BASIC, make_result("b", status=SourceStatus.ERROR))
        clock.advance(61)  # "b" (basic, error) expired after 60s
        snapshot = cache.snapshot()
        assert [e["source_id"] for e in snapshot] == ["a"]

        other = AdaptiveCache(CacheConfig(), clock=clock)
        assert other.restore(snapshot) == 1
        restored = other.get("a", CheckTier.CONTENT, keyword="ABP-123")
        assert restored is not None
        assert restored.source_id == "a"

    @pytest.mark.asyncio
    async def test_periodic_cleanup_task(self, clock, make_result) -> None:
        cache = AdaptiveCache(CacheConfig(), clock=clock)
        cache.put("a", CheckTier.BASIC, make_result("a"))
        clock.advance(90000)
        task = cache.start_periodic_cleanup(interval_seconds=0.01)
        assert cache.start_periodic_cleanup() is task
        await asyncio.sleep(0.05)
        assert len(cache) == 0
        await cache.stop_periodic_cleanup()
        assert task.done()
