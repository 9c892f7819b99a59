"""
AvailabilityEngine: the public entry point.

An engine owns its cache, reliability tracker and probe executor; nothing is a
module-level singleton, so separate engines (one per test, say) never share state.

    engine = AvailabilityEngine()
    result = await engine.assess(source, CheckTier.CONTENT, keyword="MIMK-186")
    results = await engine.assess_batch(sources, BatchOptions(tier=CheckTier.BASIC))

``assess`` and ``assess_batch`` always return a verdict per source. Network and parse
failures become Failing verdicts with diagnostics; only ``InternalError`` escapes
``assess``, and ``assess_batch`` converts even that into a Failing verdict.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any, Optional

import httpx
import structlog

from sourcewatch.analysis.relevance import ContentAnalyzer
from sourcewatch.cache import AdaptiveCache
from sourcewatch.checks.tiered import TierRun, TieredChecker
from sourcewatch.config import Settings, get_settings
from sourcewatch.models import (
    UTC,
    AssessmentResult,
    AssessOptions,
    AvailabilityTier,
    BatchOptions,
    CheckTier,
    DomainHealth,
    InternalError,
    ReliabilityRecord,
    SourceDescriptor,
    SourceStatus,
)
from sourcewatch.observability import metrics as obs_metrics
from sourcewatch.reliability import DomainHealthTracker, ReliabilityTracker
from sourcewatch.scheduler import BatchScheduler
from sourcewatch.scoring import classify, composite_score, derive_status, is_available, summarize
from sourcewatch.tools.probe import ProbeExecutor
from sourcewatch.tools.rate_limiter import DomainRateLimiter

logger = structlog.get_logger()

STATS_FORMAT_VERSION = 1

# Tiers whose verdict depends on the target keyword
_KEYWORD_TIERS = (CheckTier.CONTENT, CheckTier.DEEP)


class AvailabilityEngine:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        probe: Optional[ProbeExecutor] = None,
        analyzer: Optional[ContentAnalyzer] = None,
        cache: Optional[AdaptiveCache] = None,
        tracker: Optional[ReliabilityTracker] = None,
        domains: Optional[DomainHealthTracker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        obs_metrics.configure(self.settings.observability.metrics_enabled)
        probe_cfg = self.settings.probe
        if probe is None:
            limiter = DomainRateLimiter(
                self.settings.domain_policies,
                default_concurrent_limit=probe_cfg.default_concurrent_limit,
                default_requests_per_second=probe_cfg.default_requests_per_second,
            )
            probe = ProbeExecutor(probe_cfg, transport=transport, rate_limiter=limiter)
        self.probe = probe
        self.analyzer = analyzer or ContentAnalyzer()
        self.cache = cache or AdaptiveCache(self.settings.cache, clock=clock or time.time)
        self.tracker = tracker or ReliabilityTracker(self.settings.scheduler.reliability_window)
        self.domains = domains or DomainHealthTracker()
        self._checker = TieredChecker(self.probe, self.analyzer, self.settings.checks, probe_cfg)
        self._inflight: dict[tuple[str, str, str], asyncio.Task[AssessmentResult]] = {}

    async def __aenter__(self) -> AvailabilityEngine:
        self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    # ─── Single source ──────────────────────────────────────────

    async def assess(
        self,
        source: SourceDescriptor,
        tier: CheckTier = CheckTier.FUNCTIONAL,
        keyword: Optional[str] = None,
        options: Optional[AssessOptions] = None,
    ) -> AssessmentResult:
        """
        Assess one source up to ``tier``.

        Served from cache when a live verdict exists and ``options.use_cache`` is set.
        Concurrent calls for the same source, tier and keyword share one check.
        """
        options = options or AssessOptions()
        tier = CheckTier(tier)
        keyword = keyword.strip() if keyword and keyword.strip() else None
        cache_keyword = keyword if tier in _KEYWORD_TIERS else None

        if options.use_cache:
            cached = self.cache.get(source.id, tier, cache_keyword)
            if cached is not None:
                logger.debug("assessment_cache_hit", source_id=source.id, tier=tier.value)
                return cached.model_copy(update={"from_cache": True}, deep=True)

        key = (source.id, tier.value, cache_keyword or "")
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(
                self._assess_uncached(source, tier, keyword, cache_keyword, options.timeout_ms)
            )
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget_inflight(k, t))
        result = await asyncio.shield(task)
        # Callers get their own copy; the cached verdict stays untouched
        return result.model_copy(deep=True)

    def _forget_inflight(self, key: tuple[str, str, str], task: asyncio.Task[AssessmentResult]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _assess_uncached(
        self,
        source: SourceDescriptor,
        tier: CheckTier,
        keyword: Optional[str],
        cache_keyword: Optional[str],
        timeout_ms: int,
    ) -> AssessmentResult:
        start = time.perf_counter()
        with obs_metrics.track_assessment(tier.value) as tracked:
            try:
                run = await asyncio.wait_for(
                    self._checker.run(source, tier, keyword, timeout_ms),
                    timeout=timeout_ms / 1000.0,
                )
                result = self._build_result(source, tier, keyword, run, _elapsed_ms(start))
            except asyncio.TimeoutError:
                result = self._deadline_result(source, tier, keyword, timeout_ms, _elapsed_ms(start))
            except InternalError:
                raise
            except Exception as e:
                raise InternalError(f"check for {source.id!r} failed: {type(e).__name__}: {e}") from e
            tracked.set_verdict(result.availability_tier.value)

        self._store(source, tier, cache_keyword, result)
        log = logger.warning if result.availability_tier == AvailabilityTier.FAILING else logger.info
        log(
            "assessment_complete",
            source_id=source.id,
            tier=tier.value,
            score=result.composite_score,
            availability_tier=result.availability_tier.value,
            status=result.status.value,
            time_ms=result.response_time_ms,
        )
        return result

    def _build_result(
        self,
        source: SourceDescriptor,
        tier: CheckTier,
        keyword: Optional[str],
        run: TierRun,
        elapsed_ms: int,
    ) -> AssessmentResult:
        sub_scores = run.sub_scores
        score = composite_score(sub_scores)
        available = is_available(score)
        return AssessmentResult(
            source_id=source.id,
            source_name=source.display_name,
            tier=tier,
            keyword=keyword,
            sub_scores=sub_scores,
            composite_score=score,
            availability_tier=classify(score),
            available=available,
            status=derive_status(available, run.error_kinds),
            response_time_ms=elapsed_ms,
            diagnostics={"requested_tier": tier.value, **run.diagnostics},
        )

    @staticmethod
    def _deadline_result(
        source: SourceDescriptor,
        tier: CheckTier,
        keyword: Optional[str],
        timeout_ms: int,
        elapsed_ms: int,
    ) -> AssessmentResult:
        return AssessmentResult(
            source_id=source.id,
            source_name=source.display_name,
            tier=tier,
            keyword=keyword,
            status=SourceStatus.TIMEOUT,
            response_time_ms=elapsed_ms,
            diagnostics={
                "requested_tier": tier.value,
                "error": "timeout",
                "error_message": f"assessment exceeded {timeout_ms}ms",
            },
        )

    def _store(
        self,
        source: SourceDescriptor,
        tier: CheckTier,
        cache_keyword: Optional[str],
        result: AssessmentResult,
    ) -> None:
        # Fresh verdicts are stored even when the caller bypassed the cache read
        self.cache.put(source.id, tier, result, cache_keyword)
        self.tracker.record(source.id, result.available, result.response_time_ms)
        self.domains.record(source.hostname, result.available)

    # ─── Batch ──────────────────────────────────────────────────

    async def assess_batch(
        self,
        sources: Iterable[SourceDescriptor],
        options: Optional[BatchOptions] = None,
    ) -> list[AssessmentResult]:
        """Assess many sources with bounded concurrency; output order matches input."""
        if options is None:
            options = BatchOptions(
                concurrency=self.settings.scheduler.concurrency,
                pacing_ms=self.settings.scheduler.pacing_ms,
            )
        items = list(sources)
        single = AssessOptions(timeout_ms=options.timeout_ms, use_cache=options.use_cache)
        scheduler: BatchScheduler[SourceDescriptor, AssessmentResult] = BatchScheduler(
            concurrency=options.concurrency, pacing_ms=options.pacing_ms
        )

        async def check(source: SourceDescriptor) -> AssessmentResult:
            return await self.assess(source, options.tier, options.keyword, single)

        def on_error(source: SourceDescriptor, exc: Exception) -> AssessmentResult:
            return self._error_result(source, options.tier, options.keyword, exc)

        results = await scheduler.run(items, check, on_error)
        obs_metrics.record_batch(len(results))
        summary = summarize(results)
        logger.info(
            "batch_complete",
            total=summary["total"],
            available=summary["available"],
            failing=summary["failing"],
            tier=options.tier.value,
        )
        return results

    def _error_result(
        self,
        source: SourceDescriptor,
        tier: CheckTier,
        keyword: Optional[str],
        exc: Exception,
    ) -> AssessmentResult:
        logger.error(
            "source_check_failed",
            source_id=source.id,
            tier=tier.value,
            error=f"{type(exc).__name__}: {exc}"[:300],
        )
        result = AssessmentResult(
            source_id=source.id,
            source_name=source.display_name,
            tier=tier,
            keyword=keyword,
            status=SourceStatus.ERROR,
            diagnostics={
                "requested_tier": tier.value,
                "error": "internal_error" if isinstance(exc, InternalError) else "check_failed",
                "error_message": f"{type(exc).__name__}: {exc}"[:300],
            },
        )
        self._store(source, tier, keyword if tier in _KEYWORD_TIERS else None, result)
        return result.model_copy(deep=True)

    # ─── History / maintenance ──────────────────────────────────

    def reliability(self, source_id: str) -> Optional[ReliabilityRecord]:
        return self.tracker.get(source_id)

    def domain_health(self, hostname: str) -> Optional[DomainHealth]:
        """Outcomes aggregated over every source served from ``hostname``."""
        return self.domains.get(hostname)

    def statistics(self) -> dict[str, Any]:
        """Cache and reliability overview across every source this engine has checked."""
        records = [r for sid in self.tracker.source_ids() if (r := self.tracker.get(sid)) is not None]
        total = sum(r.total_checks for r in records)
        successful = sum(r.successful_checks for r in records)
        times = [r.average_response_time_ms for r in records if r.average_response_time_ms > 0]
        return {
            "cache": self.cache.stats(),
            "sources_tracked": len(records),
            "total_checks": total,
            "successful_checks": successful,
            "failed_checks": total - successful,
            "success_rate": round(successful / total, 4) if total else 0.0,
            "average_response_time_ms": round(sum(times) / len(times), 1) if times else 0.0,
            "average_reliability": (
                round(sum(r.reliability_score for r in records) / len(records), 2) if records else 0.0
            ),
            "domains": {
                host: record.summary()
                for host in self.domains.hostnames()
                if (record := self.domains.get(host)) is not None
            },
        }

    def export_stats(self) -> dict[str, Any]:
        """JSON-compatible snapshot of live cache entries and reliability history."""
        return {
            "version": STATS_FORMAT_VERSION,
            "exported_at": datetime.now(UTC).isoformat(),
            "cache": self.cache.snapshot(),
            "reliability": self.tracker.export(),
            "domains": self.domains.export(),
        }

    def import_stats(self, data: dict[str, Any]) -> dict[str, int]:
        """Load a snapshot from ``export_stats``; returns counts of what was restored."""
        version = data.get("version", STATS_FORMAT_VERSION)
        if version != STATS_FORMAT_VERSION:
            logger.warning("stats_version_mismatch", version=version, expected=STATS_FORMAT_VERSION)
        restored = {
            "cache_entries": self.cache.restore(data.get("cache") or []),
            "reliability_records": self.tracker.load(data.get("reliability") or {}),
            "domain_records": self.domains.load(data.get("domains") or {}),
        }
        logger.info("stats_imported", **restored)
        return restored

    def invalidate(self, source_id: str) -> int:
        return self.cache.invalidate(source_id)

    def cleanup(self) -> int:
        return self.cache.cleanup()

    def clear(self) -> None:
        """Forget every cached verdict, all reliability history and domain health."""
        self.cache.clear()
        self.tracker.clear()
        self.domains.clear()

    def start(self) -> None:
        """Start periodic cache cleanup on the running loop."""
        self.cache.start_periodic_cleanup()

    async def stop(self) -> None:
        await self.cache.stop_periodic_cleanup()


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)
