"""
Tiered availability checks: Basic → Functional → Content → Deep.

Tiers run strictly in order and stop once the requested tier's sub-score exists.
A fully dead Basic tier short-circuits: the remaining requested tiers are recorded
as 0.0 without touching the network. Every sub-check is guarded, so one keyword's
failure never aborts its siblings in the same tier.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from sourcewatch.analysis.relevance import ContentAnalyzer
from sourcewatch.config import CheckConfig, ProbeConfig
from sourcewatch.models import (
    CheckTier,
    ErrorKind,
    ProbeOutcome,
    RelevanceResult,
    SourceDescriptor,
    SubScores,
)
from sourcewatch.tools.probe import ProbeExecutor

logger = structlog.get_logger()

CONNECTIVITY_THRESHOLD = 0.3
BASIC_STATIC_PATHS = ("/favicon.ico", "/", "/robots.txt")


@dataclass
class TierRun:
    """Raw output of one tiered check, before scoring."""

    scores: dict[CheckTier, float] = field(default_factory=dict)
    diagnostics: dict[str, Any] = field(default_factory=dict)
    error_kinds: list[ErrorKind] = field(default_factory=list)
    short_circuited: bool = False

    @property
    def sub_scores(self) -> SubScores:
        return SubScores(**{tier.value: score for tier, score in self.scores.items()})


@dataclass
class _ContentCheck:
    keyword: str
    outcome: ProbeOutcome
    relevance: RelevanceResult

    def summary(self) -> dict[str, Any]:
        return {
            "keyword": self.keyword,
            "probe": self.outcome.summary(),
            "match_score": self.relevance.match_score,
            "has_target_content": self.relevance.has_target_content,
            "quality": self.relevance.quality.value,
            "estimated_result_count": self.relevance.estimated_result_count,
            "parse_failed": self.relevance.parse_failed,
        }


class TieredChecker:
    """Composes the probe executor and content analyzer into the four check tiers."""

    def __init__(
        self,
        probe: ProbeExecutor,
        analyzer: ContentAnalyzer,
        checks: Optional[CheckConfig] = None,
        probe_config: Optional[ProbeConfig] = None,
    ) -> None:
        self._probe = probe
        self._analyzer = analyzer
        self._checks = checks or CheckConfig()
        self._probe_config = probe_config or ProbeConfig()

    async def run(
        self,
        source: SourceDescriptor,
        tier: CheckTier,
        keyword: Optional[str],
        timeout_ms: int,
    ) -> TierRun:
        tiers = CheckTier.up_to(tier)
        # Parent deadline split evenly across the tiers that will run
        budget_ms = max(1, timeout_ms // len(tiers))
        run = TierRun()
        content: Optional[_ContentCheck] = None

        for current in tiers:
            if run.short_circuited:
                run.scores[current] = 0.0
                continue

            if current == CheckTier.BASIC:
                run.scores[current] = await self._basic(source, budget_ms, run)
                if run.scores[current] == 0.0 and tier != CheckTier.BASIC:
                    run.short_circuited = True
                    run.diagnostics["short_circuited"] = True
                    logger.info(
                        "tier_short_circuit",
                        source_id=source.id,
                        requested_tier=tier.value,
                    )
            elif current == CheckTier.FUNCTIONAL:
                run.scores[current] = await self._functional(source, budget_ms, run)
            elif current == CheckTier.CONTENT:
                content = await self._content(source, keyword, budget_ms, run)
                run.scores[current] = content.relevance.match_score
            elif current == CheckTier.DEEP:
                run.scores[current] = await self._deep(source, keyword, content, budget_ms, run)

        return run

    # ─── Guarded probe ──────────────────────────────────────────

    async def _guarded_probe(
        self,
        url: str,
        method: str,
        timeout_ms: int,
        max_bytes: Optional[int] = None,
    ) -> ProbeOutcome:
        """Probe that never raises; an unexpected exception becomes an internal_error outcome."""
        try:
            return await self._probe.probe(url, method=method, timeout_ms=timeout_ms, max_bytes=max_bytes)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("probe_crashed", url=url, method=method, error=str(e)[:200])
            return ProbeOutcome(
                url=url,
                method=method,
                success=False,
                error=ErrorKind.INTERNAL,
                error_message=f"{type(e).__name__}: {e}"[:200],
            )

    @staticmethod
    def _note_errors(run: TierRun, outcomes: list[ProbeOutcome]) -> None:
        run.error_kinds.extend(o.error for o in outcomes if o.error is not None)

    # ─── Tiers ──────────────────────────────────────────────────

    async def _basic(self, source: SourceDescriptor, budget_ms: int, run: TierRun) -> float:
        base = source.base_url
        if not base:
            run.error_kinds.append(ErrorKind.TRANSPORT)
            run.diagnostics["basic"] = {
                "score": 0.0,
                "connectivity": False,
                "error": "url template has no scheme or host",
            }
            return 0.0

        urls = [base + path for path in BASIC_STATIC_PATHS]
        outcomes = list(
            await asyncio.gather(*(self._guarded_probe(u, "HEAD", budget_ms) for u in urls))
        )
        self._note_errors(run, outcomes)
        score = sum(1 for o in outcomes if o.success) / len(outcomes)
        run.diagnostics["basic"] = {
            "score": score,
            "connectivity": score > CONNECTIVITY_THRESHOLD,
            "probes": [o.summary() for o in outcomes],
        }
        return score

    async def _functional(self, source: SourceDescriptor, budget_ms: int, run: TierRun) -> float:
        keywords = self._checks.fallback_keywords[: max(1, self._checks.max_fallback_keywords)]
        per_probe_ms = max(1, budget_ms // len(keywords))
        outcomes: list[ProbeOutcome] = []
        working: Optional[str] = None

        for kw in keywords:
            outcome = await self._guarded_probe(
                source.build_url(kw),
                "GET",
                per_probe_ms,
                max_bytes=self._probe_config.functional_sample_bytes,
            )
            outcomes.append(outcome)
            if outcome.success:
                working = kw
                break

        self._note_errors(run, outcomes)
        score = sum(1 for o in outcomes if o.success) / len(outcomes)
        run.diagnostics["functional"] = {
            "score": score,
            "search_functional": working is not None,
            "working_keyword": working,
            "keywords_attempted": keywords[: len(outcomes)],
            "probes": [o.summary() for o in outcomes],
        }
        return score

    async def _content_check(self, source: SourceDescriptor, keyword: str, budget_ms: int) -> _ContentCheck:
        outcome = await self._guarded_probe(
            source.build_url(keyword),
            "GET",
            budget_ms,
            max_bytes=self._probe_config.content_sample_bytes,
        )
        if not outcome.success:
            return _ContentCheck(keyword, outcome, RelevanceResult())
        try:
            relevance = self._analyzer.analyze(outcome.text, keyword, outcome.content_type)
        except Exception as e:
            logger.error("content_analysis_crashed", url=outcome.url, error=str(e)[:200])
            relevance = RelevanceResult.failed()
        return _ContentCheck(keyword, outcome, relevance)

    async def _content(
        self,
        source: SourceDescriptor,
        keyword: Optional[str],
        budget_ms: int,
        run: TierRun,
    ) -> _ContentCheck:
        target = (keyword or "").strip() or self._checks.default_keyword
        check = await self._content_check(source, target, budget_ms)
        self._note_errors(run, [check.outcome])
        if check.relevance.parse_failed:
            run.error_kinds.append(ErrorKind.PARSE)
        run.diagnostics["content"] = {
            "score": check.relevance.match_score,
            **check.summary(),
            "relevance": check.relevance.model_dump(mode="json"),
        }
        return check

    def _deep_keywords(self, target: str) -> list[str]:
        """Target keyword plus the first new keyword from each pool (at most two extra)."""
        chosen = [target]
        seen = {target.lower()}
        for pool in self._checks.deep_keyword_pools:
            for kw in pool:
                if kw.lower() not in seen:
                    chosen.append(kw)
                    seen.add(kw.lower())
                    break
            if len(chosen) >= 3:
                break
        return chosen

    async def _deep(
        self,
        source: SourceDescriptor,
        keyword: Optional[str],
        content: Optional[_ContentCheck],
        budget_ms: int,
        run: TierRun,
    ) -> float:
        target = (keyword or "").strip() or self._checks.default_keyword
        if content is None:
            content = await self._content_check(source, target, budget_ms)
            self._note_errors(run, [content.outcome])
        extra = list(
            await asyncio.gather(
                *(self._content_check(source, kw, budget_ms) for kw in self._deep_keywords(target)[1:])
            )
        )
        self._note_errors(run, [c.outcome for c in extra])
        checks = [content, *extra]

        hits = sum(1 for c in checks if c.relevance.has_target_content)
        score = hits / len(checks)
        match_scores = [c.relevance.match_score for c in checks]
        run.diagnostics["deep"] = {
            "score": score,
            "keywords": [c.summary() for c in checks],
            "quality_metrics": {
                "keywords_attempted": len(checks),
                "success_rate": score,
                "mean_match_score": round(sum(match_scores) / len(match_scores), 6),
                # Only the target keyword hit: relevance is query-specific, not general
                "keyword_specific": checks[0].relevance.has_target_content and hits == 1 and len(checks) > 1,
            },
        }
        return score
