"""
Scoring and classification. Pure functions: no I/O, no shared state.

The composite score is the weighted mean over the tiers that actually ran, with the
weights renormalized over that subset, so a skipped tier never drags a score down.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, Optional

from sourcewatch.models import (
    AssessmentResult,
    AvailabilityTier,
    CheckTier,
    ErrorKind,
    InternalError,
    SourceStatus,
    SubScores,
)

TIER_WEIGHTS: dict[CheckTier, float] = {
    CheckTier.BASIC: 0.2,
    CheckTier.FUNCTIONAL: 0.3,
    CheckTier.CONTENT: 0.4,
    CheckTier.DEEP: 0.1,
}

# Descending lower bounds; anything below the last is FAILING
AVAILABILITY_THRESHOLDS: tuple[tuple[float, AvailabilityTier], ...] = (
    (0.90, AvailabilityTier.EXCELLENT),
    (0.75, AvailabilityTier.GOOD),
    (0.50, AvailabilityTier.MODERATE),
    (0.25, AvailabilityTier.POOR),
)

AVAILABLE_THRESHOLD = 0.25


class ScoringError(InternalError):
    """Weight table or sub-score out of contract. Indicates a bug, not a network condition."""


def composite_score(
    sub_scores: SubScores,
    weights: Optional[Mapping[CheckTier, float]] = None,
) -> float:
    """Weighted mean of executed sub-scores; 0.0 when nothing ran."""
    table = TIER_WEIGHTS if weights is None else weights
    executed = sub_scores.executed()
    if not executed:
        return 0.0

    total_weight = 0.0
    weighted = 0.0
    for tier, score in executed.items():
        weight = table.get(tier)
        if weight is None or weight <= 0:
            raise ScoringError(f"no positive weight for tier {tier.value!r}: {weight!r}")
        if not 0.0 <= score <= 1.0:
            raise ScoringError(f"{tier.value} sub-score {score!r} outside [0, 1]")
        weighted += weight * score
        total_weight += weight

    return round(min(1.0, max(0.0, weighted / total_weight)), 6)


def classify(score: float) -> AvailabilityTier:
    """Map a composite score to its availability tier (inclusive lower bounds)."""
    for threshold, tier in AVAILABILITY_THRESHOLDS:
        if score >= threshold:
            return tier
    return AvailabilityTier.FAILING


def is_available(score: float) -> bool:
    return score > AVAILABLE_THRESHOLD


def derive_status(available: bool, error_kinds: Iterable[ErrorKind]) -> SourceStatus:
    """
    Coarse verdict status.

    Unavailable verdicts whose every recorded failure was a timeout become TIMEOUT,
    which gets the shorter cache lifetime.
    """
    if available:
        return SourceStatus.AVAILABLE
    kinds = list(error_kinds)
    if kinds and all(k == ErrorKind.TIMEOUT for k in kinds):
        return SourceStatus.TIMEOUT
    return SourceStatus.UNAVAILABLE


def summarize(results: Iterable[AssessmentResult]) -> dict[str, Any]:
    """Aggregate view of a batch: counts, availability rate and mean response time."""
    items = list(results)
    total = len(items)
    available = sum(1 for r in items if r.available)
    failing = sum(1 for r in items if r.availability_tier == AvailabilityTier.FAILING)
    times = [r.response_time_ms for r in items if r.response_time_ms > 0]
    by_tier: dict[str, int] = {t.value: 0 for t in AvailabilityTier}
    for r in items:
        by_tier[r.availability_tier.value] += 1
    return {
        "total": total,
        "available": available,
        "unavailable": total - available,
        "failing": failing,
        "availability_rate": round(available / total, 4) if total else 0.0,
        "average_response_time_ms": round(sum(times) / len(times), 1) if times else 0.0,
        "by_availability_tier": by_tier,
    }
