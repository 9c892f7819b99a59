"""
Core data models for the source availability engine.

These Pydantic models define what flows between the probe executor, the content
analyzer, the tiered checker and the caller. Verdict records are frozen: a
ProbeOutcome is created fresh per HTTP attempt and an AssessmentResult once per
completed assessment, and neither is mutated afterwards.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from urllib.parse import quote, urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

UTC = timezone.utc

MIN_TIMEOUT_MS = 1000
MAX_TIMEOUT_MS = 30000
DEFAULT_TIMEOUT_MS = 10000


def _now_utc() -> datetime:
    return datetime.now(UTC)


# ═══════════════════════════════════════════════════════════
# Exceptions
# ═══════════════════════════════════════════════════════════


class SourceWatchError(Exception):
    """Base for engine errors."""


class InternalError(SourceWatchError):
    """A defect in the engine's own logic. The only error allowed out of assess()."""


# ═══════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════


class CheckTier(str, Enum):
    """Escalating check depths, strictly ordered."""

    BASIC = "basic"
    FUNCTIONAL = "functional"
    CONTENT = "content"
    DEEP = "deep"

    @property
    def level(self) -> int:
        return _TIER_ORDER.index(self) + 1

    @classmethod
    def up_to(cls, tier: CheckTier) -> list[CheckTier]:
        """All tiers from BASIC through ``tier`` inclusive, in execution order."""
        return _TIER_ORDER[: tier.level]


_TIER_ORDER = [CheckTier.BASIC, CheckTier.FUNCTIONAL, CheckTier.CONTENT, CheckTier.DEEP]


class ErrorKind(str, Enum):
    """Why a probe or analysis step failed."""

    TIMEOUT = "timeout"
    TRANSPORT = "transport_error"
    HTTP = "http_error"
    PARSE = "parse_error"
    INTERNAL = "internal_error"


class ContentQuality(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    MODERATE = "moderate"
    POOR = "poor"


class AvailabilityTier(str, Enum):
    """Discrete classification of a composite score."""

    EXCELLENT = "excellent"
    GOOD = "good"
    MODERATE = "moderate"
    POOR = "poor"
    FAILING = "failing"


class SourceStatus(str, Enum):
    """Coarse verdict status; drives the cache TTL multiplier."""

    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"
    ERROR = "error"


# ═══════════════════════════════════════════════════════════
# Inputs
# ═══════════════════════════════════════════════════════════


class SourceDescriptor(BaseModel):
    """A search source supplied by the caller. ``url_template`` holds a {keyword} placeholder."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(min_length=1)
    url_template: str = Field(min_length=1, alias="urlTemplate")
    name: str = ""

    def build_url(self, keyword: str) -> str:
        return self.url_template.replace("{keyword}", quote(keyword, safe=""))

    @property
    def base_url(self) -> str:
        """scheme://host[:port] of the template, or empty string when unparseable."""
        parsed = urlparse(self.build_url("test"))
        if not parsed.scheme or not parsed.netloc:
            return ""
        return f"{parsed.scheme}://{parsed.netloc}"

    @property
    def hostname(self) -> str:
        return urlparse(self.build_url("test")).hostname or ""

    @property
    def display_name(self) -> str:
        return self.name or self.id


class AssessOptions(BaseModel):
    """Per-call options for a single assessment."""

    timeout_ms: int = DEFAULT_TIMEOUT_MS
    use_cache: bool = True

    @field_validator("timeout_ms")
    @classmethod
    def _clamp_timeout(cls, v: int) -> int:
        return max(MIN_TIMEOUT_MS, min(MAX_TIMEOUT_MS, int(v)))


class BatchOptions(AssessOptions):
    """Options for assess_batch: tier and keyword apply to every source."""

    tier: CheckTier = CheckTier.FUNCTIONAL
    keyword: Optional[str] = None
    concurrency: int = 3
    pacing_ms: int = 200

    @field_validator("concurrency")
    @classmethod
    def _min_concurrency(cls, v: int) -> int:
        return max(1, int(v))

    @field_validator("pacing_ms")
    @classmethod
    def _non_negative_pacing(cls, v: int) -> int:
        return max(0, int(v))


# ═══════════════════════════════════════════════════════════
# Probe / analysis outcomes
# ═══════════════════════════════════════════════════════════


class ProbeOutcome(BaseModel):
    """Raw outcome of one bounded HTTP attempt."""

    model_config = ConfigDict(frozen=True)

    url: str
    method: str = "HEAD"
    success: bool
    http_status: Optional[int] = None
    response_time_ms: int = 0
    body_sample: Optional[bytes] = None
    truncated: bool = False
    content_type: str = ""
    final_url: str = ""
    error: Optional[ErrorKind] = None
    error_message: Optional[str] = None

    @property
    def text(self) -> str:
        """Body sample decoded as text (charset from Content-Type, else UTF-8)."""
        if not self.body_sample:
            return ""
        charset = "utf-8"
        for part in self.content_type.split(";"):
            key, _, value = part.strip().partition("=")
            if key.lower() == "charset" and value:
                charset = value.strip("\"' ")
        try:
            return self.body_sample.decode(charset, errors="replace")
        except LookupError:
            return self.body_sample.decode("utf-8", errors="replace")

    def summary(self) -> dict[str, Any]:
        """Compact JSON-friendly view for diagnostics (no body)."""
        data: dict[str, Any] = {
            "url": self.url,
            "method": self.method,
            "success": self.success,
            "http_status": self.http_status,
            "response_time_ms": self.response_time_ms,
        }
        if self.error is not None:
            data["error"] = self.error.value
            data["error_message"] = self.error_message
        if self.truncated:
            data["truncated"] = True
        return data


class RelevanceResult(BaseModel):
    """Outcome of analyzing one fetched page against a target keyword."""

    model_config = ConfigDict(frozen=True)

    has_target_content: bool = False
    match_score: float = 0.0
    keyword_found: bool = False
    direct_matches: int = 0
    # Diagnostic only; does not feed match_score
    partial_match: bool = False
    partial_matches: int = 0
    title_match: bool = False
    estimated_result_count: int = 0
    has_search_results: bool = False
    has_navigation: bool = False
    has_pagination: bool = False
    has_media: bool = False
    no_results_indicated: bool = False
    quality: ContentQuality = ContentQuality.POOR
    quality_points: int = 0
    parse_failed: bool = False

    @classmethod
    def failed(cls) -> RelevanceResult:
        """Zero-score result for a body that could not be interpreted as HTML."""
        return cls(parse_failed=True)


# ═══════════════════════════════════════════════════════════
# Verdicts
# ═══════════════════════════════════════════════════════════


class SubScores(BaseModel):
    """Per-tier sub-scores; None means the tier did not run."""

    model_config = ConfigDict(frozen=True)

    basic: Optional[float] = None
    functional: Optional[float] = None
    content: Optional[float] = None
    deep: Optional[float] = None

    def executed(self) -> dict[CheckTier, float]:
        """Sub-scores that were actually produced, keyed by tier."""
        return {
            tier: score
            for tier in CheckTier.up_to(CheckTier.DEEP)
            if (score := getattr(self, tier.value)) is not None
        }


class AssessmentResult(BaseModel):
    """The engine's externally visible verdict for one source."""

    model_config = ConfigDict(frozen=True)

    source_id: str
    source_name: str = ""
    tier: CheckTier
    keyword: Optional[str] = None
    sub_scores: SubScores = Field(default_factory=SubScores)
    composite_score: float = 0.0
    availability_tier: AvailabilityTier = AvailabilityTier.FAILING
    available: bool = False
    status: SourceStatus = SourceStatus.UNAVAILABLE
    response_time_ms: int = 0
    checked_at: datetime = Field(default_factory=_now_utc)
    diagnostics: dict[str, Any] = Field(default_factory=dict)
    from_cache: bool = False


# ═══════════════════════════════════════════════════════════
# Reliability history
# ═══════════════════════════════════════════════════════════


class OutcomeSample(BaseModel):
    timestamp: datetime = Field(default_factory=_now_utc)
    available: bool
    response_time_ms: int = 0


class ReliabilityRecord(BaseModel):
    """Long-running per-source history. Display only; never feeds the composite score."""

    total_checks: int = 0
    successful_checks: int = 0
    recent_outcomes: list[OutcomeSample] = Field(default_factory=list)

    @property
    def overall_success_rate(self) -> float:
        if self.total_checks == 0:
            return 0.0
        return self.successful_checks / self.total_checks

    @property
    def recent_success_rate(self) -> float:
        if not self.recent_outcomes:
            return 0.0
        return sum(1 for o in self.recent_outcomes if o.available) / len(self.recent_outcomes)

    @property
    def reliability_score(self) -> float:
        """Blend weighted toward recent behavior (0.3 all-time, 0.7 recent window)."""
        return round(self.overall_success_rate * 0.3 + self.recent_success_rate * 0.7, 2)

    @property
    def average_response_time_ms(self) -> float:
        times = [o.response_time_ms for o in self.recent_outcomes if o.response_time_ms > 0]
        return sum(times) / len(times) if times else 0.0


class DomainHealth(BaseModel):
    """Verdict outcomes aggregated per hostname, across every source on that host."""

    success_count: int = 0
    total_count: int = 0
    last_success: Optional[datetime] = None
    last_failure: Optional[datetime] = None

    @property
    def success_rate(self) -> float:
        if self.total_count == 0:
            return 0.0
        return self.success_count / self.total_count

    def summary(self) -> dict[str, Any]:
        return {
            **self.model_dump(mode="json"),
            "success_rate": round(self.success_rate, 4),
        }
