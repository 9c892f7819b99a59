"""SourceWatch: tiered availability and relevance assessment for search sources."""

from sourcewatch.engine import AvailabilityEngine
from sourcewatch.models import (
    AssessmentResult,
    AssessOptions,
    AvailabilityTier,
    BatchOptions,
    CheckTier,
    ErrorKind,
    InternalError,
    ProbeOutcome,
    RelevanceResult,
    SourceDescriptor,
    SourceStatus,
    SourceWatchError,
)
from sourcewatch.scoring import ScoringError, summarize

__all__ = [
    "AssessmentResult",
    "AssessOptions",
    "AvailabilityEngine",
    "AvailabilityTier",
    "BatchOptions",
    "CheckTier",
    "ErrorKind",
    "InternalError",
    "ProbeOutcome",
    "RelevanceResult",
    "ScoringError",
    "SourceDescriptor",
    "SourceStatus",
    "SourceWatchError",
    "summarize",
]
