"""
Prometheus metrics for the source availability engine.

All metrics are no-op when observability.metrics_enabled is False.
Exposes record_probe, track_assessment, record_cache_lookup, record_cache_eviction,
record_batch, start_server.
"""

from __future__ import annotations

import contextlib
import threading
import time
from collections.abc import Iterator
from typing import Any, Optional

from prometheus_client import (
    Counter,
    Histogram,
    start_http_server as prometheus_start_http_server,
)


# Set by an engine from its own settings; None falls back to the global settings
_enabled_override: Optional[bool] = None


def _enabled() -> bool:
    if _enabled_override is not None:
        return _enabled_override

    from sourcewatch.config import get_settings

    return bool(get_settings().observability.metrics_enabled)


# Lazy registry: only create metrics when enabled and first used
_metrics_created = False
_create_lock = threading.Lock()


def _ensure_metrics() -> bool:
    global _metrics_created
    if _metrics_created or not _enabled():
        return _metrics_created
    with _create_lock:
        if not _metrics_created:
            _create_metrics()
            _metrics_created = True
    return True


def _create_metrics() -> None:
    """Create all Prometheus metrics (called once when enabled)."""
    # Probe
    _probe_requests = Counter(
        "sourcewatch_probe_requests_total",
        "HTTP probes by method and outcome",
        ["method", "outcome"],
    )
    _probe_duration = Histogram(
        "sourcewatch_probe_duration_seconds",
        "HTTP probe latency",
        ["method"],
        buckets=[0.1, 0.25, 0.5, 1, 2, 5, 10],
    )

    # Assessment
    _assessments = Counter(
        "sourcewatch_assessments_total",
        "Completed assessments by requested tier and availability tier",
        ["tier", "availability_tier"],
    )
    _assessment_duration = Histogram(
        "sourcewatch_assessment_duration_seconds",
        "Wall-clock time of one source assessment",
        ["tier"],
        buckets=[0.25, 0.5, 1, 2, 5, 10, 30],
    )

    # Cache
    _cache_lookups = Counter(
        "sourcewatch_cache_lookups_total",
        "Verdict cache lookups",
        ["result"],
    )
    _cache_evictions = Counter(
        "sourcewatch_cache_evictions_total",
        "Verdict cache evictions by reason",
        ["reason"],
    )

    # Batch
    _batch_sources = Histogram(
        "sourcewatch_batch_sources",
        "Number of sources per batch request",
        [],
        buckets=[1, 5, 10, 25, 50, 100],
    )

    _registry = {
        "probe_requests": _probe_requests,
        "probe_duration": _probe_duration,
        "assessments": _assessments,
        "assessment_duration": _assessment_duration,
        "cache_lookups": _cache_lookups,
        "cache_evictions": _cache_evictions,
        "batch_sources": _batch_sources,
    }
    setattr(_MetricsCollector, "_registry", _registry)


class _MetricsCollector:
    """Collector that delegates to Prometheus when enabled, no-op otherwise."""

    _registry: dict[str, Any] = {}

    def configure(self, enabled: Optional[bool]) -> None:
        """Turn recording on or off regardless of the global settings; None restores them."""
        global _enabled_override
        _enabled_override = None if enabled is None else bool(enabled)

    @property
    def enabled(self) -> bool:
        return _enabled()

    def _get(self, name: str) -> Any:
        if not _enabled():
            return None
        _ensure_metrics()
        return self._registry.get(name)

    # --- Probe ---
    def record_probe(self, method: str, outcome: str, duration: float) -> None:
        req = self._get("probe_requests")
        dur = self._get("probe_duration")
        if req:
            req.labels(method=method or "unknown", outcome=outcome or "unknown").inc()
        if dur:
            dur.labels(method=method or "unknown").observe(duration)

    # --- Assessment ---
    @contextlib.contextmanager
    def track_assessment(self, tier: str) -> Iterator[Any]:
        class Tracker:
            def __init__(self) -> None:
                self.availability_tier = "unknown"

            def set_verdict(self, availability_tier: str) -> None:
                self.availability_tier = availability_tier

        tracker = Tracker()
        start = time.perf_counter()
        try:
            yield tracker
        finally:
            h = self._get("assessment_duration")
            c = self._get("assessments")
            if h:
                h.labels(tier=tier or "unknown").observe(time.perf_counter() - start)
            if c:
                c.labels(tier=tier or "unknown", availability_tier=tracker.availability_tier).inc()

    # --- Cache ---
    def record_cache_lookup(self, hit: bool) -> None:
        c = self._get("cache_lookups")
        if c:
            c.labels(result="hit" if hit else "miss").inc()

    def record_cache_eviction(self, reason: str, count: int = 1) -> None:
        c = self._get("cache_evictions")
        if c and count > 0:
            c.labels(reason=reason or "unknown").inc(count)

    # --- Batch ---
    def record_batch(self, size: int) -> None:
        h = self._get("batch_sources")
        if h:
            h.observe(size)

    def start_server(self, port: int = 8000) -> None:
        if not _enabled():
            return
        _ensure_metrics()

        def run() -> None:
            try:
                prometheus_start_http_server(port, addr="0.0.0.0")
            except OSError:
                pass

        t = threading.Thread(target=run, daemon=True)
        t.start()


metrics = _MetricsCollector()
