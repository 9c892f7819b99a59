"""Observability: Prometheus metrics for the source availability engine."""

from sourcewatch.observability.metrics import metrics

__all__ = ["metrics"]
