"""Observability: Prometheus metrics for the AI orchestration layer."""

from workout_ai.observability.metrics import metrics

__all__ = ["metrics"]
