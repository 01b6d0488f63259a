"""
Prometheus metrics for the AI orchestration layer.

All metrics are no-op when observability.metrics_enabled is False.
Exposes track_llm_call, record_llm_*, record_retry, record_fallback,
record_budget_rejection, record_validation_failure, record_estimate, start_server.
"""

from __future__ import annotations

import contextlib
import threading
import time
from typing import Any

import structlog
from prometheus_client import (
    Counter,
    Histogram,
    start_http_server as prometheus_start_http_server,
)

logger = structlog.get_logger()


def _enabled() -> bool:
    from workout_ai.config import get_settings

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
    _llm_duration = Histogram(
        "ai_llm_call_duration_seconds",
        "Model call latency",
        ["model", "task"],
        buckets=[0.5, 1, 2, 5, 10, 30, 60],
    )
    _llm_errors = Counter(
        "ai_llm_call_errors_total",
        "Model call errors by failure kind",
        ["model", "task", "failure_kind"],
    )
    _llm_tokens = Counter(
        "ai_llm_call_tokens_total",
        "Estimated tokens consumed",
        ["model", "task", "direction"],
    )
    _llm_cost = Counter(
        "ai_llm_call_cost_usd",
        "Estimated cost in USD",
        ["model", "task"],
    )
    _retries = Counter(
        "ai_retry_total",
        "Retries scheduled after a transient failure",
        ["model", "failure_kind"],
    )
    _fallback = Counter(
        "ai_model_fallback_total",
        "Fallback to the next model in the fallback order",
        ["from_model", "to_model"],
    )
    _budget_rejections = Counter(
        "ai_budget_rejections_total",
        "Requests denied by the pre-flight budget check",
        ["model"],
    )
    _validation_failures = Counter(
        "ai_validation_failures_total",
        "AI responses rejected by schema validation",
        ["schema", "code"],
    )
    _estimated_tokens = Histogram(
        "ai_estimated_request_tokens",
        "Pre-flight estimated total tokens per request",
        ["model"],
        buckets=[500, 1000, 2000, 4000, 8000, 12000, 32000, 128000],
    )

    _registry = {
        "llm_duration": _llm_duration,
        "llm_errors": _llm_errors,
        "llm_tokens": _llm_tokens,
        "llm_cost": _llm_cost,
        "retries": _retries,
        "fallback": _fallback,
        "budget_rejections": _budget_rejections,
        "validation_failures": _validation_failures,
        "estimated_tokens": _estimated_tokens,
    }
    setattr(_MetricsCollector, "_registry", _registry)


class _MetricsCollector:
    """Collector that delegates to Prometheus when enabled, no-op otherwise."""

    _registry: dict[str, Any] = {}

    def _get(self, name: str) -> Any:
        _ensure_metrics()
        return self._registry.get(name)

    # --- LLM ---
    @contextlib.asynccontextmanager
    async def track_llm_call(self, model: str = "", task: str = ""):
        m = self._get("llm_duration")
        start = time.perf_counter()
        try:
            yield
        finally:
            if m:
                m.labels(model=model or "unknown", task=task or "unknown").observe(
                    time.perf_counter() - start
                )

    def record_llm_error(self, model: str = "", task: str = "", failure_kind: str = "") -> None:
        c = self._get("llm_errors")
        if c:
            c.labels(
                model=model or "unknown",
                task=task or "unknown",
                failure_kind=failure_kind or "other",
            ).inc()

    def record_llm_tokens(
        self,
        model: str = "",
        task: str = "",
        input_tokens: int = 0,
        output_tokens: int = 0,
    ) -> None:
        t = self._get("llm_tokens")
        if t:
            t.labels(model=model or "unknown", task=task or "unknown", direction="input").inc(input_tokens)
            t.labels(model=model or "unknown", task=task or "unknown", direction="output").inc(output_tokens)

    def record_llm_cost(self, model: str = "", task: str = "", cost_usd: float = 0.0) -> None:
        c = self._get("llm_cost")
        if c and cost_usd > 0:
            c.labels(model=model or "unknown", task=task or "unknown").inc(cost_usd)

    # --- Retry / fallback ---
    def record_retry(self, model: str, failure_kind: str) -> None:
        c = self._get("retries")
        if c:
            c.labels(model=model or "unknown", failure_kind=failure_kind or "other").inc()

    def record_fallback(self, from_model: str, to_model: str) -> None:
        c = self._get("fallback")
        if c:
            c.labels(from_model=from_model or "unknown", to_model=to_model or "unknown").inc()

    # --- Budget / validation ---
    def record_estimate(self, model: str, total_tokens: int) -> None:
        h = self._get("estimated_tokens")
        if h:
            h.labels(model=model or "unknown").observe(total_tokens)

    def record_budget_rejection(self, model: str) -> None:
        c = self._get("budget_rejections")
        if c:
            c.labels(model=model or "unknown").inc()

    def record_validation_failure(self, schema: str, code: str) -> None:
        c = self._get("validation_failures")
        if c:
            c.labels(schema=schema or "unknown", code=code or "unknown").inc()

    def start_server(self, port: int = 8000) -> None:
        if not _enabled():
            return
        _ensure_metrics()

        def run() -> None:
            try:
                prometheus_start_http_server(port, addr="0.0.0.0")
            except OSError as e:
                logger.warning("metrics_server_failed", port=port, error=str(e))

        t = threading.Thread(target=run, daemon=True)
        t.start()


metrics = _MetricsCollector()
