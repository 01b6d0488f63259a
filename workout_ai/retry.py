"""
Retry with exponential backoff and ordered model fallback.

with_retry() wraps an operation of shape `async (model) -> T` and drives it
across transient provider failures and across candidate models:

  - the initial model is always tried first; the configured fallback order
    follows, skipping the initial model if it reappears
  - transient failures (FailureKind in RetryConfig.retryable_kinds) are
    retried on the same model with backoff, up to max_retries
  - MODEL_UNAVAILABLE, or retries exhausted on a transient failure,
    advances to the next model
  - anything else is fatal immediately

Failure is reported as a RetryOutcome value; only simple_retry() re-raises.
Backoff sleeps go through an injectable coroutine (asyncio.sleep by default)
so a caller that cancels the task interrupts the pending sleep.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable, Sequence
from typing import Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from workout_ai.errors import classify_error
from workout_ai.models import (
    DEFAULT_RETRY_CONFIG,
    AttemptRecord,
    FailureKind,
    RetryConfig,
    RetryContext,
    RetryOutcome,
)
from workout_ai.observability import metrics as obs_metrics

logger = structlog.get_logger()
T = TypeVar("T")

Operation = Callable[[str], Awaitable[T]]
SleepFn = Callable[[float], Awaitable[None]]


def compute_delay_ms(
    attempt_in_model: int,
    config: RetryConfig,
    rng: Callable[[], float] = random.random,
) -> float:
    """Backoff before retry number attempt_in_model (1-based), with symmetric jitter.

    min(base * exponential_base ** (n - 1), max_delay), jittered by
    +/- jitter_ratio and clamped to [0, max_delay].
    """
    delay = min(
        config.base_delay_ms * config.exponential_base ** (attempt_in_model - 1),
        config.max_delay_ms,
    )
    if config.jitter_ratio:
        delay += delay * config.jitter_ratio * (rng() * 2 - 1)
    return max(0.0, min(delay, config.max_delay_ms))


def build_model_order(initial_model: str, fallback_order: Sequence[str]) -> list[str]:
    """Initial model first, then the fallback order without duplicates."""
    order = [initial_model]
    for model in fallback_order:
        if model not in order:
            order.append(model)
    return order


def _error_text(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


async def with_retry(
    operation: Operation[T],
    initial_model: str,
    config: Optional[RetryConfig] = None,
    sleep: SleepFn = asyncio.sleep,
) -> RetryOutcome[T]:
    """Run operation(model) with bounded retry and model fallback.

    Returns:
        RetryOutcome: success with data, or failure with the last error, its
        FailureKind, and the full attempt log.
    """
    cfg = config or DEFAULT_RETRY_CONFIG
    context = RetryContext()
    attempts: list[AttemptRecord] = []
    order = build_model_order(initial_model, cfg.model_fallback_order)

    def _retryable(exc: BaseException) -> bool:
        return isinstance(exc, Exception) and classify_error(exc) in cfg.retryable_kinds

    last_error = ""
    last_kind: Optional[FailureKind] = None

    for index, model in enumerate(order):

        def _before_sleep(rs: RetryCallState, model: str = model) -> None:
            delay_ms = (rs.next_action.sleep if rs.next_action else 0.0) * 1000
            attempts[-1].delay_ms_before_next_attempt = delay_ms
            context.delays_ms.append(delay_ms)
            kind = attempts[-1].failure_kind
            logger.warning(
                "ai_retry",
                model=model,
                attempt=rs.attempt_number,
                max_retries=cfg.max_retries,
                delay_ms=round(delay_ms),
                failure_kind=kind.value if kind else "other",
                error=(attempts[-1].error or "")[:120],
            )
            obs_metrics.record_retry(model=model, failure_kind=kind.value if kind else "other")

        retrying = AsyncRetrying(
            stop=stop_after_attempt(cfg.max_retries + 1),
            wait=lambda rs: compute_delay_ms(rs.attempt_number, cfg) / 1000,
            retry=retry_if_exception(_retryable),
            before_sleep=_before_sleep,
            sleep=sleep,
            reraise=True,
        )

        data = None
        try:
            async for attempt in retrying:
                with attempt:
                    record = AttemptRecord(model=model, attempt_number=len(attempts) + 1)
                    attempts.append(record)
                    try:
                        data = await operation(model)
                        if data is None:
                            raise ValueError(f"operation returned no data for model {model}")
                    except Exception as exc:
                        record.error = _error_text(exc)
                        record.failure_kind = classify_error(exc)
                        raise
        except Exception as exc:
            last_error = _error_text(exc)
            last_kind = classify_error(exc)
            can_fall_back = last_kind is FailureKind.MODEL_UNAVAILABLE or last_kind in cfg.retryable_kinds
            if not can_fall_back:
                logger.error(
                    "ai_non_retryable_error",
                    model=model,
                    failure_kind=last_kind.value,
                    error=last_error[:200],
                )
                return RetryOutcome(
                    success=False,
                    error=last_error,
                    failure_kind=last_kind,
                    model_used=model,
                    attempts=attempts,
                    context=context,
                )
            if index + 1 < len(order):
                next_model = order[index + 1]
                logger.warning(
                    "ai_model_fallback",
                    from_model=model,
                    to_model=next_model,
                    failure_kind=last_kind.value,
                    error=last_error[:120],
                )
                obs_metrics.record_fallback(from_model=model, to_model=next_model)
            continue

        if index > 0:
            logger.info("ai_fallback_succeeded", model=model, attempts=len(attempts))
        return RetryOutcome(
            success=True,
            data=data,
            model_used=model,
            attempts=attempts,
            context=context,
        )

    logger.error(
        "ai_all_models_exhausted",
        models=order,
        attempts=len(attempts),
        error=last_error[:200],
    )
    return RetryOutcome(
        success=False,
        error=last_error or "All retry attempts exhausted",
        failure_kind=last_kind,
        model_used=order[-1],
        attempts=attempts,
        context=context,
    )


class RetryExecutor:
    """with_retry bound to a fixed configuration."""

    def __init__(self, config: RetryConfig, sleep: SleepFn = asyncio.sleep) -> None:
        self.config = config
        self._sleep = sleep

    async def execute(self, operation: Operation[T], initial_model: str) -> RetryOutcome[T]:
        return await with_retry(operation, initial_model, self.config, sleep=self._sleep)


def create_retry_wrapper(config: Optional[RetryConfig] = None, sleep: SleepFn = asyncio.sleep) -> RetryExecutor:
    return RetryExecutor(config or DEFAULT_RETRY_CONFIG, sleep=sleep)


def config_from_settings() -> RetryConfig:
    """RetryConfig with AI_* environment overrides applied."""
    from workout_ai.config import get_settings

    r = get_settings().retry
    fields = {
        "max_retries": r.max_retries,
        "base_delay_ms": r.base_delay_ms,
        "max_delay_ms": r.max_delay_ms,
        "exponential_base": r.exponential_base,
        "jitter_ratio": r.jitter_ratio,
    }
    if r.fallback_order:
        fields["model_fallback_order"] = r.fallback_order
    return RetryConfig(**fields)


async def simple_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay_ms: float = 1000,
    sleep: SleepFn = asyncio.sleep,
) -> T:
    """Retry every failure with fixed exponential backoff; re-raise the last error when exhausted."""
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=base_delay_ms / 1000, exp_base=2),
        retry=retry_if_exception_type(Exception),
        before_sleep=lambda rs: logger.warning(
            "simple_retry",
            attempt=rs.attempt_number,
            error=str(rs.outcome.exception()) if rs.outcome else "unknown",
        ),
        sleep=sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            result = await fn()
    return result
