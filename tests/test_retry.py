"""Tests for retry with backoff and model fallback."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from workout_ai.errors import ProviderError
from workout_ai.models import DEFAULT_FALLBACK_ORDER, FailureKind, RetryConfig, RetryOutcome
from workout_ai.retry import (
    RetryExecutor,
    build_model_order,
    compute_delay_ms,
    create_retry_wrapper,
    simple_retry,
    with_retry,
)


def _flaky(failures: int, kind: FailureKind = FailureKind.RATE_LIMITED):
    """Operation that fails `failures` times with `kind`, then returns the model it ran on."""
    calls: list[str] = []

    async def op(model: str) -> str:
        calls.append(model)
        if len(calls) <= failures:
            raise ProviderError(f"{kind.value} #{len(calls)}", kind=kind, model=model)
        return f"ok from {model}"

    return op, calls


class TestBackoff:
    def test_exponential_without_jitter(self) -> None:
        cfg = RetryConfig()
        mid = lambda: 0.5  # noqa: E731  (jitter term is zero)
        assert compute_delay_ms(1, cfg, rng=mid) == 1000
        assert compute_delay_ms(2, cfg, rng=mid) == 2000
        assert compute_delay_ms(3, cfg, rng=mid) == 4000

    def test_capped_at_max_delay(self) -> None:
        cfg = RetryConfig()
        assert compute_delay_ms(10, cfg, rng=lambda: 0.5) == 30000
        assert compute_delay_ms(10, cfg, rng=lambda: 1.0) == 30000

    def test_jitter_bounds(self) -> None:
        cfg = RetryConfig()
        assert compute_delay_ms(1, cfg, rng=lambda: 0.0) == pytest.approx(750)
        assert compute_delay_ms(1, cfg, rng=lambda: 1.0) == pytest.approx(1250)

    def test_zero_jitter_is_deterministic(self) -> None:
        cfg = RetryConfig(jitter_ratio=0)
        assert compute_delay_ms(2, cfg) == 2000


class TestModelOrder:
    def test_initial_model_first_without_duplicates(self) -> None:
        order = build_model_order("gpt-4o", DEFAULT_FALLBACK_ORDER)
        assert order[0] == "gpt-4o"
        assert order.count("gpt-4o") == 1
        assert len(order) == len(DEFAULT_FALLBACK_ORDER)

    def test_initial_model_outside_fallback_order(self) -> None:
        order = build_model_order("gemini-1.5-pro", ("a", "b"))
        assert order == ["gemini-1.5-pro", "a", "b"]


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_succeeds_after_two_transient_failures(self, no_sleep) -> None:
        op, calls = _flaky(2)
        outcome = await with_retry(op, "gpt-4o-mini", RetryConfig(max_retries=5), sleep=no_sleep)

        assert outcome.success is True
        assert outcome.data == "ok from gpt-4o-mini"
        assert outcome.error is None
        assert len(outcome.attempts) == 3
        assert all(a.model == "gpt-4o-mini" for a in outcome.attempts)
        assert [a.attempt_number for a in outcome.attempts] == [1, 2, 3]
        assert outcome.attempts[0].failure_kind is FailureKind.RATE_LIMITED
        assert outcome.attempts[2].error is None
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_records_backoff_delays(self, no_sleep) -> None:
        op, _ = _flaky(2, FailureKind.TIMEOUT)
        outcome = await with_retry(op, "gpt-4o-mini", RetryConfig(max_retries=5), sleep=no_sleep)

        delays = outcome.context.delays_ms
        assert len(delays) == 2
        assert 750 <= delays[0] <= 1250
        assert 1500 <= delays[1] <= 2500
        assert outcome.attempts[0].delay_ms_before_next_attempt == pytest.approx(delays[0])
        assert outcome.attempts[2].delay_ms_before_next_attempt is None
        assert outcome.context.total_delay_ms == pytest.approx(sum(delays))

    @pytest.mark.asyncio
    async def test_sleep_receives_seconds(self) -> None:
        sleep = AsyncMock()
        op, _ = _flaky(1)
        await with_retry(op, "gpt-4o-mini", RetryConfig(jitter_ratio=0), sleep=sleep)
        sleep.assert_awaited_once()
        assert sleep.await_args.args[0] == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails_after_one_attempt(self, no_sleep) -> None:
        async def op(model: str) -> str:
            raise ValueError("bad request payload")

        outcome = await with_retry(op, "gpt-4o-mini", RetryConfig(max_retries=5), sleep=no_sleep)

        assert outcome.success is False
        assert outcome.data is None
        assert len(outcome.attempts) == 1
        assert outcome.failure_kind is FailureKind.INVALID_INPUT
        assert outcome.error == "bad request payload"
        assert outcome.context.delays_ms == []

    @pytest.mark.asyncio
    async def test_operation_without_data_fails(self, no_sleep) -> None:
        async def op(model: str) -> None:
            return None

        outcome = await with_retry(op, "gpt-4o-mini", RetryConfig(max_retries=3), sleep=no_sleep)

        assert outcome.success is False
        assert len(outcome.attempts) == 1
        assert "returned no data" in outcome.error

    @pytest.mark.asyncio
    async def test_unclassified_error_is_fatal(self, no_sleep) -> None:
        async def op(model: str) -> str:
            raise RuntimeError("rate limit exceeded")  # message text is never inspected

        outcome = await with_retry(op, "gpt-4o-mini", sleep=no_sleep)
        assert outcome.success is False
        assert outcome.failure_kind is FailureKind.OTHER
        assert len(outcome.attempts) == 1

    @pytest.mark.asyncio
    async def test_model_unavailable_falls_back_immediately(self, no_sleep) -> None:
        async def op(model: str) -> str:
            if model == "gpt-4o-mini":
                raise ProviderError("model not found", kind=FailureKind.MODEL_UNAVAILABLE)
            return f"ok from {model}"

        outcome = await with_retry(op, "gpt-4o-mini", RetryConfig(max_retries=3), sleep=no_sleep)

        assert outcome.success is True
        assert len(outcome.attempts) >= 2
        assert outcome.attempts[0].model == "gpt-4o-mini"
        assert outcome.model_used == "gpt-4o"
        assert outcome.data == "ok from gpt-4o"
        assert outcome.context.delays_ms == []

    @pytest.mark.asyncio
    async def test_exhausted_retries_advance_to_next_model(self, no_sleep) -> None:
        async def op(model: str) -> str:
            if model == "gpt-4o-mini":
                raise ProviderError("overloaded", kind=FailureKind.SERVER_OVERLOADED)
            return "done"

        outcome = await with_retry(op, "gpt-4o-mini", RetryConfig(max_retries=1), sleep=no_sleep)

        assert outcome.success is True
        assert [a.model for a in outcome.attempts] == ["gpt-4o-mini", "gpt-4o-mini", "gpt-4o"]
        assert outcome.model_used == "gpt-4o"

    @pytest.mark.asyncio
    async def test_all_models_exhausted(self, no_sleep) -> None:
        cfg = RetryConfig(max_retries=1, model_fallback_order=("model-a", "model-b"))
        op, calls = _flaky(100, FailureKind.TIMEOUT)

        outcome = await with_retry(op, "model-a", cfg, sleep=no_sleep)

        assert outcome.success is False
        assert outcome.failure_kind is FailureKind.TIMEOUT
        assert calls == ["model-a", "model-a", "model-b", "model-b"]
        assert len(outcome.attempts) == 4
        assert outcome.model_used == "model-b"
        assert outcome.error

    @pytest.mark.asyncio
    async def test_retryable_kinds_are_configurable(self, no_sleep) -> None:
        cfg = RetryConfig(retryable_kinds=frozenset({FailureKind.TIMEOUT}), model_fallback_order=())
        op, calls = _flaky(1, FailureKind.RATE_LIMITED)

        outcome = await with_retry(op, "gpt-4o-mini", cfg, sleep=no_sleep)

        assert outcome.success is False
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_cancellation_during_backoff_propagates(self) -> None:
        sleep = AsyncMock(side_effect=asyncio.CancelledError())
        op, calls = _flaky(5)

        with pytest.raises(asyncio.CancelledError):
            await with_retry(op, "gpt-4o-mini", sleep=sleep)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_independent_invocations_do_not_share_state(self, no_sleep) -> None:
        op_a, _ = _flaky(1)
        op_b, _ = _flaky(0)
        first, second = await asyncio.gather(
            with_retry(op_a, "gpt-4o-mini", sleep=no_sleep),
            with_retry(op_b, "gpt-4o", sleep=no_sleep),
        )
        assert len(first.attempts) == 2
        assert len(second.attempts) == 1
        assert second.model_used == "gpt-4o"


class TestRetryOutcome:
    def test_failed_outcome_requires_error(self) -> None:
        with pytest.raises(ValueError):
            RetryOutcome(success=False, model_used="gpt-4o")

    def test_successful_outcome_rejects_error(self) -> None:
        with pytest.raises(ValueError):
            RetryOutcome(success=True, data="x", error="boom", model_used="gpt-4o")

    def test_successful_outcome_requires_data(self) -> None:
        with pytest.raises(ValueError):
            RetryOutcome(success=True, model_used="gpt-4o")


class TestRetryWrapper:
    @pytest.mark.asyncio
    async def test_wrapper_binds_config(self, no_sleep) -> None:
        cfg = RetryConfig(max_retries=0, model_fallback_order=())
        wrapper = create_retry_wrapper(cfg, sleep=no_sleep)
        assert isinstance(wrapper, RetryExecutor)
        assert wrapper.config is cfg

        op, calls = _flaky(1)
        outcome = await wrapper.execute(op, "gpt-4o-mini")
        assert outcome.success is False
        assert len(calls) == 1


class TestSimpleRetry:
    @pytest.mark.asyncio
    async def test_returns_after_one_failure(self, no_sleep) -> None:
        calls = 0

        async def fn() -> str:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("flaky")
            return "value"

        assert await simple_retry(fn, max_retries=3, sleep=no_sleep) == "value"
        assert calls == 2

    @pytest.mark.asyncio
    async def test_reraises_last_error(self, no_sleep) -> None:
        calls = 0
        error = RuntimeError("always")

        async def fn() -> str:
            nonlocal calls
            calls += 1
            raise error

        with pytest.raises(RuntimeError) as exc_info:
            await simple_retry(fn, max_retries=2, sleep=no_sleep)
        assert exc_info.value is error
        assert calls == 3

    @pytest.mark.asyncio
    async def test_backoff_doubles(self) -> None:
        sleep = AsyncMock()

        async def fn() -> str:
            raise RuntimeError("nope")

        with pytest.raises(RuntimeError):
            await simple_retry(fn, max_retries=2, base_delay_ms=100, sleep=sleep)
        waits = [c.args[0] for c in sleep.await_args_list]
        assert waits == [pytest.approx(0.1), pytest.approx(0.2)]
