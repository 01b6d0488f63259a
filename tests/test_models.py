"""
Unit tests for core data models.

Verifies model-level rules independently of any provider: frozen estimates,
outcome invariants, and the camelCase wire shape of workout plans.
"""

from typing import Any

import pytest
from pydantic import ValidationError as PydanticValidationError

from workout_ai.models import (
    DEFAULT_RETRY_CONFIG,
    AttemptRecord,
    FailureKind,
    RetryOutcome,
    TokenEstimate,
    WorkoutPlan,
)


def test_token_estimate_is_immutable() -> None:
    est = TokenEstimate(
        input_tokens=10,
        estimated_output_tokens=5,
        total_tokens=15,
        estimated_cost=0.001,
        model_context_limit=128000,
        within_budget=True,
    )
    with pytest.raises(PydanticValidationError):
        est.total_tokens = 99  # type: ignore[misc]


def test_default_retry_config() -> None:
    assert DEFAULT_RETRY_CONFIG.max_retries == 3
    assert DEFAULT_RETRY_CONFIG.base_delay_ms == 1000
    assert DEFAULT_RETRY_CONFIG.exponential_base == 2
    assert FailureKind.RATE_LIMITED in DEFAULT_RETRY_CONFIG.retryable_kinds
    assert FailureKind.INVALID_INPUT not in DEFAULT_RETRY_CONFIG.retryable_kinds
    assert FailureKind.MODEL_UNAVAILABLE not in DEFAULT_RETRY_CONFIG.retryable_kinds
    providers = {m.split("-")[0] for m in DEFAULT_RETRY_CONFIG.model_fallback_order}
    assert {"gpt", "claude"} <= providers


def test_retry_outcome_success_cannot_carry_error() -> None:
    with pytest.raises(PydanticValidationError):
        RetryOutcome(success=True, data="x", error="boom", model_used="gpt-4o")


def test_retry_outcome_failure_needs_error_and_no_data() -> None:
    with pytest.raises(PydanticValidationError):
        RetryOutcome(success=False, model_used="gpt-4o")
    with pytest.raises(PydanticValidationError):
        RetryOutcome(success=False, data="x", error="boom", model_used="gpt-4o")
    outcome = RetryOutcome(
        success=False,
        error="boom",
        model_used="gpt-4o",
        attempts=[AttemptRecord(model="gpt-4o", attempt_number=1, error="boom")],
    )
    assert outcome.context.start_time is not None


def test_plan_round_trips_camel_case(sample_plan: dict[str, Any]) -> None:
    plan = WorkoutPlan.model_validate(sample_plan)
    assert plan.duration_weeks == sample_plan["durationWeeks"]
    dumped = plan.model_dump(mode="json", by_alias=True, exclude_none=True)
    assert "durationWeeks" in dumped
    assert "mainWorkout" in dumped["sessions"][0]
    assert WorkoutPlan.model_validate(dumped) == plan


def test_plan_accepts_python_names() -> None:
    plan = WorkoutPlan(
        name="Quick",
        goal="general fitness",
        duration_weeks=2,
        sessions_per_week=1,
        sessions=[],
    )
    assert plan.sessions_per_week == 1
