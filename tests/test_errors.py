"""Tests for the failure classification used by retry and fallback."""

from __future__ import annotations

import asyncio

import pytest

from workout_ai.errors import (
    BudgetExceededError,
    PlanValidationFailedError,
    ProviderError,
    WorkoutAIError,
    as_provider_error,
    classify_error,
)
from workout_ai.models import FailureKind


class _HTTPError(Exception):
    def __init__(self, status_code: int, code: object = None) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code
        if code is not None:
            self.code = code


class _CodedError(Exception):
    def __init__(self, code: object) -> None:
        super().__init__("provider said no")
        self.code = code


class TestClassifyError:
    def test_provider_error_kind_wins(self) -> None:
        exc = ProviderError("whatever", kind=FailureKind.SERVER_OVERLOADED)
        assert classify_error(exc) is FailureKind.SERVER_OVERLOADED

    @pytest.mark.parametrize(
        "status,kind",
        [
            (429, FailureKind.RATE_LIMITED),
            (408, FailureKind.TIMEOUT),
            (504, FailureKind.TIMEOUT),
            (503, FailureKind.SERVER_OVERLOADED),
            (529, FailureKind.SERVER_OVERLOADED),
            (500, FailureKind.SERVER_ERROR),
            (599, FailureKind.SERVER_ERROR),
            (404, FailureKind.MODEL_UNAVAILABLE),
            (401, FailureKind.INVALID_INPUT),
            (418, FailureKind.INVALID_INPUT),
        ],
    )
    def test_http_status(self, status: int, kind: FailureKind) -> None:
        assert classify_error(_HTTPError(status)) is kind

    @pytest.mark.parametrize(
        "code,kind",
        [
            ("rate_limit_exceeded", FailureKind.RATE_LIMITED),
            ("insufficient_quota", FailureKind.MODEL_UNAVAILABLE),
            ("context_length_exceeded", FailureKind.MODEL_UNAVAILABLE),
            ("model_not_found", FailureKind.MODEL_UNAVAILABLE),
            ("overloaded_error", FailureKind.SERVER_OVERLOADED),
            ("invalid_api_key", FailureKind.INVALID_INPUT),
        ],
    )
    def test_provider_code(self, code: str, kind: FailureKind) -> None:
        assert classify_error(_CodedError(code)) is kind

    def test_code_takes_precedence_over_status(self) -> None:
        # OpenAI reports quota exhaustion as a 429 with a distinct code
        exc = _HTTPError(429, code="insufficient_quota")
        assert classify_error(exc) is FailureKind.MODEL_UNAVAILABLE

    def test_integer_code_is_treated_as_status(self) -> None:
        assert classify_error(_CodedError(429)) is FailureKind.RATE_LIMITED

    def test_builtin_network_errors(self) -> None:
        assert classify_error(TimeoutError()) is FailureKind.TIMEOUT
        assert classify_error(asyncio.TimeoutError()) is FailureKind.TIMEOUT
        assert classify_error(ConnectionResetError()) is FailureKind.CONNECTION_RESET
        assert classify_error(BrokenPipeError()) is FailureKind.CONNECTION_RESET
        assert classify_error(ConnectionRefusedError()) is FailureKind.CONNECTION_RESET

    def test_bad_input(self) -> None:
        assert classify_error(ValueError("nope")) is FailureKind.INVALID_INPUT
        assert classify_error(TypeError("nope")) is FailureKind.INVALID_INPUT

    def test_messages_are_not_inspected(self) -> None:
        assert classify_error(RuntimeError("429 rate_limit_exceeded timeout")) is FailureKind.OTHER
        assert classify_error(_CodedError("something_new")) is FailureKind.OTHER


class TestErrorTypes:
    def test_hierarchy(self) -> None:
        for cls in (ProviderError, BudgetExceededError, PlanValidationFailedError):
            assert issubclass(cls, WorkoutAIError)

    def test_budget_exceeded_message(self) -> None:
        err = BudgetExceededError(["Input tokens (9000) exceed limit (8000)", "too pricey"])
        assert str(err) == "Token budget exceeded: Input tokens (9000) exceed limit (8000), too pricey"
        assert err.reasons == ["Input tokens (9000) exceed limit (8000)", "too pricey"]

    def test_as_provider_error_wraps_and_classifies(self) -> None:
        err = as_provider_error(_HTTPError(503), model="gpt-4o")
        assert isinstance(err, ProviderError)
        assert err.kind is FailureKind.SERVER_OVERLOADED
        assert err.model == "gpt-4o"
        assert str(err) == "HTTP 503"

    def test_as_provider_error_passthrough(self) -> None:
        original = ProviderError("x", kind=FailureKind.TIMEOUT)
        assert as_provider_error(original) is original
