"""
Error taxonomy for the AI orchestration layer.

Provider failures are classified once, at the boundary where the provider
call is made, into a closed set of FailureKind tags. Retry logic branches on
the tag and never inspects error messages.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from workout_ai.models import FailureKind


class WorkoutAIError(Exception):
    """Base for errors raised by this package."""

    pass


class ProviderError(WorkoutAIError):
    """A model-provider call failed; kind says how."""

    def __init__(self, message: str, kind: FailureKind = FailureKind.OTHER, model: str = "") -> None:
        super().__init__(message)
        self.kind = kind
        self.model = model


class BudgetExceededError(WorkoutAIError):
    """Pre-flight budget check denied a request."""

    def __init__(self, reasons: list[str]) -> None:
        super().__init__(f"Token budget exceeded: {', '.join(reasons)}")
        self.reasons = list(reasons)


class EstimatorDisposedError(WorkoutAIError):
    """A disposed TokenEstimator was asked to count."""

    pass


class PlanValidationFailedError(WorkoutAIError):
    """AI output still failed schema validation after a corrective re-prompt."""

    def __init__(self, message: str, errors: Optional[list] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


# HTTP status -> kind. 408/504 are timeouts, 529 is Anthropic's "overloaded".
_STATUS_KINDS: dict[int, FailureKind] = {
    400: FailureKind.INVALID_INPUT,
    401: FailureKind.INVALID_INPUT,
    403: FailureKind.INVALID_INPUT,
    404: FailureKind.MODEL_UNAVAILABLE,
    408: FailureKind.TIMEOUT,
    413: FailureKind.MODEL_UNAVAILABLE,
    422: FailureKind.INVALID_INPUT,
    429: FailureKind.RATE_LIMITED,
    502: FailureKind.SERVER_ERROR,
    503: FailureKind.SERVER_OVERLOADED,
    504: FailureKind.TIMEOUT,
    529: FailureKind.SERVER_OVERLOADED,
}

# Structured provider error codes (exact match on the SDK's `code` / error `type`).
_CODE_KINDS: dict[str, FailureKind] = {
    "rate_limit_exceeded": FailureKind.RATE_LIMITED,
    "rate_limit_error": FailureKind.RATE_LIMITED,
    "timeout": FailureKind.TIMEOUT,
    "server_error": FailureKind.SERVER_ERROR,
    "api_error": FailureKind.SERVER_ERROR,
    "overloaded_error": FailureKind.SERVER_OVERLOADED,
    "insufficient_quota": FailureKind.MODEL_UNAVAILABLE,
    "model_not_found": FailureKind.MODEL_UNAVAILABLE,
    "context_length_exceeded": FailureKind.MODEL_UNAVAILABLE,
    "invalid_request_error": FailureKind.INVALID_INPUT,
    "authentication_error": FailureKind.INVALID_INPUT,
    "invalid_api_key": FailureKind.INVALID_INPUT,
    "permission_error": FailureKind.INVALID_INPUT,
}


def kind_for_status(status: int) -> Optional[FailureKind]:
    """FailureKind for an HTTP status, or None for non-error statuses."""
    if status in _STATUS_KINDS:
        return _STATUS_KINDS[status]
    if status >= 500:
        return FailureKind.SERVER_ERROR
    if 400 <= status < 500:
        return FailureKind.INVALID_INPUT
    return None


def classify_error(exc: BaseException) -> FailureKind:
    """Map an exception raised by a provider call onto a FailureKind."""
    if isinstance(exc, ProviderError):
        return exc.kind
    code = getattr(exc, "code", None)
    if isinstance(code, str) and code in _CODE_KINDS:
        return _CODE_KINDS[code]
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return FailureKind.TIMEOUT
    if isinstance(exc, (ConnectionResetError, ConnectionAbortedError, BrokenPipeError)):
        return FailureKind.CONNECTION_RESET
    # SDKs expose the HTTP status as status_code; google-api-core uses an int code
    status = getattr(exc, "status_code", None)
    if not isinstance(status, int) and isinstance(code, int) and not isinstance(code, bool):
        status = code
    if isinstance(status, int):
        kind = kind_for_status(status)
        if kind is not None:
            return kind
    if isinstance(exc, ConnectionError):
        return FailureKind.CONNECTION_RESET
    if isinstance(exc, (ValueError, TypeError)):
        return FailureKind.INVALID_INPUT
    return FailureKind.OTHER


def as_provider_error(exc: BaseException, model: str = "") -> ProviderError:
    """Wrap a raw provider exception with its classification."""
    if isinstance(exc, ProviderError):
        return exc
    return ProviderError(str(exc) or type(exc).__name__, kind=classify_error(exc), model=model)
