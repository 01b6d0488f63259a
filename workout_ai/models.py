"""
Core data models for the AI orchestration layer.

These Pydantic models define the values that flow between the token
estimator, the budget guard, the response validator and the retry
orchestrator, plus the workout-plan schema that AI output is checked
against before the rest of the system trusts it.

Design principles:
  - Estimates are immutable once computed (frozen models)
  - Retry outcomes report failure as data, never as a raised fault
  - Workout-plan models are strict: nothing is coerced implicitly, the
    explicit coercion pass in workout_ai.coercion does that on request
  - JSON field names are camelCase (what the models are prompted for);
    Python attributes are snake_case
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Generic, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

UTC = timezone.utc
T = TypeVar("T")


def _now_utc() -> datetime:
    return datetime.now(UTC)


# ═══════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════


class FailureKind(str, Enum):
    """Closed classification of provider failures; retry logic branches on this."""

    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    CONNECTION_RESET = "connection_reset"
    SERVER_OVERLOADED = "server_overloaded"
    SERVER_ERROR = "server_error"
    MODEL_UNAVAILABLE = "model_unavailable"
    INVALID_INPUT = "invalid_input"
    OTHER = "other"


TRANSIENT_FAILURES: frozenset[FailureKind] = frozenset({
    FailureKind.RATE_LIMITED,
    FailureKind.TIMEOUT,
    FailureKind.CONNECTION_RESET,
    FailureKind.SERVER_OVERLOADED,
    FailureKind.SERVER_ERROR,
})


class WorkflowState(str, Enum):
    """States of one workout-plan generation run."""

    IDLE = "idle"
    PLANNING = "planning"
    EXECUTING = "executing"
    REVIEWING = "reviewing"
    REFINING = "refining"
    COMPLETED = "completed"
    FAILED = "failed"


# ═══════════════════════════════════════════════════════════
# Token estimation & budgets
# ═══════════════════════════════════════════════════════════


class ModelConfig(BaseModel):
    """Context limit and per-1K-token prices for one model."""

    model_config = ConfigDict(frozen=True)

    context_limit: int = Field(gt=0)
    input_price_per_k_tokens: float = Field(ge=0)
    output_price_per_k_tokens: float = Field(ge=0)


class TokenEstimate(BaseModel):
    """Pre-flight size and cost projection for a single request."""

    model_config = ConfigDict(frozen=True)

    input_tokens: int
    estimated_output_tokens: int
    total_tokens: int
    estimated_cost: float
    model_context_limit: int
    within_budget: bool


class TokenBudget(BaseModel):
    """Caller-declared ceilings for one request."""

    model_config = ConfigDict(frozen=True)

    max_input_tokens: int
    max_output_tokens: int
    max_total_tokens: int
    max_cost_usd: float


class BudgetCheckResult(BaseModel):
    """Allow/deny decision plus one reason per violated constraint."""

    allowed: bool
    reasons: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _allowed_matches_reasons(self) -> "BudgetCheckResult":
        if self.allowed != (not self.reasons):
            raise ValueError("allowed must be True exactly when reasons is empty")
        return self


# ═══════════════════════════════════════════════════════════
# Retry / fallback
# ═══════════════════════════════════════════════════════════

DEFAULT_FALLBACK_ORDER: tuple[str, ...] = (
    "gpt-4o-mini",
    "gpt-4o",
    "gpt-4-turbo",
    "claude-3-haiku-20240307",
    "claude-3-5-sonnet-20241022",
)


class RetryConfig(BaseModel):
    """Bounded retry with exponential backoff and ordered model substitution."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0)
    base_delay_ms: float = Field(default=1000, ge=0)
    max_delay_ms: float = Field(default=30000, ge=0)
    exponential_base: float = Field(default=2, ge=1)
    jitter_ratio: float = Field(default=0.25, ge=0, le=1)
    retryable_kinds: frozenset[FailureKind] = TRANSIENT_FAILURES
    model_fallback_order: tuple[str, ...] = DEFAULT_FALLBACK_ORDER


DEFAULT_RETRY_CONFIG = RetryConfig()


class AttemptRecord(BaseModel):
    """One invocation of the wrapped operation."""

    model: str
    attempt_number: int = Field(ge=1)
    error: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    delay_ms_before_next_attempt: Optional[float] = None


class RetryContext(BaseModel):
    """Timing details for one orchestrated call."""

    start_time: datetime = Field(default_factory=_now_utc)
    delays_ms: list[float] = Field(default_factory=list)

    @property
    def total_delay_ms(self) -> float:
        return sum(self.delays_ms)


class RetryOutcome(BaseModel, Generic[T]):
    """Terminal result of with_retry: success with data, or failure with an error."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    model_used: str
    attempts: list[AttemptRecord] = Field(default_factory=list)
    context: RetryContext = Field(default_factory=RetryContext)

    @model_validator(mode="after")
    def _success_xor_error(self) -> "RetryOutcome[T]":
        if self.success and (self.error is not None or self.data is None):
            raise ValueError("a successful outcome must carry data and no error")
        if not self.success and (self.error is None or self.data is not None):
            raise ValueError("a failed outcome must carry an error and no data")
        return self


# ═══════════════════════════════════════════════════════════
# Validation results
# ═══════════════════════════════════════════════════════════


class ValidationError(BaseModel):
    """One schema violation (or the single parse failure) in an AI response."""

    path: str = ""
    message: str
    code: str
    expected: Optional[str] = None


class ParsedAIResult(BaseModel, Generic[T]):
    """Validated domain object, or the list of errors explaining why not."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    data: Optional[T] = None
    errors: Optional[list[ValidationError]] = None
    raw_input: Any = Field(default=None, exclude=True)


# ═══════════════════════════════════════════════════════════
# Workout plan schema (target of AI generation)
# ═══════════════════════════════════════════════════════════

def _integral_float_to_int(value: Any) -> Any:
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    return value


# JSON has one number type: 4.0 is an integer, "4" is not
JSONInt = Annotated[int, BeforeValidator(_integral_float_to_int)]

ExerciseCategory = Literal["strength", "cardio", "flexibility", "balance", "hiit"]
SessionType = Literal["strength", "cardio", "hiit", "flexibility", "mixed", "rest"]
Difficulty = Literal["beginner", "intermediate", "advanced"]


class _AIOutputModel(BaseModel):
    """Strict, camelCase-aliased base for anything parsed out of model text."""

    model_config = ConfigDict(
        strict=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class Exercise(_AIOutputModel):
    name: str = Field(min_length=1)
    category: ExerciseCategory
    sets: Optional[JSONInt] = Field(default=None, ge=0)
    reps: Optional[Union[Annotated[JSONInt, Field(gt=0)], str]] = None
    duration: Optional[str] = None
    rest_seconds: Optional[JSONInt] = Field(default=None, ge=0)
    notes: Optional[str] = None
    equipment: Optional[list[str]] = None
    muscle_groups: Optional[list[str]] = None
    difficulty: Optional[Difficulty] = None


class WorkoutSession(_AIOutputModel):
    day_of_week: JSONInt = Field(ge=0, le=6)
    session_type: SessionType
    duration: JSONInt = Field(gt=0)
    warmup: Optional[list[Exercise]] = None
    main_workout: list[Exercise]
    cooldown: Optional[list[Exercise]] = None
    notes: Optional[str] = None
    calorie_estimate: Optional[JSONInt] = Field(default=None, ge=0)


class WorkoutPlan(_AIOutputModel):
    """A complete multi-week plan as produced by the worker model."""

    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    goal: str
    duration_weeks: JSONInt = Field(ge=1, le=52)
    sessions_per_week: JSONInt = Field(ge=1, le=7)
    sessions: list[WorkoutSession]
    progression_notes: Optional[str] = None
    adaptations: Optional[dict[str, str]] = None


class WorkoutPlanBatch(_AIOutputModel):
    """Wrapper shape some models use when asked for several plans."""

    plans: list[WorkoutPlan]


# ═══════════════════════════════════════════════════════════
# Generation results
# ═══════════════════════════════════════════════════════════


class ReviewVerdict(BaseModel):
    """Reviewer model assessment of a generated plan."""

    approved: bool
    score: float = 0
    refinements: Optional[str] = None


class AgentAttempt(BaseModel):
    """One model call made during a generation run (for cost accounting)."""

    agent_role: Literal["planner", "worker", "reviewer", "orchestrator"]
    model: str
    input_preview: str = ""
    output_preview: str = ""
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now_utc)
    latency_ms: float = 0.0
    tokens_used: int = 0


class AgentResult(BaseModel, Generic[T]):
    """Outcome of a full planner -> worker -> reviewer run."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    task_id: str
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    state: WorkflowState = WorkflowState.IDLE
    attempts: list[AgentAttempt] = Field(default_factory=list)
    total_tokens: int = 0
    total_cost: float = 0.0
    total_latency_ms: float = 0.0
