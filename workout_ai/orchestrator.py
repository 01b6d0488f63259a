"""
Workout plan generator: planner -> worker -> reviewer -> (refinement).

Every model call goes through the same gate:

    estimate -> check_budget -> with_retry(LLMClient.complete)

A denied budget raises BudgetExceededError before anything is sent; an
exhausted retry/fallback run raises ProviderError. Both end the run with
state FAILED and are reported in the AgentResult, never raised to the
caller.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from workout_ai.budget import budget_from_settings, check_budget
from workout_ai.config import get_settings
from workout_ai.errors import (
    BudgetExceededError,
    PlanValidationFailedError,
    ProviderError,
    WorkoutAIError,
)
from workout_ai.llm_client import LLMClient
from workout_ai.models import (
    AgentAttempt,
    AgentResult,
    FailureKind,
    RetryConfig,
    ReviewVerdict,
    TokenBudget,
    WorkflowState,
    WorkoutPlan,
)
from workout_ai.observability import metrics as obs_metrics
from workout_ai.prompts.templates import (
    PLANNER_SYSTEM,
    PLANNER_USER_TEMPLATE,
    REFINE_USER_TEMPLATE,
    REVIEWER_SYSTEM,
    REVIEWER_USER_TEMPLATE,
    WORKER_CORRECTION_TEMPLATE,
    WORKER_SYSTEM,
    WORKER_USER_TEMPLATE,
)
from workout_ai.response_validator import (
    JSONExtractionError,
    create_validation_error_prompt,
    extract_json,
    parse_ai_response,
)
from workout_ai.retry import SleepFn, config_from_settings, create_retry_wrapper
from workout_ai.token_estimator import ModelConfigTable, TokenEstimator

logger = structlog.get_logger()

PREVIEW_CHARS = 200
# Reviewer replies that cannot be parsed are treated as a pass with this score
UNPARSED_REVIEW_SCORE = 70.0
APPROVAL_SCORE = 80.0
# Split applied to summed attempt tokens when pricing a run
INPUT_TOKEN_SHARE = 0.6


def new_task_id() -> str:
    return f"workout-{int(time.time() * 1000)}-{uuid.uuid4().hex[:7]}"


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, default=str)


def _plan_json(plan: WorkoutPlan) -> str:
    return _dump(plan.model_dump(mode="json", by_alias=True, exclude_none=True))


@dataclass
class _WorkflowRun:
    """Mutable state of one generation run."""

    task_id: str
    user_id: str
    profile: dict[str, Any]
    state: WorkflowState = WorkflowState.IDLE
    attempts: list[AgentAttempt] = field(default_factory=list)
    intermediate: dict[str, Any] = field(default_factory=dict)
    started: float = field(default_factory=time.perf_counter)

    @property
    def profile_json(self) -> str:
        return _dump(self.profile)


class WorkoutPlanGenerator:
    """Multi-role workout plan generation with budget gating and retry/fallback."""

    def __init__(
        self,
        client: Optional[LLMClient] = None,
        model: Optional[str] = None,
        retry_config: Optional[RetryConfig] = None,
        budget: Optional[TokenBudget] = None,
        output_ratio: Optional[float] = None,
        model_table: Optional[ModelConfigTable] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        settings = get_settings()
        self.model = model or settings.llm.default_model
        self._table = model_table or ModelConfigTable.from_settings()
        self._client = client if client is not None else LLMClient(model_table=self._table)
        self._estimator = TokenEstimator(self.model, model_table=self._table)
        self._retry = create_retry_wrapper(retry_config or config_from_settings(), sleep=sleep)
        self._budget = budget or budget_from_settings()
        self._output_ratio = output_ratio if output_ratio is not None else settings.budget.output_ratio

    # ── Public API ──

    async def generate_workout_plan(self, user_id: str, user_profile: dict[str, Any]) -> AgentResult[WorkoutPlan]:
        """Run the full workflow for one user; failures come back in the result."""
        run = _WorkflowRun(task_id=new_task_id(), user_id=user_id, profile=dict(user_profile))
        log = logger.bind(task_id=run.task_id, user_id=user_id, model=self.model)
        log.info("workout_generation_started")

        try:
            self._enter(run, WorkflowState.PLANNING)
            strategy = await self._run_planner(run)
            run.intermediate["plan"] = strategy

            self._enter(run, WorkflowState.EXECUTING)
            plan = await self._run_worker(run, strategy)

            self._enter(run, WorkflowState.REVIEWING)
            verdict = await self._run_reviewer(run, plan)
            run.intermediate["review"] = verdict

            final_plan = plan
            if not verdict.approved and verdict.refinements:
                self._enter(run, WorkflowState.REFINING)
                final_plan = await self._run_refinement(run, plan, verdict)
        except WorkoutAIError as e:
            run.state = WorkflowState.FAILED
            log.error(
                "workout_generation_failed",
                error_type=type(e).__name__,
                error=str(e)[:300],
                attempts=len(run.attempts),
            )
            return self._build_result(run, success=False, error=str(e))

        run.state = WorkflowState.COMPLETED
        result = self._build_result(run, success=True, data=final_plan)
        log.info(
            "workout_generation_completed",
            attempts=len(result.attempts),
            total_tokens=result.total_tokens,
            total_cost=round(result.total_cost, 6),
            latency_ms=round(result.total_latency_ms),
        )
        return result

    def close(self) -> None:
        self._estimator.dispose()
        self._client.close()

    # ── Workflow steps ──

    def _enter(self, run: _WorkflowRun, state: WorkflowState) -> None:
        run.state = state
        logger.debug("workout_generation_phase", task_id=run.task_id, phase=state.value)

    async def _run_planner(self, run: _WorkflowRun) -> dict[str, Any]:
        prompt = PLANNER_USER_TEMPLATE.format(user_profile=run.profile_json)
        text = await self._call(run, "planner", PLANNER_SYSTEM, prompt)
        try:
            parsed = extract_json(text)
        except JSONExtractionError:
            parsed = None
        if not isinstance(parsed, dict):
            return {"instructions": text}
        return parsed

    async def _run_worker(self, run: _WorkflowRun, strategy: dict[str, Any]) -> WorkoutPlan:
        prompt = WORKER_USER_TEMPLATE.format(user_profile=run.profile_json, strategy=_dump(strategy))
        text = await self._call(run, "worker", WORKER_SYSTEM, prompt)
        parsed = parse_ai_response(text, WorkoutPlan, coerce=True)
        if parsed.success:
            return parsed.data

        logger.info(
            "worker_output_invalid_reprompting",
            task_id=run.task_id,
            error_count=len(parsed.errors or []),
        )
        correction = WORKER_CORRECTION_TEMPLATE.format(
            original_prompt=prompt,
            error_prompt=create_validation_error_prompt(parsed.errors or []),
            previous_response=text,
        )
        text = await self._call(run, "worker", WORKER_SYSTEM, correction)
        retried = parse_ai_response(text, WorkoutPlan, coerce=True)
        if not retried.success:
            errors = retried.errors or []
            summary = "; ".join(f"{e.path or '(root)'}: {e.message}" for e in errors[:5])
            raise PlanValidationFailedError(
                f"Worker output validation failed after retry: {summary}",
                errors=errors,
            )
        return retried.data

    async def _run_reviewer(self, run: _WorkflowRun, plan: WorkoutPlan) -> ReviewVerdict:
        prompt = REVIEWER_USER_TEMPLATE.format(user_profile=run.profile_json, workout_plan=_plan_json(plan))
        text = await self._call(run, "reviewer", REVIEWER_SYSTEM, prompt)
        return parse_review(text)

    async def _run_refinement(self, run: _WorkflowRun, plan: WorkoutPlan, verdict: ReviewVerdict) -> WorkoutPlan:
        prompt = REFINE_USER_TEMPLATE.format(workout_plan=_plan_json(plan), refinements=verdict.refinements)
        text = await self._call(run, "worker", WORKER_SYSTEM, prompt)
        parsed = parse_ai_response(text, WorkoutPlan, coerce=True)
        if parsed.success:
            return parsed.data
        logger.warning(
            "refinement_invalid_keeping_original",
            task_id=run.task_id,
            error_count=len(parsed.errors or []),
        )
        return plan

    # ── Gated model call ──

    async def _call(self, run: _WorkflowRun, role: str, system_prompt: str, user_prompt: str) -> str:
        """estimate -> budget check -> retry/fallback. Returns the response text."""
        if not self._estimator.loaded:
            await asyncio.to_thread(self._estimator.preload)
        estimate = self._estimator.estimate_request(system_prompt, user_prompt, output_ratio=self._output_ratio)
        obs_metrics.record_estimate(model=self.model, total_tokens=estimate.total_tokens)
        decision = check_budget(estimate, self._budget)
        if not decision.allowed:
            obs_metrics.record_budget_rejection(model=self.model)
            logger.warning(
                "ai_budget_rejected",
                task_id=run.task_id,
                role=role,
                reasons=decision.reasons,
            )
            raise BudgetExceededError(decision.reasons)

        async def _operation(model: str) -> str:
            start = time.perf_counter()
            try:
                response = await self._client.complete(model, system_prompt, user_prompt, task=role)
            except Exception as e:
                run.attempts.append(AgentAttempt(
                    agent_role=role,
                    model=model,
                    input_preview=user_prompt[:PREVIEW_CHARS],
                    error=str(e)[:PREVIEW_CHARS],
                    latency_ms=(time.perf_counter() - start) * 1000,
                ))
                raise
            run.attempts.append(AgentAttempt(
                agent_role=role,
                model=model,
                input_preview=user_prompt[:PREVIEW_CHARS],
                output_preview=response[:PREVIEW_CHARS],
                latency_ms=(time.perf_counter() - start) * 1000,
                tokens_used=estimate.input_tokens + self._estimator.count_tokens(response),
            ))
            return response

        outcome = await self._retry.execute(_operation, self.model)
        if not outcome.success:
            raise ProviderError(
                outcome.error or "AI request failed after retries",
                kind=outcome.failure_kind or FailureKind.OTHER,
                model=outcome.model_used,
            )
        return outcome.data

    # ── Result assembly ──

    def _build_result(
        self,
        run: _WorkflowRun,
        success: bool,
        data: Optional[WorkoutPlan] = None,
        error: Optional[str] = None,
    ) -> AgentResult[WorkoutPlan]:
        total_tokens = sum(a.tokens_used for a in run.attempts)
        config = self._estimator.get_model_config()
        total_cost = (
            (total_tokens * INPUT_TOKEN_SHARE / 1000) * config.input_price_per_k_tokens
            + (total_tokens * (1 - INPUT_TOKEN_SHARE) / 1000) * config.output_price_per_k_tokens
        )
        return AgentResult[WorkoutPlan](
            task_id=run.task_id,
            success=success,
            data=data,
            error=error,
            state=run.state,
            attempts=run.attempts,
            total_tokens=total_tokens,
            total_cost=total_cost,
            total_latency_ms=(time.perf_counter() - run.started) * 1000,
        )


def parse_review(text: str) -> ReviewVerdict:
    """Reviewer reply -> verdict. Unparseable replies pass with score 70."""
    try:
        review = extract_json(text)
    except JSONExtractionError:
        return ReviewVerdict(approved=True, score=UNPARSED_REVIEW_SCORE)
    if not isinstance(review, dict):
        return ReviewVerdict(approved=True, score=UNPARSED_REVIEW_SCORE)

    try:
        score = float(review.get("score") or 0)
    except (TypeError, ValueError):
        score = 0.0
    approved = review.get("approved")
    if approved is None:
        approved = score >= APPROVAL_SCORE
    refinements = review.get("refinements")
    return ReviewVerdict(
        approved=bool(approved),
        score=score,
        refinements=str(refinements) if refinements else None,
    )
