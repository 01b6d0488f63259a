"""
Budget guard: the single gate callers consult before a paid model call.

Pure decision function, no I/O. Every constraint is evaluated (no
short-circuit) so the caller gets the complete list of violations.
"""

from __future__ import annotations

from workout_ai.models import BudgetCheckResult, TokenBudget, TokenEstimate

# Default budget for workout generation
DEFAULT_WORKOUT_BUDGET = TokenBudget(
    max_input_tokens=8000,
    max_output_tokens=4000,
    max_total_tokens=12000,
    max_cost_usd=0.10,
)


def check_budget(estimate: TokenEstimate, budget: TokenBudget) -> BudgetCheckResult:
    """Allow the request only if no budget or context constraint is violated."""
    reasons: list[str] = []

    if estimate.input_tokens > budget.max_input_tokens:
        reasons.append(f"Input tokens ({estimate.input_tokens}) exceed limit ({budget.max_input_tokens})")

    if estimate.estimated_output_tokens > budget.max_output_tokens:
        reasons.append(
            f"Estimated output tokens ({estimate.estimated_output_tokens}) "
            f"exceed limit ({budget.max_output_tokens})"
        )

    if estimate.total_tokens > budget.max_total_tokens:
        reasons.append(f"Total tokens ({estimate.total_tokens}) exceed limit ({budget.max_total_tokens})")

    if estimate.estimated_cost > budget.max_cost_usd:
        reasons.append(
            f"Estimated cost (${estimate.estimated_cost:.4f}) exceeds limit (${budget.max_cost_usd})"
        )

    if not estimate.within_budget:
        reasons.append(f"Total tokens exceed model context limit ({estimate.model_context_limit})")

    return BudgetCheckResult(allowed=not reasons, reasons=reasons)


def budget_from_settings() -> TokenBudget:
    """Workout budget with AI_MAX_* environment overrides applied."""
    from workout_ai.config import get_settings

    b = get_settings().budget
    return TokenBudget(
        max_input_tokens=b.max_input_tokens,
        max_output_tokens=b.max_output_tokens,
        max_total_tokens=b.max_total_tokens,
        max_cost_usd=b.max_cost_usd,
    )
