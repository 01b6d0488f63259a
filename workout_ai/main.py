"""
Workout AI: command line entry point.

Usage:
    python -m workout_ai.main estimate --system "You are a coach" --user "Plan my week" --model gpt-4o
    python -m workout_ai.main validate response.txt --coerce
    python -m workout_ai.main validate response.txt --batch
    python -m workout_ai.main generate profile.json --user-id u-123 --output plan.json
"""

from __future__ import annotations

# Load .env before provider SDKs are imported
import workout_ai.config  # noqa: F401, E402

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import structlog
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme

from workout_ai.budget import budget_from_settings, check_budget
from workout_ai.config import get_settings
from workout_ai.models import AgentResult, ParsedAIResult, ValidationError, WorkoutPlan
from workout_ai.observability import metrics as obs_metrics
from workout_ai.response_validator import extract_workout_plans, parse_ai_response
from workout_ai.token_estimator import ModelConfigTable, TokenEstimator

_CUSTOM_THEME = Theme({
    "log.key":         "#94a3b8",
    "log.val":         "#64748b",
    "primary":         "#ea580c",
    "ok":              "bold #16a34a",
    "bad":             "bold #dc2626",
    "warn":            "bold #f59e0b",
})

console = Console(theme=_CUSTOM_THEME, highlight=False)


class _RichStructlogRenderer:
    """structlog processor that renders log lines via Rich."""

    _SKIP_KEYS = frozenset({"event", "level"})

    def __call__(self, logger_: object, method: str, event_dict: dict) -> str:  # noqa: ARG002
        event = event_dict.get("event", "")
        level = event_dict.get("level", "info").lower()

        if event == "ai_model_fallback":
            console.print(
                f"  [warn]╔══ MODEL FALLBACK ══╗[/warn]  "
                f"[#64748b]{event_dict.get('from_model', '?')}[/#64748b] [primary]→[/primary] "
                f"[bold #0ea5e9]{event_dict.get('to_model', '?')}[/bold #0ea5e9]  "
                f"[bad][{event_dict.get('failure_kind', 'other')}][/bad]"
            )
            raise structlog.DropEvent()

        kv_parts = []
        for k, v in event_dict.items():
            if k in self._SKIP_KEYS:
                continue
            vs = str(v)
            if len(vs) > 120:
                vs = vs[:117] + "…"
            kv_parts.append(f"[log.key]{k}[/log.key]=[log.val]{vs}[/log.val]")
        kv_str = "  ".join(kv_parts)

        if level == "warning":
            prefix, ev_fmt = "[warn]⚠[/warn]", f"[warn]{event}[/warn]"
        elif level in ("error", "critical"):
            prefix, ev_fmt = "[bad]✗[/bad]", f"[bad]{event}[/bad]"
        elif level == "debug":
            prefix, ev_fmt = "[#64748b]·[/#64748b]", f"[#64748b]{event}[/#64748b]"
        else:
            prefix, ev_fmt = "[primary]▪[/primary]", f"[bold #e2e8f0]{event}[/bold #e2e8f0]"

        console.print(f"  {prefix} {ev_fmt}  {kv_str}")
        raise structlog.DropEvent()


def configure_logging(level: str = "INFO") -> None:
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            _RichStructlogRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


# ═══════════════════════════════════════════════════════════
# estimate
# ═══════════════════════════════════════════════════════════


def run_estimate(system_prompt: str, user_prompt: str, model: Optional[str]) -> int:
    settings = get_settings()
    model = model or settings.llm.default_model
    with TokenEstimator(model, model_table=ModelConfigTable.from_settings()) as estimator:
        estimate = estimator.estimate_request(
            system_prompt, user_prompt, output_ratio=settings.budget.output_ratio
        )
    decision = check_budget(estimate, budget_from_settings())

    table = Table(title=f"Token Estimate · {model}", border_style="#ea580c", title_style="bold #ea580c")
    table.add_column("Metric", style="bold #94a3b8")
    table.add_column("Value", justify="right", style="#e2e8f0")
    table.add_row("Input tokens", str(estimate.input_tokens))
    table.add_row("Est. output tokens", str(estimate.estimated_output_tokens))
    table.add_row("Total tokens", str(estimate.total_tokens))
    table.add_row("Context limit", str(estimate.model_context_limit))
    table.add_row("Est. cost", f"${estimate.estimated_cost:.6f}")
    table.add_row("Within context", "[ok]yes[/ok]" if estimate.within_budget else "[bad]no[/bad]")
    table.add_row("Budget", "[ok]allowed[/ok]" if decision.allowed else "[bad]denied[/bad]")
    console.print(table)
    for reason in decision.reasons:
        console.print(f"  [bad]✗[/bad] {reason}")
    return 0 if decision.allowed else 1


# ═══════════════════════════════════════════════════════════
# validate
# ═══════════════════════════════════════════════════════════


def _display_errors(errors: list[ValidationError]) -> None:
    et = Table(title="Validation Errors", border_style="#dc2626", title_style="bold #f59e0b")
    et.add_column("Path", style="#94a3b8")
    et.add_column("Code", style="#dc2626")
    et.add_column("Message", style="#e2e8f0")
    et.add_column("Expected", style="#64748b")
    for e in errors:
        et.add_row(e.path or "(root)", e.code, e.message, e.expected or "")
    console.print(et)


def _display_plan(plan: WorkoutPlan) -> None:
    pt = Table(title=plan.name, border_style="#ea580c", title_style="bold #ea580c")
    pt.add_column("Day", justify="right")
    pt.add_column("Type", style="#94a3b8")
    pt.add_column("Minutes", justify="right")
    pt.add_column("Main workout", style="#e2e8f0")
    for s in plan.sessions:
        pt.add_row(
            str(s.day_of_week),
            s.session_type,
            str(s.duration),
            ", ".join(ex.name for ex in s.main_workout),
        )
    console.print(pt)
    console.print(
        f"  [log.key]goal[/log.key]=[log.val]{plan.goal}[/log.val]  "
        f"[log.key]weeks[/log.key]=[log.val]{plan.duration_weeks}[/log.val]  "
        f"[log.key]sessions/week[/log.key]=[log.val]{plan.sessions_per_week}[/log.val]"
    )


def run_validate(path: Path, coerce: bool, batch: bool) -> int:
    text = path.read_text(encoding="utf-8")
    result: ParsedAIResult
    if batch:
        result = extract_workout_plans(text, coerce=coerce)
    else:
        result = parse_ai_response(text, WorkoutPlan, coerce=coerce)

    if not result.success:
        console.print(f"[bad]✗ {path} failed validation[/bad]")
        _display_errors(result.errors or [])
        return 1

    plans = result.data if batch else [result.data]
    console.print(f"[ok]✓ {path}: {len(plans)} valid plan(s)[/ok]")
    for plan in plans:
        _display_plan(plan)
    return 0


# ═══════════════════════════════════════════════════════════
# generate
# ═══════════════════════════════════════════════════════════


def _display_result(result: AgentResult[WorkoutPlan]) -> None:
    table = Table(title="Generation Summary", border_style="#ea580c", title_style="bold #ea580c")
    table.add_column("Metric", style="bold #94a3b8")
    table.add_column("Value", justify="right", style="#e2e8f0")
    table.add_row("Task", result.task_id)
    table.add_row("State", result.state.value)
    table.add_row("Model calls", str(len(result.attempts)))
    table.add_row("Tokens", str(result.total_tokens))
    table.add_row("Est. cost", f"${result.total_cost:.4f}")
    table.add_row("Duration", f"{result.total_latency_ms / 1000:.1f}s")
    console.print(table)

    if result.attempts:
        at = Table(title="Model Calls", border_style="#64748b", title_style="#94a3b8")
        at.add_column("Role")
        at.add_column("Model")
        at.add_column("ms", justify="right")
        at.add_column("Tokens", justify="right")
        at.add_column("Error", style="#dc2626")
        for a in result.attempts:
            at.add_row(a.agent_role, a.model, f"{a.latency_ms:.0f}", str(a.tokens_used), a.error or "")
        console.print(at)

    if result.success and result.data is not None:
        _display_plan(result.data)
    else:
        console.print(Panel(result.error or "unknown error", title="[bad]Generation failed[/bad]", border_style="#dc2626"))


async def run_generate(profile_path: Path, user_id: str, model: Optional[str], output: Optional[Path]) -> int:
    from workout_ai.orchestrator import WorkoutPlanGenerator

    profile = json.loads(profile_path.read_text(encoding="utf-8"))
    if not isinstance(profile, dict):
        console.print(f"[bad]✗ {profile_path} must hold a JSON object[/bad]")
        return 2

    generator = WorkoutPlanGenerator(model=model)
    try:
        result = await generator.generate_workout_plan(user_id, profile)
    finally:
        generator.close()

    _display_result(result)
    if result.success and result.data is not None and output is not None:
        output.write_text(
            json.dumps(result.data.model_dump(mode="json", by_alias=True, exclude_none=True), indent=2),
            encoding="utf-8",
        )
        console.print(f"  [primary]▪[/primary] plan written to {output}")
    return 0 if result.success else 1


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Workout AI orchestration")
    sub = parser.add_subparsers(dest="command")

    est = sub.add_parser("estimate", help="Estimate tokens/cost and check the budget")
    est.add_argument("--system", default="", help="System prompt text")
    est.add_argument("--user", default="", help="User prompt text")
    est.add_argument("--user-file", type=Path, help="Read the user prompt from a file")
    est.add_argument("--model", help="Model id (default: AI_DEFAULT_MODEL)")

    val = sub.add_parser("validate", help="Validate a model response against the workout plan schema")
    val.add_argument("file", type=Path, help="File holding the raw model response")
    val.add_argument("--coerce", action="store_true", help="Repair numeric strings and scalar-for-array")
    val.add_argument("--batch", action="store_true", help="Accept an array or {\"plans\": [...]} of plans")

    gen = sub.add_parser("generate", help="Generate a workout plan for a user profile")
    gen.add_argument("profile", type=Path, help="JSON file with the user profile")
    gen.add_argument("--user-id", default="cli-user", help="User id for logging")
    gen.add_argument("--model", help="Initial model id (default: AI_DEFAULT_MODEL)")
    gen.add_argument("--output", type=Path, help="Write the generated plan JSON here")

    args = parser.parse_args(argv)
    settings = get_settings()
    configure_logging(settings.observability.log_level)

    if args.command == "estimate":
        user_prompt = args.user_file.read_text(encoding="utf-8") if args.user_file else args.user
        return run_estimate(args.system, user_prompt, args.model)
    if args.command == "validate":
        return run_validate(args.file, args.coerce, args.batch)
    if args.command == "generate":
        if settings.observability.metrics_enabled:
            obs_metrics.start_server(settings.observability.metrics_port)
        return asyncio.run(run_generate(args.profile, args.user_id, args.model, args.output))
    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
