"""
Response validator: turns untrusted model text into a trusted domain object.

    raw text -> extract JSON -> schema-validate -> (optional coercion) -> result

Every failure is reported as data (ParsedAIResult.errors) with a stable
code taxonomy; nothing here raises on bad model output. The error list can
be rendered into a corrective re-prompt with create_validation_error_prompt.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Mapping
from functools import lru_cache
from typing import Any, Optional

import structlog
from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from workout_ai.coercion import apply_coercions
from workout_ai.models import (
    Exercise,
    ParsedAIResult,
    ValidationError,
    WorkoutPlan,
    WorkoutPlanBatch,
    WorkoutSession,
)
from workout_ai.observability import metrics as obs_metrics

logger = structlog.get_logger()

_FENCE_RE = re.compile(r"```[ \t]*(?:json|JSON)?[ \t]*\n?(.*?)\n?[ \t]*```", re.DOTALL)


class JSONExtractionError(ValueError):
    """No parseable JSON payload could be found in a model response."""

    pass


# ═══════════════════════════════════════════════════════════
# JSON extraction
# ═══════════════════════════════════════════════════════════


def _sanitize_json(text: str) -> str:
    """Fix common LLM JSON errors (trailing commas, // comments, NaN/Infinity)."""
    text = re.sub(r"(?m)^\s*//.*$", "", text)
    text = re.sub(r",\s*//[^\n]*", ",", text)
    text = re.sub(r",\s*([}\]])", r"\1", text)
    text = re.sub(r"\bNaN\b", "null", text)
    text = re.sub(r"-?Infinity\b", "null", text)
    return text


def _find_balanced_region(text: str) -> Optional[str]:
    """First top-level {...} or [...] region, honoring strings and escapes."""
    starts = [i for i in (text.find("{"), text.find("[")) if i >= 0]
    if not starts:
        return None
    start = min(starts)
    stack: list[str] = []
    in_string = False
    escape = False
    for i in range(start, len(text)):
        c = text[i]
        if escape:
            escape = False
            continue
        if in_string:
            if c == "\\":
                escape = True
            elif c == '"':
                in_string = False
            continue
        if c == '"':
            in_string = True
        elif c == "{":
            stack.append("}")
        elif c == "[":
            stack.append("]")
        elif c in "}]":
            if not stack or stack[-1] != c:
                return None
            stack.pop()
            if not stack:
                return text[start : i + 1]
    return None


def extract_json(text: str) -> Any:
    """Pull the JSON payload out of free-form model text.

    Order: fenced code block, then the first balanced bracketed region, then
    the full text. Each candidate is tried as-is and after light sanitizing.

    Raises:
        JSONExtractionError: nothing parseable was found.
    """
    if not isinstance(text, str):
        raise JSONExtractionError(f"expected text, got {type(text).__name__}")

    fence = _FENCE_RE.search(text)
    source = fence.group(1).strip() if fence else text.strip()

    candidates: list[str] = []
    region = _find_balanced_region(source)
    if region is not None:
        candidates.append(region)
    if source not in candidates:
        candidates.append(source)

    last_error: Optional[json.JSONDecodeError] = None
    for candidate in candidates:
        for attempt in (candidate, _sanitize_json(candidate)):
            try:
                return json.loads(attempt)
            except json.JSONDecodeError as e:
                last_error = e
    raise JSONExtractionError(str(last_error) if last_error else "empty response")


# ═══════════════════════════════════════════════════════════
# Schema validation
# ═══════════════════════════════════════════════════════════

# pydantic error type -> stable code
_CODE_MAP: dict[str, str] = {
    "string_too_short": "too_small",
    "too_short": "too_small",
    "greater_than": "too_small",
    "greater_than_equal": "too_small",
    "string_too_long": "too_big",
    "too_long": "too_big",
    "less_than": "too_big",
    "less_than_equal": "too_big",
    "missing": "invalid_type",
    "int_from_float": "invalid_type",
    "literal_error": "invalid_enum_value",
    "enum": "invalid_enum_value",
    "extra_forbidden": "unrecognized_keys",
}

_TYPE_NAMES: dict[str, str] = {
    "int": "integer",
    "float": "number",
    "string": "string",
    "bool": "boolean",
    "list": "array",
    "dict": "object",
    "model": "object",
    "model_attributes": "object",
}

# loc entries pydantic inserts for union members, e.g. ("reps", "int")
_UNION_TAGS = frozenset({"int", "str", "float", "bool", "list", "dict"})
_UNION_TAG_PREFIXES = ("constrained-", "function-")


def _is_union_tag(part: Any) -> bool:
    return isinstance(part, str) and (part in _UNION_TAGS or part.startswith(_UNION_TAG_PREFIXES))


def _code_for(error_type: str) -> str:
    if error_type in _CODE_MAP:
        return _CODE_MAP[error_type]
    if error_type.endswith("_type") or error_type.endswith("_parsing"):
        return "invalid_type"
    return "custom"


def _expected_for(error_type: str, ctx: dict[str, Any]) -> Optional[str]:
    if error_type == "literal_error" or error_type == "enum":
        return str(ctx.get("expected", "")) or None
    if error_type == "greater_than_equal":
        return f">= {ctx.get('ge')}"
    if error_type == "greater_than":
        return f"> {ctx.get('gt')}"
    if error_type == "less_than_equal":
        return f"<= {ctx.get('le')}"
    if error_type == "less_than":
        return f"< {ctx.get('lt')}"
    if error_type in ("string_too_short", "too_short"):
        return f"length >= {ctx.get('min_length')}"
    if error_type in ("string_too_long", "too_long"):
        return f"length <= {ctx.get('max_length')}"
    if error_type == "missing":
        return "required"
    if error_type.endswith("_type"):
        return _TYPE_NAMES.get(error_type[: -len("_type")])
    return None


def format_validation_errors(issues: Iterable[Mapping[str, Any]]) -> list[ValidationError]:
    """One ValidationError per pydantic issue, union branches folded into one entry."""
    by_path: dict[str, ValidationError] = {}
    order: list[str] = []
    for issue in issues:
        loc = list(issue.get("loc", ()))
        from_union = bool(loc) and _is_union_tag(loc[-1])
        if from_union:
            loc = loc[:-1]
        path = ".".join(str(p) for p in loc)
        error_type = issue.get("type", "")
        ctx = issue.get("ctx") or {}
        entry = ValidationError(
            path=path,
            message=issue.get("msg", ""),
            code=_code_for(error_type),
            expected=_expected_for(error_type, ctx),
        )
        key = path if from_union else f"{path}#{len(order)}"
        if from_union and key in by_path:
            prev = by_path[key]
            by_path[key] = prev.model_copy(update={
                "message": f"{prev.message} or {entry.message}",
                "expected": " | ".join(e for e in (prev.expected, entry.expected) if e) or None,
            })
            continue
        by_path[key] = entry
        order.append(key)
    return [by_path[k] for k in order]


@lru_cache(maxsize=None)
def _adapter(schema: Any) -> TypeAdapter:
    return TypeAdapter(schema)


def _schema_name(schema: Any) -> str:
    return getattr(schema, "__name__", None) or str(schema)


def validate_with_schema(data: Any, schema: Any) -> ParsedAIResult:
    """Validate already-parsed data against a model class (or list[Model])."""
    try:
        validated = _adapter(schema).validate_python(data)
    except PydanticValidationError as e:
        errors = format_validation_errors(e.errors(include_url=False))
        return ParsedAIResult(success=False, errors=errors, raw_input=data)
    return ParsedAIResult(success=True, data=validated)


def coerce_and_validate(data: Any, schema: Any) -> ParsedAIResult:
    """Repair known AI-output quirks (numeric strings, scalar-for-array), then validate once."""
    return validate_with_schema(apply_coercions(data, schema), schema)


def _record_failure(schema: Any, result: ParsedAIResult, preview: str = "") -> None:
    errors = result.errors or []
    name = _schema_name(schema)
    for e in errors:
        obs_metrics.record_validation_failure(schema=name, code=e.code)
    logger.warning(
        "ai_response_invalid",
        schema=name,
        error_count=len(errors),
        codes=sorted({e.code for e in errors}),
        first_path=errors[0].path if errors else "",
        preview=preview[:200],
    )


def parse_ai_response(response: str, schema: Any, coerce: bool = False) -> ParsedAIResult:
    """Extract, validate and optionally coerce a model response.

    Args:
        response: raw model text (may wrap JSON in a markdown fence or prose)
        schema: target model class, or list[Model]
        coerce: when True and validation fails, run the coercion pass and
            validate exactly once more

    Returns:
        ParsedAIResult with data on success; otherwise errors, where
        code "invalid_json" means no JSON payload could be parsed at all.
    """
    try:
        payload = extract_json(response)
    except JSONExtractionError as e:
        result = ParsedAIResult(
            success=False,
            errors=[ValidationError(path="", message=f"Invalid JSON: {e}", code="invalid_json")],
            raw_input=response,
        )
        _record_failure(schema, result, preview=response if isinstance(response, str) else "")
        return result

    result = validate_with_schema(payload, schema)
    if not result.success and coerce:
        coerced = coerce_and_validate(payload, schema)
        logger.debug(
            "ai_response_coercion_applied",
            schema=_schema_name(schema),
            recovered=coerced.success,
        )
        result = coerced
    if not result.success:
        _record_failure(schema, result, preview=response)
    return result


def create_validation_error_prompt(errors: list[ValidationError]) -> str:
    """Render errors as an instruction block for a corrective re-prompt."""
    lines = []
    for e in errors:
        line = f"- {e.path or '(root)'}: {e.message}"
        if e.expected:
            line += f" (expected: {e.expected})"
        lines.append(line)
    return (
        "The previous response had validation errors. "
        "Please fix the following issues and provide a valid response:\n\n" + "\n".join(lines)
    )


# ═══════════════════════════════════════════════════════════
# Workout-plan helpers
# ═══════════════════════════════════════════════════════════


def validate_workout_plan(data: Any) -> ParsedAIResult:
    return validate_with_schema(data, WorkoutPlan)


def validate_workout_session(data: Any) -> ParsedAIResult:
    return validate_with_schema(data, WorkoutSession)


def validate_exercise(data: Any) -> ParsedAIResult:
    return validate_with_schema(data, Exercise)


def validate_partial(data: Any, schema: type[BaseModel]) -> ParsedAIResult:
    """Validate what is present; missing top-level fields are not errors.

    Nested objects are still checked in full. On success data is a dict of
    the supplied top-level fields.
    """
    try:
        validated = _adapter(schema).validate_python(data)
    except PydanticValidationError as e:
        remaining = [
            issue for issue in e.errors(include_url=False)
            if not (issue.get("type") == "missing" and len(issue.get("loc", ())) == 1)
        ]
        if remaining:
            return ParsedAIResult(success=False, errors=format_validation_errors(remaining), raw_input=data)
        return ParsedAIResult(success=True, data=dict(data))
    return ParsedAIResult(success=True, data=validated.model_dump(by_alias=True, exclude_unset=True))


def extract_workout_plans(response: str, coerce: bool = False) -> ParsedAIResult:
    """Plans from a response holding an array, a {"plans": [...]} wrapper, or a single plan."""
    as_list = parse_ai_response(response, list[WorkoutPlan], coerce=coerce)
    if as_list.success:
        return as_list

    wrapped = parse_ai_response(response, WorkoutPlanBatch, coerce=coerce)
    if wrapped.success:
        return ParsedAIResult(success=True, data=wrapped.data.plans)

    single = parse_ai_response(response, WorkoutPlan, coerce=coerce)
    if single.success:
        return ParsedAIResult(success=True, data=[single.data])

    return ParsedAIResult(
        success=False,
        errors=[ValidationError(
            path="",
            message="Could not extract workout plans from response",
            code="extraction_failed",
        )],
        raw_input=response,
    )
