"""
Declarative repair of common AI-output quirks before re-validation.

The rules are data: each schema is compiled once into a table of
JSON field name -> (expected kind, nested schema), and each expected kind
maps to one coercion function in COERCERS. Adding a rule means adding a
table entry, not a branch.

Coercion never invents data and never crosses incompatible types: a
non-numeric string stays a string and is left for validation to reject.
"""

from __future__ import annotations

import inspect
import math
import re
import types
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Annotated, Any, Optional, Union, get_args, get_origin

from pydantic import BaseModel


_INT_RE = re.compile(r"[+-]?\d+")


class ExpectedKind(str, Enum):
    """Shape a field is declared to hold, for coercion purposes."""

    INTEGER = "integer"
    NUMBER = "number"
    ARRAY = "array"


def _parse_number(value: str) -> Optional[float]:
    try:
        parsed = float(value.strip())
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


def _to_integer(value: Any) -> Any:
    """Integral numeric strings and floats become int; anything else unchanged."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip()
        if _INT_RE.fullmatch(text):
            return int(text)
        parsed = _parse_number(text)
        if parsed is not None and parsed.is_integer():
            return int(parsed)
        return value
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    return value


def _to_number(value: Any) -> Any:
    """Numeric strings become float; anything else unchanged."""
    if isinstance(value, str):
        parsed = _parse_number(value)
        return parsed if parsed is not None else value
    return value


def _to_array(value: Any) -> Any:
    """Bare scalar or object where a list is declared -> single-element list."""
    if value is None or isinstance(value, list):
        return value
    return [value]


COERCERS: dict[ExpectedKind, Callable[[Any], Any]] = {
    ExpectedKind.INTEGER: _to_integer,
    ExpectedKind.NUMBER: _to_number,
    ExpectedKind.ARRAY: _to_array,
}


@dataclass(frozen=True)
class FieldCoercion:
    """Coercion rule for one field: value transform and/or nested schema to recurse into."""

    kind: Optional[ExpectedKind] = None
    nested: Optional[type[BaseModel]] = None


def _is_model(tp: Any) -> bool:
    return inspect.isclass(tp) and issubclass(tp, BaseModel)


def _strip_optional(tp: Any) -> Any:
    """Optional[X] -> X; other unions come back as None (ambiguous, not coerced)."""
    origin = get_origin(tp)
    if origin is Union or origin is types.UnionType:
        args = [a for a in get_args(tp) if a is not type(None)]
        return args[0] if len(args) == 1 else None
    return tp


def _rule_for(annotation: Any) -> Optional[FieldCoercion]:
    tp = _strip_optional(annotation)
    if get_origin(tp) is Annotated:
        tp = get_args(tp)[0]
    if tp is None or tp is bool:
        return None
    if tp is int:
        return FieldCoercion(kind=ExpectedKind.INTEGER)
    if tp is float:
        return FieldCoercion(kind=ExpectedKind.NUMBER)
    if get_origin(tp) is list:
        (item,) = get_args(tp) or (Any,)
        return FieldCoercion(kind=ExpectedKind.ARRAY, nested=item if _is_model(item) else None)
    if _is_model(tp):
        return FieldCoercion(nested=tp)
    return None


@lru_cache(maxsize=None)
def build_coercion_table(schema: type[BaseModel]) -> dict[str, FieldCoercion]:
    """Compile a schema into its JSON-field-name -> rule table."""
    table: dict[str, FieldCoercion] = {}
    for name, info in schema.model_fields.items():
        rule = _rule_for(info.annotation)
        if rule is not None:
            # populate_by_name models accept both spellings
            table[name] = rule
            if info.alias:
                table[info.alias] = rule
    return table


def apply_coercions(data: Any, schema: Any) -> Any:
    """Return a coerced copy of data for schema (a model class or list[Model]). Input is not mutated."""
    if get_origin(schema) is list:
        (item,) = get_args(schema) or (Any,)
        if isinstance(data, list) and _is_model(item):
            return [apply_coercions(v, item) for v in data]
        return data
    if not _is_model(schema) or not isinstance(data, dict):
        return data

    out = dict(data)
    for key, rule in build_coercion_table(schema).items():
        if key not in out:
            continue
        value = out[key]
        if rule.kind is not None:
            value = COERCERS[rule.kind](value)
        if rule.nested is not None:
            if isinstance(value, list):
                value = [apply_coercions(v, rule.nested) for v in value]
            elif isinstance(value, dict):
                value = apply_coercions(value, rule.nested)
        out[key] = value
    return out
