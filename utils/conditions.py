"""
Condition operators — evaluated by condition nodes against session data.

Evaluates RuleCondition objects against a flat-or-nested data dictionary
built from the session's collected fields and template variables.
Supports dot-notation field access and numeric coercion of user replies
(form answers always arrive as strings).
"""
from __future__ import annotations

import operator as op
import re
from typing import Any, Iterable

from models.schemas import RuleCondition


def _casefold_eq(a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        return a.strip().casefold() == b.strip().casefold()
    return a == b


OPERATORS: dict[str, Any] = {
    "eq": op.eq,
    "neq": op.ne,
    "ieq": _casefold_eq,
    "gt": op.gt,
    "gte": op.ge,
    "lt": op.lt,
    "lte": op.le,
    "in": lambda a, b: a in b,
    "not_in": lambda a, b: a not in b,
    "contains": lambda a, b: str(b).casefold() in str(a).casefold(),
    "regex": lambda a, b: bool(re.search(str(b), str(a))),
    "exists": lambda a, b: a is not None,
    "not_exists": lambda a, b: a is None,
}

NUMERIC_OPERATORS = {"eq", "neq", "gt", "gte", "lt", "lte"}


def get_nested_value(data: dict, field: str) -> Any:
    """Get a value from nested dict using dot notation. e.g. 'beneficiary.bank'"""
    current = data
    for part in field.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current


def _coerce(val: Any, expected: Any, operator: str) -> Any:
    if operator not in NUMERIC_OPERATORS:
        return val
    if isinstance(expected, bool) or not isinstance(expected, (int, float)):
        return val
    if isinstance(val, str):
        return float(val.replace(",", "").strip())
    return val


def evaluate_condition(condition: RuleCondition, data: dict[str, Any]) -> bool:
    """Evaluate a single condition against data. Unknown operators never match."""
    fn = OPERATORS.get(condition.operator)
    if fn is None:
        return False
    val = get_nested_value(data, condition.field)
    try:
        return bool(fn(_coerce(val, condition.value, condition.operator), condition.value))
    except (TypeError, ValueError, re.error):
        return False


def evaluate_conditions(conditions: Iterable[RuleCondition], data: dict[str, Any]) -> bool:
    """AND of all conditions. An empty list always passes."""
    return all(evaluate_condition(c, data) for c in conditions)
