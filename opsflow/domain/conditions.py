"""Workflow trigger conditions evaluated against an event payload.

Accepted shapes:
    None / {}                                   always matches
    {"field": "priority", "operator": "eq", "value": "critical"}
    {"all": [cond, ...]}  {"any": [cond, ...]}  {"not": cond}
    {"priority": "critical", "building": "A"}  flat equality map
Fields are dotted paths into the payload ("request.priority").
"""
from __future__ import annotations

from typing import Any

_MISSING = object()

_OPERATOR_ALIASES = {
    "==": "eq",
    "!=": "ne",
    ">": "gt",
    ">=": "gte",
    "<": "lt",
    "<=": "lte",
}

OPERATORS = frozenset({"eq", "ne", "gt", "gte", "lt", "lte", "in", "not_in", "contains", "exists"})
_COMBINATORS = ("all", "any", "not")


class InvalidConditionError(ValueError):
    pass


def _resolve(payload: dict[str, Any], path: str) -> Any:
    current: Any = payload
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def resolve_path(payload: dict[str, Any], path: str, default: Any = None) -> Any:
    value = _resolve(payload or {}, path)
    return default if value is _MISSING else value


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _compare(operator: str, actual: Any, expected: Any) -> bool:
    if operator == "exists":
        return (actual is not _MISSING) == bool(expected if expected is not None else True)
    if actual is _MISSING:
        return operator == "ne" or operator == "not_in"
    if operator == "eq":
        return actual == expected
    if operator == "ne":
        return actual != expected
    if operator == "in":
        return isinstance(expected, (list, tuple, set)) and actual in expected
    if operator == "not_in":
        return isinstance(expected, (list, tuple, set)) and actual not in expected
    if operator == "contains":
        if isinstance(actual, (list, tuple, set, str)):
            return expected in actual
        return False
    a, e = _as_number(actual), _as_number(expected)
    if a is None or e is None:
        return False
    if operator == "gt":
        return a > e
    if operator == "gte":
        return a >= e
    if operator == "lt":
        return a < e
    if operator == "lte":
        return a <= e
    return False


def evaluate_conditions(conditions: dict[str, Any] | None, payload: dict[str, Any]) -> bool:
    if not conditions:
        return True
    payload = payload or {}
    if "all" in conditions:
        return all(evaluate_conditions(c, payload) for c in conditions["all"])
    if "any" in conditions:
        return any(evaluate_conditions(c, payload) for c in conditions["any"])
    if "not" in conditions:
        return not evaluate_conditions(conditions["not"], payload)
    if "field" in conditions and "operator" in conditions:
        operator = _OPERATOR_ALIASES.get(conditions["operator"], conditions["operator"])
        return _compare(operator, _resolve(payload, conditions["field"]), conditions.get("value"))
    return all(_resolve(payload, key) == expected for key, expected in conditions.items())


def validate_conditions(conditions: dict[str, Any] | None) -> None:
    """Raises InvalidConditionError for structurally broken predicates."""
    if not conditions:
        return
    if not isinstance(conditions, dict):
        raise InvalidConditionError("conditions must be an object")
    if "all" in conditions or "any" in conditions:
        key = "all" if "all" in conditions else "any"
        children = conditions[key]
        if not isinstance(children, list):
            raise InvalidConditionError(f"'{key}' requires a list")
        for child in children:
            validate_conditions(child)
        return
    if "not" in conditions:
        validate_conditions(conditions["not"])
        return
    if "field" in conditions or "operator" in conditions:
        if not conditions.get("field") or not conditions.get("operator"):
            raise InvalidConditionError("field condition requires field and operator")
        operator = _OPERATOR_ALIASES.get(conditions["operator"], conditions["operator"])
        if operator not in OPERATORS:
            raise InvalidConditionError(f"unknown operator '{conditions['operator']}'")
        if operator in ("in", "not_in") and not isinstance(conditions.get("value"), list):
            raise InvalidConditionError(f"operator '{operator}' requires a list value")
