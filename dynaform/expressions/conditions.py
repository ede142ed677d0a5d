"""
DYNAFORM Declarative Conditions

Evaluates rule ``condition`` gates and Conditional-branch predicates.

Accepted shapes:
    True / False
    "age >= 18"                                        (expression string)
    {"type": "fieldValue", "fieldPath": "age", "operator": "greaterOrEqual", "value": 18}
    {"type": "javascript" | "expression", "expression": "age >= 18"}
    {"type": "custom", "expression": "<registered condition name>"}
    {"type": "fieldState", "fieldPath": "email", "state": "touched"}
    {"type": "and" | "or", "conditions": [...]}
"""

from __future__ import annotations
from typing import Any, Callable, Dict, Optional
import logging
import re

from dynaform.core.paths import UNDEFINED
from dynaform.errors.exceptions import ExpressionEvaluationError, RuleConfigurationError
from dynaform.expressions.evaluator import (
    STATE_FLAGS,
    EvaluationScope,
    ExpressionDependencies,
    evaluate_expression,
    extract_dependencies,
    is_truthy,
    loose_equals,
    to_number,
    to_string,
)
from dynaform.expressions.parser import parse_expression

logger = logging.getLogger(__name__)

ConditionFunction = Callable[[EvaluationScope], Any]


def _greater(a: Any, b: Any) -> bool:
    x, y = to_number(a), to_number(b)
    return x == x and y == y and x > y


def _less(a: Any, b: Any) -> bool:
    x, y = to_number(a), to_number(b)
    return x == x and y == y and x < y


def _matches(a: Any, b: Any) -> bool:
    if a is UNDEFINED or a is None:
        return False
    try:
        return re.search(to_string(b), to_string(a)) is not None
    except re.error as e:
        raise ExpressionEvaluationError(f"Invalid pattern {b!r}: {e}") from e


def _contains(a: Any, b: Any) -> bool:
    if isinstance(a, str):
        return to_string(b) in a
    if isinstance(a, (list, tuple)):
        return any(loose_equals(item, b) for item in a)
    return False


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": loose_equals,
    "notEquals": lambda a, b: not loose_equals(a, b),
    "greater": _greater,
    "less": _less,
    "greaterOrEqual": lambda a, b: _greater(a, b) or loose_equals(a, b),
    "lessOrEqual": lambda a, b: _less(a, b) or loose_equals(a, b),
    "contains": _contains,
    "startsWith": lambda a, b: isinstance(a, str) and a.startswith(to_string(b)),
    "endsWith": lambda a, b: isinstance(a, str) and a.endswith(to_string(b)),
    "matches": _matches,
}

CONDITION_TYPES = ("fieldValue", "javascript", "expression", "custom", "fieldState", "and", "or")


def evaluate_condition(
    condition: Any,
    scope: EvaluationScope,
    custom_conditions: Optional[Dict[str, ConditionFunction]] = None,
) -> bool:
    """
    Evaluate a condition to a bool.

    ``None`` means "no condition" and is True.

    Raises:
        RuleConfigurationError: unknown condition type, operator or custom name
        ExpressionEvaluationError: unsupported call inside an expression
    """
    if condition is None or condition is True:
        return True
    if condition is False:
        return False
    if isinstance(condition, str):
        return is_truthy(evaluate_expression(condition, scope))
    if not isinstance(condition, dict):
        raise RuleConfigurationError(f"Unsupported condition {condition!r}")

    kind = condition.get("type")

    if kind == "fieldValue":
        operator = condition.get("operator", "equals")
        fn = OPERATORS.get(operator)
        if fn is None:
            raise RuleConfigurationError(f"Unknown condition operator '{operator}'")
        actual = scope.resolve(condition["fieldPath"])
        return bool(fn(actual, condition.get("value")))

    if kind in ("javascript", "expression"):
        return is_truthy(evaluate_expression(condition["expression"], scope))

    if kind == "custom":
        name = condition.get("expression") or condition.get("name")
        fn = (custom_conditions or {}).get(name)
        if fn is None:
            raise RuleConfigurationError(f"Custom condition '{name}' is not registered")
        return is_truthy(fn(scope))

    if kind == "fieldState":
        flag = condition.get("state", "dirty")
        if flag not in STATE_FLAGS:
            raise RuleConfigurationError(f"Unknown field state '{flag}'")
        path = condition.get("fieldPath")
        segments = scope.bind(path) if path else scope.field_path
        expected = condition.get("is", True)
        return scope.state(segments).get(flag, False) == expected

    if kind == "and":
        return all(evaluate_condition(c, scope, custom_conditions) for c in condition.get("conditions", []))

    if kind == "or":
        return any(evaluate_condition(c, scope, custom_conditions) for c in condition.get("conditions", []))

    raise RuleConfigurationError(f"Unknown condition type '{kind}'")


def validate_condition(condition: Any) -> None:
    """
    Static check: parse expressions and validate shapes without evaluating.

    Raises:
        RuleConfigurationError: on a malformed condition
        ExpressionError: on an expression syntax error
    """
    if condition is None or isinstance(condition, bool):
        return
    if isinstance(condition, str):
        parse_expression(condition)
        return
    if not isinstance(condition, dict):
        raise RuleConfigurationError(f"Unsupported condition {condition!r}")

    kind = condition.get("type")
    if kind not in CONDITION_TYPES:
        raise RuleConfigurationError(f"Unknown condition type '{kind}'")
    if kind == "fieldValue":
        if "fieldPath" not in condition:
            raise RuleConfigurationError("fieldValue condition requires 'fieldPath'")
        if condition.get("operator", "equals") not in OPERATORS:
            raise RuleConfigurationError(f"Unknown condition operator '{condition.get('operator')}'")
    elif kind in ("javascript", "expression"):
        parse_expression(condition.get("expression", ""))
    elif kind == "fieldState":
        if condition.get("state", "dirty") not in STATE_FLAGS:
            raise RuleConfigurationError(f"Unknown field state '{condition.get('state')}'")
    elif kind in ("and", "or"):
        for child in condition.get("conditions", []):
            validate_condition(child)


def condition_dependencies(condition: Any) -> ExpressionDependencies:
    """Field paths and state flags a condition reads."""
    deps = ExpressionDependencies()
    if condition is None or isinstance(condition, bool):
        return deps
    if isinstance(condition, str):
        return deps.merge(extract_dependencies(condition))
    if not isinstance(condition, dict):
        return deps

    kind = condition.get("type")
    if kind == "fieldValue":
        deps.add_field(condition["fieldPath"])
    elif kind in ("javascript", "expression"):
        deps.merge(extract_dependencies(condition["expression"]))
    elif kind == "fieldState":
        deps.add_state(condition.get("fieldPath") or "", condition.get("state", "dirty"))
    elif kind in ("and", "or"):
        for child in condition.get("conditions", []):
            deps.merge(condition_dependencies(child))
    return deps
