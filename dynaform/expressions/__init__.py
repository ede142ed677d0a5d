"""
expressions/ - Restricted expression language and declarative conditions
"""

from .lexer import tokenize
from .parser import parse_expression
from .evaluator import (
    EvaluationScope,
    Evaluator,
    ExpressionDependencies,
    evaluate_expression,
    extract_dependencies,
    is_truthy,
)
from .conditions import (
    evaluate_condition,
    validate_condition,
    condition_dependencies,
)

__all__ = [
    "tokenize",
    "parse_expression",
    "EvaluationScope",
    "Evaluator",
    "ExpressionDependencies",
    "evaluate_expression",
    "extract_dependencies",
    "is_truthy",
    "evaluate_condition",
    "validate_condition",
    "condition_dependencies",
]
