"""
errors/exceptions.py - Exception hierarchy

Raised for configuration problems detected at registration time.
Runtime strategy failures are never raised; they become
failed ComputationResults and DerivationFailure records.
"""

from __future__ import annotations
from typing import List, Optional


class DerivationError(Exception):
    """Base class for all engine errors."""
    pass


class RuleConfigurationError(DerivationError):
    """A rule declaration is invalid (missing strategy, unknown function, ...)."""

    def __init__(self, message: str, target: Optional[str] = None):
        self.target = target
        if target:
            message = f"[{target}] {message}"
        super().__init__(message)


class CyclicDependencyError(DerivationError):
    """Raised when a rule would close a dependency cycle."""

    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(f"Cyclic dependency detected: {' -> '.join(cycle)}")


class ExpressionError(DerivationError):
    """Expression failed to tokenize or parse."""

    def __init__(self, message: str, position: int = -1, expression: str = ""):
        self.position = position
        self.expression = expression
        if position >= 0:
            message = f"{message} at position {position}"
        super().__init__(message)


class ExpressionEvaluationError(DerivationError):
    """Expression parsed but could not be evaluated (unknown method, bad call)."""
    pass


class PathError(DerivationError):
    """Malformed field path."""
    pass


class StrategyExecutionError(DerivationError):
    """Wraps an exception raised inside a computation strategy."""

    def __init__(self, message: str, code: str = "FUNC_FAILED"):
        self.code = code
        super().__init__(message)
