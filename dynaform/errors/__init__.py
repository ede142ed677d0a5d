"""
errors/ - Exceptions, failure taxonomy and aggregation

Configuration problems raise; runtime failures are recorded.
"""

from .exceptions import (
    DerivationError,
    RuleConfigurationError,
    CyclicDependencyError,
    ExpressionError,
    ExpressionEvaluationError,
    PathError,
    StrategyExecutionError,
)

from .taxonomy import (
    ErrorSeverity,
    ErrorCategory,
    ErrorCode,
    DerivationFailure,
)

from .aggregator import (
    ErrorReport,
    ErrorAggregator,
)

__all__ = [
    # Exceptions
    "DerivationError",
    "RuleConfigurationError",
    "CyclicDependencyError",
    "ExpressionError",
    "ExpressionEvaluationError",
    "PathError",
    "StrategyExecutionError",
    # Taxonomy
    "ErrorSeverity",
    "ErrorCategory",
    "ErrorCode",
    "DerivationFailure",
    # Aggregator
    "ErrorReport",
    "ErrorAggregator",
]
