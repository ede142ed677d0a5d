"""
DYNAFORM - form value derivation engine

Computes field values from other field values: static maps, expressions,
functions, conditional branches, self-transforms, HTTP lookups and async
functions, with override tracking, debouncing and array-scoped rules.
"""

from dynaform.core import FormModel, WriteOrigin
from dynaform.derivation import DerivationEngine, DerivationRule, FunctionRegistry, collect_rules
from dynaform.errors import DerivationError, RuleConfigurationError, CyclicDependencyError

__version__ = "0.3.0"

__all__ = [
    "FormModel",
    "WriteOrigin",
    "DerivationEngine",
    "DerivationRule",
    "FunctionRegistry",
    "collect_rules",
    "DerivationError",
    "RuleConfigurationError",
    "CyclicDependencyError",
]
