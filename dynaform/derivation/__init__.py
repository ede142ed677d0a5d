"""
DYNAFORM Derivation

Rule declarations, computation strategies, the per-instance controller and
the engine that wires them to a form model.
"""

from .rules import (
    DerivationRule,
    HttpRequestConfig,
    ConditionalBranch,
    RuleBinding,
    compile_rule,
)
from .collector import (
    CollectedRule,
    RuleCollection,
    collect_rules,
)
from .strategies import (
    ComputationResult,
    DerivationContext,
    StaticMapStrategy,
    ExpressionStrategy,
    FunctionStrategy,
    ConditionalStrategy,
    SelfTransformStrategy,
    HttpStrategy,
    AsyncFunctionStrategy,
    build_strategy,
)
from .http import (
    ResolvedHttpRequest,
    HttpxTransport,
    resolve_request,
)
from .registry import FunctionRegistry
from .transforms import BUILTIN_TRANSFORMS
from .override import OverrideTracker, OverrideRecord
from .debounce import DebounceScheduler
from .controller import DerivationController
from .engine import DerivationEngine

__all__ = [
    # Declarations
    "DerivationRule",
    "HttpRequestConfig",
    "ConditionalBranch",
    "RuleBinding",
    "compile_rule",
    "CollectedRule",
    "RuleCollection",
    "collect_rules",
    # Strategies
    "ComputationResult",
    "DerivationContext",
    "StaticMapStrategy",
    "ExpressionStrategy",
    "FunctionStrategy",
    "ConditionalStrategy",
    "SelfTransformStrategy",
    "HttpStrategy",
    "AsyncFunctionStrategy",
    "build_strategy",
    # HTTP
    "ResolvedHttpRequest",
    "HttpxTransport",
    "resolve_request",
    # Runtime
    "FunctionRegistry",
    "BUILTIN_TRANSFORMS",
    "OverrideTracker",
    "OverrideRecord",
    "DebounceScheduler",
    "DerivationController",
    "DerivationEngine",
]
