"""
DYNAFORM Function Registry

Named user functions referenced from rule declarations:

- derivations:        fn(ctx) -> value              (Function strategy)
- async derivations:  async fn(ctx) -> value        (Async Function strategy)
- transforms:         fn(value) -> value            (Self-Transform strategy)
- conditions:         fn(scope) -> bool             (custom conditions)
"""

from __future__ import annotations
from typing import Any, Awaitable, Callable, Dict, List, Optional
import inspect
import logging

from dynaform.derivation.transforms import BUILTIN_TRANSFORMS, TransformFunction
from dynaform.errors.exceptions import RuleConfigurationError

logger = logging.getLogger(__name__)

DerivationFunction = Callable[[Any], Any]
AsyncDerivationFunction = Callable[[Any], Awaitable[Any]]
ConditionFunction = Callable[[Any], Any]


class FunctionRegistry:
    """Registry of named derivation, transform and condition functions."""

    def __init__(self, include_builtins: bool = True):
        self._derivations: Dict[str, DerivationFunction] = {}
        self._async_derivations: Dict[str, AsyncDerivationFunction] = {}
        self._transforms: Dict[str, TransformFunction] = dict(BUILTIN_TRANSFORMS) if include_builtins else {}
        self._conditions: Dict[str, ConditionFunction] = {}

    def register_derivation(self, name: str, fn: DerivationFunction) -> None:
        """Register a synchronous derivation function."""
        if inspect.iscoroutinefunction(fn):
            raise RuleConfigurationError(f"Derivation '{name}' is async; use register_async")
        self._warn_overwrite(self._derivations, name, "derivation")
        self._derivations[name] = fn

    def register_async(self, name: str, fn: AsyncDerivationFunction) -> None:
        """Register an asynchronous derivation function."""
        self._warn_overwrite(self._async_derivations, name, "async derivation")
        self._async_derivations[name] = fn

    def register_transform(self, name: str, fn: TransformFunction) -> None:
        self._warn_overwrite(self._transforms, name, "transform")
        self._transforms[name] = fn

    def register_condition(self, name: str, fn: ConditionFunction) -> None:
        self._warn_overwrite(self._conditions, name, "condition")
        self._conditions[name] = fn

    def get_derivation(self, name: str) -> DerivationFunction:
        return self._lookup(self._derivations, name, "Derivation function")

    def get_async(self, name: str) -> AsyncDerivationFunction:
        return self._lookup(self._async_derivations, name, "Async derivation function")

    def get_transform(self, name: str) -> TransformFunction:
        return self._lookup(self._transforms, name, "Transform")

    def get_condition(self, name: str) -> Optional[ConditionFunction]:
        return self._conditions.get(name)

    @property
    def conditions(self) -> Dict[str, ConditionFunction]:
        """Live mapping of registered conditions. Read-only by convention."""
        return self._conditions

    def list_functions(self) -> Dict[str, List[str]]:
        return {
            "derivations": sorted(self._derivations),
            "async_derivations": sorted(self._async_derivations),
            "transforms": sorted(self._transforms),
            "conditions": sorted(self._conditions),
        }

    def _lookup(self, table: Dict[str, Any], name: str, label: str) -> Any:
        fn = table.get(name)
        if fn is None:
            raise RuleConfigurationError(f"{label} '{name}' is not registered")
        return fn

    def _warn_overwrite(self, table: Dict[str, Any], name: str, label: str) -> None:
        if name in table:
            logger.warning(f"Replacing registered {label} '{name}'")
