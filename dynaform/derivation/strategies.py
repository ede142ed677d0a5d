"""
DYNAFORM Computation Strategies

One strategy per rule kind. Given the current scope a strategy produces a
ComputationResult: Value(v), Pending or Failed(error).

Synchronous strategies (static map, expression, function, conditional,
self-transform) implement compute(). HTTP and async-function strategies
implement compute_async() and are only ever awaited by a controller.

No strategy raises at evaluation time: exceptions from evaluation, user
callbacks or the transport become Failed results.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
import inspect
import logging

from dynaform.core.enums import ResultStatus, StrategyKind
from dynaform.core.paths import UNDEFINED, Segments, resolve_segments
from dynaform.derivation.http import HttpTransport, resolve_request
from dynaform.derivation.registry import FunctionRegistry
from dynaform.derivation.rules import ConditionalBranch, HttpRequestConfig, RuleBinding
from dynaform.errors.exceptions import (
    DerivationError,
    ExpressionError,
    ExpressionEvaluationError,
    RuleConfigurationError,
    StrategyExecutionError,
)
from dynaform.errors.taxonomy import ErrorCode
from dynaform.expressions.conditions import evaluate_condition
from dynaform.expressions.evaluator import EvaluationScope, evaluate_expression, to_string
from dynaform.expressions.parser import parse_expression

logger = logging.getLogger(__name__)


# =============================================================================
# RESULTS AND CONTEXT
# =============================================================================

@dataclass(frozen=True)
class ComputationResult:
    """Tagged outcome of one strategy evaluation."""
    status: ResultStatus
    value: Any = UNDEFINED
    error: Optional[BaseException] = None
    code: Optional[ErrorCode] = None

    @classmethod
    def of(cls, value: Any) -> "ComputationResult":
        return cls(ResultStatus.VALUE, value=value)

    @classmethod
    def pending(cls) -> "ComputationResult":
        return cls(ResultStatus.PENDING)

    @classmethod
    def failed(cls, error: BaseException, code: ErrorCode = ErrorCode.FUNC_FAILED) -> "ComputationResult":
        return cls(ResultStatus.FAILED, error=error, code=code)

    @property
    def is_value(self) -> bool:
        return self.status == ResultStatus.VALUE

    @property
    def is_failed(self) -> bool:
        return self.status == ResultStatus.FAILED


@dataclass
class DerivationContext:
    """
    What user functions receive.

    Attributes:
        scope: Full evaluation scope (expressions, state lookups)
        dependencies: Declared dependency name -> current value
    """
    scope: EvaluationScope
    dependencies: Dict[str, Any] = field(default_factory=dict)

    @property
    def field_value(self) -> Any:
        return self.scope.field_value

    @property
    def form_value(self) -> Any:
        return self.scope.root

    @property
    def item_value(self) -> Any:
        return self.scope.item_value

    @property
    def field_state(self) -> Dict[str, bool]:
        return self.scope.state(self.scope.field_path)

    @property
    def external_data(self) -> Dict[str, Any]:
        return self.scope.external_data

    def resolve(self, path: Any) -> Any:
        """Value at a path, item/group first, then root."""
        return self.scope.resolve(path)

    def form_field_state(self, path: Any) -> Dict[str, bool]:
        return self.scope.state(self.scope.bind(path))


def _failure_code(error: BaseException, default: ErrorCode) -> ErrorCode:
    if isinstance(error, ExpressionError):
        return ErrorCode.EXPR_SYNTAX
    if isinstance(error, ExpressionEvaluationError):
        return ErrorCode.EXPR_EVAL
    if isinstance(error, StrategyExecutionError):
        try:
            return ErrorCode(error.code)
        except ValueError:
            return default
    return default


# =============================================================================
# SYNCHRONOUS STRATEGIES
# =============================================================================

class ComputationStrategy:
    """Base class for synchronous strategies."""

    kind: StrategyKind

    def compute(self, ctx: DerivationContext) -> ComputationResult:
        raise NotImplementedError


class StaticMapStrategy(ComputationStrategy):
    """Look the dependency value up in a table, or return a constant."""

    kind = StrategyKind.STATIC_MAP

    def __init__(self, value_map: Optional[Dict[str, Any]], source: Optional[str], constant: Any = UNDEFINED):
        self.value_map = value_map
        self.source = source
        self.constant = constant

    def compute(self, ctx: DerivationContext) -> ComputationResult:
        if self.value_map is None:
            return ComputationResult.of(self.constant)
        key = ctx.resolve(self.source) if self.source else next(iter(ctx.dependencies.values()), UNDEFINED)
        if key is UNDEFINED:
            return ComputationResult.of(UNDEFINED)
        return ComputationResult.of(self.value_map.get(to_string(key), UNDEFINED))


class ExpressionStrategy(ComputationStrategy):
    kind = StrategyKind.EXPRESSION

    def __init__(self, expression: str):
        self.expression = expression
        self._ast = parse_expression(expression)

    def compute(self, ctx: DerivationContext) -> ComputationResult:
        try:
            return ComputationResult.of(evaluate_expression(self._ast, ctx.scope))
        except DerivationError as e:
            return ComputationResult.failed(e, _failure_code(e, ErrorCode.EXPR_EVAL))
        except Exception as e:
            return ComputationResult.failed(e, ErrorCode.EXPR_EVAL)


class FunctionStrategy(ComputationStrategy):
    """Call a user function with the DerivationContext."""

    kind = StrategyKind.FUNCTION

    def __init__(self, fn: Callable[[DerivationContext], Any], name: str = ""):
        self.fn = fn
        self.name = name or getattr(fn, "__name__", "function")

    def compute(self, ctx: DerivationContext) -> ComputationResult:
        try:
            value = self.fn(ctx)
        except Exception as e:
            return ComputationResult.failed(
                StrategyExecutionError(f"Function '{self.name}' raised: {e}"), ErrorCode.FUNC_FAILED,
            )
        if inspect.isawaitable(value):
            if inspect.iscoroutine(value):
                value.close()
            return ComputationResult.failed(
                StrategyExecutionError(f"Function '{self.name}' returned an awaitable; declare it as async"),
                ErrorCode.FUNC_FAILED,
            )
        return ComputationResult.of(value)


class ConditionalStrategy(ComputationStrategy):
    """First matching branch wins; the fallback applies when none match."""

    kind = StrategyKind.CONDITIONAL

    def __init__(
        self,
        branches: List[ConditionalBranch],
        fallback: Any = UNDEFINED,
        conditions: Optional[Dict[str, Callable]] = None,
    ):
        self.branches = branches
        self.fallback = fallback
        self.conditions = conditions or {}

    def compute(self, ctx: DerivationContext) -> ComputationResult:
        try:
            for branch in self.branches:
                if evaluate_condition(branch.when, ctx.scope, self.conditions):
                    if branch.expression is not None:
                        return ComputationResult.of(evaluate_expression(branch.expression, ctx.scope))
                    return ComputationResult.of(branch.value)
        except DerivationError as e:
            return ComputationResult.failed(e, _failure_code(e, ErrorCode.EXPR_EVAL))
        except Exception as e:
            return ComputationResult.failed(e, ErrorCode.EXPR_EVAL)
        return ComputationResult.of(self.fallback)


class SelfTransformStrategy(ComputationStrategy):
    """Reformat the field's own value."""

    kind = StrategyKind.SELF_TRANSFORM

    def __init__(self, transform: Callable[[Any], Any], name: str = ""):
        self.transform = transform
        self.name = name or getattr(transform, "__name__", "transform")

    def compute(self, ctx: DerivationContext) -> ComputationResult:
        current = ctx.field_value
        if current is UNDEFINED:
            return ComputationResult.of(UNDEFINED)
        try:
            return ComputationResult.of(self.transform(current))
        except Exception as e:
            return ComputationResult.failed(
                StrategyExecutionError(f"Transform '{self.name}' raised: {e}"), ErrorCode.FUNC_FAILED,
            )


# =============================================================================
# ASYNCHRONOUS STRATEGIES
# =============================================================================

class AsyncComputationStrategy:
    """Base class for strategies that await an external call."""

    kind: StrategyKind

    async def compute_async(self, ctx: DerivationContext) -> ComputationResult:
        raise NotImplementedError


class HttpStrategy(AsyncComputationStrategy):
    """Issue one request and map the decoded body with ``responseExpression``."""

    kind = StrategyKind.HTTP

    def __init__(self, config: HttpRequestConfig, response_expression: str, transport: HttpTransport):
        self.config = config
        self.response_expression = response_expression
        self.transport = transport
        self._response_ast = parse_expression(response_expression)

    async def compute_async(self, ctx: DerivationContext) -> ComputationResult:
        try:
            request = resolve_request(self.config, ctx.scope)
        except DerivationError as e:
            return ComputationResult.failed(e, _failure_code(e, ErrorCode.EXPR_EVAL))

        try:
            response = await self.transport(request)
        except Exception as e:
            if not isinstance(e, StrategyExecutionError):
                e = StrategyExecutionError(f"{request.method} {request.url} failed: {e}", code="HTTP_FAILED")
            return ComputationResult.failed(e, _failure_code(e, ErrorCode.HTTP_FAILED))

        try:
            value = evaluate_expression(self._response_ast, ctx.scope.with_variables(response=response))
        except DerivationError as e:
            return ComputationResult.failed(e, _failure_code(e, ErrorCode.EXPR_EVAL))
        return ComputationResult.of(value)


class AsyncFunctionStrategy(AsyncComputationStrategy):
    kind = StrategyKind.ASYNC_FUNCTION

    def __init__(self, fn: Callable[[DerivationContext], Any], name: str = ""):
        self.fn = fn
        self.name = name or getattr(fn, "__name__", "async_function")

    async def compute_async(self, ctx: DerivationContext) -> ComputationResult:
        try:
            value = self.fn(ctx)
            if inspect.isawaitable(value):
                value = await value
        except Exception as e:
            return ComputationResult.failed(
                StrategyExecutionError(f"Async function '{self.name}' failed: {e}", code="ASYNC_FAILED"),
                ErrorCode.ASYNC_FAILED,
            )
        return ComputationResult.of(value)


# =============================================================================
# FACTORY
# =============================================================================

def build_strategy(
    binding: RuleBinding,
    registry: FunctionRegistry,
    transport: Optional[HttpTransport] = None,
):
    """
    Instantiate the strategy for a bound rule.

    Raises:
        RuleConfigurationError: unknown function name, or HTTP without a transport
    """
    rule = binding.rule
    kind = binding.kind

    if kind == StrategyKind.STATIC_MAP:
        source = rule.source
        if rule.value_map is not None and source is None:
            source = rule.depends_on[0]
        return StaticMapStrategy(rule.value_map, source, rule.value)

    if kind == StrategyKind.EXPRESSION:
        return ExpressionStrategy(rule.expression)

    if kind == StrategyKind.FUNCTION:
        fn = rule.function or registry.get_derivation(rule.function_name)
        return FunctionStrategy(fn, rule.function_name or "")

    if kind == StrategyKind.CONDITIONAL:
        return ConditionalStrategy(rule.branches, rule.fallback, registry.conditions)

    if kind == StrategyKind.SELF_TRANSFORM:
        if isinstance(rule.transform, str):
            return SelfTransformStrategy(registry.get_transform(rule.transform), rule.transform)
        return SelfTransformStrategy(rule.transform)

    if kind == StrategyKind.HTTP:
        if transport is None:
            raise RuleConfigurationError("HTTP derivation needs a transport", target=rule.target)
        return HttpStrategy(rule.http, rule.response_expression, transport)

    if kind == StrategyKind.ASYNC_FUNCTION:
        fn = rule.async_function or registry.get_async(rule.async_function_name)
        return AsyncFunctionStrategy(fn, rule.async_function_name or "")

    raise RuleConfigurationError(f"Unsupported strategy {kind}", target=rule.target)


def dependency_values(binding: RuleBinding, root: Any, item_path: Optional[Segments]) -> Dict[str, Any]:
    """Declared dependency name -> current value for one instance."""
    return {
        ref.name: resolve_segments(root, ref.concrete(item_path))
        for ref in binding.snapshot_refs
    }
