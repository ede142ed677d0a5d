"""
Tests for computation strategies.
"""

import pytest
from unittest.mock import AsyncMock

from dynaform.core.enums import ResultStatus, StrategyKind
from dynaform.core.paths import UNDEFINED
from dynaform.derivation.registry import FunctionRegistry
from dynaform.derivation.rules import DerivationRule, compile_rule
from dynaform.derivation.strategies import (
    AsyncFunctionStrategy,
    ComputationResult,
    ConditionalStrategy,
    DerivationContext,
    ExpressionStrategy,
    FunctionStrategy,
    HttpStrategy,
    SelfTransformStrategy,
    StaticMapStrategy,
    build_strategy,
    dependency_values,
)
from dynaform.errors.exceptions import RuleConfigurationError, StrategyExecutionError
from dynaform.errors.taxonomy import ErrorCode


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def ctx(make_scope):
    root = {"country": "US", "quantity": 4, "price": 2.5, "email": "Ada@Example.com", "age": 40, "zip": "10001"}
    return DerivationContext(scope=make_scope(root, field_path=("email",)), dependencies={"country": "US"})


def rule(data):
    return DerivationRule.from_dict(data)


# =============================================================================
# RESULTS
# =============================================================================

class TestComputationResult:
    """Test ComputationResult constructors."""

    def test_tags(self):
        """Test value, pending and failed results."""
        assert ComputationResult.of(1).is_value
        assert ComputationResult.pending().status == ResultStatus.PENDING
        failed = ComputationResult.failed(ValueError("x"))
        assert failed.is_failed
        assert failed.code == ErrorCode.FUNC_FAILED


# =============================================================================
# SYNCHRONOUS STRATEGIES
# =============================================================================

class TestStaticMapStrategy:
    """Test StaticMapStrategy."""

    def test_lookup_by_dependency(self, ctx):
        """Test lookup keyed by the single dependency."""
        strategy = StaticMapStrategy({"US": "USD", "UK": "GBP"}, None)
        assert strategy.compute(ctx).value == "USD"

    def test_lookup_by_source(self, ctx):
        """Test lookup keyed by an explicit source path."""
        strategy = StaticMapStrategy({"40": "forty"}, "age")
        assert strategy.compute(ctx).value == "forty"

    def test_missing_key_is_undefined(self, ctx):
        """Test that an unmapped key produces no value."""
        strategy = StaticMapStrategy({"FR": "EUR"}, "country")
        assert strategy.compute(ctx).value is UNDEFINED

    def test_constant(self, ctx):
        """Test constant values."""
        assert StaticMapStrategy(None, None, constant=7).compute(ctx).value == 7


class TestExpressionStrategy:
    """Test ExpressionStrategy."""

    def test_compute(self, ctx):
        """Test evaluating against the scope."""
        assert ExpressionStrategy("quantity * price").compute(ctx).value == 10.0

    def test_evaluation_failure(self, ctx):
        """Test that unsupported calls become failed results."""
        result = ExpressionStrategy("email.explode()").compute(ctx)
        assert result.is_failed
        assert result.code == ErrorCode.EXPR_EVAL


class TestFunctionStrategy:
    """Test FunctionStrategy."""

    def test_receives_context(self, ctx):
        """Test that functions read through the context."""
        strategy = FunctionStrategy(lambda c: c.resolve("quantity") + len(c.dependencies["country"]))
        assert strategy.compute(ctx).value == 6

    def test_exception_becomes_failure(self, ctx):
        """Test that raised exceptions are captured."""
        def broken(c):
            raise KeyError("missing")

        result = FunctionStrategy(broken).compute(ctx)
        assert result.is_failed
        assert isinstance(result.error, StrategyExecutionError)
        assert "broken" in str(result.error)

    def test_awaitable_return_fails(self, ctx):
        """Test that an accidental coroutine is rejected."""
        async def sneaky(c):
            return 1

        result = FunctionStrategy(sneaky).compute(ctx)
        assert result.is_failed
        assert "awaitable" in str(result.error)


class TestConditionalStrategy:
    """Test ConditionalStrategy."""

    def make(self):
        r = rule({
            "target": "group",
            "branches": [
                {"when": {"type": "fieldValue", "fieldPath": "age", "operator": "less", "value": 18}, "value": "Minor"},
                {"when": "age < 65", "expression": "'Adult ' + age"},
            ],
            "default": "Senior",
        })
        return ConditionalStrategy(r.branches, r.fallback)

    def test_first_match_wins(self, ctx):
        """Test branch evaluation order and branch expressions."""
        assert self.make().compute(ctx).value == "Adult 40"

    def test_fallback(self, make_scope):
        """Test the default when no branch matches."""
        ctx = DerivationContext(scope=make_scope({"age": 70}))
        assert self.make().compute(ctx).value == "Senior"

    def test_no_fallback_is_undefined(self, ctx):
        """Test that no match without a default produces no value."""
        r = rule({"target": "x", "branches": [{"when": "age > 100", "value": 1}]})
        assert ConditionalStrategy(r.branches).compute(ctx).value is UNDEFINED


class TestSelfTransformStrategy:
    """Test SelfTransformStrategy."""

    def test_transforms_own_value(self, ctx):
        """Test that the target field's value is transformed."""
        assert SelfTransformStrategy(str.lower).compute(ctx).value == "ada@example.com"

    def test_missing_value(self, make_scope):
        """Test that a missing field stays missing."""
        ctx = DerivationContext(scope=make_scope({}, field_path=("email",)))
        assert SelfTransformStrategy(str.lower).compute(ctx).value is UNDEFINED


# =============================================================================
# ASYNCHRONOUS STRATEGIES
# =============================================================================

class TestHttpStrategy:
    """Test HttpStrategy."""

    def make(self, transport):
        r = rule({
            "target": "city",
            "http": {"url": "/lookup", "queryParams": {"zip": "zip"}},
            "responseExpression": "response.city",
        })
        return HttpStrategy(r.http, r.response_expression, transport)

    @pytest.mark.asyncio
    async def test_maps_response(self, ctx):
        """Test that the response is mapped with the response expression."""
        transport = AsyncMock(return_value={"city": "New York"})
        result = await self.make(transport).compute_async(ctx)

        assert result.value == "New York"
        request = transport.call_args[0][0]
        assert request.method == "GET"
        assert request.params == {"zip": "10001"}

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self, ctx):
        """Test that transport exceptions become HTTP failures."""
        transport = AsyncMock(side_effect=ConnectionError("refused"))
        result = await self.make(transport).compute_async(ctx)

        assert result.is_failed
        assert result.code == ErrorCode.HTTP_FAILED
        assert isinstance(result.error, StrategyExecutionError)


class TestAsyncFunctionStrategy:
    """Test AsyncFunctionStrategy."""

    @pytest.mark.asyncio
    async def test_awaits_result(self, ctx):
        """Test awaiting the user coroutine."""
        async def lookup(c):
            return c.resolve("country").lower()

        result = await AsyncFunctionStrategy(lookup).compute_async(ctx)
        assert result.value == "us"

    @pytest.mark.asyncio
    async def test_failure(self, ctx):
        """Test that exceptions become ASYNC_FAILED."""
        async def broken(c):
            raise RuntimeError("down")

        result = await AsyncFunctionStrategy(broken).compute_async(ctx)
        assert result.code == ErrorCode.ASYNC_FAILED


# =============================================================================
# FACTORY
# =============================================================================

class TestBuildStrategy:
    """Test build_strategy()."""

    def test_registered_function(self):
        """Test resolving function names through the registry."""
        registry = FunctionRegistry()
        registry.register_derivation("double", lambda c: 2)
        binding = compile_rule(rule({"target": "x", "functionName": "double", "dependsOn": ["a"]}), "r")
        strategy = build_strategy(binding, registry)
        assert isinstance(strategy, FunctionStrategy)

    def test_unknown_function(self):
        """Test that unknown names are configuration errors."""
        binding = compile_rule(rule({"target": "x", "functionName": "nope"}), "r")
        with pytest.raises(RuleConfigurationError):
            build_strategy(binding, FunctionRegistry())

    def test_transform_by_name(self):
        """Test built-in transforms by name."""
        binding = compile_rule(rule({"target": "email", "transform": "lowercase"}), "r")
        strategy = build_strategy(binding, FunctionRegistry())
        assert strategy.kind == StrategyKind.SELF_TRANSFORM

    def test_http_needs_transport(self):
        """Test that HTTP rules need a transport."""
        binding = compile_rule(
            rule({"target": "c", "http": {"url": "/x"}, "responseExpression": "response"}), "r"
        )
        with pytest.raises(RuleConfigurationError):
            build_strategy(binding, FunctionRegistry())

    def test_static_map_defaults_source(self, ctx):
        """Test that a value map keys on its single dependency."""
        binding = compile_rule(rule({"target": "currency", "valueMap": {"US": "USD"}, "dependsOn": ["country"]}), "r")
        strategy = build_strategy(binding, FunctionRegistry())
        assert strategy.source == "country"

    def test_dependency_values(self):
        """Test dependency snapshot for one item instance."""
        binding = compile_rule(
            rule({"target": "items.$.total", "expression": "$.qty * rate"}), "r", array_paths=[("items",)]
        )
        root = {"rate": 3, "items": [{"qty": 2}]}
        assert dependency_values(binding, root, ("items", 0)) == {"$.qty": 2, "rate": 3}
