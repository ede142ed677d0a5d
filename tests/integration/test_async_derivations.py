"""
tests/integration/test_async_derivations.py - Integration tests for deferred derivations.

Debounced self-transforms, HTTP lookups and async functions running on the
event loop.
"""

import asyncio

import pytest
from unittest.mock import Mock

from dynaform.derivation.engine import DerivationEngine
from dynaform.derivation.registry import FunctionRegistry
from dynaform.errors.exceptions import StrategyExecutionError
from dynaform.errors.taxonomy import ErrorCode


CITIES = {"10001": "New York", "60601": "Chicago"}


class FakeLookupTransport:
    """Answers city lookups by zip code and records every request."""

    def __init__(self):
        self.requests = []

    async def __call__(self, request):
        self.requests.append(request)
        zip_code = request.params["zip"]
        if zip_code not in CITIES:
            raise StrategyExecutionError(f"No city for {zip_code}", code="HTTP_FAILED")
        return {"city": CITIES[zip_code]}

    async def close(self):
        pass


# =============================================================================
# SELF-TRANSFORM
# =============================================================================

class TestSelfTransform:
    """Test debounced reformatting of a field's own value."""

    @pytest.mark.asyncio
    async def test_lowercase_after_typing(self):
        """Test that only the settled input is transformed."""
        engine = DerivationEngine(
            rules=[{"target": "email", "transform": "lowercase", "debounceMs": 20}],
            initial_value={"email": ""},
        )
        engine.start()

        engine.user_input("email", "Ada@")
        engine.user_input("email", "Ada@Example.COM")
        assert engine.get("email") == "Ada@Example.COM"

        await engine.settle(timeout=1)

        assert engine.get("email") == "ada@example.com"
        assert not engine.is_overridden("email")
        await engine.close()

    @pytest.mark.asyncio
    async def test_engine_write_does_not_retrigger(self):
        """Test that programmatic writes skip self-transforms."""
        engine = DerivationEngine(
            rules=[{"target": "code", "transform": "uppercase", "debounceMs": 10}],
            initial_value={"code": ""},
        )
        engine.start()

        engine.set_value("code", "abc")
        await engine.settle(timeout=1)

        assert engine.get("code") == "abc"
        await engine.close()


# =============================================================================
# HTTP
# =============================================================================

class TestHttpDerivation:
    """Test HTTP lookups, failures and recovery."""

    @pytest.mark.asyncio
    async def test_lookup_failure_and_recovery(self):
        """Test that a failed lookup keeps the last good value."""
        transport = FakeLookupTransport()
        on_error = Mock()
        engine = DerivationEngine(
            rules=[{
                "id": "city",
                "target": "city",
                "http": {"url": "/lookup", "queryParams": {"zip": "zipCode"}},
                "responseExpression": "response.city",
                "debounceMs": 10,
            }],
            initial_value={"zipCode": "10001"},
            transport=transport,
            on_error=on_error,
        )
        engine.start()
        await engine.settle(timeout=1)
        assert engine.get("city") == "New York"

        engine.user_input("zipCode", "00000")
        await engine.settle(timeout=1)

        assert engine.get("city") == "New York"
        assert engine.errors.get_by_code(ErrorCode.HTTP_FAILED)
        assert on_error.call_args[0][0].rule_id == "city"

        engine.user_input("zipCode", "60601")
        await engine.settle(timeout=1)

        assert engine.get("city") == "Chicago"
        assert [r.params["zip"] for r in transport.requests] == ["10001", "00000", "60601"]
        await engine.close()

    @pytest.mark.asyncio
    async def test_debounce_collapses_requests(self):
        """Test that rapid edits issue one request."""
        transport = FakeLookupTransport()
        engine = DerivationEngine(
            rules=[{
                "target": "city",
                "http": {"url": "/lookup", "queryParams": {"zip": "zipCode"}},
                "responseExpression": "response.city",
                "debounceMs": 30,
            }],
            initial_value={"zipCode": ""},
            transport=transport,
        )
        engine.start()
        engine.user_input("zipCode", "6")
        engine.user_input("zipCode", "606")
        engine.user_input("zipCode", "60601")
        await engine.settle(timeout=1)

        assert engine.get("city") == "Chicago"
        assert [r.params["zip"] for r in transport.requests] == ["60601"]
        await engine.close()

    @pytest.mark.asyncio
    async def test_false_condition_skips_request(self):
        """Test that a gated lookup sends nothing until its condition holds."""
        transport = FakeLookupTransport()
        engine = DerivationEngine(
            rules=[{
                "target": "city",
                "http": {"url": "/lookup", "queryParams": {"zip": "zipCode"}},
                "responseExpression": "response.city",
                "debounceMs": 10,
                "condition": "enabled",
            }],
            initial_value={"zipCode": "10001", "enabled": False},
            transport=transport,
        )
        engine.start()
        await engine.settle(timeout=1)

        assert transport.requests == []
        assert engine.get("city") is None

        engine.user_input("enabled", True)
        await engine.settle(timeout=1)

        assert len(transport.requests) == 1
        assert engine.get("city") == "New York"
        await engine.close()


# =============================================================================
# ASYNC FUNCTIONS
# =============================================================================

class TestAsyncFunction:
    """Test async function derivations."""

    @pytest.mark.asyncio
    async def test_last_request_wins(self):
        """Test that a slow superseded call never writes."""
        calls = []

        async def search(ctx):
            query = ctx.dependencies["query"]
            calls.append(query)
            if query == "first":
                await asyncio.sleep(0.05)
            return f"result:{query}"

        engine = DerivationEngine(
            rules=[{"target": "results", "asyncFunction": search, "dependsOn": ["query"], "debounceMs": 0}],
            initial_value={"query": ""},
        )
        engine.start()
        await engine.settle(timeout=1)

        engine.user_input("query", "first")
        await asyncio.sleep(0.01)
        assert "first" in calls

        engine.user_input("query", "second")
        await engine.settle(timeout=1)
        await asyncio.sleep(0.06)

        assert engine.get("results") == "result:second"
        await engine.close()

    @pytest.mark.asyncio
    async def test_registered_async_function(self):
        """Test that asyncFunctionName resolves through the registry."""
        async def greet(ctx):
            return f"Hello, {ctx.dependencies['name']}"

        registry = FunctionRegistry()
        registry.register_async("greet", greet)
        engine = DerivationEngine(
            rules=[{"target": "greeting", "asyncFunctionName": "greet", "dependsOn": ["name"], "debounceMs": 0}],
            initial_value={"name": "Ada"},
            registry=registry,
        )
        engine.start()
        await engine.settle(timeout=1)

        assert engine.get("greeting") == "Hello, Ada"
        await engine.close()

    @pytest.mark.asyncio
    async def test_async_failure_reported(self):
        """Test that a raising async function reports and keeps the value."""
        async def flaky(ctx):
            if ctx.dependencies["n"] < 0:
                raise ValueError("negative")
            return ctx.dependencies["n"] * 2

        on_error = Mock()
        engine = DerivationEngine(
            rules=[{"target": "double", "asyncFunction": flaky, "dependsOn": ["n"], "debounceMs": 0}],
            initial_value={"n": 2},
            on_error=on_error,
        )
        engine.start()
        await engine.settle(timeout=1)
        assert engine.get("double") == 4

        engine.user_input("n", -1)
        await engine.settle(timeout=1)

        assert engine.get("double") == 4
        assert on_error.call_args[0][0].code == ErrorCode.ASYNC_FAILED
        await engine.close()

    @pytest.mark.asyncio
    async def test_false_condition_skips_call(self):
        """Test that a gated async function runs once its condition holds."""
        calls = []

        async def fetch(ctx):
            calls.append(ctx.dependencies["key"])
            return ctx.dependencies["key"].upper()

        engine = DerivationEngine(
            rules=[{
                "target": "remote",
                "asyncFunction": fetch,
                "dependsOn": ["key"],
                "condition": "enabled",
                "debounceMs": 0,
            }],
            initial_value={"key": "a", "enabled": False},
        )
        engine.start()
        await engine.settle(timeout=1)

        assert calls == []
        assert engine.get("remote") is None

        engine.set_value("enabled", True)
        await engine.settle(timeout=1)

        assert calls == ["a"]
        assert engine.get("remote") == "A"
        await engine.close()


class TestWithoutEventLoop:
    """Test start outside a running loop."""

    def test_async_rules_wait(self):
        """Test that async rules are not armed without a loop."""
        async def fetch(ctx):
            return 1

        engine = DerivationEngine(
            rules=[{"target": "remote", "asyncFunction": fetch, "dependsOn": ["key"]}],
            initial_value={"key": "a"},
        )
        engine.start()

        assert engine.get("remote") is None
        assert engine.scheduler.stats["armed_timers"] == 0
