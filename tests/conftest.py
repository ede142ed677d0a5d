"""
DYNAFORM Test Configuration and Fixtures

Shared rule sets and engines used across unit and integration tests.
"""

import pytest
from typing import Any, Dict, List

from dynaform.core.form_model import FormModel
from dynaform.derivation.engine import DerivationEngine
from dynaform.derivation.registry import FunctionRegistry
from dynaform.expressions.evaluator import EvaluationScope


PRICE_CHAIN_RULES: List[Dict[str, Any]] = [
    {"id": "markup", "target": "priceWithMarkup", "expression": "basePrice * 1.2"},
    {"id": "tax", "target": "priceWithTax", "expression": "priceWithMarkup * 1.1"},
    {"id": "final", "target": "finalPrice", "expression": "priceWithTax + shipping"},
]

LINE_ITEM_FIELDS: List[Dict[str, Any]] = [
    {
        "key": "items",
        "type": "array",
        "fields": [
            {"key": "quantity", "type": "input"},
            {"key": "price", "type": "input"},
            {"key": "lineTotal", "type": "input", "derivation": "quantity * price"},
        ],
    },
]


def sum_line_totals(ctx) -> float:
    items = ctx.resolve("items") or []
    return sum(item.get("lineTotal", 0) for item in items)


@pytest.fixture
def chain_engine() -> DerivationEngine:
    """Started engine with the basePrice -> markup -> tax -> final chain."""
    engine = DerivationEngine(
        rules=PRICE_CHAIN_RULES,
        initial_value={"basePrice": 100, "shipping": 10},
    )
    engine.start()
    return engine


@pytest.fixture
def line_item_engine() -> DerivationEngine:
    """Started engine with per-item line totals and an order total."""
    engine = DerivationEngine.from_fields(
        LINE_ITEM_FIELDS,
        initial_value={"items": [{"quantity": 2, "price": 50}, {"quantity": 3, "price": 30}]},
    )
    engine.add_rule({"id": "orderTotal", "target": "orderTotal", "function": sum_line_totals, "dependsOn": ["items"]})
    engine.start()
    return engine


@pytest.fixture
def registry() -> FunctionRegistry:
    return FunctionRegistry()


@pytest.fixture
def form_model() -> FormModel:
    return FormModel(
        {
            "customer": {"name": "Ada", "email": "ada@example.com"},
            "items": [{"quantity": 1, "price": 10}, {"quantity": 2, "price": 20}],
        },
        array_paths=["items"],
    )


@pytest.fixture
def make_scope():
    """Factory for EvaluationScope over a plain dict."""
    def _make(root: Dict[str, Any], item_path=None, field_path=None, states=None, **kwargs) -> EvaluationScope:
        states = states or {}
        return EvaluationScope(
            root=root,
            item_path=item_path,
            field_path=field_path,
            state_of=lambda segments: states.get(
                ".".join(str(s) for s in segments), {"dirty": False, "touched": False, "pristine": True}
            ),
            **kwargs,
        )
    return _make
