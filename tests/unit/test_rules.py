"""
Tests for rule declarations and compilation into bindings.
"""

import pytest

from dynaform.core.enums import StrategyKind
from dynaform.derivation.rules import (
    DerivationRule,
    compile_rule,
    infer_dependencies,
    split_target,
)
from dynaform.errors.exceptions import RuleConfigurationError


# =============================================================================
# DECLARATIONS
# =============================================================================

class TestDerivationRuleValidation:
    """Test DerivationRule.from_dict()."""

    def test_camel_case_keys(self):
        """Test that camelCase declaration keys are accepted."""
        rule = DerivationRule.from_dict({
            "targetField": "currency",
            "valueMap": {"US": "USD"},
            "dependsOn": ["country"],
            "reEngageOnDependencyChange": True,
            "debounceMs": 50,
        })
        assert rule.target == "currency"
        assert rule.kind == StrategyKind.STATIC_MAP
        assert rule.re_engage_on_dependency_change is True
        assert rule.debounce_ms == 50

    def test_snake_case_keys(self):
        """Test that snake_case keys are accepted too."""
        rule = DerivationRule.from_dict({"target": "total", "expression": "a + b", "stop_on_user_override": False})
        assert rule.stop_on_user_override is False

    @pytest.mark.parametrize("data,kind", [
        ({"target": "x", "value": 1}, StrategyKind.STATIC_MAP),
        ({"target": "x", "expression": "a"}, StrategyKind.EXPRESSION),
        ({"target": "x", "functionName": "f"}, StrategyKind.FUNCTION),
        ({"target": "x", "branches": [{"when": "a > 1", "value": 1}]}, StrategyKind.CONDITIONAL),
        ({"target": "x", "transform": "trim"}, StrategyKind.SELF_TRANSFORM),
        ({"target": "x", "http": {"url": "/u"}, "responseExpression": "response"}, StrategyKind.HTTP),
        ({"target": "x", "asyncFunctionName": "f"}, StrategyKind.ASYNC_FUNCTION),
    ])
    def test_strategy_kinds(self, data, kind):
        """Test strategy selection from the declaration."""
        assert DerivationRule.from_dict(data).kind == kind

    def test_no_strategy(self):
        """Test that a rule needs a strategy."""
        with pytest.raises(RuleConfigurationError, match="exactly one strategy"):
            DerivationRule.from_dict({"target": "x"})

    def test_two_strategies(self):
        """Test that a rule may not declare two strategies."""
        with pytest.raises(RuleConfigurationError):
            DerivationRule.from_dict({"target": "x", "expression": "a", "functionName": "f"})

    def test_error_names_target(self):
        """Test that configuration errors are prefixed with the target."""
        with pytest.raises(RuleConfigurationError) as exc_info:
            DerivationRule.from_dict({"target": "total"})
        assert str(exc_info.value).startswith("[total] ")
        assert exc_info.value.target == "total"

    def test_http_requires_response_expression(self):
        """Test HTTP response mapping is mandatory."""
        with pytest.raises(RuleConfigurationError, match="responseExpression"):
            DerivationRule.from_dict({"target": "city", "http": {"url": "/lookup"}})

    def test_http_method_normalized(self):
        """Test that HTTP methods are validated and uppercased."""
        rule = DerivationRule.from_dict(
            {"target": "x", "http": {"url": "/u", "method": "post"}, "responseExpression": "response"}
        )
        assert rule.http.method == "POST"
        with pytest.raises(RuleConfigurationError):
            DerivationRule.from_dict(
                {"target": "x", "http": {"url": "/u", "method": "FETCH"}, "responseExpression": "response"}
            )

    def test_self_transform_needs_positive_debounce(self):
        """Test that a self-transform cannot run undebounced."""
        with pytest.raises(RuleConfigurationError):
            DerivationRule.from_dict({"target": "email", "transform": "lowercase", "debounceMs": 0})

    def test_value_map_needs_source(self):
        """Test that a static map needs a key source."""
        with pytest.raises(RuleConfigurationError):
            DerivationRule.from_dict({"target": "currency", "valueMap": {"US": "USD"}})
        rule = DerivationRule.from_dict({"target": "currency", "valueMap": {"US": "USD"}, "source": "country"})
        assert rule.source == "country"

    def test_default_only_with_branches(self):
        """Test that a fallback requires branches."""
        with pytest.raises(RuleConfigurationError):
            DerivationRule.from_dict({"target": "x", "expression": "a", "default": 1})

    def test_branch_needs_one_result(self):
        """Test that a branch needs exactly one of value or expression."""
        with pytest.raises(RuleConfigurationError):
            DerivationRule.from_dict({"target": "x", "branches": [{"when": "a"}]})
        with pytest.raises(RuleConfigurationError):
            DerivationRule.from_dict({"target": "x", "branches": [{"when": "a", "value": 1, "expression": "b"}]})

    def test_expression_syntax_checked(self):
        """Test that expressions are parsed at declaration time."""
        with pytest.raises(RuleConfigurationError, match="Invalid expression"):
            DerivationRule.from_dict({"target": "x", "expression": "a +"})

    def test_unknown_keys_rejected(self):
        """Test that misspelled keys are rejected."""
        with pytest.raises(RuleConfigurationError):
            DerivationRule.from_dict({"target": "x", "expression": "a", "dependOn": ["a"]})

    def test_state_dependency_must_name_flag(self):
        """Test dependsOnState validation."""
        with pytest.raises(RuleConfigurationError):
            DerivationRule.from_dict({"target": "x", "expression": "a", "dependsOnState": ["email"]})

    def test_label(self):
        """Test label precedence."""
        rule = DerivationRule.from_dict({"target": "x", "expression": "a", "id": "r1", "debugName": "Nice"})
        assert rule.label == "Nice"


# =============================================================================
# DEPENDENCY INFERENCE
# =============================================================================

class TestInferDependencies:
    """Test infer_dependencies()."""

    def test_expression(self):
        """Test expression reads."""
        rule = DerivationRule.from_dict({"target": "x", "expression": "a * b"})
        assert infer_dependencies(rule).fields == ["a", "b"]

    def test_explicit_depends_on_wins(self):
        """Test that dependsOn replaces inferred value reads."""
        rule = DerivationRule.from_dict({"target": "x", "expression": "a * b", "dependsOn": ["c"]})
        assert infer_dependencies(rule).fields == ["c"]

    def test_condition_reads_always_count(self):
        """Test that gating conditions add dependencies."""
        rule = DerivationRule.from_dict(
            {"target": "x", "expression": "a", "dependsOn": ["a"], "condition": "enabled"}
        )
        assert infer_dependencies(rule).fields == ["a", "enabled"]

    def test_condition_reads_excluded_from_snapshot(self):
        """Test that strategy reads can be taken without the condition."""
        rule = DerivationRule.from_dict(
            {"target": "x", "expression": "a", "dependsOn": ["a"], "condition": "enabled"}
        )
        assert infer_dependencies(rule, include_condition=False).fields == ["a"]

    def test_function_without_depends_on_is_wildcard(self):
        """Test that functions default to reading the whole form."""
        rule = DerivationRule.from_dict({"target": "x", "functionName": "f"})
        assert infer_dependencies(rule).fields == ["*"]

    def test_branches(self):
        """Test conditional branch reads."""
        rule = DerivationRule.from_dict({
            "target": "group",
            "branches": [
                {"when": {"type": "fieldValue", "fieldPath": "age", "operator": "less", "value": 18}, "value": "Minor"},
                {"when": "age < 65", "expression": "label"},
            ],
            "default": "Senior",
        })
        assert infer_dependencies(rule).fields == ["age", "label"]

    def test_http_params(self):
        """Test HTTP parameter reads."""
        rule = DerivationRule.from_dict({
            "target": "city",
            "http": {"url": "/lookup/{country}", "queryParams": {"zip": "zipCode"}, "pathParams": {"country": "country"}},
            "responseExpression": "response.city",
        })
        assert infer_dependencies(rule).fields == ["zipCode", "country"]

    def test_state_dependencies(self):
        """Test dependsOnState."""
        rule = DerivationRule.from_dict(
            {"target": "x", "expression": "a", "dependsOnState": ["email.touched"]}
        )
        assert infer_dependencies(rule).states == [("email", "touched")]


# =============================================================================
# COMPILATION
# =============================================================================

class TestSplitTarget:
    """Test split_target()."""

    def test_absolute(self):
        """Test root targets."""
        assert split_target("total", None, []) == (None, ("total",))

    def test_pattern_target(self):
        """Test that items.$.x binds to the items array."""
        assert split_target("items.$.lineTotal", None, [("items",)]) == (("items",), ("lineTotal",))

    def test_relative_outside_array(self):
        """Test that $.x needs an enclosing array."""
        with pytest.raises(RuleConfigurationError):
            split_target("$.x", None, [])

    def test_undeclared_array(self):
        """Test that $ in an undeclared array is rejected."""
        with pytest.raises(RuleConfigurationError):
            split_target("rows.$.x", None, [("items",)])


class TestCompileRule:
    """Test compile_rule() and RuleBinding matching."""

    def test_root_binding(self):
        """Test a plain root rule."""
        rule = DerivationRule.from_dict({"target": "total", "expression": "subtotal + tax"})
        binding = compile_rule(rule, "r1")
        assert binding.target == ("total",)
        assert binding.graph_dependencies() == ["subtotal", "tax"]
        assert binding.match_value_change(("tax",)) == (True, set())
        assert binding.match_value_change(("other",)) == (False, set())
        assert binding.is_deferred is False

    def test_snapshot_refs_skip_condition(self):
        """Test that condition-only reads trigger but are not snapshotted."""
        rule = DerivationRule.from_dict(
            {"target": "total", "expression": "subtotal * 2", "dependsOn": ["subtotal"], "condition": "mode"}
        )
        binding = compile_rule(rule, "t")
        assert [ref.name for ref in binding.value_refs] == ["subtotal", "mode"]
        assert [ref.name for ref in binding.snapshot_refs] == ["subtotal"]
        assert binding.match_value_change(("mode",)) == (True, set())

    def test_item_binding(self):
        """Test item-relative dependencies match only the changed item."""
        rule = DerivationRule.from_dict({"target": "items.$.lineTotal", "expression": "quantity * price"})
        binding = compile_rule(rule, "line", item_keys=["quantity", "price", "lineTotal"], array_paths=[("items",)])

        assert binding.array_path == ("items",)
        assert binding.target_pattern_str == "items.$.lineTotal"
        assert binding.graph_dependencies() == ["items.$.quantity", "items.$.price"]
        assert binding.match_value_change(("items", 1, "quantity")) == (False, {1})
        assert binding.target_path(("items", 1)) == ("items", 1, "lineTotal")

    def test_item_binding_whole_array_write(self):
        """Test that replacing the list re-runs every item, but a structural change does not."""
        rule = DerivationRule.from_dict({"target": "items.$.lineTotal", "expression": "$.quantity * 2"})
        binding = compile_rule(rule, "line", array_paths=[("items",)])
        assert binding.match_value_change(("items",)) == (True, set())
        assert binding.match_value_change(("items",), structural=True) == (False, set())

    def test_item_rule_reading_root(self):
        """Test that root reads from an item rule affect every instance."""
        rule = DerivationRule.from_dict({"target": "$.net", "expression": "$.gross * rate"})
        binding = compile_rule(rule, "net", array_path=("items",), item_keys=["gross", "net"])
        assert binding.match_value_change(("rate",)) == (True, set())

    def test_group_binding(self):
        """Test that group siblings resolve under the group."""
        rule = DerivationRule.from_dict({"target": "address.summary", "expression": "street + city"})
        binding = compile_rule(rule, "sum", group_path=("address",), group_keys=["street", "city", "summary"])
        assert binding.graph_dependencies() == ["address.street", "address.city"]

    def test_wildcard(self):
        """Test wildcard bindings skip their own target writes."""
        rule = DerivationRule.from_dict({"target": "summary", "functionName": "f"})
        binding = compile_rule(rule, "w")
        assert binding.is_wildcard
        assert binding.graph_dependencies() == ["*"]
        assert binding.match_value_change(("anything",)) == (True, set())
        assert binding.match_value_change(("summary",)) == (False, set())

    def test_self_transform_never_matches_values(self):
        """Test that self-transforms are not dependency driven."""
        rule = DerivationRule.from_dict({"target": "email", "transform": "lowercase"})
        binding = compile_rule(rule, "t")
        assert binding.debounce_ms == 300
        assert binding.stop_on_user_override is False
        assert binding.match_value_change(("email",)) == (False, set())

    def test_debounce_defaults(self):
        """Test effective debounce per strategy."""
        sync_rule = DerivationRule.from_dict({"target": "x", "expression": "a"})
        async_rule = DerivationRule.from_dict({"target": "y", "asyncFunctionName": "f", "dependsOn": ["a"]})
        assert compile_rule(sync_rule, "s", default_debounce_ms=0).debounce_ms == 0
        assert compile_rule(async_rule, "a", async_debounce_ms=150).debounce_ms == 150
        debounced = compile_rule(
            DerivationRule.from_dict({"target": "x", "expression": "a", "debounceMs": 40}), "d"
        )
        assert debounced.is_deferred

    def test_state_refs(self):
        """Test state dependency matching by flag."""
        rule = DerivationRule.from_dict({"target": "hint", "expression": "formFieldState.email.touched"})
        binding = compile_rule(rule, "h")
        assert binding.match_state_change(("email",), "touched") == (True, set())
        assert binding.match_state_change(("email",), "dirty") == (False, set())

    def test_relative_dependency_outside_array(self):
        """Test rejection of $ dependencies on root rules."""
        rule = DerivationRule.from_dict({"target": "x", "expression": "$.a"})
        with pytest.raises(RuleConfigurationError):
            compile_rule(rule, "bad")
