"""
Tests for field path parsing, resolution and matching.
"""

import copy

import pytest

from dynaform.core.paths import (
    UNDEFINED,
    assign_path,
    format_path,
    is_descendant,
    is_missing,
    is_pattern,
    is_relative,
    join_scope,
    normalize_path,
    parse_path,
    paths_overlap,
    pattern_of,
    resolve_path,
)
from dynaform.errors.exceptions import PathError


class TestUndefined:
    """Test the UNDEFINED sentinel."""

    def test_singleton_and_falsy(self):
        """Test that UNDEFINED is a falsy singleton that survives copying."""
        assert not UNDEFINED
        assert copy.deepcopy(UNDEFINED) is UNDEFINED
        assert copy.copy({"a": UNDEFINED})["a"] is UNDEFINED

    def test_is_missing(self):
        """Test is_missing for None, UNDEFINED and falsy values."""
        assert is_missing(None)
        assert is_missing(UNDEFINED)
        assert not is_missing(0)
        assert not is_missing("")


class TestParsePath:
    """Test parse_path()."""

    def test_dotted_and_bracketed_forms_agree(self):
        """Test that bracket and dot index syntax produce the same segments."""
        assert parse_path("items[0].quantity") == ("items", 0, "quantity")
        assert parse_path("items.0.quantity") == ("items", 0, "quantity")

    def test_item_marker(self):
        """Test relative and pattern paths."""
        assert parse_path("$.quantity") == ("$", "quantity")
        assert parse_path("items.$.quantity") == ("items", "$", "quantity")

    @pytest.mark.parametrize("bad", ["", "  ", "a.", ".a", "a..b"])
    def test_malformed(self, bad):
        """Test rejection of malformed paths."""
        with pytest.raises(PathError):
            parse_path(bad)

    def test_normalize(self):
        """Test canonical formatting."""
        assert normalize_path("a[2].b") == "a.2.b"
        assert format_path(("a", 2, "b")) == "a.2.b"


class TestPathPredicates:
    """Test path classification helpers."""

    def test_is_relative(self):
        """Test relative path detection."""
        assert is_relative("$.x")
        assert not is_relative("items.$.x")

    def test_is_pattern(self):
        """Test pattern detection."""
        assert is_pattern(("items", "$", "x"))
        assert not is_pattern(("$", "x"))

    def test_join_scope(self):
        """Test binding relative paths to an item."""
        assert join_scope(("items", 1), "$.qty") == ("items", 1, "qty")
        assert join_scope(("items", 1), "total") == ("total",)


class TestResolvePath:
    """Test resolve_path()."""

    def setup_method(self):
        self.tree = {"customer": {"name": "Ada", "nickname": None}, "items": [{"qty": 2}, {"qty": 5}]}

    def test_absolute(self):
        """Test absolute resolution."""
        assert resolve_path(self.tree, "customer.name") == "Ada"
        assert resolve_path(self.tree, "items.1.qty") == 5

    def test_null_versus_missing(self):
        """Test that an explicit null differs from a missing field."""
        assert resolve_path(self.tree, "customer.nickname") is None
        assert resolve_path(self.tree, "customer.age") is UNDEFINED

    def test_relative_with_scope(self):
        """Test item-relative resolution."""
        assert resolve_path(self.tree, "$.qty", scope=("items", 0)) == 2

    def test_relative_without_scope(self):
        """Test that a relative path without an item is undefined."""
        assert resolve_path(self.tree, "$.qty") is UNDEFINED

    def test_length(self):
        """Test array length."""
        assert resolve_path(self.tree, "items.length") == 2

    def test_out_of_range(self):
        """Test out-of-range index."""
        assert resolve_path(self.tree, "items.9.qty") is UNDEFINED


class TestAssignPath:
    """Test assign_path()."""

    def test_creates_intermediates(self):
        """Test that missing containers are created."""
        tree = {}
        old = assign_path(tree, ("address", "city"), "Paris")
        assert old is UNDEFINED
        assert tree == {"address": {"city": "Paris"}}

    def test_returns_previous_value(self):
        """Test the returned old value."""
        tree = {"a": 1}
        assert assign_path(tree, ("a",), 2) == 1

    def test_list_append_at_end(self):
        """Test writing one past the end appends."""
        tree = {"items": [1]}
        assign_path(tree, ("items", 1), 2)
        assert tree["items"] == [1, 2]

    def test_list_out_of_range(self):
        """Test that writing past the end raises."""
        with pytest.raises(PathError):
            assign_path({"items": []}, ("items", 3), 1)

    def test_root(self):
        """Test that the root cannot be assigned."""
        with pytest.raises(PathError):
            assign_path({}, (), 1)


class TestMatching:
    """Test overlap and pattern helpers."""

    def test_prefix_overlap(self):
        """Test that ancestors and descendants overlap."""
        assert paths_overlap(("items",), ("items", 0, "qty"))
        assert paths_overlap(("items", 0, "qty"), ("items",))
        assert not paths_overlap(("items", 0, "qty"), ("items", 0, "price"))

    def test_placeholder_matches_index(self):
        """Test that $ matches any index."""
        assert paths_overlap(("items", "$", "qty"), ("items", 3, "qty"))
        assert not paths_overlap(("items", "$", "qty"), ("items", "name"))

    def test_is_descendant(self):
        """Test strict descendant check."""
        assert is_descendant(("a", "b"), ("a",))
        assert not is_descendant(("a",), ("a",))

    def test_pattern_of(self):
        """Test replacing item indices with the placeholder."""
        assert pattern_of(("items", 3, "qty"), [("items",)]) == ("items", "$", "qty")
        assert pattern_of(("total",), [("items",)]) == ("total",)
