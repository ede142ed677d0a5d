"""
DYNAFORM Rule Collector

Collects derivation rules from a tree of field definitions:

    {"key": "total", "type": "number", "derivation": "subtotal * 1.2"}
    {"key": "country", "type": "select",
     "logic": [{"type": "derivation", "targetField": "currency",
                "valueMap": {"US": "USD"}, "dependsOn": ["country"]}]}
    {"key": "items", "type": "array", "fields": [...]}       children are item fields
    {"key": "address", "type": "group", "fields": [...]}     children live under address.*
    {"type": "row", "fields": [...]}                         layout only, no path

Shorthand ``derivation`` targets the field it is declared on; ``logic``
entries target ``targetField`` (default: the declaring field). Inside an
array, targets become item-relative (``$.lineTotal``). Inside a group,
sibling names resolve relative to the group.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional
import logging

from dynaform.core.paths import RELATIVE_MARKER, Segments, format_path, parse_path
from dynaform.derivation.rules import DerivationRule
from dynaform.errors.exceptions import RuleConfigurationError

logger = logging.getLogger(__name__)

LAYOUT_TYPES = ("page", "row")
DEBOUNCED_TRIGGER_MS = 300


@dataclass
class CollectedRule:
    """A rule plus the scope it was declared in."""
    rule: DerivationRule
    source_field: str
    array_path: Optional[str] = None
    group_path: Optional[str] = None       # item-relative inside arrays
    item_keys: List[str] = field(default_factory=list)
    group_keys: List[str] = field(default_factory=list)
    is_shorthand: bool = False


@dataclass
class RuleCollection:
    """Everything collect_rules() found."""
    rules: List[CollectedRule] = field(default_factory=list)
    array_paths: List[str] = field(default_factory=list)

    def by_target(self, target: str) -> List[CollectedRule]:
        return [c for c in self.rules if c.rule.target == target]

    def __iter__(self) -> Iterator[CollectedRule]:
        return iter(self.rules)

    def __len__(self) -> int:
        return len(self.rules)


@dataclass
class _Scope:
    path: Segments = ()                    # container path (item-relative inside arrays)
    array_path: Optional[Segments] = None
    item_keys: List[str] = field(default_factory=list)
    sibling_keys: List[str] = field(default_factory=list)


def _children(definition: Dict[str, Any]) -> List[Dict[str, Any]]:
    children = definition.get("fields") or []
    flat: List[Dict[str, Any]] = []
    for child in children:
        # Arrays may declare their item template as a list of field lists
        if isinstance(child, list):
            flat.extend(child)
        else:
            flat.append(child)
    return flat


def _keys(fields: List[Dict[str, Any]]) -> List[str]:
    """Keys visible at one level, looking through layout containers."""
    keys: List[str] = []
    for definition in fields:
        if definition.get("key") and definition.get("type") not in LAYOUT_TYPES:
            keys.append(definition["key"])
        else:
            keys.extend(_keys(_children(definition)))
    return keys


def collect_rules(fields: List[Dict[str, Any]]) -> RuleCollection:
    """
    Walk field definitions and collect every derivation.

    Raises:
        RuleConfigurationError: on an invalid derivation declaration
    """
    collection = RuleCollection()
    _traverse(fields, _Scope(sibling_keys=_keys(fields)), collection)
    logger.debug(f"Collected {len(collection.rules)} derivations, arrays: {collection.array_paths}")
    return collection


def _traverse(fields: List[Dict[str, Any]], scope: _Scope, collection: RuleCollection) -> None:
    for definition in fields:
        key = definition.get("key")
        kind = definition.get("type")
        children = _children(definition)

        if not key or kind in LAYOUT_TYPES:
            _traverse(children, scope, collection)
            continue

        field_path = scope.path + (key,)
        _collect_from_field(definition, field_path, scope, collection)

        if kind == "array":
            if scope.array_path is not None:
                logger.warning(
                    f"Nested array '{format_path(field_path)}' inside "
                    f"'{format_path(scope.array_path)}' is not supported; its derivations are ignored"
                )
                continue
            array_path = field_path
            collection.array_paths.append(format_path(array_path))
            item_keys = _keys(children)
            _traverse(children, _Scope(array_path=array_path, item_keys=item_keys, sibling_keys=item_keys), collection)
        elif children:
            _traverse(
                children,
                _Scope(
                    path=field_path,
                    array_path=scope.array_path,
                    item_keys=scope.item_keys,
                    sibling_keys=_keys(children),
                ),
                collection,
            )


def _collect_from_field(
    definition: Dict[str, Any],
    field_path: Segments,
    scope: _Scope,
    collection: RuleCollection,
) -> None:
    source = _declared_path(field_path, scope)

    shorthand = definition.get("derivation")
    if shorthand:
        rule = _build({"target": source, "expression": shorthand}, source)
        collection.rules.append(_scoped(rule, source, scope, is_shorthand=True))

    for entry in definition.get("logic") or []:
        if entry.get("type") != "derivation":
            continue
        data = {k: v for k, v in entry.items() if k not in ("type", "trigger", "targetField", "target")}
        target = entry.get("targetField") or entry.get("target")
        in_item = True
        if target is None:
            target = source
        else:
            target, in_item = _resolve_target(target, scope)
        if entry.get("trigger") == "debounced" and "debounceMs" not in entry and "debounce_ms" not in entry:
            data["debounceMs"] = DEBOUNCED_TRIGGER_MS
        data["target"] = target
        rule = _build(data, source)
        collection.rules.append(_scoped(rule, source, scope if in_item else _Scope(), is_shorthand=False))


def _declared_path(field_path: Segments, scope: _Scope) -> str:
    if scope.array_path is not None:
        return format_path((RELATIVE_MARKER,) + tuple(field_path))
    return format_path(field_path)


def _resolve_target(target: str, scope: _Scope):
    """
    Resolve a ``targetField``.

    Returns:
        (target, in_item): in_item is False for an absolute target declared
        inside an array item
    """
    segments = parse_path(target)
    if segments[0] == RELATIVE_MARKER:
        return target, True
    if segments[0] in scope.sibling_keys and scope.path:
        resolved = tuple(scope.path) + segments
        if scope.array_path is not None:
            return format_path((RELATIVE_MARKER,) + resolved), True
        return format_path(resolved), True
    if scope.array_path is not None and segments[0] in scope.item_keys:
        return format_path((RELATIVE_MARKER,) + segments), True
    return target, scope.array_path is None


def _scoped(rule: DerivationRule, source: str, scope: _Scope, is_shorthand: bool) -> CollectedRule:
    return CollectedRule(
        rule=rule,
        source_field=source,
        array_path=format_path(scope.array_path) if scope.array_path is not None else None,
        group_path=format_path(scope.path) if scope.path else None,
        item_keys=list(scope.item_keys),
        group_keys=list(scope.sibling_keys) if scope.path else [],
        is_shorthand=is_shorthand,
    )


def _build(data: Dict[str, Any], source: str) -> DerivationRule:
    try:
        return DerivationRule.from_dict(data)
    except RuleConfigurationError as e:
        raise RuleConfigurationError(f"Invalid derivation declared on '{source}': {e}") from e
