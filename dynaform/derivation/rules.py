"""
DYNAFORM Derivation Rules

Declarations (pydantic) and their compiled runtime form.

A DerivationRule is data supplied once at form-definition time. Keys are
accepted in snake_case or in the camelCase used by form definitions
(``dependsOn``, ``debounceMs``, ``stopOnUserOverride``, ...).

compile_rule() turns a declaration into a RuleBinding: the strategy kind,
the resolved target and dependency patterns, the state flags the rule
reads, and the effective debounce.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union
import logging

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from dynaform.core.enums import StrategyKind
from dynaform.core.paths import (
    RELATIVE_MARKER,
    UNDEFINED,
    WILDCARD,
    Segments,
    format_path,
    parse_path,
    paths_overlap,
)
from dynaform.errors.exceptions import DerivationError, RuleConfigurationError
from dynaform.expressions.conditions import condition_dependencies, validate_condition
from dynaform.expressions.evaluator import STATE_FLAGS, ExpressionDependencies, extract_dependencies
from dynaform.expressions.parser import parse_expression

logger = logging.getLogger(__name__)

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")


# =============================================================================
# DECLARATIONS
# =============================================================================

class _Declaration(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


def _check_expression(source: Optional[str]) -> Optional[str]:
    if source is None:
        return source
    try:
        parse_expression(source)
    except DerivationError as e:
        raise ValueError(f"Invalid expression {source!r}: {e}") from e
    return source


def _check_condition(condition: Any) -> Any:
    try:
        validate_condition(condition)
    except DerivationError as e:
        raise ValueError(f"Invalid condition: {e}") from e
    return condition


class HttpRequestConfig(_Declaration):
    """
    HTTP request descriptor.

    ``query_params`` and ``body`` values are expressions evaluated against
    the dependency snapshot; ``{name}`` placeholders in the URL are filled
    from ``path_params`` expressions.
    """
    url: str
    method: str = "GET"
    query_params: Dict[str, str] = Field(default_factory=dict)
    path_params: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Dict[str, str]] = None
    headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("method")
    @classmethod
    def validate_method(cls, v):
        method = v.upper()
        if method not in HTTP_METHODS:
            raise ValueError(f"Unsupported HTTP method: {v}. Valid: {list(HTTP_METHODS)}")
        return method

    @field_validator("query_params", "path_params")
    @classmethod
    def validate_param_expressions(cls, v):
        for expression in v.values():
            _check_expression(expression)
        return v

    @field_validator("body")
    @classmethod
    def validate_body_expressions(cls, v):
        for expression in (v or {}).values():
            _check_expression(expression)
        return v

    def expressions(self) -> List[str]:
        return list(self.query_params.values()) + list(self.path_params.values()) \
            + list((self.body or {}).values())


class ConditionalBranch(_Declaration):
    """One ``when -> value`` branch; the first matching branch wins."""
    when: Any = Field(validation_alias=AliasChoices("when", "condition"))
    value: Any = Field(default=UNDEFINED)
    expression: Optional[str] = None

    @field_validator("when")
    @classmethod
    def validate_when(cls, v):
        return _check_condition(v)

    @field_validator("expression")
    @classmethod
    def validate_expression(cls, v):
        return _check_expression(v)

    @model_validator(mode="after")
    def check_result(self):
        if (self.value is UNDEFINED) == (self.expression is None):
            raise ValueError("A branch needs exactly one of 'value' or 'expression'")
        return self


class DerivationRule(_Declaration):
    """
    Declaration of one derivation.

    Exactly one strategy source must be given:
        value_map            Static Map (keyed by ``source`` or the single dependency)
        value                Static Map with a constant result
        expression           Expression
        function_name / function                  Function
        branches (+ default)                      Conditional
        transform                                 Self-Transform
        http + response_expression                HTTP
        async_function_name / async_function      Async Function
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        arbitrary_types_allowed=True,
    )

    id: Optional[str] = None
    target: str = Field(validation_alias=AliasChoices("target", "targetField", "fieldKey"))
    depends_on: Optional[List[str]] = None
    depends_on_state: List[str] = Field(default_factory=list)
    condition: Any = None

    # Strategy sources
    value: Any = Field(default=UNDEFINED)
    value_map: Optional[Dict[str, Any]] = Field(
        default=None, validation_alias=AliasChoices("valueMap", "value_map", "map"),
    )
    source: Optional[str] = None
    expression: Optional[str] = None
    function_name: Optional[str] = None
    function: Optional[Callable[..., Any]] = None
    branches: Optional[List[ConditionalBranch]] = None
    fallback: Any = Field(default=UNDEFINED, validation_alias=AliasChoices("default", "fallback"))
    transform: Optional[Union[str, Callable[[Any], Any]]] = None
    http: Optional[HttpRequestConfig] = None
    response_expression: Optional[str] = None
    async_function_name: Optional[str] = None
    async_function: Optional[Callable[..., Awaitable[Any]]] = None

    # Behaviour
    debounce_ms: Optional[int] = Field(default=None, ge=0)
    stop_on_user_override: bool = True
    re_engage_on_dependency_change: bool = False
    debug_name: Optional[str] = None

    @field_validator("expression", "response_expression")
    @classmethod
    def validate_expressions(cls, v):
        return _check_expression(v)

    @field_validator("condition")
    @classmethod
    def validate_condition_shape(cls, v):
        return _check_condition(v)

    @field_validator("depends_on_state")
    @classmethod
    def validate_state_refs(cls, v):
        for ref in v:
            if parse_path(ref)[-1] not in STATE_FLAGS:
                raise ValueError(f"State dependency '{ref}' must end with one of {list(STATE_FLAGS)}")
        return v

    @model_validator(mode="after")
    def check_strategy(self):
        sources = self._strategy_sources()
        if len(sources) != 1:
            found = ", ".join(k.value for k in sources) or "none"
            raise ValueError(f"Rule on '{self.target}' needs exactly one strategy, found: {found}")

        kind = sources[0]
        if kind == StrategyKind.HTTP and not self.response_expression:
            raise ValueError("HTTP derivations require 'responseExpression'")
        if self.response_expression and kind != StrategyKind.HTTP:
            raise ValueError("'responseExpression' is only valid with 'http'")
        if kind == StrategyKind.SELF_TRANSFORM and self.debounce_ms == 0:
            raise ValueError("Self-transform derivations require a positive 'debounceMs'")
        if self.value_map is not None and self.value is not UNDEFINED:
            raise ValueError("Give either a constant 'value' or a 'valueMap', not both")
        if self.value_map is not None and not self.source and len(self.depends_on or []) != 1:
            raise ValueError("Static map derivations need 'source' or exactly one 'dependsOn' entry")
        if self.fallback is not UNDEFINED and kind != StrategyKind.CONDITIONAL:
            raise ValueError("'default' is only valid with 'branches'")
        return self

    def _strategy_sources(self) -> List[StrategyKind]:
        sources = []
        if self.value_map is not None or self.value is not UNDEFINED:
            sources.append(StrategyKind.STATIC_MAP)
        if self.expression is not None:
            sources.append(StrategyKind.EXPRESSION)
        if self.function_name is not None or self.function is not None:
            sources.append(StrategyKind.FUNCTION)
        if self.branches is not None:
            sources.append(StrategyKind.CONDITIONAL)
        if self.transform is not None:
            sources.append(StrategyKind.SELF_TRANSFORM)
        if self.http is not None:
            sources.append(StrategyKind.HTTP)
        if self.async_function_name is not None or self.async_function is not None:
            sources.append(StrategyKind.ASYNC_FUNCTION)
        return sources

    @property
    def kind(self) -> StrategyKind:
        return self._strategy_sources()[0]

    @property
    def label(self) -> str:
        return self.debug_name or self.id or self.target

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DerivationRule":
        """
        Build a rule from a plain declaration.

        Raises:
            RuleConfigurationError: with every validation problem listed
        """
        data = {k: v for k, v in data.items() if k != "type"}
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'rule'}: {err['msg']}" for err in e.errors()
            )
            raise RuleConfigurationError(problems, target=data.get("target") or data.get("targetField")) from e


# =============================================================================
# COMPILED BINDINGS
# =============================================================================

@dataclass(frozen=True)
class DependencyRef:
    """
    One dependency of a bound rule.

    ``segments`` are item-relative (without the marker) when ``relative``
    is set, absolute otherwise.
    """
    name: str
    segments: Segments
    relative: bool = False
    flag: Optional[str] = None

    def pattern(self, array_path: Optional[Segments]) -> Segments:
        if self.relative and array_path is not None:
            return tuple(array_path) + (RELATIVE_MARKER,) + self.segments
        return self.segments

    def concrete(self, item_path: Optional[Segments]) -> Segments:
        if self.relative and item_path is not None:
            return tuple(item_path) + self.segments
        return self.segments


@dataclass
class RuleBinding:
    """Runtime form of a rule: one per declaration, one instance per item."""
    rule_id: str
    rule: DerivationRule
    kind: StrategyKind
    array_path: Optional[Segments]
    target: Segments                     # item-relative when array_path is set
    value_refs: List[DependencyRef] = field(default_factory=list)
    snapshot_refs: List[DependencyRef] = field(default_factory=list)   # value_refs minus condition-only reads
    state_refs: List[DependencyRef] = field(default_factory=list)
    group_path: Segments = ()            # item-relative when array_path is set
    is_wildcard: bool = False
    debounce_ms: int = 0

    @property
    def target_pattern(self) -> Segments:
        if self.array_path is not None:
            return tuple(self.array_path) + (RELATIVE_MARKER,) + self.target
        return self.target

    @property
    def target_pattern_str(self) -> str:
        return format_path(self.target_pattern)

    @property
    def label(self) -> str:
        return self.rule.debug_name or self.rule_id

    @property
    def is_deferred(self) -> bool:
        return self.kind.is_deferred or self.debounce_ms > 0

    @property
    def stop_on_user_override(self) -> bool:
        return self.rule.stop_on_user_override and self.kind != StrategyKind.SELF_TRANSFORM

    @property
    def re_engage(self) -> bool:
        return self.rule.re_engage_on_dependency_change

    def target_path(self, item_path: Optional[Segments]) -> Segments:
        if self.array_path is not None and item_path is not None:
            return tuple(item_path) + self.target
        return self.target

    def scope_path(self, item_path: Optional[Segments]) -> Optional[Segments]:
        """Where bare names bind first: the group, the item, or None for the root."""
        base = tuple(item_path) if item_path is not None else ()
        scope = base + tuple(self.group_path)
        return scope or None

    def graph_dependencies(self) -> List[str]:
        if self.is_wildcard:
            return [WILDCARD]
        if self.kind == StrategyKind.SELF_TRANSFORM:
            return [self.target_pattern_str]
        return [format_path(ref.pattern(self.array_path)) for ref in self.value_refs]

    def match_value_change(self, changed: Segments, structural: bool = False) -> Tuple[bool, Set[int]]:
        """
        Which instances a value change affects.

        ``structural`` marks the container change that follows an item
        insert, removal or move; item values are untouched by it, so
        item-relative reads do not match.

        Returns:
            (all_instances, item_indices)
        """
        if self.kind == StrategyKind.SELF_TRANSFORM:
            return False, set()
        if self.is_wildcard:
            own = self.target_pattern
            own_write = len(changed) >= len(own) and paths_overlap(changed, own)
            return not own_write, set()
        return self._match(self.value_refs, changed, None, structural)

    def match_state_change(self, changed: Segments, flag: str) -> Tuple[bool, Set[int]]:
        return self._match(self.state_refs, changed, flag, False)

    def _match(
        self,
        refs: Iterable[DependencyRef],
        changed: Segments,
        flag: Optional[str],
        structural: bool,
    ) -> Tuple[bool, Set[int]]:
        indices: Set[int] = set()
        for ref in refs:
            if flag is not None and ref.flag is not None and ref.flag != flag:
                # pristine mirrors dirty
                if not (ref.flag == "pristine" and flag == "dirty"):
                    continue
            if not paths_overlap(ref.pattern(self.array_path), changed):
                continue
            if self.array_path is None or not ref.relative:
                return True, set()
            n = len(self.array_path)
            if len(changed) > n and isinstance(changed[n], int):
                indices.add(changed[n])
            elif not structural:
                return True, set()
        return False, indices


def _item_relative(segments: Segments, array_path: Optional[Segments]) -> Optional[Segments]:
    """``items.$.x`` -> ``x`` for the rule's own array, else None."""
    if array_path is None:
        return None
    n = len(array_path)
    if len(segments) > n + 1 and segments[:n] == tuple(array_path) and segments[n] == RELATIVE_MARKER:
        return segments[n + 1:]
    return None


def _as_ref(
    path: str,
    array_path: Optional[Segments],
    item_keys: Set[str],
    group_path: Segments = (),
    group_keys: Set[str] = frozenset(),
    flag: Optional[str] = None,
) -> DependencyRef:
    segments = parse_path(path)
    if segments[0] == RELATIVE_MARKER:
        if array_path is None:
            raise RuleConfigurationError(f"Relative dependency '{path}' outside an array item")
        return DependencyRef(path, segments[1:], relative=True, flag=flag)

    relative = _item_relative(segments, array_path)
    if relative is not None:
        return DependencyRef(path, relative, relative=True, flag=flag)

    if group_path and segments[0] in group_keys:
        return DependencyRef(path, tuple(group_path) + segments, relative=array_path is not None, flag=flag)

    if array_path is not None and segments[0] in item_keys:
        return DependencyRef(path, segments, relative=True, flag=flag)

    if RELATIVE_MARKER in segments:
        raise RuleConfigurationError(f"Item pattern '{path}' used outside its array")
    return DependencyRef(path, segments, relative=False, flag=flag)


def split_target(
    target: str,
    array_path: Optional[Segments],
    array_paths: Iterable[Segments],
) -> Tuple[Optional[Segments], Segments]:
    segments = parse_path(target)
    if segments[0] == RELATIVE_MARKER:
        if array_path is None:
            raise RuleConfigurationError(f"Relative target '{target}' outside an array item")
        return array_path, segments[1:]
    if array_path is not None:
        relative = _item_relative(segments, array_path)
        return array_path, relative if relative is not None else segments
    for candidate in array_paths:
        relative = _item_relative(segments, tuple(candidate))
        if relative is not None:
            return tuple(candidate), relative
    if RELATIVE_MARKER in segments:
        raise RuleConfigurationError(f"Target '{target}' uses '$' outside a declared array")
    return None, segments


def infer_dependencies(rule: DerivationRule, include_condition: bool = True) -> ExpressionDependencies:
    """
    Value and state reads of a rule, explicit or inferred.

    With ``include_condition`` off, only the reads of the strategy itself
    are returned; these form the snapshot override re-engagement compares.
    """
    deps = ExpressionDependencies()
    kind = rule.kind

    if rule.depends_on is not None:
        for path in rule.depends_on:
            deps.add_field(path)
    elif kind == StrategyKind.STATIC_MAP:
        if rule.value_map is not None:
            deps.add_field(rule.source)
    elif kind == StrategyKind.EXPRESSION:
        deps.merge(extract_dependencies(rule.expression))
    elif kind == StrategyKind.CONDITIONAL:
        for branch in rule.branches:
            deps.merge(condition_dependencies(branch.when))
            if branch.expression:
                deps.merge(extract_dependencies(branch.expression))
    elif kind == StrategyKind.HTTP:
        for expression in rule.http.expressions():
            deps.merge(extract_dependencies(expression))
    elif kind in (StrategyKind.FUNCTION, StrategyKind.ASYNC_FUNCTION):
        deps.add_field(WILDCARD)

    if kind == StrategyKind.STATIC_MAP and rule.source and rule.depends_on is not None:
        deps.add_field(rule.source)

    # Condition reads always trigger, even with explicit dependsOn
    if include_condition:
        deps.merge(condition_dependencies(rule.condition))

    # State reads are never covered by an explicit dependsOn
    if rule.depends_on is not None:
        if kind == StrategyKind.CONDITIONAL:
            for branch in rule.branches:
                for path, flag in condition_dependencies(branch.when).states:
                    deps.add_state(path, flag)
        elif kind == StrategyKind.EXPRESSION:
            for path, flag in extract_dependencies(rule.expression).states:
                deps.add_state(path, flag)

    for ref in rule.depends_on_state:
        segments = parse_path(ref)
        deps.add_state(format_path(segments[:-1]), segments[-1])

    return deps


def compile_rule(
    rule: DerivationRule,
    rule_id: str,
    array_path: Optional[Segments] = None,
    item_keys: Iterable[str] = (),
    array_paths: Iterable[Segments] = (),
    group_path: Segments = (),
    group_keys: Iterable[str] = (),
    default_debounce_ms: int = 0,
    self_transform_debounce_ms: int = 300,
    async_debounce_ms: int = 300,
) -> RuleBinding:
    """
    Resolve a declaration into a RuleBinding.

    Raises:
        RuleConfigurationError: on unresolvable targets or dependencies
    """
    array_paths = [tuple(p) for p in array_paths]
    array_path, target = split_target(rule.target, array_path, array_paths)
    keys = set(item_keys)
    groups = set(group_keys)
    kind = rule.kind

    deps = infer_dependencies(rule)
    is_wildcard = WILDCARD in deps.fields
    target_pattern = (tuple(array_path) + (RELATIVE_MARKER,) + target) if array_path is not None else target

    value_refs = []
    for path in deps.fields:
        if path == WILDCARD:
            continue
        ref = _as_ref(path, array_path, keys, group_path, groups)
        if ref.pattern(array_path) == target_pattern and kind != StrategyKind.SELF_TRANSFORM:
            logger.warning(f"Rule '{rule_id}' reads its own target '{rule.target}'")
        value_refs.append(ref)

    strategy_fields = set(infer_dependencies(rule, include_condition=False).fields)
    snapshot_refs = [ref for ref in value_refs if ref.name in strategy_fields]

    state_refs = []
    for path, flag in deps.states:
        if not path:
            state_refs.append(DependencyRef("", target, relative=array_path is not None, flag=flag))
        else:
            state_refs.append(_as_ref(path, array_path, keys, group_path, groups, flag=flag))

    if kind == StrategyKind.SELF_TRANSFORM:
        debounce = rule.debounce_ms if rule.debounce_ms is not None else self_transform_debounce_ms
        if debounce <= 0:
            raise RuleConfigurationError("Self-transform derivations require a positive debounce", target=rule.target)
    elif kind.is_async:
        debounce = rule.debounce_ms if rule.debounce_ms is not None else async_debounce_ms
    else:
        debounce = rule.debounce_ms if rule.debounce_ms is not None else default_debounce_ms

    if rule.re_engage_on_dependency_change and not rule.stop_on_user_override:
        logger.warning(
            f"Rule '{rule_id}' sets reEngageOnDependencyChange without stopOnUserOverride; "
            f"re-engagement has no effect"
        )

    return RuleBinding(
        rule_id=rule_id,
        rule=rule,
        kind=kind,
        array_path=tuple(array_path) if array_path is not None else None,
        target=target,
        value_refs=value_refs,
        snapshot_refs=snapshot_refs,
        state_refs=state_refs,
        group_path=tuple(group_path),
        is_wildcard=is_wildcard,
        debounce_ms=debounce,
    )
