"""
DYNAFORM Expression Evaluator

Evaluates parsed expressions against an EvaluationScope.

Value semantics:
- Arithmetic uses IEEE-754 doubles; numeric text is coerced to a number.
- ``+`` concatenates when either operand is non-numeric text, else adds.
- Missing values never raise: they are NaN in arithmetic and "" in
  concatenation, and member access on a missing value yields UNDEFINED.
- ``&&``/``||`` short-circuit and return an operand, not a bool.

Identifiers:
- ``formValue``       the form value (item fields first, then root)
- ``$``               the enclosing array item
- ``fieldValue``      the target field's own value
- ``fieldState``      the target field's dirty/touched/pristine flags
- ``formFieldState``  flags of any named field (``formFieldState.email.touched``)
- ``externalData``    read-only data supplied to the engine
- anything else       a field path (item first, then root) or a scope variable
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
import logging
import math
import re

from dynaform.core.paths import (
    RELATIVE_MARKER,
    UNDEFINED,
    Segments,
    format_path,
    parse_path,
    resolve_segments,
)
from dynaform.errors.exceptions import ExpressionEvaluationError
from dynaform.expressions.parser import (
    ArrayLiteral,
    Binary,
    Call,
    Identifier,
    Index,
    Literal,
    Logical,
    Member,
    Node,
    Unary,
    parse_expression,
)

logger = logging.getLogger(__name__)

STATE_FLAGS = ("dirty", "touched", "pristine")

# Identifiers that never name a form field
RESERVED = frozenset([
    "formValue", "fieldValue", "fieldState", "formFieldState", "externalData",
    "Math", "Number", "String", "Boolean", "parseFloat", "parseInt", RELATIVE_MARKER,
])


# =============================================================================
# SCOPE
# =============================================================================

@dataclass
class EvaluationScope:
    """
    Everything an expression may read.

    Attributes:
        root: Form value tree
        item_path: Concrete path of the enclosing array item, if any
        field_path: Concrete path of the rule's target field
        state_of: Callback returning ``{"dirty", "touched", "pristine"}`` for a path
        external_data: Read-only mapping exposed as ``externalData``
        variables: Extra names (``response`` for HTTP response mapping)
    """
    root: Any = field(default_factory=dict)
    item_path: Optional[Segments] = None
    field_path: Optional[Segments] = None
    state_of: Optional[Callable[[Segments], Dict[str, bool]]] = None
    external_data: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)

    def bind(self, path: Union[str, Segments]) -> Segments:
        """
        Absolute segments for a path.

        Relative paths bind to the item; bare paths bind to the item when
        the item has that key, otherwise to the root.
        """
        segments = parse_path(path) if isinstance(path, str) else tuple(path)
        if segments and segments[0] == RELATIVE_MARKER:
            if self.item_path is None:
                return segments
            return tuple(self.item_path) + segments[1:]
        if self.item_path is not None and segments:
            item = resolve_segments(self.root, self.item_path)
            if isinstance(item, dict) and segments[0] in item:
                return tuple(self.item_path) + segments
        return segments

    def resolve(self, path: Union[str, Segments]) -> Any:
        segments = self.bind(path)
        if RELATIVE_MARKER in segments:
            return UNDEFINED
        return resolve_segments(self.root, segments)

    @property
    def field_value(self) -> Any:
        if self.field_path is None:
            return UNDEFINED
        return resolve_segments(self.root, self.field_path)

    @property
    def item_value(self) -> Any:
        if self.item_path is None:
            return UNDEFINED
        return resolve_segments(self.root, self.item_path)

    def state(self, segments: Optional[Segments]) -> Dict[str, bool]:
        if segments is None or self.state_of is None:
            return {"dirty": False, "touched": False, "pristine": True}
        return self.state_of(segments)

    def with_variables(self, **variables: Any) -> "EvaluationScope":
        merged = dict(self.variables)
        merged.update(variables)
        return EvaluationScope(
            root=self.root,
            item_path=self.item_path,
            field_path=self.field_path,
            state_of=self.state_of,
            external_data=self.external_data,
            variables=merged,
        )


class _FormView:
    """``formValue``: scoped read-only view of the value tree."""

    def __init__(self, scope: EvaluationScope):
        self._scope = scope

    def get(self, name: Any) -> Any:
        return self._scope.resolve((name,))


class _ItemView:
    """``$``: the enclosing array item."""

    def __init__(self, scope: EvaluationScope):
        self._scope = scope

    def get(self, name: Any) -> Any:
        item = self._scope.item_value
        return _member(item, name)


class _StateView:
    """``formFieldState``: collects path segments until a flag name."""

    def __init__(self, scope: EvaluationScope, segments: Segments = ()):
        self._scope = scope
        self._segments = segments

    def get(self, name: Any) -> Any:
        if name in STATE_FLAGS and self._segments:
            return self._scope.state(self._scope.bind(self._segments)).get(name, False)
        return _StateView(self._scope, self._segments + (name,))


class _MathNamespace:
    def get(self, name: Any) -> Any:
        fn = MATH_FUNCTIONS.get(name)
        return fn if fn is not None else UNDEFINED


_VIEWS = (_FormView, _ItemView, _StateView, _MathNamespace)


# =============================================================================
# COERCION
# =============================================================================

def is_numeric_text(value: Any) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    try:
        float(value.strip())
        return True
    except ValueError:
        return False


def to_number(value: Any) -> Union[int, float]:
    if value is UNDEFINED:
        return math.nan
    if value is None:
        return 0
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        try:
            number = float(text)
        except ValueError:
            return math.nan
        return int(number) if number.is_integer() and "." not in text and "e" not in text.lower() else number
    return math.nan


def to_string(value: Any) -> str:
    if value is UNDEFINED or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (list, tuple)):
        return ",".join(to_string(v) for v in value)
    return str(value)


def is_truthy(value: Any) -> bool:
    if value is UNDEFINED or value is None:
        return False
    if isinstance(value, float) and math.isnan(value):
        return False
    if isinstance(value, (bool, int, float, str)):
        return bool(value)
    return True


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def loose_equals(a: Any, b: Any) -> bool:
    """``==``: null and undefined equal each other; numbers compare with numeric text."""
    a_missing = a is UNDEFINED or a is None
    b_missing = b is UNDEFINED or b is None
    if a_missing or b_missing:
        return a_missing and b_missing
    if isinstance(a, str) and isinstance(b, str):
        return a == b
    if _is_number(a) or _is_number(b) or isinstance(a, bool) or isinstance(b, bool):
        x, y = to_number(a), to_number(b)
        return not (math.isnan(x) or math.isnan(y)) and x == y
    return a == b


def strict_equals(a: Any, b: Any) -> bool:
    if a is UNDEFINED or b is UNDEFINED:
        return a is b
    if _is_number(a) and _is_number(b):
        return a == b
    if type(a) is not type(b):
        return False
    return a == b


def _compare(op: str, a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        x, y = a, b
    else:
        x, y = to_number(a), to_number(b)
        if math.isnan(x) or math.isnan(y):
            return False
    if op == "<":
        return x < y
    if op == "<=":
        return x <= y
    if op == ">":
        return x > y
    return x >= y


def _add(a: Any, b: Any) -> Any:
    a_text = isinstance(a, str) and not is_numeric_text(a)
    b_text = isinstance(b, str) and not is_numeric_text(b)
    if a_text or b_text:
        return to_string(a) + to_string(b)
    return to_number(a) + to_number(b)


def _divide(a: Any, b: Any) -> float:
    x, y = to_number(a), to_number(b)
    if y == 0:
        if math.isnan(x) or x == 0:
            return math.nan
        return math.copysign(math.inf, x) * math.copysign(1.0, y)
    return x / y


def _modulo(a: Any, b: Any) -> float:
    x, y = to_number(a), to_number(b)
    if y == 0 or math.isinf(x) or math.isnan(x) or math.isnan(y):
        return math.nan
    return math.fmod(x, y)


def _contains(a: Any, b: Any) -> bool:
    if isinstance(a, str):
        return to_string(b) in a
    if isinstance(a, (list, tuple)):
        return any(loose_equals(item, b) for item in a)
    return False


def _matches(a: Any, b: Any) -> bool:
    if a is UNDEFINED or a is None:
        return False
    try:
        return re.search(to_string(b), to_string(a)) is not None
    except re.error as e:
        raise ExpressionEvaluationError(f"Invalid pattern {b!r}: {e}") from e


def _binary(op: str, a: Any, b: Any) -> Any:
    if op == "+":
        return _add(a, b)
    if op == "-":
        return to_number(a) - to_number(b)
    if op == "*":
        return to_number(a) * to_number(b)
    if op == "/":
        return _divide(a, b)
    if op == "%":
        return _modulo(a, b)
    if op == "==":
        return loose_equals(a, b)
    if op == "!=":
        return not loose_equals(a, b)
    if op == "===":
        return strict_equals(a, b)
    if op == "!==":
        return not strict_equals(a, b)
    if op in ("<", "<=", ">", ">="):
        return _compare(op, a, b)
    if op == "contains":
        return _contains(a, b)
    if op == "startsWith":
        return isinstance(a, str) and a.startswith(to_string(b))
    if op == "endsWith":
        return isinstance(a, str) and a.endswith(to_string(b))
    if op == "matches":
        return _matches(a, b)
    raise ExpressionEvaluationError(f"Unknown operator {op!r}")


# =============================================================================
# MEMBERS AND CALLS
# =============================================================================

def _member(obj: Any, name: Any) -> Any:
    if isinstance(obj, _VIEWS):
        return obj.get(name)
    if isinstance(obj, dict):
        if name in obj:
            return obj[name]
        if isinstance(name, int) and str(name) in obj:
            return obj[str(name)]
        return UNDEFINED
    if isinstance(obj, (list, tuple, str)):
        if name == "length":
            return len(obj)
        if isinstance(name, int) and 0 <= name < len(obj):
            return obj[name]
        return UNDEFINED
    return UNDEFINED


def _js_round(x: Any) -> Any:
    n = to_number(x)
    if math.isnan(n) or math.isinf(n):
        return n
    return math.floor(n + 0.5)


def _to_fixed(n: Any, digits: Any = 0) -> str:
    value = to_number(n)
    if math.isnan(value):
        return "NaN"
    return f"{value:.{int(to_number(digits))}f}"


MATH_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "round": _js_round,
    "floor": lambda x: math.floor(to_number(x)) if math.isfinite(to_number(x)) else to_number(x),
    "ceil": lambda x: math.ceil(to_number(x)) if math.isfinite(to_number(x)) else to_number(x),
    "abs": lambda x: abs(to_number(x)),
    "sqrt": lambda x: math.sqrt(to_number(x)) if to_number(x) >= 0 else math.nan,
    "pow": lambda x, y: math.pow(to_number(x), to_number(y)),
    "min": lambda *xs: min((to_number(x) for x in xs), default=math.inf),
    "max": lambda *xs: max((to_number(x) for x in xs), default=-math.inf),
}


def _parse_int(value: Any, *_: Any) -> Any:
    match = re.match(r"\s*([+-]?\d+)", to_string(value))
    return int(match.group(1)) if match else math.nan


def _parse_float(value: Any) -> Any:
    match = re.match(r"\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)", to_string(value))
    return float(match.group(1)) if match else math.nan


GLOBAL_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "Number": lambda x=0: to_number(x),
    "String": lambda x="": to_string(x),
    "Boolean": lambda x=False: is_truthy(x),
    "parseInt": _parse_int,
    "parseFloat": _parse_float,
}


def _string_method(obj: str, method: str, args: List[Any]) -> Any:
    if method in ("includes", "contains"):
        return to_string(args[0] if args else UNDEFINED) in obj
    if method == "startsWith":
        return obj.startswith(to_string(args[0] if args else UNDEFINED))
    if method == "endsWith":
        return obj.endswith(to_string(args[0] if args else UNDEFINED))
    if method == "toLowerCase":
        return obj.lower()
    if method == "toUpperCase":
        return obj.upper()
    if method == "trim":
        return obj.strip()
    if method == "indexOf":
        return obj.find(to_string(args[0] if args else UNDEFINED))
    if method in ("substring", "slice"):
        start = int(to_number(args[0])) if args else 0
        end = int(to_number(args[1])) if len(args) > 1 else len(obj)
        if method == "substring":
            start, end = max(0, start), max(0, end)
            start, end = min(start, end), max(start, end)
        return obj[start:end]
    if method == "split":
        sep = to_string(args[0]) if args else None
        return obj.split(sep) if sep else list(obj)
    if method == "replace":
        return obj.replace(to_string(args[0]), to_string(args[1]), 1) if len(args) > 1 else obj
    if method == "toString":
        return obj
    raise ExpressionEvaluationError(f"Unsupported string method '{method}'")


def _call_method(obj: Any, method: Any, args: List[Any]) -> Any:
    if isinstance(obj, _MathNamespace):
        fn = MATH_FUNCTIONS.get(method)
        if fn is None:
            raise ExpressionEvaluationError(f"Unsupported Math function '{method}'")
        return fn(*args)
    if obj is UNDEFINED or obj is None:
        return UNDEFINED
    if isinstance(obj, str):
        return _string_method(obj, method, args)
    if isinstance(obj, (list, tuple)):
        if method in ("includes", "contains"):
            return _contains(obj, args[0] if args else UNDEFINED)
        if method == "indexOf":
            for i, item in enumerate(obj):
                if strict_equals(item, args[0] if args else UNDEFINED):
                    return i
            return -1
        if method == "join":
            sep = to_string(args[0]) if args else ","
            return sep.join(to_string(v) for v in obj)
        raise ExpressionEvaluationError(f"Unsupported array method '{method}'")
    if _is_number(obj):
        if method == "toFixed":
            return _to_fixed(obj, *args)
        if method == "toString":
            return to_string(obj)
        raise ExpressionEvaluationError(f"Unsupported number method '{method}'")
    raise ExpressionEvaluationError(f"Cannot call '{method}' on {type(obj).__name__}")


# =============================================================================
# EVALUATOR
# =============================================================================

class Evaluator:
    """
    Tree-walking evaluator.

    Stateless apart from the scope passed to evaluate(); one instance can
    serve every rule.
    """

    def evaluate(self, expression: Union[str, Node], scope: EvaluationScope) -> Any:
        """
        Evaluate an expression.

        Raises:
            ExpressionError: on a syntax error (string input only)
            ExpressionEvaluationError: on an unsupported call
        """
        node = parse_expression(expression) if isinstance(expression, str) else expression
        return self._eval(node, scope)

    def _eval(self, node: Node, scope: EvaluationScope) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Identifier):
            return self._identifier(node.name, scope)
        if isinstance(node, Member):
            return _member(self._eval(node.obj, scope), node.name)
        if isinstance(node, Index):
            index = self._eval(node.index, scope)
            if _is_number(index) and float(index).is_integer():
                index = int(index)
            elif not isinstance(index, str):
                return UNDEFINED
            return _member(self._eval(node.obj, scope), index)
        if isinstance(node, Logical):
            left = self._eval(node.left, scope)
            if node.op == "&&":
                return self._eval(node.right, scope) if is_truthy(left) else left
            return left if is_truthy(left) else self._eval(node.right, scope)
        if isinstance(node, Binary):
            return _binary(node.op, self._eval(node.left, scope), self._eval(node.right, scope))
        if isinstance(node, Unary):
            value = self._eval(node.operand, scope)
            if node.op == "!":
                return not is_truthy(value)
            number = to_number(value)
            return -number if node.op == "-" else number
        if isinstance(node, ArrayLiteral):
            return [self._eval(item, scope) for item in node.items]
        if isinstance(node, Call):
            return self._call(node, scope)
        raise ExpressionEvaluationError(f"Unknown node {type(node).__name__}")

    def _identifier(self, name: str, scope: EvaluationScope) -> Any:
        if name in scope.variables:
            return scope.variables[name]
        if name == "formValue":
            return _FormView(scope)
        if name == RELATIVE_MARKER:
            return _ItemView(scope)
        if name == "fieldValue":
            return scope.field_value
        if name == "fieldState":
            return scope.state(scope.field_path)
        if name == "formFieldState":
            return _StateView(scope)
        if name == "externalData":
            return scope.external_data
        if name == "Math":
            return _MathNamespace()
        return scope.resolve((name,))

    def _call(self, node: Call, scope: EvaluationScope) -> Any:
        args = [self._eval(arg, scope) for arg in node.args]
        callee = node.callee
        if isinstance(callee, Member):
            return _call_method(self._eval(callee.obj, scope), callee.name, args)
        if isinstance(callee, Identifier) and callee.name in GLOBAL_FUNCTIONS \
                and callee.name not in scope.variables:
            return GLOBAL_FUNCTIONS[callee.name](*args)
        raise ExpressionEvaluationError("Only methods and built-in functions can be called")


_default_evaluator = Evaluator()


def evaluate_expression(expression: Union[str, Node], scope: Optional[EvaluationScope] = None) -> Any:
    """Evaluate with a shared evaluator; an empty scope when none is given."""
    return _default_evaluator.evaluate(expression, scope or EvaluationScope())


# =============================================================================
# DEPENDENCY EXTRACTION
# =============================================================================

@dataclass
class ExpressionDependencies:
    """
    Field reads found in an expression.

    ``fields`` are value paths (``"$.quantity"``, ``"address.city"``, ``"*"``
    for the whole form). ``states`` are ``(path, flag)`` pairs where an empty
    path means the target field itself.
    """
    fields: List[str] = field(default_factory=list)
    states: List[Tuple[str, Optional[str]]] = field(default_factory=list)

    def add_field(self, path: str) -> None:
        if path not in self.fields:
            self.fields.append(path)

    def add_state(self, path: str, flag: Optional[str]) -> None:
        if (path, flag) not in self.states:
            self.states.append((path, flag))

    def merge(self, other: "ExpressionDependencies") -> "ExpressionDependencies":
        for path in other.fields:
            self.add_field(path)
        for path, flag in other.states:
            self.add_state(path, flag)
        return self


def _chain(node: Node) -> Tuple[Optional[Node], List[Any]]:
    """Unwind a member chain: (base node, [member names])."""
    names: List[Any] = []
    while isinstance(node, Member):
        names.append(node.name)
        node = node.obj
    names.reverse()
    return node, names


def _strip_length(names: List[Any]) -> List[Any]:
    return names[:-1] if names and names[-1] == "length" else names


def _collect(node: Node, deps: ExpressionDependencies, variables: frozenset) -> None:
    if isinstance(node, Literal):
        return
    if isinstance(node, (Identifier, Member)):
        base, names = _chain(node)
        if not isinstance(base, Identifier):
            _collect(base, deps, variables)
            return
        _collect_chain(base.name, names, deps, variables)
        return
    if isinstance(node, Index):
        _collect(node.obj, deps, variables)
        _collect(node.index, deps, variables)
        return
    if isinstance(node, Call):
        if isinstance(node.callee, Member):
            _collect(node.callee.obj, deps, variables)
        for arg in node.args:
            _collect(arg, deps, variables)
        return
    if isinstance(node, (Binary, Logical)):
        _collect(node.left, deps, variables)
        _collect(node.right, deps, variables)
        return
    if isinstance(node, Unary):
        _collect(node.operand, deps, variables)
        return
    if isinstance(node, ArrayLiteral):
        for item in node.items:
            _collect(item, deps, variables)


def _collect_chain(name: str, names: List[Any], deps: ExpressionDependencies, variables: frozenset) -> None:
    if name in variables or name in ("externalData", "Math", "fieldValue") or name in GLOBAL_FUNCTIONS:
        return
    if name == "formValue":
        names = _strip_length(names)
        deps.add_field(format_path(names) if names else "*")
        return
    if name == RELATIVE_MARKER:
        names = _strip_length(names)
        if names:
            deps.add_field(format_path((RELATIVE_MARKER,) + tuple(names)))
        return
    if name == "fieldState":
        deps.add_state("", names[0] if names and names[0] in STATE_FLAGS else None)
        return
    if name == "formFieldState":
        for i, member in enumerate(names):
            if member in STATE_FLAGS and i > 0:
                deps.add_state(format_path(names[:i]), member)
                return
        if names:
            deps.add_state(format_path(names), None)
        return
    deps.add_field(format_path([name] + _strip_length(names)))


def extract_dependencies(
    expression: Union[str, Node],
    variables: Tuple[str, ...] = (),
) -> ExpressionDependencies:
    """
    Find the field paths and state flags an expression reads.

    Args:
        expression: Source or parsed node
        variables: Extra scope names that are not fields (``response``)

    Raises:
        ExpressionError: on a syntax error
    """
    node = parse_expression(expression) if isinstance(expression, str) else expression
    deps = ExpressionDependencies()
    _collect(node, deps, frozenset(variables))
    return deps
