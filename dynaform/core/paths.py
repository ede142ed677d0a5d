"""
DYNAFORM Path Resolver

Resolves field references against the form value tree.

Path syntax:
- Dot segments: ``address.city``
- Bracket or dot indices: ``items[0].quantity`` == ``items.0.quantity``
- Item-relative marker: ``$.quantity`` resolves inside the nearest enclosing
  array item and never crosses into a sibling item.
- Pattern placeholder: ``items.$.quantity`` names the same field in every item.

Unresolved paths are a soft failure: the resolver returns ``UNDEFINED``
instead of raising.
"""

from __future__ import annotations
from functools import lru_cache
from typing import Any, Iterable, Optional, Sequence, Tuple, Union
import re

from dynaform.errors.exceptions import PathError


Segment = Union[str, int]
Segments = Tuple[Segment, ...]

RELATIVE_MARKER = "$"
WILDCARD = "*"


# =============================================================================
# UNDEFINED SENTINEL
# =============================================================================

class _Undefined:
    """
    Sentinel for values that could not be resolved.

    Distinguishes:
    - UNDEFINED: the path does not exist in the value tree
    - None: the path exists and holds an explicit null
    """
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "<UNDEFINED>"

    def __bool__(self):
        return False

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


UNDEFINED = _Undefined()


def is_missing(value: Any) -> bool:
    """True for UNDEFINED and None."""
    return value is UNDEFINED or value is None


# =============================================================================
# PARSING
# =============================================================================

_SEGMENT_RE = re.compile(r"([^.\[\]]+)|\[(\d+|\$)\]")


@lru_cache(maxsize=4096)
def parse_path(path: str) -> Segments:
    """
    Split a path string into segments.

    Numeric segments become ints, everything else stays a string.

    Raises:
        PathError: for empty or malformed paths
    """
    if not isinstance(path, str) or not path.strip():
        raise PathError(f"Empty field path: {path!r}")

    text = path.strip()
    segments = []
    pos = 0
    expect_segment = True

    while pos < len(text):
        if text[pos] == ".":
            if expect_segment:
                raise PathError(f"Empty segment in path '{path}' at {pos}")
            expect_segment = True
            pos += 1
            continue

        match = _SEGMENT_RE.match(text, pos)
        if not match:
            raise PathError(f"Malformed path '{path}' at {pos}")

        if match.group(1) is not None:
            if not expect_segment:
                raise PathError(f"Missing '.' in path '{path}' at {pos}")
            raw = match.group(1)
        else:
            raw = match.group(2)

        segments.append(int(raw) if raw.isdigit() else raw)
        expect_segment = False
        pos = match.end()

    if expect_segment:
        raise PathError(f"Path '{path}' ends with '.'")

    return tuple(segments)


def format_path(segments: Iterable[Segment]) -> str:
    """Canonical dotted representation: ``items.0.quantity``."""
    return ".".join(str(s) for s in segments)


def normalize_path(path: str) -> str:
    """Round-trip a path through the parser (``a[0].b`` -> ``a.0.b``)."""
    return format_path(parse_path(path))


def is_relative(path: Union[str, Segments]) -> bool:
    """True when the path starts with the item-relative marker."""
    segments = parse_path(path) if isinstance(path, str) else path
    return bool(segments) and segments[0] == RELATIVE_MARKER


def is_pattern(segments: Segments) -> bool:
    """True when a non-leading segment is the item placeholder."""
    return RELATIVE_MARKER in segments[1:]


def join_scope(scope: Segments, path: Union[str, Segments]) -> Segments:
    """
    Bind a path to a scope.

    Relative paths drop their marker and are appended to the scope;
    absolute paths are returned unchanged.
    """
    segments = parse_path(path) if isinstance(path, str) else path
    if segments and segments[0] == RELATIVE_MARKER:
        return tuple(scope) + segments[1:]
    return segments


# =============================================================================
# RESOLUTION
# =============================================================================

def resolve_segments(tree: Any, segments: Sequence[Segment]) -> Any:
    """Walk the tree; UNDEFINED on any gap."""
    obj = tree
    for seg in segments:
        if isinstance(obj, dict):
            if seg in obj:
                obj = obj[seg]
            elif isinstance(seg, int) and str(seg) in obj:
                obj = obj[str(seg)]
            else:
                return UNDEFINED
        elif isinstance(obj, (list, tuple)):
            if isinstance(seg, int) and 0 <= seg < len(obj):
                obj = obj[seg]
            elif seg == "length":
                obj = len(obj)
            else:
                return UNDEFINED
        else:
            return UNDEFINED
    return obj


def resolve_path(
    tree: Any,
    path: Union[str, Segments],
    scope: Optional[Segments] = None,
) -> Any:
    """
    Resolve a field reference to its current value.

    Args:
        tree: Root of the form value tree
        path: Absolute or item-relative path
        scope: Segments of the enclosing array item (for relative paths)

    Returns:
        The value, or UNDEFINED when the path cannot be resolved.
    """
    segments = parse_path(path) if isinstance(path, str) else tuple(path)
    if segments and segments[0] == RELATIVE_MARKER:
        if scope is None:
            return UNDEFINED
        segments = tuple(scope) + segments[1:]
    if RELATIVE_MARKER in segments:
        return UNDEFINED
    return resolve_segments(tree, segments)


def assign_path(tree: Any, segments: Sequence[Segment], value: Any) -> Any:
    """
    Write a value into the tree, creating intermediate dicts.

    Returns:
        The previous value (UNDEFINED if the leaf did not exist).

    Raises:
        PathError: if an intermediate node is not a container or a list
            index is out of range
    """
    if not segments:
        raise PathError("Cannot assign to the form root")

    obj = tree
    for i, seg in enumerate(segments[:-1]):
        nxt_seg = segments[i + 1]
        if isinstance(obj, dict):
            if seg not in obj or not isinstance(obj[seg], (dict, list)):
                obj[seg] = [] if isinstance(nxt_seg, int) else {}
            obj = obj[seg]
        elif isinstance(obj, list):
            if not isinstance(seg, int) or not 0 <= seg < len(obj):
                raise PathError(f"Index {seg!r} out of range at '{format_path(segments[:i + 1])}'")
            if not isinstance(obj[seg], (dict, list)):
                obj[seg] = {}
            obj = obj[seg]
        else:
            raise PathError(f"Cannot descend into '{format_path(segments[:i])}'")

    leaf = segments[-1]
    if isinstance(obj, dict):
        old = obj.get(leaf, UNDEFINED)
        obj[leaf] = value
        return old
    if isinstance(obj, list) and isinstance(leaf, int):
        if 0 <= leaf < len(obj):
            old = obj[leaf]
            obj[leaf] = value
            return old
        if leaf == len(obj):
            obj.append(value)
            return UNDEFINED
    raise PathError(f"Cannot assign '{format_path(segments)}'")


# =============================================================================
# PATTERN MATCHING
# =============================================================================

def _segment_matches(a: Segment, b: Segment) -> bool:
    if a == b:
        return True
    if a == RELATIVE_MARKER and isinstance(b, int):
        return True
    if b == RELATIVE_MARKER and isinstance(a, int):
        return True
    return False


def paths_overlap(a: Segments, b: Segments) -> bool:
    """
    True when one path is a prefix of the other.

    A change to ``items.0.quantity`` is a change to ``items`` and vice versa.
    The item placeholder matches any index.
    """
    for x, y in zip(a, b):
        if not _segment_matches(x, y):
            return False
    return True


def is_descendant(child: Segments, parent: Segments) -> bool:
    """True when ``child`` lies strictly below ``parent``."""
    return len(child) > len(parent) and paths_overlap(child, parent)


def pattern_of(segments: Segments, array_paths: Iterable[Segments]) -> Segments:
    """
    Replace the item index following a known array path with the placeholder.

    ``items.3.quantity`` -> ``items.$.quantity`` when ``items`` is an array.
    """
    result = list(segments)
    for array_path in array_paths:
        n = len(array_path)
        if len(result) > n and tuple(result[:n]) == tuple(array_path) and isinstance(result[n], int):
            result[n] = RELATIVE_MARKER
    return tuple(result)
