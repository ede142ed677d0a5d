"""
DYNAFORM Form Model

Owns the form value tree, per-field runtime state (dirty/touched), the
array item arena and the per-path publish/subscribe primitive.

Every value write carries a WriteOrigin. The model itself only uses it to
mark user-written fields dirty; the override tracker is the sole consumer
of the distinction downstream.

Array items live in an arena: each array path keeps an ordered list of
stable identity tokens in lockstep with the list value. Field instance
keys bind to tokens (``items#item_3.quantity``), so inserting, removing or
reordering items never rebinds state to a sibling.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
import copy
import logging
import math

from dynaform.core.enums import FieldStateFlag, WriteOrigin
from dynaform.core.paths import (
    UNDEFINED,
    Segments,
    assign_path,
    format_path,
    parse_path,
    paths_overlap,
    resolve_segments,
)
from dynaform.errors.exceptions import PathError

logger = logging.getLogger(__name__)


def values_equal(a: Any, b: Any) -> bool:
    """Structural equality where NaN equals NaN and UNDEFINED equals only itself."""
    if a is UNDEFINED or b is UNDEFINED:
        return a is b
    if isinstance(a, float) and isinstance(b, float) and math.isnan(a) and math.isnan(b):
        return True
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    try:
        return bool(a == b)
    except Exception:
        return False


# =============================================================================
# EVENTS
# =============================================================================

class FormEventType(str, Enum):
    """Types of form model events."""
    VALUE_CHANGED = "value_changed"
    STATE_CHANGED = "state_changed"
    ITEM_ADDED = "item_added"
    ITEM_REMOVED = "item_removed"
    ITEM_MOVED = "item_moved"
    FORM_RESET = "form_reset"


@dataclass
class FormEvent:
    """
    A change notification.

    ``path`` is the concrete path (current indices). ``key`` is the
    token-bound instance key of the same location. A VALUE_CHANGED event
    carrying a ``token`` is the structural change of an array after an
    item was inserted, removed or moved.
    """
    event_type: FormEventType
    path: Segments = ()
    key: str = ""
    origin: WriteOrigin = WriteOrigin.USER
    old_value: Any = None
    new_value: Any = None
    flag: Optional[FieldStateFlag] = None
    token: Optional[str] = None
    index: Optional[int] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def path_str(self) -> str:
        return format_path(self.path)


FormEventHandler = Callable[[FormEvent], None]


# =============================================================================
# FIELD RUNTIME STATE
# =============================================================================

@dataclass
class FieldRuntimeState:
    """Host-form state flags for one field instance."""
    key: str
    dirty: bool = False
    touched: bool = False

    @property
    def pristine(self) -> bool:
        return not self.dirty

    def flag(self, flag: FieldStateFlag) -> bool:
        if flag == FieldStateFlag.DIRTY:
            return self.dirty
        if flag == FieldStateFlag.TOUCHED:
            return self.touched
        return self.pristine

    def to_dict(self) -> Dict[str, bool]:
        return {"dirty": self.dirty, "touched": self.touched, "pristine": self.pristine}


# =============================================================================
# FORM MODEL
# =============================================================================

class FormModel:
    """
    Field-value tree with arena-backed arrays and path subscriptions.

    Usage:
        model = FormModel({"items": [{"qty": 1}]}, array_paths=["items"])
        model.subscribe("items", handler)
        model.set("items.0.qty", 2, WriteOrigin.USER)
    """

    def __init__(
        self,
        initial_value: Optional[Dict[str, Any]] = None,
        array_paths: Iterable[str] = (),
    ):
        self._initial = copy.deepcopy(initial_value or {})
        self._value: Dict[str, Any] = copy.deepcopy(self._initial)
        self._array_paths: List[Segments] = [parse_path(p) for p in array_paths]

        self._tokens: Dict[Segments, List[str]] = {}
        self._token_counter = 0
        self._states: Dict[str, FieldRuntimeState] = {}

        # Path-scoped handlers: pattern -> list of (sub_id, handler)
        self._handlers: Dict[Segments, List[Tuple[str, FormEventHandler]]] = {}
        self._wildcard_handlers: List[Tuple[str, FormEventHandler]] = []
        self._subscription_counter = 0

        self._sync_all_arrays()

    # -------------------------------------------------------------------------
    # Values
    # -------------------------------------------------------------------------

    @property
    def value(self) -> Dict[str, Any]:
        """Live value tree. Read-only by convention; write through set()."""
        return self._value

    @property
    def array_paths(self) -> List[Segments]:
        return list(self._array_paths)

    def get(self, path: Any, default: Any = UNDEFINED) -> Any:
        segments = self._segments(path)
        value = resolve_segments(self._value, segments)
        return default if value is UNDEFINED else value

    def set(self, path: Any, value: Any, origin: WriteOrigin = WriteOrigin.USER) -> bool:
        """
        Write a value.

        Returns:
            True if the stored value changed (and events were emitted).
        """
        segments = self._segments(path)
        old = resolve_segments(self._value, segments)
        if values_equal(old, value):
            return False

        array_path = self._array_at(segments)
        if array_path is not None and not isinstance(value, list):
            raise PathError(f"Array field '{format_path(segments)}' requires a list value")

        assign_path(self._value, segments, value)

        if array_path is not None:
            self._resync_array(array_path, origin)

        key = self.instance_key(segments)
        logger.debug(f"set {format_path(segments)} = {value!r} ({origin.value})")

        self._emit(FormEvent(
            event_type=FormEventType.VALUE_CHANGED,
            path=segments,
            key=key,
            origin=origin,
            old_value=old,
            new_value=value,
        ))

        if origin == WriteOrigin.USER:
            self.mark_dirty(segments, True)

        return True

    def snapshot(self) -> Dict[str, Any]:
        """Deep copy of the current value tree."""
        return copy.deepcopy(self._value)

    # -------------------------------------------------------------------------
    # Field state
    # -------------------------------------------------------------------------

    def state(self, path: Any) -> FieldRuntimeState:
        key = self.instance_key(self._segments(path))
        if key not in self._states:
            self._states[key] = FieldRuntimeState(key=key)
        return self._states[key]

    def state_by_key(self, key: str) -> FieldRuntimeState:
        if key not in self._states:
            self._states[key] = FieldRuntimeState(key=key)
        return self._states[key]

    def mark_touched(self, path: Any, touched: bool = True) -> bool:
        return self._set_flag(path, FieldStateFlag.TOUCHED, touched)

    def mark_dirty(self, path: Any, dirty: bool = True) -> bool:
        return self._set_flag(path, FieldStateFlag.DIRTY, dirty)

    def _set_flag(self, path: Any, flag: FieldStateFlag, on: bool) -> bool:
        segments = self._segments(path)
        state = self.state(segments)
        current = state.dirty if flag == FieldStateFlag.DIRTY else state.touched
        if current == on:
            return False

        if flag == FieldStateFlag.DIRTY:
            state.dirty = on
        else:
            state.touched = on

        self._emit(FormEvent(
            event_type=FormEventType.STATE_CHANGED,
            path=segments,
            key=state.key,
            origin=WriteOrigin.USER,
            old_value=current,
            new_value=on,
            flag=flag,
        ))
        return True

    # -------------------------------------------------------------------------
    # Array arena
    # -------------------------------------------------------------------------

    def items(self, array_path: Any) -> List[str]:
        """Ordered identity tokens of an array."""
        return list(self._tokens.get(self._segments(array_path), []))

    def item_index(self, array_path: Any, token: str) -> Optional[int]:
        tokens = self._tokens.get(self._segments(array_path), [])
        try:
            return tokens.index(token)
        except ValueError:
            return None

    def item_path(self, array_path: Any, token: str) -> Optional[Segments]:
        """Current concrete path of an item, or None once removed."""
        segments = self._segments(array_path)
        index = self.item_index(segments, token)
        if index is None:
            return None
        return segments + (index,)

    def add_item(
        self,
        array_path: Any,
        item: Optional[Dict[str, Any]] = None,
        index: Optional[int] = None,
        origin: WriteOrigin = WriteOrigin.USER,
    ) -> str:
        """Insert an item; returns its identity token."""
        segments = self._require_array(array_path)
        old = copy.deepcopy(self._list_at(segments))
        values = self._list_at(segments, create=True)
        tokens = self._tokens.setdefault(segments, [])

        position = len(values) if index is None else max(0, min(index, len(values)))
        token = self._next_token()
        values.insert(position, copy.deepcopy(item) if item is not None else {})
        tokens.insert(position, token)

        logger.info(f"Array item added: {format_path(segments)}[{position}] token={token}")
        self._emit(FormEvent(
            event_type=FormEventType.ITEM_ADDED,
            path=segments,
            key=format_path(segments),
            origin=origin,
            token=token,
            index=position,
        ))
        self._emit_container_change(segments, old, origin, token)
        return token

    def remove_item(
        self,
        array_path: Any,
        index: int,
        origin: WriteOrigin = WriteOrigin.USER,
    ) -> str:
        """Remove the item at ``index``; returns the removed token."""
        segments = self._require_array(array_path)
        values = self._list_at(segments)
        tokens = self._tokens.get(segments, [])
        if not 0 <= index < len(tokens):
            raise IndexError(f"No item {index} in '{format_path(segments)}'")

        old = copy.deepcopy(values)
        values.pop(index)
        token = tokens.pop(index)
        self._drop_item_states(segments, token)

        logger.info(f"Array item removed: {format_path(segments)}[{index}] token={token}")
        self._emit(FormEvent(
            event_type=FormEventType.ITEM_REMOVED,
            path=segments,
            key=format_path(segments),
            origin=origin,
            token=token,
            index=index,
        ))
        self._emit_container_change(segments, old, origin, token)
        return token

    def move_item(
        self,
        array_path: Any,
        from_index: int,
        to_index: int,
        origin: WriteOrigin = WriteOrigin.USER,
    ) -> str:
        """Reorder an item; tokens travel with their items."""
        segments = self._require_array(array_path)
        values = self._list_at(segments)
        tokens = self._tokens.get(segments, [])
        if not 0 <= from_index < len(tokens) or not 0 <= to_index < len(tokens):
            raise IndexError(f"Cannot move {from_index} -> {to_index} in '{format_path(segments)}'")

        token = tokens[from_index]
        if from_index == to_index:
            return token

        old = copy.deepcopy(values)
        values.insert(to_index, values.pop(from_index))
        tokens.insert(to_index, tokens.pop(from_index))

        self._emit(FormEvent(
            event_type=FormEventType.ITEM_MOVED,
            path=segments,
            key=format_path(segments),
            origin=origin,
            token=token,
            index=to_index,
        ))
        self._emit_container_change(segments, old, origin, token)
        return token

    # -------------------------------------------------------------------------
    # Instance keys
    # -------------------------------------------------------------------------

    def instance_key(self, segments: Segments) -> str:
        """
        Token-bound key of a concrete path.

        ``items.1.qty`` -> ``items#item_4.qty``
        """
        array_path = self._array_prefix(segments)
        if array_path is None:
            return format_path(segments)

        n = len(array_path)
        tokens = self._tokens.get(array_path, [])
        index = segments[n]
        if not 0 <= index < len(tokens):
            return format_path(segments)

        head = f"{format_path(array_path)}#{tokens[index]}"
        rest = segments[n + 1:]
        return f"{head}.{format_path(rest)}" if rest else head

    def item_key_prefix(self, array_path: Any, token: str) -> str:
        return f"{format_path(self._segments(array_path))}#{token}"

    def array_of(self, segments: Segments) -> Optional[Segments]:
        """Array path enclosing a concrete item path, if any."""
        return self._array_prefix(segments)

    # -------------------------------------------------------------------------
    # Reset
    # -------------------------------------------------------------------------

    def reset(self, value: Optional[Dict[str, Any]] = None) -> None:
        """
        Restore the initial (or a supplied) value tree.

        Clears field state and re-issues every array token.
        """
        if value is not None:
            self._initial = copy.deepcopy(value)

        old = self._value
        self._value = copy.deepcopy(self._initial)
        self._states.clear()
        self._tokens.clear()
        self._sync_all_arrays()

        logger.info("Form reset")
        self._emit(FormEvent(
            event_type=FormEventType.FORM_RESET,
            origin=WriteOrigin.ENGINE,
            old_value=old,
            new_value=self._value,
        ))

    # -------------------------------------------------------------------------
    # Publish / subscribe
    # -------------------------------------------------------------------------

    def subscribe(self, path: Any, handler: FormEventHandler) -> str:
        """
        Subscribe to events on a path and its ancestors or descendants.

        Returns:
            Subscription ID, or "" if the handler is already registered
        """
        segments = self._segments(path)
        handlers = self._handlers.setdefault(segments, [])
        if any(h is handler for _, h in handlers):
            return ""

        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"
        handlers.append((sub_id, handler))
        logger.debug(f"Subscribed {sub_id} to {format_path(segments)}")
        return sub_id

    def subscribe_all(self, handler: FormEventHandler) -> str:
        """Subscribe to every event."""
        if any(h is handler for _, h in self._wildcard_handlers):
            return ""

        self._subscription_counter += 1
        sub_id = f"sub_all_{self._subscription_counter}"
        self._wildcard_handlers.append((sub_id, handler))
        logger.debug(f"Subscribed {sub_id} as wildcard")
        return sub_id

    def unsubscribe(self, sub_id: str) -> bool:
        for segments, handlers in self._handlers.items():
            for i, (sid, _) in enumerate(handlers):
                if sid == sub_id:
                    handlers.pop(i)
                    return True
        for i, (sid, _) in enumerate(self._wildcard_handlers):
            if sid == sub_id:
                self._wildcard_handlers.pop(i)
                return True
        return False

    def _emit(self, event: FormEvent) -> None:
        for segments, handlers in list(self._handlers.items()):
            if event.event_type != FormEventType.FORM_RESET and not paths_overlap(segments, event.path):
                continue
            for sub_id, handler in list(handlers):
                try:
                    handler(event)
                except Exception as e:
                    logger.error(f"Handler {sub_id} failed for {event.event_type.value}: {e}")

        # Wildcard subscribers own their error handling
        for _, handler in list(self._wildcard_handlers):
            handler(event)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _segments(self, path: Any) -> Segments:
        if isinstance(path, tuple):
            return path
        if isinstance(path, list):
            return tuple(path)
        return parse_path(path)

    def _next_token(self) -> str:
        self._token_counter += 1
        return f"item_{self._token_counter}"

    def _array_at(self, segments: Segments) -> Optional[Segments]:
        return segments if segments in self._array_paths else None

    def _array_prefix(self, segments: Segments) -> Optional[Segments]:
        for array_path in self._array_paths:
            n = len(array_path)
            if len(segments) > n and segments[:n] == array_path and isinstance(segments[n], int):
                return array_path
        return None

    def _require_array(self, array_path: Any) -> Segments:
        segments = self._segments(array_path)
        if segments not in self._array_paths:
            raise PathError(f"'{format_path(segments)}' is not a declared array")
        return segments

    def _list_at(self, segments: Segments, create: bool = False) -> List[Any]:
        values = resolve_segments(self._value, segments)
        if isinstance(values, list):
            return values
        if create:
            assign_path(self._value, segments, [])
            return resolve_segments(self._value, segments)
        return []

    def _sync_all_arrays(self) -> None:
        for array_path in self._array_paths:
            values = resolve_segments(self._value, array_path)
            count = len(values) if isinstance(values, list) else 0
            self._tokens[array_path] = [self._next_token() for _ in range(count)]

    def _resync_array(self, array_path: Segments, origin: WriteOrigin) -> None:
        """Whole-list assignment: keep tokens by position, trim or extend at the end."""
        values = resolve_segments(self._value, array_path)
        count = len(values) if isinstance(values, list) else 0
        tokens = self._tokens.setdefault(array_path, [])

        while len(tokens) > count:
            index = len(tokens) - 1
            token = tokens.pop()
            self._drop_item_states(array_path, token)
            self._emit(FormEvent(
                event_type=FormEventType.ITEM_REMOVED,
                path=array_path,
                key=format_path(array_path),
                origin=origin,
                token=token,
                index=index,
            ))

        while len(tokens) < count:
            token = self._next_token()
            tokens.append(token)
            self._emit(FormEvent(
                event_type=FormEventType.ITEM_ADDED,
                path=array_path,
                key=format_path(array_path),
                origin=origin,
                token=token,
                index=len(tokens) - 1,
            ))

    def _drop_item_states(self, array_path: Segments, token: str) -> None:
        prefix = f"{format_path(array_path)}#{token}"
        for key in [k for k in self._states if k == prefix or k.startswith(prefix + ".")]:
            del self._states[key]

    def _emit_container_change(self, segments: Segments, old: Any, origin: WriteOrigin, token: str) -> None:
        """Value change of the whole array after an insert, removal or move of ``token``."""
        self._emit(FormEvent(
            event_type=FormEventType.VALUE_CHANGED,
            path=segments,
            key=format_path(segments),
            origin=origin,
            token=token,
            old_value=old,
            new_value=self._list_at(segments),
        ))
