"""
DYNAFORM Override Tracker

Per-field-instance override state machine.

    NORMAL --user edit--> OVERRIDDEN --dependency changed (re-engage)--> NORMAL

Only user-originated writes move a field to OVERRIDDEN; engine writes never
do. An overridden field keeps the dependency snapshot taken at the moment
of the edit, and re-engagement compares against it, so a no-op write to a
dependency never clears an override.

Keys are token-bound instance keys (``items#item_3.lineTotal``) so state
follows an array item across reorders and is dropped with it.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import copy
import logging
import uuid

from dynaform.core.enums import OverrideState
from dynaform.core.form_model import values_equal

logger = logging.getLogger(__name__)

DEFAULT_MAX_TRANSITIONS = 1000


@dataclass
class OverrideTransition:
    """Record of a state change."""

    transition_id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    key: str = ""
    from_state: OverrideState = OverrideState.NORMAL
    to_state: OverrideState = OverrideState.OVERRIDDEN
    reason: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transition_id": self.transition_id,
            "key": self.key,
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class OverrideRecord:
    """Override state of one field instance."""
    key: str
    state: OverrideState = OverrideState.NORMAL
    dependency_snapshot: Dict[str, Any] = field(default_factory=dict)
    user_value: Any = None
    overridden_at: Optional[datetime] = None
    engine_writes: int = 0


class OverrideTracker:
    """
    Tracks which derived fields the user has taken over.

    Usage:
        tracker = OverrideTracker()
        tracker.record_user_edit("total", {"subtotal": 100}, user_value=999)
        tracker.should_run("total", {"subtotal": 100}, re_engage=True)   # False
        tracker.should_run("total", {"subtotal": 120}, re_engage=True)   # True, back to NORMAL
    """

    def __init__(self, max_transitions: int = DEFAULT_MAX_TRANSITIONS):
        self._records: Dict[str, OverrideRecord] = {}
        self._transitions: List[OverrideTransition] = []
        self._max_transitions = max_transitions

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def record_user_edit(self, key: str, dependency_snapshot: Dict[str, Any], user_value: Any = None) -> None:
        """A user wrote the field: enter (or stay in) OVERRIDDEN with a fresh snapshot."""
        record = self._record(key)
        previous = record.state
        record.state = OverrideState.OVERRIDDEN
        record.dependency_snapshot = copy.deepcopy(dependency_snapshot)
        record.user_value = user_value
        record.overridden_at = datetime.now(timezone.utc)

        if previous != OverrideState.OVERRIDDEN:
            self._transition(key, previous, OverrideState.OVERRIDDEN, "user edit")

    def record_engine_write(self, key: str) -> None:
        """An engine write never changes the override state."""
        self._record(key).engine_writes += 1

    # -------------------------------------------------------------------------
    # Decisions
    # -------------------------------------------------------------------------

    def state(self, key: str) -> OverrideState:
        record = self._records.get(key)
        return record.state if record else OverrideState.NORMAL

    def is_overridden(self, key: str) -> bool:
        return self.state(key) == OverrideState.OVERRIDDEN

    def should_run(self, key: str, current_dependencies: Dict[str, Any], re_engage: bool = False) -> bool:
        """
        Whether a derivation may write ``key`` now.

        An overridden field runs only when ``re_engage`` is set and a
        dependency differs from the snapshot taken at the user's edit.
        """
        if not self.is_overridden(key):
            return True
        if re_engage:
            return self.try_reengage(key, current_dependencies)
        return False

    def try_reengage(self, key: str, current_dependencies: Dict[str, Any]) -> bool:
        """
        Clear the override if any dependency changed since the user's edit.

        Returns:
            True if the field is back to NORMAL
        """
        record = self._records.get(key)
        if record is None or record.state != OverrideState.OVERRIDDEN:
            return True

        changed = [
            name for name, value in current_dependencies.items()
            if not values_equal(record.dependency_snapshot.get(name), value)
        ]
        if not changed:
            return False

        record.state = OverrideState.NORMAL
        record.dependency_snapshot = {}
        self._transition(key, OverrideState.OVERRIDDEN, OverrideState.NORMAL, f"dependency changed: {', '.join(changed)}")
        logger.debug(f"Re-engaged derivation on '{key}' after change in {changed}")
        return True

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def forget(self, prefix: str) -> int:
        """Drop state for a key and everything below it (an array item)."""
        doomed = [k for k in self._records if k == prefix or k.startswith(prefix + ".")]
        for key in doomed:
            del self._records[key]
        return len(doomed)

    def reset(self) -> None:
        """Every field back to NORMAL."""
        self._records.clear()
        self._transitions.clear()

    def overridden_keys(self) -> List[str]:
        return [k for k, r in self._records.items() if r.state == OverrideState.OVERRIDDEN]

    def get_record(self, key: str) -> Optional[OverrideRecord]:
        return self._records.get(key)

    def get_transitions(self, key: Optional[str] = None) -> List[OverrideTransition]:
        if key is None:
            return list(self._transitions)
        return [t for t in self._transitions if t.key == key]

    def _record(self, key: str) -> OverrideRecord:
        if key not in self._records:
            self._records[key] = OverrideRecord(key=key)
        return self._records[key]

    def _transition(self, key: str, from_state: OverrideState, to_state: OverrideState, reason: str) -> None:
        self._transitions.append(OverrideTransition(
            key=key, from_state=from_state, to_state=to_state, reason=reason,
        ))
        if len(self._transitions) > self._max_transitions:
            del self._transitions[: len(self._transitions) - self._max_transitions]
