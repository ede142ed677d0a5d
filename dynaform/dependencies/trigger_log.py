"""
DYNAFORM Trigger Log

Audit trail of rule evaluations.

One entry per evaluation: applied, skipped (with reason), failed or
scheduled. Queryable by target path, rule and propagation pass;
exportable to JSON for debugging.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set
from pathlib import Path
import json
import logging
import math
import uuid

from dynaform.core.enums import EvaluationOutcome, SkipReason
from dynaform.core.paths import UNDEFINED

logger = logging.getLogger(__name__)


# =============================================================================
# TRIGGER TYPES
# =============================================================================

class TriggerType(Enum):
    """What caused an evaluation."""
    VALUE_CHANGE = "value_change"          # An upstream field value changed
    STATE_CHANGE = "state_change"          # A dirty/touched flag changed
    INITIAL = "initial"                    # Engine start, reset, new array item
    SELF_CHANGE = "self_change"            # Self-transform on its own field
    DEBOUNCE_FIRED = "debounce_fired"      # Deferred rule timer elapsed
    ASYNC_SETTLED = "async_settled"        # HTTP/async call completed
    REENGAGED = "reengaged"                # Override cleared by dependency change


# =============================================================================
# TRIGGER ENTRY
# =============================================================================

@dataclass
class TriggerEntry:
    """A single entry in the trigger log."""
    entry_id: str = field(default_factory=lambda: str(uuid.uuid4())[:12])
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    trigger_type: TriggerType = TriggerType.VALUE_CHANGE
    outcome: EvaluationOutcome = EvaluationOutcome.APPLIED
    skip_reason: Optional[SkipReason] = None

    # Subject
    rule_id: str = ""
    target: Optional[str] = None
    debug_name: Optional[str] = None

    # Values
    old_value: Optional[Any] = None
    new_value: Optional[Any] = None

    # Context
    caused_by: Optional[str] = None   # Changed path that triggered the evaluation
    pass_id: Optional[str] = None     # Propagation pass this belongs to
    error: Optional[str] = None

    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize entry to dict."""
        return {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "trigger_type": self.trigger_type.value,
            "outcome": self.outcome.value,
            "skip_reason": self.skip_reason.value if self.skip_reason else None,
            "rule_id": self.rule_id,
            "target": self.target,
            "debug_name": self.debug_name,
            "old_value": _serialize_value(self.old_value),
            "new_value": _serialize_value(self.new_value),
            "caused_by": self.caused_by,
            "pass_id": self.pass_id,
            "error": self.error,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TriggerEntry":
        """Load entry from dict."""
        return cls(
            entry_id=data.get("entry_id", str(uuid.uuid4())[:12]),
            timestamp=datetime.fromisoformat(data["timestamp"]) if data.get("timestamp") else datetime.now(timezone.utc),
            trigger_type=TriggerType(data.get("trigger_type", "value_change")),
            outcome=EvaluationOutcome(data.get("outcome", "applied")),
            skip_reason=SkipReason(data["skip_reason"]) if data.get("skip_reason") else None,
            rule_id=data.get("rule_id", ""),
            target=data.get("target"),
            debug_name=data.get("debug_name"),
            old_value=data.get("old_value"),
            new_value=data.get("new_value"),
            caused_by=data.get("caused_by"),
            pass_id=data.get("pass_id"),
            error=data.get("error"),
            metadata=data.get("metadata", {}),
        )


def _serialize_value(value: Any) -> Any:
    """Serialize a value for JSON storage."""
    if value is None or value is UNDEFINED:
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return str(value)
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (list, dict)):
        try:
            json.dumps(value)
            return value
        except (TypeError, ValueError):
            return str(value)
    return str(value)


# =============================================================================
# TRIGGER LOG
# =============================================================================

class TriggerLog:
    """
    Bounded audit trail of rule evaluations.

    Oldest entries are dropped once ``max_entries`` is exceeded.
    """

    DEFAULT_MAX_ENTRIES = 1000

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES):
        self._entries: List[TriggerEntry] = []
        self._max_entries = max_entries

        # Indexes for fast lookup
        self._by_target: Dict[str, List[TriggerEntry]] = {}
        self._by_rule: Dict[str, List[TriggerEntry]] = {}
        self._by_pass: Dict[str, List[TriggerEntry]] = {}

    def log(self, entry: TriggerEntry) -> str:
        """
        Add an entry to the log.

        Returns:
            Entry ID
        """
        self._entries.append(entry)

        if entry.target:
            self._by_target.setdefault(entry.target, []).append(entry)
        if entry.rule_id:
            self._by_rule.setdefault(entry.rule_id, []).append(entry)
        if entry.pass_id:
            self._by_pass.setdefault(entry.pass_id, []).append(entry)

        if len(self._entries) > self._max_entries:
            self._trim_entries()

        return entry.entry_id

    def log_applied(
        self,
        rule_id: str,
        target: str,
        old_value: Any,
        new_value: Any,
        trigger_type: TriggerType = TriggerType.VALUE_CHANGE,
        **kwargs
    ) -> str:
        """Convenience method to log a write."""
        return self.log(TriggerEntry(
            trigger_type=trigger_type,
            outcome=EvaluationOutcome.APPLIED,
            rule_id=rule_id,
            target=target,
            old_value=old_value,
            new_value=new_value,
            **kwargs
        ))

    def log_skipped(
        self,
        rule_id: str,
        target: Optional[str],
        reason: SkipReason,
        trigger_type: TriggerType = TriggerType.VALUE_CHANGE,
        **kwargs
    ) -> str:
        """Convenience method to log a skipped evaluation."""
        return self.log(TriggerEntry(
            trigger_type=trigger_type,
            outcome=EvaluationOutcome.SKIPPED,
            skip_reason=reason,
            rule_id=rule_id,
            target=target,
            **kwargs
        ))

    def log_failed(
        self,
        rule_id: str,
        target: Optional[str],
        error: str,
        trigger_type: TriggerType = TriggerType.VALUE_CHANGE,
        **kwargs
    ) -> str:
        """Convenience method to log a failed evaluation."""
        return self.log(TriggerEntry(
            trigger_type=trigger_type,
            outcome=EvaluationOutcome.FAILED,
            rule_id=rule_id,
            target=target,
            error=error,
            **kwargs
        ))

    def log_scheduled(
        self,
        rule_id: str,
        target: Optional[str],
        delay_ms: int,
        trigger_type: TriggerType = TriggerType.VALUE_CHANGE,
        **kwargs
    ) -> str:
        """Convenience method to log an armed debounce timer."""
        metadata = kwargs.pop("metadata", {})
        metadata["delay_ms"] = delay_ms
        return self.log(TriggerEntry(
            trigger_type=trigger_type,
            outcome=EvaluationOutcome.SCHEDULED,
            rule_id=rule_id,
            target=target,
            metadata=metadata,
            **kwargs
        ))

    # Query methods

    def query(
        self,
        target: Optional[str] = None,
        rule_id: Optional[str] = None,
        pass_id: Optional[str] = None,
        outcomes: Optional[Set[EvaluationOutcome]] = None,
        skip_reason: Optional[SkipReason] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[TriggerEntry]:
        """
        Query the trigger log.

        Returns:
            List of matching entries (newest first)
        """
        if target and target in self._by_target:
            entries = self._by_target[target]
        elif rule_id and rule_id in self._by_rule:
            entries = self._by_rule[rule_id]
        elif pass_id and pass_id in self._by_pass:
            entries = self._by_pass[pass_id]
        elif target or rule_id or pass_id:
            return []
        else:
            entries = self._entries

        filtered = []
        for entry in reversed(entries):
            if since and entry.timestamp < since:
                continue
            if target and entry.target != target:
                continue
            if rule_id and entry.rule_id != rule_id:
                continue
            if pass_id and entry.pass_id != pass_id:
                continue
            if outcomes and entry.outcome not in outcomes:
                continue
            if skip_reason and entry.skip_reason != skip_reason:
                continue

            filtered.append(entry)
            if len(filtered) >= limit:
                break

        return filtered

    def get_recent(self, count: int = 100) -> List[TriggerEntry]:
        """Get most recent entries."""
        return list(reversed(self._entries[-count:]))

    def get_for_target(self, target: str, limit: int = 100) -> List[TriggerEntry]:
        entries = self._by_target.get(target, [])
        return list(reversed(entries[-limit:]))

    def get_pass(self, pass_id: str) -> List[TriggerEntry]:
        """Entries of one propagation pass in evaluation order."""
        return list(self._by_pass.get(pass_id, []))

    def get_statistics(self) -> Dict[str, Any]:
        """Counts by outcome and skip reason."""
        by_outcome: Dict[str, int] = {}
        by_reason: Dict[str, int] = {}
        for entry in self._entries:
            by_outcome[entry.outcome.value] = by_outcome.get(entry.outcome.value, 0) + 1
            if entry.skip_reason:
                by_reason[entry.skip_reason.value] = by_reason.get(entry.skip_reason.value, 0) + 1
        return {
            "total_entries": len(self._entries),
            "by_outcome": by_outcome,
            "by_skip_reason": by_reason,
            "targets_tracked": len(self._by_target),
            "passes_tracked": len(self._by_pass),
        }

    # Export

    def export_json(self, filepath: Optional[Path] = None) -> str:
        """
        Export the log as JSON.

        Writes to ``filepath`` when given; always returns the JSON text.
        """
        data = {
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "entry_count": len(self._entries),
            "entries": [e.to_dict() for e in self._entries],
        }
        text = json.dumps(data, indent=2)
        if filepath:
            Path(filepath).write_text(text)
            logger.info(f"Exported {len(self._entries)} trigger log entries to {filepath}")
        return text

    def import_json(self, filepath: Path) -> int:
        """Load entries from an exported file. Returns the number loaded."""
        data = json.loads(Path(filepath).read_text())
        count = 0
        for raw in data.get("entries", []):
            self.log(TriggerEntry.from_dict(raw))
            count += 1
        return count

    def clear(self) -> None:
        self._entries.clear()
        self._by_target.clear()
        self._by_rule.clear()
        self._by_pass.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def _trim_entries(self) -> None:
        excess = len(self._entries) - self._max_entries
        removed = self._entries[:excess]
        self._entries = self._entries[excess:]
        removed_ids = {e.entry_id for e in removed}
        for index in (self._by_target, self._by_rule, self._by_pass):
            for key in list(index):
                index[key] = [e for e in index[key] if e.entry_id not in removed_ids]
                if not index[key]:
                    del index[key]
