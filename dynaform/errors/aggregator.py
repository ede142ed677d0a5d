"""
errors/aggregator.py - Aggregate and report derivation failures
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List
from datetime import datetime, timezone
import uuid

from .taxonomy import DerivationFailure, ErrorCode, ErrorCategory, ErrorSeverity


@dataclass
class ErrorReport:
    """Aggregated failure report."""

    report_id: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    # Counts
    total_errors: int = 0
    by_code: Dict[str, int] = field(default_factory=dict)
    by_category: Dict[str, int] = field(default_factory=dict)

    summary: str = ""

    all_errors: List[DerivationFailure] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "report_id": self.report_id,
            "total_errors": self.total_errors,
            "by_code": self.by_code,
            "by_category": self.by_category,
            "summary": self.summary,
        }


class ErrorAggregator:
    """
    Collects failures from all rules of an engine.

    Bounded: once ``max_errors`` is reached the oldest records are dropped.
    """

    def __init__(self, max_errors: int = 500):
        self._max_errors = max_errors
        self._errors: List[DerivationFailure] = []
        self._by_rule: Dict[str, List[DerivationFailure]] = {}

    def add(self, error: DerivationFailure) -> None:
        """Add a failure."""
        self._errors.append(error)
        self._by_rule.setdefault(error.rule_id, []).append(error)

        if len(self._errors) > self._max_errors:
            dropped = self._errors.pop(0)
            bucket = self._by_rule.get(dropped.rule_id, [])
            if dropped in bucket:
                bucket.remove(dropped)

    def get_by_code(self, code: ErrorCode) -> List[DerivationFailure]:
        return [e for e in self._errors if e.code == code]

    def get_by_category(self, category: ErrorCategory) -> List[DerivationFailure]:
        return [e for e in self._errors if e.category == category]

    def get_by_rule(self, rule_id: str) -> List[DerivationFailure]:
        return list(self._by_rule.get(rule_id, []))

    def get_by_target(self, target: str) -> List[DerivationFailure]:
        return [e for e in self._errors if e.target == target]

    def has_errors(self) -> bool:
        return any(
            e.severity in (ErrorSeverity.WARNING, ErrorSeverity.ERROR)
            for e in self._errors
        )

    @property
    def errors(self) -> List[DerivationFailure]:
        return list(self._errors)

    def __len__(self) -> int:
        return len(self._errors)

    def generate_report(self) -> ErrorReport:
        """Generate aggregated report."""
        report = ErrorReport(
            report_id=str(uuid.uuid4())[:8],
            total_errors=len(self._errors),
        )

        for error in self._errors:
            report.by_code[error.code.value] = report.by_code.get(error.code.value, 0) + 1
            cat = error.category.value
            report.by_category[cat] = report.by_category.get(cat, 0) + 1

        if not self._errors:
            report.summary = "No derivation failures"
        else:
            worst = max(report.by_code.items(), key=lambda kv: kv[1])
            report.summary = (
                f"{len(self._errors)} derivation failure(s), most common {worst[0]} ({worst[1]})"
            )

        report.all_errors = self._errors.copy()
        return report

    def clear(self) -> None:
        self._errors.clear()
        self._by_rule.clear()
