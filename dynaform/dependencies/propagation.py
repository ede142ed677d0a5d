"""
DYNAFORM Propagation Pass

One synchronous cascade triggered by a change.

Rule instances are queued by topological rank of their target pattern and
evaluated lowest rank first, so every instance sees its dependencies
already settled. Writes made during the pass enqueue further instances
into the same pass. Each instance evaluates at most once per pass.

Deferred instances (debounced, self-transform, HTTP, async) are collected
while the queue drains and armed only after it is empty.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
import heapq
import logging
import uuid

from dynaform.core.enums import EvaluationOutcome, SkipReason

logger = logging.getLogger(__name__)


@dataclass
class EvaluationRecord:
    """Outcome of one rule instance in a pass."""
    rule_id: str
    instance_key: str
    outcome: EvaluationOutcome
    skip_reason: Optional[SkipReason] = None
    old_value: Any = None
    new_value: Any = None
    error: Optional[str] = None
    caused_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "instance_key": self.instance_key,
            "outcome": self.outcome.value,
            "skip_reason": self.skip_reason.value if self.skip_reason else None,
            "error": self.error,
            "caused_by": self.caused_by,
        }


@dataclass
class PassResult:
    """Summary of a completed pass."""
    pass_id: str
    records: List[EvaluationRecord] = field(default_factory=list)
    armed: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    def _with(self, outcome: EvaluationOutcome) -> List[EvaluationRecord]:
        return [r for r in self.records if r.outcome == outcome]

    @property
    def applied(self) -> List[EvaluationRecord]:
        return self._with(EvaluationOutcome.APPLIED)

    @property
    def skipped(self) -> List[EvaluationRecord]:
        return self._with(EvaluationOutcome.SKIPPED)

    @property
    def failed(self) -> List[EvaluationRecord]:
        return self._with(EvaluationOutcome.FAILED)

    @property
    def applied_keys(self) -> List[str]:
        return [r.instance_key for r in self.applied]

    @property
    def duration_ms(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds() * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pass_id": self.pass_id,
            "records": [r.to_dict() for r in self.records],
            "armed": list(self.armed),
            "applied": len(self.applied),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
            "duration_ms": self.duration_ms,
        }


# A queued unit of work returns the record of what it did
Work = Callable[[], Optional[EvaluationRecord]]


class PropagationPass:
    """
    Priority queue of rule instances for one cascade.

    Usage:
        pass_ = PropagationPass()
        pass_.enqueue("subtotal", rank=0, rule_id="r1", work=run_subtotal)
        pass_.defer("city", arm_city_lookup)
        result = pass_.run()
    """

    def __init__(self, pass_id: Optional[str] = None):
        self.pass_id = pass_id or str(uuid.uuid4())[:8]
        self._heap: List[Tuple[int, int, str]] = []
        self._queued: Dict[str, Tuple[str, Work]] = {}
        self._ran: Dict[str, str] = {}
        self._deferred: Dict[str, Callable[[], Any]] = {}
        self._seq = 0
        self._running = False
        self.result = PassResult(pass_id=self.pass_id)

    @property
    def is_running(self) -> bool:
        return self._running

    def enqueue(self, instance_key: str, rank: int, rule_id: str, work: Work, caused_by: Optional[str] = None) -> bool:
        """
        Queue an instance for evaluation.

        Returns:
            False if it is already queued or already ran in this pass
        """
        if instance_key in self._queued:
            return False
        if instance_key in self._ran:
            self.record(EvaluationRecord(
                rule_id=rule_id,
                instance_key=instance_key,
                outcome=EvaluationOutcome.SKIPPED,
                skip_reason=SkipReason.ALREADY_APPLIED,
                caused_by=caused_by,
            ))
            logger.debug(f"[{self.pass_id}] {instance_key} already evaluated in this pass")
            return False

        self._seq += 1
        heapq.heappush(self._heap, (rank, self._seq, instance_key))
        self._queued[instance_key] = (rule_id, work)
        return True

    def defer(self, instance_key: str, arm: Callable[[], Any]) -> None:
        """Arm ``instance_key`` once the synchronous queue is empty; last arm wins."""
        self._deferred.pop(instance_key, None)
        self._deferred[instance_key] = arm

    def record(self, record: EvaluationRecord) -> None:
        self.result.records.append(record)

    def has_run(self, instance_key: str) -> bool:
        return instance_key in self._ran

    def run(self) -> PassResult:
        """Drain the queue, then arm deferred instances."""
        self._running = True
        try:
            while self._heap or self._deferred:
                while self._heap:
                    _, _, key = heapq.heappop(self._heap)
                    rule_id, work = self._queued.pop(key)
                    self._ran[key] = rule_id
                    record = work()
                    if record is not None:
                        self.record(record)

                # Arming never writes, but a failed arm may be recorded
                deferred, self._deferred = self._deferred, {}
                for key, arm in deferred.items():
                    arm()
                    self.result.armed.append(key)
        finally:
            self._running = False
            self.result.finished_at = datetime.now(timezone.utc)

        logger.debug(
            f"[{self.pass_id}] pass complete: {len(self.result.applied)} applied, "
            f"{len(self.result.skipped)} skipped, {len(self.result.failed)} failed, "
            f"{len(self.result.armed)} armed"
        )
        return self.result
