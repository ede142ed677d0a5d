"""
DYNAFORM Dependency Tracking

Provides:
- DependencyGraph: DAG of field dependencies with cycle rejection
- PropagationPass: Ranked evaluation of one change cascade
- TriggerLog: Audit trail of derivation evaluations
"""

from .graph import (
    DependencyGraph,
    EdgeType,
    RuleEntry,
)
from .propagation import (
    PropagationPass,
    PassResult,
    EvaluationRecord,
)
from .trigger_log import (
    TriggerLog,
    TriggerEntry,
    TriggerType,
)

__all__ = [
    # Graph
    "DependencyGraph",
    "EdgeType",
    "RuleEntry",
    # Propagation
    "PropagationPass",
    "PassResult",
    "EvaluationRecord",
    # Trigger log
    "TriggerLog",
    "TriggerEntry",
    "TriggerType",
]
