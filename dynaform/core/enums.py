"""
DYNAFORM Core Enumerations

Enumeration types shared by the derivation engine.
"""

from enum import Enum


class WriteOrigin(str, Enum):
    """
    Who produced a value write.

    Threaded through every write call; only the override tracker reads it.
    """
    USER = "user"        # Keystroke, selection, programmatic set on behalf of the user
    ENGINE = "engine"    # Written by a derivation rule


class StrategyKind(str, Enum):
    """The seven computation strategies."""
    STATIC_MAP = "static_map"
    EXPRESSION = "expression"
    FUNCTION = "function"
    CONDITIONAL = "conditional"
    SELF_TRANSFORM = "self_transform"
    HTTP = "http"
    ASYNC_FUNCTION = "async_function"

    @property
    def is_deferred(self) -> bool:
        """Strategies that suspend through the debounce scheduler."""
        return self in (
            StrategyKind.SELF_TRANSFORM,
            StrategyKind.HTTP,
            StrategyKind.ASYNC_FUNCTION,
        )

    @property
    def is_async(self) -> bool:
        """Strategies that await an external call."""
        return self in (StrategyKind.HTTP, StrategyKind.ASYNC_FUNCTION)


class OverrideState(str, Enum):
    """Per-field override state machine."""
    NORMAL = "normal"            # Derivation runs whenever triggered
    OVERRIDDEN = "overridden"    # User edited the field; derivation suppressed


class ResultStatus(str, Enum):
    """Tag of a ComputationResult."""
    VALUE = "value"
    PENDING = "pending"
    FAILED = "failed"


class EvaluationOutcome(str, Enum):
    """What happened to a single rule evaluation."""
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"
    SCHEDULED = "scheduled"


class SkipReason(str, Enum):
    """Why an evaluation did not write."""
    CONDITION_FALSE = "condition-false"
    USER_OVERRIDE = "user-override"
    VALUE_UNCHANGED = "value-unchanged"
    UNDEFINED_RESULT = "undefined-result"
    SUPERSEDED = "superseded"
    ALREADY_APPLIED = "already-applied"
    DESTROYED = "destroyed"


class FieldStateFlag(str, Enum):
    """Host-form state flags a rule may read."""
    DIRTY = "dirty"
    TOUCHED = "touched"
    PRISTINE = "pristine"
