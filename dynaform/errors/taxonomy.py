"""
errors/taxonomy.py - Runtime failure classification

A DerivationFailure is the structured record kept for every rule
evaluation that failed at runtime. The engine logs it, adds it to the
ErrorAggregator and hands it to the optional on_error callback.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from datetime import datetime, timezone
from enum import Enum
import uuid


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class ErrorCategory(Enum):
    """Error categories."""
    EXPRESSION = "expression"
    FUNCTION = "function"
    NETWORK = "network"
    SCHEDULING = "scheduling"
    DEPENDENCY = "dependency"
    CONFIGURATION = "configuration"


class ErrorCode(Enum):
    """Specific error codes."""
    EXPR_SYNTAX = "EXPR_SYNTAX"
    EXPR_EVAL = "EXPR_EVAL"
    FUNC_FAILED = "FUNC_FAILED"
    FUNC_NOT_FOUND = "FUNC_NOT_FOUND"
    HTTP_FAILED = "HTTP_FAILED"
    ASYNC_FAILED = "ASYNC_FAILED"
    NO_EVENT_LOOP = "NO_EVENT_LOOP"
    CYCLE = "CYCLE"
    CONFIG = "CONFIG"

    @property
    def category(self) -> ErrorCategory:
        return _CODE_CATEGORY[self]


_CODE_CATEGORY = {
    ErrorCode.EXPR_SYNTAX: ErrorCategory.EXPRESSION,
    ErrorCode.EXPR_EVAL: ErrorCategory.EXPRESSION,
    ErrorCode.FUNC_FAILED: ErrorCategory.FUNCTION,
    ErrorCode.FUNC_NOT_FOUND: ErrorCategory.FUNCTION,
    ErrorCode.HTTP_FAILED: ErrorCategory.NETWORK,
    ErrorCode.ASYNC_FAILED: ErrorCategory.FUNCTION,
    ErrorCode.NO_EVENT_LOOP: ErrorCategory.SCHEDULING,
    ErrorCode.CYCLE: ErrorCategory.DEPENDENCY,
    ErrorCode.CONFIG: ErrorCategory.CONFIGURATION,
}


@dataclass
class DerivationFailure:
    """Structured failure record."""

    error_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])

    code: ErrorCode = ErrorCode.FUNC_FAILED
    severity: ErrorSeverity = ErrorSeverity.WARNING

    message: str = ""

    # Context
    rule_id: str = ""           # Rule that failed
    target: Optional[str] = None  # Concrete target path

    # The target keeps its previous value on failure
    recoverable: bool = True

    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def category(self) -> ErrorCategory:
        return self.code.category

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_id": self.error_id,
            "code": self.code.value,
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message,
            "rule_id": self.rule_id,
            "target": self.target,
            "recoverable": self.recoverable,
            "created_at": self.created_at.isoformat(),
        }
