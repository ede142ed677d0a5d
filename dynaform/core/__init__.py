"""
core/ - Paths, form value tree and shared enums
"""

from .enums import (
    WriteOrigin,
    StrategyKind,
    OverrideState,
    ResultStatus,
    EvaluationOutcome,
    SkipReason,
    FieldStateFlag,
)
from .paths import (
    UNDEFINED,
    parse_path,
    format_path,
    is_relative,
    resolve_path,
    assign_path,
    paths_overlap,
    pattern_of,
)
from .form_model import (
    FormModel,
    FormEvent,
    FormEventType,
    FieldRuntimeState,
    values_equal,
)

__all__ = [
    "WriteOrigin",
    "StrategyKind",
    "OverrideState",
    "ResultStatus",
    "EvaluationOutcome",
    "SkipReason",
    "FieldStateFlag",
    "UNDEFINED",
    "parse_path",
    "format_path",
    "is_relative",
    "resolve_path",
    "assign_path",
    "paths_overlap",
    "pattern_of",
    "FormModel",
    "FormEvent",
    "FormEventType",
    "FieldRuntimeState",
    "values_equal",
]
