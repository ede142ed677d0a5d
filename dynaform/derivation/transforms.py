"""
DYNAFORM Self-Transform Built-ins

Pure value transforms applied to a field's own value after the user stops
typing. Non-string input is returned unchanged, and every transform is
idempotent so re-applying it to its own output writes nothing.
"""

from typing import Any, Callable, Dict
import re

TransformFunction = Callable[[Any], Any]


def lowercase(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value


def uppercase(value: Any) -> Any:
    return value.upper() if isinstance(value, str) else value


def trim(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


def format_phone(value: Any) -> Any:
    """
    North-American phone formatting.

    10 digits             -> (555) 123-4567
    11 digits, leading 1  -> +1 (555) 123-4567
    anything else         -> unchanged
    """
    if not isinstance(value, str):
        return value
    digits = re.sub(r"\D", "", value)
    if len(digits) == 10:
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+1 ({digits[1:4]}) {digits[4:7]}-{digits[7:]}"
    return value


def mask_last4(value: Any) -> Any:
    """Replace every character except the last four with '*'."""
    if not isinstance(value, str) or len(value) <= 4:
        return value
    return "*" * (len(value) - 4) + value[-4:]


BUILTIN_TRANSFORMS: Dict[str, TransformFunction] = {
    "lowercase": lowercase,
    "uppercase": uppercase,
    "trim": trim,
    "formatPhone": format_phone,
    "format_phone": format_phone,
    "maskLast4": mask_last4,
    "mask_last4": mask_last4,
}
