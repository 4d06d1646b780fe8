"""
Enum helpers for VARCHAR-backed status columns.

Status-like columns (payout_status, transaction_type, relation status...)
are stored as UPPERCASE VARCHAR, never as database ENUMs. Python Enums
are used for input validation only.

    Pydantic Enum -> get_enum_value() -> "PENDING" -> VARCHAR
    VARCHAR "PENDING" -> returned as-is
"""

from enum import Enum
from typing import Any, Iterable, Optional, Type


def get_enum_value(value: Any) -> Optional[str]:
    """Return the string value of an Enum member, or the string itself."""
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    return str(value)


def enum_values(enum_class: Type[Enum]) -> list:
    return [e.value for e in enum_class]


def enum_comment(enum_class: Type[Enum]) -> str:
    """Comma-separated list of valid values, used as a column comment."""
    return ", ".join(enum_values(enum_class))


def normalize_to_uppercase(value: Any, allowed: Optional[Iterable[str]] = None) -> Optional[str]:
    """
    Normalize a status-like input to UPPERCASE and optionally validate it.

    Raises:
        ValueError: if ``allowed`` is given and the value is not in it
    """
    if value is None:
        return None
    normalized = get_enum_value(value).strip().upper()
    if allowed is not None:
        allowed = set(allowed)
        if normalized not in allowed:
            raise ValueError(
                f"Invalid value '{value}'. Must be one of: {', '.join(sorted(allowed))}"
            )
    return normalized
