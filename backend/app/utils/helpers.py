"""
Utility helper functions
"""
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
import re

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_WHITESPACE = re.compile(r"\s+")
_NON_DIGITS = re.compile(r"\D")

_TRUE_STRINGS = {"true", "1", "yes", "sim", "y", "s"}
_FALSE_STRINGS = {"false", "0", "no", "nao", "não", "n"}


def sanitize_text(value: Any) -> Optional[str]:
    """Collapse control characters and whitespace; empty result becomes None"""
    if value is None or isinstance(value, (dict, list)):
        return None
    cleaned = _CONTROL_CHARS.sub(" ", str(value))
    cleaned = _WHITESPACE.sub(" ", cleaned).replace("\\", "").replace("**", "*").strip()
    return cleaned or None


def to_optional_string(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    return None


def to_optional_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        number = to_optional_decimal(value)
        return int(number) if number is not None else None


def to_optional_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite():
        return None
    return number


def to_optional_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return None


def normalize_process_number_digits(value: Any) -> Optional[str]:
    """'0000001-11.2024.1.11.0001' -> '00000011120241110001'"""
    if value is None:
        return None
    digits = _NON_DIGITS.sub("", str(value))
    return digits or None


def json_safe(value: Any) -> Any:
    """Recursively convert datetimes and decimals for JSON storage."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value


def month_start(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.utcnow()
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
