from __future__ import annotations

import re
from typing import Any

from .errors import ValidationError


REFERRAL_CODE_PATTERN = re.compile(r"^[A-Z0-9]{8,12}$")

MAX_DEVICE_ID_LENGTH = 128


def coerce_int(value: Any, field: str) -> int:
    """
    Strict integer coercion for request input.

    Accepts ints (not bools) and plain digit strings. Rejects floats,
    decimals and scientific notation.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def require_positive_int(value: Any, field: str) -> int:
    number = coerce_int(value, field)
    if number <= 0:
        raise ValidationError(f"{field} must be a positive integer")
    return number


def require_device_limit(value: Any, max_limit: int = 10) -> int:
    limit = coerce_int(value, "device_limit")
    if limit < 1 or limit > max_limit:
        raise ValidationError(f"device_limit must be between 1 and {max_limit}")
    return limit


def normalize_code(value: Any) -> str:
    """Normalize to uppercase, no spaces."""
    if not isinstance(value, str):
        return ""
    return value.upper().strip().replace(" ", "")


def normalize_referral_code(value: Any) -> str:
    code = normalize_code(value)
    if not REFERRAL_CODE_PATTERN.match(code):
        raise ValidationError("Referral code must be 8-12 alphanumeric characters")
    return code


def normalize_key_code(value: Any) -> str:
    code = normalize_code(value)
    if not code:
        raise ValidationError("key_code is required")
    return code


def require_device_id(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("device_id is required")
    device_id = value.strip()
    if len(device_id) > MAX_DEVICE_ID_LENGTH:
        raise ValidationError(f"device_id must be at most {MAX_DEVICE_ID_LENGTH} characters")
    return device_id
