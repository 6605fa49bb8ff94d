"""
Input validators, run before any lock is taken.
Each one either returns the normalized value or raises ValidationError naming the field.
"""

from __future__ import annotations
import math
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from errors import ValidationError


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def require_text(value: Any, field: str) -> str:
    if is_blank(value):
        raise ValidationError(f"{field} is required", field=field)
    return str(value).strip()


def require_choice(value: Any, allowed: Iterable[str], field: str) -> str:
    text = require_text(value, field)
    allowed = list(allowed)
    if text not in allowed:
        raise ValidationError(
            f'Invalid {field}: "{text}". Must be one of: {", ".join(allowed)}', field=field
        )
    return text


def parse_int(value: Any, field: str, minimum: int = 0) -> int:
    """Accept ints, integral floats (spreadsheet cells) and digit strings."""
    if is_blank(value) or isinstance(value, bool):
        raise ValidationError(f"{field} is required", field=field)
    try:
        if isinstance(value, float):
            if not value.is_integer():
                raise ValueError(value)
            number = int(value)
        else:
            number = int(str(value).strip())
    except ValueError:
        raise ValidationError(f"{field} must be an integer", field=field) from None
    if number < minimum:
        raise ValidationError(f"{field} must be at least {minimum}", field=field)
    return number


def parse_price(value: Any, field: str) -> float:
    if is_blank(value) or isinstance(value, bool):
        raise ValidationError(f"{field} is required", field=field)
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError(f"{field} must be a number", field=field) from None
    if not number.is_finite():
        raise ValidationError(f"{field} must be a number", field=field)
    if number < 0:
        raise ValidationError(f"{field} must not be negative", field=field)
    price = float(number)
    # out-of-range decimals overflow to inf, which JSON cannot hold
    if not math.isfinite(price):
        raise ValidationError(f"{field} must be a number", field=field)
    return price


def parse_optional_price(value: Any, field: str, default: float = 0.0) -> float:
    if is_blank(value):
        return default
    return parse_price(value, field)


def parse_positive_amount(value: Any, field: str) -> float:
    amount = parse_price(value, field)
    if amount <= 0:
        raise ValidationError(f"{field} must be greater than 0", field=field)
    return amount


def parse_version(value: Any) -> Optional[int]:
    if is_blank(value):
        return None
    return parse_int(value, "expectedVersion")
