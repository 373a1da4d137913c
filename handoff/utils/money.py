from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

from handoff.errors import ValidationError

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


def parse_currency(raw, *, field: str = "currency") -> str:
    code = str(raw or "").strip().upper()
    if not _CURRENCY_RE.match(code):
        raise ValidationError(f"{field} must be a three-letter currency code", field=field)
    return code


def parse_minor(raw, *, field: str = "amount", allow_zero: bool = False) -> int:
    """Parse an integer amount in minor units.

    Accepts ints, integral floats and digit strings. Fractions, booleans and
    negative values are rejected.
    """
    if isinstance(raw, bool) or raw is None:
        raise ValidationError(f"{field} is required", field=field)
    if isinstance(raw, int):
        value = raw
    else:
        try:
            parsed = Decimal(str(raw).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{field} must be an integer amount in minor units", field=field)
        if parsed != parsed.to_integral_value():
            raise ValidationError(f"{field} must be an integer amount in minor units", field=field)
        value = int(parsed)
    if value < 0 or (value == 0 and not allow_zero):
        raise ValidationError(f"{field} must be positive", field=field)
    return value


def parse_positive_int(raw, *, field: str) -> int:
    if isinstance(raw, bool):
        raise ValidationError(f"{field} must be a positive integer", field=field)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a positive integer", field=field)
    if isinstance(raw, float) and raw != value:
        raise ValidationError(f"{field} must be a positive integer", field=field)
    if value <= 0:
        raise ValidationError(f"{field} must be a positive integer", field=field)
    return value
