"""Decimal helpers shared by the feed parser, risk gate and reason strings."""
from decimal import Decimal, InvalidOperation
from typing import Any, Optional


def to_decimal(value: Any) -> Optional[Decimal]:
    """
    Convert a raw JSON number or string into a finite Decimal.

    Returns None for missing, non-numeric, NaN or infinite values.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return d if d.is_finite() else None


def format_decimal(value: Decimal) -> str:
    """Plain notation without trailing zeros: 45000, 0.1, 1.5."""
    normalized = value.normalize()
    if normalized == normalized.to_integral_value():
        return format(normalized.quantize(Decimal(1)), "f")
    return format(normalized, "f")
