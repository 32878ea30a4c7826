# Overview: Decimal helpers for currency, quantity and percentage values.

"""
All monetary and quantity values are Decimal end to end. JSON floats are
converted once at the boundary through their shortest repr (0.1 becomes
Decimal("0.1"), never its binary expansion), so discount/tax chains cannot
drift. Bools, None and non-finite values are rejected.

Rounding: currency is quantized to CURRENCY_QUANTUM (0.01) half-up, matching
the nearest-cent half-up convention used for cost averaging.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from flask import current_app, has_app_context

CURRENCY_QUANTUM = Decimal("0.01")
QUANTITY_QUANTUM = Decimal("0.001")
HUNDRED = Decimal("100")
ZERO = Decimal("0")


def to_decimal(value, field: str = "value") -> Decimal:
    """
    Coerce an int, Decimal or numeric string to Decimal.

    Floats are converted through repr so 0.1 stays 0.1; bools are rejected.
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"{field} must be a number")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        result = Decimal(repr(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise ValueError(f"{field} must be a number")
    else:
        raise ValueError(f"{field} must be a number")
    if not result.is_finite():
        raise ValueError(f"{field} must be a finite number")
    return result


def currency_quantum() -> Decimal:
    if has_app_context():
        return Decimal(current_app.config.get("CURRENCY_QUANTUM", CURRENCY_QUANTUM))
    return CURRENCY_QUANTUM


def quantize_money(value: Decimal, quantum: Decimal | None = None) -> Decimal:
    return Decimal(value).quantize(quantum or currency_quantum(), rounding=ROUND_HALF_UP)


def quantize_quantity(value: Decimal) -> Decimal:
    return Decimal(value).quantize(QUANTITY_QUANTUM, rounding=ROUND_HALF_UP)


def to_percentage(value, field: str = "percentage") -> Decimal:
    """Plain number in [0, 100]."""
    if value is None:
        return ZERO
    pct = to_decimal(value, field)
    if pct < ZERO or pct > HUNDRED:
        raise ValueError(f"{field} must be between 0 and 100")
    return pct


def decimal_str(value: Decimal | None) -> str | None:
    """Serialize for JSON without binary floating point."""
    if value is None:
        return None
    return format(Decimal(value), "f")
