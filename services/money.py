"""Rounding and tolerance policy for monetary amounts.

All amounts are local-currency ``Decimal`` values rounded to cents with
``ROUND_HALF_UP``.  Tolerances are expressed as fractions (``0.01`` = 1%).
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_decimal(value) -> Decimal:
    """Convert *value* to ``Decimal`` via ``str`` (``None`` becomes zero)."""
    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def with_tolerance(amount, tolerance) -> Decimal:
    """Upper bound for *amount* allowing a relative *tolerance*."""
    return to_decimal(amount) * (Decimal("1") + to_decimal(tolerance))


def exceeds_tolerance(value, amount, tolerance) -> bool:
    """True when *value* is above *amount* by more than *tolerance*."""
    return to_decimal(value) > with_tolerance(amount, tolerance)
