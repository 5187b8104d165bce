"""
Amount helpers for whole-shilling (UGX) arithmetic.

UGX has no minor unit in practice: every stored principal, fee, installment
and ledger amount is an integral Decimal.  Intermediate engine values keep
full Decimal precision and are rounded only at these boundaries.
"""

from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal

ZERO = Decimal("0")
ONE = Decimal("1")
_WHOLE = Decimal("1")


def to_decimal(value: Decimal | int | str) -> Decimal:
    """Coerce to Decimal.  Floats are rejected."""
    if isinstance(value, float):
        raise TypeError("Monetary amounts must not be floats")
    return value if isinstance(value, Decimal) else Decimal(value)


def floor_amount(value: Decimal) -> Decimal:
    return value.quantize(_WHOLE, rounding=ROUND_FLOOR)


def ceil_amount(value: Decimal) -> Decimal:
    return value.quantize(_WHOLE, rounding=ROUND_CEILING)


def round_amount(value: Decimal) -> Decimal:
    return value.quantize(_WHOLE, rounding=ROUND_HALF_UP)


def round_ratio(value: Decimal, places: int = 2) -> Decimal:
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def format_ugx(value: Decimal) -> str:
    """Human-readable amount, e.g. ``UGX 1,250,000``."""
    return f"UGX {round_amount(value):,.0f}"
