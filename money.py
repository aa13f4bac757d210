from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

CENT = Decimal("0.01")


def to_decimal(value: Any) -> Decimal:
    """
    Coerce anything that looks like an amount to a finite Decimal with exactly
    two fractional digits. Non-numeric, empty, NaN and infinite input is 0.00.
    """
    if value is None or isinstance(value, bool):
        return Decimal("0.00")
    if isinstance(value, float):
        value = repr(value)
    if isinstance(value, str):
        value = value.strip().replace("$", "").replace(" ", "").replace(",", "")
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        return Decimal("0.00")
    if not amount.is_finite():
        return Decimal("0.00")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value: Any) -> int:
    return int(to_decimal(value) * 100)


def cents_to_amount(cents: int) -> float:
    return float((Decimal(cents) / 100).quantize(CENT))


def is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False
