"""
Fixed-point money helpers.

Amounts are Decimals with six fractional digits; nothing here goes through float.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable, Union

from perdexa.core.errors import ValidationError

MONEY_QUANTUM = Decimal("0.000001")
CENT = Decimal("0.01")
ZERO = Decimal("0")

AmountLike = Union[Decimal, int, float, str]


def to_money(value: AmountLike) -> Decimal:
    """
    Convert user input to a quantized Decimal.

    Floats go through ``str`` so 0.1 stays 0.1. Strings may use a comma as the
    decimal separator ("12,50").
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError("invalid_amount", "Amount must be a number")
    if isinstance(value, float):
        value = repr(value)
    if isinstance(value, str):
        value = value.strip().replace(",", ".")
    try:
        amount = Decimal(value)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError("invalid_amount", f"Amount is not a number: {value!r}")
    if not amount.is_finite():
        raise ValidationError("invalid_amount", "Amount must be finite")
    return amount.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def money_sum(values: Iterable[Decimal]) -> Decimal:
    total = ZERO
    for v in values:
        total += Decimal(v)
    return total.quantize(MONEY_QUANTUM)


def clamp_non_negative(value: Decimal) -> Decimal:
    return value if value > ZERO else ZERO.quantize(MONEY_QUANTUM)


def money_str(value) -> str:
    """Serialize without trailing float noise; keeps at least two decimals."""
    if value is None:
        return None
    d = Decimal(value)
    if d == d.quantize(CENT):
        return str(d.quantize(CENT))
    return str(d.normalize())
