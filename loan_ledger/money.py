"""
Monetary Amount Helpers

All balances, principals and payment amounts are Decimal values quantized to
two places. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union

from .errors import InvalidAmount

# Set global decimal context for financial precision
getcontext().prec = 28

AMOUNT_PLACES = 2
ZERO = Decimal('0.00')

AmountLike = Union[Decimal, str, int, float]


def to_amount(value: AmountLike) -> Decimal:
    """
    Parse and quantize a monetary value

    Floats go through ``str`` first so 0.1 stays 0.1.

    Raises:
        InvalidAmount: if the value is not a finite number
    """
    if isinstance(value, bool):
        raise InvalidAmount(f"Invalid amount: {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"Invalid amount: {value!r}", value=str(value))

    if not amount.is_finite():
        raise InvalidAmount(f"Invalid amount: {value!r}", value=str(value))

    try:
        return amount.quantize(Decimal('0.1') ** AMOUNT_PLACES, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        # More digits than the context precision can hold at two places
        raise InvalidAmount(f"Amount out of range: {value!r}", value=str(value))


def to_rate(value: AmountLike) -> Decimal:
    """Parse an interest rate percentage (e.g. ``1.5`` for 1.5%)"""
    if isinstance(value, bool):
        raise InvalidAmount(f"Invalid interest rate: {value!r}")
    try:
        rate = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"Invalid interest rate: {value!r}", value=str(value))
    if not rate.is_finite():
        raise InvalidAmount(f"Invalid interest rate: {value!r}", value=str(value))
    return rate

