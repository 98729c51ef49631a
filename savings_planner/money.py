"""Monetary representation and tolerance policy.

All monetary values are ``Decimal``. Two tolerances exist:

- ``GOAL_SATISFIED_TOLERANCE``: a goal (or a period's budget) at or below this
  amount is treated as fully satisfied (exhausted).
- ``AMOUNT_EPSILON``: raw allocation/contribution deltas at or below this are
  treated as zero.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

GOAL_SATISFIED_TOLERANCE = Decimal("0.01")
AMOUNT_EPSILON = Decimal("0.0000001")

ZERO = Decimal("0")
ONE = Decimal("1")

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    """Convert a number to Decimal without binary float artefacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def is_satisfied(amount: Decimal) -> bool:
    """Whether a remaining amount is small enough to count as done."""
    return amount <= GOAL_SATISFIED_TOLERANCE


def is_negligible(delta: Decimal) -> bool:
    """Whether a raw delta is indistinguishable from zero."""
    return abs(delta) <= AMOUNT_EPSILON


def quantize_amount(amount: Decimal) -> Decimal:
    """Round an amount to cents for display."""
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def rate_key(from_currency: str, to_currency: str) -> str:
    """Key used for exchange rate lookups and frozen rate tables."""
    return f"{from_currency.upper()}->{to_currency.upper()}"


def same_currency(a: str, b: str) -> bool:
    return a.strip().upper() == b.strip().upper()
