"""Monetary arithmetic in integer minor units.

Every amount that touches a bill, a payment or a bank account is converted to
whole cents before it is added or subtracted and converted back afterwards,
so sums of values with two decimal digits stay exact.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from . import log


Amount = Union[Decimal, int, float, str]

CENTS_PER_UNIT = 100
ZERO = Decimal("0.00")
_CENT = Decimal("0.01")


@dataclass(frozen=True)
class FinancialAmounts:
    """Amounts derived for a new bill."""

    total_amount: Decimal
    commission: Decimal
    final_amount: Decimal
    initial_payment: Decimal
    remaining_balance: Decimal


def to_decimal(amount: Amount) -> Decimal:
    """Coerce ``amount`` to :class:`~decimal.Decimal`.

    Floats are routed through ``str`` so ``19.99`` becomes ``Decimal("19.99")``
    instead of its binary expansion.

    Raises:
        ValueError: If the value cannot be parsed as a number.
    """

    if isinstance(amount, Decimal):
        return amount
    if isinstance(amount, bool):
        raise ValueError(f"Not a monetary amount: {amount!r}")
    try:
        return Decimal(str(amount).strip())
    except (InvalidOperation, ValueError) as exc:
        log.error("Monetary conversion failed for %r", amount)
        raise ValueError(f"Not a monetary amount: {amount!r}") from exc


def to_cents(amount: Amount) -> int:
    """Convert an amount to an integer count of cents, rounding half up."""

    value = to_decimal(amount)
    return int((value * CENTS_PER_UNIT).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    """Convert integer cents back to a two-place decimal, never ``-0.00``."""

    if cents == 0:
        return ZERO
    return (Decimal(cents) / CENTS_PER_UNIT).quantize(_CENT)


def round_money(amount: Amount) -> Decimal:
    """Round ``amount`` to two decimal places."""

    return from_cents(to_cents(amount))


def add_money(*amounts: Amount) -> Decimal:
    return from_cents(sum(to_cents(amount) for amount in amounts))


def subtract_money(minuend: Amount, subtrahend: Amount, *, floor_at_zero: bool = False) -> Decimal:
    """Return ``minuend - subtrahend`` computed in cents.

    With ``floor_at_zero`` the result is clamped so a balance never goes
    below zero.
    """

    cents = to_cents(minuend) - to_cents(subtrahend)
    if floor_at_zero and cents < 0:
        cents = 0
    return from_cents(cents)


def calculate_financial_amounts(
    total_amount: Amount,
    commission: Amount | None = 0,
    initial_payment: Amount | None = 0,
) -> FinancialAmounts:
    """Derive the final amount and opening balance of a bill.

    ``final_amount`` is ``total_amount + commission`` and
    ``remaining_balance`` is ``final_amount - initial_payment`` clamped at
    zero. A missing commission or initial payment counts as zero.

    Args:
        total_amount: Sum of the bill's line items.
        commission: Optional commission added on top of the total.
        initial_payment: Amount paid when the bill was issued.

    Returns:
        FinancialAmounts: All five values rounded to cents.
    """

    total_cents = to_cents(total_amount)
    commission_cents = to_cents(commission or 0)
    initial_cents = to_cents(initial_payment or 0)

    final_cents = total_cents + commission_cents
    remaining_cents = max(0, final_cents - initial_cents)

    return FinancialAmounts(
        total_amount=from_cents(total_cents),
        commission=from_cents(commission_cents),
        final_amount=from_cents(final_cents),
        initial_payment=from_cents(initial_cents),
        remaining_balance=from_cents(remaining_cents),
    )


__all__ = [
    "FinancialAmounts",
    "ZERO",
    "to_decimal",
    "to_cents",
    "from_cents",
    "round_money",
    "add_money",
    "subtract_money",
    "calculate_financial_amounts",
]
