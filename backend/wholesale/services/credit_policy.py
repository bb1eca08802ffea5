# Overview: Pure credit-limit policy functions over Money; no I/O, no errors.

"""
Credit limit policy

BALANCE CONVENTION: positive = prepaid credit, negative = owed.

    owed(balance)                       = max(0, -balance)
    available(limit, balance)           = limit - owed(balance)
    is_over_limit(limit, balance)       = owed(balance) > limit
    can_place_on_account(limit, balance, total) = available >= total

All functions are total over Money inputs.
"""

from __future__ import annotations

from ..money import Money


def owed(balance: Money) -> Money:
    return max(Money.zero(), -balance)


def available(limit: Money, balance: Money) -> Money:
    return limit - owed(balance)


def is_over_limit(limit: Money, balance: Money) -> bool:
    return owed(balance) > limit


def can_place_on_account(limit: Money, balance: Money, order_total: Money) -> bool:
    return available(limit, balance) >= order_total


def shortfall(limit: Money, balance: Money, amount: Money) -> Money:
    """How far a charge of `amount` would push owed past the limit (0 if it fits)."""
    return max(Money.zero(), owed(balance - amount) - limit)


def validate_payment_amount(amount: Money, balance: Money, allow_overpayment: bool = True) -> str | None:
    """
    Caller-side payment policy; returns an error message or None.

    The ledger itself accepts any positive payment. When overpayment is
    disallowed, a payment may not exceed what the customer currently owes.
    """
    if not amount.is_positive():
        return "Please enter a valid payment amount."
    if not allow_overpayment:
        currently_owed = owed(balance)
        if amount > currently_owed:
            return f"Payment amount cannot exceed owed amount of {currently_owed.format()}."
    return None
