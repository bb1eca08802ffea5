# Overview: Fixed-point money value type used by the ledger and settlement math.

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation


CENT = Decimal("0.01")


@dataclass(frozen=True, order=True)
class Money:
    """
    Monetary value in integer minor units (cents).

    Rules:
    - cents is an int (1050 = $10.50); floats are rejected outright
    - single currency; there is no currency field
    - every derivation that can produce a fraction of a cent (scalar
      multiply, parsing) rounds half-up exactly once
    """
    cents: int

    def __post_init__(self):
        if isinstance(self.cents, bool) or not isinstance(self.cents, int):
            raise TypeError(
                f"Money must be built from int cents, got {type(self.cents).__name__}"
            )

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def zero(cls) -> Money:
        return cls(0)

    @classmethod
    def from_cents(cls, cents: int) -> Money:
        return cls(cents)

    @classmethod
    def parse(cls, value: str | int | Decimal) -> Money:
        """
        Parse a dollar string ("12.50", "-3") or Decimal into Money.

        Plain ints are treated as cents, matching the *_cents JSON fields.
        """
        if isinstance(value, bool):
            raise TypeError("Money.parse does not accept booleans")
        if isinstance(value, int):
            return cls(value)
        if isinstance(value, float):
            raise TypeError("Money.parse does not accept floats")
        try:
            dollars = Decimal(str(value).strip().replace("$", "").replace(",", ""))
        except InvalidOperation:
            raise ValueError(f"Not a monetary amount: {value!r}")
        if not dollars.is_finite():
            raise ValueError(f"Not a monetary amount: {value!r}")
        return cls(int((dollars / CENT).quantize(Decimal("1"), rounding=ROUND_HALF_UP)))

    # ------------------------------------------------------------------
    # Arithmetic
    # ------------------------------------------------------------------

    def __add__(self, other: Money) -> Money:
        self._check(other)
        return Money(self.cents + other.cents)

    def __sub__(self, other: Money) -> Money:
        self._check(other)
        return Money(self.cents - other.cents)

    def __neg__(self) -> Money:
        return Money(-self.cents)

    def __abs__(self) -> Money:
        return Money(abs(self.cents))

    def multiply(self, factor: int | Decimal | str) -> Money:
        """Scalar multiply, rounded half-up to the cent once."""
        if isinstance(factor, bool) or isinstance(factor, float):
            raise TypeError("Money.multiply needs an int, Decimal or decimal string")
        if isinstance(factor, int):
            return Money(self.cents * factor)
        product = Decimal(self.cents) * Decimal(factor)
        return Money(int(product.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))

    def _check(self, other) -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot combine Money with {type(other).__name__}")

    # ------------------------------------------------------------------
    # Predicates / presentation
    # ------------------------------------------------------------------

    def is_zero(self) -> bool:
        return self.cents == 0

    def is_positive(self) -> bool:
        return self.cents > 0

    def is_negative(self) -> bool:
        return self.cents < 0

    def to_decimal(self) -> Decimal:
        return (Decimal(self.cents) * CENT).quantize(CENT)

    def format(self) -> str:
        sign = "-" if self.cents < 0 else ""
        return f"{sign}${abs(self.to_decimal()):,.2f}"

    def to_dict(self) -> dict:
        return {"cents": self.cents, "display": self.format()}

    def __str__(self) -> str:
        return self.format()


def sum_money(values) -> Money:
    total = Money.zero()
    for value in values:
        total = total + value
    return total
