# Overview: Pure order settlement math; itemized breakdown and loyalty accrual, no side effects.

"""
Order Settlement Calculator

WHY: The bill a customer sees depends on the ORDER in which totals are
derived. This module is the single place that order lives, with no database,
request or rendering context, so it can run in parallel without locking.

DERIVATION ORDER (do not reorder):
    1. items_subtotal           = sum(quantity * unit_price)
    2. flat tax lines           = per rule, sum(quantity * per_unit) over matching items
       flat_tax_total           = sum(lines)
    3. subtotal_before_delivery = items_subtotal + flat_tax_total
    4. delivery_fee             = 0 for pickup, 0 at/above free threshold, else base fee
    5. loyalty_redeem_value     = min(requested, subtotal_before_delivery + delivery_fee)
    6. total                    = subtotal_before_delivery + delivery_fee - loyalty_redeem_value
    7. loyalty_points_earned    = floor(earn_rate * non-tobacco item dollars)

Taxes and delivery never earn points. All amounts are Money (integer cents);
only the per-line multiply can round, and it rounds half-up once.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_FLOOR
from typing import Iterable, Optional, Sequence

from ..errors import EmptyOrderError, InvalidAmountError
from ..money import Money, sum_money


DEFAULT_EARN_RATE = Decimal("0.02")

ORDER_TYPE_DELIVERY = "delivery"
ORDER_TYPE_PICKUP = "pickup"
VALID_ORDER_TYPES = {ORDER_TYPE_DELIVERY, ORDER_TYPE_PICKUP}


@dataclass(frozen=True)
class SettlementItem:
    product_id: int
    quantity: int
    unit_price: Money
    category: Optional[str] = None
    is_tobacco: bool = False
    flat_tax_rule_ids: tuple[int, ...] = ()

    @property
    def line_total(self) -> Money:
        return self.unit_price.multiply(self.quantity)


@dataclass(frozen=True)
class FlatTaxRule:
    id: int
    label: str
    per_unit: Money
    display_order: int = 0
    category: Optional[str] = None

    def applies_to(self, item: SettlementItem) -> bool:
        if self.id in item.flat_tax_rule_ids:
            return True
        return self.category is not None and self.category == item.category


@dataclass(frozen=True)
class DeliverySettings:
    base_fee: Money
    free_threshold: Money


@dataclass(frozen=True)
class LoyaltyRedeemRequest:
    """Points the customer wants to spend, each worth point_value."""
    points: int
    point_value: Money = Money(1)

    @classmethod
    def of_value(cls, value: Money) -> "LoyaltyRedeemRequest":
        return cls(points=value.cents, point_value=Money(1))

    @property
    def value(self) -> Money:
        return self.point_value.multiply(max(self.points, 0))


@dataclass(frozen=True)
class TaxLine:
    rule_id: Optional[int]
    label: str
    amount: Money

    def to_dict(self) -> dict:
        return {"rule_id": self.rule_id, "label": self.label, "amount_cents": self.amount.cents}


@dataclass(frozen=True)
class SettlementBreakdown:
    items_subtotal: Money
    flat_tax_lines: tuple[TaxLine, ...]
    flat_tax_total: Money
    subtotal_before_delivery: Money
    delivery_fee: Money
    loyalty_redeem_value: Money
    total: Money
    loyalty_points_earned: int
    loyalty_eligible_subtotal: Money = field(default_factory=Money.zero)
    loyalty_points_redeemed: int = 0

    def check_identity(self) -> bool:
        return (
            self.flat_tax_total == sum_money(line.amount for line in self.flat_tax_lines)
            and self.subtotal_before_delivery == self.items_subtotal + self.flat_tax_total
            and self.total == self.subtotal_before_delivery + self.delivery_fee - self.loyalty_redeem_value
        )

    def to_dict(self) -> dict:
        return {
            "items_subtotal_cents": self.items_subtotal.cents,
            "flat_tax_lines": [line.to_dict() for line in self.flat_tax_lines],
            "flat_tax_total_cents": self.flat_tax_total.cents,
            "subtotal_before_delivery_cents": self.subtotal_before_delivery.cents,
            "delivery_fee_cents": self.delivery_fee.cents,
            "loyalty_redeem_value_cents": self.loyalty_redeem_value.cents,
            "loyalty_points_redeemed": self.loyalty_points_redeemed,
            "total_cents": self.total.cents,
            "total_display": self.total.format(),
            "loyalty_points_earned": self.loyalty_points_earned,
            "loyalty_eligible_subtotal_cents": self.loyalty_eligible_subtotal.cents,
        }


def compute(
    items: Sequence[SettlementItem],
    tax_rules: Iterable[FlatTaxRule],
    delivery_settings: DeliverySettings,
    order_type: str,
    loyalty_redeem_request: Optional[LoyaltyRedeemRequest] = None,
    *,
    apply_flat_tax: bool = True,
    earn_rate: Decimal | str = DEFAULT_EARN_RATE,
) -> SettlementBreakdown:
    """
    Compute the settlement breakdown for an order.

    Raises:
        EmptyOrderError: no items
        InvalidAmountError: non-positive quantity, negative price, unknown order type
    """
    if not items:
        raise EmptyOrderError("Order must contain at least one item")
    if order_type not in VALID_ORDER_TYPES:
        raise InvalidAmountError(f"Invalid order type: {order_type}")
    for item in items:
        if isinstance(item.quantity, bool) or not isinstance(item.quantity, int) or item.quantity <= 0:
            raise InvalidAmountError(
                "Quantity must be a positive integer",
                details={"product_id": item.product_id},
            )
        if item.unit_price.is_negative():
            raise InvalidAmountError(
                "Unit price cannot be negative",
                details={"product_id": item.product_id},
            )

    # 1) Items subtotal
    items_subtotal = sum_money(item.line_total for item in items)

    # 2) Flat tax lines, one per applicable rule in display order
    tax_lines: list[TaxLine] = []
    if apply_flat_tax:
        for rule in sorted(tax_rules, key=lambda r: (r.display_order, r.id)):
            matching = [item for item in items if rule.applies_to(item)]
            if not matching:
                continue
            amount = sum_money(rule.per_unit.multiply(item.quantity) for item in matching)
            tax_lines.append(TaxLine(rule_id=rule.id, label=rule.label, amount=amount))
    flat_tax_total = sum_money(line.amount for line in tax_lines)

    # 3) Subtotal before delivery
    subtotal_before_delivery = items_subtotal + flat_tax_total

    # 4) Delivery fee
    delivery_fee = _delivery_fee(order_type, subtotal_before_delivery, delivery_settings)

    # 5) Loyalty redemption, clamped so the total never goes negative
    redeemable = subtotal_before_delivery + delivery_fee
    points_redeemed = 0
    redeem_value = Money.zero()
    if loyalty_redeem_request is not None:
        requested = max(Money.zero(), loyalty_redeem_request.value)
        redeem_value = min(requested, redeemable)
        points_redeemed = _points_for_value(redeem_value, loyalty_redeem_request)

    # 6) Total
    total = subtotal_before_delivery + delivery_fee - redeem_value

    # 7) Points earned on non-tobacco items only
    eligible = sum_money(item.line_total for item in items if not item.is_tobacco)
    points_earned = earned_points(eligible, earn_rate)

    return SettlementBreakdown(
        items_subtotal=items_subtotal,
        flat_tax_lines=tuple(tax_lines),
        flat_tax_total=flat_tax_total,
        subtotal_before_delivery=subtotal_before_delivery,
        delivery_fee=delivery_fee,
        loyalty_redeem_value=redeem_value,
        total=total,
        loyalty_points_earned=points_earned,
        loyalty_eligible_subtotal=eligible,
        loyalty_points_redeemed=points_redeemed,
    )


def earned_points(eligible_subtotal: Money, earn_rate: Decimal | str = DEFAULT_EARN_RATE) -> int:
    """floor(earn_rate * dollars); e.g. $75.55 at 2% -> 1 point."""
    if not eligible_subtotal.is_positive():
        return 0
    points = eligible_subtotal.to_decimal() * Decimal(earn_rate)
    return int(points.to_integral_value(rounding=ROUND_FLOOR))


def _delivery_fee(order_type: str, subtotal_before_delivery: Money, settings: DeliverySettings) -> Money:
    if order_type == ORDER_TYPE_PICKUP:
        return Money.zero()
    if subtotal_before_delivery >= settings.free_threshold:
        return Money.zero()
    return settings.base_fee


def _points_for_value(value: Money, request: LoyaltyRedeemRequest) -> int:
    # Points consumed to cover the (possibly clamped) value, never more than requested
    if value.is_zero() or not request.point_value.is_positive():
        return 0
    needed = -(-value.cents // request.point_value.cents)
    return min(needed, max(request.points, 0))
