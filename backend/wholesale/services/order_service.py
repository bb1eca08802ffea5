# Overview: Service-layer operations for orders; settlement coordination and the order status machine.

"""
Order Settlement Coordinator

================================================================================
PURPOSE: Freeze an order's settlement breakdown and settle it against the
credit ledger atomically
================================================================================

STATE MACHINE:
    pending -> processing -> {ready | shipped} -> {delivered | completed}
    delivered -> completed
    any non-terminal state -> cancelled

    completed, cancelled: TERMINAL

RULES (NON-NEGOTIABLE):
1. The breakdown is computed by settlement_calculator only, and frozen on the
   order at creation (or recalculation while pending).
2. Completing with account_credit posts the ledger CHARGE and moves the order
   to completed in ONE database transaction under the customer lock. Either
   both happen or neither does.
3. Completing an already completed order is a no-op; the ledger's
   AlreadySettled guard backs this up across processes.
4. Cancelling after a charge posted appends a refund ADJUSTMENT. The
   original CHARGE row is never touched.

================================================================================
"""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable

from flask import current_app

from ..errors import (
    AlreadySettledError,
    InvalidAmountError,
    InvalidItemError,
    InvalidTransitionError,
    LedgerResult,
    OrderNotFoundError,
)
from ..extensions import db
from ..models import (
    Customer,
    FlatTaxRule,
    Order,
    OrderLine,
    OrderPaymentMethod,
    OrderStatus,
    OrderTaxLine,
    Product,
)
from ..money import Money
from ..time_utils import utcnow
from . import ledger_service, loyalty_service
from . import settlement_calculator as calc
from .concurrency import as_result, lock_for_update, serialized


TERMINAL_STATUSES = {OrderStatus.COMPLETED.value, OrderStatus.CANCELLED.value}

VALID_TRANSITIONS = {
    (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value),
    (OrderStatus.PROCESSING.value, OrderStatus.READY.value),
    (OrderStatus.PROCESSING.value, OrderStatus.SHIPPED.value),
    (OrderStatus.READY.value, OrderStatus.DELIVERED.value),
    (OrderStatus.READY.value, OrderStatus.COMPLETED.value),
    (OrderStatus.SHIPPED.value, OrderStatus.DELIVERED.value),
    (OrderStatus.SHIPPED.value, OrderStatus.COMPLETED.value),
    (OrderStatus.DELIVERED.value, OrderStatus.COMPLETED.value),
}

VALID_STATUSES = {s.value for s in OrderStatus}


def can_transition(from_status: str, to_status: str) -> bool:
    """
    Check a status change against the order state machine.

    cancelled is reachable from every non-terminal state; nothing leaves a
    terminal state.
    """
    if from_status not in VALID_STATUSES or to_status not in VALID_STATUSES:
        return False
    if from_status in TERMINAL_STATUSES:
        return False
    if to_status == OrderStatus.CANCELLED.value:
        return True
    return (from_status, to_status) in VALID_TRANSITIONS


# =============================================================================
# SETTLEMENT INPUTS
# =============================================================================

def delivery_settings() -> calc.DeliverySettings:
    cfg = current_app.config
    return calc.DeliverySettings(
        base_fee=Money(int(cfg.get("BASE_DELIVERY_FEE_CENTS", 500))),
        free_threshold=Money(int(cfg.get("FREE_DELIVERY_THRESHOLD_CENTS", 10000))),
    )


def active_tax_rules() -> list[calc.FlatTaxRule]:
    rows = (
        db.session.query(FlatTaxRule)
        .filter(FlatTaxRule.is_active.is_(True))
        .order_by(FlatTaxRule.display_order, FlatTaxRule.id)
        .all()
    )
    return [
        calc.FlatTaxRule(
            id=r.id,
            label=r.label,
            per_unit=Money(r.per_unit_cents),
            display_order=r.display_order,
            category=r.category,
        )
        for r in rows
    ]


def _resolve_items(lines: Iterable[dict]) -> list[tuple[calc.SettlementItem, Product]]:
    """Turn request lines ({product_id, quantity}) into calculator items from the catalog."""
    resolved = []
    for raw in lines:
        product_id = raw.get("product_id")
        quantity = raw.get("quantity")
        product = db.session.get(Product, product_id) if product_id is not None else None
        if product is None or not product.is_active:
            raise InvalidItemError(
                f"Unknown or inactive product: {product_id}",
                details={"product_id": product_id},
            )
        item = calc.SettlementItem(
            product_id=product.id,
            quantity=quantity,
            unit_price=Money(product.price_cents),
            category=product.category,
            is_tobacco=bool(product.is_tobacco),
            flat_tax_rule_ids=(product.flat_tax_rule_id,) if product.flat_tax_rule_id else (),
        )
        resolved.append((item, product))
    return resolved


def _redeem_request(customer: Customer, redeem_points: int, pre_redemption: Money) -> calc.LoyaltyRedeemRequest | None:
    """
    Convert requested points to a redemption request.

    Capped at the customer's available points and, when configured, at
    LOYALTY_MAX_REDEEM_PERCENT of the pre-redemption subtotal. The
    calculator applies the final clamp against the order total.
    """
    if not redeem_points:
        return None
    if isinstance(redeem_points, bool) or not isinstance(redeem_points, int) or redeem_points < 0:
        raise InvalidAmountError("redeem_points must be a non-negative integer")

    cfg = current_app.config
    point_value = Money(int(cfg.get("LOYALTY_POINT_VALUE_CENTS", 1)))
    points = min(redeem_points, customer.loyalty_points_balance)

    max_percent = cfg.get("LOYALTY_MAX_REDEEM_PERCENT")
    if max_percent:
        cap = pre_redemption.multiply(Decimal(max_percent) / Decimal(100))
        points = min(points, cap.cents // point_value.cents)

    if points <= 0:
        return None
    return calc.LoyaltyRedeemRequest(points=points, point_value=point_value)


def _compute(customer: Customer, lines, order_type: str, redeem_points: int):
    resolved = _resolve_items(lines)
    items = [item for item, _ in resolved]
    rules = active_tax_rules()
    settings = delivery_settings()
    earn_rate = current_app.config.get("LOYALTY_EARN_RATE", calc.DEFAULT_EARN_RATE)

    request = None
    if redeem_points:
        before = calc.compute(items, rules, settings, order_type,
                              apply_flat_tax=customer.apply_flat_tax, earn_rate=earn_rate)
        request = _redeem_request(customer, redeem_points, before.subtotal_before_delivery + before.delivery_fee)

    breakdown = calc.compute(
        items, rules, settings, order_type, request,
        apply_flat_tax=customer.apply_flat_tax, earn_rate=earn_rate,
    )
    return breakdown, resolved


# =============================================================================
# ORDER CREATION
# =============================================================================

def quote_order(customer_id: int, lines: list[dict], order_type: str, redeem_points: int = 0) -> LedgerResult[calc.SettlementBreakdown]:
    """Breakdown for a prospective order. No side effects."""
    def _op():
        customer = ledger_service.load_customer(customer_id)
        breakdown, _ = _compute(customer, lines, order_type, redeem_points)
        return breakdown

    return as_result(_op)


def create_order(
    customer_id: int,
    lines: list[dict],
    order_type: str,
    created_by: str,
    *,
    redeem_points: int = 0,
    notes: str | None = None,
) -> LedgerResult[Order]:
    """
    Create a pending order with its breakdown frozen.

    Redeemed points are reserved immediately (REDEEM) so they cannot be
    spent twice; cancelling the order gives them back.
    """
    def _op():
        customer = ledger_service.load_customer(customer_id, for_update=True)
        breakdown, resolved = _compute(customer, lines, order_type, redeem_points)

        order = Order(
            customer_id=customer.id,
            order_type=order_type,
            status=OrderStatus.PENDING.value,
            notes=notes,
            created_by=str(created_by),
        )
        _freeze_breakdown(order, breakdown, resolved)
        db.session.add(order)
        db.session.flush()

        loyalty_service.redeem(
            customer, breakdown.loyalty_points_redeemed, order_id=order.id, processed_by=created_by
        )
        db.session.commit()
        current_app.logger.info(
            "Order %s created for customer %s total=%s by %s",
            order.id, customer.id, breakdown.total, created_by,
        )
        return order

    return as_result(lambda: serialized(customer_id, _op))


def recalculate_order(order_id: int, actor: str) -> LedgerResult[Order]:
    """Recompute a pending order against current catalog prices, taxes and settings."""
    def _op():
        order = _load_order(order_id, for_update=True)
        if order.status != OrderStatus.PENDING.value:
            raise InvalidTransitionError(
                f"Only pending orders can be recalculated (order is {order.status})"
            )
        customer = ledger_service.load_customer(order.customer_id, for_update=True)

        # Release the previous reservation before re-reserving
        previously_redeemed = order.loyalty_points_redeemed
        loyalty_service.reverse(
            customer, previously_redeemed, order_id=order.id, processed_by=actor,
            reason=f"Recalculation of order #{order.id}",
        )
        lines = [{"product_id": line.product_id, "quantity": line.quantity} for line in order.lines]
        breakdown, resolved = _compute(customer, lines, order.order_type, previously_redeemed)

        order.lines.clear()
        order.tax_lines.clear()
        db.session.flush()
        _freeze_breakdown(order, breakdown, resolved)
        loyalty_service.redeem(
            customer, breakdown.loyalty_points_redeemed, order_id=order.id, processed_by=actor
        )
        db.session.commit()
        return order

    return as_result(lambda: serialized(_customer_id_for(order_id), _op))


def _freeze_breakdown(order: Order, breakdown: calc.SettlementBreakdown, resolved) -> None:
    for item, product in resolved:
        order.lines.append(
            OrderLine(
                product_id=product.id,
                product_name=product.name,
                category=item.category,
                is_tobacco=item.is_tobacco,
                flat_tax_rule_id=product.flat_tax_rule_id,
                quantity=item.quantity,
                unit_price_cents=item.unit_price.cents,
                line_total_cents=item.line_total.cents,
            )
        )
    for position, line in enumerate(breakdown.flat_tax_lines):
        order.tax_lines.append(
            OrderTaxLine(
                flat_tax_rule_id=line.rule_id,
                label=line.label,
                amount_cents=line.amount.cents,
                position=position,
            )
        )

    order.items_subtotal_cents = breakdown.items_subtotal.cents
    order.flat_tax_total_cents = breakdown.flat_tax_total.cents
    order.subtotal_before_delivery_cents = breakdown.subtotal_before_delivery.cents
    order.delivery_fee_cents = breakdown.delivery_fee.cents
    order.loyalty_redeem_value_cents = breakdown.loyalty_redeem_value.cents
    order.loyalty_points_redeemed = breakdown.loyalty_points_redeemed
    order.loyalty_eligible_subtotal_cents = breakdown.loyalty_eligible_subtotal.cents
    order.loyalty_points_earned = breakdown.loyalty_points_earned
    order.total_cents = breakdown.total.cents


# =============================================================================
# STATUS CHANGES
# =============================================================================

def advance_status(order_id: int, to_status: str, actor: str) -> LedgerResult[Order]:
    """Move an order along the fulfilment path (not to completed/cancelled)."""
    def _op():
        if to_status == OrderStatus.COMPLETED.value:
            raise InvalidTransitionError("Use complete_order to complete an order")
        if to_status == OrderStatus.CANCELLED.value:
            raise InvalidTransitionError("Use cancel_order to cancel an order")

        order = _load_order(order_id, for_update=True)
        if not can_transition(order.status, to_status):
            raise InvalidTransitionError(
                f"Cannot move order from {order.status} to {to_status}",
                details={"from": order.status, "to": to_status},
            )
        order.status = to_status
        db.session.commit()
        current_app.logger.info("Order %s -> %s by %s", order.id, to_status, actor)
        return order

    return as_result(lambda: serialized(_customer_id_for(order_id), _op))


def complete_order(
    order_id: int,
    payment_method: str,
    actor: str,
    *,
    check_number: str | None = None,
    notes: str | None = None,
) -> LedgerResult[Order]:
    """
    Complete an order and record how it was paid.

    account_credit charges breakdown.total to the customer's ledger in the
    same transaction as the status change. Other methods only record the
    payment metadata on the order.
    """
    def _op():
        method = _coerce_order_payment_method(payment_method)
        check = (check_number or "").strip() or None
        if method is OrderPaymentMethod.CHECK and not check:
            raise InvalidAmountError("Check number is required for check payments")

        order = _load_order(order_id, for_update=True)
        if order.status == OrderStatus.COMPLETED.value:
            return order
        if not can_transition(order.status, OrderStatus.COMPLETED.value):
            raise InvalidTransitionError(
                f"Cannot complete an order that is {order.status}",
                details={"from": order.status, "to": OrderStatus.COMPLETED.value},
            )

        customer = ledger_service.load_customer(order.customer_id, for_update=True)

        if method is OrderPaymentMethod.ACCOUNT_CREDIT and order.total.is_positive():
            txn = ledger_service.post_charge(
                customer, order.total, order_id=order.id, processed_by=actor
            )
            order.linked_transaction_id = txn.id

        now = utcnow()
        order.status = OrderStatus.COMPLETED.value
        order.payment_method = method.value
        order.check_number = check if method is OrderPaymentMethod.CHECK else None
        order.payment_notes = notes
        order.paid_at = now
        order.completed_at = now
        order.completed_by = str(actor)

        loyalty_service.earn(
            customer, order.loyalty_points_earned, order_id=order.id, processed_by=actor
        )
        db.session.commit()
        current_app.logger.info(
            "Order %s completed via %s total=%s by %s", order.id, method.value, order.total, actor
        )
        return order

    result = as_result(lambda: serialized(_customer_id_for(order_id), _op))
    if not result.ok and isinstance(result.error, AlreadySettledError):
        # Another worker settled it first; completion is idempotent
        order = db.session.get(Order, order_id, populate_existing=True)
        if order is not None and order.status == OrderStatus.COMPLETED.value:
            return LedgerResult.success(order)
    return result


def cancel_order(order_id: int, actor: str, reason: str | None = None) -> LedgerResult[Order]:
    """
    Cancel a non-terminal order.

    A CHARGE already posted for the order is reversed with a refund
    ADJUSTMENT, and reserved loyalty points are returned, in the same
    transaction as the status change.
    """
    def _op():
        order = _load_order(order_id, for_update=True)
        if order.status == OrderStatus.CANCELLED.value:
            return order
        if not can_transition(order.status, OrderStatus.CANCELLED.value):
            raise InvalidTransitionError(
                f"Cannot cancel an order that is {order.status}",
                details={"from": order.status, "to": OrderStatus.CANCELLED.value},
            )

        customer = ledger_service.load_customer(order.customer_id, for_update=True)

        charge = ledger_service.find_order_charge(order.id)
        if charge is not None:
            ledger_service.post_adjustment(
                customer,
                -charge.amount,
                f"Refund for cancelled order #{order.id}",
                actor,
                order_id=order.id,
            )

        loyalty_service.reverse(
            customer, order.loyalty_points_redeemed, order_id=order.id, processed_by=actor,
            reason=f"Cancelled order #{order.id}",
        )

        order.status = OrderStatus.CANCELLED.value
        order.cancelled_at = utcnow()
        order.cancel_reason = (reason or "").strip()[:255] or None
        db.session.commit()
        current_app.logger.info("Order %s cancelled by %s (refunded=%s)", order.id, actor, charge is not None)
        return order

    return as_result(lambda: serialized(_customer_id_for(order_id), _op))


def get_order(order_id: int) -> LedgerResult[Order]:
    return as_result(lambda: _load_order(order_id))


# =============================================================================
# INTERNAL HELPERS
# =============================================================================

def _load_order(order_id: int, *, for_update: bool = False) -> Order:
    q = db.session.query(Order).filter_by(id=order_id)
    if for_update:
        q = lock_for_update(q)
    order = q.first()
    if not order:
        raise OrderNotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
    return order


def _customer_id_for(order_id: int) -> int:
    # customer_id never changes, so it is safe to read before taking the lock
    return _load_order(order_id).customer_id


def _coerce_order_payment_method(method) -> OrderPaymentMethod:
    if isinstance(method, OrderPaymentMethod):
        return method
    try:
        return OrderPaymentMethod(str(method or "").strip().lower())
    except ValueError:
        valid = ", ".join(m.value for m in OrderPaymentMethod)
        raise InvalidAmountError(f"Invalid payment method: {method}. Must be one of {valid}")
