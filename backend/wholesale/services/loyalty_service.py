# Overview: Service-layer operations for loyalty points; append-only points log with a cached balance.

from __future__ import annotations

from flask import current_app

from ..errors import InvalidAmountError
from ..extensions import db
from ..models import Customer, LoyaltyTransaction


LOYALTY_EARN = "EARN"
LOYALTY_REDEEM = "REDEEM"
LOYALTY_REVERSE = "REVERSE"


def get_points(customer_id: int) -> int:
    customer = db.session.get(Customer, customer_id)
    return customer.loyalty_points_balance if customer else 0


def earn(customer: Customer, points: int, *, order_id: int | None, processed_by: str) -> LoyaltyTransaction | None:
    """Credit earned points. Caller owns the commit."""
    if points <= 0:
        return None
    return _append(customer, LOYALTY_EARN, points, order_id=order_id, processed_by=processed_by,
                   reason=f"Earned on order #{order_id}")


def redeem(customer: Customer, points: int, *, order_id: int | None, processed_by: str) -> LoyaltyTransaction | None:
    """Reserve points against an order. Caller owns the commit."""
    if points <= 0:
        return None
    if points > customer.loyalty_points_balance:
        raise InvalidAmountError(
            f"Only {customer.loyalty_points_balance} loyalty points available",
            details={"requested_points": points, "available_points": customer.loyalty_points_balance},
        )
    return _append(customer, LOYALTY_REDEEM, -points, order_id=order_id, processed_by=processed_by,
                   reason=f"Redeemed on order #{order_id}")


def reverse(customer: Customer, points: int, *, order_id: int | None, processed_by: str, reason: str) -> LoyaltyTransaction | None:
    """Undo an earlier EARN (negative points) or REDEEM (positive points)."""
    if points == 0:
        return None
    # Points already spent elsewhere cannot be clawed back below zero
    if customer.loyalty_points_balance + points < 0:
        points = -customer.loyalty_points_balance
        if points == 0:
            return None
    return _append(customer, LOYALTY_REVERSE, points, order_id=order_id, processed_by=processed_by, reason=reason)


def _append(customer: Customer, transaction_type: str, points: int, *, order_id, processed_by, reason) -> LoyaltyTransaction:
    txn = LoyaltyTransaction(
        customer_id=customer.id,
        transaction_type=transaction_type,
        points=points,
        order_id=order_id,
        reason=reason,
        processed_by=str(processed_by),
    )
    db.session.add(txn)
    customer.loyalty_points_balance = customer.loyalty_points_balance + points
    db.session.flush()
    current_app.logger.info(
        "Loyalty %s customer=%s points=%s order=%s", transaction_type, customer.id, points, order_id
    )
    return txn
