from __future__ import annotations

from enum import Enum

from sqlalchemy import event
from sqlalchemy.orm.attributes import NEVER_SET, NO_VALUE

from ..extensions import db
from ..money import Money
from wholesale.time_utils import to_utc_z, utcnow


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OrderType(str, Enum):
    DELIVERY = "delivery"
    PICKUP = "pickup"


class OrderPaymentMethod(str, Enum):
    CASH = "cash"
    CHECK = "check"
    CREDIT = "credit"
    ACCOUNT_CREDIT = "account_credit"


class Order(db.Model):
    """
    Wholesale order with its settlement breakdown frozen at creation
    (or at the last recalculation while still pending).

    BREAKDOWN CHAIN (all cents):
        subtotal_before_delivery = items_subtotal + flat_tax_total
        total = subtotal_before_delivery + delivery_fee - loyalty_redeem_value

    linked_transaction_id points at the CHARGE posted when the order was
    completed on account. It is set once and never changed.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_customer_status", "customer_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    order_type = db.Column(db.String(16), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=OrderStatus.PENDING.value, index=True)
    notes = db.Column(db.Text, nullable=True)

    # Frozen settlement breakdown
    items_subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    flat_tax_total_cents = db.Column(db.Integer, nullable=False, default=0)
    subtotal_before_delivery_cents = db.Column(db.Integer, nullable=False, default=0)
    delivery_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    loyalty_redeem_value_cents = db.Column(db.Integer, nullable=False, default=0)
    loyalty_points_redeemed = db.Column(db.Integer, nullable=False, default=0)
    loyalty_eligible_subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    loyalty_points_earned = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    # Payment (set at completion)
    payment_method = db.Column(db.String(16), nullable=True)
    check_number = db.Column(db.String(64), nullable=True)
    payment_notes = db.Column(db.Text, nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)

    linked_transaction_id = db.Column(
        db.Integer, db.ForeignKey("credit_transactions.id"), nullable=True, unique=True
    )

    created_by = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by = db.Column(db.String(64), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("orders", lazy="dynamic"))
    linked_transaction = db.relationship("CreditTransaction", foreign_keys=[linked_transaction_id])
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def total(self) -> Money:
        return Money(self.total_cents)

    def breakdown(self):
        """Rebuild the frozen SettlementBreakdown value object."""
        from ..services.settlement_calculator import SettlementBreakdown, TaxLine

        return SettlementBreakdown(
            items_subtotal=Money(self.items_subtotal_cents),
            flat_tax_lines=tuple(
                TaxLine(rule_id=t.flat_tax_rule_id, label=t.label, amount=Money(t.amount_cents))
                for t in sorted(self.tax_lines, key=lambda t: t.position)
            ),
            flat_tax_total=Money(self.flat_tax_total_cents),
            subtotal_before_delivery=Money(self.subtotal_before_delivery_cents),
            delivery_fee=Money(self.delivery_fee_cents),
            loyalty_redeem_value=Money(self.loyalty_redeem_value_cents),
            total=Money(self.total_cents),
            loyalty_points_earned=self.loyalty_points_earned,
            loyalty_eligible_subtotal=Money(self.loyalty_eligible_subtotal_cents),
            loyalty_points_redeemed=self.loyalty_points_redeemed,
        )

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "customer_id": self.customer_id,
            "order_type": self.order_type,
            "status": self.status,
            "notes": self.notes,
            "breakdown": self.breakdown().to_dict(),
            "loyalty_points_redeemed": self.loyalty_points_redeemed,
            "payment_method": self.payment_method,
            "check_number": self.check_number,
            "payment_notes": self.payment_notes,
            "paid_at": to_utc_z(self.paid_at) if self.paid_at else None,
            "linked_transaction_id": self.linked_transaction_id,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
            "completed_by": self.completed_by,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "cancel_reason": self.cancel_reason,
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class OrderLine(db.Model):
    """Order item with price and tax flags captured at creation."""
    __tablename__ = "order_lines"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_lines_quantity_pos"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    product_name = db.Column(db.String(255), nullable=False)
    category = db.Column(db.String(64), nullable=True)
    is_tobacco = db.Column(db.Boolean, nullable=False, default=False)
    flat_tax_rule_id = db.Column(db.Integer, nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    order = db.relationship(
        "Order",
        backref=db.backref("lines", lazy=True, order_by="OrderLine.id", cascade="all, delete-orphan"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "category": self.category,
            "is_tobacco": self.is_tobacco,
            "flat_tax_rule_id": self.flat_tax_rule_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
        }


class OrderTaxLine(db.Model):
    """One flat-tax line of an order's frozen breakdown."""
    __tablename__ = "order_tax_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    flat_tax_rule_id = db.Column(db.Integer, nullable=True)
    label = db.Column(db.String(128), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)

    order = db.relationship(
        "Order",
        backref=db.backref("tax_lines", lazy=True, cascade="all, delete-orphan"),
    )


@event.listens_for(Order.linked_transaction_id, "set", active_history=True)
def _link_once(target, value, oldvalue, initiator):
    if oldvalue in (None, NO_VALUE, NEVER_SET) or oldvalue == value:
        return
    raise ValueError(f"Order {target.id} is already linked to credit transaction {oldvalue}")
