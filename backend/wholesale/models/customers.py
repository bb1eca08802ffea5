from __future__ import annotations

from ..extensions import db
from ..money import Money
from wholesale.time_utils import to_utc_z, utcnow


class Customer(db.Model):
    """
    Wholesale customer account with an on-account credit line.

    BALANCE CONVENTION:
    - current_balance_cents > 0: prepaid credit
    - current_balance_cents < 0: amount owed

    current_balance_cents is a CACHE of SUM(credit_transactions.amount_cents).
    It is written only by ledger_service inside the per-customer lock and can
    always be rebuilt by replaying the log.

    ledger_frozen is set when the cache disagrees with the log; all ledger
    writes are refused until an admin reconciles.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.CheckConstraint("credit_limit_cents >= 0", name="ck_customers_credit_limit_nonneg"),
        db.CheckConstraint("loyalty_points_balance >= 0", name="ck_customers_points_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True, unique=True)

    credit_limit_cents = db.Column(db.Integer, nullable=False, default=0)
    current_balance_cents = db.Column(db.Integer, nullable=False, default=0)
    on_credit_hold = db.Column(db.Boolean, nullable=False, default=False)

    ledger_frozen = db.Column(db.Boolean, nullable=False, default=False)
    frozen_reason = db.Column(db.String(255), nullable=True)

    # Flat taxes (e.g. county tobacco taxes) apply unless the customer is exempt
    apply_flat_tax = db.Column(db.Boolean, nullable=False, default=True)

    loyalty_points_balance = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def credit_limit(self) -> Money:
        return Money(self.credit_limit_cents or 0)

    @property
    def current_balance(self) -> Money:
        return Money(self.current_balance_cents or 0)

    def __repr__(self) -> str:
        return f"<Customer id={self.id} name={self.name!r} balance={self.current_balance_cents}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "credit_limit_cents": self.credit_limit_cents,
            "current_balance_cents": self.current_balance_cents,
            "on_credit_hold": self.on_credit_hold,
            "ledger_frozen": self.ledger_frozen,
            "apply_flat_tax": self.apply_flat_tax,
            "loyalty_points_balance": self.loyalty_points_balance,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class LoyaltyTransaction(db.Model):
    """
    Append-only ledger of loyalty point events.

    TRANSACTION TYPES:
    - EARN: Points earned when an order completes
    - REDEEM: Points reserved against an order at creation
    - REVERSE: Return of REDEEMed points when an order is cancelled or recalculated

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "loyalty_transactions"
    __table_args__ = (
        db.Index("ix_loyalty_txns_customer_occurred", "customer_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    transaction_type = db.Column(db.String(16), nullable=False, index=True)
    points = db.Column(db.Integer, nullable=False)  # Positive for earn, negative for redeem

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    reason = db.Column(db.String(255), nullable=True)

    processed_by = db.Column(db.String(64), nullable=False)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    customer = db.relationship("Customer", backref=db.backref("loyalty_transactions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "transaction_type": self.transaction_type,
            "points": self.points,
            "order_id": self.order_id,
            "reason": self.reason,
            "processed_by": self.processed_by,
            "occurred_at": to_utc_z(self.occurred_at),
        }
