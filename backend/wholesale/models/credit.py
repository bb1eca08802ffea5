from __future__ import annotations

from enum import Enum

from sqlalchemy import event

from ..extensions import db
from ..money import Money
from wholesale.time_utils import to_utc_z, utcnow


class TransactionType(str, Enum):
    """
    Closed set of credit ledger events.

    CHARGE:     order or manual charge, amount_cents < 0
    PAYMENT:    cash/check/electronic payment, amount_cents > 0
    ADJUSTMENT: manual correction or refund, amount_cents != 0
    """
    CHARGE = "CHARGE"
    PAYMENT = "PAYMENT"
    ADJUSTMENT = "ADJUSTMENT"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    CHECK = "CHECK"
    ELECTRONIC = "ELECTRONIC"


class CreditTransaction(db.Model):
    """
    Append-only log of signed balance deltas per customer.

    INVARIANTS:
    - amount_cents is the signed delta applied to the customer's balance
    - customers.current_balance_cents == SUM(amount_cents) for that customer,
      replayed in (created_at, id) order
    - rows are never updated or deleted; corrections are new ADJUSTMENT rows
    - at most one CHARGE per order_id (partial unique index)

    order_id is an opaque reference to the originating order; it is not a
    foreign key so the log stays independent of order storage.
    """
    __tablename__ = "credit_transactions"
    __table_args__ = (
        db.Index("ix_credit_txns_customer_created", "customer_id", "created_at", "id"),
        db.Index(
            "uq_credit_txns_order_charge",
            "order_id",
            unique=True,
            sqlite_where=db.text("transaction_type = 'CHARGE'"),
            postgresql_where=db.text("transaction_type = 'CHARGE'"),
        ),
        db.CheckConstraint("amount_cents <> 0", name="ck_credit_txns_amount_nonzero"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, nullable=True, index=True)

    transaction_type = db.Column(db.String(16), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    description = db.Column(db.String(255), nullable=False)

    # PAYMENT only
    payment_method = db.Column(db.String(16), nullable=True)
    reference_number = db.Column(db.String(64), nullable=True)  # check number, transfer ref
    notes = db.Column(db.Text, nullable=True)

    processed_by = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    customer = db.relationship("Customer", backref=db.backref("credit_transactions", lazy="dynamic"))

    @property
    def amount(self) -> Money:
        return Money(self.amount_cents)

    @property
    def kind(self) -> TransactionType:
        return TransactionType(self.transaction_type)

    def __repr__(self) -> str:
        return (
            f"<CreditTransaction id={self.id} customer_id={self.customer_id} "
            f"type={self.transaction_type} amount={self.amount_cents}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "order_id": self.order_id,
            "transaction_type": self.transaction_type,
            "amount_cents": self.amount_cents,
            "amount_display": self.amount.format(),
            "description": self.description,
            "payment_method": self.payment_method,
            "reference_number": self.reference_number,
            "notes": self.notes,
            "processed_by": self.processed_by,
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(CreditTransaction, "before_update")
def _reject_update(mapper, connection, target):
    raise RuntimeError(f"credit_transactions row {target.id} is immutable")


@event.listens_for(CreditTransaction, "before_delete")
def _reject_delete(mapper, connection, target):
    raise RuntimeError(f"credit_transactions row {target.id} cannot be deleted")
