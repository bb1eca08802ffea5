# Overview: Service-layer operations for the customer credit ledger; owns every balance write.

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional

from flask import current_app
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from ..errors import (
    AlreadySettledError,
    CustomerNotFoundError,
    InsufficientCreditError,
    InvalidAmountError,
    LedgerCorruptionError,
    LedgerResult,
)
from ..extensions import db
from ..models import Customer, CreditTransaction, PaymentMethod, TransactionType
from ..money import Money
from ..time_utils import decode_page_token, encode_page_token
from . import credit_policy
from .concurrency import as_result, lock_for_update, serialized

"""
Credit Ledger Invariants (authoritative)

- credit_transactions is append-only; corrections are new ADJUSTMENT rows.
- customers.current_balance_cents == SUM(amount_cents) of that customer's
  rows at every commit. The cache is written only here, in the same DB
  transaction as the row it reflects.
- Every write runs under customer_lock() and re-reads the customer row
  (FOR UPDATE where supported) before validating.
- A cache/log mismatch confirmed under customer_lock() freezes the account
  (ledger_frozen) and surfaces LedgerCorruptionError; nothing is retried
  until an admin reconciles.
- Order-triggered charges never override the credit limit.
"""

MAX_HISTORY_PAGE = 500


@dataclass(frozen=True)
class HistoryPage:
    items: list[CreditTransaction]
    next_page_token: Optional[str]
    limit: int

    def to_dict(self) -> dict:
        return {
            "items": [t.to_dict() for t in self.items],
            "next_page_token": self.next_page_token,
            "limit": self.limit,
        }


# =============================================================================
# ACCOUNT MANAGEMENT
# =============================================================================

def create_customer(
    name: str,
    *,
    email: str | None = None,
    credit_limit: Money = Money(0),
    apply_flat_tax: bool = True,
) -> Customer:
    """Open a customer account with a zero balance."""
    if credit_limit.is_negative():
        raise InvalidAmountError("Credit limit cannot be negative")
    customer = Customer(
        name=name,
        email=email,
        credit_limit_cents=credit_limit.cents,
        current_balance_cents=0,
        apply_flat_tax=apply_flat_tax,
    )
    db.session.add(customer)
    db.session.commit()
    return customer


def set_credit_limit(customer_id: int, limit: Money, processed_by: str) -> LedgerResult[Customer]:
    """Admin operation: replace the customer's credit limit (>= 0)."""
    def _op():
        if limit.is_negative():
            raise InvalidAmountError("Credit limit cannot be negative")
        customer = load_customer(customer_id, for_update=True)
        previous = customer.credit_limit
        customer.credit_limit_cents = limit.cents
        db.session.commit()
        current_app.logger.info(
            "Credit limit for customer %s changed %s -> %s by %s",
            customer_id, previous, limit, processed_by,
        )
        return customer

    return as_result(lambda: serialized(customer_id, _op))


def set_credit_hold(customer_id: int, on_hold: bool, processed_by: str) -> LedgerResult[Customer]:
    """Admin operation: place or lift a credit hold (blocks on-account orders)."""
    def _op():
        customer = load_customer(customer_id, for_update=True)
        customer.on_credit_hold = bool(on_hold)
        db.session.commit()
        current_app.logger.info(
            "Credit hold for customer %s set to %s by %s", customer_id, on_hold, processed_by
        )
        return customer

    return as_result(lambda: serialized(customer_id, _op))


# =============================================================================
# WRITES
# =============================================================================

def apply_charge(
    customer_id: int,
    amount: Money,
    order_id: int | None,
    processed_by: str,
    *,
    override: bool = False,
    description: str | None = None,
) -> LedgerResult[CreditTransaction]:
    """
    Charge the customer's account (balance decreases by amount).

    override=True is reserved for admin manual charges; it skips the credit
    limit and credit hold checks. Order settlement never passes it.

    Failure kinds: InvalidAmount, CustomerNotFound, InsufficientCredit,
    AlreadySettled, LedgerCorruption, ConcurrentModification.
    """
    def _op():
        customer = load_customer(customer_id, for_update=True)
        txn = post_charge(
            customer,
            amount,
            order_id=order_id,
            processed_by=processed_by,
            override=override,
            description=description,
        )
        db.session.commit()
        return txn

    return as_result(lambda: serialized(customer_id, _op))


def apply_payment(
    customer_id: int,
    amount: Money,
    method: PaymentMethod | str,
    processed_by: str,
    *,
    reference_number: str | None = None,
    notes: str | None = None,
    allow_overpayment: bool = True,
) -> LedgerResult[CreditTransaction]:
    """
    Record a payment received (balance increases by amount).

    Payments are recorded, not processed. CHECK payments require the check
    number as reference_number. With allow_overpayment=False the
    amount may not exceed what the customer owes; the check runs under the
    customer lock against the locked balance.
    """
    def _op():
        if not isinstance(amount, Money) or not amount.is_positive():
            raise InvalidAmountError("Payment amount must be positive")
        payment_method = _coerce_payment_method(method)
        reference = (reference_number or "").strip() or None
        if payment_method is PaymentMethod.CHECK and not reference:
            raise InvalidAmountError("Check number is required for check payments")

        customer = load_customer(customer_id, for_update=True)
        _ensure_writable(customer)
        if not allow_overpayment:
            _verify_cache(customer)
            problem = credit_policy.validate_payment_amount(
                amount, customer.current_balance, allow_overpayment=False
            )
            if problem:
                raise InvalidAmountError(problem)
        txn = _append(
            customer,
            TransactionType.PAYMENT,
            amount,
            description=f"Payment received ({payment_method.value.lower()})",
            processed_by=processed_by,
            payment_method=payment_method.value,
            reference_number=reference,
            notes=notes,
        )
        db.session.commit()
        return txn

    return as_result(lambda: serialized(customer_id, _op))


def apply_adjustment(
    customer_id: int,
    signed_amount: Money,
    description: str,
    processed_by: str,
    *,
    order_id: int | None = None,
) -> LedgerResult[CreditTransaction]:
    """Manual correction (admin-only via the auth layer). Always logged with a description."""
    def _op():
        customer = load_customer(customer_id, for_update=True)
        txn = post_adjustment(
            customer, signed_amount, description, processed_by, order_id=order_id
        )
        db.session.commit()
        return txn

    return as_result(lambda: serialized(customer_id, _op))


# =============================================================================
# IN-SESSION POSTING (caller holds customer_lock and owns the commit)
# =============================================================================

def post_charge(
    customer: Customer,
    amount: Money,
    *,
    order_id: int | None,
    processed_by: str,
    override: bool = False,
    description: str | None = None,
) -> CreditTransaction:
    """
    Validate and append a CHARGE without committing.

    Used directly by order settlement so the charge and the order status
    change share one database transaction.
    """
    if not isinstance(amount, Money) or not amount.is_positive():
        raise InvalidAmountError("Charge amount must be positive")
    if order_id is None and not (description or "").strip():
        raise InvalidAmountError("A description is required for charges without an order")

    _ensure_writable(customer)

    if order_id is not None and _charge_exists(order_id):
        raise AlreadySettledError(
            f"Order #{order_id} has already been charged to account",
            details={"order_id": order_id},
        )

    if not override:
        _check_credit(customer, amount)

    try:
        return _append(
            customer,
            TransactionType.CHARGE,
            -amount,
            description=description or f"Order #{order_id} charged to account",
            processed_by=processed_by,
            order_id=order_id,
        )
    except IntegrityError as exc:
        # Unique (order_id) for CHARGE rows caught a charge from another process
        raise AlreadySettledError(
            f"Order #{order_id} has already been charged to account",
            details={"order_id": order_id},
        ) from exc


def post_adjustment(
    customer: Customer,
    signed_amount: Money,
    description: str,
    processed_by: str,
    *,
    order_id: int | None = None,
) -> CreditTransaction:
    """Validate and append an ADJUSTMENT without committing."""
    if not isinstance(signed_amount, Money) or signed_amount.is_zero():
        raise InvalidAmountError("Adjustment amount must be non-zero")
    if not (description or "").strip():
        raise InvalidAmountError("Adjustments require a description")
    _ensure_writable(customer)
    return _append(
        customer,
        TransactionType.ADJUSTMENT,
        signed_amount,
        description=description.strip(),
        processed_by=processed_by,
        order_id=order_id,
    )


def find_order_charge(order_id: int) -> CreditTransaction | None:
    return (
        db.session.query(CreditTransaction)
        .filter_by(order_id=order_id, transaction_type=TransactionType.CHARGE.value)
        .first()
    )


# =============================================================================
# READS
# =============================================================================

def get_balance(customer_id: int) -> LedgerResult[Money]:
    """
    Cached balance, verified against the log on every read.

    The cache and the log sum come from one SELECT, so a write committed by
    another worker cannot fall between them. A mismatch seen without the
    lock is re-checked under customer_lock(); only a confirmed mismatch is a
    fatal money-conservation failure: the account is frozen and
    LedgerCorruption is returned instead of a number.
    """
    def _op():
        snapshot = _read_snapshot(customer_id)
        if snapshot.ledger_frozen:
            raise _frozen_error(customer_id, snapshot.frozen_reason)
        if snapshot.consistent:
            return Money(snapshot.cached_cents)
        return serialized(customer_id, _confirm_balance)

    def _confirm_balance():
        customer = load_customer(customer_id, for_update=True)
        _ensure_writable(customer)
        _verify_cache(customer)
        return customer.current_balance

    return as_result(_op)


def get_account_summary(customer_id: int) -> LedgerResult[dict]:
    """Limit, balance, owed, available and flags for the balance endpoint."""
    def _op():
        balance = get_balance(customer_id).unwrap()
        customer = load_customer(customer_id)
        limit = customer.credit_limit
        return {
            "customer_id": customer.id,
            "name": customer.name,
            "credit_limit": limit.to_dict(),
            "current_balance": balance.to_dict(),
            "owed": credit_policy.owed(balance).to_dict(),
            "available": credit_policy.available(limit, balance).to_dict(),
            "is_over_limit": credit_policy.is_over_limit(limit, balance),
            "on_credit_hold": customer.on_credit_hold,
            "loyalty_points_balance": customer.loyalty_points_balance,
        }

    return as_result(_op)


def get_history(
    customer_id: int,
    *,
    page_token: str | None = None,
    limit: int = 50,
) -> LedgerResult[HistoryPage]:
    """
    One page of the customer's transactions, newest first.

    page_token is opaque and restartable: it encodes the (created_at, id)
    of the last row returned, so no cursor or connection is held between
    calls.
    """
    def _op():
        load_customer(customer_id)
        page_limit = max(1, min(int(limit), MAX_HISTORY_PAGE))

        q = db.session.query(CreditTransaction).filter(CreditTransaction.customer_id == customer_id)
        if page_token:
            try:
                cursor_dt, cursor_id = decode_page_token(page_token)
            except ValueError:
                raise InvalidAmountError("page_token is malformed")
            q = q.filter(
                or_(
                    CreditTransaction.created_at < cursor_dt,
                    and_(CreditTransaction.created_at == cursor_dt, CreditTransaction.id < cursor_id),
                )
            )

        rows = (
            q.order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(page_limit + 1)
            .all()
        )
        has_more = len(rows) > page_limit
        rows = rows[:page_limit]

        next_token = None
        if has_more and rows:
            last = rows[-1]
            next_token = encode_page_token(last.created_at, last.id)
        return HistoryPage(items=rows, next_page_token=next_token, limit=page_limit)

    return as_result(_op)


def iter_history(customer_id: int, page_size: int = 100) -> Iterator[CreditTransaction]:
    """Lazily walk the full history, newest first, one page at a time."""
    token = None
    while True:
        page = get_history(customer_id, page_token=token, limit=page_size).unwrap()
        yield from page.items
        if not page.next_page_token:
            return
        token = page.next_page_token


def replay_balance(customer_id: int) -> Money:
    """Rebuild the balance by replaying the log in (created_at, id) order."""
    rows = (
        db.session.query(CreditTransaction.amount_cents)
        .filter(CreditTransaction.customer_id == customer_id)
        .order_by(CreditTransaction.created_at.asc(), CreditTransaction.id.asc())
        .all()
    )
    balance = Money.zero()
    for (amount_cents,) in rows:
        balance = balance + Money(amount_cents)
    return balance


# =============================================================================
# CORRUPTION CANARY / RECONCILIATION
# =============================================================================

def verify_all() -> list[int]:
    """Check every account's cache against its log; returns ids found corrupt."""
    corrupt = []
    for (customer_id,) in db.session.query(Customer.id).order_by(Customer.id).all():
        result = get_balance(customer_id)
        if not result.ok and isinstance(result.error, LedgerCorruptionError):
            corrupt.append(customer_id)
    return corrupt


def reconcile(customer_id: int, processed_by: str, note: str) -> LedgerResult[Customer]:
    """
    Operator action after a LedgerCorruption incident.

    The log is the source of truth: the cache is rebuilt from it and the
    freeze is lifted. No transaction row is touched.
    """
    def _op():
        if not (note or "").strip():
            raise InvalidAmountError("A reconciliation note is required")
        customer = load_customer(customer_id, for_update=True)
        replayed = replay_balance(customer_id)
        previous = customer.current_balance
        customer.current_balance_cents = replayed.cents
        customer.ledger_frozen = False
        customer.frozen_reason = None
        db.session.commit()
        current_app.logger.warning(
            "Ledger for customer %s reconciled by %s: cache %s -> %s (%s)",
            customer_id, processed_by, previous, replayed, note,
        )
        return customer

    return as_result(lambda: serialized(customer_id, _op))


# =============================================================================
# INTERNAL HELPERS
# =============================================================================

def load_customer(customer_id: int, *, for_update: bool = False) -> Customer:
    # Refresh from the database; another worker may have committed since this session loaded it
    q = db.session.query(Customer).filter_by(id=customer_id).populate_existing()
    if for_update:
        q = lock_for_update(q)
    customer = q.first()
    if not customer:
        raise CustomerNotFoundError(f"Customer {customer_id} not found", details={"customer_id": customer_id})
    return customer


def _coerce_payment_method(method: PaymentMethod | str) -> PaymentMethod:
    if isinstance(method, PaymentMethod):
        return method
    try:
        return PaymentMethod(str(method or "").strip().upper())
    except ValueError:
        valid = ", ".join(m.value.lower() for m in PaymentMethod)
        raise InvalidAmountError(f"Invalid payment method: {method}. Must be one of {valid}")


def _charge_exists(order_id: int) -> bool:
    return find_order_charge(order_id) is not None


def _check_credit(customer: Customer, amount: Money) -> None:
    limit = customer.credit_limit
    balance = customer.current_balance
    available = credit_policy.available(limit, balance)

    if customer.on_credit_hold:
        current_app.logger.warning("Charge refused for customer %s: on credit hold", customer.id)
        raise InsufficientCreditError(
            "Customer is on credit hold",
            details={"customer_id": customer.id, "on_credit_hold": True},
        )

    if credit_policy.is_over_limit(limit, balance - amount):
        current_app.logger.warning(
            "Charge refused for customer %s: available %s, requested %s",
            customer.id, available, amount,
        )
        raise InsufficientCreditError(
            f"insufficient available credit: available {available.format()}, "
            f"order total {amount.format()}",
            details={
                "available_cents": available.cents,
                "requested_cents": amount.cents,
                "exceeds_by_cents": credit_policy.shortfall(limit, balance, amount).cents,
            },
        )


def _frozen_error(customer_id: int, reason: str | None) -> LedgerCorruptionError:
    return LedgerCorruptionError(
        f"Ledger for customer {customer_id} is frozen pending reconciliation",
        details={"customer_id": customer_id, "reason": reason},
    )


def _ensure_writable(customer: Customer) -> None:
    if customer.ledger_frozen:
        raise _frozen_error(customer.id, customer.frozen_reason)


@dataclass(frozen=True)
class BalanceSnapshot:
    cached_cents: int
    logged_cents: int
    ledger_frozen: bool
    frozen_reason: Optional[str] = None

    @property
    def consistent(self) -> bool:
        return self.cached_cents == self.logged_cents


def _read_snapshot(customer_id: int) -> BalanceSnapshot:
    """Cached balance, freeze flag and log sum from a single statement."""
    logged = (
        select(func.coalesce(func.sum(CreditTransaction.amount_cents), 0))
        .where(CreditTransaction.customer_id == Customer.id)
        .correlate(Customer)
        .scalar_subquery()
    )
    row = db.session.execute(
        select(
            Customer.current_balance_cents,
            Customer.ledger_frozen,
            Customer.frozen_reason,
            logged.label("logged_cents"),
        ).where(Customer.id == customer_id)
    ).first()
    if row is None:
        raise CustomerNotFoundError(f"Customer {customer_id} not found", details={"customer_id": customer_id})
    return BalanceSnapshot(
        cached_cents=int(row.current_balance_cents),
        logged_cents=int(row.logged_cents or 0),
        ledger_frozen=bool(row.ledger_frozen),
        frozen_reason=row.frozen_reason,
    )


def _sum_log(customer_id: int) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(CreditTransaction.amount_cents), 0))
        .filter(CreditTransaction.customer_id == customer_id)
        .scalar()
    )
    return int(total or 0)


def _verify_cache(customer: Customer) -> None:
    logged = _sum_log(customer.id)
    if logged == customer.current_balance_cents:
        return
    error = LedgerCorruptionError(
        f"Cached balance {customer.current_balance_cents} != replayed {logged} for customer {customer.id}",
        details={"customer_id": customer.id, "cached_cents": customer.current_balance_cents, "logged_cents": logged},
    )
    _freeze(customer.id, f"cache/log mismatch (incident {error.incident_id})")
    current_app.logger.critical(
        "LEDGER CORRUPTION incident=%s customer=%s cached=%s logged=%s",
        error.incident_id, customer.id, error.details["cached_cents"], logged,
    )
    raise error


def _freeze(customer_id: int, reason: str) -> None:
    # Committed on its own so the freeze survives the caller's rollback
    db.session.rollback()
    db.session.execute(
        update(Customer)
        .where(Customer.id == customer_id)
        .values(ledger_frozen=True, frozen_reason=reason[:255], version_id=Customer.version_id + 1)
    )
    db.session.commit()


def _append(
    customer: Customer,
    transaction_type: TransactionType,
    signed_amount: Money,
    *,
    description: str,
    processed_by: str,
    order_id: int | None = None,
    payment_method: str | None = None,
    reference_number: str | None = None,
    notes: str | None = None,
) -> CreditTransaction:
    """Append one row and move the cache by the same delta, then flush."""
    _verify_cache(customer)

    txn = CreditTransaction(
        customer_id=customer.id,
        order_id=order_id,
        transaction_type=transaction_type.value,
        amount_cents=signed_amount.cents,
        description=description[:255],
        payment_method=payment_method,
        reference_number=reference_number,
        notes=notes,
        processed_by=str(processed_by),
    )
    db.session.add(txn)
    customer.current_balance_cents = customer.current_balance_cents + signed_amount.cents
    db.session.flush()

    current_app.logger.info(
        "Ledger %s customer=%s amount=%s order=%s by=%s balance=%s",
        transaction_type.value, customer.id, signed_amount, order_id, processed_by,
        customer.current_balance,
    )
    return txn
