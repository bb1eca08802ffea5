"""
Credit ledger service tests.

Verifies:
- The cached balance always equals the replayed log
- Credit limit and credit hold enforcement on charges
- One CHARGE per order
- Payment method rules
- Corruption canary freezes the account; reconcile lifts it
- History paging is restartable
"""

import pytest
from sqlalchemy import update

from wholesale.errors import (
    AlreadySettledError,
    CustomerNotFoundError,
    InsufficientCreditError,
    InvalidAmountError,
    LedgerCorruptionError,
)
from wholesale.extensions import db
from wholesale.models import CreditTransaction, Customer, TransactionType
from wholesale.money import Money
from wholesale.services import ledger_service


ADMIN = "admin-1"


def _balance(customer_id: int) -> Money:
    return ledger_service.get_balance(customer_id).unwrap()


def _corrupt_cache(customer_id: int, cents: int) -> None:
    # Simulate a cache write that bypassed the ledger
    db.session.execute(
        update(Customer).where(Customer.id == customer_id).values(current_balance_cents=cents)
    )
    db.session.commit()
    db.session.expire_all()


class TestPostingAndReplay:
    def test_new_customer_starts_at_zero(self, customer):
        assert _balance(customer.id) == Money(0)
        assert ledger_service.replay_balance(customer.id) == Money(0)

    def test_mixed_history_replays_to_cache(self, customer):
        ledger_service.apply_charge(customer.id, Money(4000), 101, ADMIN).unwrap()
        ledger_service.apply_payment(customer.id, Money(1500), "cash", ADMIN).unwrap()
        ledger_service.apply_adjustment(customer.id, Money(-250), "Late fee", ADMIN).unwrap()
        ledger_service.apply_charge(customer.id, Money(1000), None, ADMIN, description="Pallet deposit").unwrap()

        assert _balance(customer.id) == Money(-4000 + 1500 - 250 - 1000)
        assert ledger_service.replay_balance(customer.id) == _balance(customer.id)

    @pytest.mark.parametrize(
        "opening,amount",
        [(0, 1), (0, 999), (0, 10000), (2500, 1), (2500, 12500), (-4000, 6000)],
    )
    def test_charge_then_equal_payment_restores_balance(self, customer, opening, amount):
        if opening > 0:
            ledger_service.apply_payment(customer.id, Money(opening), "cash", ADMIN).unwrap()
        elif opening < 0:
            ledger_service.apply_charge(customer.id, Money(-opening), None, ADMIN, description="Opening").unwrap()
        before = _balance(customer.id)

        ledger_service.apply_charge(customer.id, Money(amount), None, ADMIN, description="Goods").unwrap()
        assert _balance(customer.id) == before - Money(amount)
        ledger_service.apply_payment(customer.id, Money(amount), "electronic", ADMIN).unwrap()

        assert _balance(customer.id) == before
        assert ledger_service.replay_balance(customer.id) == before

    def test_signs_follow_transaction_type(self, customer):
        charge = ledger_service.apply_charge(customer.id, Money(500), 7, ADMIN).unwrap()
        payment = ledger_service.apply_payment(customer.id, Money(300), "electronic", ADMIN).unwrap()
        assert charge.amount_cents == -500
        assert charge.transaction_type == TransactionType.CHARGE.value
        assert payment.amount_cents == 300
        assert payment.description == "Payment received (electronic)"

    def test_payment_overpay_becomes_prepaid_credit(self, customer):
        ledger_service.apply_charge(customer.id, Money(1000), 1, ADMIN).unwrap()
        ledger_service.apply_payment(customer.id, Money(3000), "cash", ADMIN).unwrap()
        summary = ledger_service.get_account_summary(customer.id).unwrap()
        assert summary["current_balance"]["cents"] == 2000
        assert summary["owed"]["cents"] == 0
        assert summary["available"]["cents"] == 10000

    def test_rows_are_immutable(self, customer):
        txn = ledger_service.apply_payment(customer.id, Money(100), "cash", ADMIN).unwrap()
        txn.amount_cents = 999999
        with pytest.raises(RuntimeError):
            db.session.flush()
        db.session.rollback()

        txn = db.session.get(CreditTransaction, txn.id)
        db.session.delete(txn)
        with pytest.raises(RuntimeError):
            db.session.flush()
        db.session.rollback()
        assert _balance(customer.id) == Money(100)


class TestCreditLimit:
    def test_charge_over_limit_is_refused_without_side_effects(self, customer):
        ledger_service.set_credit_limit(customer.id, Money(50000), ADMIN).unwrap()
        ledger_service.apply_charge(customer.id, Money(48000), 1, ADMIN).unwrap()

        result = ledger_service.apply_charge(customer.id, Money(3000), 2, ADMIN)

        assert not result.ok
        assert isinstance(result.error, InsufficientCreditError)
        assert result.error.message == "insufficient available credit: available $20.00, order total $30.00"
        assert result.error.details["exceeds_by_cents"] == 1000
        assert _balance(customer.id) == Money(-48000)
        assert db.session.query(CreditTransaction).filter_by(order_id=2).count() == 0

    def test_charge_up_to_limit_is_allowed(self, customer):
        assert ledger_service.apply_charge(customer.id, Money(10000), 1, ADMIN).ok
        assert not ledger_service.apply_charge(customer.id, Money(1), 2, ADMIN).ok

    def test_prepaid_credit_extends_headroom(self, customer):
        ledger_service.apply_payment(customer.id, Money(5000), "cash", ADMIN).unwrap()
        assert ledger_service.apply_charge(customer.id, Money(15000), 1, ADMIN).ok
        assert _balance(customer.id) == Money(-10000)

    def test_admin_override_skips_limit(self, customer):
        result = ledger_service.apply_charge(
            customer.id, Money(25000), None, ADMIN, override=True, description="Approved by owner"
        )
        assert result.ok
        assert _balance(customer.id) == Money(-25000)

    def test_credit_hold_blocks_charges(self, customer):
        ledger_service.set_credit_hold(customer.id, True, ADMIN).unwrap()
        result = ledger_service.apply_charge(customer.id, Money(100), 1, ADMIN)
        assert isinstance(result.error, InsufficientCreditError)
        assert result.error.message == "Customer is on credit hold"

        ledger_service.set_credit_hold(customer.id, False, ADMIN).unwrap()
        assert ledger_service.apply_charge(customer.id, Money(100), 1, ADMIN).ok

    def test_lowering_limit_does_not_touch_balance(self, customer):
        ledger_service.apply_charge(customer.id, Money(8000), 1, ADMIN).unwrap()
        ledger_service.set_credit_limit(customer.id, Money(5000), ADMIN).unwrap()
        summary = ledger_service.get_account_summary(customer.id).unwrap()
        assert summary["is_over_limit"] is True
        assert summary["current_balance"]["cents"] == -8000

    def test_negative_limit_rejected(self, customer):
        result = ledger_service.set_credit_limit(customer.id, Money(-1), ADMIN)
        assert isinstance(result.error, InvalidAmountError)


class TestValidation:
    @pytest.mark.parametrize("cents", [0, -100])
    def test_charge_amount_must_be_positive(self, customer, cents):
        result = ledger_service.apply_charge(customer.id, Money(cents), 1, ADMIN)
        assert isinstance(result.error, InvalidAmountError)

    def test_manual_charge_needs_description(self, customer):
        result = ledger_service.apply_charge(customer.id, Money(100), None, ADMIN)
        assert isinstance(result.error, InvalidAmountError)

    def test_payment_amount_must_be_positive(self, customer):
        result = ledger_service.apply_payment(customer.id, Money(0), "cash", ADMIN)
        assert isinstance(result.error, InvalidAmountError)

    def test_check_payment_requires_check_number(self, customer):
        result = ledger_service.apply_payment(customer.id, Money(100), "check", ADMIN)
        assert isinstance(result.error, InvalidAmountError)
        assert "Check number" in result.error.message

        txn = ledger_service.apply_payment(
            customer.id, Money(100), "check", ADMIN, reference_number="1042"
        ).unwrap()
        assert txn.reference_number == "1042"
        assert txn.payment_method == "CHECK"

    def test_unknown_payment_method(self, customer):
        result = ledger_service.apply_payment(customer.id, Money(100), "barter", ADMIN)
        assert isinstance(result.error, InvalidAmountError)

    def test_adjustment_rules(self, customer):
        assert isinstance(
            ledger_service.apply_adjustment(customer.id, Money(0), "Nothing", ADMIN).error,
            InvalidAmountError,
        )
        assert isinstance(
            ledger_service.apply_adjustment(customer.id, Money(100), "   ", ADMIN).error,
            InvalidAmountError,
        )

    def test_unknown_customer(self, db_session):
        result = ledger_service.apply_payment(999999, Money(100), "cash", ADMIN)
        assert isinstance(result.error, CustomerNotFoundError)
        assert result.error.http_status == 404


class TestIdempotentCharge:
    def test_second_charge_for_same_order_is_already_settled(self, customer):
        ledger_service.apply_charge(customer.id, Money(1000), 55, ADMIN).unwrap()
        result = ledger_service.apply_charge(customer.id, Money(1000), 55, ADMIN)

        assert isinstance(result.error, AlreadySettledError)
        assert _balance(customer.id) == Money(-1000)
        assert ledger_service.find_order_charge(55) is not None

    def test_refund_adjustment_may_share_order_id(self, customer):
        ledger_service.apply_charge(customer.id, Money(1000), 56, ADMIN).unwrap()
        ledger_service.apply_adjustment(customer.id, Money(1000), "Refund", ADMIN, order_id=56).unwrap()
        assert _balance(customer.id) == Money(0)


class TestCorruptionCanary:
    def test_mismatch_freezes_and_hides_details(self, customer):
        ledger_service.apply_charge(customer.id, Money(1000), 1, ADMIN).unwrap()
        _corrupt_cache(customer.id, 5000)

        result = ledger_service.get_balance(customer.id)

        assert isinstance(result.error, LedgerCorruptionError)
        assert result.error.fatal
        assert result.error.user_message == f"Internal ledger error. Reference: {result.error.incident_id}"
        assert "5000" not in result.error.user_message

        frozen = db.session.get(Customer, customer.id, populate_existing=True)
        assert frozen.ledger_frozen is True
        assert result.error.incident_id in frozen.frozen_reason

    def test_frozen_account_refuses_writes(self, customer):
        _corrupt_cache(customer.id, 123)
        ledger_service.get_balance(customer.id)

        result = ledger_service.apply_payment(customer.id, Money(100), "cash", ADMIN)
        assert isinstance(result.error, LedgerCorruptionError)
        assert db.session.query(CreditTransaction).filter_by(customer_id=customer.id).count() == 0

    def test_mismatch_detected_on_write_path(self, customer):
        _corrupt_cache(customer.id, -700)
        result = ledger_service.apply_payment(customer.id, Money(100), "cash", ADMIN)
        assert isinstance(result.error, LedgerCorruptionError)
        assert db.session.get(Customer, customer.id, populate_existing=True).ledger_frozen

    def test_verify_all_reports_corrupt_accounts(self, customer):
        healthy = ledger_service.create_customer("Healthy Co")
        _corrupt_cache(customer.id, 42)
        assert ledger_service.verify_all() == [customer.id]
        assert ledger_service.get_balance(healthy.id).ok

    def test_reconcile_rebuilds_from_log(self, customer):
        ledger_service.apply_charge(customer.id, Money(2500), 9, ADMIN).unwrap()
        _corrupt_cache(customer.id, 0)
        ledger_service.get_balance(customer.id)

        assert not ledger_service.reconcile(customer.id, ADMIN, "").ok

        reconciled = ledger_service.reconcile(customer.id, ADMIN, "Cache rebuilt after incident").unwrap()
        assert reconciled.ledger_frozen is False
        assert reconciled.current_balance_cents == -2500
        assert _balance(customer.id) == Money(-2500)
        assert ledger_service.apply_payment(customer.id, Money(500), "cash", ADMIN).ok


class TestHistory:
    def _seed(self, customer_id: int, count: int):
        for i in range(count):
            ledger_service.apply_payment(customer_id, Money(100 + i), "cash", ADMIN).unwrap()

    def test_newest_first_with_restartable_token(self, customer):
        self._seed(customer.id, 7)

        first = ledger_service.get_history(customer.id, limit=3).unwrap()
        assert [t.amount_cents for t in first.items] == [106, 105, 104]
        assert first.next_page_token

        # A fresh call with only the token continues where the first page stopped
        db.session.expire_all()
        second = ledger_service.get_history(customer.id, page_token=first.next_page_token, limit=3).unwrap()
        assert [t.amount_cents for t in second.items] == [103, 102, 101]

        third = ledger_service.get_history(customer.id, page_token=second.next_page_token, limit=3).unwrap()
        assert [t.amount_cents for t in third.items] == [100]
        assert third.next_page_token is None

    def test_iter_history_walks_everything(self, customer):
        self._seed(customer.id, 5)
        amounts = [t.amount_cents for t in ledger_service.iter_history(customer.id, page_size=2)]
        assert amounts == [104, 103, 102, 101, 100]

    def test_history_only_includes_own_rows(self, customer):
        other = ledger_service.create_customer("Other Co")
        self._seed(customer.id, 2)
        self._seed(other.id, 3)
        page = ledger_service.get_history(customer.id).unwrap()
        assert len(page.items) == 2
        assert {t.customer_id for t in page.items} == {customer.id}

    def test_malformed_token(self, customer):
        result = ledger_service.get_history(customer.id, page_token="not-a-token")
        assert isinstance(result.error, InvalidAmountError)

    def test_limit_is_clamped(self, customer):
        self._seed(customer.id, 2)
        page = ledger_service.get_history(customer.id, limit=10_000).unwrap()
        assert page.limit == ledger_service.MAX_HISTORY_PAGE
