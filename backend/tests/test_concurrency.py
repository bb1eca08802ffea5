"""
Concurrency tests for the credit ledger.

Each worker runs in its own app context (and therefore its own session)
against the shared file-backed SQLite database.
"""

import threading
from dataclasses import replace

import pytest
from sqlalchemy.orm.exc import StaleDataError

from wholesale.errors import ConcurrentModificationError, InsufficientCreditError, InvalidAmountError
from wholesale.extensions import db
from wholesale.models import CreditTransaction, Customer, TransactionType
from wholesale.money import Money
from wholesale.services import concurrency, ledger_service, order_service


def _run_workers(app, targets):
    results = []
    lock = threading.Lock()

    def wrap(target):
        def worker():
            with app.app_context():
                try:
                    outcome = target()
                except Exception as exc:
                    outcome = exc
                finally:
                    db.session.remove()
                with lock:
                    results.append(outcome)
        return worker

    threads = [threading.Thread(target=wrap(t)) for t in targets]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


class TestConcurrentCharges:
    def test_limit_never_exceeded(self, app, customer):
        customer_id = customer.id  # $100.00 limit
        db.session.commit()

        def charge(order_id):
            return lambda: ledger_service.apply_charge(customer_id, Money(6000), order_id, "admin-1")

        results = _run_workers(app, [charge(1), charge(2)])

        assert not any(isinstance(r, Exception) for r in results), results
        succeeded = [r for r in results if r.ok]
        refused = [r for r in results if not r.ok]
        assert len(succeeded) == 1
        assert len(refused) == 1
        assert isinstance(refused[0].error, InsufficientCreditError)

        db.session.expire_all()
        assert ledger_service.get_balance(customer_id).unwrap() == Money(-6000)

    def test_many_small_charges_conserve_money(self, app, customer):
        customer_id = customer.id
        db.session.commit()

        def charge(order_id):
            return lambda: ledger_service.apply_charge(customer_id, Money(700), order_id, "admin-1")

        results = _run_workers(app, [charge(i) for i in range(1, 21)])

        posted = sum(1 for r in results if not isinstance(r, Exception) and r.ok)
        # 14 * $7.00 = $98.00 fits in $100.00; the 15th would not
        assert posted == 14
        db.session.expire_all()
        balance = ledger_service.get_balance(customer_id).unwrap()
        assert balance == Money(-700 * posted)
        assert ledger_service.replay_balance(customer_id) == balance


class TestConcurrentCompletion:
    def test_double_completion_charges_once(self, app, customer, soda):
        order = order_service.create_order(
            customer.id, [{"product_id": soda.id, "quantity": 5}], "pickup", "staff-1"
        ).unwrap()
        order_service.advance_status(order.id, "processing", "staff-1").unwrap()
        order_service.advance_status(order.id, "ready", "staff-1").unwrap()
        order_id, customer_id = order.id, customer.id
        db.session.commit()

        def complete():
            return order_service.complete_order(order_id, "account_credit", "staff-1")

        results = _run_workers(app, [complete, complete, complete])

        assert all(not isinstance(r, Exception) and r.ok for r in results), results
        db.session.expire_all()
        charges = (
            db.session.query(CreditTransaction)
            .filter_by(order_id=order_id, transaction_type=TransactionType.CHARGE.value)
            .count()
        )
        assert charges == 1
        assert ledger_service.get_balance(customer_id).unwrap() == Money(-6000)


class TestReadsDuringWrites:
    def test_reread_after_another_workers_payment(self, app, customer):
        customer_id = customer.id
        db.session.commit()
        assert ledger_service.get_balance(customer_id).unwrap() == Money(0)

        def pay():
            return ledger_service.apply_payment(customer_id, Money(100), "cash", "admin-2")

        results = _run_workers(app, [pay])
        assert results[0].ok, results

        # This session still holds the customer loaded before the payment
        result = ledger_service.get_balance(customer_id)
        assert result.ok, result.error
        assert result.value == Money(100)
        assert db.session.get(Customer, customer_id, populate_existing=True).ledger_frozen is False

    def test_payment_landing_mid_read_does_not_freeze(self, app, customer, monkeypatch):
        customer_id = customer.id
        db.session.commit()
        read_snapshot = ledger_service._read_snapshot
        seen = []

        def cache_read_then_payment(cid):
            snapshot = read_snapshot(cid)
            if seen:
                return snapshot
            seen.append(snapshot)
            _run_workers(app, [lambda: ledger_service.apply_payment(cid, Money(100), "cash", "admin-2")])
            # Cache from before the payment, log sum from after it
            return replace(snapshot, logged_cents=snapshot.logged_cents + 100)

        monkeypatch.setattr(ledger_service, "_read_snapshot", cache_read_then_payment)

        result = ledger_service.get_balance(customer_id)

        assert result.ok, result.error
        assert result.value == Money(100)
        assert db.session.get(Customer, customer_id, populate_existing=True).ledger_frozen is False
        assert ledger_service.replay_balance(customer_id) == Money(100)


class TestConcurrentPayments:
    def test_capped_payments_cannot_overpay_together(self, app, customer):
        customer_id = customer.id
        ledger_service.apply_charge(customer_id, Money(1000), 1, "admin-1").unwrap()
        db.session.commit()

        def pay():
            return ledger_service.apply_payment(
                customer_id, Money(600), "cash", "admin-1", allow_overpayment=False
            )

        results = _run_workers(app, [pay, pay])

        assert not any(isinstance(r, Exception) for r in results), results
        assert sum(1 for r in results if r.ok) == 1
        refused = [r for r in results if not r.ok]
        assert isinstance(refused[0].error, InvalidAmountError)
        assert "cannot exceed owed amount of $4.00" in refused[0].error.message

        db.session.expire_all()
        assert ledger_service.get_balance(customer_id).unwrap() == Money(-400)


class TestLockTimeout:
    def test_busy_account_reports_concurrent_modification(self, app, customer, monkeypatch):
        monkeypatch.setitem(app.config, "LEDGER_LOCK_TIMEOUT_SECONDS", 0.05)
        customer_id = customer.id
        db.session.commit()
        holding = threading.Event()
        release = threading.Event()

        def holder():
            with app.app_context():
                with concurrency.customer_lock(customer_id):
                    holding.set()
                    release.wait(5)

        t = threading.Thread(target=holder)
        t.start()
        try:
            assert holding.wait(5)
            result = ledger_service.apply_payment(customer_id, Money(100), "cash", "admin-1")
            assert not result.ok
            assert isinstance(result.error, ConcurrentModificationError)
            assert result.error.http_status == 503
        finally:
            release.set()
            t.join()

        assert ledger_service.apply_payment(customer_id, Money(100), "cash", "admin-1").ok


class TestRetry:
    def test_retries_stale_data_then_succeeds(self, app):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise StaleDataError("version mismatch")
            return "done"

        assert concurrency.run_with_retry(flaky, attempts=3, backoff_base=0) == "done"
        assert len(calls) == 3

    def test_gives_up_with_concurrent_modification(self, app):
        def always_stale():
            raise StaleDataError("version mismatch")

        with pytest.raises(ConcurrentModificationError):
            concurrency.run_with_retry(always_stale, attempts=2, backoff_base=0)

    @pytest.mark.parametrize("attempts", [0, -3])
    def test_non_positive_attempts_still_run_once(self, app, attempts):
        calls = []

        def op():
            calls.append(1)
            return "done"

        assert concurrency.run_with_retry(op, attempts=attempts, backoff_base=0) == "done"
        assert calls == [1]

    def test_misconfigured_attempts_do_not_fake_success(self, app, customer, monkeypatch):
        monkeypatch.setitem(app.config, "LEDGER_RETRY_ATTEMPTS", 0)
        txn = ledger_service.apply_payment(customer.id, Money(250), "cash", "admin-1").unwrap()
        assert txn is not None
        assert ledger_service.get_balance(customer.id).unwrap() == Money(250)
