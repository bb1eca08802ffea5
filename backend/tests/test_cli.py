"""CLI command tests (flask ledger/customers/taxes)."""

from sqlalchemy import update

from wholesale.extensions import db
from wholesale.models import Customer, FlatTaxRule
from wholesale.money import Money
from wholesale.services import ledger_service


class TestLedgerCommands:
    def test_verify_passes_on_clean_books(self, app, customer):
        ledger_service.apply_payment(customer.id, Money(500), "cash", "admin-1").unwrap()
        result = app.test_cli_runner().invoke(args=["ledger", "verify"])
        assert result.exit_code == 0
        assert "PASS 1 ledgers verified" in result.output

    def test_verify_fails_and_reconcile_repairs(self, app, customer):
        db.session.execute(
            update(Customer).where(Customer.id == customer.id).values(current_balance_cents=-1)
        )
        db.session.commit()
        db.session.expire_all()

        runner = app.test_cli_runner()
        result = runner.invoke(args=["ledger", "verify"])
        assert result.exit_code == 1
        assert f"FAIL 1 of 1 ledgers corrupt: {customer.id}" in result.output

        result = runner.invoke(args=["ledger", "reconcile", "--customer-id", str(customer.id), "--note", "cli test"])
        assert result.exit_code == 0
        assert "reconciled; balance $0.00" in result.output

    def test_history(self, app, customer):
        ledger_service.apply_payment(customer.id, Money(1234), "cash", "admin-1").unwrap()
        result = app.test_cli_runner().invoke(args=["ledger", "history", "--customer-id", str(customer.id)])
        assert result.exit_code == 0
        assert "PAYMENT" in result.output
        assert "$12.34" in result.output


class TestBootstrapCommands:
    def test_create_and_list_customers(self, app, db_session):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["customers", "create", "--name", "Deli Two", "--credit-limit-cents", "25000"])
        assert result.exit_code == 0
        assert "limit $250.00" in result.output

        result = runner.invoke(args=["customers", "list"])
        assert "Deli Two" in result.output

    def test_add_tax(self, app, db_session):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["taxes", "add", "--label", "Bag Fee", "--per-unit-cents", "40"])
        assert result.exit_code == 0
        assert db_session.query(FlatTaxRule).filter_by(label="Bag Fee").count() == 1

        result = runner.invoke(args=["taxes", "add", "--label", "Bad", "--per-unit-cents", "-1"])
        assert result.exit_code == 1
