# Overview: Flask CLI command groups for bootstrap, inspection, and ledger maintenance.

# backend/wholesale/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wholesale (PowerShell: $env:FLASK_APP="wholesale").
# - Use: python -m flask <group> <command> [options]
#
# Ledger inspection/repair:
# - python -m flask ledger verify
#   Replay every customer's log against the cached balance; freezes mismatches.
# - python -m flask ledger reconcile --customer-id 1 --note "Checked against bank deposit"
#   Rebuild the cached balance from the log and lift the freeze.
# - python -m flask ledger history --customer-id 1 --limit 20
#   Print recent credit transactions, newest first.
#
# Customer bootstrap:
# - python -m flask customers create --name "Corner Market" --credit-limit-cents 50000
#   Open a customer account with a zero balance.
# - python -m flask customers list
#   List customers with limit, balance and flags.
#
# Flat taxes:
# - python -m flask taxes add --label "Tobacco Tax" --per-unit-cents 50 --display-order 1 --category tobacco
#   Add a per-unit flat tax rule.
# - python -m flask taxes list

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Customer, FlatTaxRule
from .money import Money
from .services import ledger_service


@click.group('ledger')
def ledger_group():
    """Credit ledger verification and repair commands."""


@ledger_group.command('verify')
@with_appcontext
def verify_ledgers():
    """
    Run the replay canary over every customer.

    Exits non-zero when any account is corrupt so it can gate a deploy or cron.
    """
    corrupt = ledger_service.verify_all()
    total = db.session.query(Customer).count()
    if corrupt:
        click.echo(f"FAIL {len(corrupt)} of {total} ledgers corrupt: {', '.join(str(c) for c in corrupt)}")
        raise SystemExit(1)
    click.echo(f"PASS {total} ledgers verified")


@ledger_group.command('reconcile')
@click.option('--customer-id', type=int, required=True)
@click.option('--note', required=True, help='Why the cache is being rebuilt')
@click.option('--actor', default='cli', help='Recorded as the operator')
@with_appcontext
def reconcile_ledger(customer_id, note, actor):
    """Rebuild a customer's cached balance from the log and lift the freeze."""
    result = ledger_service.reconcile(customer_id, actor, note)
    if not result.ok:
        click.echo(f"ERROR {result.error.message}")
        raise SystemExit(1)
    customer = result.value
    click.echo(f"PASS Customer {customer.id} reconciled; balance {customer.current_balance.format()}")


@ledger_group.command('history')
@click.option('--customer-id', type=int, required=True)
@click.option('--limit', type=int, default=20, show_default=True)
@with_appcontext
def ledger_history(customer_id, limit):
    """Print recent credit transactions, newest first."""
    result = ledger_service.get_history(customer_id, limit=limit)
    if not result.ok:
        click.echo(f"ERROR {result.error.user_message}")
        raise SystemExit(1)
    page = result.value
    if not page.items:
        click.echo("No transactions.")
        return
    for txn in page.items:
        click.echo(
            f"{txn.id:>6}  {txn.created_at:%Y-%m-%d %H:%M:%S}  {txn.transaction_type:<10} "
            f"{txn.amount.format():>14}  {txn.description or ''}"
        )
    if page.next_page_token:
        click.echo("... more")


@click.group('customers')
def customers_group():
    """Customer account commands."""


@customers_group.command('create')
@click.option('--name', required=True)
@click.option('--email', default=None)
@click.option('--credit-limit-cents', type=int, default=0, show_default=True)
@click.option('--no-flat-tax', is_flag=True, default=False, help='Exempt from flat taxes')
@with_appcontext
def create_customer_cmd(name, email, credit_limit_cents, no_flat_tax):
    customer = ledger_service.create_customer(
        name,
        email=email,
        credit_limit=Money(credit_limit_cents),
        apply_flat_tax=not no_flat_tax,
    )
    click.echo(f"PASS Created customer {customer.name} (ID: {customer.id}, limit {customer.credit_limit.format()})")


@customers_group.command('list')
@with_appcontext
def list_customers():
    customers = db.session.query(Customer).order_by(Customer.id).all()
    if not customers:
        click.echo("No customers found.")
        return
    for c in customers:
        flags = []
        if c.on_credit_hold:
            flags.append("HOLD")
        if c.ledger_frozen:
            flags.append("FROZEN")
        click.echo(
            f"{c.id:>5}  {c.name:<30} limit {c.credit_limit.format():>12}  "
            f"balance {c.current_balance.format():>12}  {' '.join(flags)}"
        )


@click.group('taxes')
def taxes_group():
    """Flat tax rule commands."""


@taxes_group.command('add')
@click.option('--label', required=True)
@click.option('--per-unit-cents', type=int, required=True)
@click.option('--display-order', type=int, default=0, show_default=True)
@click.option('--category', default=None, help='Apply to every product in this category')
@with_appcontext
def add_tax(label, per_unit_cents, display_order, category):
    if per_unit_cents < 0:
        click.echo("ERROR per-unit-cents cannot be negative")
        raise SystemExit(1)
    rule = FlatTaxRule(
        label=label,
        per_unit_cents=per_unit_cents,
        display_order=display_order,
        category=category,
        is_active=True,
    )
    db.session.add(rule)
    db.session.commit()
    click.echo(f"PASS Created tax rule {rule.label} (ID: {rule.id})")


@taxes_group.command('list')
@with_appcontext
def list_taxes():
    rules = db.session.query(FlatTaxRule).order_by(FlatTaxRule.display_order, FlatTaxRule.id).all()
    for r in rules:
        status = "active" if r.is_active else "inactive"
        click.echo(f"{r.id:>4}  {r.label:<24} {Money(r.per_unit_cents).format():>8}/unit  "
                   f"order={r.display_order} category={r.category or '-'} {status}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(ledger_group)
    app.cli.add_command(customers_group)
    app.cli.add_command(taxes_group)
