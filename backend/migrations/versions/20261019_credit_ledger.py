"""Customer credit ledger, catalog flat taxes, orders and loyalty

Revision ID: 20261019_credit_ledger
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_credit_ledger"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "customers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("credit_limit_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("current_balance_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("on_credit_hold", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("ledger_frozen", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("frozen_reason", sa.String(255), nullable=True),
        sa.Column("apply_flat_tax", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("loyalty_points_balance", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.CheckConstraint("credit_limit_cents >= 0", name="ck_customers_credit_limit_nonneg"),
        sa.CheckConstraint("loyalty_points_balance >= 0", name="ck_customers_points_nonneg"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", name="uq_customers_email"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "flat_tax_rules",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("label", sa.String(128), nullable=False),
        sa.Column("per_unit_cents", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(64), nullable=True),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.CheckConstraint("per_unit_cents >= 0", name="ck_flat_tax_rules_per_unit_nonneg"),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("flat_tax_rules", schema=None) as batch_op:
        batch_op.create_index("ix_flat_tax_rules_category", ["category"], unique=False)

    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("sku", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(64), nullable=True),
        sa.Column("is_tobacco", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("flat_tax_rule_id", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["flat_tax_rule_id"], ["flat_tax_rules.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sku", name="uq_products_sku"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("products", schema=None) as batch_op:
        batch_op.create_index("ix_products_flat_tax_rule_id", ["flat_tax_rule_id"], unique=False)
        batch_op.create_index("ix_products_category_active", ["category", "is_active"], unique=False)

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=True),
        sa.Column("transaction_type", sa.String(16), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(255), nullable=False),
        sa.Column("payment_method", sa.String(16), nullable=True),
        sa.Column("reference_number", sa.String(64), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("processed_by", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.CheckConstraint("amount_cents <> 0", name="ck_credit_txns_amount_nonzero"),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("credit_transactions", schema=None) as batch_op:
        batch_op.create_index("ix_credit_txns_customer_created", ["customer_id", "created_at", "id"], unique=False)
        batch_op.create_index("ix_credit_transactions_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_credit_transactions_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_credit_transactions_transaction_type", ["transaction_type"], unique=False)
        batch_op.create_index("ix_credit_transactions_created_at", ["created_at"], unique=False)

    # At most one CHARGE per order, enforced by the database
    op.create_index(
        "uq_credit_txns_order_charge",
        "credit_transactions",
        ["order_id"],
        unique=True,
        sqlite_where=sa.text("transaction_type = 'CHARGE'"),
        postgresql_where=sa.text("transaction_type = 'CHARGE'"),
    )

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("order_type", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("items_subtotal_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("flat_tax_total_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("subtotal_before_delivery_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("delivery_fee_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("loyalty_redeem_value_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("loyalty_points_redeemed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("loyalty_eligible_subtotal_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("loyalty_points_earned", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("payment_method", sa.String(16), nullable=True),
        sa.Column("check_number", sa.String(64), nullable=True),
        sa.Column("payment_notes", sa.Text(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("linked_transaction_id", sa.Integer(), nullable=True),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_by", sa.String(64), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.String(255), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["linked_transaction_id"], ["credit_transactions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("linked_transaction_id", name="uq_orders_linked_transaction"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("orders", schema=None) as batch_op:
        batch_op.create_index("ix_orders_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_orders_status", ["status"], unique=False)
        batch_op.create_index("ix_orders_customer_status", ["customer_id", "status"], unique=False)

    op.create_table(
        "order_lines",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("product_name", sa.String(255), nullable=False),
        sa.Column("category", sa.String(64), nullable=True),
        sa.Column("is_tobacco", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("flat_tax_rule_id", sa.Integer(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False),
        sa.Column("line_total_cents", sa.Integer(), nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_order_lines_quantity_pos"),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("order_lines", schema=None) as batch_op:
        batch_op.create_index("ix_order_lines_order_id", ["order_id"], unique=False)

    op.create_table(
        "order_tax_lines",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("flat_tax_rule_id", sa.Integer(), nullable=True),
        sa.Column("label", sa.String(128), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("order_tax_lines", schema=None) as batch_op:
        batch_op.create_index("ix_order_tax_lines_order_id", ["order_id"], unique=False)

    op.create_table(
        "loyalty_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("transaction_type", sa.String(16), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=True),
        sa.Column("reason", sa.String(255), nullable=True),
        sa.Column("processed_by", sa.String(64), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("loyalty_transactions", schema=None) as batch_op:
        batch_op.create_index("ix_loyalty_txns_customer_occurred", ["customer_id", "occurred_at"], unique=False)
        batch_op.create_index("ix_loyalty_transactions_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_loyalty_transactions_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_loyalty_transactions_transaction_type", ["transaction_type"], unique=False)
        batch_op.create_index("ix_loyalty_transactions_occurred_at", ["occurred_at"], unique=False)


def downgrade():
    with op.batch_alter_table("loyalty_transactions", schema=None) as batch_op:
        batch_op.drop_index("ix_loyalty_transactions_occurred_at")
        batch_op.drop_index("ix_loyalty_transactions_transaction_type")
        batch_op.drop_index("ix_loyalty_transactions_order_id")
        batch_op.drop_index("ix_loyalty_transactions_customer_id")
        batch_op.drop_index("ix_loyalty_txns_customer_occurred")
    op.drop_table("loyalty_transactions")

    with op.batch_alter_table("order_tax_lines", schema=None) as batch_op:
        batch_op.drop_index("ix_order_tax_lines_order_id")
    op.drop_table("order_tax_lines")

    with op.batch_alter_table("order_lines", schema=None) as batch_op:
        batch_op.drop_index("ix_order_lines_order_id")
    op.drop_table("order_lines")

    with op.batch_alter_table("orders", schema=None) as batch_op:
        batch_op.drop_index("ix_orders_customer_status")
        batch_op.drop_index("ix_orders_status")
        batch_op.drop_index("ix_orders_customer_id")
    op.drop_table("orders")

    op.drop_index("uq_credit_txns_order_charge", table_name="credit_transactions")
    with op.batch_alter_table("credit_transactions", schema=None) as batch_op:
        batch_op.drop_index("ix_credit_transactions_created_at")
        batch_op.drop_index("ix_credit_transactions_transaction_type")
        batch_op.drop_index("ix_credit_transactions_order_id")
        batch_op.drop_index("ix_credit_transactions_customer_id")
        batch_op.drop_index("ix_credit_txns_customer_created")
    op.drop_table("credit_transactions")

    with op.batch_alter_table("products", schema=None) as batch_op:
        batch_op.drop_index("ix_products_category_active")
        batch_op.drop_index("ix_products_flat_tax_rule_id")
    op.drop_table("products")

    with op.batch_alter_table("flat_tax_rules", schema=None) as batch_op:
        batch_op.drop_index("ix_flat_tax_rules_category")
    op.drop_table("flat_tax_rules")

    op.drop_table("customers")
