"""Posting core: users, loans, assets, payments, journal and ledger.

Revision ID: 001
Revises: None
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Enums are stored as their lowercase values in VARCHAR columns so the
    # partial-index predicates below stay portable.

    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column("first_name", sa.String(100), nullable=False),
        sa.Column("last_name", sa.String(100), nullable=False),
        sa.Column("phone", sa.String(20), nullable=True),
        sa.Column("role", sa.String(32), nullable=False, server_default="customer"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_users_email", "users", ["email"])

    op.create_table(
        "assets",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("asset_no", sa.String(40), unique=True, nullable=False),
        sa.Column("owner_user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("category", sa.String(32), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="submitted"),
        sa.Column("evaluated_value", sa.Numeric(14, 2), nullable=True),
        sa.Column("active_loan_id", sa.Integer, nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_assets_owner_user_id", "assets", ["owner_user_id"])
    op.create_index("ix_assets_status", "assets", ["status"])

    op.create_table(
        "loans",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("loan_no", sa.String(40), unique=True, nullable=False),
        sa.Column("customer_user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("asset_id", sa.Integer, sa.ForeignKey("assets.id"), nullable=True),
        sa.Column("principal_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("current_balance", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("status", sa.String(32), nullable=False, server_default="active"),
        sa.Column("disbursed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        *_timestamps(),
        sa.CheckConstraint("current_balance >= 0", name="ck_loans_balance_non_negative"),
        sa.CheckConstraint(
            "current_balance <= principal_amount", name="ck_loans_balance_le_principal",
        ),
    )
    op.create_index("ix_loans_customer_user_id", "loans", ["customer_user_id"])
    op.create_index("ix_loans_asset_id", "loans", ["asset_id"])
    op.create_index("ix_loans_status", "loans", ["status"])
    op.create_foreign_key(
        "fk_assets_active_loan_id", "assets", "loans", ["active_loan_id"], ["id"],
    )

    op.create_table(
        "loan_payments",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("loan_id", sa.Integer, sa.ForeignKey("loans.id"), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("principal_component", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("interest_component", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("storage_component", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("penalty_component", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("payment_status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("payment_method_label", sa.String(100), nullable=True),
        sa.Column("receipt_no", sa.String(40), unique=True, nullable=True),
        sa.Column("poll_url", sa.String(500), nullable=True),
        sa.Column("redirect_url", sa.String(500), nullable=True),
        sa.Column("provider_ref", sa.String(100), nullable=True),
        sa.Column("paynow_invoice_id", sa.String(100), nullable=True),
        sa.Column("instructions", sa.Text, nullable=True),
        sa.Column("payer_phone", sa.String(20), nullable=True),
        sa.Column("payer_email", sa.String(255), nullable=True),
        sa.Column("received_by", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunds", sa.JSON, nullable=False, server_default="[]"),
        sa.Column("meta", sa.JSON, nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_loan_payments_amount_positive"),
    )
    op.create_index("ix_loan_payments_loan_id", "loan_payments", ["loan_id"])
    op.create_index("ix_loan_payments_payment_status", "loan_payments", ["payment_status"])
    op.create_index("ix_loan_payments_provider_ref", "loan_payments", ["provider_ref"])

    op.create_table(
        "inventory_transactions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tx_no", sa.String(20), unique=True, nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("asset_id", sa.Integer, sa.ForeignKey("assets.id"), nullable=True),
        sa.Column("loan_id", sa.Integer, sa.ForeignKey("loans.id"), nullable=True),
        sa.Column("payment_id", sa.Integer, sa.ForeignKey("loan_payments.id"), nullable=True),
        sa.Column("account_code", sa.String(20), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("meta", sa.JSON, nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_by", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("ledger_pending", sa.Boolean, nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index("ix_inventory_transactions_asset_id", "inventory_transactions", ["asset_id"])
    op.create_index("ix_inventory_transactions_loan_id", "inventory_transactions", ["loan_id"])
    op.create_index("ix_inventory_transactions_payment_id", "inventory_transactions", ["payment_id"])
    op.create_index(
        "ix_inventory_transactions_account_code", "inventory_transactions", ["account_code"],
    )
    op.create_index(
        "ix_inventory_transactions_ledger_pending", "inventory_transactions", ["ledger_pending"],
    )
    op.create_index("ix_inv_txn_type_occurred", "inventory_transactions", ["type", "occurred_at"])

    # Post-once guarantees
    op.create_index(
        "uq_inv_txn_loan_disbursement", "inventory_transactions", ["loan_id"],
        unique=True, postgresql_where=sa.text("type = 'loan_disbursement'"),
    )
    op.create_index(
        "uq_inv_txn_asset_sale", "inventory_transactions", ["asset_id"],
        unique=True, postgresql_where=sa.text("type = 'asset_sale'"),
    )
    op.create_index(
        "uq_inv_txn_payment_component", "inventory_transactions", ["payment_id", "type"],
        unique=True,
        postgresql_where=sa.text(
            "type IN ('repayment', 'interest_income', 'storage_income', 'penalty_income')"
        ),
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("entry_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("category", sa.String(32), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("loan_id", sa.Integer, sa.ForeignKey("loans.id"), nullable=True),
        sa.Column("payment_id", sa.Integer, sa.ForeignKey("loan_payments.id"), nullable=True),
        sa.Column("asset_id", sa.Integer, sa.ForeignKey("assets.id"), nullable=True),
        sa.Column(
            "inventory_txn_id", sa.Integer,
            sa.ForeignKey("inventory_transactions.id"), nullable=True,
        ),
        sa.Column("memo", sa.Text, nullable=True),
        sa.Column("branch_code", sa.String(20), nullable=True),
        sa.Column("created_by", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_ledger_entries_category_date", "ledger_entries", ["category", "entry_date"])
    op.create_index("ix_ledger_entries_loan_id", "ledger_entries", ["loan_id"])
    op.create_index("ix_ledger_entries_payment_id", "ledger_entries", ["payment_id"])
    op.create_index("ix_ledger_entries_asset_id", "ledger_entries", ["asset_id"])
    op.create_index("ix_ledger_entries_inventory_txn_id", "ledger_entries", ["inventory_txn_id"])

    op.create_table(
        "error_logs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("severity", sa.String(16), nullable=False, server_default="error"),
        sa.Column("error_kind", sa.String(50), nullable=False),
        sa.Column("error_type", sa.String(200), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("traceback", sa.Text, nullable=True),
        sa.Column("reference", sa.String(40), nullable=True),
        sa.Column("source", sa.String(300), nullable=True),
        sa.Column("request_method", sa.String(10), nullable=True),
        sa.Column("request_path", sa.String(500), nullable=True),
        sa.Column("status_code", sa.Integer, nullable=True),
        sa.Column("response_time_ms", sa.Float, nullable=True),
        sa.Column("user_id", sa.Integer, nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_error_logs_error_kind", "error_logs", ["error_kind"])
    op.create_index("ix_error_logs_reference", "error_logs", ["reference"])


def downgrade() -> None:
    op.drop_constraint("fk_assets_active_loan_id", "assets", type_="foreignkey")
    tables = [
        "error_logs", "ledger_entries", "inventory_transactions",
        "loan_payments", "loans", "assets", "users",
    ]
    for t in tables:
        op.drop_table(t)
