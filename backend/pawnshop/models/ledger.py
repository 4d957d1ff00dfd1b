"""Inventory transaction journal and derived ledger entries.

The journal is single-sided: each row stores a signed amount (inflow
positive, outflow negative) and a type/category that fixes the sign.
Post-once rules are backed by partial unique indexes so that concurrent
posters collide in the database rather than in application code.
"""

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    String,
    Numeric,
    Boolean,
    DateTime,
    ForeignKey,
    Text,
    JSON,
    Index,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from pawnshop.database import Base, value_enum
from pawnshop.models.loan import Currency


# ===================================================================
# Enumerations
# ===================================================================


class InventoryTxnType(str, enum.Enum):
    LOAN_DISBURSEMENT = "loan_disbursement"
    REPAYMENT = "repayment"
    INTEREST_INCOME = "interest_income"
    STORAGE_INCOME = "storage_income"
    PENALTY_INCOME = "penalty_income"
    ASSET_SALE = "asset_sale"
    ASSET_PURCHASE = "asset_purchase"
    EXPENSE = "expense"
    ADJUSTMENT = "adjustment"


# Rows emitted by a payment capture; unique per (payment, type)
PAYMENT_TXN_TYPES = (
    InventoryTxnType.REPAYMENT,
    InventoryTxnType.INTEREST_INCOME,
    InventoryTxnType.STORAGE_INCOME,
    InventoryTxnType.PENALTY_INCOME,
)


class LedgerCategory(str, enum.Enum):
    INTEREST_INCOME = "interest_income"
    STORAGE_INCOME = "storage_income"
    PENALTY_INCOME = "penalty_income"
    LOAN_DISBURSEMENT = "loan_disbursement"
    LOAN_PRINCIPAL_REPAYMENT = "loan_principal_repayment"
    ASSET_SALE_REVENUE = "asset_sale_revenue"
    ASSET_SALE_COGS = "asset_sale_cogs"
    WRITE_OFF = "write_off"
    ADJUSTMENT = "adjustment"
    OTHER = "other"


INCOME_CATEGORIES = frozenset({
    LedgerCategory.INTEREST_INCOME,
    LedgerCategory.STORAGE_INCOME,
    LedgerCategory.PENALTY_INCOME,
    LedgerCategory.ASSET_SALE_REVENUE,
})
EXPENSE_CATEGORIES = frozenset({
    LedgerCategory.LOAN_DISBURSEMENT,
    LedgerCategory.ASSET_SALE_COGS,
    LedgerCategory.WRITE_OFF,
})


def _payment_types_sql() -> str:
    return ", ".join(f"'{t.value}'" for t in PAYMENT_TXN_TYPES)


_DISBURSEMENT_WHERE = text("type = 'loan_disbursement'")
_ASSET_SALE_WHERE = text("type = 'asset_sale'")
_PAYMENT_WHERE = text(f"type IN ({_payment_types_sql()})")


# ===================================================================
# Models
# ===================================================================


class InventoryTransaction(Base):
    """One signed cash-flow row for a business event."""

    __tablename__ = "inventory_transactions"
    __table_args__ = (
        Index("ix_inv_txn_type_occurred", "type", "occurred_at"),
        Index(
            "uq_inv_txn_loan_disbursement", "loan_id", unique=True,
            postgresql_where=_DISBURSEMENT_WHERE, sqlite_where=_DISBURSEMENT_WHERE,
        ),
        Index(
            "uq_inv_txn_asset_sale", "asset_id", unique=True,
            postgresql_where=_ASSET_SALE_WHERE, sqlite_where=_ASSET_SALE_WHERE,
        ),
        Index(
            "uq_inv_txn_payment_component", "payment_id", "type", unique=True,
            postgresql_where=_PAYMENT_WHERE, sqlite_where=_PAYMENT_WHERE,
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tx_no: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    type: Mapped[InventoryTxnType] = mapped_column(value_enum(InventoryTxnType), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[Currency] = mapped_column(
        value_enum(Currency, length=3), default=Currency.USD, nullable=False
    )

    asset_id: Mapped[int | None] = mapped_column(ForeignKey("assets.id"), nullable=True, index=True)
    loan_id: Mapped[int | None] = mapped_column(ForeignKey("loans.id"), nullable=True, index=True)
    payment_id: Mapped[int | None] = mapped_column(
        ForeignKey("loan_payments.id"), nullable=True, index=True
    )

    account_code: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    # Set when the row was posted without its derived ledger rows
    ledger_pending: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, index=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class LedgerEntry(Base):
    """Accounting classification, usually derived from an inventory row."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        Index("ix_ledger_entries_category_date", "category", "entry_date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    entry_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    category: Mapped[LedgerCategory] = mapped_column(value_enum(LedgerCategory), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[Currency] = mapped_column(
        value_enum(Currency, length=3), default=Currency.USD, nullable=False
    )

    loan_id: Mapped[int | None] = mapped_column(ForeignKey("loans.id"), nullable=True, index=True)
    payment_id: Mapped[int | None] = mapped_column(
        ForeignKey("loan_payments.id"), nullable=True, index=True
    )
    asset_id: Mapped[int | None] = mapped_column(ForeignKey("assets.id"), nullable=True, index=True)
    inventory_txn_id: Mapped[int | None] = mapped_column(
        ForeignKey("inventory_transactions.id"), nullable=True, index=True
    )

    memo: Mapped[str | None] = mapped_column(Text, nullable=True)
    branch_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
