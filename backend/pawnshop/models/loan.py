"""Loan and collateral Asset models."""

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, Numeric, Integer, DateTime, ForeignKey, CheckConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from pawnshop.database import Base, value_enum


class Currency(str, enum.Enum):
    USD = "USD"
    ZWL = "ZWL"


class LoanStatus(str, enum.Enum):
    ACTIVE = "active"
    OVERDUE = "overdue"
    REDEEMED = "redeemed"
    DEFAULTED = "defaulted"
    CLOSED = "closed"


class AssetCategory(str, enum.Enum):
    ELECTRONICS = "electronics"
    VEHICLE = "vehicle"
    JEWELLERY = "jewellery"


class AssetStatus(str, enum.Enum):
    SUBMITTED = "submitted"
    VALUATING = "valuating"
    PAWNED = "pawned"
    ACTIVE = "active"
    OVERDUE = "overdue"
    IN_REPAIR = "in_repair"
    AUCTION = "auction"
    SOLD = "sold"
    REDEEMED = "redeemed"
    CLOSED = "closed"


class Loan(Base):
    __tablename__ = "loans"
    __table_args__ = (
        CheckConstraint("current_balance >= 0", name="ck_loans_balance_non_negative"),
        CheckConstraint(
            "current_balance <= principal_amount", name="ck_loans_balance_le_principal",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    loan_no: Mapped[str] = mapped_column(String(40), unique=True, index=True, nullable=False)
    customer_user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id"), nullable=False, index=True
    )
    asset_id: Mapped[int | None] = mapped_column(
        ForeignKey("assets.id"), nullable=True, index=True
    )
    principal_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    current_balance: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[Currency] = mapped_column(
        value_enum(Currency, length=3), default=Currency.USD, nullable=False
    )
    status: Mapped[LoanStatus] = mapped_column(
        value_enum(LoanStatus), default=LoanStatus.ACTIVE, nullable=False, index=True
    )
    disbursed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Bumped on every balance write; guards concurrent captures on one loan
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Asset(Base):
    __tablename__ = "assets"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    asset_no: Mapped[str] = mapped_column(String(40), unique=True, index=True, nullable=False)
    owner_user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id"), nullable=False, index=True
    )
    category: Mapped[AssetCategory] = mapped_column(value_enum(AssetCategory), nullable=False)
    status: Mapped[AssetStatus] = mapped_column(
        value_enum(AssetStatus), default=AssetStatus.SUBMITTED, nullable=False, index=True
    )
    evaluated_value: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    active_loan_id: Mapped[int | None] = mapped_column(
        ForeignKey("loans.id", use_alter=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
