"""Loan payment model and its provider / status enumerations."""

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, Numeric, DateTime, ForeignKey, Text, JSON, CheckConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from pawnshop.database import Base, value_enum
from pawnshop.models.loan import Currency


class PaymentProvider(str, enum.Enum):
    PAYNOW = "paynow"
    ECOCASH = "ecocash"
    ONEMONEY = "onemoney"
    TELECASH = "telecash"
    BANK_TRANSFER = "bank_transfer"
    CASH = "cash"


# Providers settled through the external gateway (poll / webhook driven)
GATEWAY_PROVIDERS = frozenset({
    PaymentProvider.PAYNOW,
    PaymentProvider.ECOCASH,
    PaymentProvider.ONEMONEY,
    PaymentProvider.TELECASH,
})
# Gateway providers that push a USSD prompt to the payer's handset
MOBILE_PROVIDERS = frozenset({
    PaymentProvider.ECOCASH,
    PaymentProvider.ONEMONEY,
    PaymentProvider.TELECASH,
})


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    AWAITING_DELIVERY = "awaiting_delivery"
    SENT = "sent"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    PaymentStatus.PAID,
    PaymentStatus.FAILED,
    PaymentStatus.CANCELLED,
})


class Payment(Base):
    __tablename__ = "loan_payments"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_loan_payments_amount_positive"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    loan_id: Mapped[int] = mapped_column(ForeignKey("loans.id"), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[Currency] = mapped_column(
        value_enum(Currency, length=3), default=Currency.USD, nullable=False
    )

    # Breakdown; any remainder of amount is treated as principal
    principal_component: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0, nullable=False)
    interest_component: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0, nullable=False)
    storage_component: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0, nullable=False)
    penalty_component: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0, nullable=False)

    provider: Mapped[PaymentProvider] = mapped_column(value_enum(PaymentProvider), nullable=False)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        value_enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False, index=True
    )
    payment_method_label: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Unique when present; NULLs do not collide
    receipt_no: Mapped[str | None] = mapped_column(String(40), unique=True, nullable=True)

    # Gateway bookkeeping
    poll_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    redirect_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    provider_ref: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    paynow_invoice_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    payer_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    payer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    received_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    captured_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # [{"amount": "10.00", "provider_ref": ..., "at": iso8601, "refunded_by": user_id}]
    refunds: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    meta: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @property
    def component_total(self) -> Decimal:
        return sum(
            (
                Decimal(self.principal_component or 0),
                Decimal(self.interest_component or 0),
                Decimal(self.storage_component or 0),
                Decimal(self.penalty_component or 0),
            ),
            Decimal("0"),
        )

    @property
    def refunded_total(self) -> Decimal:
        return sum((Decimal(r["amount"]) for r in (self.refunds or [])), Decimal("0"))
