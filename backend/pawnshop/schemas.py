"""Request bodies and the response envelope shared by all routers."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from pawnshop.models.ledger import InventoryTxnType, LedgerCategory
from pawnshop.models.loan import Currency
from pawnshop.models.payment import PaymentProvider, PaymentStatus


def envelope(
    data: Any = None,
    *,
    message: Optional[str] = None,
    status: int = 200,
    pagination: Optional[dict] = None,
) -> dict[str, Any]:
    """Successful response body: ``{success, data, message, status}``."""
    body: dict[str, Any] = {"success": True, "data": data, "status": status}
    if message:
        body["message"] = message
    if pagination is not None:
        body["pagination"] = pagination
    return body


# ── Payments ─────────────────────────────────────────────────


class PaymentCreate(BaseModel):
    loan_id: int
    amount: Decimal = Field(gt=0)
    currency: Optional[Currency] = None
    principal_component: Decimal = Field(default=Decimal("0"), ge=0)
    interest_component: Decimal = Field(default=Decimal("0"), ge=0)
    storage_component: Decimal = Field(default=Decimal("0"), ge=0)
    penalty_component: Decimal = Field(default=Decimal("0"), ge=0)
    provider: PaymentProvider
    payment_status: Optional[PaymentStatus] = None
    receipt_no: Optional[str] = Field(default=None, max_length=40)
    payer_phone: Optional[str] = Field(default=None, max_length=20)
    payer_email: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, max_length=200)
    payment_method_label: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = None


class PaymentUpdate(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0)
    currency: Optional[Currency] = None
    provider: Optional[PaymentProvider] = None
    loan_id: Optional[int] = None
    principal_component: Optional[Decimal] = Field(default=None, ge=0)
    interest_component: Optional[Decimal] = Field(default=None, ge=0)
    storage_component: Optional[Decimal] = Field(default=None, ge=0)
    penalty_component: Optional[Decimal] = Field(default=None, ge=0)
    payer_email: Optional[str] = None
    payer_phone: Optional[str] = None
    payment_method_label: Optional[str] = None
    notes: Optional[str] = None
    meta: Optional[dict] = None


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0)
    reason: Optional[str] = Field(default=None, max_length=500)


class PaymentResponse(BaseModel):
    id: int
    loan_id: int
    amount: Decimal
    currency: Currency
    principal_component: Decimal
    interest_component: Decimal
    storage_component: Decimal
    penalty_component: Decimal
    provider: PaymentProvider
    payment_status: PaymentStatus
    receipt_no: Optional[str] = None
    poll_url: Optional[str] = None
    redirect_url: Optional[str] = None
    provider_ref: Optional[str] = None
    paynow_invoice_id: Optional[str] = None
    instructions: Optional[str] = None
    payer_phone: Optional[str] = None
    payment_method_label: Optional[str] = None
    received_by: Optional[int] = None
    paid_at: Optional[datetime] = None
    captured_at: Optional[datetime] = None
    refunds: list[dict] = []
    notes: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# ── Journal ──────────────────────────────────────────────────


class DisbursementRequest(BaseModel):
    loan_id: int
    derive_ledger: bool = True


class RepaymentRequest(BaseModel):
    payment_id: int
    derive_ledger: bool = True


class AssetSaleRequest(BaseModel):
    asset_id: int
    sale_price: Decimal = Field(gt=0)
    currency: Currency = Currency.USD
    derive_ledger: bool = True


class ExpenseRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    category: str
    description: Optional[str] = Field(default=None, max_length=500)
    currency: Currency = Currency.USD
    occurred_at: Optional[datetime] = None

    @field_validator("category")
    @classmethod
    def _lower(cls, v: str) -> str:
        return v.strip().lower()


class TransactionCreate(BaseModel):
    type: InventoryTxnType
    amount: Decimal
    currency: Currency = Currency.USD
    loan_id: Optional[int] = None
    asset_id: Optional[int] = None
    payment_id: Optional[int] = None
    account_code: Optional[str] = Field(default=None, max_length=20)
    notes: Optional[str] = None
    occurred_at: Optional[datetime] = None
    meta: Optional[dict] = None
    derive_ledger: bool = True


class TransactionUpdate(BaseModel):
    notes: Optional[str] = None
    meta: Optional[dict] = None
    account_code: Optional[str] = Field(default=None, max_length=20)
    occurred_at: Optional[datetime] = None


class InventoryTransactionResponse(BaseModel):
    id: int
    tx_no: str
    type: InventoryTxnType
    amount: Decimal
    currency: Currency
    asset_id: Optional[int] = None
    loan_id: Optional[int] = None
    payment_id: Optional[int] = None
    account_code: Optional[str] = None
    notes: Optional[str] = None
    meta: Optional[dict] = None
    occurred_at: datetime
    created_by: Optional[int] = None
    ledger_pending: bool

    model_config = {"from_attributes": True}


class LedgerEntryCreate(BaseModel):
    category: LedgerCategory
    amount: Decimal
    currency: Currency = Currency.USD
    loan_id: Optional[int] = None
    payment_id: Optional[int] = None
    asset_id: Optional[int] = None
    memo: Optional[str] = None
    branch_code: Optional[str] = Field(default=None, max_length=20)
    entry_date: Optional[datetime] = None


class LedgerEntryUpdate(BaseModel):
    memo: Optional[str] = None
    branch_code: Optional[str] = Field(default=None, max_length=20)


class LedgerEntryResponse(BaseModel):
    id: int
    entry_date: datetime
    category: LedgerCategory
    amount: Decimal
    currency: Currency
    loan_id: Optional[int] = None
    payment_id: Optional[int] = None
    asset_id: Optional[int] = None
    inventory_txn_id: Optional[int] = None
    memo: Optional[str] = None
    branch_code: Optional[str] = None
    created_by: Optional[int] = None

    model_config = {"from_attributes": True}
