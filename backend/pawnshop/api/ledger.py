"""Journal endpoints: event postings, inventory transactions and ledger entries."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from pawnshop.auth_utils import require_roles
from pawnshop.database import get_db
from pawnshop.models.user import User, STAFF_ROLES, FINANCE_ROLES
from pawnshop.schemas import (
    AssetSaleRequest,
    DisbursementRequest,
    ExpenseRequest,
    InventoryTransactionResponse,
    LedgerEntryCreate,
    LedgerEntryResponse,
    LedgerEntryUpdate,
    RepaymentRequest,
    TransactionCreate,
    TransactionUpdate,
    envelope,
)
from pawnshop.services.ledger import ledger_service, posting_engine, transaction_service
from pawnshop.services.ledger.posting_engine import PostingResult
from pawnshop.services.ledger.reconciliation import list_pending_ledger, reconcile_pending_ledger

logger = logging.getLogger(__name__)
router = APIRouter()


def _txn_out(txn) -> dict:
    return InventoryTransactionResponse.model_validate(txn).model_dump(mode="json")


def _entry_out(entry) -> dict:
    return LedgerEntryResponse.model_validate(entry).model_dump(mode="json")


def _posting_out(result: PostingResult) -> dict:
    return {
        "transactions": [_txn_out(t) for t in result.transactions],
        "ledger_entries": [_entry_out(e) for e in result.ledger_entries],
    }


# ── Event postings ───────────────────────────────────────────


@router.post("/disbursements", status_code=201)
async def post_disbursement(
    data: DisbursementRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*STAFF_ROLES)),
):
    result = await posting_engine.post_loan_disbursement(
        db, data.loan_id, actor_id=current_user.id, derive_ledger=data.derive_ledger,
    )
    return envelope(_posting_out(result), message="Disbursement posted", status=201)


@router.post("/repayments", status_code=201)
async def post_repayment(
    data: RepaymentRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*STAFF_ROLES)),
):
    result = await posting_engine.post_repayment(
        db, data.payment_id, actor_id=current_user.id, derive_ledger=data.derive_ledger,
    )
    return envelope(_posting_out(result), message="Repayment posted", status=201)


@router.post("/asset-sales", status_code=201)
async def post_asset_sale(
    data: AssetSaleRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*STAFF_ROLES)),
):
    result = await posting_engine.post_asset_sale(
        db, data.asset_id, data.sale_price,
        currency=data.currency, actor_id=current_user.id, derive_ledger=data.derive_ledger,
    )
    return envelope(_posting_out(result), message="Asset sale posted", status=201)


@router.post("/expenses", status_code=201)
async def post_expense(
    data: ExpenseRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*FINANCE_ROLES)),
):
    result = await posting_engine.post_expense(
        db, data.amount, data.category, data.description,
        currency=data.currency, actor_id=current_user.id, occurred_at=data.occurred_at,
    )
    return envelope(_posting_out(result), message="Expense posted", status=201)


# ── Inventory transactions ───────────────────────────────────


@router.get("/transactions")
async def list_transactions(
    type: Optional[str] = None,
    currency: Optional[str] = None,
    loan_id: Optional[int] = None,
    asset_id: Optional[int] = None,
    payment_id: Optional[int] = None,
    account_code: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    ledger_pending: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*STAFF_ROLES)),
):
    items, pagination = await transaction_service.list_transactions(
        db, type=type, currency=currency, loan_id=loan_id, asset_id=asset_id,
        payment_id=payment_id, account_code=account_code, date_from=date_from,
        date_to=date_to, ledger_pending=ledger_pending, page=page, limit=limit,
    )
    return envelope([_txn_out(t) for t in items], pagination=pagination)


@router.post("/transactions", status_code=201)
async def record_transaction(
    data: TransactionCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*FINANCE_ROLES)),
):
    result = await posting_engine.record_transaction(
        db, **data.model_dump(), actor_id=current_user.id,
    )
    return envelope(_posting_out(result), message="Transaction recorded", status=201)


@router.get("/transactions/{txn_id}")
async def get_transaction(
    txn_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*STAFF_ROLES)),
):
    return envelope(_txn_out(await transaction_service.get_transaction(db, txn_id)))


@router.patch("/transactions/{txn_id}")
async def update_transaction(
    txn_id: int,
    data: TransactionUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*FINANCE_ROLES)),
):
    txn = await transaction_service.update_transaction(
        db, txn_id, data.model_dump(exclude_unset=True)
    )
    return envelope(_txn_out(txn), message="Transaction updated")


@router.delete("/transactions/{txn_id}")
async def delete_transaction(
    txn_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*FINANCE_ROLES)),
):
    await transaction_service.delete_transaction(db, txn_id)
    return envelope(message="Transaction deleted")


# ── Ledger entries ───────────────────────────────────────────


@router.get("/entries")
async def list_entries(
    category: Optional[str] = None,
    currency: Optional[str] = None,
    loan_id: Optional[int] = None,
    asset_id: Optional[int] = None,
    payment_id: Optional[int] = None,
    branch_code: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*STAFF_ROLES)),
):
    items, pagination = await ledger_service.list_ledger_entries(
        db, category=category, currency=currency, loan_id=loan_id, asset_id=asset_id,
        payment_id=payment_id, branch_code=branch_code, date_from=date_from,
        date_to=date_to, page=page, limit=limit,
    )
    return envelope([_entry_out(e) for e in items], pagination=pagination)


@router.post("/entries", status_code=201)
async def create_entry(
    data: LedgerEntryCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*FINANCE_ROLES)),
):
    entry = await ledger_service.create_ledger_entry(
        db, **data.model_dump(), actor_id=current_user.id,
    )
    return envelope(_entry_out(entry), message="Ledger entry created", status=201)


@router.get("/entries/{entry_id}")
async def get_entry(
    entry_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*STAFF_ROLES)),
):
    return envelope(_entry_out(await ledger_service.get_ledger_entry(db, entry_id)))


@router.patch("/entries/{entry_id}")
async def update_entry(
    entry_id: int,
    data: LedgerEntryUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*FINANCE_ROLES)),
):
    entry = await ledger_service.update_ledger_entry(
        db, entry_id, data.model_dump(exclude_unset=True)
    )
    return envelope(_entry_out(entry), message="Ledger entry updated")


@router.delete("/entries/{entry_id}")
async def delete_entry(
    entry_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*FINANCE_ROLES)),
):
    await ledger_service.delete_ledger_entry(db, entry_id)
    return envelope(message="Ledger entry deleted")


# ── Reconciliation ───────────────────────────────────────────


@router.get("/pending")
async def pending_ledger(
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*FINANCE_ROLES)),
):
    rows = await list_pending_ledger(db, limit=limit)
    return envelope([_txn_out(t) for t in rows])


@router.post("/reconcile")
async def reconcile(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*FINANCE_ROLES)),
):
    summary = await reconcile_pending_ledger(db)
    return envelope(summary, message="Reconciliation complete")
