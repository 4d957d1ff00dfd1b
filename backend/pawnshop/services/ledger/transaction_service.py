"""Inventory transaction reads and journal maintenance.

Rows produced by loan disbursements, payment captures and asset sales are
part of a posted business event and cannot be deleted; on every row only
non-derived metadata may change.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from pawnshop.exceptions import NotFound, PermissionDenied, ValidationFailed
from pawnshop.models.ledger import InventoryTransaction, InventoryTxnType, LedgerEntry
from pawnshop.models.loan import Currency
from pawnshop.services.ledger.rules import coerce_txn_type
from pawnshop.services.pagination import paginate

logger = logging.getLogger(__name__)

DELETE_FORBIDDEN_TYPES = frozenset({
    InventoryTxnType.LOAN_DISBURSEMENT,
    InventoryTxnType.REPAYMENT,
    InventoryTxnType.INTEREST_INCOME,
    InventoryTxnType.STORAGE_INCOME,
    InventoryTxnType.PENALTY_INCOME,
    InventoryTxnType.ASSET_SALE,
})

# Types entered by hand rather than emitted by a business event
MANUAL_TYPES = frozenset({
    InventoryTxnType.EXPENSE,
    InventoryTxnType.ADJUSTMENT,
    InventoryTxnType.ASSET_PURCHASE,
})

_ALWAYS_EDITABLE = {"notes", "meta"}
_MANUAL_EDITABLE = {"account_code", "occurred_at"}
# COGS is derived from these at ledger time, so they stay as posted
_FROZEN_META = {
    InventoryTxnType.ASSET_SALE: ("cost_basis", "cost_basis_source"),
}


def _merge_meta(txn: InventoryTransaction, new_meta: Optional[dict]) -> dict:
    current = txn.meta or {}
    merged = dict(new_meta or {})
    frozen = _FROZEN_META.get(txn.type, ())
    changed = [k for k in frozen if k in merged and merged[k] != current.get(k)]
    if changed:
        raise ValidationFailed(
            f"Meta keys fixed at posting on a {txn.type.value} transaction: {', '.join(changed)}",
            errors=[{"field": f"meta.{k}", "message": "not editable"} for k in changed],
        )
    merged.update({k: current[k] for k in frozen if k in current})
    return merged


async def get_transaction(db: AsyncSession, txn_id: int) -> InventoryTransaction:
    txn = await db.get(InventoryTransaction, txn_id)
    if txn is None:
        raise NotFound(f"Inventory transaction {txn_id} not found")
    return txn


async def get_transaction_by_tx_no(db: AsyncSession, tx_no: str) -> InventoryTransaction:
    result = await db.execute(
        select(InventoryTransaction).where(InventoryTransaction.tx_no == tx_no)
    )
    txn = result.scalar_one_or_none()
    if txn is None:
        raise NotFound(f"Inventory transaction {tx_no} not found")
    return txn


async def list_transactions(
    db: AsyncSession,
    *,
    type: Optional[str] = None,
    currency: Optional[str] = None,
    loan_id: Optional[int] = None,
    asset_id: Optional[int] = None,
    payment_id: Optional[int] = None,
    account_code: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    ledger_pending: Optional[bool] = None,
    page: int = 1,
    limit: int = 50,
) -> tuple[list[InventoryTransaction], dict[str, Any]]:
    query = select(InventoryTransaction).order_by(
        InventoryTransaction.occurred_at.desc(), InventoryTransaction.id.desc()
    )
    if type:
        types = [coerce_txn_type(t.strip()) for t in type.split(",")]
        query = query.where(InventoryTransaction.type.in_(types))
    if currency:
        try:
            query = query.where(InventoryTransaction.currency == Currency(currency))
        except ValueError:
            raise ValidationFailed(f"Invalid currency: {currency!r}")
    if loan_id is not None:
        query = query.where(InventoryTransaction.loan_id == loan_id)
    if asset_id is not None:
        query = query.where(InventoryTransaction.asset_id == asset_id)
    if payment_id is not None:
        query = query.where(InventoryTransaction.payment_id == payment_id)
    if account_code:
        query = query.where(InventoryTransaction.account_code == account_code)
    if date_from:
        query = query.where(InventoryTransaction.occurred_at >= date_from)
    if date_to:
        query = query.where(InventoryTransaction.occurred_at <= date_to)
    if ledger_pending is not None:
        query = query.where(InventoryTransaction.ledger_pending == ledger_pending)
    return await paginate(db, query, page=page, limit=limit)


async def update_transaction(
    db: AsyncSession, txn_id: int, changes: dict[str, Any]
) -> InventoryTransaction:
    txn = await get_transaction(db, txn_id)
    allowed = set(_ALWAYS_EDITABLE)
    if txn.type in MANUAL_TYPES:
        allowed |= _MANUAL_EDITABLE

    rejected = sorted(set(changes) - allowed)
    if rejected:
        raise ValidationFailed(
            f"Fields not editable on a {txn.type.value} transaction: {', '.join(rejected)}",
            errors=[{"field": f, "message": "not editable"} for f in rejected],
        )
    if "meta" in changes:
        changes = {**changes, "meta": _merge_meta(txn, changes["meta"])}
    for key, value in changes.items():
        setattr(txn, key, value)
    await db.flush()
    logger.info("Updated inventory transaction %s (%s)", txn.tx_no, ", ".join(sorted(changes)))
    return txn


async def delete_transaction(db: AsyncSession, txn_id: int) -> None:
    """Delete a manual row together with the ledger rows derived from it."""
    txn = await get_transaction(db, txn_id)
    if txn.type in DELETE_FORBIDDEN_TYPES:
        raise PermissionDenied(
            f"{txn.type.value} transactions are part of a posted event and cannot be deleted"
        )
    await db.execute(delete(LedgerEntry).where(LedgerEntry.inventory_txn_id == txn.id))
    await db.delete(txn)
    await db.flush()
    logger.info("Deleted inventory transaction %s", txn.tx_no)
