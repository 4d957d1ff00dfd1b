"""Ledger entry creation, reads and maintenance."""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pawnshop.config import settings
from pawnshop.exceptions import NotFound, PermissionDenied, ValidationFailed
from pawnshop.models.ledger import LedgerEntry, LedgerCategory, INCOME_CATEGORIES
from pawnshop.models.loan import Currency
from pawnshop.services.ledger.rules import check_ledger_sign, coerce_category, to_money
from pawnshop.services.pagination import paginate

logger = logging.getLogger(__name__)

DELETE_FORBIDDEN_CATEGORIES = INCOME_CATEGORIES | {
    LedgerCategory.LOAN_PRINCIPAL_REPAYMENT,
    LedgerCategory.ASSET_SALE_COGS,
}

_EDITABLE = {"memo", "branch_code"}


async def create_ledger_entry(
    db: AsyncSession,
    *,
    category: Any,
    amount: Any,
    currency: Any = Currency.USD,
    loan_id: Optional[int] = None,
    payment_id: Optional[int] = None,
    asset_id: Optional[int] = None,
    inventory_txn_id: Optional[int] = None,
    memo: Optional[str] = None,
    branch_code: Optional[str] = None,
    entry_date: Optional[datetime] = None,
    actor_id: Optional[int] = None,
) -> LedgerEntry:
    """Create a ledger entry not derived from an inventory posting.

    Raises SignMismatch when the amount's sign contradicts the category.
    """
    cat = coerce_category(category)
    value = to_money(amount)
    check_ledger_sign(cat, value)
    try:
        currency = Currency(currency)
    except ValueError:
        raise ValidationFailed(f"Invalid currency: {currency!r}")

    entry = LedgerEntry(
        entry_date=entry_date or datetime.now(timezone.utc),
        category=cat,
        amount=value,
        currency=currency,
        loan_id=loan_id,
        payment_id=payment_id,
        asset_id=asset_id,
        inventory_txn_id=inventory_txn_id,
        memo=memo,
        branch_code=branch_code or settings.default_branch_code,
        created_by=actor_id,
    )
    db.add(entry)
    await db.flush()
    logger.info("Created ledger entry %s %s %s", entry.id, cat.value, value)
    return entry


async def get_ledger_entry(db: AsyncSession, entry_id: int) -> LedgerEntry:
    entry = await db.get(LedgerEntry, entry_id)
    if entry is None:
        raise NotFound(f"Ledger entry {entry_id} not found")
    return entry


async def list_ledger_entries(
    db: AsyncSession,
    *,
    category: Optional[str] = None,
    currency: Optional[str] = None,
    loan_id: Optional[int] = None,
    asset_id: Optional[int] = None,
    payment_id: Optional[int] = None,
    inventory_txn_id: Optional[int] = None,
    branch_code: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = 1,
    limit: int = 50,
) -> tuple[list[LedgerEntry], dict[str, Any]]:
    query = select(LedgerEntry).order_by(LedgerEntry.entry_date.desc(), LedgerEntry.id.desc())
    if category:
        cats = [coerce_category(c.strip()) for c in category.split(",")]
        query = query.where(LedgerEntry.category.in_(cats))
    if currency:
        try:
            query = query.where(LedgerEntry.currency == Currency(currency))
        except ValueError:
            raise ValidationFailed(f"Invalid currency: {currency!r}")
    if loan_id is not None:
        query = query.where(LedgerEntry.loan_id == loan_id)
    if asset_id is not None:
        query = query.where(LedgerEntry.asset_id == asset_id)
    if payment_id is not None:
        query = query.where(LedgerEntry.payment_id == payment_id)
    if inventory_txn_id is not None:
        query = query.where(LedgerEntry.inventory_txn_id == inventory_txn_id)
    if branch_code:
        query = query.where(LedgerEntry.branch_code == branch_code)
    if date_from:
        query = query.where(LedgerEntry.entry_date >= date_from)
    if date_to:
        query = query.where(LedgerEntry.entry_date <= date_to)
    return await paginate(db, query, page=page, limit=limit)


async def update_ledger_entry(
    db: AsyncSession, entry_id: int, changes: dict[str, Any]
) -> LedgerEntry:
    entry = await get_ledger_entry(db, entry_id)
    rejected = sorted(set(changes) - _EDITABLE)
    if rejected:
        raise ValidationFailed(
            "Only memo and branch_code can be changed on a ledger entry",
            errors=[{"field": f, "message": "not editable"} for f in rejected],
        )
    for key, value in changes.items():
        setattr(entry, key, value)
    await db.flush()
    return entry


async def delete_ledger_entry(db: AsyncSession, entry_id: int) -> None:
    entry = await get_ledger_entry(db, entry_id)
    if entry.category in DELETE_FORBIDDEN_CATEGORIES or entry.payment_id is not None:
        raise PermissionDenied(
            f"{entry.category.value} entries belong to a posted event and cannot be deleted"
        )
    await db.delete(entry)
    await db.flush()
    logger.info("Deleted ledger entry %s", entry_id)
