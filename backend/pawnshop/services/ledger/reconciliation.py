"""Reconciliation of inventory rows whose ledger rows were never derived.

Postings made with ``derive_ledger=False`` (bulk imports, or a derivation
that had to be deferred) leave ``ledger_pending`` set.  The periodic task
calls :func:`reconcile_pending_ledger` to derive the missing rows.
"""

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pawnshop.models.ledger import InventoryTransaction, LedgerEntry
from pawnshop.services.ledger.posting_engine import derive_ledger_entries

logger = logging.getLogger(__name__)


async def list_pending_ledger(db: AsyncSession, *, limit: int = 500) -> list[InventoryTransaction]:
    result = await db.execute(
        select(InventoryTransaction)
        .where(InventoryTransaction.ledger_pending.is_(True))
        .order_by(InventoryTransaction.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def reconcile_pending_ledger(db: AsyncSession, *, limit: int = 500) -> dict[str, Any]:
    """Derive ledger rows for pending inventory rows and clear their flag.

    A row that already has derived entries (e.g. written just before a
    crash) only has its flag cleared.  A row that fails derivation is left
    pending and reported.
    """
    pending = await list_pending_ledger(db, limit=limit)
    derived = skipped = 0
    failed: list[dict[str, Any]] = []

    for txn in pending:
        existing = await db.execute(
            select(LedgerEntry.id).where(LedgerEntry.inventory_txn_id == txn.id).limit(1)
        )
        if existing.scalar_one_or_none() is not None:
            txn.ledger_pending = False
            skipped += 1
            continue
        try:
            entries = await derive_ledger_entries(db, txn)
        except Exception as exc:
            logger.error("Ledger derivation failed for %s: %s", txn.tx_no, exc)
            failed.append({"tx_no": txn.tx_no, "error": str(exc)})
            continue
        db.add_all(entries)
        txn.ledger_pending = False
        derived += 1

    await db.flush()
    if pending:
        logger.info(
            "Ledger reconciliation: %d derived, %d already derived, %d failed",
            derived, skipped, len(failed),
        )
    return {"checked": len(pending), "derived": derived, "skipped": skipped, "failed": failed}
