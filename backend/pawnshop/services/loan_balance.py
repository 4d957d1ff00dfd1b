"""Loan balance updater.

Applies a captured payment to its loan: the balance drops by the payment
amount (never below zero), a zero balance redeems the loan, and the status
change propagates to the collateral asset.

Writes are serialized per loan twice over: the loan row is read ``FOR
UPDATE`` (a no-op on SQLite) and the write is a conditional UPDATE keyed on
``version``, retried with a fresh read when a concurrent capture won.
"""

import logging
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pawnshop.exceptions import Internal, NotFound
from pawnshop.models.loan import Asset, AssetStatus, Loan, LoanStatus
from pawnshop.models.payment import Payment

logger = logging.getLogger(__name__)

MAX_VERSION_RETRIES = 5


async def _locked_loan(db: AsyncSession, loan_id: int) -> Loan:
    result = await db.execute(
        select(Loan)
        .where(Loan.id == loan_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    loan = result.scalar_one_or_none()
    if loan is None:
        raise NotFound(f"Loan {loan_id} not found")
    return loan


def next_balance(current_balance, amount) -> Decimal:
    return max(Decimal("0"), Decimal(current_balance) - Decimal(amount))


async def _propagate_to_asset(db: AsyncSession, loan: Loan, redeemed: bool) -> None:
    if loan.asset_id is None:
        return
    asset = await db.get(Asset, loan.asset_id)
    if asset is None:
        logger.warning("Loan %s references missing asset %s", loan.loan_no, loan.asset_id)
        return
    if asset.status == AssetStatus.SOLD:
        return
    if redeemed:
        asset.status = AssetStatus.REDEEMED
        if asset.active_loan_id == loan.id:
            asset.active_loan_id = None
    else:
        asset.status = AssetStatus.PAWNED
    await db.flush()


async def apply_payment(db: AsyncSession, payment: Payment) -> Loan:
    """Decrement the loan balance by *payment* and update loan/asset status."""
    for attempt in range(MAX_VERSION_RETRIES):
        loan = await _locked_loan(db, payment.loan_id)
        previous = loan.current_balance
        new_balance = next_balance(loan.current_balance, payment.amount)
        redeemed = new_balance == 0
        values = {"current_balance": new_balance, "version": loan.version + 1}
        if redeemed:
            values["status"] = LoanStatus.REDEEMED

        result = await db.execute(
            update(Loan)
            .where(Loan.id == loan.id, Loan.version == loan.version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await db.refresh(loan)
            await _propagate_to_asset(db, loan, redeemed)
            logger.info(
                "Applied payment %s to loan %s: balance %s -> %s%s",
                payment.receipt_no or payment.id, loan.loan_no,
                previous,
                new_balance, " (redeemed)" if redeemed else "",
            )
            return loan
        logger.warning(
            "Concurrent balance update on loan %s (attempt %d/%d)",
            loan.loan_no, attempt + 1, MAX_VERSION_RETRIES,
        )

    raise Internal(f"Could not update balance of loan {payment.loan_id}: too much contention")
