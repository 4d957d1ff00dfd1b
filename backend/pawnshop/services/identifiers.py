"""Business identifier generation.

    tx_no      TXN + YYMMDD + 4-digit daily sequence   (inventory_transactions)
    receipt_no RCPT + YYMM + 4-digit random            (loan_payments)
    ticket_no  TICKET- + YYMMDD + 4-digit random       (support tickets)

The daily sequence is advisory: uniqueness is guaranteed by the unique
index on ``inventory_transactions.tx_no``.  Candidates that already exist
are skipped, and after ``settings.id_max_attempts`` misses the generator
gives up with :class:`IdCollision`.
"""

import logging
import random
from datetime import datetime

from sqlalchemy import select, func as sa_func
from sqlalchemy.ext.asyncio import AsyncSession

from pawnshop.config import settings
from pawnshop.exceptions import IdCollision
from pawnshop.models.ledger import InventoryTransaction
from pawnshop.models.payment import Payment

logger = logging.getLogger(__name__)

TX_PREFIX = "TXN"
RECEIPT_PREFIX = "RCPT"
TICKET_PREFIX = "TICKET-"


def _local_now(now: datetime | None) -> datetime:
    return now or datetime.now()


def tx_prefix_for(now: datetime | None = None) -> str:
    return f"{TX_PREFIX}{_local_now(now):%y%m%d}"


def format_receipt_no(now: datetime | None = None, suffix: int | None = None) -> str:
    suffix = suffix if suffix is not None else random.randint(1000, 9999)
    return f"{RECEIPT_PREFIX}{_local_now(now):%y%m}{suffix}"


def new_ticket_no(now: datetime | None = None) -> str:
    return f"{TICKET_PREFIX}{_local_now(now):%y%m%d}{random.randint(1000, 9999)}"


async def _last_sequence(db: AsyncSession, prefix: str) -> int:
    result = await db.execute(
        select(sa_func.max(InventoryTransaction.tx_no))
        .where(InventoryTransaction.tx_no.like(f"{prefix}%"))
    )
    last = result.scalar_one_or_none()
    if not last:
        return 0
    try:
        return int(last[len(prefix):])
    except ValueError:
        return 0


async def _existing(db: AsyncSession, column, candidates: list[str]) -> set[str]:
    result = await db.execute(select(column).where(column.in_(candidates)))
    return set(result.scalars().all())


async def new_tx_nos(db: AsyncSession, count: int = 1, *, now: datetime | None = None) -> list[str]:
    """Allocate *count* consecutive transaction numbers for today.

    The caller must add the rows in the same unit of work; rows already
    flushed in the session are seen by the sequence lookup.
    """
    prefix = tx_prefix_for(now)
    seq = await _last_sequence(db, prefix)

    for attempt in range(settings.id_max_attempts):
        candidates = [f"{prefix}{seq + i + 1:04d}" for i in range(count)]
        taken = await _existing(db, InventoryTransaction.tx_no, candidates)
        if not taken:
            return candidates
        logger.warning(
            "tx_no collision on %s (attempt %d/%d)",
            sorted(taken), attempt + 1, settings.id_max_attempts,
        )
        seq = max(int(t[len(prefix):]) for t in taken)

    raise IdCollision(f"Could not allocate a transaction number with prefix {prefix}")


async def new_tx_no(db: AsyncSession, *, now: datetime | None = None) -> str:
    return (await new_tx_nos(db, 1, now=now))[0]


async def new_receipt_no(db: AsyncSession, *, now: datetime | None = None) -> str:
    for attempt in range(settings.id_max_attempts):
        candidate = format_receipt_no(now)
        if not await _existing(db, Payment.receipt_no, [candidate]):
            return candidate
        logger.warning(
            "receipt_no collision on %s (attempt %d/%d)",
            candidate, attempt + 1, settings.id_max_attempts,
        )
    raise IdCollision("Could not allocate a unique receipt number")
