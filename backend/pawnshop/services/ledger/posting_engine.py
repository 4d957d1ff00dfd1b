"""Posting engine: business events -> inventory transactions + ledger entries.

Each public ``post_*`` function turns one business event into its posting
set and adds it to the caller's unit of work:

    loan disbursed   (loan_disbursement, -principal, 1100)
    payment captured one row per positive component (repayment 1200,
                     interest 2100, storage 2200, penalty 2300)
    asset sold       (asset_sale, +price, 3100) -> revenue + COGS pair
    expense          (expense, -amount, 4100..4700)
    adjustment       (adjustment, signed, caller's account)

Post-once is checked up front (``AlreadyPosted``) and enforced by partial
unique indexes on ``inventory_transactions``; an ``IntegrityError`` raised
while flushing is translated back into the domain taxonomy.

The engine only flushes.  Commit and rollback belong to the caller, so the
inventory rows, their ledger rows and any loan/asset mutations made in the
same session land together or not at all.  Callers that defer derivation
(``derive_ledger=False``) leave ``ledger_pending`` set on the inventory rows
for :mod:`pawnshop.services.ledger.reconciliation` to pick up.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, func as sa_func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pawnshop.config import settings
from pawnshop.exceptions import (
    AlreadyPosted,
    IdCollision,
    InvalidTransition,
    NotFound,
    ValidationFailed,
)
from pawnshop.models.ledger import (
    InventoryTransaction,
    InventoryTxnType,
    LedgerCategory,
    LedgerEntry,
    PAYMENT_TXN_TYPES,
)
from pawnshop.models.loan import Asset, AssetStatus, Currency, Loan, LoanStatus
from pawnshop.models.payment import Payment, PaymentStatus
from pawnshop.services.identifiers import new_tx_nos
from pawnshop.services.ledger.rules import (
    EXPENSE_ACCOUNT_CODES,
    LEDGER_CATEGORY_FOR,
    PAYMENT_COMPONENTS,
    CENT,
    check_ledger_sign,
    coerce_txn_type,
    default_account_code,
    signed_amount,
    to_money,
)

logger = logging.getLogger(__name__)


@dataclass
class PostingResult:
    transactions: list[InventoryTransaction] = field(default_factory=list)
    ledger_entries: list[LedgerEntry] = field(default_factory=list)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_currency(value: Any) -> Currency:
    try:
        return Currency(value)
    except ValueError:
        raise ValidationFailed(f"Invalid currency: {value!r}")


# ---------------------------------------------------------------------------
# Post-once checks
# ---------------------------------------------------------------------------

async def _disbursement_exists(db: AsyncSession, loan_id: int) -> bool:
    result = await db.execute(
        select(sa_func.count(InventoryTransaction.id)).where(
            InventoryTransaction.type == InventoryTxnType.LOAN_DISBURSEMENT,
            InventoryTransaction.loan_id == loan_id,
        )
    )
    return result.scalar_one() > 0


async def _asset_sale_exists(db: AsyncSession, asset_id: int) -> bool:
    result = await db.execute(
        select(sa_func.count(InventoryTransaction.id)).where(
            InventoryTransaction.type == InventoryTxnType.ASSET_SALE,
            InventoryTransaction.asset_id == asset_id,
        )
    )
    return result.scalar_one() > 0


async def payment_posted(db: AsyncSession, payment_id: int) -> bool:
    """True when any capture row already references *payment_id*."""
    result = await db.execute(
        select(sa_func.count(InventoryTransaction.id)).where(
            InventoryTransaction.payment_id == payment_id,
            InventoryTransaction.type.in_(PAYMENT_TXN_TYPES),
        )
    )
    return result.scalar_one() > 0


def classify_integrity_error(exc: IntegrityError) -> Exception:
    """Map a unique violation on the journal to the domain taxonomy."""
    message = str(exc.orig if exc.orig is not None else exc).lower()
    if "tx_no" in message:
        return IdCollision("Transaction number collided with a concurrent posting")
    return AlreadyPosted("This business event has already been posted")


# ---------------------------------------------------------------------------
# Ledger derivation
# ---------------------------------------------------------------------------

async def _cost_basis(db: AsyncSession, txn: InventoryTransaction) -> Decimal:
    """COGS magnitude for an asset sale.

    Uses the basis frozen on the row at posting time, else the asset's
    evaluated value, else ``cogs_fallback_ratio`` of the sale price.
    """
    meta = txn.meta or {}
    if meta.get("cost_basis") is not None:
        return to_money(meta["cost_basis"], "cost_basis")
    evaluated = None
    if txn.asset_id is not None:
        asset = await db.get(Asset, txn.asset_id)
        evaluated = asset.evaluated_value if asset else None
    if evaluated:
        return to_money(evaluated, "evaluated_value")
    return (abs(Decimal(txn.amount)) * settings.cogs_fallback_ratio).quantize(CENT)


def _ledger_row(
    txn: InventoryTransaction,
    category: LedgerCategory,
    amount: Decimal,
    *,
    memo: Optional[str],
    branch_code: Optional[str],
    created_by: Optional[int],
) -> LedgerEntry:
    check_ledger_sign(category, amount)
    return LedgerEntry(
        entry_date=txn.occurred_at,
        category=category,
        amount=amount,
        currency=txn.currency,
        loan_id=txn.loan_id,
        payment_id=txn.payment_id,
        asset_id=txn.asset_id,
        inventory_txn_id=txn.id,
        memo=memo if memo is not None else txn.notes,
        branch_code=branch_code or settings.default_branch_code,
        created_by=created_by,
    )


async def derive_ledger_entries(
    db: AsyncSession,
    txn: InventoryTransaction,
    *,
    memo: Optional[str] = None,
    branch_code: Optional[str] = None,
    created_by: Optional[int] = None,
) -> list[LedgerEntry]:
    """Build (but do not add) the ledger rows for a flushed inventory row."""
    amount = Decimal(txn.amount)
    created_by = created_by if created_by is not None else txn.created_by

    if txn.type == InventoryTxnType.ASSET_SALE:
        cost = await _cost_basis(db, txn)
        rows = [
            _ledger_row(
                txn, LedgerCategory.ASSET_SALE_REVENUE, abs(amount),
                memo=memo, branch_code=branch_code, created_by=created_by,
            ),
        ]
        if cost > 0:
            rows.append(_ledger_row(
                txn, LedgerCategory.ASSET_SALE_COGS, -cost,
                memo=memo, branch_code=branch_code, created_by=created_by,
            ))
        return rows

    category = LEDGER_CATEGORY_FOR[txn.type]
    return [
        _ledger_row(txn, category, amount, memo=memo, branch_code=branch_code, created_by=created_by)
    ]


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

async def _insert_inventory(
    db: AsyncSession,
    rows: list[dict[str, Any]],
    *,
    derive_ledger: bool,
    created_by: Optional[int],
) -> list[InventoryTransaction]:
    """Insert the inventory rows under fresh ``tx_no`` values.

    Each attempt runs in a savepoint.  A ``tx_no`` taken by a concurrent
    poster between allocation and flush rolls back only that attempt and
    the numbers are allocated again; any other unique violation is a
    post-once hit and is raised as ``AlreadyPosted``.
    """
    for attempt in range(1, settings.id_max_attempts + 1):
        tx_nos = await new_tx_nos(db, len(rows))
        txns = [
            InventoryTransaction(
                tx_no=tx_no,
                created_by=created_by,
                ledger_pending=not derive_ledger,
                **row,
            )
            for tx_no, row in zip(tx_nos, rows)
        ]
        try:
            async with db.begin_nested():
                db.add_all(txns)
                await db.flush()
        except IntegrityError as exc:
            error = classify_integrity_error(exc)
            if not isinstance(error, IdCollision):
                logger.warning("Journal unique violation: %s", exc.orig)
                raise error from exc
            logger.warning(
                "tx_no %s taken at insert (attempt %d/%d)",
                tx_nos, attempt, settings.id_max_attempts,
            )
            continue
        return txns

    raise IdCollision(
        f"Transaction numbers kept colliding after {settings.id_max_attempts} attempts"
    )


async def _persist(
    db: AsyncSession,
    rows: list[dict[str, Any]],
    *,
    derive_ledger: bool,
    created_by: Optional[int],
    memo: Optional[str] = None,
    branch_code: Optional[str] = None,
) -> PostingResult:
    """Insert inventory rows, then (optionally) their ledger rows, in one flush scope."""
    result = PostingResult()
    result.transactions = await _insert_inventory(
        db, rows, derive_ledger=derive_ledger, created_by=created_by,
    )

    if derive_ledger:
        for txn in result.transactions:
            entries = await derive_ledger_entries(
                db, txn, memo=memo, branch_code=branch_code, created_by=created_by,
            )
            db.add_all(entries)
            result.ledger_entries.extend(entries)
        try:
            await db.flush()
        except IntegrityError as exc:
            logger.warning("Ledger write rejected: %s", exc.orig)
            raise classify_integrity_error(exc) from exc

    return result


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def post_loan_disbursement(
    db: AsyncSession,
    loan_id: int,
    *,
    actor_id: Optional[int] = None,
    derive_ledger: bool = True,
    occurred_at: Optional[datetime] = None,
) -> PostingResult:
    """Post the cash-out of a loan's principal.  At most once per loan."""
    loan = await db.get(Loan, loan_id)
    if loan is None:
        raise NotFound(f"Loan {loan_id} not found")
    if loan.status != LoanStatus.ACTIVE:
        raise InvalidTransition(
            f"Loan {loan.loan_no} is {loan.status.value}; only active loans can be disbursed"
        )
    if await _disbursement_exists(db, loan.id):
        raise AlreadyPosted(f"Loan {loan.loan_no} has already been disbursed")

    when = occurred_at or _now()
    result = await _persist(
        db,
        [{
            "type": InventoryTxnType.LOAN_DISBURSEMENT,
            "amount": signed_amount(InventoryTxnType.LOAN_DISBURSEMENT, loan.principal_amount),
            "currency": loan.currency,
            "loan_id": loan.id,
            "asset_id": loan.asset_id,
            "account_code": default_account_code(InventoryTxnType.LOAN_DISBURSEMENT),
            "notes": f"Disbursement of loan {loan.loan_no}",
            "occurred_at": when,
        }],
        derive_ledger=derive_ledger,
        created_by=actor_id,
    )
    if loan.disbursed_at is None:
        loan.disbursed_at = when
        await db.flush()

    logger.info(
        "Posted disbursement %s for loan %s (%s %s)",
        result.transactions[0].tx_no, loan.loan_no, loan.principal_amount, loan.currency.value,
    )
    return result


def capture_rows(payment: Payment) -> list[dict[str, Any]]:
    """Inventory rows for a captured payment, one per positive component.

    Any excess of the amount over the component sum is implicit principal,
    so a paid payment always yields at least one row.
    """
    amount = to_money(payment.amount)
    components = {attr: to_money(getattr(payment, attr) or 0, attr) for attr, _ in PAYMENT_COMPONENTS}
    if any(v < 0 for v in components.values()):
        raise ValidationFailed("Payment components must not be negative")
    total = sum(components.values(), Decimal("0"))
    if total > amount:
        raise ValidationFailed(
            f"Payment components ({total}) exceed the payment amount ({amount})"
        )
    components["principal_component"] += amount - total

    when = payment.captured_at or payment.paid_at or _now()
    rows = []
    for attr, txn_type in PAYMENT_COMPONENTS:
        value = components[attr]
        if value <= 0:
            continue
        rows.append({
            "type": txn_type,
            "amount": signed_amount(txn_type, value),
            "currency": payment.currency,
            "loan_id": payment.loan_id,
            "payment_id": payment.id,
            "account_code": default_account_code(txn_type),
            "notes": f"Payment {payment.receipt_no or payment.id}",
            "occurred_at": when,
        })
    return rows


async def post_repayment(
    db: AsyncSession,
    payment_id: int,
    *,
    actor_id: Optional[int] = None,
    derive_ledger: bool = True,
) -> PostingResult:
    """Post a captured payment.  At most once per payment."""
    payment = await db.get(Payment, payment_id)
    if payment is None:
        raise NotFound(f"Payment {payment_id} not found")
    if payment.payment_status != PaymentStatus.PAID:
        raise InvalidTransition(
            f"Payment {payment.receipt_no or payment.id} is {payment.payment_status.value}; "
            "only paid payments can be posted"
        )
    if await payment_posted(db, payment.id):
        raise AlreadyPosted(f"Payment {payment.receipt_no or payment.id} has already been posted")

    result = await _persist(
        db,
        capture_rows(payment),
        derive_ledger=derive_ledger,
        created_by=actor_id if actor_id is not None else payment.received_by,
    )
    logger.info(
        "Posted payment %s on loan %s: %s",
        payment.receipt_no or payment.id,
        payment.loan_id,
        ", ".join(f"{t.type.value}={t.amount}" for t in result.transactions),
    )
    return result


async def post_asset_sale(
    db: AsyncSession,
    asset_id: int,
    sale_price: Any,
    *,
    currency: Any = Currency.USD,
    actor_id: Optional[int] = None,
    derive_ledger: bool = True,
    occurred_at: Optional[datetime] = None,
) -> PostingResult:
    """Post the sale of a forfeited asset.  At most once per asset."""
    price = to_money(sale_price, "sale_price")
    if price <= 0:
        raise ValidationFailed("sale_price must be greater than zero")
    currency = _coerce_currency(currency)

    asset = await db.get(Asset, asset_id)
    if asset is None:
        raise NotFound(f"Asset {asset_id} not found")
    if asset.status != AssetStatus.SOLD:
        raise InvalidTransition(
            f"Asset {asset.asset_no} is {asset.status.value}; only sold assets can be posted"
        )
    if await _asset_sale_exists(db, asset.id):
        raise AlreadyPosted(f"Sale of asset {asset.asset_no} has already been posted")

    if asset.evaluated_value:
        cost_basis, basis_source = to_money(asset.evaluated_value), "evaluated_value"
    else:
        cost_basis = (price * settings.cogs_fallback_ratio).quantize(CENT)
        basis_source = "fallback_ratio"

    result = await _persist(
        db,
        [{
            "type": InventoryTxnType.ASSET_SALE,
            "amount": signed_amount(InventoryTxnType.ASSET_SALE, price),
            "currency": currency,
            "asset_id": asset.id,
            "account_code": default_account_code(InventoryTxnType.ASSET_SALE),
            "notes": f"Sale of asset {asset.asset_no}",
            "occurred_at": occurred_at or _now(),
            "meta": {"cost_basis": str(cost_basis), "cost_basis_source": basis_source},
        }],
        derive_ledger=derive_ledger,
        created_by=actor_id,
    )
    logger.info(
        "Posted sale %s of asset %s for %s (cost basis %s from %s)",
        result.transactions[0].tx_no, asset.asset_no, price, cost_basis, basis_source,
    )
    return result


async def post_expense(
    db: AsyncSession,
    amount: Any,
    category: str,
    description: Optional[str] = None,
    *,
    currency: Any = Currency.USD,
    actor_id: Optional[int] = None,
    derive_ledger: bool = True,
    occurred_at: Optional[datetime] = None,
) -> PostingResult:
    """Post an operating expense under its expense account."""
    category = (category or "").strip().lower()
    if category not in EXPENSE_ACCOUNT_CODES:
        raise ValidationFailed(
            f"Invalid expense category {category!r}; expected one of "
            f"{', '.join(EXPENSE_ACCOUNT_CODES)}"
        )
    result = await _persist(
        db,
        [{
            "type": InventoryTxnType.EXPENSE,
            "amount": signed_amount(InventoryTxnType.EXPENSE, amount),
            "currency": _coerce_currency(currency),
            "account_code": default_account_code(InventoryTxnType.EXPENSE, category),
            "notes": description,
            "occurred_at": occurred_at or _now(),
            "meta": {"expense_category": category},
        }],
        derive_ledger=derive_ledger,
        created_by=actor_id,
    )
    logger.info(
        "Posted expense %s (%s) %s",
        result.transactions[0].tx_no, category, result.transactions[0].amount,
    )
    return result


async def post_adjustment(
    db: AsyncSession,
    amount: Any,
    *,
    currency: Any = Currency.USD,
    loan_id: Optional[int] = None,
    asset_id: Optional[int] = None,
    payment_id: Optional[int] = None,
    account_code: Optional[str] = None,
    notes: Optional[str] = None,
    actor_id: Optional[int] = None,
    derive_ledger: bool = True,
    occurred_at: Optional[datetime] = None,
) -> PostingResult:
    """Post a manual correction; the sign of *amount* is kept."""
    result = await _persist(
        db,
        [{
            "type": InventoryTxnType.ADJUSTMENT,
            "amount": signed_amount(InventoryTxnType.ADJUSTMENT, amount),
            "currency": _coerce_currency(currency),
            "loan_id": loan_id,
            "asset_id": asset_id,
            "payment_id": payment_id,
            "account_code": account_code,
            "notes": notes,
            "occurred_at": occurred_at or _now(),
        }],
        derive_ledger=derive_ledger,
        created_by=actor_id,
    )
    logger.info("Posted adjustment %s %s", result.transactions[0].tx_no, result.transactions[0].amount)
    return result


async def record_transaction(
    db: AsyncSession,
    *,
    type: Any,
    amount: Any,
    currency: Any = Currency.USD,
    loan_id: Optional[int] = None,
    asset_id: Optional[int] = None,
    payment_id: Optional[int] = None,
    account_code: Optional[str] = None,
    notes: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
    meta: Optional[dict] = None,
    actor_id: Optional[int] = None,
    derive_ledger: bool = True,
) -> PostingResult:
    """Record an arbitrary inventory row with the same sign and post-once rules."""
    txn_type = coerce_txn_type(type)
    value = signed_amount(txn_type, amount)

    if txn_type == InventoryTxnType.LOAN_DISBURSEMENT:
        if loan_id is None:
            raise ValidationFailed("loan_id is required for a loan_disbursement")
        if await _disbursement_exists(db, loan_id):
            raise AlreadyPosted(f"Loan {loan_id} has already been disbursed")
    elif txn_type == InventoryTxnType.ASSET_SALE:
        if asset_id is None:
            raise ValidationFailed("asset_id is required for an asset_sale")
        if await _asset_sale_exists(db, asset_id):
            raise AlreadyPosted(f"Sale of asset {asset_id} has already been posted")
    elif txn_type in PAYMENT_TXN_TYPES and payment_id is not None:
        existing = await db.execute(
            select(sa_func.count(InventoryTransaction.id)).where(
                InventoryTransaction.payment_id == payment_id,
                InventoryTransaction.type == txn_type,
            )
        )
        if existing.scalar_one() > 0:
            raise AlreadyPosted(f"Payment {payment_id} already has a {txn_type.value} row")

    expense_category = (meta or {}).get("expense_category")
    result = await _persist(
        db,
        [{
            "type": txn_type,
            "amount": value,
            "currency": _coerce_currency(currency),
            "loan_id": loan_id,
            "asset_id": asset_id,
            "payment_id": payment_id,
            "account_code": account_code or default_account_code(txn_type, expense_category),
            "notes": notes,
            "occurred_at": occurred_at or _now(),
            "meta": meta,
        }],
        derive_ledger=derive_ledger,
        created_by=actor_id,
    )
    logger.info(
        "Recorded %s %s %s",
        txn_type.value, result.transactions[0].tx_no, result.transactions[0].amount,
    )
    return result
