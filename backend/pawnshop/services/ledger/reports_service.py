"""Reporting projections over the journal.

Three period snapshots, each returning plain dicts ready for JSON:

- profit and loss from ledger entries
- cash flow from inventory transactions
- trial balance by ledger category
"""

import logging
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, case, func as sa_func
from sqlalchemy.ext.asyncio import AsyncSession

from pawnshop.exceptions import ValidationFailed
from pawnshop.models.ledger import (
    InventoryTransaction,
    InventoryTxnType,
    LedgerEntry,
    LedgerCategory,
)
from pawnshop.models.loan import Currency

logger = logging.getLogger(__name__)

BALANCE_TOLERANCE = Decimal("0.01")

REVENUE_CATEGORIES = (
    LedgerCategory.INTEREST_INCOME,
    LedgerCategory.STORAGE_INCOME,
    LedgerCategory.PENALTY_INCOME,
    LedgerCategory.ASSET_SALE_REVENUE,
)
COGS_CATEGORIES = (LedgerCategory.ASSET_SALE_COGS,)
OPERATING_EXPENSE_CATEGORIES = (
    LedgerCategory.LOAN_DISBURSEMENT,
    LedgerCategory.WRITE_OFF,
)

CASH_FLOW_GROUPS: dict[str, tuple[InventoryTxnType, ...]] = {
    "operating": (
        InventoryTxnType.REPAYMENT,
        InventoryTxnType.INTEREST_INCOME,
        InventoryTxnType.STORAGE_INCOME,
        InventoryTxnType.PENALTY_INCOME,
        InventoryTxnType.EXPENSE,
    ),
    "investing": (
        InventoryTxnType.ASSET_SALE,
        InventoryTxnType.ASSET_PURCHASE,
    ),
    "financing": (
        InventoryTxnType.LOAN_DISBURSEMENT,
        InventoryTxnType.ADJUSTMENT,
    ),
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt(val) -> float:
    """Convert Decimal/int to float for JSON serialisation."""
    if isinstance(val, Decimal):
        return float(val)
    return float(val) if val else 0.0


def _dec(val) -> Decimal:
    if val is None:
        return Decimal("0")
    if isinstance(val, Decimal):
        return val
    return Decimal(str(val))


def _margin(part: Decimal, whole: Decimal) -> float:
    if whole <= 0:
        return 0.0
    return round(float(part / whole * 100), 2)


def period_bounds(date_from: date, date_to: date) -> tuple[datetime, datetime]:
    """Inclusive UTC datetime bounds for a calendar-date range."""
    if date_from > date_to:
        raise ValidationFailed("date_from must not be after date_to")
    return (
        datetime.combine(date_from, time.min, tzinfo=timezone.utc),
        datetime.combine(date_to, time.max, tzinfo=timezone.utc),
    )


def _currency_filter(column, currency: Optional[str]):
    if not currency:
        return None
    try:
        return column == Currency(currency)
    except ValueError:
        raise ValidationFailed(f"Invalid currency: {currency!r}")


async def _ledger_sums(
    db: AsyncSession, start: datetime, end: datetime, currency: Optional[str]
) -> dict[LedgerCategory, dict[str, Any]]:
    """Per-category positive total, negative total and row count."""
    q = (
        select(
            LedgerEntry.category,
            sa_func.sum(case((LedgerEntry.amount > 0, LedgerEntry.amount), else_=0)),
            sa_func.sum(case((LedgerEntry.amount < 0, LedgerEntry.amount), else_=0)),
            sa_func.count(LedgerEntry.id),
        )
        .where(LedgerEntry.entry_date >= start, LedgerEntry.entry_date <= end)
        .group_by(LedgerEntry.category)
    )
    cond = _currency_filter(LedgerEntry.currency, currency)
    if cond is not None:
        q = q.where(cond)

    result = await db.execute(q)
    sums = {}
    for category, positive, negative, count in result.all():
        sums[LedgerCategory(category)] = {
            "positive": _dec(positive),
            "negative": _dec(negative),
            "count": count,
        }
    return sums


# ---------------------------------------------------------------------------
# Profit and loss
# ---------------------------------------------------------------------------

async def profit_loss(
    db: AsyncSession,
    *,
    date_from: date,
    date_to: date,
    currency: Optional[str] = None,
) -> dict[str, Any]:
    start, end = period_bounds(date_from, date_to)
    sums = await _ledger_sums(db, start, end, currency)

    def section(categories) -> tuple[list[dict], Decimal]:
        lines, total = [], Decimal("0")
        for cat in categories:
            s = sums.get(cat)
            if not s:
                continue
            amount = abs(s["positive"] + s["negative"])
            total += amount
            lines.append({"category": cat.value, "amount": _fmt(amount), "count": s["count"]})
        return lines, total

    revenue, total_revenue = section(REVENUE_CATEGORIES)
    cogs, total_cogs = section(COGS_CATEGORIES)
    opex, total_opex = section(OPERATING_EXPENSE_CATEGORIES)

    other = sums.get(LedgerCategory.OTHER, {"positive": Decimal("0"), "negative": Decimal("0")})
    total_other_income = other["positive"]
    total_other_expenses = abs(other["negative"])

    gross_profit = total_revenue - total_cogs
    operating_profit = gross_profit - total_opex
    net_profit = operating_profit + total_other_income - total_other_expenses

    return {
        "period": {"date_from": str(date_from), "date_to": str(date_to)},
        "currency": currency,
        "sections": {
            "revenue": revenue,
            "cost_of_goods_sold": cogs,
            "operating_expenses": opex,
            "other_income": _fmt(total_other_income),
            "other_expenses": _fmt(total_other_expenses),
        },
        "totals": {
            "total_revenue": _fmt(total_revenue),
            "total_cogs": _fmt(total_cogs),
            "total_operating_expenses": _fmt(total_opex),
            "total_other_income": _fmt(total_other_income),
            "total_other_expenses": _fmt(total_other_expenses),
        },
        "profit_metrics": {
            "gross_profit": _fmt(gross_profit),
            "operating_profit": _fmt(operating_profit),
            "net_profit": _fmt(net_profit),
            "gross_margin": _margin(gross_profit, total_revenue),
            "operating_margin": _margin(operating_profit, total_revenue),
            "net_margin": _margin(net_profit, total_revenue),
        },
    }


# ---------------------------------------------------------------------------
# Cash flow
# ---------------------------------------------------------------------------

async def cash_flow(
    db: AsyncSession,
    *,
    date_from: date,
    date_to: date,
    currency: Optional[str] = None,
) -> dict[str, Any]:
    start, end = period_bounds(date_from, date_to)
    q = (
        select(
            InventoryTransaction.type,
            sa_func.sum(InventoryTransaction.amount),
            sa_func.count(InventoryTransaction.id),
        )
        .where(
            InventoryTransaction.occurred_at >= start,
            InventoryTransaction.occurred_at <= end,
        )
        .group_by(InventoryTransaction.type)
    )
    cond = _currency_filter(InventoryTransaction.currency, currency)
    if cond is not None:
        q = q.where(cond)

    by_type = {
        InventoryTxnType(t): (_dec(total), count)
        for t, total, count in (await db.execute(q)).all()
    }

    groups: dict[str, Any] = {}
    net = Decimal("0")
    for name, types in CASH_FLOW_GROUPS.items():
        lines, total = [], Decimal("0")
        for t in types:
            if t not in by_type:
                continue
            amount, count = by_type[t]
            total += amount
            lines.append({"type": t.value, "amount": _fmt(amount), "count": count})
        net += total
        groups[name] = {"total": _fmt(total), "activities": lines}

    inflow = sum((a for a, _ in by_type.values() if a > 0), Decimal("0"))
    outflow = sum((a for a, _ in by_type.values() if a < 0), Decimal("0"))
    return {
        "period": {"date_from": str(date_from), "date_to": str(date_to)},
        "currency": currency,
        "operating": groups["operating"],
        "investing": groups["investing"],
        "financing": groups["financing"],
        "total_inflow": _fmt(inflow),
        "total_outflow": _fmt(outflow),
        "net_cash_flow": _fmt(net),
    }


# ---------------------------------------------------------------------------
# Trial balance
# ---------------------------------------------------------------------------

async def trial_balance(
    db: AsyncSession,
    *,
    date_from: date,
    date_to: date,
    currency: Optional[str] = None,
) -> dict[str, Any]:
    """Debits are the magnitudes of negative entries, credits the positive ones."""
    start, end = period_bounds(date_from, date_to)
    sums = await _ledger_sums(db, start, end, currency)

    rows = []
    total_debit = total_credit = Decimal("0")
    count = 0
    for cat in LedgerCategory:
        s = sums.get(cat)
        if not s:
            continue
        debit, credit = abs(s["negative"]), s["positive"]
        total_debit += debit
        total_credit += credit
        count += s["count"]
        rows.append({
            "category": cat.value,
            "debit": _fmt(debit),
            "credit": _fmt(credit),
            "balance": _fmt(credit - debit),
            "count": s["count"],
        })

    return {
        "period": {"date_from": str(date_from), "date_to": str(date_to)},
        "currency": currency,
        "trial_balance": rows,
        "totals": {
            "debit": _fmt(total_debit),
            "credit": _fmt(total_credit),
            "balance": _fmt(total_credit - total_debit),
            "count": count,
        },
        "is_balanced": abs(total_debit - total_credit) < BALANCE_TOLERANCE,
    }


REPORT_REGISTRY = {
    "profit_loss": profit_loss,
    "cash_flow": cash_flow,
    "trial_balance": trial_balance,
}
