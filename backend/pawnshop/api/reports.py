"""Reporting projections: profit and loss, cash flow, trial balance."""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from pawnshop.auth_utils import require_roles
from pawnshop.database import get_db
from pawnshop.models.user import User, FINANCE_ROLES
from pawnshop.schemas import envelope
from pawnshop.services.ledger.reports_service import REPORT_REGISTRY

router = APIRouter()


async def _run(name: str, db: AsyncSession, date_from: date, date_to: date, currency: Optional[str]):
    report = await REPORT_REGISTRY[name](
        db, date_from=date_from, date_to=date_to, currency=currency,
    )
    return envelope(report)


@router.get("/profit-loss")
async def profit_loss(
    date_from: date,
    date_to: date,
    currency: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*FINANCE_ROLES)),
):
    return await _run("profit_loss", db, date_from, date_to, currency)


@router.get("/cash-flow")
async def cash_flow(
    date_from: date,
    date_to: date,
    currency: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*FINANCE_ROLES)),
):
    return await _run("cash_flow", db, date_from, date_to, currency)


@router.get("/trial-balance")
async def trial_balance(
    date_from: date,
    date_to: date,
    currency: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*FINANCE_ROLES)),
):
    return await _run("trial_balance", db, date_from, date_to, currency)
