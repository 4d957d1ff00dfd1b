"""Celery periodic tasks: ledger reconciliation and gateway status sweeps."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from pawnshop.tasks import celery_app
from pawnshop.config import settings
from pawnshop.exceptions import PawnshopError
from pawnshop.models.error_log import ErrorSeverity
from pawnshop.models.payment import Payment, PaymentStatus, GATEWAY_PROVIDERS
from pawnshop.services.error_logger import log_error
from pawnshop.services.gateway.adapter import GatewayConfig, build_gateway
from pawnshop.services.ledger.reconciliation import reconcile_pending_ledger
from pawnshop.services.payment_workflow import poll_payment

logger = logging.getLogger(__name__)

IN_FLIGHT_STATUSES = (
    PaymentStatus.PENDING,
    PaymentStatus.SENT,
    PaymentStatus.AWAITING_CONFIRMATION,
    PaymentStatus.AWAITING_DELIVERY,
)
# Payments older than this are left to the webhook / manual follow-up
POLL_WINDOW = timedelta(hours=24)


def _get_async_session():
    engine = create_async_engine(settings.database_url)
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def _run(coro_fn) -> dict:
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro_fn())
    finally:
        loop.close()


@celery_app.task(name="pawnshop.tasks.journal_tasks.reconcile_ledger")
def reconcile_ledger() -> dict:
    """Derive ledger rows for inventory transactions still marked pending."""

    async def _inner():
        session_factory = _get_async_session()
        async with session_factory() as db:
            try:
                summary = await reconcile_pending_ledger(db)
                await db.commit()
                return summary
            except Exception:
                await db.rollback()
                raise

    return _run(_inner)


async def _record_failure(session_factory, exc: Exception, receipt_no: str) -> None:
    # Domain errors are expected between polls; anything else is a bug
    severity = ErrorSeverity.WARNING if isinstance(exc, PawnshopError) else ErrorSeverity.ERROR
    async with session_factory() as log_db:
        await log_error(
            exc, db=log_db, severity=severity,
            source="tasks.poll_pending_payments", reference=receipt_no,
        )
        await log_db.commit()


async def sweep_pending_payments(session_factory, gateway, *, now: datetime | None = None) -> dict:
    """Poll every in-flight gateway payment, one transaction per payment."""
    cutoff = (now or datetime.now(timezone.utc)) - POLL_WINDOW
    async with session_factory() as db:
        result = await db.execute(
            select(Payment.id, Payment.receipt_no).where(
                Payment.provider.in_(GATEWAY_PROVIDERS),
                Payment.payment_status.in_(IN_FLIGHT_STATUSES),
                Payment.poll_url.is_not(None),
                Payment.created_at >= cutoff,
            )
        )
        pending = result.all()

    stats = {"polled": 0, "paid": 0, "errors": 0}
    for payment_id, receipt_no in pending:
        async with session_factory() as db:
            try:
                payment = await poll_payment(db, gateway, payment_id)
                await db.commit()
            except Exception as exc:
                await db.rollback()
                stats["errors"] += 1
                await _record_failure(session_factory, exc, receipt_no)
                continue
            stats["polled"] += 1
            if payment.payment_status == PaymentStatus.PAID:
                stats["paid"] += 1

    if pending:
        logger.info("Payment sweep: %s", stats)
    return stats


@celery_app.task(name="pawnshop.tasks.journal_tasks.poll_pending_payments")
def poll_pending_payments() -> dict:
    """Catch payments whose webhook never arrived."""

    async def _inner():
        gateway = build_gateway(GatewayConfig.from_settings())
        return await sweep_pending_payments(_get_async_session(), gateway)

    return _run(_inner)
