"""Tests for the periodic payment sweep and the beat schedule."""

from typing import Optional
from unittest.mock import patch

import pytest
from sqlalchemy import select

from pawnshop.exceptions import GatewayUnreachable
from pawnshop.models.error_log import ErrorLog, ErrorSeverity
from pawnshop.models.payment import PaymentStatus
from pawnshop.services.gateway.adapter import PollResult
from pawnshop.services.payment_workflow import create_payment
from pawnshop.tasks import celery_app, journal_tasks
from pawnshop.tasks.journal_tasks import sweep_pending_payments

from conftest import FakeGateway


class FlakyGateway(FakeGateway):
    """Reports Paid, except for poll URLs containing *broken*."""

    def __init__(self, broken: Optional[str] = None):
        super().__init__(["Paid"])
        self.broken = broken

    async def poll(self, poll_url: str) -> PollResult:
        if self.broken and self.broken in poll_url:
            raise GatewayUnreachable("Payment gateway timed out")
        return await super().poll(poll_url)


class TestBeatSchedule:

    def test_tasks_registered(self):
        assert "pawnshop.tasks.journal_tasks.reconcile_ledger" in celery_app.tasks
        assert "pawnshop.tasks.journal_tasks.poll_pending_payments" in celery_app.tasks

    def test_schedule(self):
        tasks = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
        assert tasks == {
            "pawnshop.tasks.journal_tasks.reconcile_ledger",
            "pawnshop.tasks.journal_tasks.poll_pending_payments",
        }


class TestSweepPendingPayments:

    @pytest.mark.asyncio
    async def test_settles_in_flight_payments(self, db, session_factory, loan):
        gateway = FakeGateway()
        mobile = (await create_payment(
            db, gateway, loan_id=loan.id, amount=25, provider="ecocash",
            payer_phone="+263771234567",
        )).payment
        cash = (await create_payment(db, None, loan_id=loan.id, amount=10, provider="cash")).payment
        await db.commit()

        stats = await sweep_pending_payments(session_factory, FlakyGateway())
        assert stats == {"polled": 1, "paid": 1, "errors": 0}

        await db.refresh(mobile)
        await db.refresh(cash)
        await db.refresh(loan)
        assert mobile.payment_status == PaymentStatus.PAID
        assert cash.payment_status == PaymentStatus.PENDING
        assert loan.current_balance == 75

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_sweep(self, db, session_factory, loan):
        gateway = FakeGateway()
        first = (await create_payment(
            db, gateway, loan_id=loan.id, amount=10, provider="ecocash",
            payer_phone="+263771234567",
        )).payment
        second = (await create_payment(
            db, gateway, loan_id=loan.id, amount=15, provider="paynow",
        )).payment
        await db.commit()

        stats = await sweep_pending_payments(session_factory, FlakyGateway(broken=first.receipt_no))
        assert stats == {"polled": 1, "paid": 1, "errors": 1}

        await db.refresh(first)
        await db.refresh(second)
        assert first.payment_status == PaymentStatus.PENDING
        assert second.payment_status == PaymentStatus.PAID

        [logged] = (await db.execute(select(ErrorLog))).scalars().all()
        assert logged.reference == first.receipt_no
        assert logged.error_kind == "gateway_unreachable"
        assert logged.severity == ErrorSeverity.WARNING

    @pytest.mark.asyncio
    async def test_unexpected_error_is_logged_and_skipped(self, db, session_factory, loan):
        gateway = FakeGateway()
        first = (await create_payment(
            db, gateway, loan_id=loan.id, amount=10, provider="ecocash",
            payer_phone="+263771234567",
        )).payment
        second = (await create_payment(
            db, gateway, loan_id=loan.id, amount=15, provider="paynow",
        )).payment
        await db.commit()

        real_poll = journal_tasks.poll_payment

        async def poll(session, gw, payment_id):
            if payment_id == first.id:
                raise RuntimeError("connection reset by peer")
            return await real_poll(session, gw, payment_id)

        with patch.object(journal_tasks, "poll_payment", new=poll):
            stats = await sweep_pending_payments(session_factory, FlakyGateway())
        assert stats == {"polled": 1, "paid": 1, "errors": 1}

        await db.refresh(first)
        await db.refresh(second)
        assert first.payment_status == PaymentStatus.PENDING
        assert second.payment_status == PaymentStatus.PAID

        [logged] = (await db.execute(select(ErrorLog))).scalars().all()
        assert logged.reference == first.receipt_no
        assert logged.error_kind == "unhandled"
        assert logged.severity == ErrorSeverity.ERROR
