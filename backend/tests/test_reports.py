"""Report tests: profit and loss, cash flow and trial balance over a seeded period."""

from datetime import date, datetime, timedelta, timezone

import pytest
import pytest_asyncio

from pawnshop.exceptions import ValidationFailed
from pawnshop.models.loan import AssetStatus
from pawnshop.services.ledger.ledger_service import create_ledger_entry
from pawnshop.services.ledger.posting_engine import (
    post_adjustment,
    post_asset_sale,
    post_expense,
    post_loan_disbursement,
)
from pawnshop.services.ledger.reports_service import (
    REPORT_REGISTRY,
    cash_flow,
    period_bounds,
    profit_loss,
    trial_balance,
)
from pawnshop.services.payment_workflow import create_payment

from conftest import make_asset


def _today() -> date:
    return datetime.now(timezone.utc).date()


@pytest_asyncio.fixture
async def seeded(db, loan, customer):
    """Disbursement 100, payment 30+10, sale 120 (cost 80), rent 50, adjustment +5."""
    await post_loan_disbursement(db, loan.id)
    await create_payment(
        db, None, loan_id=loan.id, amount=40, provider="cash", payment_status="paid",
        principal_component=30, interest_component=10,
    )
    sold = await make_asset(db, customer, asset_no="A002", status=AssetStatus.SOLD)
    await post_asset_sale(db, sold.id, 120)
    await post_expense(db, 50, "rent")
    await post_adjustment(db, 5)
    # Outside the reporting period
    await post_expense(db, 999, "rent", occurred_at=datetime(2020, 1, 1, tzinfo=timezone.utc))
    return db


class TestPeriodBounds:

    def test_inclusive_day(self):
        start, end = period_bounds(date(2026, 3, 1), date(2026, 3, 1))
        assert start == datetime(2026, 3, 1, tzinfo=timezone.utc)
        assert end.date() == date(2026, 3, 1)
        assert end.hour == 23

    def test_reversed_range(self):
        with pytest.raises(ValidationFailed):
            period_bounds(date(2026, 3, 2), date(2026, 3, 1))

    def test_registry(self):
        assert set(REPORT_REGISTRY) == {"profit_loss", "cash_flow", "trial_balance"}


class TestProfitLoss:

    @pytest.mark.asyncio
    async def test_sections_and_metrics(self, seeded):
        report = await profit_loss(seeded, date_from=_today(), date_to=_today())

        revenue = {line["category"]: line["amount"] for line in report["sections"]["revenue"]}
        assert revenue == {"interest_income": 10.0, "asset_sale_revenue": 120.0}
        assert report["totals"]["total_revenue"] == 130.0
        assert report["totals"]["total_cogs"] == 80.0
        assert report["totals"]["total_operating_expenses"] == 100.0
        assert report["totals"]["total_other_expenses"] == 50.0
        assert report["totals"]["total_other_income"] == 0.0

        metrics = report["profit_metrics"]
        assert metrics["gross_profit"] == 50.0
        assert metrics["operating_profit"] == -50.0
        assert metrics["net_profit"] == -100.0
        assert metrics["gross_margin"] == 38.46
        assert metrics["net_margin"] == -76.92

    @pytest.mark.asyncio
    async def test_other_currency_is_empty(self, seeded):
        report = await profit_loss(seeded, date_from=_today(), date_to=_today(), currency="ZWL")
        assert report["totals"]["total_revenue"] == 0.0
        assert report["profit_metrics"]["gross_margin"] == 0.0

    @pytest.mark.asyncio
    async def test_invalid_currency(self, db):
        with pytest.raises(ValidationFailed):
            await profit_loss(db, date_from=_today(), date_to=_today(), currency="EUR")


class TestCashFlow:

    @pytest.mark.asyncio
    async def test_groups(self, seeded):
        report = await cash_flow(seeded, date_from=_today(), date_to=_today())
        assert report["operating"]["total"] == -10.0
        assert report["investing"]["total"] == 120.0
        assert report["financing"]["total"] == -95.0
        assert report["total_inflow"] == 165.0
        assert report["total_outflow"] == -150.0
        assert report["net_cash_flow"] == 15.0

        operating = {a["type"] for a in report["operating"]["activities"]}
        assert operating == {"repayment", "interest_income", "expense"}

    @pytest.mark.asyncio
    async def test_older_period_holds_only_old_rows(self, seeded):
        report = await cash_flow(seeded, date_from=date(2020, 1, 1), date_to=date(2020, 1, 31))
        assert report["operating"]["total"] == -999.0
        assert report["net_cash_flow"] == -999.0


class TestTrialBalance:

    @pytest.mark.asyncio
    async def test_debits_and_credits(self, seeded):
        report = await trial_balance(seeded, date_from=_today(), date_to=_today())
        rows = {r["category"]: r for r in report["trial_balance"]}

        assert rows["loan_disbursement"]["debit"] == 100.0
        assert rows["loan_principal_repayment"]["credit"] == 30.0
        assert rows["asset_sale_cogs"]["debit"] == 80.0
        assert rows["asset_sale_revenue"]["credit"] == 120.0
        assert report["totals"]["debit"] == 230.0
        assert report["totals"]["credit"] == 165.0
        assert report["is_balanced"] is False

    @pytest.mark.asyncio
    async def test_balanced_within_tolerance(self, db):
        when = datetime.now(timezone.utc)
        await create_ledger_entry(db, category="adjustment", amount="10.00", entry_date=when)
        await create_ledger_entry(db, category="adjustment", amount="-10.00", entry_date=when)
        report = await trial_balance(db, date_from=_today(), date_to=_today())
        assert report["is_balanced"] is True
        assert report["trial_balance"][0]["count"] == 2

    @pytest.mark.asyncio
    async def test_empty_period(self, db):
        yesterday = _today() - timedelta(days=1)
        report = await trial_balance(db, date_from=yesterday, date_to=yesterday)
        assert report["trial_balance"] == []
        assert report["is_balanced"] is True
