"""Shared fixtures: in-memory database, seeded loan/asset and a scripted gateway."""

import os

# Settings are read once at import time
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("GATEWAY_PROVIDER", "mock")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from decimal import Decimal  # noqa: E402
from typing import Any, Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy import select, func as sa_func  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from pawnshop.database import Base  # noqa: E402
import pawnshop.models  # noqa: E402,F401
from pawnshop.models.ledger import InventoryTransaction, LedgerEntry  # noqa: E402
from pawnshop.models.loan import (  # noqa: E402
    Asset,
    AssetCategory,
    AssetStatus,
    Currency,
    Loan,
    LoanStatus,
)
from pawnshop.models.user import User, UserRole  # noqa: E402
from pawnshop.services.gateway.adapter import (  # noqa: E402
    InitiateResult,
    LineItem,
    PaymentGateway,
    PollResult,
    WebhookEvent,
    normalize_phone,
)
from pawnshop.models.payment import MOBILE_PROVIDERS, PaymentProvider  # noqa: E402


# ═══════════════════════════════════════════════════════════════════════════
# Database
# ═══════════════════════════════════════════════════════════════════════════


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


async def count_rows(db: AsyncSession, model, *where) -> int:
    q = select(sa_func.count(model.id))
    if where:
        q = q.where(*where)
    return (await db.execute(q)).scalar_one()


async def txns(db: AsyncSession, *where) -> list[InventoryTransaction]:
    q = select(InventoryTransaction).order_by(InventoryTransaction.id)
    if where:
        q = q.where(*where)
    return list((await db.execute(q)).scalars().all())


async def ledger_rows(db: AsyncSession, *where) -> list[LedgerEntry]:
    q = select(LedgerEntry).order_by(LedgerEntry.id)
    if where:
        q = q.where(*where)
    return list((await db.execute(q)).scalars().all())


# ═══════════════════════════════════════════════════════════════════════════
# Seed data
# ═══════════════════════════════════════════════════════════════════════════


@pytest_asyncio.fixture
async def admin(db):
    user = User(
        email="admin@pawn.example",
        first_name="Tariro",
        last_name="Moyo",
        role=UserRole.SUPER_ADMIN_VENDOR,
    )
    db.add(user)
    await db.flush()
    return user


@pytest_asyncio.fixture
async def customer(db):
    user = User(
        email="customer@pawn.example",
        first_name="Farai",
        last_name="Ndlovu",
        phone="+263771234567",
        role=UserRole.CUSTOMER,
    )
    db.add(user)
    await db.flush()
    return user


async def make_asset(
    db: AsyncSession,
    owner: User,
    *,
    asset_no: str = "A001",
    status: AssetStatus = AssetStatus.PAWNED,
    evaluated_value: Optional[Decimal] = Decimal("80"),
) -> Asset:
    asset = Asset(
        asset_no=asset_no,
        owner_user_id=owner.id,
        category=AssetCategory.ELECTRONICS,
        status=status,
        evaluated_value=evaluated_value,
    )
    db.add(asset)
    await db.flush()
    return asset


async def make_loan(
    db: AsyncSession,
    customer: User,
    *,
    loan_no: str = "L001",
    principal: Decimal = Decimal("100"),
    balance: Optional[Decimal] = None,
    asset: Optional[Asset] = None,
    status: LoanStatus = LoanStatus.ACTIVE,
) -> Loan:
    loan = Loan(
        loan_no=loan_no,
        customer_user_id=customer.id,
        asset_id=asset.id if asset else None,
        principal_amount=principal,
        current_balance=principal if balance is None else balance,
        currency=Currency.USD,
        status=status,
    )
    db.add(loan)
    await db.flush()
    if asset is not None:
        asset.active_loan_id = loan.id
        await db.flush()
    return loan


@pytest_asyncio.fixture
async def asset(db, customer):
    return await make_asset(db, customer)


@pytest_asyncio.fixture
async def loan(db, customer, asset):
    return await make_loan(db, customer, asset=asset)


# ═══════════════════════════════════════════════════════════════════════════
# Gateway double
# ═══════════════════════════════════════════════════════════════════════════


class FakeGateway(PaymentGateway):
    """Scripted gateway: poll answers are consumed from *poll_statuses* in order."""

    def __init__(self, poll_statuses: Optional[list[str]] = None, refund_error: Optional[Exception] = None):
        self.poll_statuses = list(poll_statuses or ["Paid"])
        self.refund_error = refund_error
        self.initiated: list[dict[str, Any]] = []
        self.polled: list[str] = []
        self.refunded: list[tuple[Optional[str], Decimal]] = []

    @property
    def provider_name(self) -> str:
        return "fake"

    async def initiate(
        self,
        *,
        receipt_no: str,
        payer_email: Optional[str],
        line_item: LineItem,
        provider_code: PaymentProvider,
        payer_phone: Optional[str] = None,
    ) -> InitiateResult:
        if provider_code in MOBILE_PROVIDERS:
            normalize_phone(payer_phone)
        self.initiated.append({
            "receipt_no": receipt_no,
            "payer_email": payer_email,
            "amount": line_item.amount,
            "provider": provider_code,
            "payer_phone": payer_phone,
        })
        return InitiateResult(
            poll_url=f"https://gw.test/poll?guid={receipt_no}",
            redirect_url=f"https://gw.test/pay/{receipt_no}",
            provider_ref=receipt_no,
            instructions="Dial *151#" if provider_code in MOBILE_PROVIDERS else None,
        )

    async def poll(self, poll_url: str) -> PollResult:
        self.polled.append(poll_url)
        status = self.poll_statuses.pop(0) if len(self.poll_statuses) > 1 else self.poll_statuses[0]
        return PollResult(provider_status=status)

    def parse_webhook(self, body: dict[str, Any]) -> WebhookEvent:
        return WebhookEvent(
            reference=body.get("reference"),
            provider_status=body.get("status", ""),
            poll_url=body.get("pollurl"),
        )

    async def refund(self, *, provider_ref: Optional[str], amount: Decimal) -> Optional[str]:
        if self.refund_error is not None:
            raise self.refund_error
        self.refunded.append((provider_ref, amount))
        return f"RF-{provider_ref}"


@pytest.fixture
def gateway():
    return FakeGateway()
