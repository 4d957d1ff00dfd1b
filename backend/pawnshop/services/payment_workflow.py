"""Payment workflow: creation, gateway polling, webhooks, capture and refunds.

Status machine (anything else is ignored and logged):

    pending ─┬─► sent ─┬─► awaiting_confirmation ─┬─► awaiting_delivery ─► paid
             │         │                          ├─► paid
             │         └─► paid                   ├─► failed
             ├─► paid                             └─► cancelled
             ├─► failed
             └─► cancelled

``paid``, ``failed`` and ``cancelled`` are terminal; a paid payment only
accumulates refunds.  The first transition into ``paid`` is a conditional
UPDATE keyed on the prior status, so exactly one caller wins the capture
and runs the posting and the balance update.  Every later poll or webhook
that observes ``paid`` is a no-op.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from pawnshop.exceptions import (
    InvalidTransition,
    NotFound,
    PollUrlMissing,
    UnsupportedForProvider,
    ValidationFailed,
)
from pawnshop.models.loan import Currency, Loan
from pawnshop.models.payment import (
    GATEWAY_PROVIDERS,
    MOBILE_PROVIDERS,
    TERMINAL_STATUSES,
    Payment,
    PaymentProvider,
    PaymentStatus,
)
from pawnshop.models.user import User
from pawnshop.services.gateway.adapter import LineItem, PaymentGateway, normalize_phone
from pawnshop.services.identifiers import new_receipt_no
from pawnshop.services.ledger.posting_engine import post_repayment
from pawnshop.services.ledger.rules import to_money
from pawnshop.services.loan_balance import apply_payment
from pawnshop.services.pagination import paginate

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.SENT,
        PaymentStatus.AWAITING_CONFIRMATION,
        PaymentStatus.AWAITING_DELIVERY,
        PaymentStatus.PAID,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.SENT: frozenset({
        PaymentStatus.AWAITING_CONFIRMATION,
        PaymentStatus.AWAITING_DELIVERY,
        PaymentStatus.PAID,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.AWAITING_CONFIRMATION: frozenset({
        PaymentStatus.AWAITING_DELIVERY,
        PaymentStatus.PAID,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.AWAITING_DELIVERY: frozenset({
        PaymentStatus.PAID,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.PAID: frozenset(),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
}

COMPONENT_FIELDS = (
    "principal_component",
    "interest_component",
    "storage_component",
    "penalty_component",
)
IMMUTABLE_WHEN_PAID = frozenset({"amount", "currency", "provider", "loan_id"})
EDITABLE_FIELDS = frozenset({
    "notes",
    "payment_method_label",
    "payer_email",
    "payer_phone",
    "meta",
    "amount",
    "currency",
    "provider",
    "loan_id",
    *COMPONENT_FIELDS,
})


@dataclass
class PaymentCreated:
    payment: Payment
    redirect_url: Optional[str] = None
    instructions: Optional[str] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: PaymentStatus, new: PaymentStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


def _coerce(enum_cls, value: Any, label: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationFailed(f"Invalid {label}: {value!r}")


def validate_breakdown(amount: Any, components: dict[str, Any]) -> tuple[Decimal, dict[str, Decimal]]:
    """Check amount > 0, components >= 0 and sum(components) <= amount."""
    value = to_money(amount)
    if value <= 0:
        raise ValidationFailed("amount must be greater than zero")
    parts = {name: to_money(components.get(name) or 0, name) for name in COMPONENT_FIELDS}
    negative = [name for name, v in parts.items() if v < 0]
    if negative:
        raise ValidationFailed(
            "Payment components must not be negative",
            errors=[{"field": name, "message": "must be >= 0"} for name in negative],
        )
    total = sum(parts.values(), Decimal("0"))
    if total > value:
        raise ValidationFailed(f"Payment components ({total}) exceed the amount ({value})")
    return value, parts


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_payment(db: AsyncSession, payment_id: int) -> Payment:
    payment = await db.get(Payment, payment_id)
    if payment is None:
        raise NotFound(f"Payment {payment_id} not found")
    return payment


async def get_payment_by_receipt(db: AsyncSession, receipt_no: str) -> Payment:
    result = await db.execute(select(Payment).where(Payment.receipt_no == receipt_no))
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFound(f"Payment with receipt {receipt_no} not found")
    return payment


async def list_payments(
    db: AsyncSession,
    *,
    loan_id: Optional[int] = None,
    status: Optional[str] = None,
    provider: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
) -> tuple[list[Payment], dict[str, Any]]:
    query = select(Payment).order_by(Payment.id.desc())
    if loan_id is not None:
        query = query.where(Payment.loan_id == loan_id)
    if status:
        query = query.where(Payment.payment_status == _coerce(PaymentStatus, status, "payment status"))
    if provider:
        query = query.where(Payment.provider == _coerce(PaymentProvider, provider, "provider"))
    return await paginate(db, query, page=page, limit=limit)


# ---------------------------------------------------------------------------
# Capture
# ---------------------------------------------------------------------------

async def _capture(
    db: AsyncSession,
    payment: Payment,
    *,
    prior_status: PaymentStatus,
    actor_id: Optional[int] = None,
) -> bool:
    """Move *payment* to paid and run its side effects exactly once.

    Returns False when a concurrent caller already captured the payment.
    """
    now = _now()
    result = await db.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.payment_status == prior_status)
        .values(
            payment_status=PaymentStatus.PAID,
            captured_at=now,
            paid_at=payment.paid_at or now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.refresh(payment)
    if result.rowcount != 1:
        logger.info(
            "Payment %s already left %s; capture skipped", payment.receipt_no, prior_status.value
        )
        return False

    await post_repayment(db, payment.id, actor_id=actor_id)
    await apply_payment(db, payment)
    logger.info(
        "Captured payment %s (%s %s) on loan %s",
        payment.receipt_no, payment.amount, payment.currency.value, payment.loan_id,
    )
    return True


async def _apply_status(
    db: AsyncSession,
    payment: Payment,
    new_status: PaymentStatus,
    *,
    source: str,
    actor_id: Optional[int] = None,
) -> Payment:
    current = payment.payment_status
    if new_status == current:
        return payment
    if not can_transition(current, new_status):
        logger.info(
            "Ignoring %s transition %s -> %s for payment %s",
            source, current.value, new_status.value, payment.receipt_no,
        )
        return payment

    if new_status == PaymentStatus.PAID:
        await _capture(db, payment, prior_status=current, actor_id=actor_id)
        return payment

    result = await db.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.payment_status == current)
        .values(payment_status=new_status)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(payment)
    if result.rowcount == 1:
        logger.info(
            "Payment %s %s -> %s via %s", payment.receipt_no, current.value, new_status.value, source
        )
    return payment


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

async def create_payment(
    db: AsyncSession,
    gateway: Optional[PaymentGateway],
    *,
    loan_id: int,
    amount: Any,
    provider: Any,
    currency: Any = None,
    principal_component: Any = 0,
    interest_component: Any = 0,
    storage_component: Any = 0,
    penalty_component: Any = 0,
    payment_status: Any = None,
    receipt_no: Optional[str] = None,
    payer_phone: Optional[str] = None,
    payer_email: Optional[str] = None,
    description: Optional[str] = None,
    payment_method_label: Optional[str] = None,
    notes: Optional[str] = None,
    actor_id: Optional[int] = None,
) -> PaymentCreated:
    """Create a payment against a loan.

    Cash and bank transfers are stored as given; when created ``paid`` they
    are captured immediately.  Gateway providers are stored ``pending`` and
    initiated with the provider, whose poll URL and references are kept on
    the payment.
    """
    provider = _coerce(PaymentProvider, provider, "provider")
    value, parts = validate_breakdown(amount, {
        "principal_component": principal_component,
        "interest_component": interest_component,
        "storage_component": storage_component,
        "penalty_component": penalty_component,
    })
    requested_status = (
        _coerce(PaymentStatus, payment_status, "payment status")
        if payment_status else PaymentStatus.PENDING
    )

    if provider in MOBILE_PROVIDERS:
        payer_phone = normalize_phone(payer_phone)

    loan = await db.get(Loan, loan_id)
    if loan is None:
        raise NotFound(f"Loan {loan_id} not found")
    currency = _coerce(Currency, currency, "currency") if currency else loan.currency

    is_gateway = provider in GATEWAY_PROVIDERS
    if is_gateway and gateway is None:
        raise UnsupportedForProvider(f"No payment gateway configured for {provider.value}")
    if not is_gateway and requested_status not in (PaymentStatus.PENDING, PaymentStatus.PAID):
        raise ValidationFailed(
            f"A {provider.value} payment can only be created pending or paid"
        )

    payment = Payment(
        loan_id=loan.id,
        amount=value,
        currency=currency,
        provider=provider,
        payment_status=PaymentStatus.PENDING,
        receipt_no=receipt_no or await new_receipt_no(db),
        payer_phone=payer_phone,
        payer_email=payer_email,
        payment_method_label=payment_method_label,
        notes=notes,
        received_by=actor_id,
        refunds=[],
        **parts,
    )
    db.add(payment)
    await db.flush()
    logger.info(
        "Created %s payment %s for loan %s (%s %s)",
        provider.value, payment.receipt_no, loan.loan_no, value, currency.value,
    )

    if not is_gateway:
        if requested_status == PaymentStatus.PAID:
            await _capture(db, payment, prior_status=PaymentStatus.PENDING, actor_id=actor_id)
        else:
            await db.refresh(payment)
        return PaymentCreated(payment=payment)

    if not payer_email:
        customer = await db.get(User, loan.customer_user_id)
        payer_email = customer.email if customer else None

    initiated = await gateway.initiate(
        receipt_no=payment.receipt_no,
        payer_email=payer_email,
        line_item=LineItem(description=description or f"Loan {loan.loan_no} payment", amount=value),
        provider_code=provider,
        payer_phone=payer_phone,
    )
    payment.poll_url = initiated.poll_url
    payment.redirect_url = initiated.redirect_url
    payment.provider_ref = initiated.provider_ref
    payment.instructions = initiated.instructions
    payment.paynow_invoice_id = payment.receipt_no
    payment.payer_email = payer_email
    await db.flush()
    await db.refresh(payment)
    logger.info(
        "Initiated %s payment %s with gateway (ref %s)",
        provider.value, payment.receipt_no, payment.provider_ref,
    )
    return PaymentCreated(
        payment=payment,
        redirect_url=initiated.redirect_url,
        instructions=initiated.instructions,
    )


async def poll_payment(
    db: AsyncSession,
    gateway: PaymentGateway,
    payment_id: int,
    *,
    actor_id: Optional[int] = None,
) -> Payment:
    """Ask the gateway for the payment's status and apply it."""
    payment = await get_payment(db, payment_id)
    if payment.provider not in GATEWAY_PROVIDERS:
        raise UnsupportedForProvider(
            f"{payment.provider.value} payments are not settled through the gateway"
        )
    if payment.payment_status == PaymentStatus.PAID:
        return payment
    if not payment.poll_url:
        raise PollUrlMissing(f"Payment {payment.receipt_no} has no poll URL")

    polled = await gateway.poll(payment.poll_url)
    new_status = gateway.map_status(polled.provider_status)
    logger.info(
        "Polled payment %s: provider status %r -> %s",
        payment.receipt_no, polled.provider_status, new_status.value,
    )
    return await _apply_status(db, payment, new_status, source="poll", actor_id=actor_id)


async def _find_for_webhook(db: AsyncSession, event) -> Optional[Payment]:
    conditions = []
    for ref in {event.provider_ref, event.reference} - {None, ""}:
        conditions.append(Payment.provider_ref == ref)
    if event.reference:
        conditions.append(Payment.receipt_no == event.reference)
    if event.poll_url:
        conditions.append(Payment.poll_url == event.poll_url)
    if not conditions:
        return None
    result = await db.execute(select(Payment).where(or_(*conditions)).order_by(Payment.id).limit(1))
    return result.scalar_one_or_none()


async def process_webhook(
    db: AsyncSession, gateway: PaymentGateway, body: dict[str, Any]
) -> Payment:
    """Apply a provider callback.  Replaying a webhook leaves the state unchanged."""
    event = gateway.parse_webhook(body)
    payment = await _find_for_webhook(db, event)
    if payment is None:
        raise NotFound(f"No payment matches webhook reference {event.reference!r}")
    if payment.provider not in GATEWAY_PROVIDERS:
        raise UnsupportedForProvider(
            f"{payment.provider.value} payments are not settled through the gateway"
        )

    logger.info(
        "Webhook for payment %s: status %r", payment.receipt_no, event.provider_status
    )
    if payment.payment_status == PaymentStatus.PAID:
        return payment

    if event.poll_url and not payment.poll_url:
        payment.poll_url = event.poll_url
        await db.flush()
    if payment.poll_url:
        return await poll_payment(db, gateway, payment.id)

    new_status = gateway.map_status(event.provider_status)
    return await _apply_status(db, payment, new_status, source="webhook")


async def capture_payment(
    db: AsyncSession, payment_id: int, *, actor_id: Optional[int] = None
) -> Payment:
    """Mark a pending cash or bank-transfer payment as paid."""
    payment = await get_payment(db, payment_id)
    if payment.provider in GATEWAY_PROVIDERS:
        raise UnsupportedForProvider(
            f"{payment.provider.value} payments are captured by the gateway, not by hand"
        )
    if payment.payment_status == PaymentStatus.PAID:
        return payment
    if payment.payment_status in TERMINAL_STATUSES:
        raise InvalidTransition(
            f"Payment {payment.receipt_no} is {payment.payment_status.value} and cannot be captured"
        )
    await _capture(db, payment, prior_status=payment.payment_status, actor_id=actor_id)
    return payment


async def update_payment(
    db: AsyncSession, payment_id: int, changes: dict[str, Any]
) -> Payment:
    """Edit payment details.  Money and routing fields freeze once paid."""
    payment = await get_payment(db, payment_id)

    unknown = sorted(set(changes) - EDITABLE_FIELDS)
    if unknown:
        raise ValidationFailed(
            f"Fields cannot be updated: {', '.join(unknown)}",
            errors=[{"field": f, "message": "not editable"} for f in unknown],
        )

    changes = dict(changes)
    if "provider" in changes:
        changes["provider"] = _coerce(PaymentProvider, changes["provider"], "provider")
    if "currency" in changes:
        changes["currency"] = _coerce(Currency, changes["currency"], "currency")
    if "amount" in changes:
        changes["amount"] = to_money(changes["amount"])

    if payment.payment_status == PaymentStatus.PAID:
        frozen = sorted(
            f for f in IMMUTABLE_WHEN_PAID & set(changes)
            if changes[f] != getattr(payment, f)
        )
        frozen += sorted(f for f in COMPONENT_FIELDS if f in changes)
        if frozen:
            raise ValidationFailed(
                f"Paid payments cannot change: {', '.join(frozen)}",
                errors=[{"field": f, "message": "immutable once paid"} for f in frozen],
            )

    if "loan_id" in changes and await db.get(Loan, changes["loan_id"]) is None:
        raise NotFound(f"Loan {changes['loan_id']} not found")
    if "amount" in changes or any(f in changes for f in COMPONENT_FIELDS):
        value, parts = validate_breakdown(
            changes.get("amount", payment.amount),
            {f: changes.get(f, getattr(payment, f)) for f in COMPONENT_FIELDS},
        )
        changes = {**changes, "amount": value, **parts}

    for key, value in changes.items():
        setattr(payment, key, value)
    await db.flush()
    logger.info("Updated payment %s (%s)", payment.receipt_no, ", ".join(sorted(changes)))
    return payment


async def refund_payment(
    db: AsyncSession,
    gateway: Optional[PaymentGateway],
    payment_id: int,
    *,
    amount: Any = None,
    actor_id: Optional[int] = None,
    reason: Optional[str] = None,
) -> Payment:
    """Append a refund to a paid payment.

    The local record is the source of truth: a failed provider-side refund
    is logged and the refund is still recorded.
    """
    result = await db.execute(
        select(Payment)
        .where(Payment.id == payment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFound(f"Payment {payment_id} not found")
    if payment.payment_status != PaymentStatus.PAID:
        raise InvalidTransition(
            f"Payment {payment.receipt_no} is {payment.payment_status.value}; only paid payments can be refunded"
        )

    remaining = to_money(payment.amount) - payment.refunded_total
    value = remaining if amount is None else to_money(amount)
    if value <= 0:
        raise ValidationFailed("Refund amount must be greater than zero")
    if value > remaining:
        raise ValidationFailed(
            f"Refund of {value} exceeds the refundable balance of {remaining}"
        )

    provider_ref = None
    if gateway is not None and payment.provider in GATEWAY_PROVIDERS:
        try:
            provider_ref = await gateway.refund(provider_ref=payment.provider_ref, amount=value)
        except Exception as exc:
            logger.warning(
                "Provider refund for payment %s failed; recording locally: %s",
                payment.receipt_no, exc,
            )

    record = {
        "amount": str(value),
        "provider_ref": provider_ref,
        "at": _now().isoformat(),
        "refunded_by": actor_id,
    }
    if reason:
        record["reason"] = reason
    # Reassign so the JSON column is marked dirty
    payment.refunds = [*(payment.refunds or []), record]
    await db.flush()
    logger.info(
        "Refunded %s on payment %s (remaining %s)", value, payment.receipt_no, remaining - value
    )
    return payment
