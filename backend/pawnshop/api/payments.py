"""Payment endpoints: create, poll, webhook, capture, refund and reads."""

import json
import logging
from typing import Optional
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, Query, Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from pawnshop.api.deps import get_gateway
from pawnshop.auth_utils import require_roles
from pawnshop.database import get_db
from pawnshop.exceptions import PawnshopError, ValidationFailed
from pawnshop.models.user import User, STAFF_ROLES, FINANCE_ROLES
from pawnshop.schemas import (
    PaymentCreate,
    PaymentResponse,
    PaymentUpdate,
    RefundRequest,
    envelope,
)
from pawnshop.services import payment_workflow
from pawnshop.services.error_logger import log_error
from pawnshop.services.gateway.adapter import PaymentGateway

logger = logging.getLogger(__name__)
router = APIRouter()
limiter = Limiter(key_func=get_remote_address)


def _payment_out(payment) -> dict:
    return PaymentResponse.model_validate(payment).model_dump(mode="json")


@router.post("", status_code=201)
async def create_payment(
    data: PaymentCreate,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    current_user: User = Depends(require_roles(*STAFF_ROLES)),
):
    try:
        created = await payment_workflow.create_payment(
            db, gateway, **data.model_dump(), actor_id=current_user.id,
        )
        return envelope(
            {
                "payment": _payment_out(created.payment),
                "redirect_url": created.redirect_url,
                "instructions": created.instructions,
            },
            message="Payment created",
            status=201,
        )
    except PawnshopError:
        raise
    except Exception as e:
        await log_error(e, source="api.payments.create_payment")
        raise


@router.get("")
async def list_payments(
    loan_id: Optional[int] = None,
    status: Optional[str] = None,
    provider: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*STAFF_ROLES)),
):
    items, pagination = await payment_workflow.list_payments(
        db, loan_id=loan_id, status=status, provider=provider, page=page, limit=limit,
    )
    return envelope([_payment_out(p) for p in items], pagination=pagination)


@router.post("/webhook")
@limiter.limit("120/minute")
async def payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Provider callback.  Unauthenticated; integrity comes from the message hash."""
    raw = await request.body()
    content_type = request.headers.get("content-type", "")
    try:
        if "application/json" in content_type:
            body = json.loads(raw or b"{}")
        else:
            body = dict(parse_qsl(raw.decode("utf-8"), keep_blank_values=True))
    except (ValueError, UnicodeDecodeError):
        raise ValidationFailed("Malformed webhook body")
    if not isinstance(body, dict):
        raise ValidationFailed("Malformed webhook body")

    payment = await payment_workflow.process_webhook(db, gateway, body)
    return envelope(
        {"receipt_no": payment.receipt_no, "payment_status": payment.payment_status.value},
        message="Webhook processed",
    )


@router.get("/receipt/{receipt_no}")
async def get_payment_by_receipt(
    receipt_no: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*STAFF_ROLES)),
):
    payment = await payment_workflow.get_payment_by_receipt(db, receipt_no)
    return envelope(_payment_out(payment))


@router.get("/{payment_id}")
async def get_payment(
    payment_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*STAFF_ROLES)),
):
    payment = await payment_workflow.get_payment(db, payment_id)
    return envelope(_payment_out(payment))


@router.patch("/{payment_id}")
async def update_payment(
    payment_id: int,
    data: PaymentUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*STAFF_ROLES)),
):
    payment = await payment_workflow.update_payment(
        db, payment_id, data.model_dump(exclude_unset=True)
    )
    return envelope(_payment_out(payment), message="Payment updated")


@router.post("/{payment_id}/poll")
async def poll_payment(
    payment_id: int,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    current_user: User = Depends(require_roles(*STAFF_ROLES)),
):
    payment = await payment_workflow.poll_payment(db, gateway, payment_id, actor_id=current_user.id)
    return envelope(_payment_out(payment))


@router.post("/{payment_id}/capture")
async def capture_payment(
    payment_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(*STAFF_ROLES)),
):
    payment = await payment_workflow.capture_payment(db, payment_id, actor_id=current_user.id)
    return envelope(_payment_out(payment), message="Payment captured")


@router.post("/{payment_id}/refund")
async def refund_payment(
    payment_id: int,
    data: RefundRequest,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    current_user: User = Depends(require_roles(*FINANCE_ROLES)),
):
    try:
        payment = await payment_workflow.refund_payment(
            db, gateway, payment_id,
            amount=data.amount, reason=data.reason, actor_id=current_user.id,
        )
        return envelope(_payment_out(payment), message="Refund recorded")
    except PawnshopError:
        raise
    except Exception as e:
        await log_error(e, source="api.payments.refund_payment", reference=str(payment_id))
        raise
