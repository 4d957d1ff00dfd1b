"""Mock payment gateway for development and demos.

Every initiation succeeds and yields deterministic URLs derived from the
receipt number.  Polling reports ``Paid`` so a pending payment settles on
its first poll.
"""

import hashlib
import logging
from decimal import Decimal
from typing import Any, Optional

from pawnshop.models.payment import PaymentProvider, MOBILE_PROVIDERS
from pawnshop.services.gateway.adapter import (
    InitiateResult,
    LineItem,
    PaymentGateway,
    PollResult,
    WebhookEvent,
    normalize_phone,
)

logger = logging.getLogger(__name__)

_BASE = "https://gateway.mock.local"


class MockGateway(PaymentGateway):

    def __init__(self, poll_status: str = "Paid"):
        self.poll_status = poll_status

    @property
    def provider_name(self) -> str:
        return "mock"

    async def initiate(
        self,
        *,
        receipt_no: str,
        payer_email: Optional[str],
        line_item: LineItem,
        provider_code: PaymentProvider,
        payer_phone: Optional[str] = None,
    ) -> InitiateResult:
        is_mobile = provider_code in MOBILE_PROVIDERS
        if is_mobile:
            normalize_phone(payer_phone)
        guid = hashlib.sha1(receipt_no.encode()).hexdigest()[:16]
        logger.info("Mock gateway initiate %s (%s)", receipt_no, line_item.amount)
        return InitiateResult(
            poll_url=f"{_BASE}/poll?guid={guid}",
            redirect_url=None if is_mobile else f"{_BASE}/pay/{guid}",
            provider_ref=guid,
            instructions="Approve the prompt on your handset" if is_mobile else None,
            raw={"status": "Ok", "reference": receipt_no},
        )

    async def poll(self, poll_url: str) -> PollResult:
        return PollResult(provider_status=self.poll_status, raw={"pollurl": poll_url})

    def parse_webhook(self, body: dict[str, Any]) -> WebhookEvent:
        amount = body.get("amount")
        return WebhookEvent(
            reference=body.get("reference"),
            provider_status=str(body.get("status", "")),
            poll_url=body.get("pollurl") or None,
            method=body.get("method"),
            amount=Decimal(str(amount)) if amount not in (None, "") else None,
            provider_ref=body.get("paynowreference"),
        )
