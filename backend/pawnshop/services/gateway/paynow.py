"""Paynow (Zimbabwe) gateway adapter.

Paynow speaks form-encoded HTTP.  Every message carries a ``hash`` field:
SHA-512 over the concatenation of all other field values, in message order,
followed by the integration key, rendered as uppercase hex.

Web payments are initiated at ``initiatetransaction`` and answered with a
``browserurl`` the customer is redirected to.  Mobile-money payments
(EcoCash, OneMoney, Telecash) go to ``remotetransaction`` with the payer's
phone and method; the provider pushes a USSD prompt and answers with
``instructions`` instead of a redirect.
"""

import hashlib
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
from urllib.parse import parse_qsl, urlparse, parse_qs

import httpx

from pawnshop.exceptions import GatewayRejected, GatewayUnreachable
from pawnshop.models.payment import PaymentProvider, MOBILE_PROVIDERS
from pawnshop.services.gateway.adapter import (
    GatewayConfig,
    InitiateResult,
    LineItem,
    PaymentGateway,
    PollResult,
    WebhookEvent,
    normalize_phone,
)

logger = logging.getLogger(__name__)


def compute_hash(values: dict[str, Any], integration_key: str) -> str:
    payload = "".join(str(v) for k, v in values.items() if k.lower() != "hash")
    return hashlib.sha512((payload + integration_key).encode("utf-8")).hexdigest().upper()


def provider_ref_from(poll_url: Optional[str], fallback: Optional[str] = None) -> Optional[str]:
    """Extract the transaction guid from a poll URL.

    Paynow poll URLs look like ``.../PollTransaction.aspx?guid=<id>``; older
    integrations put the id in the last path segment.
    """
    if poll_url:
        parsed = urlparse(poll_url)
        guid = parse_qs(parsed.query).get("guid")
        if guid and guid[0]:
            return guid[0]
        segment = parsed.path.rstrip("/").rsplit("/", 1)[-1]
        if segment:
            return segment
    return fallback


def _to_decimal(value: Optional[str]) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(value)
    except InvalidOperation:
        return None


class PaynowGateway(PaymentGateway):
    """httpx-based client for the Paynow interface."""

    def __init__(self, config: GatewayConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport

    @property
    def provider_name(self) -> str:
        return "paynow"

    # ── helpers ──────────────────────────────────────────

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.config.timeout_seconds, transport=self._transport)

    def _sign(self, values: dict[str, Any]) -> dict[str, Any]:
        signed = dict(values)
        signed["hash"] = compute_hash(values, self.config.provider_key)
        return signed

    def _verify(self, values: dict[str, str], *, required: bool = False) -> None:
        received = values.get("hash")
        if received is None:
            # Error replies to our own calls are unsigned; callbacks never are
            if required:
                raise GatewayRejected("Paynow message is not signed")
            return
        expected = compute_hash(values, self.config.provider_key)
        if received.upper() != expected:
            raise GatewayRejected("Paynow response hash mismatch")

    async def _post(self, url: str, data: dict[str, Any]) -> dict[str, str]:
        try:
            async with self._client() as client:
                response = await client.post(url, data=data)
        except httpx.TimeoutException as exc:
            logger.warning("Paynow request to %s timed out", url)
            raise GatewayUnreachable("Payment gateway timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("Paynow request to %s failed: %s", url, exc)
            raise GatewayUnreachable(f"Payment gateway unreachable: {exc}") from exc

        if response.status_code >= 500:
            raise GatewayUnreachable(f"Payment gateway returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise GatewayRejected(f"Payment gateway returned HTTP {response.status_code}")
        return dict(parse_qsl(response.text, keep_blank_values=True))

    # ── public interface ─────────────────────────────────

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
        values: dict[str, Any] = {
            "resulturl": self.config.result_url,
            "returnurl": self.config.return_url,
            "reference": receipt_no,
            "amount": f"{Decimal(line_item.amount):.2f}",
            "id": self.config.provider_id,
            "additionalinfo": line_item.description,
            "authemail": payer_email or "",
        }
        if is_mobile:
            phone = normalize_phone(payer_phone)
            # Mobile checkout identifies the payer by a phone-derived email
            values["authemail"] = f"{phone}@{provider_code.value}.com"
            values["phone"] = phone
            values["method"] = provider_code.value
        values["status"] = "Message"

        url = self.config.remote_init_url if is_mobile else self.config.init_url
        logger.info(
            "Paynow initiate %s for %s via %s", receipt_no, values["amount"], provider_code.value
        )
        reply = await self._post(url, self._sign(values))

        if reply.get("status", "").lower() != "ok":
            message = reply.get("error") or "Payment gateway rejected the request"
            logger.warning("Paynow rejected %s: %s", receipt_no, message)
            raise GatewayRejected(message)
        self._verify(reply)

        poll_url = reply.get("pollurl")
        return InitiateResult(
            poll_url=poll_url,
            redirect_url=reply.get("browserurl"),
            provider_ref=provider_ref_from(poll_url, reply.get("paynowreference")),
            instructions=reply.get("instructions"),
            raw=reply,
        )

    async def poll(self, poll_url: str) -> PollResult:
        reply = await self._post(poll_url, {})
        self._verify(reply)
        return PollResult(
            provider_status=reply.get("status", ""),
            amount=_to_decimal(reply.get("amount")),
            raw=reply,
        )

    def parse_webhook(self, body: dict[str, Any]) -> WebhookEvent:
        values = {k: str(v) for k, v in body.items()}
        self._verify(values, required=True)
        return WebhookEvent(
            reference=values.get("reference"),
            provider_status=values.get("status", ""),
            poll_url=values.get("pollurl") or None,
            method=values.get("method"),
            amount=_to_decimal(values.get("amount")),
            provider_ref=values.get("paynowreference"),
        )
