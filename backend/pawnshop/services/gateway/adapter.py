"""Abstract payment gateway adapter, status mapping and factory.

The gateway configuration is process-wide and read-only once built: the
application builds one :class:`GatewayConfig` at startup and hands the
resulting adapter to the payment workflow explicitly.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from pawnshop.config import settings
from pawnshop.exceptions import InvalidPhone
from pawnshop.models.payment import PaymentProvider, PaymentStatus


class GatewayConfigError(RuntimeError):
    """Gateway credentials are missing or the provider is unknown."""


@dataclass(frozen=True)
class GatewayConfig:
    provider: str
    provider_id: str
    provider_key: str
    result_url: str
    return_url: str
    init_url: str
    remote_init_url: str
    timeout_seconds: float = 15.0

    @classmethod
    def from_settings(cls, s=settings) -> "GatewayConfig":
        return cls(
            provider=s.gateway_provider.lower(),
            provider_id=s.gateway_id,
            provider_key=s.gateway_key,
            result_url=s.gateway_result_url,
            return_url=s.gateway_return_url,
            init_url=s.gateway_init_url,
            remote_init_url=s.gateway_remote_init_url,
            timeout_seconds=s.gateway_timeout_seconds,
        )


@dataclass
class LineItem:
    description: str
    amount: Decimal


@dataclass
class InitiateResult:
    poll_url: Optional[str]
    redirect_url: Optional[str]
    provider_ref: Optional[str]
    instructions: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class PollResult:
    provider_status: str
    amount: Optional[Decimal] = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookEvent:
    reference: Optional[str]
    provider_status: str
    poll_url: Optional[str] = None
    method: Optional[str] = None
    amount: Optional[Decimal] = None
    provider_ref: Optional[str] = None


# ---------------------------------------------------------------------------
# Status mapping
# ---------------------------------------------------------------------------

# Checked in order; the first substring found wins
_STATUS_TABLE: tuple[tuple[tuple[str, ...], PaymentStatus], ...] = (
    (("paid", "completed"), PaymentStatus.PAID),
    (("awaiting delivery",), PaymentStatus.AWAITING_DELIVERY),
    (("awaiting confirmation",), PaymentStatus.AWAITING_CONFIRMATION),
    (("sent", "created"), PaymentStatus.SENT),
    (("cancel",), PaymentStatus.CANCELLED),
    (("fail",), PaymentStatus.FAILED),
)


def map_status(provider_status: Optional[str]) -> PaymentStatus:
    """Map a free-form provider status string to the internal enumeration."""
    value = (provider_status or "").strip().lower()
    for needles, status in _STATUS_TABLE:
        if any(n in value for n in needles):
            return status
    return PaymentStatus.PENDING


# ---------------------------------------------------------------------------
# Phone validation
# ---------------------------------------------------------------------------

# Zimbabwe mobile: 263 7[1378] + seven digits (Econet, NetOne, Telecel)
_MOBILE_RE = re.compile(r"^2637[1378]\d{7}$")


def normalize_phone(phone: Optional[str]) -> str:
    """Return the digits of *phone* if it is a valid mobile number, else raise."""
    digits = re.sub(r"\D", "", phone or "")
    if not _MOBILE_RE.match(digits):
        raise InvalidPhone(
            f"Invalid mobile number {phone!r}: expected +263 7[1378] followed by 7 digits"
        )
    return digits


# ---------------------------------------------------------------------------
# Adapter interface
# ---------------------------------------------------------------------------


class PaymentGateway(ABC):
    """Abstract interface for payment gateway integrations."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        ...

    @abstractmethod
    async def initiate(
        self,
        *,
        receipt_no: str,
        payer_email: Optional[str],
        line_item: LineItem,
        provider_code: PaymentProvider,
        payer_phone: Optional[str] = None,
    ) -> InitiateResult:
        """Create a provider payment.

        Raises InvalidPhone for mobile providers with a bad number and
        GatewayRejected when the provider declines the request.
        """
        ...

    @abstractmethod
    async def poll(self, poll_url: str) -> PollResult:
        """Fetch the current provider status.  Raises GatewayUnreachable."""
        ...

    @abstractmethod
    def parse_webhook(self, body: dict[str, Any]) -> WebhookEvent:
        ...

    async def refund(self, *, provider_ref: Optional[str], amount: Decimal) -> Optional[str]:
        """Request a provider-side refund; returns the provider refund reference.

        Providers without a refund API leave the default, which records
        nothing at the provider.
        """
        return None

    def map_status(self, provider_status: Optional[str]) -> PaymentStatus:
        return map_status(provider_status)


def build_gateway(config: GatewayConfig) -> PaymentGateway:
    """Factory that returns the configured gateway adapter."""
    if config.provider == "mock":
        from pawnshop.services.gateway.mock_gateway import MockGateway
        return MockGateway()
    if config.provider == "paynow":
        if not config.provider_id or not config.provider_key:
            raise GatewayConfigError("GATEWAY_ID and GATEWAY_KEY must be set for the paynow gateway")
        from pawnshop.services.gateway.paynow import PaynowGateway
        return PaynowGateway(config)
    raise GatewayConfigError(f"Unknown gateway provider: {config.provider}")
