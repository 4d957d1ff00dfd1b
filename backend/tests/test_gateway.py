"""Tests for the gateway adapter: status mapping, phone rules, factory and Paynow wire format."""

from decimal import Decimal
from urllib.parse import parse_qsl, urlencode

import httpx
import pytest

from pawnshop.exceptions import GatewayRejected, GatewayUnreachable, InvalidPhone
from pawnshop.models.payment import PaymentProvider, PaymentStatus
from pawnshop.services.gateway import (
    GatewayConfig,
    GatewayConfigError,
    LineItem,
    build_gateway,
    map_status,
    normalize_phone,
)
from pawnshop.services.gateway.mock_gateway import MockGateway
from pawnshop.services.gateway.paynow import PaynowGateway, compute_hash, provider_ref_from

KEY = "3e9fed89-60e1-4ce5-ab6e-6b1eb2d4f977"


def _config(**overrides) -> GatewayConfig:
    values = dict(
        provider="paynow",
        provider_id="1201",
        provider_key=KEY,
        result_url="https://pawn.example/api/payments/webhook",
        return_url="https://pawn.example/return",
        init_url="https://paynow.test/interface/initiatetransaction",
        remote_init_url="https://paynow.test/interface/remotetransaction",
        timeout_seconds=5.0,
    )
    values.update(overrides)
    return GatewayConfig(**values)


def _signed_reply(values: dict) -> str:
    return urlencode({**values, "hash": compute_hash(values, KEY)})


# ===================================================================
# Status mapping
# ===================================================================


class TestMapStatus:

    @pytest.mark.parametrize("raw,expected", [
        ("Paid", PaymentStatus.PAID),
        ("paid", PaymentStatus.PAID),
        ("Completed", PaymentStatus.PAID),
        ("Awaiting Delivery", PaymentStatus.AWAITING_DELIVERY),
        ("Awaiting Confirmation", PaymentStatus.AWAITING_CONFIRMATION),
        ("Sent", PaymentStatus.SENT),
        ("Created", PaymentStatus.SENT),
        ("Cancelled", PaymentStatus.CANCELLED),
        ("Failed", PaymentStatus.FAILED),
        ("Disputed", PaymentStatus.PENDING),
        ("", PaymentStatus.PENDING),
        (None, PaymentStatus.PENDING),
    ])
    def test_mapping(self, raw, expected):
        assert map_status(raw) == expected

    def test_adapter_delegates(self):
        assert MockGateway().map_status("  PAID ") == PaymentStatus.PAID


# ===================================================================
# Phone validation
# ===================================================================


class TestNormalizePhone:

    @pytest.mark.parametrize("phone", [
        "+263771234567", "263771234567", "+263 78 123 4567", "263-73-123-4567", "+263711234567",
    ])
    def test_valid(self, phone):
        digits = normalize_phone(phone)
        assert digits.startswith("2637") and len(digits) == 12

    @pytest.mark.parametrize("phone", [
        "0771234567", "+26377123456", "+263791234567", "+263641234567", "", None,
    ])
    def test_invalid(self, phone):
        with pytest.raises(InvalidPhone):
            normalize_phone(phone)


# ===================================================================
# Factory
# ===================================================================


class TestBuildGateway:

    def test_mock(self):
        assert isinstance(build_gateway(_config(provider="mock")), MockGateway)

    def test_paynow(self):
        gw = build_gateway(_config())
        assert isinstance(gw, PaynowGateway)
        assert gw.provider_name == "paynow"

    def test_paynow_missing_credentials(self):
        with pytest.raises(GatewayConfigError):
            build_gateway(_config(provider_key=""))

    def test_unknown_provider(self):
        with pytest.raises(GatewayConfigError, match="Unknown"):
            build_gateway(_config(provider="stripe"))


# ===================================================================
# Paynow wire format
# ===================================================================


class TestPaynowHash:

    def test_hash_is_uppercase_sha512_of_values_then_key(self):
        import hashlib
        values = {"id": "1201", "reference": "RCPT26031234", "amount": "25.00"}
        expected = hashlib.sha512(f"1201RCPT2603123425.00{KEY}".encode()).hexdigest().upper()
        assert compute_hash(values, KEY) == expected

    def test_hash_field_is_excluded(self):
        values = {"id": "1", "hash": "whatever"}
        assert compute_hash(values, KEY) == compute_hash({"id": "1"}, KEY)

    def test_provider_ref_from_guid(self):
        url = "https://www.paynow.co.zw/Interface/CheckPayment/?guid=abc-123"
        assert provider_ref_from(url) == "abc-123"

    def test_provider_ref_from_path(self):
        assert provider_ref_from("https://paynow.test/poll/xyz789") == "xyz789"

    def test_provider_ref_fallback(self):
        assert provider_ref_from(None, "8855") == "8855"


class TestPaynowInitiate:

    @pytest.mark.asyncio
    async def test_mobile_initiate_wire_format(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["form"] = dict(parse_qsl(request.content.decode()))
            captured["order"] = [k for k, _ in parse_qsl(request.content.decode())]
            return httpx.Response(200, text=_signed_reply({
                "status": "Ok",
                "instructions": "Dial *151*2*4# and enter your PIN",
                "paynowreference": "8855",
                "pollurl": "https://paynow.test/Interface/CheckPayment/?guid=g-1",
            }))

        gw = PaynowGateway(_config(), transport=httpx.MockTransport(handler))
        result = await gw.initiate(
            receipt_no="RCPT26031234",
            payer_email=None,
            line_item=LineItem(description="Loan L001 payment", amount=Decimal("25")),
            provider_code=PaymentProvider.ECOCASH,
            payer_phone="+263771234567",
        )

        form = captured["form"]
        assert captured["url"] == "https://paynow.test/interface/remotetransaction"
        assert captured["order"] == [
            "resulturl", "returnurl", "reference", "amount", "id", "additionalinfo",
            "authemail", "phone", "method", "status", "hash",
        ]
        assert form["amount"] == "25.00"
        assert form["phone"] == "263771234567"
        assert form["method"] == "ecocash"
        assert form["authemail"] == "263771234567@ecocash.com"
        assert form["status"] == "Message"
        unsigned = {k: v for k, v in form.items() if k != "hash"}
        assert form["hash"] == compute_hash(unsigned, KEY)

        assert result.poll_url.endswith("guid=g-1")
        assert result.provider_ref == "g-1"
        assert result.redirect_url is None
        assert result.instructions.startswith("Dial")

    @pytest.mark.asyncio
    async def test_web_initiate_uses_browser_url(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path.endswith("initiatetransaction")
            form = dict(parse_qsl(request.content.decode()))
            assert "phone" not in form
            assert form["authemail"] == "payer@pawn.example"
            return httpx.Response(200, text=_signed_reply({
                "status": "Ok",
                "browserurl": "https://paynow.test/Payment/ConfirmPayment/9",
                "pollurl": "https://paynow.test/Interface/CheckPayment/?guid=g-9",
            }))

        gw = PaynowGateway(_config(), transport=httpx.MockTransport(handler))
        result = await gw.initiate(
            receipt_no="RCPT26039999",
            payer_email="payer@pawn.example",
            line_item=LineItem(description="Loan L001 payment", amount=Decimal("10.5")),
            provider_code=PaymentProvider.PAYNOW,
        )
        assert result.redirect_url == "https://paynow.test/Payment/ConfirmPayment/9"
        assert result.provider_ref == "g-9"

    @pytest.mark.asyncio
    async def test_invalid_phone_never_calls_provider(self):
        def handler(request):  # pragma: no cover
            raise AssertionError("provider must not be called")

        gw = PaynowGateway(_config(), transport=httpx.MockTransport(handler))
        with pytest.raises(InvalidPhone):
            await gw.initiate(
                receipt_no="R1",
                payer_email=None,
                line_item=LineItem(description="x", amount=Decimal("1")),
                provider_code=PaymentProvider.ONEMONEY,
                payer_phone="0771234567",
            )

    @pytest.mark.asyncio
    async def test_provider_error_is_rejected(self):
        def handler(request):
            return httpx.Response(200, text=urlencode({"status": "Error", "error": "Invalid amount"}))

        gw = PaynowGateway(_config(), transport=httpx.MockTransport(handler))
        with pytest.raises(GatewayRejected, match="Invalid amount"):
            await gw.initiate(
                receipt_no="R1",
                payer_email="a@b.c",
                line_item=LineItem(description="x", amount=Decimal("1")),
                provider_code=PaymentProvider.PAYNOW,
            )

    @pytest.mark.asyncio
    async def test_bad_response_hash_is_rejected(self):
        def handler(request):
            return httpx.Response(200, text=urlencode({"status": "Ok", "pollurl": "u", "hash": "BAD"}))

        gw = PaynowGateway(_config(), transport=httpx.MockTransport(handler))
        with pytest.raises(GatewayRejected, match="hash"):
            await gw.initiate(
                receipt_no="R1",
                payer_email="a@b.c",
                line_item=LineItem(description="x", amount=Decimal("1")),
                provider_code=PaymentProvider.PAYNOW,
            )


class TestPaynowPoll:

    @pytest.mark.asyncio
    async def test_poll_returns_provider_status(self):
        def handler(request):
            return httpx.Response(200, text=_signed_reply({
                "reference": "RCPT26031234", "amount": "25.00", "status": "Paid",
            }))

        gw = PaynowGateway(_config(), transport=httpx.MockTransport(handler))
        result = await gw.poll("https://paynow.test/Interface/CheckPayment/?guid=g-1")
        assert result.provider_status == "Paid"
        assert result.amount == Decimal("25.00")

    @pytest.mark.asyncio
    async def test_server_error_is_unreachable(self):
        gw = PaynowGateway(
            _config(), transport=httpx.MockTransport(lambda r: httpx.Response(503, text="")),
        )
        with pytest.raises(GatewayUnreachable):
            await gw.poll("https://paynow.test/poll")

    @pytest.mark.asyncio
    async def test_connection_error_is_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        gw = PaynowGateway(_config(), transport=httpx.MockTransport(handler))
        with pytest.raises(GatewayUnreachable):
            await gw.poll("https://paynow.test/poll")

    @pytest.mark.asyncio
    async def test_timeout_is_unreachable(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        gw = PaynowGateway(_config(), transport=httpx.MockTransport(handler))
        with pytest.raises(GatewayUnreachable, match="timed out"):
            await gw.poll("https://paynow.test/poll")


class TestPaynowWebhook:

    def test_parse_signed_webhook(self):
        values = {
            "reference": "RCPT26031234",
            "paynowreference": "8855",
            "amount": "25.00",
            "status": "Paid",
            "pollurl": "https://paynow.test/Interface/CheckPayment/?guid=g-1",
        }
        body = {**values, "hash": compute_hash(values, KEY)}
        event = PaynowGateway(_config()).parse_webhook(body)
        assert event.reference == "RCPT26031234"
        assert event.provider_status == "Paid"
        assert event.provider_ref == "8855"
        assert event.amount == Decimal("25.00")

    def test_tampered_webhook_is_rejected(self):
        values = {"reference": "RCPT26031234", "status": "Paid"}
        body = {**values, "hash": compute_hash(values, KEY), "amount": "1.00"}
        with pytest.raises(GatewayRejected):
            PaynowGateway(_config()).parse_webhook(body)

    def test_unsigned_webhook_is_rejected(self):
        with pytest.raises(GatewayRejected, match="not signed"):
            PaynowGateway(_config()).parse_webhook({"reference": "RCPT26031234", "status": "Paid"})


class TestMockGateway:

    @pytest.mark.asyncio
    async def test_deterministic_urls(self):
        gw = MockGateway()
        first = await gw.initiate(
            receipt_no="RCPT1", payer_email=None,
            line_item=LineItem(description="x", amount=Decimal("1")),
            provider_code=PaymentProvider.PAYNOW,
        )
        second = await gw.initiate(
            receipt_no="RCPT1", payer_email=None,
            line_item=LineItem(description="x", amount=Decimal("1")),
            provider_code=PaymentProvider.PAYNOW,
        )
        assert first.poll_url == second.poll_url
        assert first.redirect_url is not None
        assert (await gw.poll(first.poll_url)).provider_status == "Paid"
