"""HTTP-level tests: envelopes, status codes and role gating through the FastAPI app."""

from datetime import datetime, timezone
from urllib.parse import urlencode

import httpx
import pytest
import pytest_asyncio

from pawnshop.auth_utils import create_access_token
from pawnshop.database import get_db
from pawnshop.main import app
from pawnshop.models.user import User, UserRole

from conftest import FakeGateway


@pytest_asyncio.fixture
async def client(db):
    async def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    app.state.gateway = FakeGateway()
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


def _auth(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"


class TestPaymentsApi:

    @pytest.mark.asyncio
    async def test_requires_token(self, client, loan):
        resp = await client.post("/api/payments", json={"loan_id": loan.id, "amount": 10, "provider": "cash"})
        assert resp.status_code in (401, 403)
        assert resp.json()["success"] is False

    @pytest.mark.asyncio
    async def test_customer_role_is_denied(self, client, loan, customer):
        resp = await client.post(
            "/api/payments",
            json={"loan_id": loan.id, "amount": 10, "provider": "cash"},
            headers=_auth(customer),
        )
        assert resp.status_code == 403
        assert resp.json() == {"success": False, "message": "Insufficient permissions", "status": 403}

    @pytest.mark.asyncio
    async def test_cash_capture(self, client, loan, admin):
        resp = await client.post(
            "/api/payments",
            json={
                "loan_id": loan.id, "amount": "40", "principal_component": "30",
                "interest_component": "10", "provider": "cash", "payment_status": "paid",
            },
            headers=_auth(admin),
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["success"] is True
        assert body["status"] == 201
        payment = body["data"]["payment"]
        assert payment["payment_status"] == "paid"
        assert float(payment["amount"]) == 40.0

        resp = await client.get(f"/api/payments/receipt/{payment['receipt_no']}", headers=_auth(admin))
        assert resp.status_code == 200
        assert resp.json()["data"]["id"] == payment["id"]

        resp = await client.get(f"/api/ledger/transactions?payment_id={payment['id']}", headers=_auth(admin))
        assert sorted(t["type"] for t in resp.json()["data"]) == ["interest_income", "repayment"]
        assert resp.json()["pagination"]["total"] == 2

    @pytest.mark.asyncio
    async def test_invalid_phone_envelope(self, client, loan, admin):
        resp = await client.post(
            "/api/payments",
            json={"loan_id": loan.id, "amount": 25, "provider": "onemoney", "payer_phone": "0771234567"},
            headers=_auth(admin),
        )
        assert resp.status_code == 400
        assert resp.json()["success"] is False
        assert "Invalid mobile number" in resp.json()["message"]

    @pytest.mark.asyncio
    async def test_request_validation_is_400(self, client, loan, admin):
        resp = await client.post(
            "/api/payments",
            json={"loan_id": loan.id, "amount": -5, "provider": "cash"},
            headers=_auth(admin),
        )
        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert any(err["field"].endswith("amount") for err in body["errors"])

    @pytest.mark.asyncio
    async def test_missing_payment_is_404(self, client, admin):
        resp = await client.get("/api/payments/999", headers=_auth(admin))
        assert resp.status_code == 404
        assert resp.json()["success"] is False

    @pytest.mark.asyncio
    async def test_gateway_flow_with_form_webhook(self, client, loan, admin):
        resp = await client.post(
            "/api/payments",
            json={"loan_id": loan.id, "amount": 25, "provider": "ecocash", "payer_phone": "+263771234567"},
            headers=_auth(admin),
        )
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["payment"]["payment_status"] == "pending"
        assert data["instructions"] == "Dial *151#"
        receipt = data["payment"]["receipt_no"]

        for _ in range(2):
            resp = await client.post(
                "/api/payments/webhook",
                content=urlencode({"reference": receipt, "status": "Paid"}),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            assert resp.status_code == 200
            assert resp.json()["data"] == {"receipt_no": receipt, "payment_status": "paid"}

        resp = await client.get(f"/api/ledger/transactions?loan_id={loan.id}", headers=_auth(admin))
        assert resp.json()["pagination"]["total"] == 1

    @pytest.mark.asyncio
    async def test_refund_requires_finance_role(self, client, db, loan):
        officer = User(
            email="officer@pawn.example", first_name="Rudo", last_name="Chikwanha",
            role=UserRole.LOAN_OFFICER_PROCESSOR,
        )
        db.add(officer)
        await db.flush()

        resp = await client.post(
            "/api/payments",
            json={"loan_id": loan.id, "amount": 10, "provider": "cash", "payment_status": "paid"},
            headers=_auth(officer),
        )
        payment_id = resp.json()["data"]["payment"]["id"]

        resp = await client.post(f"/api/payments/{payment_id}/refund", json={}, headers=_auth(officer))
        assert resp.status_code == 403


class TestLedgerApi:

    @pytest.mark.asyncio
    async def test_duplicate_disbursement_is_409(self, client, loan, admin):
        first = await client.post("/api/ledger/disbursements", json={"loan_id": loan.id}, headers=_auth(admin))
        assert first.status_code == 201
        [txn] = first.json()["data"]["transactions"]
        assert float(txn["amount"]) == -100.0
        assert txn["account_code"] == "1100"

        second = await client.post("/api/ledger/disbursements", json={"loan_id": loan.id}, headers=_auth(admin))
        assert second.status_code == 409
        assert second.json()["success"] is False

    @pytest.mark.asyncio
    async def test_sign_mismatch_is_400(self, client, admin):
        resp = await client.post(
            "/api/ledger/entries",
            json={"category": "interest_income", "amount": "-5"},
            headers=_auth(admin),
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_protected_transaction_delete_is_403(self, client, loan, admin):
        posted = await client.post("/api/ledger/disbursements", json={"loan_id": loan.id}, headers=_auth(admin))
        txn_id = posted.json()["data"]["transactions"][0]["id"]
        resp = await client.delete(f"/api/ledger/transactions/{txn_id}", headers=_auth(admin))
        assert resp.status_code == 403


class TestReportsApi:

    @pytest.mark.asyncio
    async def test_profit_loss(self, client, loan, admin):
        await client.post("/api/ledger/disbursements", json={"loan_id": loan.id}, headers=_auth(admin))
        today = datetime.now(timezone.utc).date().isoformat()
        resp = await client.get(
            f"/api/reports/profit-loss?date_from={today}&date_to={today}", headers=_auth(admin),
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["totals"]["total_operating_expenses"] == 100.0

    @pytest.mark.asyncio
    async def test_reversed_period_is_400(self, client, admin):
        resp = await client.get(
            "/api/reports/trial-balance?date_from=2026-03-02&date_to=2026-03-01", headers=_auth(admin),
        )
        assert resp.status_code == 400
