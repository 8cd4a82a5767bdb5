"""HTTP tests for the loan and transaction routers.

Requests go through the real FastAPI app (middleware included) over an
in-process ASGI transport; the app's lending core is swapped for the
test core so every request hits the per-test SQLite database.
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from lendledger.auth_utils import create_access_token
from lendledger.main import app
from lendledger.models.error_log import ErrorLog, ErrorSeverity
from lendledger.services.principal import Principal

from conftest import ADMIN, BORROWER, LENDER_A, LENDER_B, LENDER_C, loan_payload


def auth(principal: Principal) -> dict:
    return {"Authorization": f"Bearer {create_access_token(principal.id, principal.role)}"}


@pytest_asyncio.fixture
async def client(core):
    app.state.core = core
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.state.core = None


async def _active_loan(client) -> int:
    resp = await client.post("/api/loans", json=loan_payload(), headers=auth(BORROWER))
    loan_id = resp.json()["id"]
    await client.post(f"/api/loans/{loan_id}/submit", headers=auth(BORROWER))
    await client.post(f"/api/loans/{loan_id}/approve", headers=auth(ADMIN))
    await client.post(f"/api/loans/{loan_id}/fund", json={"amount": "6000.00"}, headers=auth(LENDER_A))
    await client.post(f"/api/loans/{loan_id}/fund", json={"amount": "4000.00"}, headers=auth(LENDER_B))
    return loan_id


# ===================================================================
# Plumbing
# ===================================================================


class TestPlumbing:

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"

    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        resp = await client.get("/api/loans")
        assert resp.status_code in (401, 403)

    @pytest.mark.asyncio
    async def test_garbage_token(self, client):
        resp = await client.get("/api/loans", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_client_errors_are_logged(self, client, session_factory):
        resp = await client.get("/api/loans/999", headers=auth(BORROWER))
        assert resp.status_code == 404

        async with session_factory() as db:
            rows = (await db.execute(select(ErrorLog))).scalars().all()
        assert len(rows) == 1
        assert rows[0].severity == ErrorSeverity.WARNING
        assert rows[0].status_code == 404
        assert rows[0].principal_id == "borrower-1"
        assert rows[0].request_method == "GET"
        assert rows[0].request_path == "/api/loans/999"
        assert rows[0].response_time_ms is not None


# ===================================================================
# Loans
# ===================================================================


class TestLoanEndpoints:

    @pytest.mark.asyncio
    async def test_create_loan(self, client):
        resp = await client.post("/api/loans", json=loan_payload(), headers=auth(BORROWER))
        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "draft"
        assert body["amount"] == {"amount": "10000.00", "currency": "USD"}
        assert body["borrower_id"] == "borrower-1"
        assert body["monthly_payment"] is None
        assert len(body["timeline"]) == 1

    @pytest.mark.asyncio
    async def test_validation_errors(self, client):
        resp = await client.post(
            "/api/loans", json=loan_payload(title="Van", interest_rate="90"), headers=auth(BORROWER)
        )
        assert resp.status_code == 422
        detail = resp.json()["detail"]
        assert detail["code"] == "validation_failed"
        assert set(detail["errors"]) == {"title", "interest_rate"}

    @pytest.mark.asyncio
    async def test_update_and_delete_draft(self, client):
        resp = await client.post("/api/loans", json=loan_payload(), headers=auth(BORROWER))
        loan_id = resp.json()["id"]

        resp = await client.patch(f"/api/loans/{loan_id}", json={"amount": "7500"}, headers=auth(BORROWER))
        assert resp.status_code == 200
        assert resp.json()["amount"]["amount"] == "7500.00"

        resp = await client.patch(f"/api/loans/{loan_id}", json={"status": "approved"}, headers=auth(BORROWER))
        assert resp.status_code == 422

        resp = await client.delete(f"/api/loans/{loan_id}", headers=auth(BORROWER))
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_admin_only_routes(self, client):
        resp = await client.post("/api/loans", json=loan_payload(), headers=auth(BORROWER))
        loan_id = resp.json()["id"]
        await client.post(f"/api/loans/{loan_id}/submit", headers=auth(BORROWER))

        resp = await client.post(f"/api/loans/{loan_id}/approve", headers=auth(LENDER_A))
        assert resp.status_code == 403

        resp = await client.post(
            f"/api/loans/{loan_id}/reject", json={"reason": "Incomplete documents"}, headers=auth(ADMIN)
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "rejected"

    @pytest.mark.asyncio
    async def test_illegal_transition_is_conflict(self, client):
        resp = await client.post("/api/loans", json=loan_payload(), headers=auth(BORROWER))
        loan_id = resp.json()["id"]
        resp = await client.post(f"/api/loans/{loan_id}/approve", headers=auth(ADMIN))
        assert resp.status_code == 409
        assert resp.json()["detail"]["code"] == "illegal_loan_state"

    @pytest.mark.asyncio
    async def test_funding_to_activation(self, client):
        loan_id = await _active_loan(client)
        resp = await client.get(f"/api/loans/{loan_id}", headers=auth(LENDER_A))
        body = resp.json()
        assert body["status"] == "active"
        assert body["funded_percentage"] == "100.00"
        assert body["monthly_payment"] == {"amount": "860.66", "currency": "USD"}
        assert len(body["schedule"]) == 12
        assert body["schedule"][0]["due_date"] == "2026-02-15"

    @pytest.mark.asyncio
    async def test_overfunding_is_conflict(self, client):
        resp = await client.post("/api/loans", json=loan_payload(), headers=auth(BORROWER))
        loan_id = resp.json()["id"]
        await client.post(f"/api/loans/{loan_id}/submit", headers=auth(BORROWER))
        await client.post(f"/api/loans/{loan_id}/approve", headers=auth(ADMIN))
        await client.post(f"/api/loans/{loan_id}/fund", json={"amount": "6000"}, headers=auth(LENDER_A))

        resp = await client.post(f"/api/loans/{loan_id}/fund", json={"amount": "5000"}, headers=auth(LENDER_B))
        assert resp.status_code == 409
        assert resp.json()["detail"]["code"] == "overfunding_rejected"

        resp = await client.post(f"/api/loans/{loan_id}/fund", json={"amount": "4000"}, headers=auth(LENDER_B))
        assert resp.status_code == 200
        assert resp.json()["loan_status"] == "active"

    @pytest.mark.asyncio
    async def test_borrowers_cannot_reach_funding(self, client):
        resp = await client.post("/api/loans/1/fund", json={"amount": "10"}, headers=auth(BORROWER))
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_list_with_status_filter(self, client):
        for _ in range(2):
            await client.post("/api/loans", json=loan_payload(), headers=auth(BORROWER))
        resp = await client.get("/api/loans", params={"status": "draft", "limit": 1}, headers=auth(BORROWER))
        body = resp.json()
        assert body["total"] == 2
        assert len(body["items"]) == 1

        resp = await client.get("/api/loans", params={"status": "draft"}, headers=auth(LENDER_C))
        assert resp.json()["total"] == 0


# ===================================================================
# Repayments & transactions
# ===================================================================


class TestTransactionEndpoints:

    @pytest.mark.asyncio
    async def test_repayment_flow(self, client):
        loan_id = await _active_loan(client)
        headers = {**auth(BORROWER), "Idempotency-Key": "rp-2026-02"}
        body = {"amount": "860.66", "payment_method": "bank-transfer"}

        resp = await client.post(f"/api/loans/{loan_id}/repayments", json=body, headers=headers)
        assert resp.status_code == 201
        tx = resp.json()
        assert tx["status"] == "pending"
        assert tx["installment_number"] == 1

        replay = await client.post(f"/api/loans/{loan_id}/repayments", json=body, headers=headers)
        assert replay.json()["id"] == tx["id"]

        resp = await client.post(f"/api/transactions/{tx['id']}/process", headers=auth(BORROWER))
        assert resp.status_code == 200
        assert resp.json()["status"] == "completed"
        assert [e["action"] for e in resp.json()["audit_trail"]] == ["created", "processed", "completed"]

        resp = await client.get("/api/transactions/balances/borrower-1", headers=auth(BORROWER))
        assert resp.json() == {
            "party": "borrower-1",
            "balances": [{"amount": "9139.34", "currency": "USD"}],
        }

        resp = await client.get("/api/transactions/balances/lender-a/verify", headers=auth(ADMIN))
        assert resp.json()["consistent"] is True
        assert resp.json()["cached"] == {"amount": "-5483.60", "currency": "USD"}

    @pytest.mark.asyncio
    async def test_repayment_needs_idempotency_key(self, client):
        loan_id = await _active_loan(client)
        resp = await client.post(
            f"/api/loans/{loan_id}/repayments",
            json={"amount": "860.66", "payment_method": "bank-transfer"},
            headers=auth(BORROWER),
        )
        assert resp.status_code == 422
        assert "idempotency_key" in resp.json()["detail"]["errors"]

    @pytest.mark.asyncio
    async def test_cancel_and_refund_routes(self, client):
        loan_id = await _active_loan(client)
        body = {"amount": "860.66", "payment_method": "wallet", "idempotency_key": "k1"}
        tx_id = (await client.post(f"/api/loans/{loan_id}/repayments", json=body, headers=auth(BORROWER))).json()["id"]

        resp = await client.post(
            f"/api/transactions/{tx_id}/cancel", json={"reason": "Wrong wallet"}, headers=auth(BORROWER)
        )
        assert resp.json()["status"] == "cancelled"

        body["idempotency_key"] = "k2"
        tx_id = (await client.post(f"/api/loans/{loan_id}/repayments", json=body, headers=auth(BORROWER))).json()["id"]
        resp = await client.post(
            f"/api/transactions/{tx_id}/complete", json={"gateway_reference": "WAL-1"}, headers=auth(BORROWER)
        )
        assert resp.json()["gateway_reference"] == "WAL-1"

        resp = await client.post(f"/api/transactions/{tx_id}/refund", json={"reason": "Chargeback"}, headers=auth(BORROWER))
        assert resp.status_code == 403
        resp = await client.post(f"/api/transactions/{tx_id}/refund", json={"reason": "Chargeback"}, headers=auth(ADMIN))
        assert resp.status_code == 200
        assert resp.json()["status"] == "refunded"

    @pytest.mark.asyncio
    async def test_transaction_queries(self, client):
        loan_id = await _active_loan(client)

        resp = await client.get("/api/transactions", params={"type": "loan-funding"}, headers=auth(LENDER_A))
        body = resp.json()
        assert body["total"] == 1
        assert body["items"][0]["from_party"] == "lender-a"

        resp = await client.get("/api/transactions", params={"loan_id": loan_id}, headers=auth(ADMIN))
        assert resp.json()["total"] == 2

        resp = await client.get("/api/transactions", params={"party": "lender-b"}, headers=auth(LENDER_A))
        assert resp.status_code == 403

        resp = await client.get("/api/transactions/stats", headers=auth(BORROWER))
        stats = resp.json()
        assert stats["groups"][0]["key"] == "loan-funding"
        assert stats["groups"][0]["count"] == 2
        assert stats["summary"]["USD"]["total"] == {"amount": "10000.00", "currency": "USD"}

    @pytest.mark.asyncio
    async def test_someone_elses_transaction(self, client):
        loan_id = await _active_loan(client)
        resp = await client.get("/api/transactions", params={"loan_id": loan_id}, headers=auth(ADMIN))
        tx_id = resp.json()["items"][0]["id"]
        resp = await client.get(f"/api/transactions/{tx_id}", headers=auth(LENDER_C))
        assert resp.status_code == 403
        resp = await client.get("/api/transactions/99999", headers=auth(ADMIN))
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_balance_of_another_party(self, client):
        resp = await client.get("/api/transactions/balances/lender-a", headers=auth(LENDER_B))
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_late_fee_trigger(self, client):
        loan_id = await _active_loan(client)
        resp = await client.post(
            "/api/transactions/late-fees/assess", json={"as_of": "2026-02-21"}, headers=auth(ADMIN)
        )
        assert resp.status_code == 200
        assert resp.json()["fees"] == [{"amount": "43.03", "currency": "USD"}]

        resp = await client.get(f"/api/loans/{loan_id}", headers=auth(BORROWER))
        assert resp.json()["schedule"][0]["status"] == "overdue"

        resp = await client.post("/api/transactions/late-fees/assess", json={}, headers=auth(BORROWER))
        assert resp.status_code == 403
