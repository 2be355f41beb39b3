"""
Tests for the HTTP API

The app's service dependency is swapped for the per-test ledger.
"""

from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from commission_ledger.api import app, get_service

BANK_DETAILS = {
    "bank_account": {
        "bank_name": "First Bank",
        "account_name": "Agent One",
        "account_number_or_iban": "GB29NWBK60161331926819",
    }
}


@pytest.fixture
def client(service):
    app.dependency_overrides[get_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def agent_id(client):
    response = client.post("/agents", json={"user_id": str(uuid4()), "commission_rate": "10.00"})
    assert response.status_code == 201
    return response.json()["id"]


class TestHealth:
    def test_health_check(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestReferralFlow:
    """Issue a code, use it, confirm it and check the balance."""

    def test_use_and_confirm(self, client, agent_id):
        code = client.post(f"/agents/{agent_id}/referral-codes", json={"max_uses": 5}).json()["code"]

        use = client.post(
            f"/referral-codes/{code}/uses",
            json={"referred_user": {"email": "new@example.com"}, "idempotency_key": "signup-1"},
        )
        assert use.status_code == 201

        confirm = client.post(f"/usages/{use.json()['id']}/confirm", json={"reference_amount": "250.00"})
        assert confirm.status_code == 200
        assert confirm.json()["earning"]["amount"] == "25.00"

        balance = client.get(f"/agents/{agent_id}/balance").json()
        assert balance["pending_balance"] == "25.00"
        assert balance["total_earnings"] == "25.00"
        assert balance["available_balance"] == "0.00"

    def test_validate_unknown_code(self, client):
        response = client.get("/referral-codes/NOSUCH1/validate")

        assert response.status_code == 200
        assert response.json()["valid"] is False
        assert response.json()["reason"] == "unknown"

    def test_suspended_code_reports_reason(self, client, agent_id):
        code = client.post(f"/agents/{agent_id}/referral-codes", json={}).json()["code"]
        client.put(f"/referral-codes/{code}/status", json={"status": "suspended"})

        response = client.post(f"/referral-codes/{code}/uses", json={})

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "CodeNotUsable"
        assert response.json()["detail"]["reason"] == "suspended"

    def test_duplicate_code_conflict(self, client, agent_id):
        client.post(f"/agents/{agent_id}/referral-codes", json={"code": "WINTER"})

        response = client.post(f"/agents/{agent_id}/referral-codes", json={"code": "winter"})

        assert response.status_code == 409


class TestPayoutEndpoints:
    """Payout requests and error mapping."""

    def test_insufficient_balance_is_bad_request(self, client, agent_id):
        response = client.post(
            "/payouts",
            json={"agent_id": agent_id, "amount": "50.00", "method": "bank_transfer", "payment_details": BANK_DETAILS},
        )

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "InsufficientBalance"

    def test_request_and_approve(self, client, agent_id):
        client.post(f"/agents/{agent_id}/adjustments", json={"amount": "100.00", "kind": "bonus", "reason": "Launch"})

        payout = client.post(
            "/payouts",
            json={"agent_id": agent_id, "amount": "60.00", "method": "bank_transfer", "payment_details": BANK_DETAILS},
        )
        assert payout.status_code == 201
        assert payout.json()["reservation"] == "held"

        approved = client.post(f"/payouts/{payout.json()['id']}/approve", json={"staff_id": str(uuid4())})
        assert approved.status_code == 200
        assert approved.json()["status"] == "approved"
        assert client.get(f"/agents/{agent_id}/balance").json()["available_balance"] == "40.00"

        stats = client.get("/payouts/stats").json()
        assert stats["total_count"] == 1

    def test_unknown_payout_is_not_found(self, client):
        response = client.get(f"/payouts/{uuid4()}")

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "NotFoundError"


class TestEarningEndpoints:
    def test_bulk_confirm(self, client, agent_id):
        ids = [
            client.post("/earnings", json={"agent_id": agent_id, "amount": amount}).json()["id"]
            for amount in ("10.00", "20.00")
        ]

        response = client.post("/earnings/bulk/confirm", json={"earning_ids": ids})

        assert response.status_code == 200
        assert response.json()["summary"] == "2 succeeded, 0 failed"
        assert client.get(f"/agents/{agent_id}/balance").json()["available_balance"] == "30.00"

    def test_invalid_transition_is_bad_request(self, client, agent_id):
        earning_id = client.post(
            "/earnings", json={"agent_id": agent_id, "amount": "10.00", "status": "confirmed"}
        ).json()["id"]

        response = client.post(f"/earnings/{earning_id}/reinstate", json={})

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "InvalidTransition"

    def test_penalty_beyond_available_is_bad_request(self, client, agent_id):
        client.post(f"/agents/{agent_id}/adjustments", json={"amount": "100.00", "kind": "bonus", "reason": "Launch"})

        response = client.post(
            "/earnings",
            json={"agent_id": agent_id, "type": "penalty", "amount": "-150.00", "status": "confirmed"},
        )

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "InsufficientBalance"
        assert client.get(f"/agents/{agent_id}/balance").json()["available_balance"] == "100.00"

    def test_upload_by_agent_code(self, client, agent_id):
        agent_code = client.get(f"/agents/{agent_id}").json()["agent_code"]

        response = client.post(
            "/earnings/bulk/upload",
            json={
                "earnings": [
                    {"agent_code": agent_code, "amount": "12.50", "description": "Order 1", "reference_id": "ORD-1"},
                    {"agent_code": agent_code, "amount": "12.50", "description": "Order 1", "reference_id": "ORD-1"},
                    {"agent_code": "AGTMISSING", "amount": "5.00", "description": "Order 2"},
                ],
                "auto_confirm": True,
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert (body["successful"], body["skipped"], body["failed"]) == (1, 1, 1)
        assert body["total_amount"] == "12.50"
        assert body["invalid_agent_codes"] == ["AGTMISSING"]
        assert [d["status"] for d in body["details"]] == ["success", "skipped", "failed"]
        assert client.get(f"/agents/{agent_id}/balance").json()["available_balance"] == "12.50"
