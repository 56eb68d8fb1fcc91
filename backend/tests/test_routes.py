"""
Voice Minutes API Tests

Tests for:
- POST /api/voice/session/start - 402 with an empty wallet
- POST /api/voice/session/end - billing and retry
- GET /api/minutes/wallet, /transactions, /packages
- POST /api/minutes/webhook - credit once per payment
- POST /api/minutes/purchase/{purchase_id}/verify - credit a returned checkout
- Admin grant, refund, stats and audit
"""

import json

import httpx
import pytest
import stripe
from unittest.mock import MagicMock, patch

from database import get_database
from server import app
from utils.auth import create_token
from voice_minutes.balance_store import BalanceStore


@pytest.fixture
async def api(db):
    app.dependency_overrides[get_database] = lambda: db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(user):
    return {"Authorization": f"Bearer {create_token(user['id'], user['email'])}"}


@pytest.fixture
def admin_headers(admin):
    return {"Authorization": f"Bearer {create_token(admin['id'], admin['email'], is_admin=True)}"}


def webhook_body(user_id, reference="pay_123", minutes="60"):
    return json.dumps({
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": "cs_test_1",
            "payment_intent": reference,
            "payment_status": "paid",
            "metadata": {"user_id": user_id, "minutes": minutes, "type": "voice_minutes"}
        }}
    })


class TestAuth:

    @pytest.mark.asyncio
    async def test_wallet_requires_token(self, api):
        response = await api.get("/api/minutes/wallet")
        assert response.status_code in (401, 403)

    @pytest.mark.asyncio
    async def test_invalid_token(self, api):
        response = await api.get("/api/minutes/wallet", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_admin_route_rejects_regular_user(self, api, auth_headers):
        response = await api.get("/api/minutes/admin/stats", headers=auth_headers)
        assert response.status_code == 403


class TestSessionEndpoints:

    @pytest.mark.asyncio
    async def test_start_with_empty_wallet_returns_402(self, api, db, auth_headers):
        response = await api.post("/api/voice/session/start", json={"session_type": "solo"}, headers=auth_headers)

        assert response.status_code == 402
        assert response.json()["detail"]["error"] == "INSUFFICIENT_MINUTES"
        assert response.json()["detail"]["minutes_balance"] == 0
        assert await db.voice_sessions.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_start_and_end(self, api, db, user, auth_headers):
        await BalanceStore(db).credit(user["id"], 5, reference="pi_1")

        started = await api.post("/api/voice/session/start", json={}, headers=auth_headers)
        assert started.status_code == 200
        session_id = started.json()["session_id"]

        body = {"session_id": session_id, "duration_seconds": 61, "summary": "Quick chat"}
        ended = await api.post("/api/voice/session/end", json=body, headers=auth_headers)
        retried = await api.post("/api/voice/session/end", json=body, headers=auth_headers)

        assert ended.status_code == 200
        assert ended.json()["minutes_billed"] == 2
        assert ended.json()["new_balance"] == 3
        assert retried.json() == ended.json()

        history = await api.get("/api/voice/sessions", headers=auth_headers)
        assert history.json()["count"] == 1

        detail = await api.get(f"/api/voice/sessions/{session_id}", headers=auth_headers)
        assert detail.json()["summary"] == "Quick chat"

    @pytest.mark.asyncio
    async def test_end_unknown_session_returns_404(self, api, auth_headers):
        response = await api.post(
            "/api/voice/session/end", json={"session_id": "missing", "duration_seconds": 5}, headers=auth_headers
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_paired_without_link_returns_400(self, api, db, user, auth_headers):
        await BalanceStore(db).credit(user["id"], 5, reference="pi_1")

        response = await api.post("/api/voice/session/start", json={"session_type": "paired"}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "INVALID_PAIRING"


class TestWalletEndpoints:

    @pytest.mark.asyncio
    async def test_packages_are_public(self, api):
        response = await api.get("/api/minutes/packages")

        assert response.status_code == 200
        assert len(response.json()["packages"]) == 3

    @pytest.mark.asyncio
    async def test_wallet_and_transactions(self, api, db, user, auth_headers):
        await BalanceStore(db).credit(user["id"], 15, reference="pi_1")

        wallet = await api.get("/api/minutes/wallet", headers=auth_headers)
        ledger = await api.get("/api/minutes/transactions", headers=auth_headers)

        assert wallet.json()["minutes_balance"] == 15
        assert ledger.json()["count"] == 1
        assert ledger.json()["entries"][0]["reference"] == "pi_1"

    @pytest.mark.asyncio
    async def test_purchase_unknown_package_returns_400(self, api, auth_headers):
        response = await api.post("/api/minutes/purchase", json={"package_id": "nope"}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "INVALID_PACKAGE"

    @pytest.mark.asyncio
    async def test_verify_returned_checkout(self, api, db, user, auth_headers, monkeypatch):
        monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test")
        await db.minute_purchases.insert_one({
            "purchase_id": "p-1",
            "user_id": user["id"],
            "package_id": "minutes_60",
            "minutes": 60,
            "price_cents": 1499,
            "status": "pending",
            "checkout_session_id": "cs_test_1",
            "created_at": "2026-01-01T10:00:00+00:00"
        })
        checkout = json.loads(webhook_body(user["id"]))["data"]["object"]
        checkout["metadata"]["purchase_id"] = "p-1"

        with patch.object(stripe.checkout.Session, "retrieve", MagicMock(return_value=checkout)):
            response = await api.post("/api/minutes/purchase/p-1/verify", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert response.json()["payment_reference"] == "pay_123"

        webhook = await api.post("/api/minutes/webhook", content=webhook_body(user["id"]))
        assert webhook.json()["status"] == "duplicate"
        assert (await BalanceStore(db).get(user["id"])).minutes_balance == 60

    @pytest.mark.asyncio
    async def test_verify_unknown_purchase_returns_404(self, api, auth_headers):
        response = await api.post("/api/minutes/purchase/missing/verify", headers=auth_headers)

        assert response.status_code == 404


class TestWebhookEndpoint:

    @pytest.mark.asyncio
    async def test_webhook_credits_once(self, api, db, user):
        first = await api.post("/api/minutes/webhook", content=webhook_body(user["id"]))
        second = await api.post("/api/minutes/webhook", content=webhook_body(user["id"]))

        assert first.json()["status"] == "credited"
        assert second.json()["status"] == "duplicate"
        assert (await BalanceStore(db).get(user["id"])).minutes_balance == 60

    @pytest.mark.asyncio
    async def test_malformed_event_is_acknowledged(self, api, db, user):
        response = await api.post("/api/minutes/webhook", content=webhook_body(user["id"], minutes="-4"))

        assert response.status_code == 200
        assert response.json()["status"] == "dropped"
        assert await db.minute_transactions.count_documents({}) == 0


class TestAdminEndpoints:

    @pytest.mark.asyncio
    async def test_grant_refund_stats_audit(self, api, db, user, auth_headers, admin_headers):
        grant = await api.post(
            "/api/minutes/admin/grant",
            json={"user_id": user["id"], "minutes": 4, "reason": "Welcome"},
            headers=admin_headers
        )
        assert grant.json()["new_balance"] == 4

        started = await api.post("/api/voice/session/start", json={}, headers=auth_headers)
        session_id = started.json()["session_id"]
        await api.post(
            "/api/voice/session/end", json={"session_id": session_id, "duration_seconds": 100}, headers=auth_headers
        )

        refund = await api.post("/api/minutes/admin/refund", json={"session_id": session_id}, headers=admin_headers)
        assert refund.json()["minutes"] == 2
        assert refund.json()["new_balance"] == 4

        again = await api.post("/api/minutes/admin/refund", json={"session_id": session_id}, headers=admin_headers)
        assert again.status_code == 409

        stats = await api.get("/api/minutes/admin/stats", headers=admin_headers)
        assert stats.json()["total_minutes_granted"] == 4
        assert stats.json()["total_minutes_used"] == 2
        assert stats.json()["total_minutes_refunded"] == 2

        audit = await api.get(f"/api/minutes/admin/audit/{user['id']}", headers=admin_headers)
        assert audit.json()["invariant_holds"]
        assert audit.json()["matches_ledger"]

    @pytest.mark.asyncio
    async def test_refund_more_than_billed_is_rejected(self, api, db, admin_headers):
        await db.voice_sessions.insert_one({"id": "s-1", "user_id": "u1", "minutes_billed": 1})

        response = await api.post(
            "/api/minutes/admin/refund", json={"session_id": "s-1", "minutes": 3}, headers=admin_headers
        )
        assert response.status_code == 400
