"""
tests/test_api_routes.py — FastAPI Route Integration Tests
============================================================
Exercises the public, donor, webhook and admin routes through the FastAPI
TestClient against an in-memory database.

These tests verify:
- Auth guards on donor and admin endpoints
- Donate-now idempotency via the Idempotency-Key header
- Stripe signature checks and webhook deduplication
- 503 responses when the store is unreachable
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from unittest.mock import patch

import jwt
import pytest

from conftest import get_user, make_project, make_reward, make_user, make_user_token
from dopaya.api.deps import JWT_ALGORITHM, JWT_SECRET
from dopaya.services.log_buffer import get_buffer, install_handler
from dopaya.services.store import PointsStore, StoreUnavailable

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def non_admin_token():
    return jwt.encode(
        {"sub": "67890", "username": "RegularUser", "is_admin": False},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _outage(*args, **kwargs):
    raise StoreUnavailable("test", RuntimeError("connection refused"))


# ===========================================================================
# Health endpoint
# ===========================================================================
class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


# ===========================================================================
# Auth guards
# ===========================================================================
class TestAuthGuards:
    USER_ENDPOINTS = [
        ("GET", "/api/user/impact"),
        ("GET", "/api/user/transactions"),
        ("POST", "/api/user/welcome-bonus"),
        ("POST", "/api/rewards/1/redeem"),
    ]

    ADMIN_ENDPOINTS = [
        ("GET", "/api/admin/alerts"),
        ("POST", "/api/admin/reconcile"),
    ]

    @pytest.mark.parametrize("method,endpoint", USER_ENDPOINTS + ADMIN_ENDPOINTS)
    def test_no_token_returns_401(self, client, method, endpoint):
        resp = client.request(method, endpoint)
        assert resp.status_code == 401

    @pytest.mark.parametrize("method,endpoint", USER_ENDPOINTS)
    def test_invalid_token_returns_401(self, client, method, endpoint):
        resp = client.request(method, endpoint, headers=_auth("garbage.token.here"))
        assert resp.status_code == 401

    @pytest.mark.parametrize("method,endpoint", ADMIN_ENDPOINTS)
    def test_non_admin_returns_403(self, client, non_admin_token, method, endpoint):
        resp = client.request(method, endpoint, headers=_auth(non_admin_token))
        assert resp.status_code == 403

    def test_donate_requires_token(self, client):
        resp = client.post("/api/projects/1/donate", json={"amount": 10},
                           headers={"Idempotency-Key": "k1"})
        assert resp.status_code == 401


# ===========================================================================
# Impact preview
# ===========================================================================
class TestImpactPreview:
    def test_preview(self, client, db_engine):
        pid = make_project(db_engine)
        resp = client.get(f"/api/projects/{pid}/impact-preview", params={"amount": 100})
        assert resp.status_code == 200
        data = resp.json()
        assert data["impact_points"] == 1000
        assert data["generated_text_cta"] == (
            "Support Clean Water with $100 and help 10 people with clean water"
            " — earn 1000 Impact Points"
        )

    def test_preview_german(self, client, db_engine):
        pid = make_project(db_engine)
        resp = client.get(
            f"/api/projects/{pid}/impact-preview", params={"amount": 10, "lang": "de"},
        )
        assert resp.json()["generated_text_past"] == "1 Person mit sauberem Wasser versorgt"

    def test_unsupported_language(self, client, db_engine):
        pid = make_project(db_engine)
        resp = client.get(
            f"/api/projects/{pid}/impact-preview", params={"amount": 10, "lang": "fr"},
        )
        assert resp.status_code == 400

    def test_unknown_project(self, client):
        resp = client.get("/api/projects/999/impact-preview", params={"amount": 10})
        assert resp.status_code == 404

    def test_unconfigured_project(self, client, db_engine):
        pid = make_project(db_engine, impact_factor=None)
        resp = client.get(f"/api/projects/{pid}/impact-preview", params={"amount": 10})
        assert resp.status_code == 422
        assert "impact_factor" in resp.json()["detail"]

    @pytest.mark.parametrize("amount", [0, -1])
    def test_non_positive_amount(self, client, db_engine, amount):
        pid = make_project(db_engine)
        resp = client.get(f"/api/projects/{pid}/impact-preview", params={"amount": amount})
        assert resp.status_code == 422

    def test_store_outage(self, client, db_engine):
        pid = make_project(db_engine)
        with patch.object(PointsStore, "get_project_row", side_effect=_outage):
            resp = client.get(f"/api/projects/{pid}/impact-preview", params={"amount": 10})
        assert resp.status_code == 503


# ===========================================================================
# Donate now
# ===========================================================================
class TestDonate:
    def _donate(self, client, uid, pid, key="click-1", **body):
        headers = _auth(make_user_token(uid))
        if key is not None:
            headers["Idempotency-Key"] = key
        return client.post(
            f"/api/projects/{pid}/donate", json={"amount": 50, **body}, headers=headers,
        )

    def test_donate_credits_points(self, client, db_engine):
        uid = make_user(db_engine)
        pid = make_project(db_engine)

        resp = self._donate(client, uid, pid, tip_amount=2.5)

        assert resp.status_code == 201
        data = resp.json()
        assert data["status"] == "completed"
        assert data["impact_points"] == 500
        assert data["tip_amount"] == 2.5
        assert data["points_applied"] is True
        assert data["new_balance"] == 500
        assert data["replayed"] is False
        assert data["generated_text_past_en"] == "5 people provided with clean water"
        assert get_user(db_engine, uid).impact_points == 500

    def test_double_click_returns_first_donation(self, client, db_engine):
        uid = make_user(db_engine)
        pid = make_project(db_engine)

        first = self._donate(client, uid, pid)
        second = self._donate(client, uid, pid)

        assert second.status_code == 200
        assert second.json()["id"] == first.json()["id"]
        assert second.json()["replayed"] is True
        assert get_user(db_engine, uid).impact_points == 500

    def test_new_key_is_a_new_donation(self, client, db_engine):
        uid = make_user(db_engine)
        pid = make_project(db_engine)
        self._donate(client, uid, pid, key="a")
        resp = self._donate(client, uid, pid, key="b")
        assert resp.status_code == 201
        assert get_user(db_engine, uid).impact_points == 1000

    def test_missing_idempotency_key(self, client, db_engine):
        uid = make_user(db_engine)
        pid = make_project(db_engine)
        resp = self._donate(client, uid, pid, key=None)
        assert resp.status_code == 400

    def test_unknown_project(self, client, db_engine):
        uid = make_user(db_engine)
        assert self._donate(client, uid, 999).status_code == 404

    def test_invalid_amount(self, client, db_engine):
        uid = make_user(db_engine)
        pid = make_project(db_engine)
        assert self._donate(client, uid, pid, amount=0).status_code == 422

    def test_store_outage(self, client, db_engine):
        uid = make_user(db_engine)
        pid = make_project(db_engine)
        with patch.object(PointsStore, "insert_donation", side_effect=_outage):
            resp = self._donate(client, uid, pid)
        assert resp.status_code == 503


# ===========================================================================
# Stripe webhook
# ===========================================================================
def _signed(payload: dict, secret: str = WEBHOOK_SECRET) -> tuple[bytes, dict]:
    body = json.dumps(payload).encode()
    timestamp = int(time.time())
    signature = hmac.new(
        secret.encode(), f"{timestamp}.{body.decode()}".encode(), hashlib.sha256,
    ).hexdigest()
    return body, {
        "Stripe-Signature": f"t={timestamp},v1={signature}",
        "Content-Type": "application/json",
    }


def _event(event_id, uid, pid, amount="20", event_type="payment_intent.succeeded"):
    return {
        "id": event_id,
        "type": event_type,
        "data": {"object": {
            "id": "pi_abc",
            "metadata": {"userId": str(uid), "projectId": str(pid), "supportAmount": amount},
        }},
    }


class TestStripeWebhook:
    @pytest.fixture(autouse=True)
    def _secret(self, monkeypatch):
        monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)

    def test_signed_event_creates_donation(self, client, db_engine):
        uid = make_user(db_engine)
        pid = make_project(db_engine)
        body, headers = _signed(_event("evt_1", uid, pid))

        resp = client.post("/api/webhooks/stripe", content=body, headers=headers)

        assert resp.status_code == 200
        assert resp.json() == {"received": True, "status": "processed", "duplicate": False}
        assert get_user(db_engine, uid).impact_points == 200

    def test_redelivery_is_deduplicated(self, client, db_engine):
        uid = make_user(db_engine)
        pid = make_project(db_engine)
        body, headers = _signed(_event("evt_1", uid, pid))

        client.post("/api/webhooks/stripe", content=body, headers=headers)
        resp = client.post("/api/webhooks/stripe", content=body, headers=headers)

        assert resp.json()["duplicate"] is True
        assert get_user(db_engine, uid).impact_points == 200

    def test_bad_signature(self, client, db_engine):
        body, headers = _signed(_event("evt_1", 1, 1), secret="whsec_wrong")
        resp = client.post("/api/webhooks/stripe", content=body, headers=headers)
        assert resp.status_code == 400

    def test_missing_signature(self, client):
        resp = client.post("/api/webhooks/stripe", content=b"{}")
        assert resp.status_code == 400

    def test_malformed_event(self, client):
        body, headers = _signed({"id": "evt_1"})
        resp = client.post("/api/webhooks/stripe", content=body, headers=headers)
        assert resp.status_code == 400

    def test_unhandled_event_type(self, client, db_engine):
        body, headers = _signed(_event("evt_1", 1, 1, event_type="charge.refunded"))
        resp = client.post("/api/webhooks/stripe", content=body, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["status"] == "unhandled"

    def test_bad_metadata_is_acknowledged(self, client, db_engine):
        uid = make_user(db_engine)
        pid = make_project(db_engine)
        body, headers = _signed(_event("evt_1", uid, pid, amount="zero"))
        resp = client.post("/api/webhooks/stripe", content=body, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["status"] == "ignored"

    def test_store_outage_asks_for_redelivery(self, client, db_engine):
        uid = make_user(db_engine)
        pid = make_project(db_engine)
        body, headers = _signed(_event("evt_1", uid, pid))
        with patch.object(PointsStore, "insert_donation", side_effect=_outage):
            resp = client.post("/api/webhooks/stripe", content=body, headers=headers)
        assert resp.status_code == 503

    def test_unconfigured_secret(self, client, monkeypatch):
        monkeypatch.delenv("STRIPE_WEBHOOK_SECRET")
        body, headers = _signed({"id": "evt_1"})
        resp = client.post("/api/webhooks/stripe", content=body, headers=headers)
        assert resp.status_code == 503


# ===========================================================================
# Donor endpoints
# ===========================================================================
class TestUserEndpoints:
    def test_impact_summary(self, client, db_engine):
        uid = make_user(db_engine, points=120)
        resp = client.get("/api/user/impact", headers=_auth(make_user_token(uid)))
        assert resp.status_code == 200
        assert resp.json() == {
            "impact_points": 120,
            "amount_donated": 0,
            "projects_supported": 0,
            "user_level": "changemaker",
        }

    def test_impact_unknown_user(self, client):
        resp = client.get("/api/user/impact", headers=_auth(make_user_token(4040)))
        assert resp.status_code == 404

    def test_transactions_newest_first(self, client, db_engine):
        uid = make_user(db_engine)
        pid = make_project(db_engine)
        token = make_user_token(uid)
        client.post(f"/api/projects/{pid}/donate", json={"amount": 10},
                    headers={**_auth(token), "Idempotency-Key": "a"})
        client.post("/api/user/welcome-bonus", headers=_auth(token))

        resp = client.get("/api/user/transactions", headers=_auth(token))

        data = resp.json()
        assert data["total"] == 2
        assert [e["transaction_type"] for e in data["entries"]] == ["welcome_bonus", "donation"]
        assert data["entries"][0]["points_balance_after"] == 150

    def test_welcome_bonus_once(self, client, db_engine, test_config):
        uid = make_user(db_engine)
        token = make_user_token(uid)

        first = client.post("/api/user/welcome-bonus", headers=_auth(token))
        second = client.post("/api/user/welcome-bonus", headers=_auth(token))

        assert first.json()["applied"] is True
        assert first.json()["new_balance"] == test_config.welcome_bonus_points
        assert second.json() == {"message": "Welcome bonus already applied", "applied": False}

    def test_redeem(self, client, db_engine):
        uid = make_user(db_engine, points=300)
        rid = make_reward(db_engine, points_cost=100)
        resp = client.post(f"/api/rewards/{rid}/redeem", headers=_auth(make_user_token(uid)))
        assert resp.status_code == 201
        assert resp.json()["status"] == "completed"
        assert resp.json()["new_balance"] == 200

    def test_redeem_insufficient(self, client, db_engine):
        uid = make_user(db_engine, points=10)
        rid = make_reward(db_engine, points_cost=100)
        resp = client.post(f"/api/rewards/{rid}/redeem", headers=_auth(make_user_token(uid)))
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Insufficient impact points"

    def test_redeem_unknown_reward(self, client, db_engine):
        uid = make_user(db_engine, points=500)
        resp = client.post("/api/rewards/77/redeem", headers=_auth(make_user_token(uid)))
        assert resp.status_code == 404


# ===========================================================================
# Admin endpoints
# ===========================================================================
class TestAdminEndpoints:
    def test_reconcile(self, client, admin_token):
        resp = client.post("/api/admin/reconcile", headers=_auth(admin_token))
        assert resp.status_code == 200
        assert resp.json()["intents"]["checked"] == 0
        assert "audit" not in resp.json()

    def test_reconcile_with_audit(self, client, db_engine, admin_token):
        make_user(db_engine, points=30)
        resp = client.post(
            "/api/admin/reconcile", params={"audit": "true"}, headers=_auth(admin_token),
        )
        assert resp.json()["audit"]["drifted"] == 1

    def test_reconcile_store_outage(self, client, admin_token):
        with patch.object(PointsStore, "list_intents", side_effect=_outage):
            resp = client.post("/api/admin/reconcile", headers=_auth(admin_token))
        assert resp.status_code == 503

    def test_alerts_capture_warnings(self, client, admin_token):
        install_handler()
        get_buffer().clear()
        logging.getLogger("dopaya.services.ledger_service").error("Ledger append failed for user 1")
        logging.getLogger("dopaya.services.store").warning("Store read retrying")

        resp = client.get(
            "/api/admin/alerts",
            params={"level": "ERROR", "logger": "dopaya.services.ledger"},
            headers=_auth(admin_token),
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 1
        assert data["entries"][0]["message"] == "Ledger append failed for user 1"
        assert data["entries"][0]["level"] == "ERROR"
