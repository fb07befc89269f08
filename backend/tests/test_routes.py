"""
API Tests for the Credits Routes
================================

The Mongo store is swapped for the in-memory store through FastAPI's
dependency overrides; everything else runs as in production.
"""

import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).parent.parent))

from credits_ledger import config
from credits_ledger.remote_store import InMemoryCreditsStore
from credits_ledger.routes import credits_router, get_credits_store
from utils.auth import create_anonymous_token, create_token


def auth(account_id="user-1", is_admin=False):
    return {"Authorization": f"Bearer {create_token(account_id, is_admin=is_admin)}"}


def today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


@pytest.fixture
def store():
    return InMemoryCreditsStore()


@pytest.fixture
def client(store):
    app = FastAPI()
    app.include_router(credits_router, prefix="/api")
    app.dependency_overrides[get_credits_store] = lambda: store
    with TestClient(app) as test_client:
        yield test_client


class TestBalance:

    def test_requires_token(self, client):
        assert client.get("/api/credits").status_code in (401, 403)

    def test_invalid_token(self, client):
        response = client.get("/api/credits", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401
        assert response.json()["detail"]["error_code"] == "unauthenticated"

    def test_first_access_seeds_welcome_credits(self, client):
        response = client.get("/api/credits", headers=auth())

        assert response.status_code == 200
        body = response.json()
        assert body["credits"] == 5
        assert body["total_earned"] == 5
        assert body["total_spent"] == 0

    def test_anonymous_account(self, client):
        token = create_anonymous_token()

        body = client.get("/api/credits", headers={"Authorization": f"Bearer {token}"}).json()

        assert body["account_id"].startswith("anon_")
        assert body["credits"] == 5

    def test_transactions_oldest_first(self, client):
        client.post("/api/credits/debit", json={"feature": "basic_hairstyle"}, headers=auth())

        body = client.get("/api/credits/transactions", headers=auth()).json()

        assert body["count"] == 2
        assert [tx["kind"] for tx in body["transactions"]] == ["earn", "spend"]


class TestDebit:

    def test_feature_debit(self, client):
        response = client.post("/api/credits/debit", json={"feature": "basic_hairstyle"}, headers=auth())

        body = response.json()
        assert body["success"] is True
        assert body["credits_left"] == 3
        assert body["transaction"]["description"] == "Basic hairstyle change"

    def test_short_balance_is_not_an_error(self, client):
        response = client.post("/api/credits/debit", json={"amount": 6}, headers=auth())

        assert response.status_code == 200
        assert response.json() == {"success": False, "credits_left": 5, "transaction": None}

    def test_unknown_feature(self, client):
        response = client.post("/api/credits/debit", json={"feature": "teleport"}, headers=auth())

        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "invalid-argument"

    def test_missing_feature_and_amount(self, client):
        assert client.post("/api/credits/debit", json={}, headers=auth()).status_code == 400

    def test_non_positive_amount_rejected(self, client):
        assert client.post("/api/credits/debit", json={"amount": 0}, headers=auth()).status_code == 422


class TestPurchases:

    def test_verify_then_duplicate(self, client):
        receipt = {"product_id": "credits_50", "receipt_data": "r-1", "transaction_id": "t-1"}

        first = client.post("/api/credits/verify-purchase", json=receipt, headers=auth()).json()
        second = client.post("/api/credits/verify-purchase", json=receipt, headers=auth()).json()

        assert first["success"] is True
        assert first["credits_added"] == 60
        assert first["total_credits"] == 65
        assert second["duplicate"] is True
        assert second["credits_added"] == 0
        assert client.get("/api/credits", headers=auth()).json()["credits"] == 65

    def test_rejected_receipt(self, client):
        body = client.post(
            "/api/credits/verify-purchase",
            json={"product_id": "credits_10", "receipt_data": "invalid"},
            headers=auth()
        ).json()

        assert body["success"] is False
        assert body["error_code"] == "purchase-rejected"

    def test_restore(self, client):
        receipts = [
            {"product_id": "credits_10", "receipt_data": "a", "transaction_id": "t-a"},
            {"product_id": "credits_100", "receipt_data": "b", "transaction_id": "t-b"},
        ]
        client.post("/api/credits/verify-purchase", json=receipts[0], headers=auth())

        body = client.post("/api/credits/restore", json={"receipts": receipts}, headers=auth()).json()

        assert body["status"] == "restored"
        assert body["credited_count"] == 1
        assert body["credits_added"] == 125
        assert body["total_credits"] == 140

    def test_products_and_costs(self, client):
        products = client.get("/api/credits/products").json()["products"]
        costs = client.get("/api/credits/costs").json()["costs"]

        popular = next(p for p in products if p["product_id"] == "credits_50")
        assert popular["total_credits"] == 60
        assert costs["premium_hairstyle"] == 5


class TestGrants:

    def test_daily_claim_once_per_date(self, client):
        first = client.post("/api/credits/daily-claim", json={"claim_date": today()}, headers=auth()).json()
        second = client.post("/api/credits/daily-claim", json={"claim_date": today()}, headers=auth()).json()

        assert first["granted"] is True
        assert first["account"]["credits"] == 8
        assert second == {"granted": False, "account": None}

    def test_daily_claim_never_moves_back_a_date(self, client):
        day = date.fromisoformat(today())
        dates = [day, day + timedelta(days=1), day, day + timedelta(days=1), day]

        granted = [
            client.post(
                "/api/credits/daily-claim", json={"claim_date": d.isoformat()}, headers=auth()
            ).json()["granted"]
            for d in dates
        ]

        assert granted == [True, True, False, False, False]
        assert client.get("/api/credits", headers=auth()).json()["credits"] == 11

    def test_daily_claim_far_date_rejected(self, client):
        far = (date.fromisoformat(today()) + timedelta(days=3)).isoformat()

        response = client.post("/api/credits/daily-claim", json={"claim_date": far}, headers=auth())

        assert response.status_code == 400

    def test_daily_claim_bad_date(self, client):
        response = client.post("/api/credits/daily-claim", json={"claim_date": "yesterday"}, headers=auth())

        assert response.status_code == 400

    def test_daily_claim_disabled(self, client, monkeypatch):
        monkeypatch.setattr(config, "DAILY_CREDITS_ENABLED", False)

        response = client.post("/api/credits/daily-claim", json={"claim_date": today()}, headers=auth())

        assert response.status_code == 412
        assert response.json()["detail"]["error_code"] == "failed-precondition"

    def test_reward_action(self, client):
        body = client.post("/api/credits/rewards/share_app", headers=auth()).json()

        assert body["credits"] == 7
        assert body["transaction"]["amount"] == 2
        assert body["transaction"]["description"] == "Share app reward"

    def test_unknown_reward_action(self, client):
        assert client.post("/api/credits/rewards/dance", headers=auth()).status_code == 400


class TestRefund:

    def test_refund_spend_once(self, client):
        spend = client.post("/api/credits/debit", json={"feature": "premium_hairstyle"}, headers=auth()).json()
        spend_id = spend["transaction"]["id"]

        first = client.post("/api/credits/refund", json={"transaction_id": spend_id}, headers=auth()).json()
        second = client.post("/api/credits/refund", json={"transaction_id": spend_id}, headers=auth()).json()

        assert first["credits"] == 5
        assert first["duplicate"] is False
        assert first["transaction"]["description"] == "Refund: Premium hairstyle change"
        assert second["credits"] == 5
        assert second["duplicate"] is True

    def test_unknown_spend(self, client):
        response = client.post("/api/credits/refund", json={"transaction_id": "spend_nope"}, headers=auth())

        assert response.status_code == 404
        assert response.json()["detail"]["error_code"] == "not-found"

    def test_other_accounts_spend_is_not_found(self, client):
        spend = client.post("/api/credits/debit", json={"feature": "basic_hairstyle"}, headers=auth()).json()

        response = client.post(
            "/api/credits/refund", json={"transaction_id": spend["transaction"]["id"]}, headers=auth("user-2")
        )

        assert response.status_code == 404

    def test_expired_spend(self, client, monkeypatch):
        monkeypatch.setattr(config, "REFUND_WINDOW_SECONDS", -1)
        spend = client.post("/api/credits/debit", json={"feature": "basic_hairstyle"}, headers=auth()).json()

        response = client.post("/api/credits/refund", json={"transaction_id": spend["transaction"]["id"]}, headers=auth())

        assert response.status_code == 412
        assert client.get("/api/credits", headers=auth()).json()["credits"] == 3


class TestAdminEarn:

    def test_non_admin_forbidden(self, client):
        response = client.post("/api/credits/earn", json={"amount": 10, "description": "Gift"}, headers=auth())

        assert response.status_code == 403

    def test_admin_credits_other_account(self, client):
        response = client.post(
            "/api/credits/earn",
            params={"account_id": "user-2"},
            json={"amount": 10, "description": "Support credit"},
            headers=auth("admin-1", is_admin=True)
        )

        assert response.status_code == 200
        assert response.json()["account_id"] == "user-2"
        assert client.get("/api/credits", headers=auth("user-2")).json()["credits"] == 15
