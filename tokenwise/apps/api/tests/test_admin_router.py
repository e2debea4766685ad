"""HTTP surface of /admin: capability-gated ledger operations and the operator sweep."""

from datetime import timedelta

import pytest

from tokenwise_api.db.models import LedgerEntry, TokenPool, utcnow
from tests.helpers import ADMIN_USER_ID, TEST_USER_ID

OPERATOR_TOKEN = "op-token-for-tests"


@pytest.fixture
def as_admin(auth_user):
    auth_user["user_id"] = ADMIN_USER_ID
    return auth_user


class TestGrant:
    def test_economic_admin_grants(self, test_client, make_admin, as_admin, db_session):
        make_admin("economic_admin")

        response = test_client.post(
            "/admin/tokens/grant",
            json={"user_id": TEST_USER_ID, "amount": 250, "reason": "support credit", "expires_in_days": 30},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["granted"] is True
        assert data["new_balance"] == 250
        pool = db_session.query(TokenPool).filter_by(user_id=TEST_USER_ID).one()
        assert pool.source_type == "admin"
        assert pool.expires_at is not None
        entry = db_session.query(LedgerEntry).filter_by(user_id=TEST_USER_ID).one()
        assert entry.entry_metadata == {"admin_id": ADMIN_USER_ID, "reason": "support credit"}

    def test_grant_with_key_replays(self, test_client, make_admin, as_admin):
        make_admin("super_admin")
        body = {"user_id": TEST_USER_ID, "amount": 5, "reason": "promo", "idempotency_key": "promo-1"}

        test_client.post("/admin/tokens/grant", json=body)
        second = test_client.post("/admin/tokens/grant", json=body).json()

        assert second["granted"] is False
        assert second["new_balance"] == 5

    def test_non_admin_forbidden(self, test_client):
        response = test_client.post(
            "/admin/tokens/grant", json={"user_id": TEST_USER_ID, "amount": 1, "reason": "x"}
        )

        assert response.status_code == 403
        assert response.headers["content-type"].startswith("application/problem+json")
        assert response.json()["code"] == "FORBIDDEN"

    def test_analyst_forbidden(self, test_client, make_admin, as_admin):
        make_admin("analyst")

        response = test_client.post(
            "/admin/tokens/grant", json={"user_id": TEST_USER_ID, "amount": 1, "reason": "x"}
        )

        assert response.status_code == 403

    def test_inactive_admin_forbidden(self, test_client, make_admin, as_admin):
        make_admin("super_admin", is_active=False)

        response = test_client.post(
            "/admin/tokens/grant", json={"user_id": TEST_USER_ID, "amount": 1, "reason": "x"}
        )

        assert response.status_code == 403

    def test_analyst_with_extra_capability_allowed(self, test_client, make_admin, as_admin):
        make_admin("analyst", extra_capabilities=["execute_token_operations"])

        response = test_client.post(
            "/admin/tokens/grant", json={"user_id": TEST_USER_ID, "amount": 1, "reason": "x"}
        )

        assert response.status_code == 201

    def test_non_positive_amount_is_422(self, test_client, make_admin, as_admin):
        make_admin("economic_admin")

        response = test_client.post(
            "/admin/tokens/grant", json={"user_id": TEST_USER_ID, "amount": 0, "reason": "x"}
        )

        assert response.status_code == 422


class TestRevokeAndPurchase:
    def test_revoke_capped_at_balance(self, test_client, make_admin, make_pool, as_admin):
        make_admin("economic_admin")
        make_pool("purchase", 30)

        data = test_client.post(
            "/admin/tokens/revoke", json={"user_id": TEST_USER_ID, "amount": 100, "reason": "chargeback"}
        ).json()

        assert data["requested"] == 100
        assert data["revoked"] == 30
        assert data["new_balance"] == 0

    def test_purchase_credit_keyed_by_reference(self, test_client, make_admin, as_admin):
        make_admin("economic_admin")
        body = {"user_id": TEST_USER_ID, "amount": 1000, "reference_id": "pay_abc"}

        first = test_client.post("/admin/tokens/purchases", json=body)
        second = test_client.post("/admin/tokens/purchases", json=body)

        assert first.status_code == 201
        assert first.json()["granted"] is True
        assert second.json()["granted"] is False
        assert second.json()["new_balance"] == 1000


class TestBalanceLookup:
    def test_analyst_can_view(self, test_client, make_admin, make_pool, as_admin):
        make_admin("analyst")
        make_pool("subscription", 500, expires_at=utcnow() + timedelta(days=3))
        make_pool("admin", 20)

        data = test_client.get(f"/admin/tokens/balance/{TEST_USER_ID}").json()

        assert data == {
            "current_balance": 520,
            "free_tokens": 0,
            "subscription_tokens": 500,
            "purchased_tokens": 0,
            "admin_tokens": 20,
        }


class TestOperatorExpirySweep:
    def test_valid_token_runs_sweep(self, test_client, make_pool, monkeypatch):
        monkeypatch.setenv("ADMIN_TOKEN", OPERATOR_TOKEN)
        make_pool("free", 10, expires_at=utcnow() - timedelta(hours=1))

        response = test_client.post(
            "/admin/ledger/expire", json={"limit": 50}, headers={"X-Admin-Token": OPERATOR_TOKEN}
        )

        assert response.status_code == 200
        assert response.json() == {"processed": 1, "expired_tokens": 10, "errors": []}

    def test_wrong_token_is_401(self, test_client, monkeypatch):
        monkeypatch.setenv("ADMIN_TOKEN", OPERATOR_TOKEN)

        response = test_client.post("/admin/ledger/expire", headers={"X-Admin-Token": "nope"})

        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"

    def test_unconfigured_token_is_500(self, test_client, monkeypatch):
        monkeypatch.delenv("ADMIN_TOKEN", raising=False)

        response = test_client.post("/admin/ledger/expire", headers={"X-Admin-Token": "anything"})

        assert response.status_code == 500

    def test_missing_header_is_422(self, test_client):
        assert test_client.post("/admin/ledger/expire").status_code == 422
