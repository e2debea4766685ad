"""HTTP surface of /v1/tokens."""

from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from tokenwise_api.db.models import LedgerEntry, utcnow
from tokenwise_api.db.session import get_db
from tokenwise_api.auth.session_auth import SessionAuthContext, get_session_auth_context
from tokenwise_api.ledger import deduct_tokens, grant_purchased_tokens
from tokenwise_api.ledger.grant_cache import get_grant_cache
from tokenwise_api.main import app
from tests.helpers import TEST_USER_ID


class TestBalanceCheck:
    def test_affordable(self, test_client, make_pool):
        make_pool("purchase", 30)

        response = test_client.get("/v1/tokens/balance-check", params={"action": "simulation_basic"})

        assert response.status_code == 200
        assert response.json() == {
            "action": "simulation_basic",
            "label": "Basic Simulation",
            "can_afford": True,
            "current_balance": 30,
            "cost": 20,
            "shortfall": 0,
        }

    def test_shortfall(self, test_client, make_pool):
        make_pool("purchase", 30)

        data = test_client.get("/v1/tokens/balance-check", params={"action": "fine_tune"}).json()

        assert data["can_afford"] is False
        assert data["shortfall"] == 170

    def test_catalog_without_action(self, test_client):
        data = test_client.get("/v1/tokens/balance-check").json()

        assert data["costs"]["chat"] == 1
        assert data["labels"]["api_call"] == "API Call"

    def test_unknown_action_is_400(self, test_client):
        response = test_client.get("/v1/tokens/balance-check", params={"action": "chat_message"})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"


class TestDeduct:
    def test_deduct_returns_201(self, test_client, make_pool):
        make_pool("purchase", 100)

        response = test_client.post(
            "/v1/tokens/deduct",
            json={"action": "create_character", "reference_id": "char_1", "idempotency_key": "create-1"},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["success"] is True
        assert data["new_balance"] == 50
        assert data["idempotent"] is False
        assert data["entry"]["amount"] == -50
        assert data["entry"]["idempotency_key"] == "deduct:create-1"

    def test_replay_returns_201_with_idempotent_flag(self, test_client, make_pool):
        make_pool("purchase", 100)
        body = {"action": "chat", "idempotency_key": "msg-77"}

        first = test_client.post("/v1/tokens/deduct", json=body).json()
        second = test_client.post("/v1/tokens/deduct", json=body)

        assert second.status_code == 201
        assert second.json()["idempotent"] is True
        assert second.json()["entry"]["id"] == first["entry"]["id"]
        assert second.json()["new_balance"] == 99

    def test_insufficient_is_402_problem(self, test_client, make_pool):
        make_pool("purchase", 4)

        response = test_client.post("/v1/tokens/deduct", json={"action": "character_edit"})

        assert response.status_code == 402
        assert response.headers["content-type"].startswith("application/problem+json")
        data = response.json()
        assert data["code"] == "INSUFFICIENT_TOKENS"
        assert data["current_balance"] == 4
        assert data["cost"] == 10
        assert data["shortfall"] == 6

    def test_missing_action_is_422(self, test_client):
        response = test_client.post("/v1/tokens/deduct", json={"reference_id": "x"})

        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_user_id_comes_from_session_only(self, test_client, make_pool, db_session, auth_user):
        make_pool("purchase", 10, user_id="intruder")
        make_pool("purchase", 10)
        auth_user["user_id"] = "intruder"

        test_client.post("/v1/tokens/deduct", json={"action": "chat", "user_id": TEST_USER_ID})

        entry = db_session.query(LedgerEntry).one()
        assert entry.user_id == "intruder"


class TestHistory:
    def test_newest_first_with_labels_and_pagination(self, test_client, db_session):
        grant_purchased_tokens(db_session, TEST_USER_ID, 100, reference_id="pay_h1")
        for _ in range(3):
            deduct_tokens(db_session, TEST_USER_ID, "chat")

        response = test_client.get("/v1/tokens/history", params={"limit": 2, "offset": 0})

        assert response.status_code == 200
        data = response.json()
        assert len(data["entries"]) == 2
        assert data["entries"][0]["action_label"] == "Chat Message"
        assert data["entries"][0]["balance_after"] == 97
        assert data["pagination"] == {"total": 4, "limit": 2, "offset": 0, "has_more": True}

    def test_last_page(self, test_client, db_session):
        grant_purchased_tokens(db_session, TEST_USER_ID, 100, reference_id="pay_h2")

        data = test_client.get("/v1/tokens/history", params={"limit": 10, "offset": 0}).json()

        assert data["pagination"]["has_more"] is False
        assert data["entries"][0]["action_type"] == "grant"
        assert data["entries"][0]["metadata"] == {"type": "purchase"}

    def test_limit_capped(self, test_client):
        data = test_client.get("/v1/tokens/history", params={"limit": 5000}).json()

        assert data["pagination"]["limit"] == 100


class TestBalance:
    def test_first_call_of_day_grants_free_tokens(self, test_client, make_pool):
        make_pool("purchase", 40)

        first = test_client.get("/v1/tokens/balance").json()
        second = test_client.get("/v1/tokens/balance").json()

        assert first["free_daily_granted"] is True
        assert first["free_tokens"] == 10
        assert first["purchased_tokens"] == 40
        assert first["current_balance"] == 50
        assert first["costs"]["fine_tune"] == 200
        assert second["free_daily_granted"] is False
        assert second["current_balance"] == 50

    def test_expired_pool_not_in_balance(self, test_client, make_pool):
        make_pool("admin", 100, expires_at=utcnow() - timedelta(minutes=1))

        data = test_client.get("/v1/tokens/balance").json()

        assert data["admin_tokens"] == 0
        assert data["current_balance"] == 10


@pytest.mark.asyncio
async def test_deduct_through_asgi_transport(db_session, make_pool):
    """Same request path through httpx.AsyncClient (no TestClient portal)."""
    make_pool("purchase", 5)

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_auth_context] = lambda: SessionAuthContext(user_id=TEST_USER_ID)
    app.dependency_overrides[get_grant_cache] = lambda: None
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post(
                "/v1/tokens/deduct",
                json={"action": "api_call"},
                headers={"X-Request-ID": "req-async-1"},
            )
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 201
    assert response.json()["new_balance"] == 3
    assert response.headers["X-Request-ID"] == "req-async-1"
