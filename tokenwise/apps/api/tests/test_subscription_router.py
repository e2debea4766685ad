"""HTTP surface of /v1/subscription."""

from tokenwise_api.db.models import TokenPool
from tokenwise_api.subscription.transitions import change_plan, create_free_subscription
from tests.helpers import TEST_USER_ID


class TestGetSubscription:
    def test_state_payload(self, test_client, db_session):
        create_free_subscription(db_session, TEST_USER_ID)

        response = test_client.get("/v1/subscription")

        assert response.status_code == 200
        data = response.json()
        assert data["subscription"]["plan"] == "free"
        assert data["effective_plan"] == "free"
        assert data["feature_access"]["can_create_characters"] is False
        assert data["plan_config"]["monthly_tokens"] == 50

    def test_no_subscription_is_404_problem(self, test_client):
        response = test_client.get("/v1/subscription")

        assert response.status_code == 404
        data = response.json()
        assert data["code"] == "NOT_FOUND"
        assert data["type"].endswith("/not-found")


class TestChangePlan:
    def test_upgrade(self, test_client, db_session):
        create_free_subscription(db_session, TEST_USER_ID)

        response = test_client.post("/v1/subscription/change-plan", json={"new_plan": "pro"})

        assert response.status_code == 200
        data = response.json()
        assert data["action"] == "upgraded"
        assert data["tokens_granted"] == 2500
        assert data["prorated_amount_cents"] == 3900
        db_session.expire_all()
        assert db_session.query(TokenPool).filter_by(user_id=TEST_USER_ID).one().amount == 2500

    def test_scheduled_downgrade(self, test_client, db_session):
        create_free_subscription(db_session, TEST_USER_ID)
        change_plan(db_session, TEST_USER_ID, "enterprise")

        data = test_client.post(
            "/v1/subscription/change-plan", json={"new_plan": "basic", "immediate": False}
        ).json()

        assert data["action"] == "downgrade_scheduled"
        assert data["effective_date"] is not None

    def test_same_plan_is_400(self, test_client, db_session):
        create_free_subscription(db_session, TEST_USER_ID)

        response = test_client.post("/v1/subscription/change-plan", json={"new_plan": "free"})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"


class TestCancelAndReactivate:
    def test_cancel_then_reactivate(self, test_client, db_session):
        create_free_subscription(db_session, TEST_USER_ID)
        change_plan(db_session, TEST_USER_ID, "basic")

        cancel = test_client.post("/v1/subscription/cancel")
        state = test_client.get("/v1/subscription").json()
        reactivate = test_client.post("/v1/subscription/reactivate")

        assert cancel.status_code == 200
        assert cancel.json()["success"] is True
        assert state["subscription"]["cancel_at_period_end"] is True
        assert state["effective_plan"] == "basic"
        assert reactivate.json()["plan"] == "basic"
        assert reactivate.json()["monthly_tokens"] == 500

    def test_reactivate_without_cancel_is_400(self, test_client, db_session):
        create_free_subscription(db_session, TEST_USER_ID)

        response = test_client.post("/v1/subscription/reactivate")

        assert response.status_code == 400
