"""Pure plan helpers: hierarchy, proration, effective plan, feature access."""

from datetime import timedelta

import pytest

from tokenwise_api.db.models import Subscription
from tokenwise_api.subscription.plans import (
    SUBSCRIPTION_PLANS,
    calculate_proration,
    get_effective_plan,
    get_feature_access,
    is_downgrade,
    is_subscription_expired,
    is_upgrade,
    period_days,
    should_apply_pending_plan,
)
from tests.helpers import FIXED_NOW, TEST_USER_ID


def _subscription(**overrides) -> Subscription:
    fields = dict(
        id="sub_1",
        user_id=TEST_USER_ID,
        plan="pro",
        status="active",
        current_period_start=FIXED_NOW - timedelta(days=10),
        current_period_end=FIXED_NOW + timedelta(days=20),
        cancel_at_period_end=False,
    )
    fields.update(overrides)
    return Subscription(**fields)


class TestHierarchy:
    @pytest.mark.parametrize(
        "from_plan,to_plan",
        [("free", "basic"), ("basic", "pro"), ("pro", "enterprise"), ("free", "enterprise")],
    )
    def test_upgrades(self, from_plan, to_plan):
        assert is_upgrade(from_plan, to_plan)
        assert not is_downgrade(from_plan, to_plan)

    def test_downgrade(self):
        assert is_downgrade("enterprise", "basic")
        assert not is_upgrade("enterprise", "basic")

    def test_same_plan_is_neither(self):
        assert not is_upgrade("pro", "pro")
        assert not is_downgrade("pro", "pro")


class TestProration:
    def test_half_period_basic_to_pro(self):
        # 3900*15/30 - 1200*15/30 = 1950 - 600
        assert calculate_proration("basic", "pro", 15, 30) == 1350

    def test_full_period_from_free(self):
        assert calculate_proration("free", "basic", 30, 30) == 1200

    def test_each_side_rounded_before_subtracting(self):
        # basic: 1200*7/31 = 270.97 -> 271; pro: 3900*7/31 = 880.65 -> 881
        assert calculate_proration("basic", "pro", 7, 31) == 610

    def test_exact_half_cent_rounds_up(self):
        # basic: 1200*3/32 = 112.5 -> 113; pro: 3900*3/32 = 365.625 -> 366
        assert calculate_proration("basic", "pro", 3, 32) == 253
        assert calculate_proration("free", "basic", 3, 32) == 113

    def test_never_negative(self):
        assert calculate_proration("enterprise", "basic", 20, 30) == 0

    def test_zero_length_period(self):
        assert calculate_proration("basic", "pro", 0, 0) == 0

    def test_period_days_round_up(self):
        start = FIXED_NOW - timedelta(days=10)
        end = FIXED_NOW + timedelta(days=19, hours=1)

        assert period_days(start, end, FIXED_NOW) == (30, 20)

    def test_days_remaining_never_negative(self):
        start = FIXED_NOW - timedelta(days=40)
        end = FIXED_NOW - timedelta(days=10)

        assert period_days(start, end, FIXED_NOW)[1] == 0


class TestEffectivePlan:
    def test_active_subscription_uses_its_plan(self):
        assert get_effective_plan(_subscription(), FIXED_NOW) == "pro"

    def test_past_due_keeps_plan(self):
        assert get_effective_plan(_subscription(status="past_due"), FIXED_NOW) == "pro"

    def test_canceled_keeps_plan_until_period_end(self):
        sub = _subscription(status="canceled")

        assert get_effective_plan(sub, FIXED_NOW) == "pro"
        assert get_effective_plan(sub, FIXED_NOW + timedelta(days=21)) == "free"

    def test_expired_after_period_end_is_free(self):
        sub = _subscription(status="expired", current_period_end=FIXED_NOW - timedelta(seconds=1))

        assert get_effective_plan(sub, FIXED_NOW) == "free"

    def test_lapsed_without_period_end_is_free(self):
        assert get_effective_plan(_subscription(status="canceled", current_period_end=None), FIXED_NOW) == "free"


class TestPendingAndExpiry:
    def test_pending_plan_applies_on_effective_date(self):
        sub = _subscription(pending_plan="basic", pending_plan_effective_date=FIXED_NOW)

        assert should_apply_pending_plan(sub, FIXED_NOW) is True
        assert should_apply_pending_plan(sub, FIXED_NOW - timedelta(seconds=1)) is False

    def test_no_pending_plan(self):
        assert should_apply_pending_plan(_subscription(), FIXED_NOW) is False

    def test_expired_only_after_period_end(self):
        sub = _subscription()

        assert is_subscription_expired(sub, FIXED_NOW) is False
        assert is_subscription_expired(sub, FIXED_NOW + timedelta(days=21)) is True

    def test_no_period_end_never_expires(self):
        assert is_subscription_expired(_subscription(current_period_end=None), FIXED_NOW) is False


class TestFeatureAccess:
    def test_pro_active(self):
        access = get_feature_access("pro", "active")

        assert access.can_create_characters
        assert access.can_simulate
        assert access.can_fine_tune
        assert not access.can_access_api
        assert access.max_characters == 15
        assert access.max_traits == -1

    def test_enterprise_gets_api_access(self):
        assert get_feature_access("enterprise", "trialing").can_access_api

    def test_free_plan_creates_nothing(self):
        access = get_feature_access("free", "active")

        assert not access.can_create_characters
        assert access.max_characters == 0

    def test_past_due_keeps_limits_without_capabilities(self):
        access = get_feature_access("basic", "past_due")

        assert not access.can_create_characters
        assert not access.can_edit_dna
        assert access.max_characters == 3
        assert access.max_version_history == 5

    @pytest.mark.parametrize("status", ["canceled", "expired"])
    def test_lapsed_status_gets_nothing(self, status):
        access = get_feature_access("pro", status)

        assert not access.can_create_characters
        assert access.max_characters == 0

    def test_plan_table(self):
        assert {plan: cfg.monthly_tokens for plan, cfg in SUBSCRIPTION_PLANS.items()} == {
            "free": 50,
            "basic": 500,
            "pro": 2500,
            "enterprise": 15000,
        }
