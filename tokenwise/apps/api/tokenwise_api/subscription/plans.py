"""
Subscription plan tables and pure plan helpers (no database access).
"""

import math
from datetime import datetime
from typing import Final, Optional

from pydantic import BaseModel

from tokenwise_api.db.models import Subscription, utcnow

PLANS: Final[tuple[str, ...]] = ("free", "basic", "pro", "enterprise")

PLAN_HIERARCHY: Final[dict[str, int]] = {
    "free": 0,
    "basic": 1,
    "pro": 2,
    "enterprise": 3,
}

PLAN_PRICES_CENTS: Final[dict[str, int]] = {
    "free": 0,
    "basic": 1200,
    "pro": 3900,
    "enterprise": 19900,
}

ACTIVE_STATUSES: Final[frozenset[str]] = frozenset({"active", "trialing"})
LAPSED_STATUSES: Final[frozenset[str]] = frozenset({"canceled", "expired"})


class PlanConfig(BaseModel):
    """Plan limits shown to clients (-1 = unlimited)"""
    monthly_tokens: int
    max_characters: int
    can_create: bool
    can_simulate: bool
    can_fine_tune: bool
    max_traits: int
    max_version_history: int
    price: int  # whole currency units


class FeatureAccess(BaseModel):
    """What the user may do under their effective plan and status"""
    can_create_characters: bool = False
    can_edit_dna: bool = False
    can_simulate: bool = False
    can_fine_tune: bool = False
    can_access_api: bool = False
    max_characters: int = 0
    max_traits: int = 0
    max_version_history: int = 0


SUBSCRIPTION_PLANS: Final[dict[str, PlanConfig]] = {
    "free": PlanConfig(
        monthly_tokens=50, max_characters=0, can_create=False, can_simulate=False,
        can_fine_tune=False, max_traits=0, max_version_history=0, price=0,
    ),
    "basic": PlanConfig(
        monthly_tokens=500, max_characters=3, can_create=True, can_simulate=False,
        can_fine_tune=False, max_traits=15, max_version_history=5, price=12,
    ),
    "pro": PlanConfig(
        monthly_tokens=2500, max_characters=15, can_create=True, can_simulate=True,
        can_fine_tune=True, max_traits=-1, max_version_history=-1, price=39,
    ),
    "enterprise": PlanConfig(
        monthly_tokens=15000, max_characters=-1, can_create=True, can_simulate=True,
        can_fine_tune=True, max_traits=-1, max_version_history=-1, price=199,
    ),
}


def is_valid_plan(plan: str) -> bool:
    return plan in PLAN_HIERARCHY


def is_upgrade(from_plan: str, to_plan: str) -> bool:
    return PLAN_HIERARCHY[to_plan] > PLAN_HIERARCHY[from_plan]


def is_downgrade(from_plan: str, to_plan: str) -> bool:
    return PLAN_HIERARCHY[to_plan] < PLAN_HIERARCHY[from_plan]


def _prorate_cents(price_cents: int, days_remaining: int, total_days: int) -> int:
    # price * days / total rounded half up, in integers
    return (2 * price_cents * days_remaining + total_days) // (2 * total_days)


def calculate_proration(
    from_plan: str, to_plan: str, days_remaining: int, total_days_in_period: int
) -> int:
    """Upgrade charge in cents for the rest of the period (never negative).

    Each price is prorated and rounded half up separately before subtracting.
    """
    if total_days_in_period <= 0:
        return 0
    unused_credit = _prorate_cents(PLAN_PRICES_CENTS[from_plan], days_remaining, total_days_in_period)
    new_charge = _prorate_cents(PLAN_PRICES_CENTS[to_plan], days_remaining, total_days_in_period)
    return max(0, new_charge - unused_credit)


def period_days(period_start: datetime, period_end: datetime, now: datetime) -> tuple[int, int]:
    """(total_days, days_remaining), both rounded up to whole days."""
    day = 86400
    total_days = math.ceil((period_end - period_start).total_seconds() / day)
    days_remaining = max(0, math.ceil((period_end - now).total_seconds() / day))
    return total_days, days_remaining


def get_effective_plan(subscription: Subscription, now: Optional[datetime] = None) -> str:
    """Plan whose benefits apply right now.

    A canceled or expired subscription keeps its plan until the paid period
    ends, then falls back to free.
    """
    now = now or utcnow()
    if subscription.status in LAPSED_STATUSES:
        end = subscription.current_period_end
        if end is not None and end > now:
            return subscription.plan
        return "free"
    return subscription.plan


def should_apply_pending_plan(subscription: Subscription, now: Optional[datetime] = None) -> bool:
    if not subscription.pending_plan or subscription.pending_plan_effective_date is None:
        return False
    return subscription.pending_plan_effective_date <= (now or utcnow())


def is_subscription_expired(subscription: Subscription, now: Optional[datetime] = None) -> bool:
    if subscription.current_period_end is None:
        return False
    return subscription.current_period_end < (now or utcnow())


def get_feature_access(plan: str, status: str) -> FeatureAccess:
    """Feature flags for a plan/status pair.

    past_due keeps the plan's limits but disables every capability; any
    other non-active status gets nothing.
    """
    config = SUBSCRIPTION_PLANS[plan]

    if status == "past_due":
        return FeatureAccess(
            max_characters=config.max_characters,
            max_traits=config.max_traits,
            max_version_history=config.max_version_history,
        )
    if status not in ACTIVE_STATUSES:
        return FeatureAccess()

    return FeatureAccess(
        can_create_characters=config.can_create,
        can_edit_dna=config.can_create,
        can_simulate=config.can_simulate,
        can_fine_tune=config.can_fine_tune,
        can_access_api=plan == "enterprise",
        max_characters=config.max_characters,
        max_traits=config.max_traits,
        max_version_history=config.max_version_history,
    )
