"""Subscription read models and transition results (pydantic)."""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict

from tokenwise_api.subscription.plans import FeatureAccess, PlanConfig


class SubscriptionView(BaseModel):
    """Read model of one subscriptions row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    plan: str
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    pending_plan: Optional[str] = None
    pending_plan_effective_date: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class SubscriptionState(BaseModel):
    subscription: SubscriptionView
    effective_plan: str
    feature_access: FeatureAccess
    plan_config: PlanConfig


class PlanChangeResult(BaseModel):
    """Outcome of change_plan.

    ``action`` is ``upgraded``, ``downgraded`` (immediate) or
    ``downgrade_scheduled``.
    """

    success: bool = True
    action: Literal["upgraded", "downgraded", "downgrade_scheduled"]
    current_plan: str
    new_plan: str
    effective_date: Optional[datetime] = None
    prorated_amount_cents: int = 0
    tokens_granted: int = 0
    rolled_over: int = 0
    message: str


class CancelResult(BaseModel):
    success: bool = True
    effective_date: Optional[datetime] = None
    message: str


class ReactivateResult(BaseModel):
    success: bool = True
    plan: str
    monthly_tokens: int
    message: str
