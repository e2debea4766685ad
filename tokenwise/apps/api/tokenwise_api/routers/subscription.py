"""Subscription endpoints: current state, plan change, cancel, reactivate.

AUTHENTICATION:
- Session-based: Supabase JWT
- Only the caller's own subscription is ever read or changed
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from tokenwise_api.auth.session_auth import SessionAuthContext, get_session_auth_context
from tokenwise_api.db.session import get_db
from tokenwise_api.schemas import ChangePlanRequest
from tokenwise_api.subscription.models import (
    CancelResult,
    PlanChangeResult,
    ReactivateResult,
    SubscriptionState,
)
from tokenwise_api.subscription.transitions import (
    cancel_subscription,
    change_plan,
    get_subscription_state,
    reactivate_subscription,
)

router = APIRouter(prefix="/v1/subscription", tags=["subscription"])


@router.get("", response_model=SubscriptionState)
def get_subscription(
    auth: SessionAuthContext = Depends(get_session_auth_context),
    db: Session = Depends(get_db),
) -> SubscriptionState:
    """Subscription, effective plan, feature access and plan limits.

    A due scheduled downgrade or a lapsed period is applied on read.

    Raises:
        SubscriptionNotFoundError: No subscription row (404)
    """
    return get_subscription_state(db, auth.user_id)


@router.post("/change-plan", response_model=PlanChangeResult)
def post_change_plan(
    body: ChangePlanRequest,
    auth: SessionAuthContext = Depends(get_session_auth_context),
    db: Session = Depends(get_db),
) -> PlanChangeResult:
    """Upgrade (immediate, prorated) or downgrade (immediate to free, else scheduled).

    Raises:
        LedgerValidationError: Unknown plan or already on it (400)
        SubscriptionNotFoundError: No subscription row (404)
    """
    return change_plan(db, auth.user_id, body.new_plan, immediate=body.immediate)


@router.post("/cancel", response_model=CancelResult)
def post_cancel(
    auth: SessionAuthContext = Depends(get_session_auth_context),
    db: Session = Depends(get_db),
) -> CancelResult:
    """Schedule cancellation at the end of the current period."""
    return cancel_subscription(db, auth.user_id)


@router.post("/reactivate", response_model=ReactivateResult)
def post_reactivate(
    auth: SessionAuthContext = Depends(get_session_auth_context),
    db: Session = Depends(get_db),
) -> ReactivateResult:
    """Undo a scheduled cancellation."""
    return reactivate_subscription(db, auth.user_id)
