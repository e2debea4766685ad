"""Plan transition manager: upgrade, downgrade, cancel, reactivate.

Each transition locks the subscription row (SELECT ... FOR UPDATE), applies
its changes plus a subscription_events row and commits once. Any failure
rolls the whole transition back.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from tokenwise_api.context import ledger_op_var
from tokenwise_api.db.models import Subscription, SubscriptionEvent, utcnow
from tokenwise_api.ledger.errors import LedgerValidationError, SubscriptionNotFoundError
from tokenwise_api.ledger.grants import stage_subscription_grant, subscription_grant_key
from tokenwise_api.ledger.pools import find_entry_by_key, new_id
from tokenwise_api.subscription.models import (
    CancelResult,
    PlanChangeResult,
    ReactivateResult,
    SubscriptionState,
    SubscriptionView,
)
from tokenwise_api.subscription.plans import (
    PLANS,
    SUBSCRIPTION_PLANS,
    calculate_proration,
    get_effective_plan,
    get_feature_access,
    is_subscription_expired,
    is_upgrade,
    is_valid_plan,
    period_days,
    should_apply_pending_plan,
)

logger = logging.getLogger(__name__)

SUBSCRIPTION_PERIOD = timedelta(days=30)


def _record_event(
    db: Session,
    subscription: Subscription,
    event_type: str,
    *,
    from_plan: Optional[str],
    to_plan: Optional[str],
    amount_cents: Optional[int] = None,
    meta: Optional[dict[str, Any]] = None,
    now: datetime,
) -> SubscriptionEvent:
    event = SubscriptionEvent(
        id=new_id(),
        user_id=subscription.user_id,
        subscription_id=subscription.id,
        event_type=event_type,
        from_plan=from_plan,
        to_plan=to_plan,
        amount_cents=amount_cents,
        event_meta=meta or {},
        created_at=now,
    )
    db.add(event)
    return event


def subscription_stmt(user_id: str, *, for_update: bool = True):
    stmt = select(Subscription).where(Subscription.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    return stmt


def _load_subscription(db: Session, user_id: str, *, for_update: bool = True) -> Subscription:
    subscription = db.execute(subscription_stmt(user_id, for_update=for_update)).scalar_one_or_none()
    if subscription is None:
        raise SubscriptionNotFoundError(user_id)
    return subscription


def create_free_subscription(db: Session, user_id: str, *, now: Optional[datetime] = None) -> Subscription:
    """Create the free subscription row for a new user (idempotent)."""
    now = now or utcnow()
    existing = db.execute(
        select(Subscription).where(Subscription.user_id == user_id)
    ).scalar_one_or_none()
    if existing is not None:
        return existing

    subscription = Subscription(
        id=new_id(),
        user_id=user_id,
        plan="free",
        status="active",
        current_period_start=now,
        current_period_end=now + SUBSCRIPTION_PERIOD,
        cancel_at_period_end=False,
        created_at=now,
        updated_at=now,
    )
    db.add(subscription)
    _record_event(db, subscription, "created", from_plan=None, to_plan="free", now=now)
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.error("subscription.create.failed", exc_info=True)
        raise

    logger.info("subscription.created", extra={"plan": "free"})
    return subscription


def _upgrade(db: Session, subscription: Subscription, new_plan: str, now: datetime) -> PlanChangeResult:
    current_plan = subscription.plan
    period_start = subscription.current_period_start or now
    period_end = subscription.current_period_end or now + SUBSCRIPTION_PERIOD
    total_days, days_remaining = period_days(period_start, period_end, now)
    prorated = calculate_proration(current_plan, new_plan, days_remaining, total_days)

    new_period_end = now + SUBSCRIPTION_PERIOD
    subscription.plan = new_plan
    subscription.status = "active"
    subscription.current_period_start = now
    subscription.current_period_end = new_period_end
    subscription.cancel_at_period_end = False
    subscription.canceled_at = None
    subscription.pending_plan = None
    subscription.pending_plan_effective_date = None
    subscription.updated_at = now

    _record_event(
        db,
        subscription,
        "upgraded",
        from_plan=current_plan,
        to_plan=new_plan,
        amount_cents=prorated,
        meta={"prorated": True, "days_remaining": days_remaining, "immediate": True},
        now=now,
    )

    # Same plan re-entered on the same day: the period's allotment was already granted
    tokens_granted = rolled_over = 0
    if find_entry_by_key(db, subscription.user_id, subscription_grant_key(subscription.user_id, new_plan, now)) is None:
        grant = stage_subscription_grant(
            db,
            subscription.user_id,
            new_plan,
            period_start=now,
            period_end=new_period_end,
            reference_id=subscription.id,
            now=now,
        )
        tokens_granted, rolled_over = grant.amount, grant.rolled_over

    db.commit()
    logger.info(
        "subscription.upgraded",
        extra={
            "from_plan": current_plan,
            "to_plan": new_plan,
            "prorated_amount_cents": prorated,
            "tokens_granted": tokens_granted,
        },
    )
    return PlanChangeResult(
        action="upgraded",
        current_plan=current_plan,
        new_plan=new_plan,
        effective_date=now,
        prorated_amount_cents=prorated,
        tokens_granted=tokens_granted,
        rolled_over=rolled_over,
        message=f"Upgraded to {new_plan}. New billing cycle started.",
    )


def _downgrade(
    db: Session, subscription: Subscription, new_plan: str, immediate: bool, now: datetime
) -> PlanChangeResult:
    current_plan = subscription.plan

    if immediate and new_plan == "free":
        subscription.plan = "free"
        subscription.status = "active"
        subscription.cancel_at_period_end = False
        subscription.pending_plan = None
        subscription.pending_plan_effective_date = None
        subscription.updated_at = now
        _record_event(
            db, subscription, "downgraded",
            from_plan=current_plan, to_plan="free", meta={"immediate": True}, now=now,
        )
        db.commit()
        logger.info("subscription.downgraded", extra={"from_plan": current_plan, "to_plan": "free"})
        return PlanChangeResult(
            action="downgraded",
            current_plan=current_plan,
            new_plan="free",
            effective_date=now,
            message="Downgraded to free plan immediately.",
        )

    effective_date = subscription.current_period_end or now + SUBSCRIPTION_PERIOD
    subscription.pending_plan = new_plan
    subscription.pending_plan_effective_date = effective_date
    subscription.updated_at = now
    _record_event(
        db, subscription, "downgraded",
        from_plan=current_plan,
        to_plan=new_plan,
        meta={"scheduled": True, "effective_date": effective_date.isoformat()},
        now=now,
    )
    db.commit()
    logger.info(
        "subscription.downgrade_scheduled",
        extra={"from_plan": current_plan, "to_plan": new_plan, "effective_date": effective_date},
    )
    return PlanChangeResult(
        action="downgrade_scheduled",
        current_plan=current_plan,
        new_plan=new_plan,
        effective_date=effective_date,
        message=(
            f"Downgrade to {new_plan} scheduled for {effective_date.date().isoformat()}. "
            f"You keep {current_plan} access until then."
        ),
    )


def change_plan(
    db: Session,
    user_id: str,
    new_plan: str,
    *,
    immediate: bool = True,
    now: Optional[datetime] = None,
) -> PlanChangeResult:
    """Move the user to ``new_plan``.

    Upgrades apply immediately with proration and a fresh period plus the new
    plan's token allotment. Downgrades to free with ``immediate`` apply now;
    every other downgrade is scheduled for the end of the current period.

    Raises:
        LedgerValidationError: Unknown plan or already on it
        SubscriptionNotFoundError: User has no subscription row
    """
    now = now or utcnow()
    ledger_op_var.set("change_plan")
    if not is_valid_plan(new_plan):
        raise LedgerValidationError(
            f"Unknown plan '{new_plan}'. Valid plans: {', '.join(PLANS)}"
        )

    try:
        subscription = _load_subscription(db, user_id)
        if subscription.plan == new_plan:
            raise LedgerValidationError(f"Already on the {new_plan} plan")

        if is_upgrade(subscription.plan, new_plan):
            return _upgrade(db, subscription, new_plan, now)
        return _downgrade(db, subscription, new_plan, immediate, now)
    except (LedgerValidationError, SubscriptionNotFoundError):
        db.rollback()
        raise
    except Exception:
        db.rollback()
        logger.error("subscription.change_plan.failed", extra={"to_plan": new_plan}, exc_info=True)
        raise


def cancel_subscription(db: Session, user_id: str, *, now: Optional[datetime] = None) -> CancelResult:
    """Schedule cancellation (back to free) at the end of the current period."""
    now = now or utcnow()
    ledger_op_var.set("cancel")
    try:
        subscription = _load_subscription(db, user_id)
        if subscription.plan == "free":
            raise LedgerValidationError("Cannot cancel free plan")
        if subscription.cancel_at_period_end:
            raise LedgerValidationError("Subscription already scheduled for cancellation")

        effective_date = subscription.current_period_end
        subscription.cancel_at_period_end = True
        subscription.canceled_at = now
        subscription.pending_plan = "free"
        subscription.pending_plan_effective_date = effective_date
        subscription.updated_at = now
        _record_event(
            db, subscription, "canceled",
            from_plan=subscription.plan,
            to_plan="free",
            meta={
                "effective_date": effective_date.isoformat() if effective_date else None,
                "cancel_at_period_end": True,
            },
            now=now,
        )
        db.commit()
    except (LedgerValidationError, SubscriptionNotFoundError):
        db.rollback()
        raise
    except Exception:
        db.rollback()
        logger.error("subscription.cancel.failed", exc_info=True)
        raise

    logger.info("subscription.canceled", extra={"plan": subscription.plan, "effective_date": effective_date})
    until = effective_date.date().isoformat() if effective_date else "the end of the period"
    return CancelResult(
        effective_date=effective_date,
        message=(
            f"Subscription will be canceled at the end of your billing period ({until}). "
            "You keep full access until then."
        ),
    )


def reactivate_subscription(
    db: Session, user_id: str, *, now: Optional[datetime] = None
) -> ReactivateResult:
    """Undo a scheduled cancellation."""
    now = now or utcnow()
    ledger_op_var.set("reactivate")
    try:
        subscription = _load_subscription(db, user_id)
        if not subscription.cancel_at_period_end:
            raise LedgerValidationError("Subscription is not scheduled for cancellation")

        subscription.cancel_at_period_end = False
        subscription.canceled_at = None
        subscription.pending_plan = None
        subscription.pending_plan_effective_date = None
        subscription.updated_at = now
        _record_event(
            db, subscription, "reactivated",
            from_plan=subscription.plan,
            to_plan=subscription.plan,
            meta={"reactivated_at": now.isoformat()},
            now=now,
        )
        db.commit()
    except (LedgerValidationError, SubscriptionNotFoundError):
        db.rollback()
        raise
    except Exception:
        db.rollback()
        logger.error("subscription.reactivate.failed", exc_info=True)
        raise

    plan = subscription.plan
    logger.info("subscription.reactivated", extra={"plan": plan})
    return ReactivateResult(
        plan=plan,
        monthly_tokens=SUBSCRIPTION_PLANS[plan].monthly_tokens,
        message=f"Your {plan} subscription has been reactivated. You will continue to be billed.",
    )


def get_subscription_state(
    db: Session, user_id: str, *, now: Optional[datetime] = None
) -> SubscriptionState:
    """Current subscription with lazily applied pending plan and expiry.

    A pending plan whose effective date has passed is applied (``downgraded``
    event, reason ``scheduled_downgrade``); an active subscription whose
    period has ended is marked ``expired``.
    """
    now = now or utcnow()
    try:
        subscription = _load_subscription(db, user_id)
        changed = False

        if should_apply_pending_plan(subscription, now):
            from_plan = subscription.plan
            subscription.plan = subscription.pending_plan
            subscription.pending_plan = None
            subscription.pending_plan_effective_date = None
            subscription.updated_at = now
            _record_event(
                db, subscription, "downgraded",
                from_plan=from_plan,
                to_plan=subscription.plan,
                meta={"reason": "scheduled_downgrade"},
                now=now,
            )
            logger.info(
                "subscription.pending_plan_applied",
                extra={"from_plan": from_plan, "to_plan": subscription.plan},
            )
            changed = True

        if is_subscription_expired(subscription, now) and subscription.status == "active":
            subscription.status = "expired"
            subscription.ended_at = now
            subscription.updated_at = now
            _record_event(
                db, subscription, "expired", from_plan=subscription.plan, to_plan="free", now=now
            )
            logger.info("subscription.expired", extra={"plan": subscription.plan})
            changed = True

        if changed:
            db.commit()
        else:
            db.rollback()  # release the row lock
    except SubscriptionNotFoundError:
        db.rollback()
        raise
    except Exception:
        db.rollback()
        logger.error("subscription.state.failed", exc_info=True)
        raise

    effective_plan = get_effective_plan(subscription, now)
    return SubscriptionState(
        subscription=SubscriptionView.model_validate(subscription),
        effective_plan=effective_plan,
        feature_access=get_feature_access(effective_plan, subscription.status),
        plan_config=SUBSCRIPTION_PLANS[effective_plan],
    )
