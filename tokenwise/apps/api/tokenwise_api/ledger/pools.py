"""Pool store access and balance calculation.

A pool is active when remaining > 0 and it has not lapsed (expires_at is NULL
or in the future). Lapsed pools count as zero even before the expiration
sweep physically zeroes them.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from tokenwise_api.db.models import LedgerEntry, TokenPool, utcnow
from tokenwise_api.ledger.constants import (
    ACTION_COSTS,
    BALANCE_BUCKETS,
    CONSUMPTION_PRIORITY,
)
from tokenwise_api.ledger.errors import LedgerValidationError
from tokenwise_api.ledger.models import BalanceCheck, LedgerBalance


def new_id() -> str:
    """Primary key for new pool / ledger / subscription rows."""
    return str(uuid.uuid4())


def _active_condition(user_id: str, now: datetime):
    return and_(
        TokenPool.user_id == user_id,
        TokenPool.remaining > 0,
        or_(TokenPool.expires_at.is_(None), TokenPool.expires_at > now),
    )


def get_balance(db: Session, user_id: str, *, now: Optional[datetime] = None) -> LedgerBalance:
    """Sum remaining tokens over the user's active pools, per bucket.

    Pure read; no locks are taken.
    """
    now = now or utcnow()
    rows = db.execute(
        select(TokenPool.source_type, func.coalesce(func.sum(TokenPool.remaining), 0))
        .where(_active_condition(user_id, now))
        .group_by(TokenPool.source_type)
    ).all()

    buckets: dict[str, int] = {}
    total = 0
    for source_type, remaining in rows:
        remaining = int(remaining)
        total += remaining
        bucket = BALANCE_BUCKETS.get(source_type)
        if bucket:
            buckets[bucket] = buckets.get(bucket, 0) + remaining

    return LedgerBalance(current_balance=total, **buckets)


def get_action_cost(action: str) -> int:
    """Cost of a billable action.

    Raises:
        LedgerValidationError: If the action is not in ACTION_COSTS
    """
    try:
        return ACTION_COSTS[action]
    except KeyError:
        raise LedgerValidationError(
            f"Unknown action '{action}'. Valid actions: {', '.join(sorted(ACTION_COSTS))}"
        ) from None


def check_balance(
    db: Session, user_id: str, action: str, *, now: Optional[datetime] = None
) -> BalanceCheck:
    """Whether the user can afford ``action`` right now (no side effects)."""
    cost = get_action_cost(action)
    balance = get_balance(db, user_id, now=now).current_balance
    can_afford = balance >= cost
    return BalanceCheck(
        can_afford=can_afford,
        current_balance=balance,
        cost=cost,
        shortfall=0 if can_afford else cost - balance,
    )


def consumption_order_key(pool: TokenPool) -> tuple:
    """Sort key: source priority, then soonest expiry, never-expiring last."""
    return (
        CONSUMPTION_PRIORITY.get(pool.source_type, len(CONSUMPTION_PRIORITY)),
        pool.expires_at is None,
        pool.expires_at or datetime.max,
        pool.created_at,
    )


def active_pools_lock_stmt(user_id: str, now: datetime):
    return (
        select(TokenPool)
        .where(_active_condition(user_id, now))
        .order_by(TokenPool.id)  # stable lock order
        .with_for_update()
    )


def lock_active_pools(db: Session, user_id: str, *, now: datetime) -> list[TokenPool]:
    """Lock the user's active pools (SELECT ... FOR UPDATE) in consumption order.

    Concurrent deductions/grants for the same user block here until the
    holder commits or rolls back, so decrements never exceed what was
    available at commit time.
    """
    pools = db.execute(active_pools_lock_stmt(user_id, now)).scalars().all()
    return sorted(pools, key=consumption_order_key)


def plan_consumption(pools: list[TokenPool], amount: int) -> list[tuple[TokenPool, int]]:
    """Split ``amount`` across pools (already in consumption order).

    Returns (pool, take) pairs; the caller guarantees enough is available.
    """
    plan: list[tuple[TokenPool, int]] = []
    still_needed = amount
    for pool in pools:
        if still_needed <= 0:
            break
        take = min(pool.remaining, still_needed)
        if take > 0:
            plan.append((pool, take))
            still_needed -= take
    return plan


def append_entry(
    db: Session,
    *,
    user_id: str,
    amount: int,
    balance_after: int,
    source_type: str,
    action_type: Optional[str] = None,
    pool_id: Optional[str] = None,
    reference_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> LedgerEntry:
    """Stage one ledger entry in the current transaction (no commit)."""
    entry = LedgerEntry(
        id=new_id(),
        user_id=user_id,
        amount=amount,
        balance_after=balance_after,
        source_type=source_type,
        action_type=action_type,
        pool_id=pool_id,
        reference_id=reference_id,
        idempotency_key=idempotency_key,
        entry_metadata=metadata,
        created_at=now or utcnow(),
    )
    db.add(entry)
    return entry


def find_entry_by_key(db: Session, user_id: str, idempotency_key: str) -> Optional[LedgerEntry]:
    """Ledger entry holding ``idempotency_key`` for this user, if any."""
    return db.execute(
        select(LedgerEntry).where(
            LedgerEntry.user_id == user_id,
            LedgerEntry.idempotency_key == idempotency_key,
        )
    ).scalar_one_or_none()
