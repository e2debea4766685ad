"""Grant engine: free-daily, subscription, purchase and admin grants, admin revoke.

Every grant writes one pool and one positive ledger entry in a single
transaction, keyed by a natural idempotency key. A key that is already in the
ledger (including one inserted by a concurrent request that won the unique
constraint race) is reported as ``granted=False`` with nothing written.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tokenwise_api.context import ledger_op_var
from tokenwise_api.db.models import LedgerEntry, TokenPool, utcnow
from tokenwise_api.ledger.constants import (
    FREE_DAILY_AMOUNT,
    PRO_ROLLOVER_CAP,
    SUBSCRIPTION_TOKENS,
    ActionType,
    SourceType,
)
from tokenwise_api.ledger.errors import LedgerValidationError
from tokenwise_api.ledger.grant_cache import FreeDailyGrantCache
from tokenwise_api.ledger.models import GrantResult, LedgerEntryView, RevokeResult
from tokenwise_api.ledger.pools import (
    append_entry,
    find_entry_by_key,
    get_balance,
    lock_active_pools,
    new_id,
    plan_consumption,
)

logger = logging.getLogger(__name__)

SUBSCRIPTION_PERIOD = timedelta(days=30)


def _next_utc_midnight(now: datetime) -> datetime:
    return (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)


def _not_granted(db: Session, user_id: str, entry: Optional[LedgerEntry], now: datetime) -> GrantResult:
    return GrantResult(
        granted=False,
        new_balance=get_balance(db, user_id, now=now).current_balance,
        pool_id=entry.pool_id if entry is not None else None,
        entry=LedgerEntryView.model_validate(entry) if entry is not None else None,
    )


def _stage_credit(
    db: Session,
    *,
    user_id: str,
    amount: int,
    balance_before: int,
    source_type: str,
    idempotency_key: str,
    action_type: str = ActionType.GRANT.value,
    pool_amount: Optional[int] = None,
    expires_at: Optional[datetime] = None,
    rollover_eligible: bool = False,
    reference_id: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
    now: datetime,
) -> tuple[TokenPool, LedgerEntry]:
    """Stage pool + entry. ``pool_amount`` may exceed ``amount`` when carried-over tokens are folded in."""
    pool_amount = amount if pool_amount is None else pool_amount
    pool = TokenPool(
        id=new_id(),
        user_id=user_id,
        source_type=source_type,
        amount=pool_amount,
        remaining=pool_amount,
        expires_at=expires_at,
        rollover_eligible=rollover_eligible,
        reference_id=reference_id,
        created_at=now,
        updated_at=now,
    )
    db.add(pool)
    entry = append_entry(
        db,
        user_id=user_id,
        amount=amount,
        balance_after=balance_before + pool_amount,
        source_type=source_type,
        action_type=action_type,
        pool_id=pool.id,
        reference_id=reference_id,
        idempotency_key=idempotency_key,
        metadata=metadata,
        now=now,
    )
    return pool, entry


def _run_grant(
    db: Session,
    user_id: str,
    idempotency_key: str,
    event: str,
    stage: Callable[[], GrantResult],
    now: datetime,
) -> GrantResult:
    """Check the key, run ``stage`` and commit; roll back on any failure."""
    existing = find_entry_by_key(db, user_id, idempotency_key)
    if existing is not None:
        logger.info(f"{event}.duplicate", extra={"idempotency_key": idempotency_key})
        return _not_granted(db, user_id, existing, now)

    try:
        result = stage()
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = find_entry_by_key(db, user_id, idempotency_key)
        if existing is None:
            logger.error(f"{event}.failed", exc_info=True)
            raise
        logger.info(f"{event}.duplicate", extra={"idempotency_key": idempotency_key, "race": True})
        return _not_granted(db, user_id, existing, now)
    except Exception:
        db.rollback()
        logger.error(f"{event}.failed", exc_info=True)
        raise

    logger.info(
        f"{event}.success",
        extra={"amount": result.amount, "new_balance": result.new_balance, "pool_id": result.pool_id},
    )
    return result


def _credit(
    db: Session,
    user_id: str,
    amount: int,
    source_type: str,
    *,
    idempotency_key: str,
    event: str,
    expires_at: Optional[datetime] = None,
    rollover_eligible: bool = False,
    reference_id: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
    now: datetime,
) -> GrantResult:
    if amount <= 0:
        raise LedgerValidationError("Grant amount must be positive")

    def stage() -> GrantResult:
        balance = sum(p.remaining for p in lock_active_pools(db, user_id, now=now))
        pool, entry = _stage_credit(
            db,
            user_id=user_id,
            amount=amount,
            balance_before=balance,
            source_type=source_type,
            idempotency_key=idempotency_key,
            expires_at=expires_at,
            rollover_eligible=rollover_eligible,
            reference_id=reference_id,
            metadata=metadata,
            now=now,
        )
        return GrantResult(
            granted=True,
            new_balance=entry.balance_after,
            amount=amount,
            pool_id=pool.id,
            entry=LedgerEntryView.model_validate(entry),
        )

    return _run_grant(db, user_id, idempotency_key, event, stage, now)


def grant_free_daily(
    db: Session,
    user_id: str,
    *,
    now: Optional[datetime] = None,
    cache: Optional[FreeDailyGrantCache] = None,
) -> GrantResult:
    """Grant today's free tokens (once per UTC day, expiring at next midnight)."""
    now = now or utcnow()
    ledger_op_var.set("grant_free_daily")
    day = now.strftime("%Y-%m-%d")

    if cache is not None and cache.already_granted(user_id, day):
        return GrantResult(granted=False, new_balance=get_balance(db, user_id, now=now).current_balance)

    result = _credit(
        db,
        user_id,
        FREE_DAILY_AMOUNT,
        SourceType.FREE.value,
        idempotency_key=f"free_daily_{user_id}_{day}",
        event="ledger.grant.free_daily",
        expires_at=_next_utc_midnight(now),
        metadata={"type": "daily_grant"},
        now=now,
    )
    if cache is not None:
        cache.mark_granted(user_id, day, now=now)
    return result


def rollover_pools_lock_stmt(user_id: str):
    """Prior rollover-eligible subscription pools with tokens left, locked."""
    return (
        select(TokenPool)
        .where(
            TokenPool.user_id == user_id,
            TokenPool.source_type.in_([SourceType.SUBSCRIPTION.value, SourceType.ROLLOVER.value]),
            TokenPool.rollover_eligible.is_(True),
            TokenPool.remaining > 0,
        )
        .order_by(TokenPool.id)
        .with_for_update()
    )


def _collect_rollover(
    db: Session, user_id: str, *, now: datetime
) -> tuple[int, int, int]:
    """Zero prior rollover-eligible subscription pools.

    Returns (total_unused, still_active_part, carried) where carried is capped
    at PRO_ROLLOVER_CAP. Pools that lapsed at the period boundary are included.
    """
    prior = db.execute(rollover_pools_lock_stmt(user_id)).scalars().all()
    total = active = 0
    for pool in prior:
        total += pool.remaining
        if pool.expires_at is None or pool.expires_at > now:
            active += pool.remaining
        pool.remaining = 0
        pool.updated_at = now
    db.flush()
    return total, active, min(total, PRO_ROLLOVER_CAP)


def subscription_grant_key(user_id: str, plan: str, period_start: datetime) -> str:
    return f"subscription_{user_id}_{plan}_{period_start.strftime('%Y-%m-%d')}"


def stage_subscription_grant(
    db: Session,
    user_id: str,
    plan: str,
    *,
    period_start: datetime,
    period_end: datetime,
    reference_id: Optional[str] = None,
    now: datetime,
) -> GrantResult:
    """Stage a subscription grant (and pro rollover) without committing.

    The caller owns the transaction and has already checked the key.
    """
    amount = SUBSCRIPTION_TOKENS[plan]
    idempotency_key = subscription_grant_key(user_id, plan, period_start)
    is_pro = plan == "pro"

    if is_pro:
        # Lock prior pools first so a concurrent deduction cannot spend them mid-rollover
        unused, active_part, carried = _collect_rollover(db, user_id, now=now)
    else:
        unused = active_part = carried = 0
    balance = sum(p.remaining for p in lock_active_pools(db, user_id, now=now))
    expired = unused - carried

    if expired > 0:
        append_entry(
            db,
            user_id=user_id,
            amount=-expired,
            balance_after=balance + carried,
            source_type=SourceType.EXPIRATION.value,
            action_type=ActionType.EXPIRE.value,
            idempotency_key=f"rollover_expire_{idempotency_key}",
            metadata={"reason": "rollover_cap_exceeded", "cap": PRO_ROLLOVER_CAP},
            # Expiry precedes the grant in history
            now=now - timedelta(microseconds=1),
        )

    pool, entry = _stage_credit(
        db,
        user_id=user_id,
        amount=amount,
        balance_before=balance,
        source_type=SourceType.SUBSCRIPTION.value,
        idempotency_key=idempotency_key,
        pool_amount=amount + carried,
        expires_at=period_end,
        rollover_eligible=is_pro,
        reference_id=reference_id,
        metadata={
            "plan": plan,
            "period_start": period_start.isoformat(),
            "rolled_over": carried,
            "previously_active": active_part,
        },
        now=now,
    )
    return GrantResult(
        granted=True,
        new_balance=entry.balance_after,
        amount=amount,
        pool_id=pool.id,
        entry=LedgerEntryView.model_validate(entry),
        rolled_over=carried,
        expired=expired,
    )


def grant_subscription_tokens(
    db: Session,
    user_id: str,
    plan: str,
    *,
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
    reference_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> GrantResult:
    """Grant a plan's monthly allotment for the period starting at ``period_start``.

    For ``pro``, unused tokens of earlier rollover-eligible pools are carried
    into the new pool up to PRO_ROLLOVER_CAP; the excess is written off with
    an ``expire`` entry. Plan ``free`` grants nothing.
    """
    now = now or utcnow()
    ledger_op_var.set("grant_subscription")
    if plan not in SUBSCRIPTION_TOKENS:
        raise LedgerValidationError(f"Unknown plan '{plan}'")
    if SUBSCRIPTION_TOKENS[plan] <= 0:
        return GrantResult(granted=False, new_balance=get_balance(db, user_id, now=now).current_balance)

    period_start = period_start or now
    period_end = period_end or period_start + SUBSCRIPTION_PERIOD

    def stage() -> GrantResult:
        return stage_subscription_grant(
            db,
            user_id,
            plan,
            period_start=period_start,
            period_end=period_end,
            reference_id=reference_id,
            now=now,
        )

    return _run_grant(
        db,
        user_id,
        subscription_grant_key(user_id, plan, period_start),
        "ledger.grant.subscription",
        stage,
        now,
    )


def grant_purchased_tokens(
    db: Session,
    user_id: str,
    amount: int,
    *,
    reference_id: str,
    now: Optional[datetime] = None,
) -> GrantResult:
    """Credit purchased tokens (never expire), keyed by the payment reference."""
    now = now or utcnow()
    ledger_op_var.set("grant_purchase")
    if not reference_id:
        raise LedgerValidationError("reference_id is required for purchases")
    return _credit(
        db,
        user_id,
        amount,
        SourceType.PURCHASE.value,
        idempotency_key=f"purchase_{reference_id}",
        event="ledger.grant.purchase",
        reference_id=reference_id,
        metadata={"type": "purchase"},
        now=now,
    )


def admin_grant_tokens(
    db: Session,
    user_id: str,
    amount: int,
    *,
    admin_id: str,
    reason: str,
    expires_at: Optional[datetime] = None,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> GrantResult:
    """Credit tokens on an admin's behalf (action ``grant``).

    A client ``idempotency_key`` is stored as ``admin_grant:{key}``; without
    one every call is a new grant.
    """
    now = now or utcnow()
    ledger_op_var.set("admin_grant")
    if idempotency_key:
        entry_key = f"admin_grant:{idempotency_key}"
    else:
        entry_key = f"admin_grant_{admin_id}_{uuid.uuid4()}"
    return _credit(
        db,
        user_id,
        amount,
        SourceType.ADMIN.value,
        idempotency_key=entry_key,
        event="ledger.grant.admin",
        expires_at=expires_at,
        reference_id=admin_id,
        metadata={"admin_id": admin_id, "reason": reason},
        now=now,
    )


def admin_revoke_tokens(
    db: Session,
    user_id: str,
    amount: int,
    *,
    admin_id: str,
    reason: str,
    now: Optional[datetime] = None,
) -> RevokeResult:
    """Remove up to ``amount`` tokens, consuming pools in deduction order.

    Revokes ``min(amount, balance)``; a zero balance is a successful no-op.
    """
    now = now or utcnow()
    ledger_op_var.set("admin_revoke")
    if amount <= 0:
        raise LedgerValidationError("Revoke amount must be positive")

    revoke_id = str(uuid.uuid4())
    try:
        pools = lock_active_pools(db, user_id, now=now)
        running = sum(p.remaining for p in pools)
        to_revoke = min(amount, running)
        entries: list[LedgerEntry] = []

        for index, (pool, take) in enumerate(plan_consumption(pools, to_revoke)):
            pool.remaining -= take
            pool.updated_at = now
            running -= take
            entries.append(
                append_entry(
                    db,
                    user_id=user_id,
                    amount=-take,
                    balance_after=running,
                    source_type=pool.source_type,
                    action_type=ActionType.REVOKE.value,
                    pool_id=pool.id,
                    reference_id=admin_id,
                    idempotency_key=f"admin_revoke_{revoke_id}#{index}",
                    metadata={"admin_id": admin_id, "reason": reason, "revoke_id": revoke_id},
                    now=now,
                )
            )
        db.commit()
    except Exception:
        db.rollback()
        logger.error("ledger.revoke.failed", exc_info=True)
        raise

    logger.info(
        "ledger.revoke.success",
        extra={"requested": amount, "revoked": to_revoke, "new_balance": running},
    )
    return RevokeResult(
        requested=amount,
        revoked=to_revoke,
        new_balance=running,
        entries=[LedgerEntryView.model_validate(e) for e in entries],
    )
