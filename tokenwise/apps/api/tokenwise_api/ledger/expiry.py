"""Expiration sweep: physically zero lapsed pools and record it in the ledger.

Balance reads already ignore lapsed pools; the sweep brings the ledger sum
back in line with the pool table. Purchased tokens never expire.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from tokenwise_api.context import ledger_op_var
from tokenwise_api.db.models import TokenPool, utcnow
from tokenwise_api.ledger.constants import ActionType, SourceType
from tokenwise_api.ledger.models import ExpirySweepResult
from tokenwise_api.ledger.pools import append_entry, find_entry_by_key, get_balance

logger = logging.getLogger(__name__)


def find_lapsed_pool_ids(db: Session, *, now: datetime, limit: int) -> list[str]:
    """Ids of lapsed non-purchase pools that still hold tokens, oldest expiry first."""
    return list(
        db.execute(
            select(TokenPool.id)
            .where(
                TokenPool.remaining > 0,
                TokenPool.expires_at.is_not(None),
                TokenPool.expires_at <= now,
                TokenPool.source_type != SourceType.PURCHASE.value,
            )
            .order_by(TokenPool.expires_at, TokenPool.id)
            .limit(limit)
        )
        .scalars()
        .all()
    )


def expire_pool(db: Session, pool_id: str, *, now: datetime) -> int:
    """Zero one lapsed pool and write its ``expire`` entry (one transaction).

    Returns the number of tokens expired (0 when a concurrent sweep or
    deduction already emptied the pool).
    """
    pool = db.execute(
        select(TokenPool).where(TokenPool.id == pool_id).with_for_update()
    ).scalar_one_or_none()
    if pool is None or pool.remaining <= 0:
        db.rollback()
        return 0

    key = f"expire_{pool.id}"
    if find_entry_by_key(db, pool.user_id, key) is not None:
        db.rollback()
        return 0

    expired = pool.remaining
    pool.remaining = 0
    pool.updated_at = now

    # Lapsed pools are already excluded from the spendable balance
    balance_after = get_balance(db, pool.user_id, now=now).current_balance
    append_entry(
        db,
        user_id=pool.user_id,
        amount=-expired,
        balance_after=balance_after,
        source_type=SourceType.EXPIRATION.value,
        action_type=ActionType.EXPIRE.value,
        pool_id=pool.id,
        idempotency_key=key,
        metadata={
            "expired_pool": pool.id,
            "pool_source": pool.source_type,
            "original_amount": pool.amount,
        },
        now=now,
    )
    db.commit()
    return expired


def process_expired_pools(
    db: Session, *, now: Optional[datetime] = None, limit: int = 100
) -> ExpirySweepResult:
    """Expire up to ``limit`` lapsed pools, committing each one separately.

    A failing pool is rolled back, logged and reported in ``errors``; the
    sweep moves on to the next pool.
    """
    now = now or utcnow()
    ledger_op_var.set("expire")
    result = ExpirySweepResult()

    for pool_id in find_lapsed_pool_ids(db, now=now, limit=limit):
        try:
            expired = expire_pool(db, pool_id, now=now)
        except Exception as e:
            db.rollback()
            logger.error(
                "ledger.expire.pool_failed",
                extra={"pool_id": pool_id, "error_type": type(e).__name__},
                exc_info=True,
            )
            result.errors.append(f"Failed to expire pool {pool_id}: {type(e).__name__}")
            continue

        if expired > 0:
            result.processed += 1
            result.expired_tokens += expired

    logger.info(
        "ledger.expire.completed",
        extra={
            "processed": result.processed,
            "expired_tokens": result.expired_tokens,
            "error_count": len(result.errors),
        },
    )
    return result
