"""Deduction engine: idempotent, priority-ordered, atomic token consumption.

Flow for deduct_tokens():
  1. idempotency_key already used  -> replay prior result (idempotent=True)
  2. cost lookup                   -> VALIDATION_ERROR for unknown actions
  3. lock active pools FOR UPDATE  -> INSUFFICIENT_TOKENS if balance < cost
  4. consume free -> subscription -> admin -> purchase, soonest expiry first
  5. one negative entry per touched pool, running balance_after
  6. single commit; any failure rolls back pools and entries together

Client keys are stored as "deduct:{key}" on the first entry so they never
meet grant keys (purchase_*, free_daily_*, ...) in the per-user unique
index. Additional entries of the same deduction carry
"deduct#{deduction_id}#{n}", a form no client key can produce, and all
entries share metadata.deduction_id.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tokenwise_api.context import ledger_op_var
from tokenwise_api.db.models import LedgerEntry, utcnow
from tokenwise_api.ledger.constants import ACTION_COSTS
from tokenwise_api.ledger.errors import InsufficientTokensError
from tokenwise_api.ledger.models import DeductionResult, LedgerEntryView
from tokenwise_api.ledger.pools import (
    append_entry,
    find_entry_by_key,
    get_action_cost,
    lock_active_pools,
    plan_consumption,
)

logger = logging.getLogger(__name__)

CLIENT_KEY_PREFIX = "deduct:"
PART_KEY_PREFIX = "deduct#"


def client_entry_key(idempotency_key: str) -> str:
    """Stored form of a client deduction key."""
    return f"{CLIENT_KEY_PREFIX}{idempotency_key}"


def _part_entry_key(deduction_id: str, index: int) -> str:
    return f"{PART_KEY_PREFIX}{deduction_id}#{index}"


def _entry_key(idempotency_key: Optional[str], deduction_id: str, index: int) -> Optional[str]:
    if not idempotency_key:
        return None
    if index == 0:
        return client_entry_key(idempotency_key)
    return _part_entry_key(deduction_id, index)


def _load_prior_deduction(
    db: Session, user_id: str, idempotency_key: str
) -> Optional[DeductionResult]:
    """Rebuild the result of an already-applied deduction, or None."""
    first = find_entry_by_key(db, user_id, client_entry_key(idempotency_key))
    if first is None or first.action_type not in ACTION_COSTS:
        return None

    entries = [first]
    deduction_id = (first.entry_metadata or {}).get("deduction_id")
    if deduction_id:
        entries += (
            db.execute(
                select(LedgerEntry).where(
                    LedgerEntry.user_id == user_id,
                    LedgerEntry.idempotency_key.startswith(
                        f"{PART_KEY_PREFIX}{deduction_id}#", autoescape=True
                    ),
                )
            )
            .scalars()
            .all()
        )

    # Running balance only decreases within one deduction
    ordered = sorted(entries, key=lambda e: e.balance_after, reverse=True)
    views = [LedgerEntryView.model_validate(e) for e in ordered]
    return DeductionResult(
        success=True,
        new_balance=views[-1].balance_after,
        entry=views[-1],
        entries=views,
        idempotent=True,
    )


def deduct_tokens(
    db: Session,
    user_id: str,
    action: str,
    *,
    reference_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> DeductionResult:
    """Charge ``ACTION_COSTS[action]`` to the user's pools.

    Args:
        db: Database session (committed or rolled back here)
        user_id: Supabase user id
        action: Billable action name (key of ACTION_COSTS)
        reference_id: Caller reference (character id, message id, ...)
        idempotency_key: Client retry key, unique per user
        metadata: Free-form JSON stored on every entry
        now: Clock override (tests)

    Returns:
        DeductionResult (idempotent=True for replays)

    Raises:
        LedgerValidationError: Unknown action
        InsufficientTokensError: Balance below cost (nothing mutated)
    """
    now = now or utcnow()
    ledger_op_var.set("deduct")

    if idempotency_key:
        prior = _load_prior_deduction(db, user_id, idempotency_key)
        if prior is not None:
            logger.info(
                "ledger.deduct.replayed",
                extra={"action": action, "new_balance": prior.new_balance},
            )
            return prior

    cost = get_action_cost(action)

    try:
        pools = lock_active_pools(db, user_id, now=now)
        available = sum(pool.remaining for pool in pools)

        if available < cost:
            db.rollback()  # release row locks
            logger.info(
                "ledger.deduct.insufficient",
                extra={"action": action, "cost": cost, "current_balance": available},
            )
            raise InsufficientTokensError(current_balance=available, cost=cost)

        deduction_id = str(uuid.uuid4())
        entry_metadata = {**(metadata or {}), "deduction_id": deduction_id, "cost": cost}
        running = available
        entries: list[LedgerEntry] = []

        for index, (pool, take) in enumerate(plan_consumption(pools, cost)):
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
                    action_type=action,
                    pool_id=pool.id,
                    reference_id=reference_id,
                    idempotency_key=_entry_key(idempotency_key, deduction_id, index),
                    metadata=entry_metadata,
                    now=now,
                )
            )

        db.commit()

    except InsufficientTokensError:
        raise
    except IntegrityError:
        # A concurrent request with the same idempotency key committed first
        db.rollback()
        if idempotency_key:
            prior = _load_prior_deduction(db, user_id, idempotency_key)
            if prior is not None:
                logger.info(
                    "ledger.deduct.replayed",
                    extra={"action": action, "new_balance": prior.new_balance, "race": True},
                )
                return prior
        raise
    except Exception:
        db.rollback()
        logger.error("ledger.deduct.failed", extra={"action": action}, exc_info=True)
        raise

    views = [LedgerEntryView.model_validate(e) for e in entries]
    logger.info(
        "ledger.deduct.success",
        extra={
            "action": action,
            "cost": cost,
            "new_balance": running,
            "pools_touched": len(views),
            "deduction_id": deduction_id,
        },
    )
    return DeductionResult(
        success=True,
        new_balance=running,
        entry=views[-1],
        entries=views,
        idempotent=False,
    )
