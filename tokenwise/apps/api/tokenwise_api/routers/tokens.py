"""Token ledger endpoints.

Balance check, deduction, history and the balance summary for the
authenticated user.

AUTHENTICATION:
- Session-based: Supabase JWT (POST /v1/auth/login)
- user_id is taken from the verified session only

CONCURRENCY:
- Handlers are sync and run in the threadpool; each holds its own Session
- Deduction serializes per user on the pool row locks
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from tokenwise_api.auth.session_auth import SessionAuthContext, get_session_auth_context
from tokenwise_api.config.env import get_int_env
from tokenwise_api.db.session import get_db
from tokenwise_api.ledger import check_balance, deduct_tokens, get_balance, get_ledger_history, grant_free_daily
from tokenwise_api.ledger.constants import ACTION_COSTS, ACTION_LABELS, action_label
from tokenwise_api.ledger.grant_cache import FreeDailyGrantCache, get_grant_cache
from tokenwise_api.schemas import (
    ActionCatalogResponse,
    BalanceCheckResponse,
    BalanceResponse,
    DeductRequest,
    DeductResponse,
    HistoryEntry,
    HistoryResponse,
    Pagination,
)

router = APIRouter(prefix="/v1/tokens", tags=["tokens"])
logger = logging.getLogger(__name__)

# Configuration
HISTORY_MAX_LIMIT = get_int_env("TOKENS_HISTORY_MAX_LIMIT", 100, minimum=1)


@router.get(
    "/balance-check",
    response_model=BalanceCheckResponse | ActionCatalogResponse,
)
def balance_check(
    action: Optional[str] = Query(None, description="Billable action to price"),
    auth: SessionAuthContext = Depends(get_session_auth_context),
    db: Session = Depends(get_db),
) -> BalanceCheckResponse | ActionCatalogResponse:
    """Whether the user can afford ``action`` right now.

    Without ``action``, returns the cost and label tables instead.

    Raises:
        LedgerValidationError: Unknown action (400)
    """
    if action is None:
        return ActionCatalogResponse(costs=dict(ACTION_COSTS), labels=dict(ACTION_LABELS))

    check = check_balance(db, auth.user_id, action)
    return BalanceCheckResponse(
        action=action,
        label=action_label(action),
        **check.model_dump(),
    )


@router.post("/deduct", status_code=status.HTTP_201_CREATED, response_model=DeductResponse)
def deduct(
    body: DeductRequest,
    auth: SessionAuthContext = Depends(get_session_auth_context),
    db: Session = Depends(get_db),
) -> DeductResponse:
    """Charge the action's cost to the user's pools.

    Replays with a known ``idempotency_key`` return the original result with
    ``idempotent=true`` (still 201).

    Raises:
        LedgerValidationError: Unknown action (400)
        InsufficientTokensError: Balance below cost (402)
    """
    result = deduct_tokens(
        db,
        auth.user_id,
        body.action,
        reference_id=body.reference_id,
        idempotency_key=body.idempotency_key,
        metadata=body.metadata,
    )
    return DeductResponse(**result.model_dump())


@router.get("/history", response_model=HistoryResponse)
def history(
    limit: int = Query(50, ge=1, description="Page size"),
    offset: int = Query(0, ge=0, description="Entries to skip"),
    auth: SessionAuthContext = Depends(get_session_auth_context),
    db: Session = Depends(get_db),
) -> HistoryResponse:
    """The user's ledger, newest first. ``limit`` is capped at TOKENS_HISTORY_MAX_LIMIT."""
    page = get_ledger_history(db, auth.user_id, limit=min(limit, HISTORY_MAX_LIMIT), offset=offset)
    return HistoryResponse(
        entries=[
            HistoryEntry(**entry.model_dump(), action_label=action_label(entry.action_type))
            for entry in page.entries
        ],
        pagination=Pagination(
            total=page.total,
            limit=page.limit,
            offset=page.offset,
            has_more=page.has_more,
        ),
    )


@router.get("/balance", response_model=BalanceResponse)
def balance(
    auth: SessionAuthContext = Depends(get_session_auth_context),
    db: Session = Depends(get_db),
    cache: Optional[FreeDailyGrantCache] = Depends(get_grant_cache),
) -> BalanceResponse:
    """Balance summary; grants today's free tokens first if not yet granted."""
    grant = grant_free_daily(db, auth.user_id, cache=cache)
    buckets = get_balance(db, auth.user_id)
    return BalanceResponse(
        **buckets.model_dump(),
        free_daily_granted=grant.granted,
        costs=dict(ACTION_COSTS),
        labels=dict(ACTION_LABELS),
    )
