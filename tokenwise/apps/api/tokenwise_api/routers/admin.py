"""Admin endpoints for ledger operations.

Two kinds of callers:
- Admin users (Supabase session + Capability from admin_users):
  grant, revoke, purchase credit, balance lookup
- Operators (X-Admin-Token header): run the expiration sweep on demand

All mutating actions are logged with the acting admin.
"""

import logging
import os
import secrets
from datetime import timedelta

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from tokenwise_api.auth.capabilities import AdminContext, Capability, require_capability
from tokenwise_api.context import request_id_var
from tokenwise_api.db.models import utcnow
from tokenwise_api.db.session import get_db
from tokenwise_api.ledger import (
    admin_grant_tokens,
    admin_revoke_tokens,
    get_balance,
    grant_purchased_tokens,
    process_expired_pools,
)
from tokenwise_api.ledger.models import ExpirySweepResult, GrantResult, LedgerBalance, RevokeResult
from tokenwise_api.schemas import (
    AdminGrantRequest,
    AdminRevokeRequest,
    ExpirySweepRequest,
    PurchaseCreditRequest,
)

router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger(__name__)


# ============================================================================
# Helpers
# ============================================================================


def _get_admin_token() -> str:
    """Get operator token from environment.

    Raises:
        RuntimeError: If ADMIN_TOKEN not set
    """
    token = os.getenv("ADMIN_TOKEN")
    if not token:
        raise RuntimeError(
            "ADMIN_TOKEN not set. Configure ADMIN_TOKEN environment variable."
        )
    return token


def _verify_admin_token(provided_token: str) -> None:
    """Verify operator token using constant-time comparison.

    Raises:
        HTTPException 401: If token is invalid
        HTTPException 500: If ADMIN_TOKEN not configured
    """
    try:
        expected_token = _get_admin_token()
    except RuntimeError:
        logger.error("admin.token.not_configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Admin token not configured on server",
        )

    if not secrets.compare_digest(provided_token.encode(), expected_token.encode()):
        logger.warning(
            "admin.auth_failed",
            extra={"request_id": request_id_var.get()},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid X-Admin-Token",
            headers={"WWW-Authenticate": "Header"},
        )


# ============================================================================
# Admin user endpoints (session + capability)
# ============================================================================


@router.post("/tokens/grant", status_code=status.HTTP_201_CREATED, response_model=GrantResult)
def grant_tokens(
    body: AdminGrantRequest,
    admin: AdminContext = Depends(require_capability(Capability.EXECUTE_TOKEN_OPERATIONS)),
    db: Session = Depends(get_db),
) -> GrantResult:
    """Credit an admin pool to a user (optionally expiring after N days)."""
    expires_at = utcnow() + timedelta(days=body.expires_in_days) if body.expires_in_days else None
    result = admin_grant_tokens(
        db,
        body.user_id,
        body.amount,
        admin_id=admin.user_id,
        reason=body.reason,
        expires_at=expires_at,
        idempotency_key=body.idempotency_key,
    )
    logger.info(
        "admin.tokens.granted",
        extra={
            "admin_id": admin.user_id,
            "target_user_id": body.user_id,
            "amount": body.amount,
            "granted": result.granted,
        },
    )
    return result


@router.post("/tokens/revoke", response_model=RevokeResult)
def revoke_tokens(
    body: AdminRevokeRequest,
    admin: AdminContext = Depends(require_capability(Capability.EXECUTE_TOKEN_OPERATIONS)),
    db: Session = Depends(get_db),
) -> RevokeResult:
    """Remove up to ``amount`` tokens (capped at the user's balance)."""
    result = admin_revoke_tokens(
        db, body.user_id, body.amount, admin_id=admin.user_id, reason=body.reason
    )
    logger.info(
        "admin.tokens.revoked",
        extra={
            "admin_id": admin.user_id,
            "target_user_id": body.user_id,
            "requested": result.requested,
            "revoked": result.revoked,
        },
    )
    return result


@router.post("/tokens/purchases", status_code=status.HTTP_201_CREATED, response_model=GrantResult)
def credit_purchase(
    body: PurchaseCreditRequest,
    admin: AdminContext = Depends(require_capability(Capability.EXECUTE_TOKEN_OPERATIONS)),
    db: Session = Depends(get_db),
) -> GrantResult:
    """Credit purchased tokens for a payment confirmed upstream.

    Keyed by ``reference_id``: replaying the same payment reports granted=false.
    """
    result = grant_purchased_tokens(db, body.user_id, body.amount, reference_id=body.reference_id)
    logger.info(
        "admin.tokens.purchase_credited",
        extra={
            "admin_id": admin.user_id,
            "target_user_id": body.user_id,
            "amount": body.amount,
            "granted": result.granted,
        },
    )
    return result


@router.get("/tokens/balance/{user_id}", response_model=LedgerBalance)
def user_balance(
    user_id: str,
    admin: AdminContext = Depends(require_capability(Capability.VIEW_TOKEN_ANALYTICS)),
    db: Session = Depends(get_db),
) -> LedgerBalance:
    """Any user's balance buckets."""
    return get_balance(db, user_id)


# ============================================================================
# Operator endpoints (X-Admin-Token)
# ============================================================================


@router.post("/ledger/expire", response_model=ExpirySweepResult)
def run_expiry_sweep(
    body: ExpirySweepRequest = ExpirySweepRequest(),
    x_admin_token: str = Header(..., alias="X-Admin-Token"),
    db: Session = Depends(get_db),
) -> ExpirySweepResult:
    """Run one expiration sweep pass now.

    OPERATOR ONLY. Requires valid X-Admin-Token header. Per-pool failures are
    reported in ``errors``; the response is still 200.
    """
    _verify_admin_token(x_admin_token)

    result = process_expired_pools(db, limit=body.limit)
    logger.info(
        "admin.ledger.expire",
        extra={
            "processed": result.processed,
            "expired_tokens": result.expired_tokens,
            "error_count": len(result.errors),
        },
    )
    return result
