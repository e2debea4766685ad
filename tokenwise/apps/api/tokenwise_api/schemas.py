"""Pydantic schemas for API requests/responses."""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from tokenwise_api.ledger.models import LedgerEntryView


# ============================================================================
# RFC 9457 Problem Details
# ============================================================================


class ProblemDetail(BaseModel):
    """RFC 9457 Problem Details for HTTP API errors.

    Extension members (``code``, ``current_balance``, ``shortfall``, ...) are
    allowed and serialized next to the standard fields.
    """

    model_config = ConfigDict(extra="allow")

    type: str = Field(..., description="URI reference identifying the problem type")
    title: str = Field(..., description="Short, human-readable summary")
    status: int = Field(..., description="HTTP status code")
    detail: str | dict[str, Any] = Field(..., description="Human-readable explanation or structured error details")
    instance: Optional[str] = Field(None, description="URI reference identifying the specific occurrence")


# ============================================================================
# /v1/tokens - Request/Response
# ============================================================================


class BalanceCheckResponse(BaseModel):
    """Response for GET /v1/tokens/balance-check?action=..."""

    action: str
    label: str
    can_afford: bool
    current_balance: int
    cost: int
    shortfall: int


class ActionCatalogResponse(BaseModel):
    """Response for GET /v1/tokens/balance-check without an action."""

    costs: dict[str, int]
    labels: dict[str, str]


class DeductRequest(BaseModel):
    """Request body for POST /v1/tokens/deduct."""

    action: str = Field(..., min_length=1, description="Billable action (e.g. chat)")
    reference_id: Optional[str] = Field(None, max_length=200, description="Caller reference")
    idempotency_key: Optional[str] = Field(
        None, min_length=1, max_length=200, description="Client retry key (unique per user)"
    )
    metadata: Optional[dict[str, Any]] = None


class DeductResponse(BaseModel):
    """Response for POST /v1/tokens/deduct (201)."""

    success: bool
    new_balance: int
    entry: LedgerEntryView
    entries: list[LedgerEntryView]
    idempotent: bool


class HistoryEntry(LedgerEntryView):
    """Ledger entry with its human-readable action label."""

    action_label: Optional[str] = None


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class HistoryResponse(BaseModel):
    """Response for GET /v1/tokens/history."""

    entries: list[HistoryEntry]
    pagination: Pagination


class BalanceResponse(BaseModel):
    """Response for GET /v1/tokens/balance."""

    current_balance: int
    free_tokens: int
    subscription_tokens: int
    purchased_tokens: int
    admin_tokens: int
    free_daily_granted: bool
    costs: dict[str, int]
    labels: dict[str, str]


# ============================================================================
# /v1/subscription - Request/Response
# ============================================================================


class ChangePlanRequest(BaseModel):
    """Request body for POST /v1/subscription/change-plan."""

    new_plan: str = Field(..., description="Target plan (free, basic, pro, enterprise)")
    immediate: bool = Field(default=True, description="Apply a downgrade to free right away")


# ============================================================================
# /admin/tokens - Request/Response
# ============================================================================


class AdminGrantRequest(BaseModel):
    """Request body for POST /admin/tokens/grant."""

    user_id: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0, le=1_000_000)
    reason: str = Field(..., min_length=1, max_length=200)
    expires_in_days: Optional[int] = Field(None, gt=0, le=3650)
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=200)


class AdminRevokeRequest(BaseModel):
    """Request body for POST /admin/tokens/revoke."""

    user_id: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0, le=1_000_000)
    reason: str = Field(..., min_length=1, max_length=200)


class PurchaseCreditRequest(BaseModel):
    """Request body for POST /admin/tokens/purchases (payment confirmed upstream)."""

    user_id: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0, le=1_000_000)
    reference_id: str = Field(..., min_length=1, max_length=200, description="Payment reference")


class ExpirySweepRequest(BaseModel):
    """Request body for POST /admin/ledger/expire."""

    limit: int = Field(default=100, ge=1, le=1000)


# ============================================================================
# /v1/auth - Request/Response
# ============================================================================


class SignupRequest(BaseModel):
    """Request body for POST /v1/auth/signup."""

    email: str = Field(
        ...,
        description="User email address",
        pattern=r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$",
    )
    password: str = Field(
        ...,
        description="User password (minimum 8 characters)",
        min_length=8,
    )


class LoginRequest(BaseModel):
    """Request body for POST /v1/auth/login."""

    email: str = Field(
        ...,
        description="User email address",
        pattern=r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$",
    )
    password: str = Field(..., description="User password", min_length=8)


class AuthResponse(BaseModel):
    """Response for successful auth operations."""

    user_id: str = Field(..., description="Supabase user UUID")
    email: str = Field(..., description="User email")
    email_confirmed: bool = Field(..., description="Email confirmation status")
    plan: Optional[str] = Field(None, description="Subscription plan (signup only)")
    access_token: Optional[str] = Field(None, description="JWT access token (only for login)")
    refresh_token: Optional[str] = Field(None, description="JWT refresh token (only for login)")
    message: Optional[str] = Field(None, description="Additional message (e.g., 'Check your email')")
