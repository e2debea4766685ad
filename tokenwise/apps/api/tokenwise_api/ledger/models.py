"""Ledger result models (pydantic)."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class LedgerEntryView(BaseModel):
    """Read model of one token_ledger row."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    user_id: str
    amount: int
    balance_after: int
    source_type: str
    action_type: Optional[str] = None
    pool_id: Optional[str] = None
    reference_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    metadata: Optional[dict[str, Any]] = Field(default=None, validation_alias="entry_metadata")
    created_at: datetime


class LedgerBalance(BaseModel):
    """Spendable balance derived from active pools."""

    current_balance: int = 0
    free_tokens: int = 0
    subscription_tokens: int = 0
    purchased_tokens: int = 0
    admin_tokens: int = 0


class BalanceCheck(BaseModel):
    """Affordability of one action against the current balance."""

    can_afford: bool
    current_balance: int
    cost: int
    shortfall: int


class DeductionResult(BaseModel):
    """Outcome of a deduction (first execution or idempotent replay)."""

    success: bool = True
    new_balance: int
    entry: LedgerEntryView
    entries: list[LedgerEntryView]
    idempotent: bool = False


class GrantResult(BaseModel):
    """Outcome of a grant.

    granted=False means the idempotency key was already used (or the grant
    size was zero); nothing was written.
    """

    granted: bool
    new_balance: int
    amount: int = 0
    pool_id: Optional[str] = None
    entry: Optional[LedgerEntryView] = None
    rolled_over: int = 0
    expired: int = 0


class RevokeResult(BaseModel):
    """Outcome of an admin revoke (revoked may be less than requested)."""

    requested: int
    revoked: int
    new_balance: int
    entries: list[LedgerEntryView] = Field(default_factory=list)


class ExpirySweepResult(BaseModel):
    """Outcome of one expiration sweep pass."""

    processed: int = 0
    expired_tokens: int = 0
    errors: list[str] = Field(default_factory=list)


class LedgerHistory(BaseModel):
    """One page of a user's ledger, newest first."""

    entries: list[LedgerEntryView]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.entries) < self.total
