"""Token ledger: pools, balance, deduction, grants and expiration."""

from tokenwise_api.ledger.deduction import deduct_tokens
from tokenwise_api.ledger.errors import (
    InsufficientTokensError,
    LedgerError,
    LedgerValidationError,
    SubscriptionNotFoundError,
)
from tokenwise_api.ledger.expiry import process_expired_pools
from tokenwise_api.ledger.grants import (
    admin_grant_tokens,
    admin_revoke_tokens,
    grant_free_daily,
    grant_purchased_tokens,
    grant_subscription_tokens,
)
from tokenwise_api.ledger.history import get_ledger_history
from tokenwise_api.ledger.pools import check_balance, get_balance

__all__ = [
    "InsufficientTokensError",
    "LedgerError",
    "LedgerValidationError",
    "SubscriptionNotFoundError",
    "admin_grant_tokens",
    "admin_revoke_tokens",
    "check_balance",
    "deduct_tokens",
    "get_balance",
    "get_ledger_history",
    "grant_free_daily",
    "grant_purchased_tokens",
    "grant_subscription_tokens",
    "process_expired_pools",
]
