"""Ledger domain errors.

Each error carries the Problem Details fields the API exception handler
renders (RFC 9457): type suffix, title, status code, detail and extension
members such as ``shortfall``.
"""

from typing import Any, Optional


class LedgerError(Exception):
    """Base class for ledger and subscription domain errors."""

    code: str = "LEDGER_ERROR"
    status_code: int = 500
    title: str = "Ledger Error"

    def __init__(self, detail: str, *, extensions: Optional[dict[str, Any]] = None):
        super().__init__(detail)
        self.detail = detail
        self.extensions = extensions or {}

    @property
    def error_type(self) -> str:
        """Problem type slug, e.g. ``insufficient-tokens``."""
        return self.code.lower().replace("_", "-")


class LedgerValidationError(LedgerError):
    """Bad action/plan name or a transition that is not allowed (400)."""

    code = "VALIDATION_ERROR"
    status_code = 400
    title = "Validation Error"


class InsufficientTokensError(LedgerError):
    """Spendable balance is below the action cost (402)."""

    code = "INSUFFICIENT_TOKENS"
    status_code = 402
    title = "Insufficient Tokens"

    def __init__(self, *, current_balance: int, cost: int):
        self.current_balance = current_balance
        self.cost = cost
        self.shortfall = max(0, cost - current_balance)
        super().__init__(
            f"Insufficient tokens: balance {current_balance}, cost {cost}",
            extensions={
                "current_balance": current_balance,
                "cost": cost,
                "shortfall": self.shortfall,
            },
        )


class SubscriptionNotFoundError(LedgerError):
    """User has no subscription row (404)."""

    code = "NOT_FOUND"
    status_code = 404
    title = "Subscription Not Found"

    def __init__(self, user_id: str):
        super().__init__(f"No subscription found for user {user_id}")
        self.user_id = user_id
