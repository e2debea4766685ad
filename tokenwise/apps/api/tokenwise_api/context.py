"""Request context management for observability.

Context variables for request tracking across async boundaries. They feed the
JSON log formatter only; business code always receives user_id explicitly.
"""

from contextvars import ContextVar

# Request ID - unique per HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Authenticated user for the current request (set by session auth)
user_id_var: ContextVar[str] = ContextVar("user_id", default="")

# Ledger operation being executed (deduct, grant, revoke, expire, change_plan)
ledger_op_var: ContextVar[str] = ContextVar("ledger_op", default="")
