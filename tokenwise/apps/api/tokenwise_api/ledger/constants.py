"""Ledger constants: action costs, labels, grant sizes and plan tables.

ACTION_COSTS is the single canonical cost table. Client-facing action names
use ``chat`` (not ``chat_message``).
"""

from enum import Enum
from typing import Final


class SourceType(str, Enum):
    """Funding source of a pool (and of the ledger entries it produces)."""

    FREE = "free"
    SUBSCRIPTION = "subscription"
    PURCHASE = "purchase"
    ADMIN = "admin"
    EXPIRATION = "expiration"
    ROLLOVER = "rollover"


class ActionType(str, Enum):
    """Ledger action types.

    The first nine are billable user actions (present in ACTION_COSTS); the
    rest are written by the grant engine only.
    """

    CHAT = "chat"
    CREATE_CHARACTER = "create_character"
    CHARACTER_EDIT = "character_edit"
    DNA_EDIT = "dna_edit"
    DNA_EDIT_ADVANCED = "dna_edit_advanced"
    SIMULATION_BASIC = "simulation_basic"
    SIMULATION_ADVANCED = "simulation_advanced"
    FINE_TUNE = "fine_tune"
    API_CALL = "api_call"

    GRANT = "grant"
    REVOKE = "revoke"
    EXPIRE = "expire"
    ROLLOVER = "rollover"


ACTION_COSTS: Final[dict[str, int]] = {
    ActionType.CHAT.value: 1,
    ActionType.CREATE_CHARACTER.value: 50,
    ActionType.CHARACTER_EDIT.value: 10,
    ActionType.DNA_EDIT.value: 5,
    ActionType.DNA_EDIT_ADVANCED.value: 15,
    ActionType.SIMULATION_BASIC.value: 20,
    ActionType.SIMULATION_ADVANCED.value: 50,
    ActionType.FINE_TUNE.value: 200,
    ActionType.API_CALL.value: 2,
}

ACTION_LABELS: Final[dict[str, str]] = {
    ActionType.CHAT.value: "Chat Message",
    ActionType.CREATE_CHARACTER.value: "Create Character",
    ActionType.CHARACTER_EDIT.value: "Edit Character",
    ActionType.DNA_EDIT.value: "DNA Edit",
    ActionType.DNA_EDIT_ADVANCED.value: "Advanced DNA Edit",
    ActionType.SIMULATION_BASIC.value: "Basic Simulation",
    ActionType.SIMULATION_ADVANCED.value: "Advanced Simulation",
    ActionType.FINE_TUNE.value: "Fine-Tuning",
    ActionType.API_CALL.value: "API Call",
}

# Consumption order for deductions and revokes; rollover pools are spent
# alongside subscription pools.
CONSUMPTION_PRIORITY: Final[dict[str, int]] = {
    SourceType.FREE.value: 0,
    SourceType.SUBSCRIPTION.value: 1,
    SourceType.ROLLOVER.value: 1,
    SourceType.ADMIN.value: 2,
    SourceType.PURCHASE.value: 3,
}

FREE_DAILY_AMOUNT: Final[int] = 10
PRO_ROLLOVER_CAP: Final[int] = 500

SUBSCRIPTION_TOKENS: Final[dict[str, int]] = {
    "free": 0,
    "basic": 500,
    "pro": 2500,
    "enterprise": 15000,
}

# Balance bucket for each pool source type
BALANCE_BUCKETS: Final[dict[str, str]] = {
    SourceType.FREE.value: "free_tokens",
    SourceType.SUBSCRIPTION.value: "subscription_tokens",
    SourceType.ROLLOVER.value: "subscription_tokens",
    SourceType.PURCHASE.value: "purchased_tokens",
    SourceType.ADMIN.value: "admin_tokens",
}


def action_label(action_type: str | None) -> str | None:
    """Human-readable label for an action type (falls back to the raw name)."""
    if action_type is None:
        return None
    return ACTION_LABELS.get(action_type, action_type)
