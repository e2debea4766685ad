"""Shared test constants."""

from datetime import datetime, timezone

TEST_USER_ID = "user_test_0001"
ADMIN_USER_ID = "user_admin_0001"

# Fixed clock for ledger/subscription unit tests (mid-day UTC)
FIXED_NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
