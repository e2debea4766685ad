"""Row locks taken by the ledger and the plan transition manager.

SQLite ignores FOR UPDATE, so the statements are compiled against the
PostgreSQL dialect the service runs on.
"""

from datetime import timedelta
from unittest.mock import patch

from sqlalchemy import Select
from sqlalchemy.dialects import postgresql

from tokenwise_api.ledger import deduct_tokens, grant_subscription_tokens
from tokenwise_api.ledger.grants import rollover_pools_lock_stmt
from tokenwise_api.ledger.pools import active_pools_lock_stmt
from tokenwise_api.subscription.transitions import change_plan, create_free_subscription, subscription_stmt
from tests.helpers import TEST_USER_ID


def _pg(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


def _locking_selects(execute) -> list[str]:
    compiled = [_pg(c.args[0]) for c in execute.call_args_list if isinstance(c.args[0], Select)]
    return [sql for sql in compiled if "FOR UPDATE" in sql]


class TestLockStatements:
    def test_active_pools(self, now):
        sql = _pg(active_pools_lock_stmt(TEST_USER_ID, now))

        assert "FROM token_pools" in sql
        assert sql.rstrip().endswith("FOR UPDATE")

    def test_rollover_pools(self):
        sql = _pg(rollover_pools_lock_stmt(TEST_USER_ID))

        assert "FROM token_pools" in sql
        assert "rollover_eligible" in sql
        assert sql.rstrip().endswith("FOR UPDATE")

    def test_subscription_row(self):
        assert _pg(subscription_stmt(TEST_USER_ID)).rstrip().endswith("FOR UPDATE")

    def test_subscription_read_without_lock(self):
        assert "FOR UPDATE" not in _pg(subscription_stmt(TEST_USER_ID, for_update=False))


class TestLocksOnCallPaths:
    def test_deduction_locks_pools(self, db_session, make_pool, now):
        make_pool("purchase", 10)

        with patch.object(db_session, "execute", wraps=db_session.execute) as execute:
            deduct_tokens(db_session, TEST_USER_ID, "chat", now=now)

        locked = _locking_selects(execute)
        assert len(locked) == 1
        assert "FROM token_pools" in locked[0]

    def test_pro_grant_locks_rollover_pools(self, db_session, make_pool, now):
        make_pool("subscription", 100, expires_at=now, rollover_eligible=True)

        with patch.object(db_session, "execute", wraps=db_session.execute) as execute:
            grant_subscription_tokens(db_session, TEST_USER_ID, "pro", period_start=now, now=now)

        assert any("rollover_eligible" in sql for sql in _locking_selects(execute))

    def test_plan_change_locks_subscription_row(self, db_session, now):
        create_free_subscription(db_session, TEST_USER_ID, now=now - timedelta(days=1))

        with patch.object(db_session, "execute", wraps=db_session.execute) as execute:
            change_plan(db_session, TEST_USER_ID, "basic", now=now)

        assert any("FROM subscriptions" in sql for sql in _locking_selects(execute))
