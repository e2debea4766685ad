"""Redis marker for the once-per-day free grant.

The marker only short-circuits repeat calls; the ledger unique constraint on
(user_id, idempotency_key) stays the source of truth. Redis failures are
logged and the caller falls through to the database.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import redis

from tokenwise_api.config.env import get_bool_env
from tokenwise_api.db.redis_client import get_redis

logger = logging.getLogger(__name__)


class FreeDailyGrantCache:
    """Remembers which users already received today's free grant."""

    KEY_PREFIX = "tw:free_daily"

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    def _key(self, user_id: str, day: str) -> str:
        return f"{self.KEY_PREFIX}:{user_id}:{day}"

    @staticmethod
    def _seconds_until_midnight(now: datetime) -> int:
        midnight = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
        return max(1, int((midnight - now).total_seconds()))

    def already_granted(self, user_id: str, day: str) -> bool:
        """True only when Redis positively says the grant happened."""
        try:
            return bool(self.redis.exists(self._key(user_id, day)))
        except redis.RedisError as e:
            logger.warning(
                "ledger.grant_cache.read_failed",
                extra={"error_type": type(e).__name__},
            )
            return False

    def mark_granted(self, user_id: str, day: str, *, now: Optional[datetime] = None) -> None:
        """Set the marker until the next UTC midnight (call after commit)."""
        now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        try:
            self.redis.set(
                self._key(user_id, day), "1", ex=self._seconds_until_midnight(now)
            )
        except redis.RedisError as e:
            logger.warning(
                "ledger.grant_cache.write_failed",
                extra={"error_type": type(e).__name__},
            )


def get_grant_cache() -> Optional[FreeDailyGrantCache]:
    """FastAPI dependency: the Redis-backed marker, or None when disabled (TW_GRANT_CACHE_ENABLED)."""
    if not get_bool_env("TW_GRANT_CACHE_ENABLED", True):
        return None
    return FreeDailyGrantCache(get_redis())
