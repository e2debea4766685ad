"""Shared Redis connection for the free-daily grant marker and /readyz.

Redis never decides a grant: the ledger's unique keys do. Callers treat
Redis errors as a cache miss.
"""

import os
from functools import lru_cache
from urllib.parse import urlparse

import redis

DEFAULT_REDIS_URL = "redis://localhost:6379/0"

# A slow marker lookup must not hold up a balance request
_CLIENT_OPTIONS = {
    "decode_responses": True,
    "socket_connect_timeout": 2,
    "socket_timeout": 2,
    "health_check_interval": 30,
}


@lru_cache(maxsize=1)
def get_redis() -> redis.Redis:
    """Client for REDIS_URL; REDIS_PASSWORD fills in a URL that has none."""
    url = os.getenv("REDIS_URL", DEFAULT_REDIS_URL)
    options = dict(_CLIENT_OPTIONS)
    password = os.getenv("REDIS_PASSWORD")
    if password and not urlparse(url).password:
        options["password"] = password
    return redis.from_url(url, **options)
