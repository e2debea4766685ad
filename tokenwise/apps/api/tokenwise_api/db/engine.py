"""Database engine builder.

Supabase pooler policy shared by the API, the sweeper and alembic:
- Default pool: NullPool (the Supabase transaction pooler does the pooling)
- Supabase host -> sslmode=require unless the URL already sets one
- PROD + Supabase -> pooler host on port 6543 is required
- ENV: TW_DB_POOL=nullpool|queuepool (default: nullpool)
"""

import logging
import os
import re
from typing import Any
from urllib.parse import parse_qs, urlparse

from sqlalchemy import Engine, NullPool, create_engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

PROD_ENVS = {"prod", "production"}


def is_supabase_host(url: str) -> bool:
    """Return True if the URL points to a Supabase-managed Postgres host."""
    return ".supabase.co" in url or ".pooler.supabase.com" in url


def _mask_password(url: str) -> str:
    """Mask password in database URL for safe logging."""
    return re.sub(r"://([^:]+):([^@]+)@", r"://\1:***@", url)


def _validate_supabase_production_config(url: str, tw_env: str) -> None:
    """Production guardrails for Supabase connections.

    Raises:
        RuntimeError: If the URL is not a pooler transaction-mode endpoint.
    """
    if tw_env not in PROD_ENVS or not is_supabase_host(url):
        return

    parsed = urlparse(url)
    if parsed.port != 6543:
        raise RuntimeError(
            f"PRODUCTION GUARDRAIL: Supabase port must be 6543 (pooler transaction mode), "
            f"got {parsed.port}. Use the pooler connection string from the Supabase dashboard."
        )

    hostname = parsed.hostname or ""
    if "pooler" not in hostname.lower():
        raise RuntimeError(
            f"PRODUCTION GUARDRAIL: Supabase hostname must be a pooler host, got {hostname}."
        )


def build_engine(database_url: str | None = None) -> Engine:
    """
    Build SQLAlchemy engine with the Supabase pooler policy.

    Args:
        database_url: Database URL. If None, reads from env DATABASE_URL.

    Returns:
        SQLAlchemy Engine instance.

    Raises:
        ValueError: If DATABASE_URL is missing or TW_DB_POOL is invalid.
        RuntimeError: If production guardrails fail.

    Environment Variables:
        DATABASE_URL: Runtime connection string (required if not passed as arg)
        TW_DB_POOL: "nullpool" (default) | "queuepool"
        TW_DB_POOL_SIZE / TW_DB_MAX_OVERFLOW: QueuePool sizing
        TW_DB_APPLICATION_NAME: Postgres application_name tag
    """
    url = database_url or os.getenv("DATABASE_URL")
    if not url:
        raise ValueError(
            "DATABASE_URL is required. "
            "Pass as argument or set DATABASE_URL environment variable."
        )

    tw_env = os.getenv("TW_ENV", "").lower()
    _validate_supabase_production_config(url, tw_env)

    connect_args: dict[str, Any] = {}
    if url.startswith("sqlite"):
        # Local tooling only; the ledger relies on Postgres row locks in production
        connect_args["check_same_thread"] = False
    else:
        if is_supabase_host(url) and "sslmode" not in parse_qs(urlparse(url).query):
            connect_args["sslmode"] = "require"
        app_name = os.getenv("TW_DB_APPLICATION_NAME", "tokenwise-api")
        if app_name:
            connect_args["application_name"] = app_name

    pool_mode = os.getenv("TW_DB_POOL", "nullpool").lower()

    if pool_mode == "nullpool":
        engine = create_engine(
            url,
            poolclass=NullPool,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
    elif pool_mode == "queuepool":
        engine = create_engine(
            url,
            pool_pre_ping=True,
            pool_size=int(os.getenv("TW_DB_POOL_SIZE", "5")),
            max_overflow=int(os.getenv("TW_DB_MAX_OVERFLOW", "10")),
            connect_args=connect_args,
        )
    else:
        raise ValueError(
            f"Invalid TW_DB_POOL value: {pool_mode}. "
            "Must be 'nullpool' or 'queuepool'."
        )

    logger.debug(
        "Database engine created: pool=%s, url=%s",
        engine.pool.__class__.__name__,
        _mask_password(url),
    )

    return engine


def build_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    """
    Build SQLAlchemy sessionmaker.

    Args:
        engine: SQLAlchemy Engine instance.

    Returns:
        sessionmaker configured with autocommit=False, autoflush=False.
    """
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
