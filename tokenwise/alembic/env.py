"""Alembic environment for the token ledger and subscription schema.

Migrations prefer DATABASE_URL_MIGRATIONS (a direct, non-pooled connection
for DDL) and fall back to DATABASE_URL, then alembic.ini. Online runs go
through build_engine() so the production pooler guardrails still apply.
"""

import os
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context

# tokenwise_api lives in apps/api and is not installed for migrations
sys.path.insert(0, str(Path(__file__).parent.parent / "apps" / "api"))

from tokenwise_api.db.engine import build_engine  # noqa: E402
from tokenwise_api.db.models import Base  # noqa: E402

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _migration_url() -> str:
    url = (
        os.getenv("DATABASE_URL_MIGRATIONS")
        or os.getenv("DATABASE_URL")
        or config.get_main_option("sqlalchemy.url")
    )
    if not url:
        raise ValueError(
            "No database for migrations: set DATABASE_URL_MIGRATIONS or DATABASE_URL"
        )
    return url


def run_migrations_offline(url: str) -> None:
    """Emit the token_pools / token_ledger / subscriptions DDL as SQL."""
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online(url: str) -> None:
    with build_engine(url).connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline(_migration_url())
else:
    run_migrations_online(_migration_url())
