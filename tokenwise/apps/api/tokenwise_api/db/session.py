"""Request-scoped database sessions for the API.

Ledger and plan-transition calls commit or roll back their own work, so
get_db only hands out a session and closes it after the response.
"""

from typing import Iterator

from sqlalchemy.orm import Session

from tokenwise_api.config.env import get_database_url
from tokenwise_api.db.engine import build_engine, build_sessionmaker

engine = build_engine(get_database_url())

SessionLocal = build_sessionmaker(engine)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()  # rolls back anything a failed handler left open
