"""Pytest configuration and fixtures."""

import os
import sys
from pathlib import Path

# Inject sys.path for reliable pytest imports without an install
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # => .../apps/api
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "sweeper"))  # => .../apps/sweeper

# Must be set before tokenwise_api.db.session builds its engine
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("TW_JSON_LOGS", "false")

import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from tokenwise_api.auth.session_auth import SessionAuthContext, get_session_auth_context
from tokenwise_api.db.engine import build_sessionmaker
from tokenwise_api.db.models import AdminUser, Base, LedgerEntry, TokenPool, utcnow
from tokenwise_api.db.session import get_db
from tokenwise_api.ledger.grant_cache import get_grant_cache
from tokenwise_api.main import app

from tests.helpers import ADMIN_USER_ID, FIXED_NOW, TEST_USER_ID


@pytest.fixture(scope="function")
def db_engine():
    """In-memory SQLite engine shared across threads (StaticPool)."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    """sessionmaker bound to the test engine (same settings as production)."""
    return build_sessionmaker(db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Session:
    """Fresh database session for each test."""
    session = session_factory()
    try:
        yield session
        session.rollback()
    finally:
        session.close()


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def make_pool(db_session: Session) -> Callable[..., TokenPool]:
    """Insert a pool directly (no ledger entry) and commit it."""

    def _make_pool(
        source_type: str,
        amount: int,
        *,
        user_id: str = TEST_USER_ID,
        remaining: Optional[int] = None,
        expires_at: Optional[datetime] = None,
        rollover_eligible: bool = False,
        created_at: Optional[datetime] = None,
    ) -> TokenPool:
        created = created_at or FIXED_NOW - timedelta(days=1)
        pool = TokenPool(
            id=str(uuid.uuid4()),
            user_id=user_id,
            source_type=source_type,
            amount=amount,
            remaining=amount if remaining is None else remaining,
            expires_at=expires_at,
            rollover_eligible=rollover_eligible,
            created_at=created,
            updated_at=created,
        )
        db_session.add(pool)
        db_session.commit()
        return pool

    return _make_pool


@pytest.fixture
def ledger_sum(db_session: Session) -> Callable[[str], int]:
    """Sum of signed ledger amounts for a user."""

    def _ledger_sum(user_id: str = TEST_USER_ID) -> int:
        return sum(e.amount for e in db_session.query(LedgerEntry).filter_by(user_id=user_id))

    return _ledger_sum


@pytest.fixture
def pool_sum(db_session: Session) -> Callable[[str], int]:
    """Sum of remaining tokens over all of a user's pools (lapsed included)."""

    def _pool_sum(user_id: str = TEST_USER_ID) -> int:
        return sum(p.remaining for p in db_session.query(TokenPool).filter_by(user_id=user_id))

    return _pool_sum


@pytest.fixture
def auth_user() -> dict[str, str]:
    """Mutable identity used by the session auth override."""
    return {"user_id": TEST_USER_ID, "email": "user@example.com"}


@pytest.fixture
def test_client(db_session: Session, auth_user: dict[str, str]):
    """TestClient with db, session auth and grant cache dependencies overridden."""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close - db_session fixture will handle it

    def override_session_auth() -> SessionAuthContext:
        return SessionAuthContext(user_id=auth_user["user_id"], email=auth_user["email"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_auth_context] = override_session_auth
    app.dependency_overrides[get_grant_cache] = lambda: None
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture
def anonymous_client(db_session: Session):
    """TestClient with only the db overridden (real session auth)."""

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_grant_cache] = lambda: None
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture
def make_admin(db_session: Session) -> Callable[..., AdminUser]:
    """Insert an admin_users row."""

    def _make_admin(
        role: str,
        *,
        user_id: str = ADMIN_USER_ID,
        extra_capabilities: Optional[list[str]] = None,
        is_active: bool = True,
    ) -> AdminUser:
        admin = AdminUser(
            id=str(uuid.uuid4()),
            user_id=user_id,
            role=role,
            extra_capabilities=extra_capabilities,
            is_active=is_active,
            created_at=utcnow(),
        )
        db_session.add(admin)
        db_session.commit()
        return admin

    return _make_admin
