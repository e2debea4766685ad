"""SQLAlchemy ORM Models for Tokenwise."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BIGINT,
    BOOLEAN,
    JSON,
    TEXT,
    TIMESTAMP,
    CheckConstraint,
    Index,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class UTCTimestamp(TypeDecorator):
    """TIMESTAMP WITH TIME ZONE that always loads as an aware UTC datetime.

    PostgreSQL already returns aware values; SQLite (tests) returns naive ones,
    which are tagged as UTC here so Python-side comparisons stay valid.
    """

    impl = TIMESTAMP(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
            if dialect.name == "sqlite":
                value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class TokenPool(Base):
    """TokenPool model - one independently-expiring allotment of tokens."""

    __tablename__ = "token_pools"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True)
    user_id: Mapped[str] = mapped_column(TEXT, nullable=False)  # Supabase auth.users

    source_type: Mapped[str] = mapped_column(TEXT, nullable=False)
    # free | subscription | purchase | admin | expiration | rollover

    amount: Mapped[int] = mapped_column(BIGINT, nullable=False)
    remaining: Mapped[int] = mapped_column(BIGINT, nullable=False)

    # NULL = never expires
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCTimestamp, nullable=True)
    rollover_eligible: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    reference_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCTimestamp, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCTimestamp, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("remaining >= 0 AND remaining <= amount", name="ck_token_pools_remaining"),
        Index("idx_token_pools_user_active", "user_id", "remaining", "expires_at"),
        Index("idx_token_pools_expiry_scan", "expires_at", "remaining"),
    )


class LedgerEntry(Base):
    """LedgerEntry model - append-only record of one balance-affecting event."""

    __tablename__ = "token_ledger"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True)
    user_id: Mapped[str] = mapped_column(TEXT, nullable=False)

    # Signed: positive = credit, negative = debit
    amount: Mapped[int] = mapped_column(BIGINT, nullable=False)
    balance_after: Mapped[int] = mapped_column(BIGINT, nullable=False)

    source_type: Mapped[str] = mapped_column(TEXT, nullable=False)
    action_type: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    pool_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)  # FK to token_pools
    reference_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    # Idempotency (unique per user when present)
    idempotency_key: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    # "metadata" is reserved on declarative classes
    entry_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCTimestamp, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_token_ledger_user_idempotency"),
        Index("idx_token_ledger_user_created", "user_id", "created_at"),
        Index("idx_token_ledger_pool", "pool_id"),
    )


class Subscription(Base):
    """Subscription model - one plan record per user."""

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True)
    user_id: Mapped[str] = mapped_column(TEXT, nullable=False)

    plan: Mapped[str] = mapped_column(TEXT, nullable=False, default="free")
    # free | basic | pro | enterprise
    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="active")
    # active | past_due | canceled | expired | trialing

    current_period_start: Mapped[Optional[datetime]] = mapped_column(UTCTimestamp, nullable=True)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(UTCTimestamp, nullable=True)

    cancel_at_period_end: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(UTCTimestamp, nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(UTCTimestamp, nullable=True)

    # Deferred downgrade
    pending_plan: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    pending_plan_effective_date: Mapped[Optional[datetime]] = mapped_column(
        UTCTimestamp, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(UTCTimestamp, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCTimestamp, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_subscriptions_user"),
        Index("idx_subscriptions_pending", "pending_plan_effective_date"),
    )


class SubscriptionEvent(Base):
    """SubscriptionEvent model - audit trail of plan transitions."""

    __tablename__ = "subscription_events"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True)
    user_id: Mapped[str] = mapped_column(TEXT, nullable=False)
    subscription_id: Mapped[str] = mapped_column(TEXT, nullable=False)  # FK to subscriptions

    event_type: Mapped[str] = mapped_column(TEXT, nullable=False)
    # created | upgraded | downgraded | renewed | canceled | reactivated | expired

    from_plan: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    to_plan: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    amount_cents: Mapped[Optional[int]] = mapped_column(BIGINT, nullable=True)

    event_meta: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCTimestamp, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_subscription_events_user", "user_id"),
        Index("idx_subscription_events_subscription", "subscription_id"),
        Index("idx_subscription_events_created_at", "created_at"),
    )


class AdminUser(Base):
    """AdminUser model - maps Supabase auth.users to an admin role.

    Capabilities come from the role; extra_capabilities lists additional
    capability names granted to this admin individually.
    """

    __tablename__ = "admin_users"

    id: Mapped[str] = mapped_column(TEXT, primary_key=True)
    user_id: Mapped[str] = mapped_column(TEXT, nullable=False)

    role: Mapped[str] = mapped_column(TEXT, nullable=False, default="analyst")
    # super_admin | economic_admin | analyst
    extra_capabilities: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    is_active: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=True)
    created_by: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCTimestamp, nullable=False, default=utcnow)
    last_access_at: Mapped[Optional[datetime]] = mapped_column(UTCTimestamp, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_admin_users_user"),
        Index("idx_admin_users_user_active", "user_id", "is_active"),
    )
