"""create_ledger_and_subscription_tables

Revision ID: 3f1c9a7e2b4d
Revises:
Create Date: 2026-10-18 01:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3f1c9a7e2b4d'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'token_pools',
        sa.Column('id', sa.TEXT(), primary_key=True),
        sa.Column('user_id', sa.TEXT(), nullable=False),
        sa.Column('source_type', sa.TEXT(), nullable=False),
        sa.Column('amount', sa.BIGINT(), nullable=False),
        sa.Column('remaining', sa.BIGINT(), nullable=False),
        sa.Column('expires_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('rollover_eligible', sa.BOOLEAN(), nullable=False, server_default=sa.false()),
        sa.Column('reference_id', sa.TEXT(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint('remaining >= 0 AND remaining <= amount', name='ck_token_pools_remaining'),
    )
    op.create_index('idx_token_pools_user_active', 'token_pools', ['user_id', 'remaining', 'expires_at'])
    op.create_index('idx_token_pools_expiry_scan', 'token_pools', ['expires_at', 'remaining'])

    op.create_table(
        'token_ledger',
        sa.Column('id', sa.TEXT(), primary_key=True),
        sa.Column('user_id', sa.TEXT(), nullable=False),
        sa.Column('amount', sa.BIGINT(), nullable=False),
        sa.Column('balance_after', sa.BIGINT(), nullable=False),
        sa.Column('source_type', sa.TEXT(), nullable=False),
        sa.Column('action_type', sa.TEXT(), nullable=True),
        sa.Column('pool_id', sa.TEXT(), nullable=True),
        sa.Column('reference_id', sa.TEXT(), nullable=True),
        sa.Column('idempotency_key', sa.TEXT(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'idempotency_key', name='uq_token_ledger_user_idempotency'),
    )
    op.create_index('idx_token_ledger_user_created', 'token_ledger', ['user_id', 'created_at'])
    op.create_index('idx_token_ledger_pool', 'token_ledger', ['pool_id'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.TEXT(), primary_key=True),
        sa.Column('user_id', sa.TEXT(), nullable=False),
        sa.Column('plan', sa.TEXT(), nullable=False, server_default='free'),
        sa.Column('status', sa.TEXT(), nullable=False, server_default='active'),
        sa.Column('current_period_start', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.BOOLEAN(), nullable=False, server_default=sa.false()),
        sa.Column('canceled_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('ended_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('pending_plan', sa.TEXT(), nullable=True),
        sa.Column('pending_plan_effective_date', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', name='uq_subscriptions_user'),
    )
    op.create_index('idx_subscriptions_pending', 'subscriptions', ['pending_plan_effective_date'])

    op.create_table(
        'subscription_events',
        sa.Column('id', sa.TEXT(), primary_key=True),
        sa.Column('user_id', sa.TEXT(), nullable=False),
        sa.Column('subscription_id', sa.TEXT(), nullable=False),
        sa.Column('event_type', sa.TEXT(), nullable=False),
        sa.Column('from_plan', sa.TEXT(), nullable=True),
        sa.Column('to_plan', sa.TEXT(), nullable=True),
        sa.Column('amount_cents', sa.BIGINT(), nullable=True),
        sa.Column('event_meta', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('idx_subscription_events_user', 'subscription_events', ['user_id'])
    op.create_index('idx_subscription_events_subscription', 'subscription_events', ['subscription_id'])
    op.create_index('idx_subscription_events_created_at', 'subscription_events', ['created_at'])

    op.create_table(
        'admin_users',
        sa.Column('id', sa.TEXT(), primary_key=True),
        sa.Column('user_id', sa.TEXT(), nullable=False),
        sa.Column('role', sa.TEXT(), nullable=False, server_default='analyst'),
        sa.Column('extra_capabilities', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.BOOLEAN(), nullable=False, server_default=sa.true()),
        sa.Column('created_by', sa.TEXT(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('last_access_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.UniqueConstraint('user_id', name='uq_admin_users_user'),
    )
    op.create_index('idx_admin_users_user_active', 'admin_users', ['user_id', 'is_active'])


def downgrade() -> None:
    op.drop_index('idx_admin_users_user_active', table_name='admin_users')
    op.drop_table('admin_users')

    op.drop_index('idx_subscription_events_created_at', table_name='subscription_events')
    op.drop_index('idx_subscription_events_subscription', table_name='subscription_events')
    op.drop_index('idx_subscription_events_user', table_name='subscription_events')
    op.drop_table('subscription_events')

    op.drop_index('idx_subscriptions_pending', table_name='subscriptions')
    op.drop_table('subscriptions')

    op.drop_index('idx_token_ledger_pool', table_name='token_ledger')
    op.drop_index('idx_token_ledger_user_created', table_name='token_ledger')
    op.drop_table('token_ledger')

    op.drop_index('idx_token_pools_expiry_scan', table_name='token_pools')
    op.drop_index('idx_token_pools_user_active', table_name='token_pools')
    op.drop_table('token_pools')
