"""Create users, plans, subscriptions, subscription history and checkout sessions

Revision ID: entitlement_001
Revises:
Create Date: 2026-09-28 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'entitlement_001'
down_revision = None
branch_labels = None
depends_on = None

plan_tier = sa.Enum('BASIC', 'PREMIUM', 'FAMILY', name='plantier')
subscription_status = sa.Enum('PENDING', 'ACTIVE', 'CANCELLED', 'EXPIRED', name='subscriptionstatus')
user_subscription_status = sa.Enum('ACTIVE', 'PENDING', 'INACTIVE', name='usersubscriptionstatus')
checkout_status = sa.Enum('OPEN', 'PAID', 'FAILED', name='checkoutstatus')


def upgrade():
    op.create_table('users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('display_name', sa.String(), nullable=True),
        sa.Column('subscription_status', user_subscription_status, nullable=False, server_default='INACTIVE'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_users_id'), 'users', ['id'], unique=False)
    op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)
    op.create_index(op.f('ix_users_subscription_status'), 'users', ['subscription_status'], unique=False)

    plans = op.create_table('plans',
        sa.Column('tier', plan_tier, nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('price_monthly', sa.Numeric(10, 2), nullable=False),
        sa.Column('limits', sa.JSON(), nullable=False),
        sa.Column('features', sa.JSON(), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('recommended', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=True, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=True, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('tier')
    )

    # Download allowance per tier lives here and nowhere else
    op.bulk_insert(plans, [
        {
            'tier': 'BASIC', 'name': 'Basic', 'price_monthly': 2000,
            'limits': {'max_downloads': 0, 'download_retention_days': 30, 'streaming': True},
            'features': ['Unlimited streaming', 'HD quality', 'Watch on one screen'],
            'active': True, 'recommended': False,
        },
        {
            'tier': 'PREMIUM', 'name': 'Premium', 'price_monthly': 3500,
            'limits': {'max_downloads': 5, 'download_retention_days': 30, 'streaming': True},
            'features': ['Unlimited streaming', 'Full HD quality', '5 offline downloads', 'Watch on two screens'],
            'active': True, 'recommended': True,
        },
        {
            'tier': 'FAMILY', 'name': 'Family', 'price_monthly': 5000,
            'limits': {'max_downloads': 10, 'download_retention_days': 30, 'streaming': True},
            'features': ['Unlimited streaming', 'Full HD quality', '10 offline downloads', 'Watch on four screens'],
            'active': True, 'recommended': False,
        },
    ])

    op.create_table('subscriptions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('plan_tier', plan_tier, nullable=False),
        sa.Column('status', subscription_status, nullable=False),
        sa.Column('external_transaction_id', sa.String(), nullable=True),
        sa.Column('amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('end_date', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('end_date > start_date', name='ck_subscriptions_window'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_transaction_id')
    )
    op.create_index(op.f('ix_subscriptions_id'), 'subscriptions', ['id'], unique=False)
    op.create_index(op.f('ix_subscriptions_user_id'), 'subscriptions', ['user_id'], unique=False)
    op.create_index(op.f('ix_subscriptions_plan_tier'), 'subscriptions', ['plan_tier'], unique=False)
    op.create_index(op.f('ix_subscriptions_status'), 'subscriptions', ['status'], unique=False)
    op.create_index(
        'uq_subscriptions_user_live', 'subscriptions', ['user_id'], unique=True,
        postgresql_where=sa.text("status IN ('PENDING', 'ACTIVE')"),
        sqlite_where=sa.text("status IN ('PENDING', 'ACTIVE')"),
    )

    op.create_table('subscription_history',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('subscription_id', sa.String(), nullable=False),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('source', sa.String(), nullable=False),
        sa.Column('from_status', sa.String(), nullable=True),
        sa.Column('to_status', sa.String(), nullable=True),
        sa.Column('from_plan', sa.String(), nullable=True),
        sa.Column('to_plan', sa.String(), nullable=True),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_subscription_history_id'), 'subscription_history', ['id'], unique=False)
    op.create_index(op.f('ix_subscription_history_user_id'), 'subscription_history', ['user_id'], unique=False)
    op.create_index(op.f('ix_subscription_history_subscription_id'), 'subscription_history', ['subscription_id'], unique=False)
    op.create_index(op.f('ix_subscription_history_action'), 'subscription_history', ['action'], unique=False)
    op.create_index(op.f('ix_subscription_history_created_at'), 'subscription_history', ['created_at'], unique=False)

    op.create_table('checkout_sessions',
        sa.Column('token', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('plan_tier', plan_tier, nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('status', checkout_status, nullable=False),
        sa.Column('transaction_id', sa.String(), nullable=True),
        sa.Column('last_checked_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('token')
    )
    op.create_index(op.f('ix_checkout_sessions_token'), 'checkout_sessions', ['token'], unique=False)
    op.create_index(op.f('ix_checkout_sessions_user_id'), 'checkout_sessions', ['user_id'], unique=False)
    op.create_index(op.f('ix_checkout_sessions_status'), 'checkout_sessions', ['status'], unique=False)
    op.create_index(op.f('ix_checkout_sessions_created_at'), 'checkout_sessions', ['created_at'], unique=False)


def downgrade():
    op.drop_table('checkout_sessions')
    op.drop_table('subscription_history')
    op.drop_index('uq_subscriptions_user_live', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_table('plans')
    op.drop_table('users')
    checkout_status.drop(op.get_bind(), checkfirst=True)
    user_subscription_status.drop(op.get_bind(), checkfirst=True)
    subscription_status.drop(op.get_bind(), checkfirst=True)
    plan_tier.drop(op.get_bind(), checkfirst=True)
