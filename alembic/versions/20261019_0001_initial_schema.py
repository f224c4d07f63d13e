"""Initial schema with ledger, usage, subscriptions and API keys

Revision ID: 0001
Revises: 
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create users table
    op.create_table(
        'users',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('banned', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )

    # Create account_balances table
    op.create_table(
        'account_balances',
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint('balance >= 0', name='ck_account_balances_non_negative'),
        sa.PrimaryKeyConstraint('user_id'),
    )

    # Create ledger_transactions table
    op.create_table(
        'ledger_transactions',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(32), nullable=False),
        sa.Column('reference_id', sa.String(255), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint('amount <> 0', name='ck_ledger_transactions_non_zero'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_ledger_transactions_user_id', 'ledger_transactions', ['user_id'])
    op.create_index('ix_ledger_transactions_reference_id', 'ledger_transactions', ['reference_id'], unique=True)
    op.create_index('idx_ledger_user_created', 'ledger_transactions', ['user_id', 'created_at'])

    # Create usage_records table
    op.create_table(
        'usage_records',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('service', sa.String(20), nullable=False),
        sa.Column('quantity', sa.Float(), nullable=False),
        sa.Column('period', sa.String(7), nullable=False),
        sa.Column('reference_id', sa.String(255), nullable=False),
        sa.Column('credits_charged', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_usage_records_reference_id', 'usage_records', ['reference_id'], unique=True)
    op.create_index('idx_usage_user_service_period', 'usage_records', ['user_id', 'service', 'period'])

    # Create subscription_records table
    op.create_table(
        'subscription_records',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('external_subscription_id', sa.String(255), nullable=False),
        sa.Column('customer_id', sa.String(255), nullable=True),
        sa.Column('price_id', sa.String(255), nullable=True),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('current_period_start', sa.DateTime(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('last_event_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_subscription_records_user_id', 'subscription_records', ['user_id'])
    op.create_index(
        'ix_subscription_records_external_subscription_id',
        'subscription_records',
        ['external_subscription_id'],
        unique=True,
    )

    # Create payment_events table
    op.create_table(
        'payment_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('subscription_id', sa.String(36), nullable=True),
        sa.Column('provider_event_id', sa.String(255), nullable=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('event_data', sa.Text(), nullable=True),
        sa.Column('outcome', sa.String(20), nullable=False, server_default='applied'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscription_records.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_payment_events_subscription_id', 'payment_events', ['subscription_id'])
    op.create_index('ix_payment_events_provider_event_id', 'payment_events', ['provider_event_id'], unique=True)

    # Create api_keys table
    op.create_table(
        'api_keys',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('hashed_key', sa.String(64), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('last_used_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_api_keys_user_id', 'api_keys', ['user_id'])
    op.create_index('ix_api_keys_hashed_key', 'api_keys', ['hashed_key'], unique=True)


def downgrade() -> None:
    op.drop_table('api_keys')
    op.drop_table('payment_events')
    op.drop_table('subscription_records')
    op.drop_table('usage_records')
    op.drop_table('ledger_transactions')
    op.drop_table('account_balances')
    op.drop_table('users')
