"""initial ledger schema

Revision ID: c3e1a9f04b27
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = 'c3e1a9f04b27'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _money(name, **kwargs):
    return sa.Column(name, sa.Numeric(precision=20, scale=8), **kwargs)


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('role', sa.Enum('user', 'admin', name='userrole'), nullable=False),
        sa.Column('referral_code', sa.String(length=16), nullable=False),
        sa.Column('referred_by', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_referral_code', 'users', ['referral_code'], unique=True)

    op.create_table(
        'wallets',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, unique=True),
        _money('sendable_balance', nullable=False),
        _money('non_sendable_balance', nullable=False),
        _money('pending_balance', nullable=False),
        _money('total_balance', nullable=False),
        sa.Column('current_address', sa.String(length=44), nullable=False),
        _money('total_sent', nullable=False),
        _money('total_received', nullable=False),
        _money('total_mined', nullable=False),
        sa.Column('is_locked', sa.Boolean(), nullable=False),
        sa.Column('lock_reason', sa.String(length=255), nullable=True),
        sa.Column('review_required', sa.Boolean(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('last_activity', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint('sendable_balance >= 0', name='ck_wallet_sendable_non_negative'),
        sa.CheckConstraint('non_sendable_balance >= 0', name='ck_wallet_non_sendable_non_negative'),
        sa.CheckConstraint('pending_balance >= 0', name='ck_wallet_pending_non_negative'),
    )
    op.create_index('ix_wallets_current_address', 'wallets', ['current_address'], unique=True)

    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('hash', sa.String(length=66), nullable=False, unique=True),
        sa.Column('type', sa.Enum('mining', 'send', 'receive', 'referral', 'task_reward', 'exchange', 'bonus',
                                  name='transactiontype'), nullable=False),
        sa.Column('from_user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('to_user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('to_address', sa.String(length=44), nullable=True),
        _money('amount', nullable=False),
        _money('fee', nullable=False),
        sa.Column('status', sa.Enum('pending', 'completed', 'failed', name='transactionstatus'), nullable=False),
        sa.Column('source_ref', sa.String(length=100), nullable=True),
        sa.Column('description', sa.String(length=200), nullable=True),
        sa.Column('from_bucket', sa.String(length=20), nullable=True),
        sa.Column('to_bucket', sa.String(length=20), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('type', 'to_user_id', 'source_ref', name='uq_transaction_source'),
    )
    op.create_index('ix_transactions_from_user_id', 'transactions', ['from_user_id'])
    op.create_index('ix_transactions_to_user_id', 'transactions', ['to_user_id'])
    op.create_index('ix_transactions_created_at', 'transactions', ['created_at'])
    op.create_index('ix_transactions_to_user_type', 'transactions', ['to_user_id', 'type'])
    op.create_index('ix_transactions_from_user_type', 'transactions', ['from_user_id', 'type'])

    op.create_table(
        'mining_sessions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', sa.Enum('active', 'completed', name='miningstatus'), nullable=False),
        _money('mining_rate', nullable=False),
        sa.Column('max_duration_seconds', sa.Integer(), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        _money('tokens_earned', nullable=False),
        sa.Column('capped', sa.Boolean(), nullable=False),
        sa.Column('completion_method', sa.Enum('user_stopped', 'auto_completed', name='completionmethod'),
                  nullable=True),
        _money('client_reported_earnings', nullable=True),
        sa.Column('suspicious', sa.Boolean(), nullable=False),
        sa.Column('transaction_id', sa.Integer(), sa.ForeignKey('transactions.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_mining_sessions_user_id', 'mining_sessions', ['user_id'])
    op.create_index(
        'uq_mining_sessions_open_per_user', 'mining_sessions', ['user_id'], unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        'referrals',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('referrer_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('referee_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False,
                  unique=True),
        sa.Column('referral_code', sa.String(length=16), nullable=False),
        sa.Column('status', sa.Enum('pending', 'completed', 'rewarded', name='referralstatus'), nullable=False),
        _money('reward_amount', nullable=False),
        _money('referee_reward_amount', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('rewarded_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('referrer_id', 'referee_id', name='uq_referral_pair'),
    )
    op.create_index('ix_referrals_referrer_id', 'referrals', ['referrer_id'])

    op.create_table(
        'tasks',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('task_key', sa.String(length=64), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        _money('reward', nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_tasks_task_key', 'tasks', ['task_key'], unique=True)

    op.create_table(
        'user_tasks',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('task_id', sa.Integer(), sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('is_completed', sa.Boolean(), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('user_id', 'task_id', name='uq_user_task'),
    )

    op.create_table(
        'task_claims',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('task_id', sa.Integer(), sa.ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False),
        sa.Column('transaction_id', sa.Integer(), sa.ForeignKey('transactions.id'), nullable=False),
        sa.Column('claimed_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'task_id', name='uq_task_claim'),
    )

    op.create_table(
        'idempotency_records',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('key', sa.String(length=100), nullable=False),
        sa.Column('operation', sa.String(length=50), nullable=False),
        sa.Column('request_hash', sa.String(length=64), nullable=False),
        sa.Column('response', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'key', name='uq_idempotency_user_key'),
    )
    op.create_index('ix_idempotency_records_created_at', 'idempotency_records', ['created_at'])


def downgrade() -> None:
    op.drop_table('idempotency_records')
    op.drop_table('task_claims')
    op.drop_table('user_tasks')
    op.drop_table('tasks')
    op.drop_table('referrals')
    op.drop_table('mining_sessions')
    op.drop_table('transactions')
    op.drop_table('wallets')
    op.drop_table('users')
    for enum_name in ('referralstatus', 'completionmethod', 'miningstatus', 'transactionstatus',
                      'transactiontype', 'userrole'):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
