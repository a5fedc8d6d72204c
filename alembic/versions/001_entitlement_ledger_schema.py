"""entitlement and credit ledger schema

Revision ID: 001
Revises:
Create Date: 2025-01-06 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    # Identity mirror
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('email', sa.Text(), nullable=True, unique=True),
        sa.Column('role', sa.Text(), server_default='athlete', nullable=False),
        sa.Column('display_name', sa.Text(), nullable=True),
        sa.Column('fitness_profile', JSONType, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # Plan catalog
    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('name', sa.Text(), nullable=False, unique=True),
        sa.Column('display_name', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price_monthly', sa.Numeric(10, 2), server_default='0', nullable=False),
        sa.Column('workouts_per_month', sa.Integer(), server_default='0', nullable=False),
        sa.Column('coaching_cues_per_month', sa.Integer(), server_default='0', nullable=False),
        sa.Column('modifications_per_month', sa.Integer(), server_default='0', nullable=False),
        sa.Column('has_coaching_cues', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('has_modifications', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('has_nutrition', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('has_recovery', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('has_form_analysis', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('has_progressive_programs', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('trial_days', sa.Integer(), server_default='0', nullable=False),
        sa.Column('monthly_credits', sa.Integer(), server_default='0', nullable=False),
        sa.Column('sort_order', sa.Integer(), server_default='0', nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint('workouts_per_month >= -1', name='ck_plan_workouts_quota'),
        sa.CheckConstraint('coaching_cues_per_month >= -1', name='ck_plan_coaching_quota'),
        sa.CheckConstraint('modifications_per_month >= -1', name='ck_plan_modifications_quota'),
    )

    # Subscriptions
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('plan_id', sa.Text(), sa.ForeignKey('subscription_plans.id'), nullable=False),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('subscription_metadata', JSONType, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    # At most one live subscription per user
    op.create_index(
        'uq_subscriptions_live_per_user',
        'subscriptions',
        ['user_id'],
        unique=True,
        postgresql_where=sa.text("status IN ('active', 'trialing')"),
        sqlite_where=sa.text("status IN ('active', 'trialing')"),
    )

    # Trials
    op.create_table(
        'trials',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('plan_id', sa.Text(), sa.ForeignKey('subscription_plans.id'), nullable=False),
        sa.Column('trial_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('trial_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('converted_to_paid', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('conversion_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reminder_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('user_id', 'plan_id', name='uq_trials_user_plan'),
    )
    op.create_index('ix_trials_user_id', 'trials', ['user_id'])
    op.create_index('ix_trials_trial_end', 'trials', ['trial_end'])

    # Append-only ledger
    op.create_table(
        'ledger_entries',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('kind', sa.Text(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=True),
        sa.Column('feature', sa.Text(), nullable=True),
        sa.Column('category', sa.Text(), nullable=True),
        sa.Column('endpoint', sa.Text(), nullable=True),
        sa.Column('method', sa.Text(), nullable=True),
        sa.Column('status_code', sa.Integer(), nullable=True),
        sa.Column('latency_ms', sa.Integer(), nullable=True),
        sa.Column('provider', sa.Text(), nullable=True),
        sa.Column('actor_id', sa.Uuid(), nullable=True),
        sa.Column('refund_of_id', sa.Uuid(), sa.ForeignKey('ledger_entries.id'), nullable=True, unique=True),
        sa.Column('external_reference', sa.Text(), nullable=True, unique=True),
        sa.Column('entry_metadata', JSONType, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "kind IN ('credit_grant', 'credit_deduction', 'usage_record')",
            name='ck_ledger_kind',
        ),
        sa.CheckConstraint(
            "(kind = 'usage_record' AND amount IS NULL) "
            "OR (kind = 'credit_grant' AND amount > 0) "
            "OR (kind = 'credit_deduction' AND amount < 0)",
            name='ck_ledger_amount_sign',
        ),
    )
    op.create_index('ix_ledger_user_kind_created', 'ledger_entries', ['user_id', 'kind', 'created_at'])
    op.create_index('ix_ledger_user_category_created', 'ledger_entries', ['user_id', 'category', 'created_at'])

    # Billing collaborator idempotency log
    op.create_table(
        'billing_events',
        sa.Column('event_id', sa.Text(), primary_key=True),
        sa.Column('event_type', sa.Text(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_billing_events_user_id', 'billing_events', ['user_id'])

    # Cached balance + per-user lock row
    op.create_table(
        'credit_accounts',
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id'), primary_key=True),
        sa.Column('balance', sa.Integer(), server_default='0', nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('balance >= 0', name='ck_credit_accounts_non_negative'),
    )


def downgrade() -> None:
    op.drop_table('credit_accounts')
    op.drop_index('ix_billing_events_user_id', table_name='billing_events')
    op.drop_table('billing_events')
    op.drop_index('ix_ledger_user_category_created', table_name='ledger_entries')
    op.drop_index('ix_ledger_user_kind_created', table_name='ledger_entries')
    op.drop_table('ledger_entries')
    op.drop_index('ix_trials_trial_end', table_name='trials')
    op.drop_index('ix_trials_user_id', table_name='trials')
    op.drop_table('trials')
    op.drop_index('uq_subscriptions_live_per_user', table_name='subscriptions')
    op.drop_index('ix_subscriptions_status', table_name='subscriptions')
    op.drop_index('ix_subscriptions_user_id', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_table('subscription_plans')
    op.drop_table('users')
