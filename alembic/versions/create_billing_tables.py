"""Create subscriptions, subscription_history, payment_retries and outbox_events

Revision ID: billing_001
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'billing_001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('subscriptions',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('customer_id', sa.String(), nullable=False),
        sa.Column('plan_id', sa.String(), nullable=False),
        sa.Column('plan_name', sa.String(), nullable=True),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('billing_cycle', sa.Enum('MONTHLY', 'YEARLY', name='billingcycle'), nullable=False),
        sa.Column('status', sa.Enum('PENDING', 'TRIAL', 'ACTIVE', 'PAST_DUE', 'CANCELLED', 'EXPIRED', name='subscriptionstatus'), nullable=False),
        sa.Column('current_period_start', sa.DateTime(), nullable=False),
        sa.Column('current_period_end', sa.DateTime(), nullable=False),
        sa.Column('is_trial_used', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('trial_start', sa.DateTime(), nullable=True),
        sa.Column('trial_end', sa.DateTime(), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('cancellation_reason', sa.String(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_subscriptions_id'), 'subscriptions', ['id'], unique=False)
    op.create_index(op.f('ix_subscriptions_customer_id'), 'subscriptions', ['customer_id'], unique=False)
    op.create_index('ix_subscriptions_customer_status', 'subscriptions', ['customer_id', 'status'], unique=False)
    op.create_index('ix_subscriptions_renewal', 'subscriptions', ['current_period_end', 'status', 'cancel_at_period_end'], unique=False)
    op.create_index('ix_subscriptions_trial_end', 'subscriptions', ['status', 'trial_end'], unique=False)

    op.create_table('subscription_history',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('subscription_id', sa.String(), nullable=False),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('previous_status', sa.String(), nullable=True),
        sa.Column('new_status', sa.String(), nullable=True),
        sa.Column('previous_plan_id', sa.String(), nullable=True),
        sa.Column('new_plan_id', sa.String(), nullable=True),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_subscription_history_id'), 'subscription_history', ['id'], unique=False)
    op.create_index(op.f('ix_subscription_history_subscription_id'), 'subscription_history', ['subscription_id'], unique=False)
    op.create_index(op.f('ix_subscription_history_action'), 'subscription_history', ['action'], unique=False)
    op.create_index(op.f('ix_subscription_history_created_at'), 'subscription_history', ['created_at'], unique=False)

    op.create_table('payment_retries',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('payment_id', sa.String(), nullable=False),
        sa.Column('invoice_id', sa.String(), nullable=False),
        sa.Column('subscription_id', sa.String(), nullable=False),
        sa.Column('attempt_number', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='7'),
        sa.Column('status', sa.Enum('PENDING', 'RETRYING', 'SUCCEEDED', 'EXHAUSTED', 'CANCELLED', name='retrystatus'), nullable=False),
        sa.Column('first_failure_at', sa.DateTime(), nullable=False),
        sa.Column('last_retry_at', sa.DateTime(), nullable=True),
        sa.Column('next_retry_at', sa.DateTime(), nullable=True),
        sa.Column('succeeded_at', sa.DateTime(), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('retry_history', sa.JSON(), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_payment_retries_id'), 'payment_retries', ['id'], unique=False)
    op.create_index(op.f('ix_payment_retries_payment_id'), 'payment_retries', ['payment_id'], unique=True)
    op.create_index(op.f('ix_payment_retries_invoice_id'), 'payment_retries', ['invoice_id'], unique=False)
    op.create_index(op.f('ix_payment_retries_subscription_id'), 'payment_retries', ['subscription_id'], unique=False)
    op.create_index(op.f('ix_payment_retries_created_at'), 'payment_retries', ['created_at'], unique=False)
    op.create_index('ix_payment_retries_due', 'payment_retries', ['status', 'next_retry_at'], unique=False)

    op.create_table('outbox_events',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('source', sa.String(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('published_at', sa.DateTime(), nullable=True),
        sa.Column('publish_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_outbox_events_id'), 'outbox_events', ['id'], unique=False)
    op.create_index(op.f('ix_outbox_events_event_type'), 'outbox_events', ['event_type'], unique=False)
    op.create_index('ix_outbox_events_unpublished', 'outbox_events', ['published_at', 'created_at'], unique=False)


def downgrade():
    op.drop_index('ix_outbox_events_unpublished', table_name='outbox_events')
    op.drop_index(op.f('ix_outbox_events_event_type'), table_name='outbox_events')
    op.drop_index(op.f('ix_outbox_events_id'), table_name='outbox_events')
    op.drop_table('outbox_events')

    op.drop_index('ix_payment_retries_due', table_name='payment_retries')
    op.drop_index(op.f('ix_payment_retries_created_at'), table_name='payment_retries')
    op.drop_index(op.f('ix_payment_retries_subscription_id'), table_name='payment_retries')
    op.drop_index(op.f('ix_payment_retries_invoice_id'), table_name='payment_retries')
    op.drop_index(op.f('ix_payment_retries_payment_id'), table_name='payment_retries')
    op.drop_index(op.f('ix_payment_retries_id'), table_name='payment_retries')
    op.drop_table('payment_retries')

    op.drop_index(op.f('ix_subscription_history_created_at'), table_name='subscription_history')
    op.drop_index(op.f('ix_subscription_history_action'), table_name='subscription_history')
    op.drop_index(op.f('ix_subscription_history_subscription_id'), table_name='subscription_history')
    op.drop_index(op.f('ix_subscription_history_id'), table_name='subscription_history')
    op.drop_table('subscription_history')

    op.drop_index('ix_subscriptions_trial_end', table_name='subscriptions')
    op.drop_index('ix_subscriptions_renewal', table_name='subscriptions')
    op.drop_index('ix_subscriptions_customer_status', table_name='subscriptions')
    op.drop_index(op.f('ix_subscriptions_customer_id'), table_name='subscriptions')
    op.drop_index(op.f('ix_subscriptions_id'), table_name='subscriptions')
    op.drop_table('subscriptions')

    sa.Enum(name='retrystatus').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='subscriptionstatus').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='billingcycle').drop(op.get_bind(), checkfirst=True)
