"""Create payment reconciliation tables

Revision ID: 5b1e9c2a7d40
Revises:
Create Date: 2026-10-16 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '5b1e9c2a7d40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    processing_status_enum = postgresql.ENUM(
        'received', 'processed', 'failed',
        name='processing_status',
        create_type=False
    )
    processing_status_enum.create(op.get_bind(), checkfirst=True)

    subscription_status_enum = postgresql.ENUM(
        'inactive', 'active', 'past_due', 'cancelled', 'suspended', 'trial',
        name='subscription_status',
        create_type=False
    )
    subscription_status_enum.create(op.get_bind(), checkfirst=True)

    ledger_status_enum = postgresql.ENUM(
        'succeeded', 'failed', 'refunded',
        name='ledger_status',
        create_type=False
    )
    ledger_status_enum.create(op.get_bind(), checkfirst=True)

    op.create_table(
        'payment_events',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('provider_event_id', sa.String(), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('provider_event_type', sa.String(), nullable=False),
        sa.Column('raw_payload', sa.Text(), nullable=False),
        sa.Column('processing_status', processing_status_enum, nullable=False, server_default=sa.text("'received'::processing_status")),
        sa.Column('tenant_id', sa.String(), nullable=True),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('pending_payment_ref', sa.String(), nullable=True),
        sa.Column('provider_created_at', sa.DateTime(), nullable=True),
        sa.Column('received_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('last_attempt_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider_event_id', name='uq_payment_events_provider_event_id'),
    )
    op.create_index('ix_payment_events_status', 'payment_events', ['processing_status'], unique=False)
    op.create_index('ix_payment_events_tenant', 'payment_events', ['tenant_id'], unique=False)
    op.create_index('ix_payment_events_pending_ref', 'payment_events', ['pending_payment_ref'], unique=False)

    op.create_table(
        'tenant_subscriptions',
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('subscription_status', subscription_status_enum, nullable=False, server_default=sa.text("'inactive'::subscription_status")),
        sa.Column('external_customer_ref', sa.String(), nullable=True),
        sa.Column('external_subscription_ref', sa.String(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('billing_email', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('tenant_id'),
    )
    op.create_index('ix_tenant_subscriptions_external_customer_ref', 'tenant_subscriptions', ['external_customer_ref'], unique=False)
    op.create_index('ix_tenant_subscriptions_external_subscription_ref', 'tenant_subscriptions', ['external_subscription_ref'], unique=False)

    op.create_table(
        'ledger_entries',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('external_payment_ref', sa.String(), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('external_customer_ref', sa.String(), nullable=True),
        sa.Column('amount_minor_units', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', ledger_status_enum, nullable=False),
        sa.Column('description', sa.String(), nullable=True),
        sa.Column('refunded_amount_minor_units', sa.BigInteger(), nullable=True),
        sa.Column('source_event_id', sa.String(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('refunded_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_payment_ref', name='uq_ledger_entries_external_payment_ref'),
    )
    op.create_index('ix_ledger_entries_tenant_occurred', 'ledger_entries', ['tenant_id', 'occurred_at'], unique=False)
    op.create_index('ix_ledger_entries_status', 'ledger_entries', ['status'], unique=False)

    op.create_table(
        'audit_records',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('resource_type', sa.String(), nullable=False),
        sa.Column('resource_id', sa.String(), nullable=True),
        sa.Column('tenant_id', sa.String(), nullable=True),
        sa.Column('outcome', sa.String(), nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('meta', postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_records_resource', 'audit_records', ['resource_type', 'resource_id'], unique=False)
    op.create_index('ix_audit_records_tenant_created', 'audit_records', ['tenant_id', 'created_at'], unique=False)

    op.create_table(
        'processing_failures',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('provider_event_id', sa.String(), nullable=False),
        sa.Column('attempt_number', sa.Integer(), nullable=False),
        sa.Column('error_type', sa.String(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=False),
        sa.Column('traceback', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_processing_failures_provider_event_id', 'processing_failures', ['provider_event_id'], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_processing_failures_provider_event_id', table_name='processing_failures')
    op.drop_table('processing_failures')
    op.drop_index('ix_audit_records_tenant_created', table_name='audit_records')
    op.drop_index('ix_audit_records_resource', table_name='audit_records')
    op.drop_table('audit_records')
    op.drop_index('ix_ledger_entries_status', table_name='ledger_entries')
    op.drop_index('ix_ledger_entries_tenant_occurred', table_name='ledger_entries')
    op.drop_table('ledger_entries')
    op.drop_index('ix_tenant_subscriptions_external_subscription_ref', table_name='tenant_subscriptions')
    op.drop_index('ix_tenant_subscriptions_external_customer_ref', table_name='tenant_subscriptions')
    op.drop_table('tenant_subscriptions')
    op.drop_index('ix_payment_events_pending_ref', table_name='payment_events')
    op.drop_index('ix_payment_events_tenant', table_name='payment_events')
    op.drop_index('ix_payment_events_status', table_name='payment_events')
    op.drop_table('payment_events')
    for name in ('ledger_status', 'subscription_status', 'processing_status'):
        postgresql.ENUM(name=name).drop(op.get_bind(), checkfirst=True)
