"""create file_links, subscriptions, stripe_events

Revision ID: 0001
Revises:
Create Date: 2026-01-05 00:00:00.000000

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
    op.create_table(
        'file_links',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('code', sa.Text(), nullable=False),
        sa.Column('file_path', sa.Text(), nullable=False),
        sa.Column('file_bytes', sa.BigInteger(), nullable=True),
        sa.Column('days', sa.Integer(), nullable=False, server_default='14'),
        sa.Column('paid', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_session_id', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deleted_reason', sa.Text(), nullable=True),
        sa.Column('storage_deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_by_user_id', sa.Text(), nullable=True),
        sa.Column('flagged', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('flag_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_file_links_code', 'file_links', ['code'], unique=True)
    op.create_index('ix_file_links_expires_at', 'file_links', ['expires_at'])
    op.create_index('ix_file_links_deleted_at', 'file_links', ['deleted_at'])
    op.create_index('ix_file_links_created_by_user_id', 'file_links', ['created_by_user_id'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Text(), nullable=False),
        sa.Column('email', sa.Text(), nullable=True),
        sa.Column('plan', sa.Text(), nullable=False, server_default='free'),
        sa.Column('status', sa.Text(), nullable=False, server_default='unknown'),
        sa.Column('stripe_customer_id', sa.Text(), nullable=True),
        sa.Column('stripe_subscription_id', sa.Text(), nullable=True),
        sa.Column('stripe_price_id', sa.Text(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'], unique=True)
    op.create_index('ix_subscriptions_stripe_customer_id', 'subscriptions', ['stripe_customer_id'])
    op.create_index('ix_subscriptions_stripe_subscription_id', 'subscriptions', ['stripe_subscription_id'])

    op.create_table(
        'stripe_events',
        sa.Column('event_id', sa.Text(), primary_key=True),
        sa.Column('event_type', sa.Text(), nullable=False),
        sa.Column('stripe_created', sa.BigInteger(), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_stripe_events_event_type', 'stripe_events', ['event_type'])


def downgrade() -> None:
    op.drop_index('ix_stripe_events_event_type', table_name='stripe_events')
    op.drop_table('stripe_events')
    op.drop_index('ix_subscriptions_stripe_subscription_id', table_name='subscriptions')
    op.drop_index('ix_subscriptions_stripe_customer_id', table_name='subscriptions')
    op.drop_index('ix_subscriptions_user_id', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_index('ix_file_links_created_by_user_id', table_name='file_links')
    op.drop_index('ix_file_links_deleted_at', table_name='file_links')
    op.drop_index('ix_file_links_expires_at', table_name='file_links')
    op.drop_index('ix_file_links_code', table_name='file_links')
    op.drop_table('file_links')
