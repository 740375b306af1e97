"""Initial migration - users, integrations, pending authorizations, webhook events

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create users table
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('name', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    # Create integrations table
    op.create_table(
        'integrations',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('provider', sa.String(32), nullable=False),
        sa.Column('provider_user_id', sa.String(64), nullable=True),
        sa.Column('access_token', sa.Text(), nullable=False),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('access_token_expires_at', sa.DateTime(), nullable=False),
        sa.Column('refresh_token_expires_at', sa.DateTime(), nullable=True),
        sa.Column('refresh_token_invalid', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('sync_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('provider_user_data', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('user_id', 'provider', name='uq_integrations_user_provider'),
    )
    op.create_index('ix_integrations_user_id', 'integrations', ['user_id'])
    op.create_index(
        'ix_integrations_provider_user', 'integrations', ['provider', 'provider_user_id']
    )

    # Create pending_authorizations table
    op.create_table(
        'pending_authorizations',
        sa.Column('user_id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(32), nullable=False),
        sa.Column('state', sa.String(64), nullable=False),
        sa.Column('code_verifier', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    # Create webhook_events table
    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('provider', sa.String(32), nullable=False),
        sa.Column('provider_user_id', sa.String(64), nullable=True),
        sa.Column('user_id', sa.String(36), nullable=True),
        sa.Column('event_type', sa.String(64), nullable=False),
        sa.Column('activity_id', sa.String(64), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('received_at', sa.DateTime(), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('process_error', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
    )
    op.create_index(
        'ix_webhook_events_provider_user', 'webhook_events', ['provider', 'provider_user_id']
    )
    op.create_index('ix_webhook_events_user_id', 'webhook_events', ['user_id'])
    op.create_index('ix_webhook_events_received_at', 'webhook_events', ['received_at'])
    op.create_index(
        'uq_webhook_events_delivery',
        'webhook_events',
        ['provider', 'provider_user_id', 'event_type', 'activity_id'],
        unique=True,
        sqlite_where=sa.text('activity_id IS NOT NULL'),
        postgresql_where=sa.text('activity_id IS NOT NULL'),
    )


def downgrade() -> None:
    op.drop_table('webhook_events')
    op.drop_table('pending_authorizations')
    op.drop_table('integrations')
    op.drop_table('users')
