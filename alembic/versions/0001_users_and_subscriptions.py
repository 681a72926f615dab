"""Add users and subscriptions tables

Revision ID: 0001_users_and_subscriptions
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_users_and_subscriptions'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the user directory and the subscriptions table."""
    
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('email', sa.String, nullable=False),
        sa.Column('role', sa.String, server_default='user', nullable=False),
        sa.Column('subscription_tier', sa.String, server_default='free', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('user_id', sa.Uuid, sa.ForeignKey('users.id'), nullable=False),
        
        # Subscription details
        sa.Column('tier', sa.String, server_default='free', nullable=False),
        sa.Column('status', sa.String, server_default='pending', nullable=False),
        sa.Column('billing_interval', sa.String),
        
        # Billing period dates
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('auto_renew', sa.Boolean, server_default='false', nullable=False),
        sa.Column('canceled_at', sa.DateTime(timezone=True)),
        
        # Provider linkage
        sa.Column('external_id', sa.String),
        sa.Column('provider_synced_at', sa.DateTime(timezone=True)),
        
        # Terms snapshot
        sa.Column('price', sa.Float, server_default='0', nullable=False),
        sa.Column('currency', sa.String, server_default='usd', nullable=False),
        sa.Column('features', sa.JSON, nullable=False),
        sa.Column('metadata', sa.JSON, nullable=False),
        
        # Timestamps
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_tier', 'subscriptions', ['tier'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_end_date', 'subscriptions', ['end_date'])
    # A provider subscription backs at most one local record
    op.create_index('ix_subscriptions_external_id', 'subscriptions', ['external_id'], unique=True)


def downgrade() -> None:
    """Drop subscriptions and users tables."""
    op.drop_index('ix_subscriptions_external_id')
    op.drop_index('ix_subscriptions_end_date')
    op.drop_index('ix_subscriptions_status')
    op.drop_index('ix_subscriptions_tier')
    op.drop_index('ix_subscriptions_user_id')
    op.drop_table('subscriptions')
    op.drop_index('ix_users_email')
    op.drop_table('users')
