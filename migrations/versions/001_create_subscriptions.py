"""Create subscriptions table

Revision ID: 001_create_subscriptions
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_create_subscriptions'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('subscriptions',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('email', sa.Text(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('subscribed_at', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('status', sa.String(32), nullable=False, server_default='pending_confirmation'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email', name='uq_subscriptions_email'),
    )

    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])


def downgrade():
    op.drop_index('ix_subscriptions_status', table_name='subscriptions')
    op.drop_table('subscriptions')
