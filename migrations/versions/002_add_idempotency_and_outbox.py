"""Add idempotency, newsletter_issues and issue_delivery_queue tables

Revision ID: 002_add_idempotency_and_outbox
Revises: 001_create_subscriptions
Create Date: 2026-10-19 00:00:01.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '002_add_idempotency_and_outbox'
down_revision = '001_create_subscriptions'
branch_labels = None
depends_on = None


def upgrade():
    # Claim row: response columns stay NULL until the owning request commits
    op.create_table('idempotency',
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('idempotency_key', sa.String(50), nullable=False),
        sa.Column('response_status_code', sa.SmallInteger(), nullable=True),
        sa.Column('response_headers', sa.JSON().with_variant(postgresql.JSONB(), 'postgresql'), nullable=True),
        sa.Column('response_body', sa.LargeBinary(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('user_id', 'idempotency_key')
    )

    op.create_index(
        'idx_idempotency_created',
        'idempotency',
        ['created_at'],
        postgresql_using='btree'
    )

    op.create_table('newsletter_issues',
        sa.Column('newsletter_issue_id', sa.String(36), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('text_content', sa.Text(), nullable=False),
        sa.Column('html_content', sa.Text(), nullable=False),
        sa.Column('published_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('newsletter_issue_id')
    )

    op.create_index(
        'ix_newsletter_issues_published_at',
        'newsletter_issues',
        ['published_at'],
        postgresql_using='btree'
    )

    # No foreign keys: the worker tolerates deliveries whose issue has gone
    op.create_table('issue_delivery_queue',
        sa.Column('newsletter_issue_id', sa.String(36), nullable=False),
        sa.Column('subscriber_email', sa.Text(), nullable=False),
        sa.Column('execute_after', sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('n_retries', sa.Integer(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('newsletter_issue_id', 'subscriber_email')
    )

    # Workers dequeue the earliest due row first
    op.create_index(
        'idx_issue_delivery_queue_execute_after',
        'issue_delivery_queue',
        ['execute_after'],
        postgresql_using='btree'
    )


def downgrade():
    op.drop_index('idx_issue_delivery_queue_execute_after', table_name='issue_delivery_queue')
    op.drop_table('issue_delivery_queue')
    op.drop_index('ix_newsletter_issues_published_at', table_name='newsletter_issues')
    op.drop_table('newsletter_issues')
    op.drop_index('idx_idempotency_created', table_name='idempotency')
    op.drop_table('idempotency')
