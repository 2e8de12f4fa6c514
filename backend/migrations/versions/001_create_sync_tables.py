"""Create sync_queue, sync_entity_map and sync_state tables

Revision ID: 001
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # Job queue
    op.create_table(
        'sync_queue',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('tenant_id', sa.Integer(), server_default='1', nullable=False),
        sa.Column('module', sa.Text(), nullable=False),
        sa.Column('entity_type', sa.Text(), nullable=False),
        sa.Column('direction', sa.Text(), server_default='local_to_remote', nullable=False),
        sa.Column('action', sa.Text(), server_default='update', nullable=False),
        sa.Column('local_id', sa.Integer(), server_default='0', nullable=False),
        sa.Column('remote_id', sa.Integer(), server_default='0', nullable=False),
        sa.Column('payload', sa.Text(), nullable=True),
        sa.Column('priority', sa.Integer(), server_default='5', nullable=False),
        sa.Column('status', sa.Text(), server_default='pending', nullable=False),
        sa.Column('attempts', sa.Integer(), server_default='0', nullable=False),
        sa.Column('max_attempts', sa.Integer(), server_default='3', nullable=False),
        sa.Column('scheduled_at', sa.DateTime(), nullable=True),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('correlation_id', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text("(NOW() AT TIME ZONE 'utc')"), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'done', 'failed', 'dead')",
            name='ck_sync_queue_status'
        ),
        sa.CheckConstraint(
            "direction IN ('local_to_remote', 'remote_to_local')",
            name='ck_sync_queue_direction'
        ),
        sa.CheckConstraint(
            "action IN ('create', 'update', 'delete')",
            name='ck_sync_queue_action'
        ),
    )

    # Claim order: due pending jobs by priority, then age
    op.create_index('idx_sync_queue_claim', 'sync_queue', ['tenant_id', 'status', 'priority', 'created_at'])
    # Enqueue dedup lookup
    op.create_index('idx_sync_queue_dedup', 'sync_queue', ['tenant_id', 'module', 'entity_type', 'action', 'local_id'])

    # Entity map (bijection per tenant/module/entity_type)
    op.create_table(
        'sync_entity_map',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('tenant_id', sa.Integer(), server_default='1', nullable=False),
        sa.Column('module', sa.Text(), nullable=False),
        sa.Column('entity_type', sa.Text(), nullable=False),
        sa.Column('local_id', sa.Integer(), nullable=False),
        sa.Column('remote_id', sa.Integer(), nullable=False),
        sa.Column('remote_model', sa.Text(), server_default='', nullable=False),
        sa.Column('sync_hash', sa.Text(), server_default='', nullable=False),
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        sa.Column('last_polled_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'module', 'entity_type', 'local_id', name='uq_sync_entity_map_local'),
        sa.UniqueConstraint('tenant_id', 'module', 'entity_type', 'remote_id', name='uq_sync_entity_map_remote'),
    )

    # Diff-scan deletion detection
    op.create_index(
        'idx_sync_entity_map_polled',
        'sync_entity_map',
        ['tenant_id', 'module', 'entity_type', 'last_polled_at']
    )

    # Keyed state blobs (circuit breaker, failure notifier, stale recovery)
    op.create_table(
        'sync_state',
        sa.Column('key', sa.Text(), nullable=False),
        sa.Column('value', postgresql.JSONB(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text("(NOW() AT TIME ZONE 'utc')"), nullable=False),
        sa.PrimaryKeyConstraint('key'),
    )


def downgrade():
    op.drop_table('sync_state')
    op.drop_index('idx_sync_entity_map_polled', table_name='sync_entity_map')
    op.drop_table('sync_entity_map')
    op.drop_index('idx_sync_queue_dedup', table_name='sync_queue')
    op.drop_index('idx_sync_queue_claim', table_name='sync_queue')
    op.drop_table('sync_queue')
