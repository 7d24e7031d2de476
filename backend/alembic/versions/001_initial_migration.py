"""Initial migration

Revision ID: 001
Revises:
Create Date: 2026-10-18 09:00:00.000000

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


def upgrade() -> None:
    # Organisation hierarchy
    op.create_table('nodes',
    sa.Column('node_id', sa.String(50), nullable=False),
    sa.Column('parent_node_id', sa.String(50), nullable=True),
    sa.Column('name', sa.String(255), nullable=False),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    sa.PrimaryKeyConstraint('node_id')
    )
    op.create_index(op.f('ix_nodes_parent_node_id'), 'nodes', ['parent_node_id'], unique=False)

    op.create_table('node_schools',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('node_id', sa.String(50), nullable=False),
    sa.Column('school_id', sa.String(255), nullable=False),
    sa.Column('school_source', sa.String(10), nullable=False),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('node_id', 'school_id', 'school_source', name='uq_node_school')
    )
    op.create_index(op.f('ix_node_schools_id'), 'node_schools', ['id'], unique=False)
    op.create_index('idx_node_schools_source_school', 'node_schools', ['school_source', 'school_id'], unique=False)

    # External system credentials
    op.create_table('school_configs',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('source', sa.String(10), nullable=False),
    sa.Column('school_name', sa.String(255), nullable=False),
    sa.Column('school_id', sa.String(255), nullable=True),
    sa.Column('base_url', sa.String(255), nullable=True),
    sa.Column('credentials', sa.Text(), nullable=False),
    sa.Column('settings', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('country', sa.String(100), nullable=True),
    sa.Column('is_active', sa.Boolean(), server_default='true', nullable=False),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_school_configs_id'), 'school_configs', ['id'], unique=False)
    op.create_index(op.f('ix_school_configs_source'), 'school_configs', ['source'], unique=False)

    # Recurring schedules
    op.create_table('sync_schedules',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('node_id', sa.String(50), nullable=False),
    sa.Column('academic_year', sa.String(20), nullable=False),
    sa.Column('cron_expression', sa.String(100), nullable=False),
    sa.Column('endpoints_mb', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('endpoints_nex', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('include_descendants', sa.Boolean(), server_default='false', nullable=False),
    sa.Column('is_active', sa.Boolean(), server_default='true', nullable=False),
    sa.Column('created_by', sa.String(255), nullable=True),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_sync_schedules_id'), 'sync_schedules', ['id'], unique=False)

    # Run ledger
    op.create_table('sync_runs',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('schedule_id', sa.Integer(), nullable=True),
    sa.Column('node_id', sa.String(1000), nullable=False),
    sa.Column('academic_year', sa.String(20), nullable=False),
    sa.Column('status', sa.String(20), server_default='pending', nullable=False),
    sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('triggered_by', sa.String(255), server_default='scheduler', nullable=False),
    sa.Column('total_schools', sa.Integer(), server_default='0', nullable=False),
    sa.Column('schools_succeeded', sa.Integer(), server_default='0', nullable=False),
    sa.Column('schools_failed', sa.Integer(), server_default='0', nullable=False),
    sa.Column('error_summary', sa.Text(), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    sa.ForeignKeyConstraint(['schedule_id'], ['sync_schedules.id'], ondelete='SET NULL'),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_sync_runs_id'), 'sync_runs', ['id'], unique=False)
    op.create_index('idx_sync_runs_started_at', 'sync_runs', ['started_at'], unique=False)
    op.create_index('idx_sync_runs_status', 'sync_runs', ['status'], unique=False)

    op.create_table('sync_run_schools',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('sync_run_id', sa.Integer(), nullable=False),
    sa.Column('school_id', sa.String(255), nullable=False),
    sa.Column('school_source', sa.String(10), nullable=False),
    sa.Column('config_id', sa.Integer(), nullable=False),
    sa.Column('school_name', sa.String(255), nullable=False),
    sa.Column('status', sa.String(20), server_default='pending', nullable=False),
    sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('error_message', sa.Text(), nullable=True),
    sa.Column('current_endpoint', sa.String(100), nullable=True),
    sa.Column('endpoint_log', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.ForeignKeyConstraint(['sync_run_id'], ['sync_runs.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_sync_run_schools_id'), 'sync_run_schools', ['id'], unique=False)
    op.create_index(op.f('ix_sync_run_schools_sync_run_id'), 'sync_run_schools', ['sync_run_id'], unique=False)
    op.create_index('idx_sync_run_schools_run_status', 'sync_run_schools', ['sync_run_id', 'status'], unique=False)

    # Synced payloads
    op.create_table('external_records',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('source', sa.String(10), nullable=False),
    sa.Column('school_id', sa.String(255), nullable=False),
    sa.Column('endpoint', sa.String(100), nullable=False),
    sa.Column('external_id', sa.String(255), nullable=False),
    sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column('synced_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('source', 'school_id', 'endpoint', 'external_id', name='uq_external_record')
    )
    op.create_index(op.f('ix_external_records_id'), 'external_records', ['id'], unique=False)

    # Audit trail
    op.create_table('audit_logs',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('action', sa.String(100), nullable=False),
    sa.Column('entity_type', sa.String(50), nullable=True),
    sa.Column('entity_id', sa.Integer(), nullable=True),
    sa.Column('user', sa.String(255), nullable=True),
    sa.Column('details', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('ip_address', sa.String(45), nullable=True),
    sa.Column('user_agent', sa.String(), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_audit_logs_id'), 'audit_logs', ['id'], unique=False)
    op.create_index(op.f('ix_audit_logs_created_at'), 'audit_logs', ['created_at'], unique=False)
    op.create_index('idx_audit_logs_action', 'audit_logs', ['action'], unique=False)
    op.create_index('idx_audit_logs_entity', 'audit_logs', ['entity_type', 'entity_id'], unique=False)


def downgrade() -> None:
    op.drop_index('idx_audit_logs_entity', table_name='audit_logs')
    op.drop_index('idx_audit_logs_action', table_name='audit_logs')
    op.drop_index(op.f('ix_audit_logs_created_at'), table_name='audit_logs')
    op.drop_index(op.f('ix_audit_logs_id'), table_name='audit_logs')
    op.drop_table('audit_logs')

    op.drop_index(op.f('ix_external_records_id'), table_name='external_records')
    op.drop_table('external_records')

    op.drop_index('idx_sync_run_schools_run_status', table_name='sync_run_schools')
    op.drop_index(op.f('ix_sync_run_schools_sync_run_id'), table_name='sync_run_schools')
    op.drop_index(op.f('ix_sync_run_schools_id'), table_name='sync_run_schools')
    op.drop_table('sync_run_schools')

    op.drop_index('idx_sync_runs_status', table_name='sync_runs')
    op.drop_index('idx_sync_runs_started_at', table_name='sync_runs')
    op.drop_index(op.f('ix_sync_runs_id'), table_name='sync_runs')
    op.drop_table('sync_runs')

    op.drop_index(op.f('ix_sync_schedules_id'), table_name='sync_schedules')
    op.drop_table('sync_schedules')

    op.drop_index(op.f('ix_school_configs_source'), table_name='school_configs')
    op.drop_index(op.f('ix_school_configs_id'), table_name='school_configs')
    op.drop_table('school_configs')

    op.drop_index('idx_node_schools_source_school', table_name='node_schools')
    op.drop_index(op.f('ix_node_schools_id'), table_name='node_schools')
    op.drop_table('node_schools')

    op.drop_index(op.f('ix_nodes_parent_node_id'), table_name='nodes')
    op.drop_table('nodes')
