"""
Create bulk onboarding tables.

- bulk_operations: one row per bulk request, with progress counters, the
  parsed input kept for recovery and retries, and the lease of the process
  running it
- bulk_record_outcomes: write-once per-record results keyed by (operation, index)
- audit_logs: lifecycle audit trail for bulk operations
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = 'bulk_onboarding_20261018'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'bulk_operations',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('fpo_org_id', sa.Text(), nullable=False),
        sa.Column('requested_by', sa.Text(), nullable=False),
        sa.Column('organization_id', sa.Text(), nullable=True),
        sa.Column('requested_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('input_format', sa.Text(), nullable=False),
        sa.Column('processing_mode', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False, server_default='PENDING'),
        sa.Column('total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('successful', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column(
            'parent_operation_id',
            sa.Uuid(),
            sa.ForeignKey('bulk_operations.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('options', postgresql.JSONB(), nullable=True),
        sa.Column('input_records', postgresql.JSONB(), nullable=True),
        sa.Column('cancel_requested', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('lease_owner', sa.Text(), nullable=True),
        sa.Column('lease_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_kind', sa.Text(), nullable=True),
        sa.Column('error_detail', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', 'CANCELLED')",
            name='ck_bulk_operations_status',
        ),
        sa.CheckConstraint(
            'processed = successful + failed AND processed <= total',
            name='ck_bulk_operations_progress',
        ),
    )
    op.create_index('ix_bulk_operations_fpo_org_id_created_at', 'bulk_operations', ['fpo_org_id', 'created_at'])
    op.create_index('ix_bulk_operations_status', 'bulk_operations', ['status'])

    op.create_table(
        'bulk_record_outcomes',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column(
            'operation_id',
            sa.Uuid(),
            sa.ForeignKey('bulk_operations.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('record_index', sa.Integer(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('created_farmer_id', sa.Text(), nullable=True),
        sa.Column('error_kind', sa.Text(), nullable=True),
        sa.Column('error_detail', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('input_data', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('operation_id', 'record_index', name='uq_bulk_record_outcomes_operation_record'),
    )
    op.create_index(
        'ix_bulk_record_outcomes_operation_id_status', 'bulk_record_outcomes', ['operation_id', 'status']
    )

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('organization_id', sa.Text(), nullable=True),
        sa.Column('actor', sa.Text(), nullable=False),
        sa.Column('action_type', sa.Text(), nullable=False),
        sa.Column('target_type', sa.Text(), nullable=True),
        sa.Column('target_id', sa.Uuid(), nullable=True),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('metadata', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_audit_logs_organization_id_created_at', 'audit_logs', ['organization_id', 'created_at'])
    op.create_index('ix_audit_logs_target', 'audit_logs', ['target_type', 'target_id'])
    op.create_index('ix_audit_logs_action_type', 'audit_logs', ['action_type'])


def downgrade() -> None:
    op.drop_index('ix_audit_logs_action_type', table_name='audit_logs')
    op.drop_index('ix_audit_logs_target', table_name='audit_logs')
    op.drop_index('ix_audit_logs_organization_id_created_at', table_name='audit_logs')
    op.drop_table('audit_logs')
    op.drop_index('ix_bulk_record_outcomes_operation_id_status', table_name='bulk_record_outcomes')
    op.drop_table('bulk_record_outcomes')
    op.drop_index('ix_bulk_operations_status', table_name='bulk_operations')
    op.drop_index('ix_bulk_operations_fpo_org_id_created_at', table_name='bulk_operations')
    op.drop_table('bulk_operations')
