"""
create cloud_accounts, sync_jobs, cost_line_items and background_jobs

Revision ID: b7c1d2e3f4a5
Revises:
Create Date: 2026-10-16

cost_line_items carries the (tenant_id, cloud_account_id, natural_key) unique
constraint that makes re-ingestion idempotent.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = 'b7c1d2e3f4a5'
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def upgrade() -> None:
    op.create_table(
        'cloud_accounts',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('external_id', sa.String(255), nullable=True),
        sa.Column('credentials_encrypted', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('requires_reconfiguration', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_sync_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_cloud_accounts'),
    )
    op.create_index('ix_cloud_accounts_tenant_id', 'cloud_accounts', ['tenant_id'])
    op.create_index('ix_cloud_accounts_status', 'cloud_accounts', ['status'])

    op.create_table(
        'sync_jobs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('cloud_account_id', sa.Uuid(), nullable=False),
        sa.Column('background_job_id', sa.Uuid(), nullable=True),
        sa.Column('job_type', sa.String(50), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='RUNNING'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metadata', JSON_TYPE, nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('error_kind', sa.String(50), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_sync_jobs'),
        sa.ForeignKeyConstraint(
            ['cloud_account_id'], ['cloud_accounts.id'],
            name='fk_sync_jobs_cloud_account_id_cloud_accounts', ondelete='CASCADE'
        ),
    )
    op.create_index('ix_sync_jobs_background_job_id', 'sync_jobs', ['background_job_id'])
    op.create_index('ix_sync_jobs_status', 'sync_jobs', ['status'])
    op.create_index('ix_sync_jobs_account_started', 'sync_jobs', ['cloud_account_id', 'started_at'])

    op.create_table(
        'cost_line_items',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('cloud_account_id', sa.Uuid(), nullable=False),
        sa.Column('sync_job_id', sa.Uuid(), nullable=True),
        sa.Column('natural_key', sa.String(64), nullable=False),
        sa.Column('billing_period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('billing_period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('charge_category', sa.String(20), nullable=False),
        sa.Column('charge_type', sa.String(100), nullable=False),
        sa.Column('billed_cost', sa.Numeric(18, 8), nullable=False),
        sa.Column('effective_cost', sa.Numeric(18, 8), nullable=False),
        sa.Column('list_cost', sa.Numeric(18, 8), nullable=True),
        sa.Column('billing_currency', sa.String(3), nullable=False),
        sa.Column('service_category', sa.String(100), nullable=True),
        sa.Column('service_name', sa.String(255), nullable=True),
        sa.Column('region_id', sa.String(100), nullable=True),
        sa.Column('region_name', sa.String(255), nullable=True),
        sa.Column('availability_zone', sa.String(100), nullable=True),
        sa.Column('resource_id', sa.Text(), nullable=True),
        sa.Column('resource_name', sa.Text(), nullable=True),
        sa.Column('resource_type', sa.String(255), nullable=True),
        sa.Column('pricing_category', sa.String(100), nullable=True),
        sa.Column('pricing_quantity', sa.Numeric(24, 8), nullable=True),
        sa.Column('pricing_unit', sa.String(100), nullable=True),
        sa.Column('usage_quantity', sa.Numeric(24, 8), nullable=True),
        sa.Column('usage_unit', sa.String(100), nullable=True),
        sa.Column('commitment_discount_id', sa.Text(), nullable=True),
        sa.Column('commitment_discount_name', sa.String(255), nullable=True),
        sa.Column('commitment_discount_type', sa.String(100), nullable=True),
        sa.Column('provider_name', sa.String(20), nullable=False),
        sa.Column('publisher_name', sa.String(255), nullable=True),
        sa.Column('invoice_section_id', sa.String(255), nullable=True),
        sa.Column('sub_account_id', sa.String(255), nullable=True),
        sa.Column('sub_account_name', sa.String(255), nullable=True),
        sa.Column('tags', JSON_TYPE, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_cost_line_items'),
        sa.ForeignKeyConstraint(
            ['cloud_account_id'], ['cloud_accounts.id'],
            name='fk_cost_line_items_cloud_account_id_cloud_accounts', ondelete='CASCADE'
        ),
        sa.ForeignKeyConstraint(
            ['sync_job_id'], ['sync_jobs.id'],
            name='fk_cost_line_items_sync_job_id_sync_jobs', ondelete='SET NULL'
        ),
        sa.UniqueConstraint('tenant_id', 'cloud_account_id', 'natural_key', name='uix_cost_line_item_natural_key'),
    )
    op.create_index('ix_cost_line_items_charge_category', 'cost_line_items', ['charge_category'])
    op.create_index('ix_cost_line_items_service_name', 'cost_line_items', ['service_name'])
    op.create_index('ix_cost_line_items_tenant_period', 'cost_line_items', ['tenant_id', 'billing_period_start'])
    op.create_index('ix_cost_line_items_account_period', 'cost_line_items', ['cloud_account_id', 'billing_period_start'])

    op.create_table(
        'background_jobs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('job_type', sa.String(50), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=True),
        sa.Column('deduplication_key', sa.String(255), nullable=True),
        sa.Column('concurrency_key', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('payload', JSON_TYPE, nullable=True),
        sa.Column('result', JSON_TYPE, nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('progress', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_kind', sa.String(50), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_background_jobs'),
    )
    op.create_index('ix_background_jobs_tenant_id', 'background_jobs', ['tenant_id'])
    op.create_index('ix_background_jobs_deduplication_key', 'background_jobs', ['deduplication_key'])
    op.create_index('ix_background_jobs_status', 'background_jobs', ['status'])
    op.create_index('ix_background_jobs_priority', 'background_jobs', ['priority'])
    op.create_index('ix_background_jobs_created_at', 'background_jobs', ['created_at'])
    op.create_index('ix_background_jobs_claim', 'background_jobs', ['status', 'scheduled_for', 'priority'])
    op.create_index('ix_background_jobs_concurrency', 'background_jobs', ['concurrency_key', 'status'])


def downgrade() -> None:
    op.drop_table('background_jobs')
    op.drop_table('cost_line_items')
    op.drop_table('sync_jobs')
    op.drop_table('cloud_accounts')
