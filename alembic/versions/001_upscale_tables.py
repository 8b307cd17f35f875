"""Add upscale_jobs and upscale_tiles tables

Revision ID: 001_upscale_tables
Revises:
Create Date: 2026-10-17

- upscale_jobs: one row per job, the source of truth for its lifecycle
- upscale_tiles: tile rows per job, with per-stage outputs and lineage
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '001_upscale_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'upscale_jobs',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('error_code', sa.String(), nullable=True),
        sa.Column('error_message', sa.String(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('content_type', sa.String(), nullable=False, server_default='photo'),
        sa.Column('settings', sa.JSON(), nullable=True),
        sa.Column('target_scale', sa.Integer(), nullable=False),
        sa.Column('original_filename', sa.String(), nullable=True),
        sa.Column('original_width', sa.Integer(), nullable=False),
        sa.Column('original_height', sa.Integer(), nullable=False),
        sa.Column('working_width', sa.Integer(), nullable=False),
        sa.Column('working_height', sa.Integer(), nullable=False),
        sa.Column('requires_downscale', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('downscale_factor', sa.Float(), nullable=False, server_default='1.0'),
        sa.Column('template_name', sa.String(), nullable=True),
        sa.Column('is_fallback_plan', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('template_config', sa.JSON(), nullable=True),
        sa.Column('current_stage', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('total_stages', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('tile_grid', sa.JSON(), nullable=True),
        sa.Column('input_storage_key', sa.String(), nullable=True),
        sa.Column('working_storage_key', sa.String(), nullable=True),
        sa.Column('final_storage_key', sa.String(), nullable=True),
        sa.Column('final_output_url', sa.String(), nullable=True),
        sa.Column('final_width', sa.Integer(), nullable=True),
        sa.Column('final_height', sa.Integer(), nullable=True),
        sa.Column('missing_regions', sa.JSON(), nullable=True),
        sa.Column('last_webhook_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_upscale_jobs_status', 'upscale_jobs', ['status'])
    op.create_index('ix_upscale_jobs_created_at', 'upscale_jobs', ['created_at'])

    op.create_table(
        'upscale_tiles',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('job_id', sa.String(), sa.ForeignKey('upscale_jobs.id'), nullable=False),
        sa.Column('tile_id', sa.Integer(), nullable=False),
        sa.Column('x', sa.Float(), nullable=False),
        sa.Column('y', sa.Float(), nullable=False),
        sa.Column('width', sa.Float(), nullable=False),
        sa.Column('height', sa.Float(), nullable=False),
        sa.Column('overlap_left', sa.Float(), nullable=False, server_default='0'),
        sa.Column('overlap_top', sa.Float(), nullable=False, server_default='0'),
        sa.Column('input_url', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('stage_outputs', sa.JSON(), nullable=True),
        sa.Column('prediction_ids', sa.JSON(), nullable=True),
        sa.Column('attempts', sa.JSON(), nullable=True),
        sa.Column('current_prediction_id', sa.String(), nullable=True),
        sa.Column('parent_tile_id', sa.Integer(), nullable=True),
        sa.Column('sub_tile_index', sa.Integer(), nullable=True),
        sa.Column('sub_tile_grid', sa.JSON(), nullable=True),
        sa.Column('is_superseded', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('error', sa.String(), nullable=True),
        sa.Column('error_stage', sa.Integer(), nullable=True),
        sa.Column('retry_after', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('job_id', 'tile_id', name='uq_upscale_tiles_job_tile'),
    )
    op.create_index('ix_upscale_tiles_job_id', 'upscale_tiles', ['job_id'])
    op.create_index('ix_upscale_tiles_current_prediction_id', 'upscale_tiles', ['current_prediction_id'])


def downgrade() -> None:
    op.drop_index('ix_upscale_tiles_current_prediction_id', table_name='upscale_tiles')
    op.drop_index('ix_upscale_tiles_job_id', table_name='upscale_tiles')
    op.drop_table('upscale_tiles')
    op.drop_index('ix_upscale_jobs_created_at', table_name='upscale_jobs')
    op.drop_index('ix_upscale_jobs_status', table_name='upscale_jobs')
    op.drop_table('upscale_jobs')
