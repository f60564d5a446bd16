"""connector sync and event processing schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""
from __future__ import annotations
from alembic import op
import sqlalchemy as sa

revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'connector_templates',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('name', sa.String(128), nullable=False, unique=True, index=True),
        sa.Column('connector_type', sa.String(32), nullable=False, index=True),
        sa.Column('provider', sa.String(64), nullable=False),
        sa.Column('config_template', sa.JSON),
        sa.Column('capabilities', sa.JSON),
        sa.Column('validation_schema', sa.JSON, nullable=True),
        sa.Column('documentation', sa.Text, nullable=True),
        sa.Column('version', sa.String(32), nullable=False, server_default='1.0.0'),
        sa.Column('min_engine_version', sa.String(32), nullable=True),
        sa.Column('max_engine_version', sa.String(32), nullable=True),
        sa.Column('usage_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('rating', sa.Float, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_table(
        'connectors',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(128), nullable=False, unique=True, index=True),
        sa.Column('type', sa.String(32), nullable=False, index=True),
        sa.Column('provider', sa.String(64), nullable=False, index=True),
        sa.Column('version', sa.String(32), nullable=False),
        sa.Column('config', sa.JSON),
        sa.Column('capabilities', sa.JSON),
        sa.Column('status', sa.String(32), nullable=False, index=True),
        sa.Column('status_reason', sa.String(512), nullable=True),
        sa.Column('health', sa.String(32), nullable=False, index=True),
        sa.Column('last_health_check', sa.DateTime, nullable=True),
        sa.Column('sync_interval', sa.Integer, nullable=False, server_default='3600'),
        sa.Column('sync_strategy', sa.String(32), nullable=False),
        sa.Column('sync_enabled', sa.Boolean, nullable=False, index=True),
        sa.Column('last_sync', sa.DateTime, nullable=True),
        sa.Column('next_sync', sa.DateTime, nullable=True, index=True),
        sa.Column('rate_limit_per_min', sa.Integer, nullable=False, server_default='60'),
        sa.Column('rate_limit_per_hour', sa.Integer, nullable=False, server_default='1000'),
        sa.Column('encryption_key', sa.String(512), nullable=True),
        sa.Column('certificate', sa.Text, nullable=True),
        sa.Column('tenant_id', sa.String(64), nullable=False, index=True),
        sa.Column('template_id', sa.Integer, sa.ForeignKey('connector_templates.id'), nullable=True),
        sa.Column('created_by', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False, index=True),
        sa.Column('updated_at', sa.DateTime, nullable=False),
    )
    op.create_index('ix_connector_due', 'connectors', ['sync_enabled', 'status', 'next_sync'])
    op.create_table(
        'sync_jobs',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('connector_id', sa.String(36), sa.ForeignKey('connectors.id'), nullable=False, index=True),
        sa.Column('job_type', sa.String(32), nullable=False),
        sa.Column('strategy', sa.String(32), nullable=False),
        sa.Column('options', sa.JSON),
        sa.Column('status', sa.String(32), nullable=False, index=True),
        sa.Column('scheduled_at', sa.DateTime, nullable=True, index=True),
        sa.Column('attempt', sa.Integer, nullable=False, server_default='1'),
        sa.Column('retry_of', sa.Integer, nullable=True),
        sa.Column('deferrals', sa.Integer, nullable=False, server_default='0'),
        sa.Column('cancel_requested', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('started_at', sa.DateTime, nullable=True),
        sa.Column('completed_at', sa.DateTime, nullable=True),
        sa.Column('duration_ms', sa.Integer, nullable=True),
        sa.Column('records_processed', sa.Integer, nullable=False, server_default='0'),
        sa.Column('records_succeeded', sa.Integer, nullable=False, server_default='0'),
        sa.Column('records_failed', sa.Integer, nullable=False, server_default='0'),
        sa.Column('error_message', sa.String(1024), nullable=True),
        sa.Column('error_details', sa.JSON, nullable=True),
        sa.Column('correlation_id', sa.String(64), nullable=False, index=True),
        sa.Column('trigger_type', sa.String(32), nullable=False),
        sa.Column('triggered_by', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False, index=True),
    )
    op.create_index('ix_sync_job_connector_status', 'sync_jobs', ['connector_id', 'status'])
    op.create_table(
        'identity_mappings',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('nova_user_id', sa.String(36), nullable=False, unique=True, index=True),
        sa.Column('email', sa.String(320), nullable=False),
        sa.Column('email_canonical', sa.String(320), nullable=False, unique=True, index=True),
        sa.Column('external_mappings', sa.JSON),
        sa.Column('sources', sa.JSON),
        sa.Column('confidence', sa.Float, nullable=False, server_default='0'),
        sa.Column('last_verified_at', sa.DateTime, nullable=True),
        sa.Column('verification_method', sa.String(64), nullable=True),
        sa.Column('status', sa.String(32), nullable=False, index=True),
        sa.Column('conflict_resolution', sa.JSON, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False, index=True),
        sa.Column('updated_at', sa.DateTime, nullable=False),
    )
    op.create_table(
        'transformation_rules',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('name', sa.String(128), nullable=True),
        sa.Column('source_connector_id', sa.String(36), sa.ForeignKey('connectors.id'), nullable=False, index=True),
        sa.Column('source_field', sa.String(128), nullable=False, index=True),
        sa.Column('target_field', sa.String(128), nullable=False, index=True),
        sa.Column('transform_type', sa.String(32), nullable=False),
        sa.Column('transform_config', sa.JSON),
        sa.Column('validation_rules', sa.JSON, nullable=True),
        sa.Column('default_value', sa.JSON, nullable=True),
        sa.Column('enabled', sa.Boolean, nullable=False, index=True),
        sa.Column('priority', sa.Integer, nullable=False, server_default='0', index=True),
        sa.Column('success_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('error_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_applied', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False, index=True),
    )
    op.create_index('ux_transformation_rule_key', 'transformation_rules',
                    ['source_connector_id', 'source_field', 'target_field'], unique=True)
    op.create_table(
        'integration_events',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('event_type', sa.String(128), nullable=False, index=True),
        sa.Column('event_category', sa.String(32), nullable=False, index=True),
        sa.Column('source', sa.String(128), nullable=False, index=True),
        sa.Column('payload', sa.JSON),
        sa.Column('metadata', sa.JSON),
        sa.Column('correlation_id', sa.String(64), nullable=False, index=True),
        sa.Column('fingerprint', sa.String(64), nullable=False, index=True),
        sa.Column('status', sa.String(32), nullable=False, index=True),
        sa.Column('retry_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer, nullable=False, server_default='3'),
        sa.Column('next_attempt_at', sa.DateTime, nullable=True, index=True),
        sa.Column('error_message', sa.String(1024), nullable=True),
        sa.Column('error_details', sa.JSON, nullable=True),
        sa.Column('dead_letter_queue', sa.Boolean, nullable=False, server_default=sa.false(), index=True),
        sa.Column('connector_id', sa.String(36), sa.ForeignKey('connectors.id'), nullable=True, index=True),
        sa.Column('result', sa.JSON, nullable=True),
        sa.Column('timestamp', sa.DateTime, nullable=False, index=True),
        sa.Column('expires_at', sa.DateTime, nullable=True),
        sa.Column('processed_at', sa.DateTime, nullable=True),
    )
    op.create_index('ix_event_status_next_attempt', 'integration_events', ['status', 'next_attempt_at'])
    op.create_index('ix_event_correlation_ts', 'integration_events', ['correlation_id', 'timestamp'])
    op.create_table(
        'processing_records',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('idempotency_key', sa.String(128), nullable=False, unique=True, index=True),
        sa.Column('event_id', sa.Integer, nullable=False, index=True),
        sa.Column('status', sa.String(16), nullable=False, server_default='completed', index=True),
        sa.Column('result_data', sa.JSON, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False, index=True),
        sa.Column('expires_at', sa.DateTime, nullable=False, index=True),
    )
    op.create_table(
        'connector_metrics',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('connector_id', sa.String(36), sa.ForeignKey('connectors.id'), nullable=False, index=True),
        sa.Column('metric_type', sa.String(32), nullable=False),
        sa.Column('metric_name', sa.String(128), nullable=False, index=True),
        sa.Column('value', sa.Float, nullable=False),
        sa.Column('unit', sa.String(32), nullable=True),
        sa.Column('dimensions', sa.JSON),
        sa.Column('tags', sa.JSON),
        sa.Column('timestamp', sa.DateTime, nullable=False, index=True),
        sa.Column('aggregation_interval', sa.Integer, nullable=True),
    )
    op.create_index('ix_metric_connector_name_ts', 'connector_metrics', ['connector_id', 'metric_name', 'timestamp'])
    op.create_table(
        'data_quality_checks',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('check_name', sa.String(128), nullable=False, index=True),
        sa.Column('check_type', sa.String(32), nullable=False),
        sa.Column('data_source', sa.String(128), nullable=False, index=True),
        sa.Column('field_name', sa.String(128), nullable=True),
        sa.Column('rules', sa.JSON),
        sa.Column('status', sa.String(32), nullable=False, index=True),
        sa.Column('score', sa.Float, nullable=False),
        sa.Column('records_checked', sa.Integer, nullable=False, server_default='0'),
        sa.Column('records_passed', sa.Integer, nullable=False, server_default='0'),
        sa.Column('records_failed', sa.Integer, nullable=False, server_default='0'),
        sa.Column('issues', sa.JSON),
        sa.Column('severity', sa.String(32), nullable=False),
        sa.Column('correlation_id', sa.String(64), nullable=True, index=True),
        sa.Column('executed_at', sa.DateTime, nullable=False, index=True),
    )
    op.create_table(
        'integration_policies',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('name', sa.String(128), nullable=False, unique=True, index=True),
        sa.Column('description', sa.String(1024), nullable=True),
        sa.Column('policy_type', sa.String(32), nullable=False),
        sa.Column('scope', sa.JSON),
        sa.Column('rules', sa.JSON),
        sa.Column('conditions', sa.JSON, nullable=True),
        sa.Column('actions', sa.JSON, nullable=True),
        sa.Column('enabled', sa.Boolean, nullable=False, index=True),
        sa.Column('priority', sa.Integer, nullable=False, server_default='0', index=True),
        sa.Column('enforcement_mode', sa.String(32), nullable=False),
        sa.Column('violation_action', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
    )


def downgrade():
    op.drop_table('integration_policies')
    op.drop_table('data_quality_checks')
    op.drop_index('ix_metric_connector_name_ts', table_name='connector_metrics')
    op.drop_table('connector_metrics')
    op.drop_table('processing_records')
    op.drop_index('ix_event_correlation_ts', table_name='integration_events')
    op.drop_index('ix_event_status_next_attempt', table_name='integration_events')
    op.drop_table('integration_events')
    op.drop_index('ux_transformation_rule_key', table_name='transformation_rules')
    op.drop_table('transformation_rules')
    op.drop_table('identity_mappings')
    op.drop_index('ix_sync_job_connector_status', table_name='sync_jobs')
    op.drop_table('sync_jobs')
    op.drop_index('ix_connector_due', table_name='connectors')
    op.drop_table('connectors')
    op.drop_table('connector_templates')
