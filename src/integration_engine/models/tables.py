from __future__ import annotations
from datetime import datetime
from typing import Any
import uuid
from sqlalchemy import String, Integer, DateTime, JSON, ForeignKey, Float, Index, Boolean, Text, Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column
from integration_engine.clock import utcnow
from integration_engine.infrastructure.db import Base
from integration_engine.models.enums import (
    ConnectorType, ConnectorStatus, HealthStatus, SyncStrategy, JobType, JobStatus, TriggerType,
    EventCategory, EventStatus, IdentityStatus, TransformType, MetricType, QualityCheckType,
    QualityStatus, Severity, PolicyType, EnforcementMode,
)


def _enum(cls):
    return SAEnum(cls, native_enum=False, length=32, validate_strings=True)


def _uuid() -> str:
    return str(uuid.uuid4())


class Connector(Base):
    """Configured integration endpoint to an external system.

    config / capabilities are validated by ConnectorRegistry (validation.schemas) before persisting.
    status only changes through explicit operator / orchestrator actions; health is probe driven.
    """
    __tablename__ = "connectors"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    type: Mapped[ConnectorType] = mapped_column(_enum(ConnectorType), index=True)
    provider: Mapped[str] = mapped_column(String(64), index=True)
    version: Mapped[str] = mapped_column(String(32), default="1.0.0")
    config: Mapped[dict] = mapped_column(JSON, default=dict)
    capabilities: Mapped[dict] = mapped_column(JSON, default=dict)
    status: Mapped[ConnectorStatus] = mapped_column(_enum(ConnectorStatus), default=ConnectorStatus.ACTIVE, index=True)
    status_reason: Mapped[str | None] = mapped_column(String(512), default=None)
    health: Mapped[HealthStatus] = mapped_column(_enum(HealthStatus), default=HealthStatus.UNKNOWN, index=True)
    last_health_check: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    sync_interval: Mapped[int] = mapped_column(Integer, default=3600)  # seconds
    sync_strategy: Mapped[SyncStrategy] = mapped_column(_enum(SyncStrategy), default=SyncStrategy.POLLING)
    sync_enabled: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    last_sync: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    next_sync: Mapped[datetime | None] = mapped_column(DateTime, default=None, index=True)
    rate_limit_per_min: Mapped[int] = mapped_column(Integer, default=60)
    rate_limit_per_hour: Mapped[int] = mapped_column(Integer, default=1000)
    encryption_key: Mapped[str | None] = mapped_column(String(512), default=None)
    certificate: Mapped[str | None] = mapped_column(Text, default=None)
    tenant_id: Mapped[str] = mapped_column(String(64), default="default", index=True)
    template_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("connector_templates.id"), default=None)
    created_by: Mapped[str | None] = mapped_column(String(64), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    __table_args__ = (
        Index("ix_connector_due", "sync_enabled", "status", "next_sync"),
    )


class SyncJob(Base):
    """One execution attempt for a connector. Retained indefinitely for audit."""
    __tablename__ = "sync_jobs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connector_id: Mapped[str] = mapped_column(String(36), ForeignKey("connectors.id"), index=True)
    job_type: Mapped[JobType] = mapped_column(_enum(JobType), default=JobType.INCREMENTAL)
    strategy: Mapped[SyncStrategy] = mapped_column(_enum(SyncStrategy), default=SyncStrategy.POLLING)
    options: Mapped[dict] = mapped_column(JSON, default=dict)
    status: Mapped[JobStatus] = mapped_column(_enum(JobStatus), default=JobStatus.PENDING, index=True)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime, default=None, index=True)  # not-before
    attempt: Mapped[int] = mapped_column(Integer, default=1)
    retry_of: Mapped[int | None] = mapped_column(Integer, default=None)
    deferrals: Mapped[int] = mapped_column(Integer, default=0)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    duration_ms: Mapped[int | None] = mapped_column(Integer, default=None)
    records_processed: Mapped[int] = mapped_column(Integer, default=0)
    records_succeeded: Mapped[int] = mapped_column(Integer, default=0)
    records_failed: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(String(1024), default=None)
    error_details: Mapped[dict | None] = mapped_column(JSON, default=None)
    correlation_id: Mapped[str] = mapped_column(String(64), default=_uuid, index=True)
    trigger_type: Mapped[TriggerType] = mapped_column(_enum(TriggerType), default=TriggerType.SCHEDULED)
    triggered_by: Mapped[str | None] = mapped_column(String(64), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    __table_args__ = (
        Index("ix_sync_job_connector_status", "connector_id", "status"),
    )


class IdentityMapping(Base):
    """Canonical user <-> external identity reconciliation record."""
    __tablename__ = "identity_mappings"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    nova_user_id: Mapped[str] = mapped_column(String(36), unique=True, index=True, default=_uuid)
    email: Mapped[str] = mapped_column(String(320))
    email_canonical: Mapped[str] = mapped_column(String(320), unique=True, index=True)
    external_mappings: Mapped[dict] = mapped_column(JSON, default=dict)  # system -> external id
    sources: Mapped[dict] = mapped_column(JSON, default=dict)  # system -> {verified_at, method, connector_id}
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    last_verified_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    verification_method: Mapped[str | None] = mapped_column(String(64), default=None)
    status: Mapped[IdentityStatus] = mapped_column(_enum(IdentityStatus), default=IdentityStatus.PENDING_REVIEW, index=True)
    conflict_resolution: Mapped[dict | None] = mapped_column(JSON, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class TransformationRule(Base):
    __tablename__ = "transformation_rules"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str | None] = mapped_column(String(128), default=None)
    source_connector_id: Mapped[str] = mapped_column(String(36), ForeignKey("connectors.id"), index=True)
    source_field: Mapped[str] = mapped_column(String(128), index=True)
    target_field: Mapped[str] = mapped_column(String(128), index=True)
    transform_type: Mapped[TransformType] = mapped_column(_enum(TransformType), default=TransformType.DIRECT)
    transform_config: Mapped[dict] = mapped_column(JSON, default=dict)
    validation_rules: Mapped[dict | None] = mapped_column(JSON, default=None)
    default_value: Mapped[Any | None] = mapped_column(JSON, default=None)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    priority: Mapped[int] = mapped_column(Integer, default=0, index=True)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    last_applied: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    __table_args__ = (
        Index("ux_transformation_rule_key", "source_connector_id", "source_field", "target_field", unique=True),
    )


class IntegrationEvent(Base):
    """A unit of ingested change. Mutated only by EventPipeline."""
    __tablename__ = "integration_events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(128), index=True)
    event_category: Mapped[EventCategory] = mapped_column(_enum(EventCategory), default=EventCategory.SYSTEM_EVENT, index=True)
    source: Mapped[str] = mapped_column(String(128), index=True)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    event_metadata: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    correlation_id: Mapped[str] = mapped_column(String(64), default=_uuid, index=True)
    fingerprint: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[EventStatus] = mapped_column(_enum(EventStatus), default=EventStatus.PENDING, index=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime, default=None, index=True)
    error_message: Mapped[str | None] = mapped_column(String(1024), default=None)
    error_details: Mapped[dict | None] = mapped_column(JSON, default=None)
    dead_letter_queue: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    connector_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("connectors.id"), default=None, index=True)
    result: Mapped[dict | None] = mapped_column(JSON, default=None)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    __table_args__ = (
        Index("ix_event_status_next_attempt", "status", "next_attempt_at"),
        Index("ix_event_correlation_ts", "correlation_id", "timestamp"),
    )


class ProcessingRecord(Base):
    """Result cache for idempotency: one row per completed correlation id."""
    __tablename__ = "processing_records"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    idempotency_key: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    event_id: Mapped[int] = mapped_column(Integer, index=True)
    status: Mapped[str] = mapped_column(String(16), default="completed", index=True)
    result_data: Mapped[dict | None] = mapped_column(JSON, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)


class ConnectorMetric(Base):
    """Append-only time-series sample scoped to a connector."""
    __tablename__ = "connector_metrics"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connector_id: Mapped[str] = mapped_column(String(36), ForeignKey("connectors.id"), index=True)
    metric_type: Mapped[MetricType] = mapped_column(_enum(MetricType), default=MetricType.GAUGE)
    metric_name: Mapped[str] = mapped_column(String(128), index=True)
    value: Mapped[float] = mapped_column(Float)
    unit: Mapped[str | None] = mapped_column(String(32), default=None)
    dimensions: Mapped[dict] = mapped_column(JSON, default=dict)
    tags: Mapped[list] = mapped_column(JSON, default=list)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    aggregation_interval: Mapped[int | None] = mapped_column(Integer, default=None)  # seconds
    __table_args__ = (
        Index("ix_metric_connector_name_ts", "connector_id", "metric_name", "timestamp"),
    )


class DataQualityCheck(Base):
    """Result of one execution of a named quality check. Append-only."""
    __tablename__ = "data_quality_checks"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    check_name: Mapped[str] = mapped_column(String(128), index=True)
    check_type: Mapped[QualityCheckType] = mapped_column(_enum(QualityCheckType))
    data_source: Mapped[str] = mapped_column(String(128), index=True)
    field_name: Mapped[str | None] = mapped_column(String(128), default=None)
    rules: Mapped[dict] = mapped_column(JSON, default=dict)
    status: Mapped[QualityStatus] = mapped_column(_enum(QualityStatus), index=True)
    score: Mapped[float] = mapped_column(Float)
    records_checked: Mapped[int] = mapped_column(Integer, default=0)
    records_passed: Mapped[int] = mapped_column(Integer, default=0)
    records_failed: Mapped[int] = mapped_column(Integer, default=0)
    issues: Mapped[list] = mapped_column(JSON, default=list)
    severity: Mapped[Severity] = mapped_column(_enum(Severity), default=Severity.MEDIUM)
    correlation_id: Mapped[str | None] = mapped_column(String(64), default=None, index=True)
    executed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


class IntegrationPolicy(Base):
    __tablename__ = "integration_policies"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    description: Mapped[str | None] = mapped_column(String(1024), default=None)
    policy_type: Mapped[PolicyType] = mapped_column(_enum(PolicyType), default=PolicyType.DATA_GOVERNANCE)
    scope: Mapped[dict] = mapped_column(JSON, default=dict)
    rules: Mapped[dict] = mapped_column(JSON, default=dict)
    conditions: Mapped[dict | None] = mapped_column(JSON, default=None)
    actions: Mapped[dict | None] = mapped_column(JSON, default=None)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    priority: Mapped[int] = mapped_column(Integer, default=0, index=True)
    enforcement_mode: Mapped[EnforcementMode] = mapped_column(_enum(EnforcementMode), default=EnforcementMode.ADVISORY)
    violation_action: Mapped[str | None] = mapped_column(String(64), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class ConnectorTemplate(Base):
    """Reusable starter configuration for a connector type."""
    __tablename__ = "connector_templates"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    connector_type: Mapped[ConnectorType] = mapped_column(_enum(ConnectorType), index=True)
    provider: Mapped[str] = mapped_column(String(64))
    config_template: Mapped[dict] = mapped_column(JSON, default=dict)
    capabilities: Mapped[dict] = mapped_column(JSON, default=dict)
    validation_schema: Mapped[dict | None] = mapped_column(JSON, default=None)  # JSON Schema
    documentation: Mapped[str | None] = mapped_column(Text, default=None)
    version: Mapped[str] = mapped_column(String(32), default="1.0.0")
    min_engine_version: Mapped[str | None] = mapped_column(String(32), default=None)
    max_engine_version: Mapped[str | None] = mapped_column(String(32), default=None)
    usage_count: Mapped[int] = mapped_column(Integer, default=0)
    rating: Mapped[float | None] = mapped_column(Float, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
