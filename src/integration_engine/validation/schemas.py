"""Pydantic shapes for the JSON columns, validated where each component consumes them."""
from __future__ import annotations
import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from integration_engine.models.enums import (
    ConnectorType, SyncStrategy, QualityCheckType, Severity, EnforcementMode, PolicyType,
)

SEMVER_RE = re.compile(r"^\d+\.\d+\.\d+(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$")


class ConnectorConfig(BaseModel):
    """Connector config blob. Provider specific keys are allowed; `version` is mandatory."""
    model_config = ConfigDict(extra="allow")

    version: str
    base_url: Optional[str] = None
    timeout_seconds: Optional[float] = Field(None, gt=0)
    batch_size: Optional[int] = Field(None, gt=0)

    @field_validator("version")
    @classmethod
    def _semver(cls, v: str) -> str:
        if not SEMVER_RE.match(v):
            raise ValueError(f"not a semantic version: {v}")
        return v


class ConnectorCapabilities(BaseModel):
    model_config = ConfigDict(extra="allow")

    fields: List[str] = Field(default_factory=list)
    supports_push: bool = False
    supports_webhooks: bool = False
    supports_incremental: bool = True
    identity_fields: List[str] = Field(default_factory=lambda: ["email"])


class ConnectorRegistration(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    type: ConnectorType
    provider: str = Field(min_length=1, max_length=64)
    version: str = "1.0.0"
    config: Dict[str, Any]
    capabilities: Dict[str, Any] = Field(default_factory=dict)
    sync_interval: int = Field(3600, gt=0)
    sync_strategy: SyncStrategy = SyncStrategy.POLLING
    sync_enabled: bool = True
    rate_limit_per_min: int = Field(60, gt=0)
    rate_limit_per_hour: int = Field(1000, gt=0)
    encryption_key: Optional[str] = None
    certificate: Optional[str] = None
    tenant_id: str = "default"
    created_by: Optional[str] = None

    @model_validator(mode="after")
    def _limits(self):
        if self.rate_limit_per_min > self.rate_limit_per_hour:
            raise ValueError("rate_limit_per_min must not exceed rate_limit_per_hour")
        return self


class FieldValidationRules(BaseModel):
    """TransformationRule.validation_rules."""
    required: bool = False
    type: Optional[Literal["string", "integer", "number", "boolean", "list", "object"]] = None
    pattern: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    allowed: Optional[List[Any]] = None
    fatal: bool = False  # fatal failures never fall back to default_value


class QualityRules(BaseModel):
    model_config = ConfigDict(extra="allow")

    required_fields: List[str] = Field(default_factory=list)
    pattern: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None
    allowed: Optional[List[Any]] = None
    type: Optional[str] = None
    key_fields: List[str] = Field(default_factory=list)
    max_age_seconds: Optional[int] = None
    timestamp_field: Optional[str] = None
    expected: Optional[Dict[str, Any]] = None  # ACCURACY: field -> expected value
    equal_fields: List[str] = Field(default_factory=list)  # CONSISTENCY
    pass_threshold: Optional[float] = Field(None, ge=0, le=1)
    warn_threshold: Optional[float] = Field(None, ge=0, le=1)


class QualityCheckDefinition(BaseModel):
    name: str
    check_type: QualityCheckType
    data_source: str
    field_name: Optional[str] = None
    rules: QualityRules = Field(default_factory=QualityRules)
    severity: Severity = Severity.MEDIUM
    enabled: bool = True


class PolicyScope(BaseModel):
    """Empty lists match everything."""
    components: List[str] = Field(default_factory=list)
    actions: List[str] = Field(default_factory=list)
    connectors: List[str] = Field(default_factory=list)
    event_types: List[str] = Field(default_factory=list)
    sources: List[str] = Field(default_factory=list)


class PolicyCondition(BaseModel):
    field: str
    op: Literal["eq", "ne", "in", "not_in", "contains", "exists", "missing", "gt", "gte", "lt", "lte", "regex"] = "eq"
    value: Any = None


class PolicyRules(BaseModel):
    match: Literal["all", "any"] = "all"
    conditions: List[PolicyCondition] = Field(default_factory=list)


class PolicyDefinition(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    description: Optional[str] = None
    policy_type: PolicyType = PolicyType.DATA_GOVERNANCE
    scope: PolicyScope = Field(default_factory=PolicyScope)
    rules: PolicyRules = Field(default_factory=PolicyRules)
    actions: Optional[Dict[str, Any]] = None
    enabled: bool = True
    priority: int = 0
    enforcement_mode: EnforcementMode = EnforcementMode.ADVISORY
    violation_action: Optional[str] = None


class EventIn(BaseModel):
    """Inbound event envelope (webhooks, adapters, internal producers)."""
    event_type: str = Field(min_length=1, max_length=128)
    source: str = Field(min_length=1, max_length=128)
    payload: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = Field(None, max_length=64)
    event_category: Optional[str] = None
    connector_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    max_retries: Optional[int] = Field(None, ge=0)
