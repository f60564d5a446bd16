from __future__ import annotations
from enum import Enum


class ConnectorType(str, Enum):
    IDENTITY_PROVIDER = "IDENTITY_PROVIDER"
    DEVICE_MANAGEMENT = "DEVICE_MANAGEMENT"
    SECURITY_PLATFORM = "SECURITY_PLATFORM"
    COLLABORATION = "COLLABORATION"
    HRIS = "HRIS"
    MONITORING = "MONITORING"
    PROJECT_MANAGEMENT = "PROJECT_MANAGEMENT"
    AI_PLATFORM = "AI_PLATFORM"
    DATA_INTELLIGENCE = "DATA_INTELLIGENCE"


class ConnectorStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ERROR = "ERROR"
    MAINTENANCE = "MAINTENANCE"
    DEPRECATED = "DEPRECATED"


class HealthStatus(str, Enum):
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    UNHEALTHY = "UNHEALTHY"
    UNKNOWN = "UNKNOWN"


class SyncStrategy(str, Enum):
    POLLING = "POLLING"
    WEBHOOK = "WEBHOOK"
    EVENT_DRIVEN = "EVENT_DRIVEN"
    BATCH = "BATCH"


class JobType(str, Enum):
    FULL = "FULL"
    INCREMENTAL = "INCREMENTAL"
    DELTA = "DELTA"
    VALIDATION = "VALIDATION"
    HEALTH_CHECK = "HEALTH_CHECK"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"


class TriggerType(str, Enum):
    SCHEDULED = "SCHEDULED"
    MANUAL = "MANUAL"
    WEBHOOK = "WEBHOOK"
    EVENT_DRIVEN = "EVENT_DRIVEN"
    DEPENDENCY = "DEPENDENCY"


# Lower sorts first when the orchestrator picks the next job.
TRIGGER_PRIORITY: dict[TriggerType, int] = {
    TriggerType.MANUAL: 0,
    TriggerType.WEBHOOK: 0,
    TriggerType.EVENT_DRIVEN: 1,
    TriggerType.DEPENDENCY: 2,
    TriggerType.SCHEDULED: 3,
}


JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.TIMEOUT}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
    JobStatus.TIMEOUT: frozenset(),
}

RETRYABLE_JOB_STATUSES = frozenset({JobStatus.FAILED, JobStatus.TIMEOUT})


class EventCategory(str, Enum):
    USER_EVENT = "USER_EVENT"
    DEVICE_EVENT = "DEVICE_EVENT"
    SECURITY_EVENT = "SECURITY_EVENT"
    COLLABORATION_EVENT = "COLLABORATION_EVENT"
    SYNC_EVENT = "SYNC_EVENT"
    SYSTEM_EVENT = "SYSTEM_EVENT"
    ACTION = "ACTION"


class EventStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    RETRY = "RETRY"
    DEAD_LETTER = "DEAD_LETTER"
    QUARANTINED = "QUARANTINED"


EVENT_TRANSITIONS: dict[EventStatus, frozenset[EventStatus]] = {
    EventStatus.PENDING: frozenset({EventStatus.PROCESSING, EventStatus.FAILED, EventStatus.DEAD_LETTER}),
    EventStatus.PROCESSING: frozenset({
        EventStatus.COMPLETED, EventStatus.FAILED, EventStatus.RETRY,
        EventStatus.DEAD_LETTER, EventStatus.QUARANTINED,
    }),
    EventStatus.RETRY: frozenset({EventStatus.PENDING, EventStatus.DEAD_LETTER}),
    EventStatus.COMPLETED: frozenset(),
    # manual replay is the only way out of these
    EventStatus.FAILED: frozenset({EventStatus.DEAD_LETTER}),
    EventStatus.DEAD_LETTER: frozenset(),
    EventStatus.QUARANTINED: frozenset({EventStatus.DEAD_LETTER}),
}

REPLAYABLE_EVENT_STATUSES = frozenset({EventStatus.DEAD_LETTER, EventStatus.FAILED, EventStatus.QUARANTINED})


class IdentityStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    CONFLICTED = "CONFLICTED"
    PENDING_REVIEW = "PENDING_REVIEW"


class TransformType(str, Enum):
    DIRECT = "DIRECT"
    FORMAT_CONVERSION = "FORMAT_CONVERSION"
    ENRICHMENT = "ENRICHMENT"
    AGGREGATION = "AGGREGATION"
    VALIDATION = "VALIDATION"
    CUSTOM = "CUSTOM"


class MetricType(str, Enum):
    COUNTER = "COUNTER"
    GAUGE = "GAUGE"
    HISTOGRAM = "HISTOGRAM"
    SUMMARY = "SUMMARY"


class QualityCheckType(str, Enum):
    COMPLETENESS = "COMPLETENESS"
    ACCURACY = "ACCURACY"
    CONSISTENCY = "CONSISTENCY"
    VALIDITY = "VALIDITY"
    UNIQUENESS = "UNIQUENESS"
    TIMELINESS = "TIMELINESS"


class QualityStatus(str, Enum):
    PASSED = "PASSED"
    FAILED = "FAILED"
    WARNING = "WARNING"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class PolicyType(str, Enum):
    DATA_GOVERNANCE = "DATA_GOVERNANCE"
    SECURITY = "SECURITY"
    COMPLIANCE = "COMPLIANCE"
    BUSINESS = "BUSINESS"
    TECHNICAL = "TECHNICAL"


class EnforcementMode(str, Enum):
    ADVISORY = "ADVISORY"
    BLOCKING = "BLOCKING"
    QUARANTINE = "QUARANTINE"


class PolicyOutcome(str, Enum):
    ALLOW = "ALLOW"
    BLOCK = "BLOCK"
    QUARANTINE = "QUARANTINE"


ENFORCEMENT_OUTCOME: dict[EnforcementMode, PolicyOutcome] = {
    EnforcementMode.ADVISORY: PolicyOutcome.ALLOW,
    EnforcementMode.BLOCKING: PolicyOutcome.BLOCK,
    EnforcementMode.QUARANTINE: PolicyOutcome.QUARANTINE,
}

# higher is more restrictive
OUTCOME_RESTRICTIVENESS: dict[PolicyOutcome, int] = {
    PolicyOutcome.ALLOW: 0,
    PolicyOutcome.QUARANTINE: 1,
    PolicyOutcome.BLOCK: 2,
}
