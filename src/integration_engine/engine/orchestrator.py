"""Sync job scheduling and execution.

Job lifecycle: PENDING -> RUNNING -> COMPLETED | FAILED | CANCELLED | TIMEOUT, and
PENDING -> CANCELLED before a worker claims it.

Jobs for different connectors run in a worker pool; jobs for one connector run one at a
time (in-process claim set plus a guarded UPDATE that refuses a second RUNNING row).
Queue order is trigger priority, then FIFO. Token buckets per connector defer jobs that
would exceed the connector's rate limits.
"""
from __future__ import annotations
import hashlib
import json
import logging
import random
import threading
import uuid
from collections import Counter as TallyCounter, OrderedDict
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from sqlalchemy import exists
from sqlalchemy.orm import aliased
from prometheus_client import Counter, Histogram, Gauge
from integration_engine.clock import Clock, utcnow
from integration_engine.config import get_settings, parse_timeout_overrides
from integration_engine.connectors.base import RawRecord
from integration_engine.errors import (
    FatalAdapterError, NotFoundError, InvalidConfigError, InvalidTransitionError, JobCancelledError,
    JobTimeoutError, IntegrationError,
)
from integration_engine.infrastructure.circuit_breaker import BreakerRegistry, CircuitConfig
from integration_engine.infrastructure.rate_limit import ConnectorRateLimiter
from integration_engine.infrastructure.retry import RetryConfig, backoff_delay, adapter_retrying
from integration_engine.infrastructure.storage import Storage
from integration_engine.models.enums import (
    JobStatus, JobType, TriggerType, HealthStatus, ConnectorStatus, EventCategory, EventStatus,
    JOB_TRANSITIONS, RETRYABLE_JOB_STATUSES, TRIGGER_PRIORITY,
)
from integration_engine.models.tables import SyncJob, Connector

logger = logging.getLogger(__name__)

SYNC_JOBS = Counter('integration_sync_jobs_total', 'Sync jobs by final status', ['job_type', 'status'])
SYNC_DURATION = Histogram('integration_sync_job_seconds', 'Sync job wall time', ['job_type'], buckets=(0.1, 0.5, 1, 5, 15, 60, 300, 900, 1800))
SYNC_RUNNING = Gauge('integration_sync_jobs_running', 'Jobs currently claimed by this process')
SYNC_RETRIES = Counter('integration_sync_retries_total', 'Sync jobs rescheduled after failure', ['reason'])

_FATAL = (FatalAdapterError, NotFoundError, InvalidConfigError)
_TERMINAL = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMEOUT)


def record_correlation_id(connector_id: str, record: RawRecord) -> str:
    """One correlation id per observed change of an entity.

    Re-syncing an unchanged record yields the same id, so the pipeline completes it as a
    duplicate; a new `changed_at` or new content yields a new id and flows through.
    """
    version = record.changed_at.isoformat() if record.changed_at is not None else json.dumps(
        {"data": record.data, "deleted": record.deleted}, sort_keys=True, default=str)
    content = f"{connector_id}:{record.external_id}:{version}"
    return "sync:" + hashlib.sha256(content.encode()).hexdigest()[:40]


def _chunks(items: List[Any], size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


class SyncOrchestrator:
    def __init__(self, storage: Storage, registry, pipeline, identity, adapters, quality=None, metrics=None,
                 breakers: BreakerRegistry | None = None, rate_limiter: ConnectorRateLimiter | None = None,
                 clock: Clock = utcnow, pool_size: int | None = None, batch_size: int | None = None,
                 max_retries: int | None = None, rng: random.Random | None = None):
        s = get_settings()
        self.storage = storage
        self.registry = registry
        self.pipeline = pipeline
        self.identity = identity
        self.adapters = adapters
        self.quality = quality
        self.metrics = metrics
        self.breakers = breakers or BreakerRegistry(CircuitConfig(
            failure_threshold=s.circuit_failure_threshold, recovery_timeout=s.circuit_recovery_timeout_seconds,
        ))
        self.rate_limiter = rate_limiter or ConnectorRateLimiter()
        self.clock = clock
        self.pool_size = pool_size or s.sync_worker_pool_size
        self.batch_size = batch_size or s.sync_batch_size
        self.max_retries = s.sync_max_retries if max_retries is None else max_retries
        self.backoff_cap = s.sync_backoff_cap_seconds
        self.backoff_jitter = s.sync_backoff_jitter
        self.default_timeout = s.sync_timeout_seconds
        self.timeout_overrides = parse_timeout_overrides(s.sync_timeout_overrides)
        self.health_failure_threshold = s.health_failure_threshold
        self.adapter_retry = RetryConfig(
            max_attempts=s.adapter_max_attempts, base_delay=s.adapter_backoff_base_seconds,
            max_delay=s.adapter_backoff_max_seconds,
        )
        self.rng = rng or random.Random()
        self.jobs = storage.repo(SyncJob)
        self._claims: set[str] = set()
        self._claim_lock = threading.Lock()
        self._cancel_events: Dict[int, threading.Event] = {}

    # Queue

    def get(self, job_id: int) -> SyncJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"sync job {job_id} not found")
        return job

    def trigger(self, connector_id: str, job_type: JobType = JobType.INCREMENTAL,
                trigger_type: TriggerType = TriggerType.MANUAL, triggered_by: str | None = None,
                options: Dict[str, Any] | None = None, scheduled_at: datetime | None = None) -> SyncJob:
        connector = self.registry.get(connector_id)
        if connector.status == ConnectorStatus.DEPRECATED:
            raise InvalidConfigError(f"connector {connector.name} is deprecated")
        job = self.jobs.add(SyncJob(
            connector_id=connector.id,
            job_type=JobType(job_type),
            strategy=connector.sync_strategy,
            options=options or {},
            status=JobStatus.PENDING,
            scheduled_at=scheduled_at,
            attempt=1,
            correlation_id=str(uuid.uuid4()),
            trigger_type=TriggerType(trigger_type),
            triggered_by=triggered_by,
            created_at=self.clock(),
        ))
        logger.info("sync job queued", extra={"job_id": job.id, "connector_id": connector.id, "job_type": job.job_type.value, "trigger": job.trigger_type.value})
        return job

    def schedule_due(self, now: Optional[datetime] = None) -> List[SyncJob]:
        """Queue one SCHEDULED job per due connector that has nothing pending or running."""
        now = now or self.clock()
        created: List[SyncJob] = []
        for connector in self.registry.list_due(now):
            open_jobs = self.jobs.count(SyncJob.connector_id == connector.id,
                                        SyncJob.status.in_((JobStatus.PENDING, JobStatus.RUNNING)))
            self.registry.schedule_next(connector.id, now)
            if open_jobs:
                continue
            created.append(self.trigger(connector.id, JobType.INCREMENTAL, TriggerType.SCHEDULED, "scheduler"))
        return created

    def pending_queue(self, now: Optional[datetime] = None) -> List[SyncJob]:
        now = now or self.clock()
        jobs = self.jobs.list(SyncJob.status == JobStatus.PENDING)
        ready = [j for j in jobs if j.scheduled_at is None or j.scheduled_at <= now]
        return sorted(ready, key=lambda j: (TRIGGER_PRIORITY[j.trigger_type], j.created_at, j.id))

    def run_pending(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Run every ready job: connectors in parallel, each connector's jobs in queue order."""
        now = now or self.clock()
        by_connector: "OrderedDict[str, List[SyncJob]]" = OrderedDict()
        for job in self.pending_queue(now):
            by_connector.setdefault(job.connector_id, []).append(job)
        tally: TallyCounter = TallyCounter()
        if not by_connector:
            return {"ran": 0, "deferred": 0}
        with ThreadPoolExecutor(max_workers=max(1, min(self.pool_size, len(by_connector)))) as pool:
            for part in pool.map(lambda jobs: self._drain_connector(jobs, now), by_connector.values()):
                tally.update(part)
        summary = {k: v for k, v in tally.items()}
        summary["ran"] = sum(v for k, v in tally.items() if k not in ("deferred", "skipped"))
        summary.setdefault("deferred", 0)
        return summary

    def _drain_connector(self, jobs: List[SyncJob], now: datetime) -> List[str]:
        outcomes: List[str] = []
        for i, job in enumerate(jobs):
            try:
                result = self.run_job(job.id, now=now)
            except InvalidTransitionError:
                outcomes.append("skipped")
                continue
            if result.status == JobStatus.PENDING:
                if result.scheduled_at is None or result.scheduled_at <= now:
                    # connector busy elsewhere; leave the queue for the next pass
                    outcomes.extend("skipped" for _ in jobs[i:])
                    break
                # out of tokens: the rest of this connector's queue waits too
                outcomes.append("deferred")
                for rest in jobs[i + 1:]:
                    self._defer(rest, result.scheduled_at)
                    outcomes.append("deferred")
                break
            outcomes.append(result.status.value.lower())
        return outcomes

    def _defer(self, job: SyncJob, until: datetime) -> int:
        return self.jobs.update_where(
            SyncJob.id == job.id,
            SyncJob.status == JobStatus.PENDING,
            scheduled_at=until,
            deferrals=SyncJob.deferrals + 1,
        )

    # Execution

    def run_job(self, job_id: int, now: Optional[datetime] = None) -> SyncJob:
        """Claim and execute one PENDING job. Returns the job in its resulting state.

        A job whose connector is busy is returned unchanged without spending a rate token.
        A job over the connector's rate budget stays PENDING with scheduled_at moved to the
        next token time.
        """
        now = now or self.clock()
        job = self.get(job_id)
        if job.status != JobStatus.PENDING:
            raise InvalidTransitionError("sync_job", job.status, JobStatus.RUNNING)
        try:
            connector = self.registry.get(job.connector_id)
        except NotFoundError as e:
            return self._transition(self._transition(job, JobStatus.RUNNING, started_at=now), JobStatus.FAILED,
                                    completed_at=now, duration_ms=0, error_message=str(e), error_details=e.details())
        if not self._reserve(connector.id):
            return self.get(job.id)
        try:
            if self._busy(connector.id):
                return self.get(job.id)
            ok, retry_at = self.rate_limiter.try_acquire(connector.id, connector.rate_limit_per_min,
                                                         connector.rate_limit_per_hour, now)
            if not ok:
                self._defer(job, retry_at)
                logger.info("sync job deferred by rate limit", extra={"job_id": job.id, "connector_id": connector.id, "until": retry_at.isoformat()})
                return self.get(job.id)
            if not self._claim(job, now):
                # another process won the row
                self.rate_limiter.refund(connector.id)
                return self.get(job.id)
            SYNC_RUNNING.inc()
            try:
                return self._execute(self.get(job.id), connector)
            finally:
                SYNC_RUNNING.dec()
        finally:
            self._release(connector.id)

    def _reserve(self, connector_id: str) -> bool:
        with self._claim_lock:
            if connector_id in self._claims:
                return False
            self._claims.add(connector_id)
            return True

    def _release(self, connector_id: str):
        with self._claim_lock:
            self._claims.discard(connector_id)

    def _busy(self, connector_id: str) -> bool:
        return self.jobs.count(SyncJob.connector_id == connector_id, SyncJob.status == JobStatus.RUNNING) > 0

    def _claim(self, job: SyncJob, now: datetime) -> bool:
        """Guarded PENDING -> RUNNING that refuses a second RUNNING row for the connector."""
        other = aliased(SyncJob)
        busy = exists().where(other.connector_id == job.connector_id, other.status == JobStatus.RUNNING)
        return self.jobs.update_where(
            SyncJob.id == job.id,
            SyncJob.status == JobStatus.PENDING,
            ~busy,
            status=JobStatus.RUNNING,
            started_at=now,
        ) > 0

    def _transition(self, job: SyncJob, target: JobStatus, **values: Any) -> SyncJob:
        if target not in JOB_TRANSITIONS[job.status]:
            raise InvalidTransitionError("sync_job", job.status, target)
        changed = self.jobs.update_where(SyncJob.id == job.id, SyncJob.status == job.status, status=target, **values)
        if not changed:
            raise InvalidTransitionError("sync_job", job.status, target)
        return self.get(job.id)

    def timeout_for(self, job: SyncJob) -> int:
        return self.timeout_overrides.get(job.strategy.value, self.default_timeout)

    def _execute(self, job: SyncJob, connector: Connector) -> SyncJob:
        cancel = threading.Event()
        self._cancel_events[job.id] = cancel
        if job.cancel_requested:
            cancel.set()
        start = self.clock()
        deadline = start + timedelta(seconds=self.timeout_for(job))
        counters = {"records_processed": 0, "records_succeeded": 0, "records_failed": 0}
        try:
            adapter = self.adapters.for_connector(connector)
            if job.job_type == JobType.HEALTH_CHECK:
                self._health_probe(connector, adapter)
            else:
                records = self._fetch(job, connector, adapter, cancel)
                for batch in _chunks(records, self.batch_size):
                    self._checkpoint(job, cancel, deadline)
                    ok, failed = self._process_batch(job, connector, batch)
                    counters["records_succeeded"] += ok
                    counters["records_failed"] += failed
                    counters["records_processed"] = counters["records_succeeded"] + counters["records_failed"]
                    self.jobs.update_where(SyncJob.id == job.id, SyncJob.status == JobStatus.RUNNING, **counters)
                self._checkpoint(job, cancel, deadline)
        except JobCancelledError as e:
            return self._finish(job, connector, JobStatus.CANCELLED, start, counters, e)
        except JobTimeoutError as e:
            return self._finish(job, connector, JobStatus.TIMEOUT, start, counters, e)
        except _FATAL as e:
            return self._finish(job, connector, JobStatus.FAILED, start, counters, e, fatal=True)
        except Exception as e:
            logger.exception("sync job failed", extra={"job_id": job.id, "connector_id": connector.id})
            return self._finish(job, connector, JobStatus.FAILED, start, counters, e)
        finally:
            self._cancel_events.pop(job.id, None)
        return self._finish(job, connector, JobStatus.COMPLETED, start, counters)

    def _checkpoint(self, job: SyncJob, cancel: threading.Event, deadline: datetime):
        if not cancel.is_set():
            fresh = self.jobs.get(job.id)
            if fresh is not None and fresh.cancel_requested:
                cancel.set()
        if cancel.is_set():
            raise JobCancelledError(f"sync job {job.id} cancelled")
        if self.clock() > deadline:
            raise JobTimeoutError(f"sync job {job.id} exceeded {self.timeout_for(job)}s")

    def _fetch(self, job: SyncJob, connector: Connector, adapter, cancel: threading.Event) -> List[RawRecord]:
        since: Optional[datetime] = None
        if job.job_type != JobType.FULL:
            since = connector.last_sync
            if job.options.get("since"):
                since = datetime.fromisoformat(job.options["since"])
        breaker = self.breakers.get(connector.id)
        for attempt in adapter_retrying(self.adapter_retry, cancel):
            with attempt:
                return breaker.call(adapter.instrumented, "fetch", lambda: adapter.fetch_changes(since))
        return []

    def _health_probe(self, connector: Connector, adapter) -> HealthStatus:
        breaker = self.breakers.get(connector.id)
        status = breaker.call(adapter.instrumented, "health", adapter.health)
        self.registry.update_health(connector.id, status)
        return status

    def _process_batch(self, job: SyncJob, connector: Connector, batch: List[RawRecord]) -> tuple[int, int]:
        if job.job_type == JobType.VALIDATION:
            if self.quality is None:
                return len(batch), 0
            _rows, failed = self.quality.validate_batch(connector.name, [r.data for r in batch], job.correlation_id)
            return len(batch) - len(failed), len(failed)
        ok = 0
        for record in batch:
            if self._process_record(job, connector, record):
                ok += 1
        return ok, len(batch) - ok

    def _process_record(self, job: SyncJob, connector: Connector, record: RawRecord) -> bool:
        metadata: Dict[str, Any] = {
            "job_id": job.id,
            "job_correlation_id": job.correlation_id,
            "external_id": record.external_id,
            "deleted": record.deleted,
        }
        if job.options.get("target_connector_id"):
            metadata["target_connector_id"] = job.options["target_connector_id"]
        if record.email and self.identity is not None:
            try:
                mapping = self.identity.resolve(connector.provider, record.external_id, record.email, connector.id)
            except InvalidConfigError as e:
                logger.warning("record identity rejected", extra={"job_id": job.id, "external_id": record.external_id, "reason": str(e)})
                return False
            metadata["nova_user_id"] = mapping.nova_user_id
            metadata["identity_status"] = mapping.status.value
        event = self.pipeline.ingest({
            "event_type": f"{record.record_type}.{'deleted' if record.deleted else 'changed'}",
            "event_category": EventCategory.SYNC_EVENT.value,
            "source": connector.name,
            "payload": record.data,
            "metadata": metadata,
            "correlation_id": record_correlation_id(connector.id, record),
            "connector_id": connector.id,
        })
        return self.pipeline.process(event.id).status == EventStatus.COMPLETED

    def _finish(self, job: SyncJob, connector: Connector, status: JobStatus, start: datetime,
                counters: Dict[str, int], error: Exception | None = None, fatal: bool = False) -> SyncJob:
        now = self.clock()
        duration_ms = int(max(0.0, (now - start).total_seconds()) * 1000)
        values: Dict[str, Any] = {**counters, "completed_at": now, "duration_ms": duration_ms}
        if error is not None:
            values["error_message"] = str(error)[:1024]
            details = error.details() if isinstance(error, IntegrationError) else {"type": type(error).__name__, "message": str(error)}
            values["error_details"] = {**details, "fatal": fatal}
        done = self._transition(job, status, **values)
        SYNC_JOBS.labels(job.job_type.value, status.value).inc()
        SYNC_DURATION.labels(job.job_type.value).observe(duration_ms / 1000)
        if self.metrics is not None:
            self.metrics.observe(connector.id, "sync_duration_ms", duration_ms, unit="ms", dimensions={"status": status.value})
            if counters["records_processed"]:
                self.metrics.increment(connector.id, "records_processed", counters["records_processed"])
        if status == JobStatus.COMPLETED:
            if job.job_type != JobType.HEALTH_CHECK:
                self.registry.mark_synced(connector.id, start)
                self.registry.update_health(connector.id, HealthStatus.HEALTHY)
            logger.info("sync job completed", extra={"job_id": job.id, "connector_id": connector.id, **counters})
        elif status in (JobStatus.FAILED, JobStatus.TIMEOUT):
            self._record_failure(connector)
            if not fatal:
                self._schedule_retry(done, connector)
        return done

    def _record_failure(self, connector: Connector):
        streak = 0
        recent = self.jobs.list(
            SyncJob.connector_id == connector.id,
            SyncJob.status.in_(_TERMINAL),
            order_by=(SyncJob.completed_at.desc(), SyncJob.id.desc()),
            limit=self.health_failure_threshold,
        )
        for j in recent:
            if j.status == JobStatus.COMPLETED:
                break
            streak += 1
        health = HealthStatus.UNHEALTHY if streak >= self.health_failure_threshold else HealthStatus.DEGRADED
        self.registry.update_health(connector.id, health)

    def _schedule_retry(self, job: SyncJob, connector: Connector) -> Optional[SyncJob]:
        if job.status not in RETRYABLE_JOB_STATUSES or job.attempt > self.max_retries:
            return None
        if job.job_type == JobType.HEALTH_CHECK:
            # the next sweep probes again
            return None
        cfg = RetryConfig(base_delay=float(connector.sync_interval), max_delay=float(self.backoff_cap),
                          jitter=self.backoff_jitter)
        delay = backoff_delay(job.attempt, cfg, self.rng)
        retry = self.jobs.add(SyncJob(
            connector_id=job.connector_id,
            job_type=job.job_type,
            strategy=job.strategy,
            options=job.options,
            status=JobStatus.PENDING,
            scheduled_at=self.clock() + timedelta(seconds=delay),
            attempt=job.attempt + 1,
            retry_of=job.id,
            correlation_id=job.correlation_id,
            trigger_type=job.trigger_type,
            triggered_by="retry",
            created_at=self.clock(),
        ))
        SYNC_RETRIES.labels(job.status.value).inc()
        logger.info("sync job rescheduled", extra={"job_id": job.id, "retry_job_id": retry.id, "attempt": retry.attempt, "delay_s": round(delay, 1)})
        return retry

    # Operator actions

    def cancel(self, job_id: int, actor: str | None = None) -> SyncJob:
        """PENDING jobs are cancelled at once; RUNNING jobs stop at the next batch boundary."""
        job = self.get(job_id)
        if job.status == JobStatus.PENDING:
            logger.info("sync job cancelled", extra={"job_id": job_id, "by": actor})
            return self._transition(job, JobStatus.CANCELLED, cancel_requested=True, completed_at=self.clock(),
                                    error_message=f"cancelled by {actor or 'operator'}")
        if job.status == JobStatus.RUNNING:
            self.jobs.update_where(SyncJob.id == job_id, SyncJob.status == JobStatus.RUNNING, cancel_requested=True)
            ev = self._cancel_events.get(job_id)
            if ev is not None:
                ev.set()
            logger.info("sync job cancellation requested", extra={"job_id": job_id, "by": actor})
            return self.get(job_id)
        raise InvalidTransitionError("sync_job", job.status, JobStatus.CANCELLED)

    def check_health(self, connector_id: str, triggered_by: str | None = None) -> SyncJob:
        """Run a HEALTH_CHECK job right away."""
        job = self.trigger(connector_id, JobType.HEALTH_CHECK, TriggerType.MANUAL, triggered_by)
        return self.run_job(job.id)

    def health_sweep(self, now: Optional[datetime] = None) -> List[SyncJob]:
        """Queue a HEALTH_CHECK for every active connector without one already open."""
        now = now or self.clock()
        out: List[SyncJob] = []
        for connector in self.registry.connectors.list(Connector.status == ConnectorStatus.ACTIVE):
            open_checks = self.jobs.count(SyncJob.connector_id == connector.id, SyncJob.job_type == JobType.HEALTH_CHECK,
                                          SyncJob.status.in_((JobStatus.PENDING, JobStatus.RUNNING)))
            if not open_checks:
                out.append(self.trigger(connector.id, JobType.HEALTH_CHECK, TriggerType.SCHEDULED, "health_sweep"))
        return out

    def running(self) -> List[SyncJob]:
        return self.jobs.list(SyncJob.status == JobStatus.RUNNING)
