"""Event ingestion and processing.

Lifecycle: PENDING -> PROCESSING -> COMPLETED | FAILED | RETRY | DEAD_LETTER | QUARANTINED,
with RETRY -> PENDING once the backoff has elapsed.

Stages run in order and stop at the first hard failure:
transformation -> quality -> policy -> delivery (push_change on the target connector).

Events sharing a correlation id are processed one at a time in arrival order; distinct
correlation ids run in parallel. Arrival order is insert order, not the producer timestamp.
A correlation id completes at most once: later events carrying it complete as duplicates
of the first result without side effects, however long ago that was.
"""
from __future__ import annotations
import hashlib
import json
import logging
import random
import uuid
from collections import Counter as TallyCounter, OrderedDict
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from pydantic import ValidationError
from sqlalchemy import delete
from prometheus_client import Counter, Histogram
from integration_engine.clock import Clock, utcnow, naive_utc
from integration_engine.config import get_settings
from integration_engine.errors import (
    ValidationFailure, PolicyViolationError, FatalAdapterError, TransientAdapterError, InvalidTransitionError,
    NotFoundError, InvalidConfigError, DuplicateRecordError, IntegrationError,
)
from integration_engine.infrastructure.circuit_breaker import BreakerRegistry
from integration_engine.infrastructure.retry import RetryConfig, backoff_delay, KeyedLock
from integration_engine.infrastructure.storage import Storage
from integration_engine.models.enums import (
    EventStatus, EventCategory, PolicyOutcome, EVENT_TRANSITIONS, REPLAYABLE_EVENT_STATUSES,
)
from integration_engine.models.tables import IntegrationEvent, ProcessingRecord
from integration_engine.validation.schemas import EventIn

logger = logging.getLogger(__name__)

EVENTS_INGESTED = Counter('integration_events_ingested_total', 'Events accepted into the pipeline', ['category'])
EVENTS_FINISHED = Counter('integration_events_finished_total', 'Event processing outcomes', ['status'])
EVENTS_DEDUPED = Counter('integration_events_deduplicated_total', 'Events completed from a prior result')
EVENT_LATENCY = Histogram('integration_event_processing_seconds', 'Event processing latency', buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, 30))

PROCESS_ACTION = "event.process"
# fatal for this event only; retrying cannot help
_FATAL = (ValidationFailure, PolicyViolationError, FatalAdapterError, NotFoundError, InvalidConfigError)
_OPEN = (EventStatus.PENDING, EventStatus.RETRY, EventStatus.PROCESSING)


def event_fingerprint(event_type: str, source: str, payload: Dict[str, Any]) -> str:
    content = json.dumps({"event_type": event_type, "source": source, "payload": payload}, sort_keys=True, default=str)
    return hashlib.sha256(content.encode()).hexdigest()[:32]


def _jsonable(obj: Any) -> Any:
    return json.loads(json.dumps(obj, default=str))


class _Quarantined(Exception):
    def __init__(self, decision):
        super().__init__(f"quarantined by policy {decision.policy_name}")
        self.decision = decision


class EventPipeline:
    def __init__(self, storage: Storage, transformation, quality, policy, adapters=None, registry=None,
                 metrics=None, breakers: BreakerRegistry | None = None, clock: Clock = utcnow,
                 max_retries: int | None = None, retry_config: RetryConfig | None = None,
                 pool_size: int | None = None, idempotency_ttl_hours: int | None = None,
                 rng: random.Random | None = None):
        s = get_settings()
        self.storage = storage
        self.transformation = transformation
        self.quality = quality
        self.policy = policy
        self.adapters = adapters
        self.registry = registry
        self.metrics = metrics
        self.breakers = breakers or BreakerRegistry()
        self.clock = clock
        self.max_retries = s.event_max_retries if max_retries is None else max_retries
        self.retry_config = retry_config or RetryConfig(
            max_attempts=self.max_retries, base_delay=s.event_retry_base_seconds, max_delay=s.event_retry_cap_seconds,
        )
        self.pool_size = pool_size or s.event_worker_pool_size
        self.batch_limit = s.event_batch_limit
        self.ttl = timedelta(hours=idempotency_ttl_hours if idempotency_ttl_hours is not None else s.idempotency_ttl_hours)
        self.rng = rng or random.Random()
        self.events = storage.repo(IntegrationEvent)
        self.records = storage.repo(ProcessingRecord)
        self._locks = KeyedLock()

    # Ingress

    def ingest(self, event: EventIn | Dict[str, Any]) -> IntegrationEvent:
        try:
            e = event if isinstance(event, EventIn) else EventIn.model_validate(event)
        except ValidationError as exc:
            raise InvalidConfigError("invalid event", [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]) from exc
        category = EventCategory(e.event_category) if e.event_category else EventCategory.SYSTEM_EVENT
        row = self.events.add(IntegrationEvent(
            event_type=e.event_type,
            event_category=category,
            source=e.source,
            payload=_jsonable(e.payload),
            event_metadata=_jsonable(e.metadata),
            correlation_id=e.correlation_id or str(uuid.uuid4()),
            fingerprint=event_fingerprint(e.event_type, e.source, e.payload),
            status=EventStatus.PENDING,
            retry_count=0,
            max_retries=self.max_retries if e.max_retries is None else e.max_retries,
            connector_id=e.connector_id,
            timestamp=naive_utc(e.timestamp) or self.clock(),
            expires_at=naive_utc(e.expires_at),
        ))
        EVENTS_INGESTED.labels(category.value).inc()
        return row

    def get(self, event_id: int) -> IntegrationEvent:
        ev = self.events.get(event_id)
        if ev is None:
            raise NotFoundError(f"event {event_id} not found")
        return ev

    # State changes

    def _transition(self, event: IntegrationEvent, target: EventStatus, **values: Any) -> IntegrationEvent:
        if target not in EVENT_TRANSITIONS[event.status]:
            raise InvalidTransitionError("event", event.status, target)
        changed = self.events.update_where(
            IntegrationEvent.id == event.id,
            IntegrationEvent.status == event.status,
            status=target,
            **values,
        )
        if not changed:
            raise InvalidTransitionError("event", event.status, target)
        return self.get(event.id)

    # Processing

    def process(self, event_id: int) -> IntegrationEvent:
        """Process one event if it is ready. Returns the event in its resulting state.

        Events that are not ready (waiting on backoff or on an earlier event with the same
        correlation id) are returned unchanged.
        """
        event = self.get(event_id)
        with self._locks.hold(event.correlation_id):
            return self._process_locked(self.get(event_id))

    def _process_locked(self, event: IntegrationEvent) -> IntegrationEvent:
        now = self.clock()
        if event.status == EventStatus.RETRY and event.next_attempt_at is not None and event.next_attempt_at <= now:
            event = self._transition(event, EventStatus.PENDING)
        if event.status != EventStatus.PENDING:
            return event
        if event.expires_at is not None and event.expires_at <= now:
            EVENTS_FINISHED.labels(EventStatus.FAILED.value).inc()
            logger.info("event expired", extra={"event_id": event.id, "correlation_id": event.correlation_id})
            return self._transition(event, EventStatus.FAILED, error_message="expired",
                                    error_details={"type": "expired", "expires_at": event.expires_at.isoformat()},
                                    processed_at=now)
        if self._blocked_by_earlier(event):
            return event

        prior = self._prior_completion(event)
        event = self._transition(event, EventStatus.PROCESSING)
        if prior is not None:
            prior_id, prior_result = prior
            EVENTS_DEDUPED.inc()
            EVENTS_FINISHED.labels(EventStatus.COMPLETED.value).inc()
            result = {**(prior_result or {}), "duplicate_of": prior_id}
            return self._transition(event, EventStatus.COMPLETED, result=result, processed_at=self.clock())

        start = self.clock()
        try:
            result = self._run_stages(event)
        except _Quarantined as q:
            return self._finish(event, EventStatus.QUARANTINED, error_message=str(q),
                                error_details={"type": "quarantined", "policy": q.decision.as_dict()})
        except _FATAL as e:
            details = e.details() if isinstance(e, IntegrationError) else {"type": type(e).__name__}
            return self._finish(event, EventStatus.FAILED, error_message=str(e)[:1024], error_details=_jsonable(details))
        except Exception as e:
            return self._fail_transient(event, e)
        EVENT_LATENCY.observe(max(0.0, (self.clock() - start).total_seconds()))
        done = self._finish(event, EventStatus.COMPLETED, result=_jsonable(result), error_message=None)
        self._remember(done)
        return done

    def _finish(self, event: IntegrationEvent, status: EventStatus, **values: Any) -> IntegrationEvent:
        EVENTS_FINISHED.labels(status.value).inc()
        if status != EventStatus.COMPLETED:
            logger.warning("event not completed", extra={"event_id": event.id, "status": status.value, "error": values.get("error_message")})
        done = self._transition(event, status, processed_at=self.clock(), **values)
        if self.metrics is not None and event.connector_id:
            self.metrics.increment(event.connector_id, "events_processed", dimensions={"status": status.value})
        return done

    def _fail_transient(self, event: IntegrationEvent, exc: Exception) -> IntegrationEvent:
        attempt = event.retry_count + 1
        details = exc.details() if isinstance(exc, IntegrationError) else {"type": type(exc).__name__, "message": str(exc)}
        details = {**details, "attempt": attempt}
        if attempt < event.max_retries:
            delay = backoff_delay(attempt, self.retry_config, self.rng)
            EVENTS_FINISHED.labels(EventStatus.RETRY.value).inc()
            logger.info("event scheduled for retry", extra={"event_id": event.id, "attempt": attempt, "delay_s": round(delay, 2)})
            return self._transition(event, EventStatus.RETRY, retry_count=attempt,
                                    next_attempt_at=self.clock() + timedelta(seconds=delay),
                                    error_message=str(exc)[:1024], error_details=_jsonable(details))
        # retry_count never exceeds max_retries, even when max_retries is 0
        return self._finish(event, EventStatus.DEAD_LETTER, retry_count=min(attempt, event.max_retries),
                            dead_letter_queue=True, next_attempt_at=None,
                            error_message=str(exc)[:1024], error_details=_jsonable(details))

    def _blocked_by_earlier(self, event: IntegrationEvent) -> bool:
        return self.events.count(
            IntegrationEvent.correlation_id == event.correlation_id,
            IntegrationEvent.id < event.id,
            IntegrationEvent.status.in_(_OPEN),
        ) > 0

    def _prior_completion(self, event: IntegrationEvent) -> Optional[Tuple[int, Optional[Dict[str, Any]]]]:
        """(event id, result) of the first completion for this correlation id, if any.

        processing_records is a result cache; once a row is purged the events table still
        answers, so a correlation id never becomes processable again.
        """
        rec = self.records.find_one(ProcessingRecord.idempotency_key == event.correlation_id)
        if rec is not None and rec.event_id != event.id:
            return rec.event_id, rec.result_data
        done = self.events.list(
            IntegrationEvent.correlation_id == event.correlation_id,
            IntegrationEvent.id != event.id,
            IntegrationEvent.status == EventStatus.COMPLETED,
            order_by=(IntegrationEvent.id,),
            limit=1,
        )
        if not done:
            return None
        first = done[0]
        result = dict(first.result or {})
        origin = result.pop("duplicate_of", first.id)
        return origin, result

    def _remember(self, event: IntegrationEvent):
        now = self.clock()
        try:
            self.records.add(ProcessingRecord(
                idempotency_key=event.correlation_id,
                event_id=event.id,
                status="completed",
                result_data=event.result,
                created_at=now,
                expires_at=now + self.ttl,
            ))
        except DuplicateRecordError:
            logger.debug("processing record already present", extra={"correlation_id": event.correlation_id})

    def _run_stages(self, event: IntegrationEvent) -> Dict[str, Any]:
        payload = dict(event.payload or {})
        metadata = dict(event.event_metadata or {})
        transformed: Dict[str, Any] = {}
        if event.connector_id and self.transformation is not None:
            transformed = self.transformation.transform_record(event.connector_id, payload)
        record = transformed or payload
        result: Dict[str, Any] = {"transformed": transformed}

        if self.quality is not None:
            rows = self.quality.check_event(event.source, [record], event.correlation_id)
            result["quality"] = [{"check": r.check_name, "status": r.status.value, "score": r.score} for r in rows]

        if self.policy is not None:
            context = {
                "component": "event_pipeline",
                "event_type": event.event_type,
                "event_category": event.event_category.value,
                "source": event.source,
                "connector_id": event.connector_id,
                "correlation_id": event.correlation_id,
                "payload": payload,
                "record": record,
                "metadata": metadata,
            }
            decision = self.policy.enforce(PROCESS_ACTION, context)
            if decision.outcome == PolicyOutcome.QUARANTINE:
                raise _Quarantined(decision)
            result["policy"] = decision.as_dict()

        target = metadata.get("target_connector_id")
        if target:
            result["delivery"] = self._deliver(target, event, record)
        return result

    def _deliver(self, target_connector_id: str, event: IntegrationEvent, record: Dict[str, Any]) -> Dict[str, Any]:
        if self.registry is None or self.adapters is None:
            raise FatalAdapterError("delivery requested but no adapters are configured")
        connector = self.registry.get(target_connector_id)
        adapter = self.adapters.for_connector(connector)
        breaker = self.breakers.get(connector.id)
        payload = {**record, "_event_type": event.event_type, "_correlation_id": event.correlation_id}
        ack = breaker.call(adapter.instrumented, "push", lambda: adapter.push_change(payload))
        if not ack.accepted:
            msg = ack.message or "change rejected"
            if ack.details.get("retryable"):
                raise TransientAdapterError(f"{connector.name}: {msg}")
            raise FatalAdapterError(f"{connector.name}: {msg}")
        logger.info("action.executed", extra={"event_id": event.id, "target_connector_id": connector.id, "external_id": ack.external_id})
        if self.metrics is not None:
            self.metrics.increment(connector.id, "changes_pushed")
        return {"connector_id": connector.id, "external_id": ack.external_id, "message": ack.message}

    # Batch processing

    def requeue_due(self, now: Optional[datetime] = None) -> int:
        """RETRY events whose backoff has elapsed go back to PENDING."""
        now = now or self.clock()
        n = self.events.update_where(
            IntegrationEvent.status == EventStatus.RETRY,
            IntegrationEvent.next_attempt_at <= now,
            status=EventStatus.PENDING,
        )
        if n:
            logger.info("requeued events", extra={"count": n})
        return n

    def process_pending(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> Dict[str, int]:
        """Drain PENDING events: parallel across correlation ids, in arrival order within one."""
        now = now or self.clock()
        self.requeue_due(now)
        pending = self.events.list(
            IntegrationEvent.status == EventStatus.PENDING,
            order_by=(IntegrationEvent.id,),
            limit=limit or self.batch_limit,
        )
        groups: "OrderedDict[str, List[int]]" = OrderedDict()
        for ev in pending:
            groups.setdefault(ev.correlation_id, []).append(ev.id)
        tally: TallyCounter = TallyCounter()
        if not groups:
            return {"processed": 0}
        with ThreadPoolExecutor(max_workers=max(1, min(self.pool_size, len(groups)))) as pool:
            for statuses in pool.map(self._drain_group, groups.values()):
                tally.update(statuses)
        summary = {k.value.lower(): v for k, v in tally.items()}
        summary["processed"] = sum(v for k, v in tally.items() if k != EventStatus.PENDING)
        return summary

    def _drain_group(self, event_ids: List[int]) -> List[EventStatus]:
        statuses: List[EventStatus] = []
        for event_id in event_ids:
            try:
                ev = self.process(event_id)
            except InvalidTransitionError:
                # claimed by another worker in the meantime
                continue
            statuses.append(ev.status)
            if ev.status in (EventStatus.PENDING, EventStatus.RETRY):
                break
        return statuses

    # Operator actions

    def dead_letter(self, event_id: int, reason: str) -> IntegrationEvent:
        """Stop an event from being retried. Not allowed while it is PROCESSING."""
        event = self.get(event_id)
        if event.status == EventStatus.PROCESSING:
            raise InvalidTransitionError("event", event.status, EventStatus.DEAD_LETTER)
        logger.info("event dead-lettered by operator", extra={"event_id": event_id, "reason": reason})
        return self._transition(event, EventStatus.DEAD_LETTER, dead_letter_queue=True, next_attempt_at=None,
                                error_message=reason[:1024],
                                error_details={**(event.error_details or {}), "dead_lettered": reason})

    def replay(self, event_id: int, actor: str | None = None) -> IntegrationEvent:
        """Manual intervention: return a dead-lettered, failed or quarantined event to PENDING."""
        event = self.get(event_id)
        if event.status not in REPLAYABLE_EVENT_STATUSES:
            raise InvalidTransitionError("event", event.status, EventStatus.PENDING)
        history = list((event.error_details or {}).get("history", []))
        history.append({"status": event.status.value, "error": event.error_message, "retry_count": event.retry_count,
                        "replayed_at": self.clock().isoformat(), "actor": actor})
        # operator replay is not part of the lifecycle table
        changed = self.events.update_where(
            IntegrationEvent.id == event.id,
            IntegrationEvent.status == event.status,
            status=EventStatus.PENDING,
            retry_count=0,
            dead_letter_queue=False,
            next_attempt_at=None,
            error_message=None,
            error_details={"history": history},
            processed_at=None,
        )
        if not changed:
            raise InvalidTransitionError("event", event.status, EventStatus.PENDING)
        logger.info("event replayed", extra={"event_id": event_id, "actor": actor})
        return self.get(event_id)

    def stats(self) -> Dict[str, int]:
        return {s.value: self.events.count(IntegrationEvent.status == s) for s in EventStatus}

    def purge_processing_records(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        with self.storage.session() as s:
            res = s.execute(delete(ProcessingRecord).where(ProcessingRecord.expires_at < now))
            return res.rowcount or 0
