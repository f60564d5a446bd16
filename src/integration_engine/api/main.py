from __future__ import annotations
import logging
import uuid
from typing import Any, Dict, Optional
from fastapi import FastAPI, Depends, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST, REGISTRY
from integration_engine.api.webhooks import router as webhooks_router
from integration_engine.engine import Engine, get_engine
from integration_engine.errors import (
    IntegrationError, NotFoundError, InvalidConfigError, DuplicateRecordError, ReferentialIntegrityError,
    InvalidTransitionError, PolicyViolationError,
)
from integration_engine.infrastructure.db import healthcheck
from integration_engine.logging_config import configure_logging
from integration_engine.models.enums import JobType, TriggerType

logger = logging.getLogger(__name__)

app = FastAPI(title="Integration Engine API", version="0.1.0")
app.include_router(webhooks_router)

_STATUS_FOR = (
    (NotFoundError, 404),
    (DuplicateRecordError, 409),
    (InvalidTransitionError, 409),
    (ReferentialIntegrityError, 409),
    (PolicyViolationError, 403),
    (InvalidConfigError, 422),
)


@app.exception_handler(IntegrationError)
async def integration_error_handler(request: Request, exc: IntegrationError):
    status = next((code for cls, code in _STATUS_FOR if isinstance(exc, cls)), 400)
    return JSONResponse(status_code=status, content={"error": exc.details(), "correlation_id": getattr(request.state, "correlation_id", None)})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    cid = getattr(request.state, "correlation_id", "n/a")
    logger.error("unhandled error", extra={"path": request.url.path, "detail": str(exc), "correlation_id": cid, "type": exc.__class__.__name__})
    return JSONResponse(status_code=500, content={"error": "internal_error", "correlation_id": cid})


@app.middleware("http")
async def correlation_id_header(request: Request, call_next):
    request.state.correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
    response = await call_next(request)
    response.headers.setdefault("X-Correlation-ID", request.state.correlation_id)
    response.headers.setdefault('X-Content-Type-Options', 'nosniff')
    response.headers.setdefault('Cache-Control', 'no-store')
    return response


@app.on_event("startup")
def startup():
    configure_logging()


@app.get("/health")
def health():
    return {"db": healthcheck(), "status": "ok"}


@app.get("/metrics")
def metrics():
    return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)


class TriggerIn(BaseModel):
    job_type: JobType = JobType.INCREMENTAL
    triggered_by: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)


class ActorIn(BaseModel):
    actor: Optional[str] = None


class DeadLetterIn(BaseModel):
    reason: str


def _job_out(job) -> Dict[str, Any]:
    return {
        "id": job.id,
        "connector_id": job.connector_id,
        "job_type": job.job_type.value,
        "status": job.status.value,
        "attempt": job.attempt,
        "scheduled_at": job.scheduled_at.isoformat() if job.scheduled_at else None,
        "records_processed": job.records_processed,
        "records_succeeded": job.records_succeeded,
        "records_failed": job.records_failed,
        "error_message": job.error_message,
    }


def _event_out(ev) -> Dict[str, Any]:
    return {
        "id": ev.id,
        "event_type": ev.event_type,
        "status": ev.status.value,
        "correlation_id": ev.correlation_id,
        "retry_count": ev.retry_count,
        "dead_letter_queue": ev.dead_letter_queue,
        "error_message": ev.error_message,
    }


@app.post("/connectors/{connector_id}/sync", status_code=202)
def trigger_sync(connector_id: str, body: TriggerIn, engine: Engine = Depends(get_engine)):
    job = engine.orchestrator.trigger(connector_id, body.job_type, TriggerType.MANUAL, body.triggered_by, body.options)
    return _job_out(job)


@app.post("/connectors/{connector_id}/health-check")
def run_health_check(connector_id: str, engine: Engine = Depends(get_engine)):
    job = engine.orchestrator.check_health(connector_id, triggered_by="api")
    connector = engine.registry.get(connector_id)
    return {"job": _job_out(job), "health": connector.health.value}


@app.get("/jobs/{job_id}")
def get_job(job_id: int, engine: Engine = Depends(get_engine)):
    return _job_out(engine.orchestrator.get(job_id))


@app.post("/jobs/{job_id}/cancel")
def cancel_job(job_id: int, body: ActorIn, engine: Engine = Depends(get_engine)):
    return _job_out(engine.orchestrator.cancel(job_id, body.actor))


@app.get("/events/stats")
def event_stats(engine: Engine = Depends(get_engine)):
    return engine.pipeline.stats()


@app.get("/events/{event_id}")
def get_event(event_id: int, engine: Engine = Depends(get_engine)):
    return _event_out(engine.pipeline.get(event_id))


@app.post("/events/{event_id}/replay")
def replay_event(event_id: int, body: ActorIn, engine: Engine = Depends(get_engine)):
    return _event_out(engine.pipeline.replay(event_id, body.actor))


@app.post("/events/{event_id}/dead-letter")
def dead_letter_event(event_id: int, body: DeadLetterIn, engine: Engine = Depends(get_engine)):
    return _event_out(engine.pipeline.dead_letter(event_id, body.reason))
