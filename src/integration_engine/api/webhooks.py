from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field, ValidationError
from integration_engine.config import get_settings
from integration_engine.engine import Engine, get_engine
from integration_engine.errors import InvalidConfigError
from integration_engine.models.enums import EventCategory, JobType, TriggerType
from integration_engine.security.hmac import verify_hmac
from integration_engine.tasks.events import process_event

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class WebhookEventIn(BaseModel):
    event_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = Field(None, max_length=64)
    event_category: EventCategory = EventCategory.SYSTEM_EVENT
    timestamp: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    trigger_sync: bool = False


def _inline() -> bool:
    return get_settings().app_env == "test"


@router.post("/{connector_id}", status_code=202)
async def receive_webhook(
    connector_id: str,
    request: Request,
    x_signature: Optional[str] = Header(None, alias="X-Signature"),
    engine: Engine = Depends(get_engine),
):
    settings = get_settings()
    body = await request.body()
    if settings.webhook_secret:
        verify_hmac(x_signature, body, settings.webhook_secret, settings.webhook_signature_tolerance_seconds)
    try:
        incoming = WebhookEventIn.model_validate_json(body)
    except ValidationError as ve:
        raise InvalidConfigError("invalid webhook body", [e["msg"] for e in ve.errors()]) from ve
    connector = engine.registry.get(connector_id)
    event = engine.pipeline.ingest({
        "event_type": incoming.event_type,
        "event_category": incoming.event_category.value,
        "source": connector.name,
        "payload": incoming.payload,
        "metadata": {**incoming.metadata, "ingress": "webhook"},
        "correlation_id": incoming.correlation_id,
        "connector_id": connector.id,
        "timestamp": incoming.timestamp,
        "expires_at": incoming.expires_at,
    })
    job_id = None
    if incoming.trigger_sync:
        job_id = engine.orchestrator.trigger(connector.id, JobType.INCREMENTAL, TriggerType.WEBHOOK, "webhook").id
    # no broker under test: process in the request
    if _inline():
        status = engine.pipeline.process(event.id).status.value
    else:
        process_event.delay(event.id)
        status = event.status.value
    return {"event_id": event.id, "correlation_id": event.correlation_id, "status": status, "sync_job_id": job_id}
