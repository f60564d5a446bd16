"""Celery entry points for the event pipeline."""
from celery import shared_task
from integration_engine.engine import get_engine


@shared_task
def process_pending_events(limit: int | None = None):
    return {"status": "ok", **get_engine().pipeline.process_pending(limit=limit)}


@shared_task
def process_event(event_id: int):
    ev = get_engine().pipeline.process(event_id)
    return {"event_id": ev.id, "status": ev.status.value}


@shared_task
def purge_processing_records():
    return {"status": "ok", "purged": get_engine().pipeline.purge_processing_records()}


@shared_task
def flush_metrics():
    get_engine().metrics.flush()
    return {"status": "ok"}
