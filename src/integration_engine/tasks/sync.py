"""Celery entry points for sync scheduling and execution."""
from celery import shared_task
from integration_engine.engine import get_engine
from integration_engine.models.enums import JobType, TriggerType


@shared_task
def schedule_due_connectors():
    created = get_engine().orchestrator.schedule_due()
    return {"status": "ok", "queued": [j.id for j in created]}


@shared_task
def run_pending_jobs():
    return {"status": "ok", **get_engine().orchestrator.run_pending()}


@shared_task
def run_sync_job(job_id: int):
    job = get_engine().orchestrator.run_job(job_id)
    return {"job_id": job.id, "status": job.status.value, "records_processed": job.records_processed}


@shared_task
def trigger_sync(connector_id: str, job_type: str = JobType.INCREMENTAL.value,
                 trigger_type: str = TriggerType.WEBHOOK.value, triggered_by: str | None = None):
    """Queue a job and start it right away; a busy or rate-limited connector leaves it PENDING."""
    orch = get_engine().orchestrator
    job = orch.trigger(connector_id, JobType(job_type), TriggerType(trigger_type), triggered_by)
    run_sync_job.delay(job.id)
    return {"job_id": job.id, "status": job.status.value}


@shared_task
def health_sweep():
    queued = get_engine().orchestrator.health_sweep()
    return {"status": "ok", "queued": [j.id for j in queued]}
