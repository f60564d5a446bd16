from celery import Celery
from celery import signals
import time
from prometheus_client import Counter, Histogram
from integration_engine.config import get_settings

settings = get_settings()

celery_app = Celery(
    "integration_engine",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "integration_engine.tasks.sync",
        "integration_engine.tasks.events",
    ],
)

celery_app.conf.update(task_serializer="json", result_serializer="json", accept_content=["json"], timezone="UTC", enable_utc=True)

TASK_SUCCESS = Counter('celery_task_success_total', 'Celery task successes', ['task'])
TASK_FAILURE = Counter('celery_task_failure_total', 'Celery task failures', ['task'])
TASK_DURATION = Histogram('celery_task_duration_seconds', 'Celery task runtime', ['task'], buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60))

_task_start_times = {}


@signals.task_prerun.connect
def _task_prerun(sender=None, task_id=None, **kwargs):  # noqa
    _task_start_times[task_id] = time.time()


@signals.task_postrun.connect
def _task_postrun(sender=None, task_id=None, state=None, **kwargs):  # noqa
    name = sender.name if sender else 'unknown'
    start = _task_start_times.pop(task_id, None)
    if start is not None:
        TASK_DURATION.labels(task=name).observe(time.time() - start)
    if state == 'SUCCESS':
        TASK_SUCCESS.labels(task=name).inc()
    elif state is not None:
        TASK_FAILURE.labels(task=name).inc()


@signals.worker_process_init.connect
def _configure_worker_logging(**kwargs):  # noqa
    from integration_engine.logging_config import configure_logging
    configure_logging()


# Periodic tasks (beat). Requires worker with -B or separate beat service.
celery_app.conf.beat_schedule = {
    "schedule-due-connectors-1m": {
        "task": "integration_engine.tasks.sync.schedule_due_connectors",
        "schedule": 60.0,
        "options": {"expires": 50},
    },
    "run-pending-sync-jobs-30s": {
        "task": "integration_engine.tasks.sync.run_pending_jobs",
        "schedule": 30.0,
        "options": {"expires": 25},
    },
    "connector-health-sweep-5m": {
        "task": "integration_engine.tasks.sync.health_sweep",
        "schedule": 300.0,
    },
    "process-pending-events-10s": {
        "task": "integration_engine.tasks.events.process_pending_events",
        "schedule": 10.0,
        "options": {"expires": 8},
    },
    "purge-processing-records-hourly": {
        "task": "integration_engine.tasks.events.purge_processing_records",
        "schedule": 3600.0,
    },
    "flush-metrics-1m": {
        "task": "integration_engine.tasks.events.flush_metrics",
        "schedule": 60.0,
    },
}
