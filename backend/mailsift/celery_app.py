"""Celery app for sync and LLM escalation jobs. Uses Redis; DB session per task."""
import json
import logging
import os

from celery import Celery, signals

from .config import configure_logging, settings, validate_settings
from .services.monitor import LLM_QUEUE, SYNC_QUEUE, dead_letter_key

logger = logging.getLogger(__name__)

WORKER_ROLE_ENV = "MAILSIFT_WORKER_ROLE"

celery_app = Celery(
    "mailsift",
    broker=settings.celery_broker,
    backend=settings.redis_url,
    include=["mailsift.tasks"],
)
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    # Unacked jobs from a dead worker are redelivered after this long.
    broker_transport_options={"visibility_timeout": settings.stalled_job_timeout_s},
    result_expires=7 * 24 * 3600,
    task_default_queue=SYNC_QUEUE,
    task_routes={
        "mailsift.tasks.run_sync_job": {"queue": SYNC_QUEUE},
        "mailsift.tasks.enqueue_periodic_syncs": {"queue": SYNC_QUEUE},
        "mailsift.tasks.process_llm_escalation": {"queue": LLM_QUEUE},
        "mailsift.tasks.sweep_pending_escalations": {"queue": LLM_QUEUE},
    },
)
celery_app.conf.beat_schedule = {
    "enqueue-periodic-syncs": {
        "task": "mailsift.tasks.enqueue_periodic_syncs",
        "schedule": float(settings.periodic_sync_interval_s),
    },
    "sweep-pending-escalations": {
        "task": "mailsift.tasks.sweep_pending_escalations",
        "schedule": float(settings.escalation_sweep_interval_s),
    },
}


@signals.setup_logging.connect
def _setup_logging(**kwargs):
    configure_logging()


@signals.worker_init.connect
def _validate_worker_settings(**kwargs):
    role = os.environ.get(WORKER_ROLE_ENV, "sync")
    validate_settings(role)
    logger.info(f"Worker settings validated for role '{role}'")


@signals.worker_shutdown.connect
def _release_connections(**kwargs):
    from .database import dispose_engines
    from .services.account_lock import close_redis_client

    dispose_engines()
    close_redis_client()
    logger.info("Worker shutdown: database pool and Redis client closed")


@signals.task_failure.connect
def _push_dead_letter(sender=None, task_id=None, exception=None, args=None, kwargs=None, **extra):
    """Final failures (retries exhausted or not retryable) go to a per-queue Redis list."""
    from .services.account_lock import get_redis_client

    queue = getattr(sender, "queue", None) or SYNC_QUEUE
    logger.error(f"Task {getattr(sender, 'name', sender)} [{task_id}] failed: {exception}")
    client = get_redis_client()
    if client is None:
        return
    entry = {
        "task_id": task_id,
        "task": getattr(sender, "name", None),
        "args": list(args or []),
        "kwargs": kwargs or {},
        "error": repr(exception),
    }
    client.lpush(dead_letter_key(queue), json.dumps(entry, default=str))
