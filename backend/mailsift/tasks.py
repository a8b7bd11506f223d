"""Celery tasks: mailbox sync, LLM escalation, periodic triggers. DB session per task."""
import logging
import time
from typing import Optional

from celery import shared_task
from celery.utils.time import get_exponential_backoff_interval
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.exc import OperationalError

from .config import settings
from .database import SessionLocal
from .errors import LLMTransportError
from .gmail_service import is_transient_error
from .models import Account, SyncKind
from .services.escalation import EscalationJob
from .services.llm_service import LLMEscalationService, record_llm_job_metric
from .services.monitor import LLM_QUEUE, SYNC_QUEUE
from .services.pipeline import run_sync_pipeline

logger = logging.getLogger(__name__)


def _retry_countdown(retries: int) -> int:
    return get_exponential_backoff_interval(
        factor=1,
        retries=retries,
        maximum=settings.job_retry_backoff_max_s,
        full_jitter=True,
    )


def is_retryable_job_error(exc: BaseException) -> bool:
    """Errors worth re-running the whole sync job for."""
    return is_transient_error(exc) or isinstance(exc, (OperationalError, RedisConnectionError))


def enqueue_escalation(job: EscalationJob) -> None:
    process_llm_escalation.apply_async(kwargs=job.to_kwargs(), queue=LLM_QUEUE)


@shared_task(
    bind=True,
    name="mailsift.tasks.run_sync_job",
    queue=SYNC_QUEUE,
    acks_late=True,
    max_retries=settings.sync_job_max_retries,
    soft_time_limit=settings.sync_task_soft_time_limit_s,
    time_limit=settings.sync_task_time_limit_s,
)
def run_sync_job(
    self,
    email: str,
    sync_type: str = SyncKind.INCREMENTAL.value,
    days_to_sync: Optional[int] = None,
    user_context: Optional[str] = None,
):
    """
    Sync one account, classify its new threads and enqueue escalations.
    Progress is reported through the result backend at 0/33/66/100.
    """
    db = SessionLocal()

    def on_progress(progress: int):
        self.update_state(state="PROGRESS", meta={"progress": progress, "email": email})

    try:
        return run_sync_pipeline(
            db,
            email,
            sync_type=sync_type,
            days_to_sync=days_to_sync,
            user_context=user_context,
            on_progress=on_progress,
            enqueue_escalation=enqueue_escalation,
        )
    except Exception as e:
        db.rollback()
        if is_retryable_job_error(e) and self.request.retries < self.max_retries:
            countdown = _retry_countdown(self.request.retries)
            logger.warning(f"Sync job for {email} failed ({e}); retry {self.request.retries + 1} in {countdown}s")
            raise self.retry(exc=e, countdown=countdown)
        raise
    finally:
        db.close()


@shared_task(
    bind=True,
    name="mailsift.tasks.process_llm_escalation",
    queue=LLM_QUEUE,
    acks_late=True,
    rate_limit=settings.llm_queue_rate_limit,
    max_retries=settings.llm_job_max_retries,
    time_limit=settings.llm_task_time_limit_s,
)
def process_llm_escalation(
    self,
    email_id: str,
    thread_id: str,
    account_id: int,
    classification_id: int,
    user_context: Optional[str] = None,
):
    """
    Run the LLM on one escalated e-mail. Transport failures retry with backoff;
    schema failures fail this job only. Every attempt is recorded in llm_job_metrics.
    """
    started = time.monotonic()
    service = LLMEscalationService(user_context=user_context)
    error: Optional[str] = None
    try:
        analysis = service.process_email(email_id)
    except Exception as e:
        error = str(e)
        raise_retry = isinstance(e, LLMTransportError) and self.request.retries < self.max_retries
        _record_attempt(self.request.id, email_id, thread_id, False, started, error)
        if raise_retry:
            raise self.retry(exc=e, countdown=_retry_countdown(self.request.retries))
        raise
    _record_attempt(self.request.id, email_id, thread_id, True, started, None)
    return {
        "email_id": email_id,
        "thread_id": thread_id,
        "account_id": account_id,
        "classification_id": classification_id,
        "category": analysis.category.value,
        "confidence_score": analysis.confidence_score,
    }


def _record_attempt(
    job_id: Optional[str],
    email_id: str,
    thread_id: str,
    success: bool,
    started: float,
    error: Optional[str],
) -> None:
    db = SessionLocal()
    try:
        record_llm_job_metric(
            db,
            email_id=email_id,
            thread_id=thread_id,
            success=success,
            duration_ms=int((time.monotonic() - started) * 1000),
            job_id=job_id,
            error=error,
        )
    except Exception as e:
        # The escalation outcome stands even if its metric row cannot be written.
        logger.error(f"Could not record LLM job metric for {email_id}: {e}")
    finally:
        db.close()


@shared_task(name="mailsift.tasks.enqueue_periodic_syncs", queue=SYNC_QUEUE)
def enqueue_periodic_syncs() -> int:
    """Enqueue one incremental sync per account; task ids carry the trigger time."""
    db = SessionLocal()
    try:
        accounts = db.query(Account.id, Account.email).order_by(Account.id).all()
    finally:
        db.close()

    epoch = int(time.time())
    for account_id, email in accounts:
        run_sync_job.apply_async(
            kwargs={"email": email, "sync_type": SyncKind.INCREMENTAL.value},
            task_id=f"sync-{account_id}-{epoch}",
            queue=SYNC_QUEUE,
        )
    logger.info(f"Periodic trigger enqueued {len(accounts)} incremental syncs")
    return len(accounts)


@shared_task(name="mailsift.tasks.sweep_pending_escalations", queue=LLM_QUEUE)
def sweep_pending_escalations(limit: int = 10) -> dict:
    """Catch human threads whose escalation job was lost or failed."""
    result = LLMEscalationService().process_unclassified_emails(limit=limit)
    return {"succeeded": len(result.succeeded), "failed": len(result.failed)}
