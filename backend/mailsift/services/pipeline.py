"""Sync job body: guard, sync, classify, route escalations."""
import logging
from contextlib import AbstractContextManager
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..errors import AccountNotFoundError
from ..models import Account, SyncKind
from ..sync_state_db import completed_recently
from .account_lock import account_lock
from .classifier import batch_process_threads, unclassified_threads
from .escalation import (
    EscalationJob,
    build_escalation_jobs,
    persist_automated_classifications,
    split_classification_results,
)
from .sync_engine import MailboxSyncEngine, SyncMetrics

logger = logging.getLogger(__name__)

PROGRESS_SYNC = 0
PROGRESS_CLASSIFY = 33
PROGRESS_ESCALATE = 66
PROGRESS_DONE = 100


def _noop_progress(progress: int) -> None:
    pass


def get_account(db: Session, email: str) -> Account:
    account = db.query(Account).filter(Account.email == email).first()
    if account is None:
        raise AccountNotFoundError(f"No account for {email}")
    return account


def run_sync_pipeline(
    db: Session,
    email: str,
    sync_type: str = SyncKind.INCREMENTAL.value,
    days_to_sync: Optional[int] = None,
    user_context: Optional[str] = None,
    on_progress: Callable[[int], None] = _noop_progress,
    enqueue_escalation: Optional[Callable[[EscalationJob], None]] = None,
    lock_factory: Callable[[int], AbstractContextManager] = account_lock,
    engine: Optional[MailboxSyncEngine] = None,
) -> dict:
    """
    Run one sync job end to end and return its report.

    Returns {"status": "skipped", ...} without touching the mailbox when the
    account finished a sync moments ago or another job holds its lock.
    """
    kind = SyncKind(sync_type)
    account = get_account(db, email)

    if completed_recently(db, account.id, settings.recent_sync_threshold_s):
        logger.info(f"Skipping sync for {email}: last sync completed under {settings.recent_sync_threshold_s}s ago")
        return {"success": True, "status": "skipped", "reason": "recent"}

    with lock_factory(account.id) as acquired:
        if not acquired:
            logger.info(f"Skipping sync for {email}: another sync holds the account lock")
            return {"success": True, "status": "skipped", "reason": "locked"}

        metrics = SyncMetrics()
        engine = engine or MailboxSyncEngine(db)

        on_progress(PROGRESS_SYNC)
        engine.trigger_sync(account, kind, days_to_sync, metrics)
        unread = engine.update_unread_states(account)

        on_progress(PROGRESS_CLASSIFY)
        threads = unclassified_threads(db, account.id)
        results = batch_process_threads(db, threads)
        automated, non_automated = split_classification_results(results)
        persisted = persist_automated_classifications(db, automated)

        on_progress(PROGRESS_ESCALATE)
        jobs = build_escalation_jobs(db, non_automated, account.id, user_context)
        if enqueue_escalation is not None:
            for job in jobs:
                enqueue_escalation(job)

        on_progress(PROGRESS_DONE)

    report = {
        "success": True,
        "status": "completed",
        "sync_type": kind.value,
        "metrics": metrics.to_dict(),
        "classified": len(results),
        "automated": persisted,
        "escalated": len(jobs),
        "unread": unread,
    }
    logger.info(
        f"Sync job for {email} finished: {metrics.threads_processed} threads, "
        f"{metrics.emails_processed} new e-mails, {len(results)} classified, {len(jobs)} escalated"
    )
    return report
