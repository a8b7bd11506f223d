"""Sync state in DB (SyncState rows) per account."""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from .models import SyncState, SyncStatus, utcnow


def get_latest_completed_sync(db: Session, account_id: int) -> Optional[SyncState]:
    """The completed row with the newest completed_at; it carries the history cursor."""
    return (
        db.query(SyncState)
        .filter(
            SyncState.account_id == account_id,
            SyncState.status == SyncStatus.COMPLETED.value,
        )
        .order_by(SyncState.completed_at.desc(), SyncState.id.desc())
        .first()
    )


def start_sync_state(db: Session, account_id: int, sync_type: str) -> SyncState:
    row = SyncState(
        account_id=account_id,
        sync_type=sync_type,
        status=SyncStatus.IN_PROGRESS.value,
        started_at=utcnow(),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def complete_sync_state(
    db: Session,
    row: SyncState,
    history_id: Optional[str],
    threads_synced: int,
    emails_synced: int,
) -> SyncState:
    row.status = SyncStatus.COMPLETED.value
    row.completed_at = utcnow()
    row.last_history_id = history_id
    row.threads_synced = threads_synced
    row.emails_synced = emails_synced
    row.error = None
    db.commit()
    return row


def fail_sync_state(db: Session, row: SyncState, error: str) -> SyncState:
    # The failing transaction may have left the session dirty.
    db.rollback()
    row.status = SyncStatus.FAILED.value
    row.completed_at = utcnow()
    row.error = error
    db.commit()
    return row


def completed_recently(
    db: Session,
    account_id: int,
    threshold_s: int,
    now: Optional[datetime] = None,
) -> bool:
    """True if the account's last completed sync finished less than threshold_s ago."""
    row = get_latest_completed_sync(db, account_id)
    if row is None or row.completed_at is None:
        return False
    now = now or utcnow()
    return now - row.completed_at < timedelta(seconds=threshold_s)
