"""Idempotent writes for threads, e-mails and classifications."""
import logging
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import Email, Thread, ThreadClassification, utcnow

logger = logging.getLogger(__name__)


def _insert_for(db: Session, table):
    """Dialect-specific INSERT that supports ON CONFLICT."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Upserts are not supported on dialect '{dialect}'")


def _chunk_list(items: list, size: int) -> list[list]:
    """Split a list into chunks of at most `size` items."""
    return [items[i : i + size] for i in range(0, len(items), size)]


def upsert_thread(db: Session, row: dict) -> None:
    """Insert or update a thread keyed on its mailbox id."""
    stmt = _insert_for(db, Thread.__table__).values(**row, created_at=utcnow(), updated_at=utcnow())
    stmt = stmt.on_conflict_do_update(
        index_elements=[Thread.__table__.c.id],
        set_={
            "subject": stmt.excluded.subject,
            "history_id": stmt.excluded.history_id,
            "last_message_at": stmt.excluded.last_message_at,
            "thread_summary": stmt.excluded.thread_summary,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    db.execute(stmt)


def insert_emails(db: Session, rows: list[dict], chunk_size: int = 100) -> int:
    """
    Insert e-mails in chunks, ignoring rows whose content_hash already exists.

    Each chunk runs in its own savepoint. A chunk hitting any other integrity
    conflict (e.g. same message id with a different fingerprint) is rolled
    back and skipped. Returns the number of rows actually inserted.
    """
    stored = 0
    for chunk in _chunk_list(rows, chunk_size):
        # Stored messages never change content; only new ids reach the insert.
        existing = {
            mid for (mid,) in db.execute(select(Email.id).where(Email.id.in_([r["id"] for r in chunk])))
        }
        chunk = [r for r in chunk if r["id"] not in existing]
        if not chunk:
            continue
        stmt = _insert_for(db, Email.__table__).values(chunk)
        stmt = stmt.on_conflict_do_nothing(index_elements=[Email.__table__.c.content_hash])
        try:
            with db.begin_nested():
                result = db.execute(stmt)
            stored += max(result.rowcount or 0, 0)
        except IntegrityError as e:
            logger.warning(f"Skipped chunk of {len(chunk)} e-mails on integrity conflict: {e.orig}")
    return stored


def insert_classifications(db: Session, rows: Iterable[dict]) -> int:
    """Insert classifications keyed on thread_id; existing rows are left alone."""
    rows = list(rows)
    if not rows:
        return 0
    now = utcnow()
    values = [{**r, "created_at": now, "updated_at": now} for r in rows]
    stmt = _insert_for(db, ThreadClassification.__table__).values(values)
    stmt = stmt.on_conflict_do_nothing(index_elements=[ThreadClassification.__table__.c.thread_id])
    result = db.execute(stmt)
    db.commit()
    return max(result.rowcount or 0, 0)


def mark_all_read(db: Session, account_id: int) -> int:
    result = db.execute(
        update(Email).where(Email.account_id == account_id).values(is_read=True)
    )
    return result.rowcount or 0


def mark_unread(db: Session, account_id: int, message_ids: list[str], chunk_size: int = 100) -> int:
    updated = 0
    for chunk in _chunk_list(message_ids, chunk_size):
        result = db.execute(
            update(Email)
            .where(Email.account_id == account_id, Email.id.in_(chunk))
            .values(is_read=False)
        )
        updated += result.rowcount or 0
    return updated
