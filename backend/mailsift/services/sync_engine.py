"""Mailbox sync: full window scans, history-based incremental sync, thread storage."""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from googleapiclient.errors import HttpError
from sqlalchemy.orm import Session

from ..config import settings
from ..email_store import insert_emails, mark_all_read, mark_unread, upsert_thread
from ..errors import HistoryExpiredError
from ..fingerprint import fingerprint_for_email
from ..gmail_service import (
    SKIPPED_SOURCES,
    build_gmail_service,
    extract_body,
    extract_participants,
    fetch_history_thread_ids,
    get_header,
    get_profile_history_id,
    get_thread,
    internal_date,
    is_not_found,
    list_messages,
    list_unread_message_ids,
    split_addresses,
    system_labels,
    thread_source,
)
from ..models import Account, SyncKind, utcnow
from ..sync_state_db import (
    complete_sync_state,
    fail_sync_state,
    get_latest_completed_sync,
    start_sync_state,
)

logger = logging.getLogger(__name__)


@dataclass
class SyncMetrics:
    threads_processed: int = 0
    emails_processed: int = 0
    errors: int = 0
    retries: int = 0
    started_at: datetime = field(default_factory=utcnow)

    def record_retry(self, attempt: int, exc: BaseException) -> None:
        self.retries += 1

    def to_dict(self) -> dict:
        return {
            "threads_processed": self.threads_processed,
            "emails_processed": self.emails_processed,
            "errors": self.errors,
            "retries": self.retries,
            "started_at": self.started_at.isoformat(),
            "duration_s": round((utcnow() - self.started_at).total_seconds(), 3),
        }


def normalize_message(account_id: int, thread_id: str, message: dict) -> dict:
    """Gmail message -> Email row values (including the content fingerprint)."""
    text, html = extract_body(message.get("payload", {}))
    labels = message.get("labelIds", []) or []
    row = {
        "id": message["id"],
        "thread_id": thread_id,
        "account_id": account_id,
        "from_address": get_header(message, "From"),
        "to_addresses": split_addresses(get_header(message, "To")),
        "cc_addresses": split_addresses(get_header(message, "Cc")),
        "bcc_addresses": split_addresses(get_header(message, "Bcc")),
        "subject": get_header(message, "Subject"),
        "body_text": text,
        "body_html": html,
        "snippet": message.get("snippet"),
        "is_read": "UNREAD" not in labels,
        "labels": system_labels(labels),
        "received_at": internal_date(message),
    }
    row["content_hash"] = fingerprint_for_email(row)
    return row


def build_thread_summary(messages: list[dict]) -> dict:
    last = messages[-1]
    received = internal_date(last)
    return {
        "latest_email": {
            "from": get_header(last, "From"),
            "snippet": last.get("snippet"),
            "received_at": received.isoformat() if received else None,
        },
        "participants": extract_participants(messages),
        "unread_count": sum(1 for m in messages if "UNREAD" in (m.get("labelIds") or [])),
    }


class MailboxSyncEngine:
    """
    Mirrors one Gmail mailbox into the store.

    One engine per job: it owns the Session it is given and a lazily built
    Gmail service for the account being synced.
    """

    def __init__(
        self,
        db: Session,
        service_factory: Callable = build_gmail_service,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.service_factory = service_factory
        self.sleep = sleep
        self._services: dict[int, object] = {}

    def _service(self, account: Account):
        if account.id not in self._services:
            self._services[account.id] = self.service_factory(self.db, account)
        return self._services[account.id]

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def trigger_sync(
        self,
        account: Account,
        kind: SyncKind,
        window_days: Optional[int] = None,
        metrics: Optional[SyncMetrics] = None,
    ) -> SyncMetrics:
        metrics = metrics if metrics is not None else SyncMetrics()
        kind = SyncKind(kind)
        if kind is SyncKind.INCREMENTAL:
            self.sync_incremental(account, metrics)
        else:
            days = window_days or settings.window_for(kind.value)
            self.sync_full(account, days, metrics, kind=kind)
        return metrics

    # ------------------------------------------------------------------
    # Full / backfill
    # ------------------------------------------------------------------

    def sync_full(
        self,
        account: Account,
        window_days: int,
        metrics: SyncMetrics,
        kind: SyncKind = SyncKind.FULL,
    ) -> None:
        """Scan every message newer than window_days and store each touched thread."""
        state = start_sync_state(self.db, account.id, kind.value)
        threads_before = metrics.threads_processed
        emails_before = metrics.emails_processed
        query = f"newer_than:{window_days}d"
        logger.info(f"Starting {kind.value} sync for {account.email} ({query})")
        try:
            service = self._service(account)
            page_token = None
            page_num = 0
            while True:
                page_num += 1
                result = list_messages(service, query, page_token=page_token, on_retry=metrics.record_retry)
                thread_ids: list[str] = []
                for msg in result.get("messages", []):
                    tid = msg.get("threadId")
                    if tid and tid not in thread_ids:
                        thread_ids.append(tid)
                logger.info(f"Page {page_num}: {len(thread_ids)} threads")

                for tid in thread_ids:
                    self._sync_thread(account, service, tid, metrics)

                next_page_token = result.get("nextPageToken")
                if not next_page_token or next_page_token == page_token:
                    break
                page_token = next_page_token
                self.sleep(settings.gmail_page_delay_s)

            history_id = get_profile_history_id(service, on_retry=metrics.record_retry)
            complete_sync_state(
                self.db,
                state,
                history_id,
                metrics.threads_processed - threads_before,
                metrics.emails_processed - emails_before,
            )
            logger.info(
                f"{kind.value} sync for {account.email} done: "
                f"{metrics.threads_processed - threads_before} threads, "
                f"{metrics.emails_processed - emails_before} new e-mails"
            )
        except Exception as e:
            metrics.errors += 1
            logger.error(f"{kind.value} sync failed for {account.email}: {e}")
            fail_sync_state(self.db, state, str(e))
            raise

    # ------------------------------------------------------------------
    # Incremental
    # ------------------------------------------------------------------

    def sync_incremental(self, account: Account, metrics: SyncMetrics) -> None:
        """Re-store threads touched since the stored cursor; falls back to a full scan without one."""
        fallback_days = settings.window_for("fallback")
        last = get_latest_completed_sync(self.db, account.id)
        if last is None or not last.last_history_id:
            logger.warning(f"No history cursor for {account.email}; running {fallback_days}-day full sync")
            self.sync_full(account, fallback_days, metrics)
            return

        service = self._service(account)
        try:
            thread_ids, new_history_id = fetch_history_thread_ids(
                service, last.last_history_id, on_retry=metrics.record_retry
            )
        except HistoryExpiredError as e:
            logger.warning(f"{e} for {account.email}; running {fallback_days}-day full sync")
            self.sync_full(account, fallback_days, metrics)
            return

        state = start_sync_state(self.db, account.id, SyncKind.INCREMENTAL.value)
        threads_before = metrics.threads_processed
        emails_before = metrics.emails_processed
        try:
            for tid in thread_ids:
                self._sync_thread(account, service, tid, metrics)
            complete_sync_state(
                self.db,
                state,
                new_history_id,
                metrics.threads_processed - threads_before,
                metrics.emails_processed - emails_before,
            )
            logger.info(
                f"Incremental sync for {account.email}: {len(thread_ids)} changed threads, "
                f"cursor {last.last_history_id} -> {new_history_id}"
            )
        except Exception as e:
            metrics.errors += 1
            logger.error(f"Incremental sync failed for {account.email}: {e}")
            fail_sync_state(self.db, state, str(e))
            raise

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def _sync_thread(self, account: Account, service, thread_id: str, metrics: SyncMetrics) -> None:
        """Fetch and store one thread; a thread deleted since it was listed is skipped."""
        try:
            thread = get_thread(service, thread_id, on_retry=metrics.record_retry)
        except HttpError as e:
            if not is_not_found(e):
                raise
            logger.info(f"Thread {thread_id} for {account.email} no longer exists; skipping")
            return
        stored = self.store_thread(account, thread)
        if stored is None:
            return
        metrics.threads_processed += 1
        metrics.emails_processed += stored

    def store_thread(self, account: Account, thread: dict) -> Optional[int]:
        """
        Upsert one thread and insert its messages. Returns the number of
        e-mails newly stored (duplicates by fingerprint are not counted), or
        None when the thread is empty or a draft/spam/trash thread.
        """
        messages = thread.get("messages") or []
        if not messages:
            return None
        source = thread_source(messages[0].get("labelIds") or [])
        if source in SKIPPED_SOURCES:
            logger.debug(f"Skipping {source} thread {thread.get('id')}")
            return None

        last = messages[-1]
        upsert_thread(
            self.db,
            {
                "id": thread["id"],
                "account_id": account.id,
                "subject": get_header(last, "Subject"),
                "history_id": last.get("historyId") or thread.get("historyId"),
                "last_message_at": internal_date(last),
                "thread_summary": build_thread_summary(messages),
            },
        )
        rows = [normalize_message(account.id, thread["id"], m) for m in messages]
        stored = insert_emails(self.db, rows, chunk_size=settings.email_upsert_chunk_size)
        self.db.commit()
        return stored

    def update_unread_states(self, account: Account) -> int:
        """Refresh is_read from the mailbox's current unread list. Returns rows marked unread."""
        service = self._service(account)
        unread_ids = list_unread_message_ids(service)
        mark_all_read(self.db, account.id)
        updated = mark_unread(self.db, account.id, unread_ids, chunk_size=settings.email_upsert_chunk_size)
        self.db.commit()
        if updated != len(unread_ids):
            logger.warning(
                f"Unread refresh for {account.email}: mailbox reports {len(unread_ids)} unread, "
                f"{updated} matched stored e-mails"
            )
        return updated
