"""MailboxSyncEngine: full/incremental sync, fallbacks, idempotent thread storage."""
import httplib2
import pytest
from googleapiclient.errors import HttpError

from mailsift.models import Email, SyncKind, SyncState, SyncStatus, Thread, utcnow
from mailsift.services.sync_engine import MailboxSyncEngine, SyncMetrics
from mailsift.sync_state_db import complete_sync_state, start_sync_state


def _engine(db, service, sleeps=None):
    return MailboxSyncEngine(
        db,
        service_factory=lambda db, account: service,
        sleep=(sleeps.append if sleeps is not None else (lambda s: None)),
    )


def _list_query(service, call_index=0):
    return service.users.return_value.messages.return_value.list.call_args_list[call_index].kwargs["q"]


def test_full_sync_stores_threads_across_pages(db_session, account, make_message, make_gmail_service):
    threads = {
        "t1": [make_message("m1", "t1", subject="Lunch?"), make_message("m2", "t1", subject="Re: Lunch?", offset_min=5)],
        "t2": [make_message("m3", "t2", subject="Report")],
    }
    service = make_gmail_service(
        pages=[
            {"messages": [{"id": "m1", "threadId": "t1"}, {"id": "m2", "threadId": "t1"}], "nextPageToken": "p2"},
            {"messages": [{"id": "m3", "threadId": "t2"}]},
        ],
        threads=threads,
        profile_history_id="900",
    )
    sleeps = []
    metrics = SyncMetrics()
    _engine(db_session, service, sleeps).sync_full(account, 7, metrics)

    assert _list_query(service) == "newer_than:7d"
    assert sleeps == [0.0]  # one pause between the two pages
    assert metrics.threads_processed == 2
    assert metrics.emails_processed == 3
    assert db_session.query(Thread).count() == 2
    assert db_session.query(Email).count() == 3

    state = db_session.query(SyncState).one()
    assert state.status == SyncStatus.COMPLETED.value
    assert state.sync_type == "full"
    assert state.last_history_id == "900"
    assert state.threads_synced == 2
    assert state.emails_synced == 3


def test_store_thread_is_idempotent(db_session, account, make_message):
    thread = {"id": "t1", "messages": [make_message("m1", "t1"), make_message("m2", "t1", offset_min=1)]}
    engine = _engine(db_session, None)

    assert engine.store_thread(account, thread) == 2
    assert engine.store_thread(account, thread) == 0
    assert db_session.query(Email).count() == 2
    assert db_session.query(Thread).count() == 1


def test_store_thread_builds_summary(db_session, account, make_message):
    thread = {
        "id": "t1",
        "messages": [
            make_message("m1", "t1", sender="a@x.com", to="owner@example.com", labels=("INBOX",)),
            make_message("m2", "t1", sender="b@x.com", to="a@x.com", labels=("INBOX", "UNREAD"), offset_min=3),
        ],
    }
    _engine(db_session, None).store_thread(account, thread)
    row = db_session.get(Thread, "t1")
    assert row.thread_summary["latest_email"]["from"] == "b@x.com"
    assert row.thread_summary["unread_count"] == 1
    assert set(row.thread_summary["participants"]) == {"a@x.com", "owner@example.com", "b@x.com"}
    assert row.history_id == "103"

    unread = db_session.get(Email, "m2")
    assert unread.is_read is False
    assert unread.labels == ["INBOX", "UNREAD"]


def test_duplicate_content_collapses_to_one_row(db_session, account, make_message):
    first = make_message("m1", "t1", subject="Same", body="Same body")
    copy = dict(first, id="m1-copy")
    stored = _engine(db_session, None).store_thread(account, {"id": "t1", "messages": [first, copy]})
    assert stored == 1
    assert db_session.query(Email).count() == 1


@pytest.mark.parametrize("label", ["DRAFT", "SPAM", "TRASH"])
def test_store_thread_skips_drafts_spam_trash(db_session, account, make_message, label):
    thread = {"id": "t1", "messages": [make_message("m1", "t1", labels=(label,))]}
    assert _engine(db_session, None).store_thread(account, thread) is None
    assert db_session.query(Thread).count() == 0


def test_incremental_without_state_falls_back_to_full(db_session, account, make_gmail_service):
    service = make_gmail_service(pages=[{"messages": []}])
    metrics = SyncMetrics()
    _engine(db_session, service).sync_incremental(account, metrics)

    assert _list_query(service) == "newer_than:14d"
    state = db_session.query(SyncState).one()
    assert state.sync_type == "full"
    assert state.status == SyncStatus.COMPLETED.value


def test_incremental_with_expired_cursor_falls_back_to_full(db_session, account, make_gmail_service):
    complete_sync_state(db_session, start_sync_state(db_session, account.id, "full"), "100", 0, 0)
    expired = HttpError(resp=httplib2.Response({"status": 404}), content=b"{}")
    service = make_gmail_service(pages=[{"messages": []}], history=expired, profile_history_id="950")

    _engine(db_session, service).sync_incremental(account, SyncMetrics())

    assert _list_query(service) == "newer_than:14d"
    latest = db_session.query(SyncState).order_by(SyncState.id.desc()).first()
    assert latest.status == SyncStatus.COMPLETED.value
    assert latest.last_history_id == "950"


def test_incremental_refetches_changed_threads(db_session, account, make_message, make_gmail_service):
    complete_sync_state(db_session, start_sync_state(db_session, account.id, "full"), "100", 0, 0)
    service = make_gmail_service(
        threads={"t9": [make_message("m9", "t9"), make_message("m10", "t9", offset_min=2)]},
        history=[{"history": [{"messages": [{"id": "m10", "threadId": "t9"}]}], "historyId": "180"}],
    )
    metrics = SyncMetrics()
    _engine(db_session, service).sync_incremental(account, metrics)

    assert metrics.threads_processed == 1
    assert db_session.query(Email).filter(Email.thread_id == "t9").count() == 2
    latest = db_session.query(SyncState).order_by(SyncState.id.desc()).first()
    assert latest.sync_type == "incremental"
    assert latest.last_history_id == "180"
    # full scan never ran
    assert not service.users.return_value.messages.return_value.list.called


def test_incremental_with_no_changes_still_advances_cursor(db_session, account, make_gmail_service):
    complete_sync_state(db_session, start_sync_state(db_session, account.id, "full"), "100", 0, 0)
    service = make_gmail_service(history=[{"historyId": "120"}])
    _engine(db_session, service).sync_incremental(account, SyncMetrics())
    latest = db_session.query(SyncState).order_by(SyncState.id.desc()).first()
    assert latest.status == SyncStatus.COMPLETED.value
    assert latest.last_history_id == "120"


def test_failure_writes_failed_state_and_reraises(db_session, account, make_gmail_service):
    service = make_gmail_service()
    service.users.return_value.messages.return_value.list.side_effect = RuntimeError("boom")
    metrics = SyncMetrics()
    with pytest.raises(RuntimeError, match="boom"):
        _engine(db_session, service).sync_full(account, 7, metrics)

    state = db_session.query(SyncState).one()
    assert state.status == SyncStatus.FAILED.value
    assert state.error == "boom"
    assert metrics.errors == 1


def test_trigger_sync_resolves_backfill_window(db_session, account, make_gmail_service):
    service = make_gmail_service(pages=[{"messages": []}])
    _engine(db_session, service).trigger_sync(account, SyncKind.BACKFILL)
    assert _list_query(service) == "newer_than:30d"
    assert db_session.query(SyncState).one().sync_type == "backfill"


def test_trigger_sync_explicit_window_wins(db_session, account, make_gmail_service):
    service = make_gmail_service(pages=[{"messages": []}])
    _engine(db_session, service).trigger_sync(account, "full", window_days=3)
    assert _list_query(service) == "newer_than:3d"


def test_update_unread_states(db_session, account, make_message, make_gmail_service):
    engine = _engine(db_session, None)
    engine.store_thread(
        account,
        {"id": "t1", "messages": [make_message("m1", "t1", labels=("INBOX", "UNREAD")), make_message("m2", "t1", offset_min=1)]},
    )
    engine.service_factory = lambda db, acc: make_gmail_service(unread_ids=["m2", "gone"])

    assert engine.update_unread_states(account) == 1
    assert db_session.get(Email, "m1").is_read is True
    assert db_session.get(Email, "m2").is_read is False


def test_metrics_report():
    metrics = SyncMetrics(started_at=utcnow())
    metrics.record_retry(1, RuntimeError())
    report = metrics.to_dict()
    assert report["retries"] == 1
    assert report["duration_s"] >= 0


def _not_found():
    return HttpError(resp=httplib2.Response({"status": 404}), content=b"{}")


def test_incremental_skips_deleted_thread_and_advances_cursor(db_session, account, make_message, make_gmail_service):
    complete_sync_state(db_session, start_sync_state(db_session, account.id, "full"), "100", 0, 0)
    changes = {"history": [{"messages": [{"id": "g1", "threadId": "tgone"}, {"id": "k1", "threadId": "tkept"}]}]}
    service = make_gmail_service(
        threads={"tgone": _not_found(), "tkept": [make_message("k1", "tkept")]},
        history=[dict(changes, historyId="150"), {"historyId": "160"}],
    )
    engine = _engine(db_session, service)
    metrics = SyncMetrics()

    engine.sync_incremental(account, metrics)
    latest = db_session.query(SyncState).order_by(SyncState.id.desc()).first()
    assert (latest.status, latest.last_history_id) == ("completed", "150")
    assert metrics.threads_processed == 1
    assert metrics.errors == 0
    assert db_session.get(Thread, "tkept") is not None

    # The next run starts from the advanced cursor.
    engine.sync_incremental(account, metrics)
    history_calls = service.users.return_value.history.return_value.list.call_args_list
    assert history_calls[-1].kwargs["startHistoryId"] == "150"
    latest = db_session.query(SyncState).order_by(SyncState.id.desc()).first()
    assert (latest.status, latest.last_history_id) == ("completed", "160")


def test_full_sync_skips_thread_deleted_after_listing(db_session, account, make_message, make_gmail_service):
    service = make_gmail_service(
        pages=[{"messages": [{"id": "g1", "threadId": "tgone"}, {"id": "k1", "threadId": "tkept"}]}],
        threads={"tgone": _not_found(), "tkept": [make_message("k1", "tkept")]},
    )
    metrics = SyncMetrics()
    _engine(db_session, service).sync_full(account, 7, metrics)
    state = db_session.query(SyncState).one()
    assert state.status == SyncStatus.COMPLETED.value
    assert state.threads_synced == 1


def test_skipped_threads_are_not_counted(db_session, account, make_message, make_gmail_service):
    service = make_gmail_service(
        pages=[{"messages": [{"id": "d1", "threadId": "tdraft"}, {"id": "k1", "threadId": "tkept"}]}],
        threads={
            "tdraft": [make_message("d1", "tdraft", labels=("DRAFT",))],
            "tkept": [make_message("k1", "tkept")],
        },
    )
    metrics = SyncMetrics()
    _engine(db_session, service).sync_full(account, 7, metrics)
    assert metrics.threads_processed == 1
    assert db_session.query(SyncState).one().threads_synced == 1


def test_unread_refresh_reads_every_page(db_session, account, make_message, make_gmail_service):
    engine = _engine(db_session, None)
    engine.store_thread(
        account,
        {
            "id": "t1",
            "messages": [
                make_message("m1", "t1", labels=("INBOX", "UNREAD")),
                make_message("m2", "t1", offset_min=1),
                make_message("m3", "t1", offset_min=2),
            ],
        },
    )
    engine.service_factory = lambda db, acc: make_gmail_service(unread_pages=[["m1"], ["m3"]])

    assert engine.update_unread_states(account) == 2
    assert db_session.get(Email, "m1").is_read is False
    assert db_session.get(Email, "m2").is_read is True
    assert db_session.get(Email, "m3").is_read is False
