"""Pytest fixtures: in-memory DB, fake Gmail service, API client."""
import base64
import os
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("GMAIL_CLIENT_ID", "test-client")
os.environ.setdefault("GMAIL_CLIENT_SECRET", "test-secret")
os.environ.setdefault("GMAIL_PAGE_DELAY_S", "0")
os.environ.setdefault("RETRY_INITIAL_DELAY_S", "0")

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mailsift.database import get_db
from mailsift.main import app
from mailsift.models import Account, Base, utcnow

BASE_EPOCH_MS = 1_760_000_000_000


@pytest.fixture
def db_urls(tmp_path):
    """
    File-based sqlite so sync setup code (tests) and async app sessions
    see the same data.
    """
    db_path = tmp_path / "test.db"
    return f"sqlite:///{db_path}", f"sqlite+aiosqlite:///{db_path}"


@pytest.fixture
def db_engine(db_urls):
    sync_url, _ = db_urls
    engine = create_engine(sync_url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def account(db_session):
    acc = Account(
        email="owner@example.com",
        access_token="token",
        refresh_token="refresh",
        expires_at=utcnow() + timedelta(hours=1),
    )
    db_session.add(acc)
    db_session.commit()
    db_session.refresh(acc)
    return acc


@pytest.fixture
def client(db_urls, db_engine):
    _, async_url = db_urls
    async_engine = create_async_engine(
        async_url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    AsyncSessionLocal = async_sessionmaker(async_engine, expire_on_commit=False, autoflush=False)

    async def override_get_db():
        async with AsyncSessionLocal() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii")


@pytest.fixture
def make_message():
    """Build a Gmail API message dict (format=full)."""

    def _make(
        msg_id: str,
        thread_id: str,
        subject: str = "Hello",
        sender: str = "alice@example.com",
        to: str = "owner@example.com",
        body: str = "Hi there",
        html: str = None,
        labels=("INBOX",),
        offset_min: int = 0,
        cc: str = None,
    ) -> dict:
        headers = [
            {"name": "Subject", "value": subject},
            {"name": "From", "value": sender},
            {"name": "To", "value": to},
        ]
        if cc:
            headers.append({"name": "Cc", "value": cc})
        parts = [{"mimeType": "text/plain", "body": {"data": _b64(body)}}]
        if html is not None:
            parts.append({"mimeType": "text/html", "body": {"data": _b64(html)}})
        return {
            "id": msg_id,
            "threadId": thread_id,
            "labelIds": list(labels),
            "snippet": body[:40],
            "historyId": str(100 + offset_min),
            "internalDate": str(BASE_EPOCH_MS + offset_min * 60_000),
            "payload": {"mimeType": "multipart/alternative", "headers": headers, "parts": parts},
        }

    return _make


@pytest.fixture
def make_gmail_service():
    """
    MagicMock Gmail service.

    pages: list of messages.list responses, returned in order.
    threads: thread_id -> list of messages, or an exception threads.get raises.
    history: list of history.list responses (or an exception to raise).
    unread_ids / unread_pages: ids returned by the is:unread listing, as one
    page or as a list of pages chained with nextPageToken.
    """

    def _make(
        pages=None,
        threads=None,
        history=None,
        profile_history_id="900",
        unread_ids=None,
        unread_pages=None,
    ):
        service = MagicMock()
        users = service.users.return_value
        threads = threads or {}
        pages = iter(pages or [{"messages": []}])
        unread_pages = list(unread_pages or [unread_ids or []])

        def list_messages(userId, q, maxResults, pageToken=None):
            req = MagicMock()
            if q == "is:unread":
                index = int(pageToken or 0)
                page = {"messages": [{"id": i} for i in unread_pages[index]]}
                if index + 1 < len(unread_pages):
                    page["nextPageToken"] = str(index + 1)
                req.execute.return_value = page
            else:
                req.execute.side_effect = lambda: next(pages)
            return req

        users.messages.return_value.list.side_effect = list_messages

        def get_thread(userId, id, format):
            req = MagicMock()
            if isinstance(threads[id], Exception):
                req.execute.side_effect = threads[id]
            else:
                req.execute.return_value = {"id": id, "historyId": "800", "messages": threads[id]}
            return req

        users.threads.return_value.get.side_effect = get_thread
        users.getProfile.return_value.execute.return_value = {"historyId": profile_history_id}

        if isinstance(history, Exception):
            users.history.return_value.list.return_value.execute.side_effect = history
        else:
            users.history.return_value.list.return_value.execute.side_effect = list(history or [{"historyId": profile_history_id}])
        return service

    return _make
