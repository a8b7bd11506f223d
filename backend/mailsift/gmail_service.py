"""Gmail API integration: credentials, pagination, history deltas, payload parsing."""
import base64
import logging
import socket
from datetime import datetime, timezone
from typing import Callable, Optional

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from sqlalchemy.orm import Session

from .config import settings
from .errors import HistoryExpiredError
from .models import Account, utcnow
from .utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/gmail.readonly",
]

SYSTEM_LABELS = {
    "INBOX",
    "SENT",
    "DRAFT",
    "SPAM",
    "TRASH",
    "UNREAD",
    "STARRED",
    "IMPORTANT",
    "CATEGORY_PERSONAL",
    "CATEGORY_SOCIAL",
    "CATEGORY_PROMOTIONS",
    "CATEGORY_UPDATES",
    "CATEGORY_FORUMS",
}
SOURCE_LABELS = ("INBOX", "SENT", "DRAFT", "SPAM", "TRASH")
SKIPPED_SOURCES = {"DRAFT", "SPAM", "TRASH"}

UNREAD_LIST_MAX_RESULTS = 500


def is_transient_error(exc: BaseException) -> bool:
    """Rate limits, server errors and socket failures are worth retrying; 404 never is."""
    if isinstance(exc, HttpError):
        status = getattr(exc.resp, "status", None)
        return status == 429 or (status is not None and status >= 500)
    return isinstance(exc, (ConnectionError, socket.timeout, TimeoutError))


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, HttpError) and getattr(exc.resp, "status", None) == 404


def _policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.retry_max_attempts,
        initial_delay=settings.retry_initial_delay_s,
        should_retry=is_transient_error,
    )


# Rate limiting: exponential backoff
def _with_backoff(fn, on_retry: Optional[Callable[[int, BaseException], None]] = None):
    return _policy().run(fn, on_retry=on_retry)


# ----------------------------
# Credentials
# ----------------------------


def refresh_access_token(refresh_token: str) -> tuple[str, Optional[datetime]]:
    """Exchange a refresh token for a new access token. Returns (access_token, expiry)."""
    creds = Credentials(
        token=None,
        refresh_token=refresh_token,
        token_uri=settings.gmail_token_uri,
        client_id=settings.gmail_client_id,
        client_secret=settings.gmail_client_secret,
        scopes=SCOPES,
    )
    creds.refresh(Request())
    # google-auth reports expiry as naive UTC.
    return creds.token, creds.expiry


def _token_expired(account: Account) -> bool:
    if not account.access_token:
        return True
    if account.expires_at is None:
        return False
    return account.expires_at <= utcnow()


def build_gmail_service(db: Session, account: Account):
    """Return a Gmail API service for the account, refreshing and persisting tokens if expired."""
    if _token_expired(account):
        if not account.refresh_token:
            raise ValueError(f"Account {account.email} has no refresh token; re-authorization required")
        logger.info(f"Refreshing Gmail access token for {account.email}")
        access_token, expiry = refresh_access_token(account.refresh_token)
        account.access_token = access_token
        account.expires_at = expiry
        db.commit()
    creds = Credentials(
        token=account.access_token,
        refresh_token=account.refresh_token,
        token_uri=settings.gmail_token_uri,
        client_id=settings.gmail_client_id,
        client_secret=settings.gmail_client_secret,
        scopes=SCOPES,
    )
    return build("gmail", "v1", credentials=creds, cache_discovery=False)


# ----------------------------
# API calls
# ----------------------------


def get_profile_history_id(service, on_retry=None) -> Optional[str]:
    """Return the user's current historyId from Gmail profile."""
    profile = _with_backoff(
        lambda: service.users().getProfile(userId="me").execute(),
        on_retry=on_retry,
    )
    return profile.get("historyId")


def list_messages(
    service,
    query: str,
    page_token: Optional[str] = None,
    max_results: Optional[int] = None,
    on_retry=None,
) -> dict:
    """List message IDs (with thread IDs) for a query. Paginated."""
    return _with_backoff(
        lambda: service.users()
        .messages()
        .list(
            userId="me",
            q=query,
            maxResults=max_results or settings.gmail_messages_max_results,
            pageToken=page_token or None,
        )
        .execute(),
        on_retry=on_retry,
    )


def get_thread(service, thread_id: str, on_retry=None) -> dict:
    """Get a thread with every message in full format."""
    return _with_backoff(
        lambda: service.users()
        .threads()
        .get(userId="me", id=thread_id, format="full")
        .execute(),
        on_retry=on_retry,
    )


def list_history(
    service,
    start_history_id: str,
    page_token: Optional[str] = None,
    on_retry=None,
) -> dict:
    """Fetch history list (deltas). Paginated."""
    return _with_backoff(
        lambda: service.users()
        .history()
        .list(
            userId="me",
            startHistoryId=start_history_id,
            maxResults=settings.gmail_history_max_results,
            pageToken=page_token or None,
        )
        .execute(),
        on_retry=on_retry,
    )


def fetch_history_thread_ids(
    service,
    start_history_id: str,
    on_retry=None,
) -> tuple[list[str], str]:
    """
    Walk the history log from start_history_id and collect touched thread ids.

    Returns (thread_ids in first-seen order, new_history_id). Raises
    HistoryExpiredError when Gmail no longer holds history for the cursor.
    """
    thread_ids: list[str] = []
    seen: set[str] = set()
    new_history_id = start_history_id
    page_token = None

    while True:
        try:
            result = list_history(service, start_history_id, page_token=page_token, on_retry=on_retry)
        except HttpError as e:
            if is_not_found(e):
                raise HistoryExpiredError(start_history_id) from e
            raise

        for record in result.get("history", []):
            for msg in record.get("messages", []):
                tid = msg.get("threadId")
                if tid and tid not in seen:
                    seen.add(tid)
                    thread_ids.append(tid)

        new_history_id = result.get("historyId") or new_history_id
        next_page_token = result.get("nextPageToken")
        if not next_page_token or next_page_token == page_token:
            break
        page_token = next_page_token

    return thread_ids, new_history_id


def list_unread_message_ids(service, on_retry=None) -> list[str]:
    """IDs of every currently unread message, across all result pages."""
    message_ids: list[str] = []
    page_token = None
    while True:
        result = list_messages(
            service,
            "is:unread",
            page_token=page_token,
            max_results=UNREAD_LIST_MAX_RESULTS,
            on_retry=on_retry,
        )
        message_ids.extend(m["id"] for m in result.get("messages", []))
        next_page_token = result.get("nextPageToken")
        if not next_page_token or next_page_token == page_token:
            break
        page_token = next_page_token
    return message_ids


# ----------------------------
# Payload helpers
# ----------------------------


def get_header(message: dict, name: str) -> Optional[str]:
    """Case-insensitive header lookup on a Gmail message."""
    wanted = name.lower()
    for h in message.get("payload", {}).get("headers", []):
        if h.get("name", "").lower() == wanted:
            return h.get("value")
    return None


def _decode(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def extract_body(payload: dict) -> tuple[Optional[str], Optional[str]]:
    """
    Depth-first walk of the MIME tree. Returns (text, html): the first
    text/plain and first text/html part bodies found.
    """
    text: Optional[str] = None
    html: Optional[str] = None
    stack = [payload]
    while stack:
        part = stack.pop()
        mime = part.get("mimeType", "")
        data = part.get("body", {}).get("data")
        if data:
            if mime == "text/plain" and text is None:
                text = _decode(data)
            elif mime == "text/html" and html is None:
                html = _decode(data)
        # Reverse so the first child is visited first.
        stack.extend(reversed(part.get("parts", [])))
        if text is not None and html is not None:
            break
    return text, html


def split_addresses(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [a.strip() for a in value.split(",") if a.strip()]


def extract_participants(messages: list[dict]) -> list[str]:
    """Distinct From/To/Cc addresses across a thread, in first-seen order."""
    participants: list[str] = []
    for msg in messages:
        for header in ("From", "To", "Cc"):
            for addr in split_addresses(get_header(msg, header)):
                if addr not in participants:
                    participants.append(addr)
    return participants


def thread_source(labels: list[str]) -> str:
    for label in SOURCE_LABELS:
        if label in labels:
            return label
    return "OTHER"


def system_labels(labels: list[str]) -> list[str]:
    return [label for label in labels if label in SYSTEM_LABELS]


def internal_date(message: dict) -> Optional[datetime]:
    """Message receive time from internalDate (epoch ms) as naive UTC."""
    raw = message.get("internalDate")
    if raw is None:
        return None
    return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc).replace(tzinfo=None)
