"""Content fingerprint: idempotency key for stored e-mails."""
import hashlib
from datetime import datetime
from typing import Optional, Union


def _render(value: Union[str, datetime, None]) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def content_fingerprint(
    subject: Optional[str],
    sender: Optional[str],
    body: Optional[str],
    received_at: Union[str, datetime, None],
) -> str:
    """Deterministic SHA-256 hash of (subject | sender | body | received_at)."""
    content = "|".join(_render(v) for v in (subject, sender, body, received_at))
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def fingerprint_for_email(email: dict) -> str:
    """Fingerprint a normalized e-mail row; the HTML body wins over plain text."""
    body = email.get("body_html")
    if body is None:
        body = email.get("body_text")
    return content_fingerprint(
        email.get("subject"),
        email.get("from_address"),
        body,
        email.get("received_at"),
    )
