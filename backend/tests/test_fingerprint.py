"""Content fingerprint: deterministic, sensitive to every field, HTML body preferred."""
from datetime import datetime

from mailsift.fingerprint import content_fingerprint, fingerprint_for_email

RECEIVED = datetime(2025, 10, 1, 12, 30)


def test_same_fields_same_fingerprint():
    a = content_fingerprint("Invoice", "billing@service.com", "<p>Total</p>", RECEIVED)
    b = content_fingerprint("Invoice", "billing@service.com", "<p>Total</p>", RECEIVED)
    assert a == b
    assert len(a) == 64


def test_any_field_change_changes_fingerprint():
    base = ("Invoice", "billing@service.com", "<p>Total</p>", RECEIVED)
    original = content_fingerprint(*base)
    variants = [
        ("Invoice 2", *base[1:]),
        (base[0], "other@service.com", *base[2:]),
        (*base[:2], "<p>Total: $5</p>", base[3]),
        (*base[:3], datetime(2025, 10, 1, 12, 31)),
    ]
    for variant in variants:
        assert content_fingerprint(*variant) != original


def test_none_fields_hash_as_empty_strings():
    assert content_fingerprint(None, None, None, None) == content_fingerprint("", "", "", "")


def test_fingerprint_for_email_prefers_html_body():
    email = {
        "subject": "Hi",
        "from_address": "a@example.com",
        "body_text": "plain",
        "body_html": "<b>rich</b>",
        "received_at": RECEIVED,
    }
    assert fingerprint_for_email(email) == content_fingerprint("Hi", "a@example.com", "<b>rich</b>", RECEIVED)

    email["body_html"] = None
    assert fingerprint_for_email(email) == content_fingerprint("Hi", "a@example.com", "plain", RECEIVED)
