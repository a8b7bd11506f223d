"""
Rule-based first-pass classifier.

Decides automated vs. human for a thread's latest e-mail and, for automated
mail, picks a category by counting pattern hits. No model calls: threads
this pass marks as human are escalated to the LLM service instead.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.orm import Session

from ..email_store import insert_classifications
from ..errors import ThreadHasNoEmailsError
from ..models import PROCESSED_BY_RULES, Email, Thread, ThreadCategory, ThreadClassification

logger = logging.getLogger(__name__)


def _compile(patterns: list[str]) -> list[re.Pattern]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


AUTOMATION_INDICATORS: dict[str, list[re.Pattern]] = {
    "sender_patterns": _compile([
        r"no[.-]?reply@",
        r"notification?@",
        r"notifications?@",
        r"alert?@",
        r"alerts?@",
        r"info@",
        r"news(?:letter)?@",
        r"do-not-reply@",
        r"updates?@",
        r"support@",
        r"hello@",
        r"@calendar\.[a-zA-Z0-9-]+\.com",
    ]),
    "subject_patterns": _compile([
        r"^\[?Auto(?:matic|mated)?\]",
        r"newsletter",
        r"subscription",
        r"confirm(?:ation)?",
        r"welcome to",
        r"your (?:daily|weekly|monthly) digest",
        r"reminder:",
    ]),
    "body_patterns": _compile([
        r"unsubscribe",
        r"(?:click|tap) (?:here|below)",
        r"view (?:in browser|online)",
        r"to stop receiving",
        r"email preferences",
        r"manage subscriptions?",
        r"privacy policy",
        r"terms of service",
        r"this is an automated",
        r"do not reply",
        r"you(?:'re| are) receiving this (?:email|message)",
        r"opt[ -]out",
    ]),
    "footer_patterns": _compile([
        r"©\s*\d{4}",
        r"all rights reserved",
        r"sent by",
        r"powered by",
        r"forward (?:this|to a friend)",
        r"add us to your address book",
    ]),
    "marketing_patterns": _compile([
        r"special offer",
        r"discount",
        r"sale",
        r"promo(?:tion)?",
        r"limited time",
        r"exclusive",
        r"deal",
        r"off your (?:next|first)",
        r"\d+%\s*off",
        r"save\s+(?:up\s+to\s+)?\$?\d+",
        r"save\s+(?:up\s+to\s+)?\d+%",
        r"free shipping",
        r"buy now",
        r"shop now",
        r"early access",
        r"flash sale",
        r"clearance",
        r"best seller",
        r"pricing",
        r"offer expires",
    ]),
    "notification_patterns": _compile([
        r"alert",
        r"status",
        r"update",
        r"confirm",
        r"verify",
        r"deployment",
        r"build",
        r"security",
        r"login",
        r"account",
        r"payment",
    ]),
    "meeting_patterns": _compile([
        r"^invitation:\s",
        r"^updated invitation:",
        r"^accepted:\s+meeting",
        r"^declined:\s+meeting",
        r"^tentatively accepted:",
        r"^meeting\s+request:",
        r"^calendar\s+notification:",
        r"meet\.google\.com/[\w-]+",
        r"zoom\.us/j/\d+",
        r"teams\.microsoft\.com/l/meetup-join",
        r"calendly\.com/[\w-]+/",
        r"your\s+(?:meeting|appointment)\s+is\s+confirmed",
        r"when:\s.*\d{1,2}:\d{2}\s*(?:am|pm|AM|PM)",
        r"where:\s",
        r"organizer:\s",
    ]),
    "newsletter_patterns": _compile([
        r"newsletter",
        r"digest",
        r"weekly",
        r"monthly",
        r"roundup",
        r"update",
        r"latest",
        r"news",
        r"substack",
        r"beehiiv",
        r"news(?:letter)?",
    ]),
}

# Families that count toward the automation decision.
AUTOMATION_FAMILIES = ("sender_patterns", "subject_patterns", "body_patterns", "footer_patterns")

CATEGORY_PATTERNS: dict[ThreadCategory, str] = {
    ThreadCategory.ACTIVE_DISCUSSION: "body_patterns",
    ThreadCategory.PASSIVE_DISCUSSION: "body_patterns",
    ThreadCategory.NOTIFICATION: "notification_patterns",
    ThreadCategory.MEETING: "meeting_patterns",
    ThreadCategory.NEWSLETTER: "newsletter_patterns",
    ThreadCategory.MARKETING: "marketing_patterns",
    ThreadCategory.NOT_RELEVANT: "body_patterns",
}

NOREPLY_RE = re.compile(r"no[.-]?reply@|do-not-reply@", re.IGNORECASE)
UNSUBSCRIBE_RE = re.compile(r"(?:^|\s)unsubscribe(?:\s|$)", re.IGNORECASE)
UNSUBSCRIBE_CONFIRMATIONS = _compile([r"click here", r"manage", r"preferences", r"opt[ -]out"])
NEWSLETTER_RE = re.compile(r"newsletter", re.IGNORECASE)

NOREPLY_CONFIDENCE = 0.8
UNSUBSCRIBE_CONFIDENCE = 0.7
DEFAULT_CATEGORY_CONFIDENCE = 0.5


@dataclass
class AutomationAnalysis:
    is_automated: bool
    automation_confidence: float
    has_noreply: bool
    has_unsubscribe: bool
    total_matches: int
    matched_patterns: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class ClassificationResult:
    is_automated: bool
    category: ThreadCategory
    confidence_score: float
    reasoning: str

    def to_row(self, thread_id: str) -> dict:
        return {
            "thread_id": thread_id,
            "is_automated": self.is_automated,
            "category": self.category.value,
            "confidence_score": self.confidence_score,
            "reasoning": self.reasoning,
            "summary_points": [],
            "scheduling_todos": [],
            "action_todos": [],
            "processed_by": PROCESSED_BY_RULES,
        }


@dataclass
class ClassifiedThread:
    thread_id: str
    classification: ThreadClassification


def _matches(patterns: list[re.Pattern], text: str) -> list[str]:
    return [p.pattern for p in patterns if p.search(text)]


def analyze_email(sender: Optional[str], subject: Optional[str], body: Optional[str]) -> AutomationAnalysis:
    sender = sender or ""
    subject = subject or ""
    body = body or ""

    matched = {
        "sender_patterns": _matches(AUTOMATION_INDICATORS["sender_patterns"], sender),
        "subject_patterns": _matches(AUTOMATION_INDICATORS["subject_patterns"], subject),
        "body_patterns": _matches(AUTOMATION_INDICATORS["body_patterns"], body),
        "footer_patterns": _matches(AUTOMATION_INDICATORS["footer_patterns"], body),
    }
    total = sum(len(matched[f]) for f in AUTOMATION_FAMILIES)

    has_noreply = bool(NOREPLY_RE.search(sender))
    has_unsubscribe = bool(UNSUBSCRIBE_RE.search(body)) and any(
        p.search(body) for p in UNSUBSCRIBE_CONFIRMATIONS
    )

    confidence = min(total / 5, 1.0)
    if has_noreply:
        confidence = max(confidence, NOREPLY_CONFIDENCE)
    if has_unsubscribe:
        confidence = max(confidence, UNSUBSCRIBE_CONFIDENCE)

    return AutomationAnalysis(
        is_automated=has_noreply or has_unsubscribe or total >= 2,
        automation_confidence=confidence,
        has_noreply=has_noreply,
        has_unsubscribe=has_unsubscribe,
        total_matches=total,
        matched_patterns=matched,
    )


def calculate_category_matches(subject: Optional[str], body: Optional[str]) -> dict[ThreadCategory, int]:
    """A pattern counts once per category if it hits either the subject or the body."""
    subject = subject or ""
    body = body or ""
    counts: dict[ThreadCategory, int] = {}
    for category, family in CATEGORY_PATTERNS.items():
        counts[category] = sum(
            1 for p in AUTOMATION_INDICATORS[family] if p.search(subject) or p.search(body)
        )
    return counts


def determine_category(matches: dict[ThreadCategory, int]) -> tuple[ThreadCategory, float]:
    total = sum(matches.values())
    if total == 0:
        return ThreadCategory.NOTIFICATION, DEFAULT_CATEGORY_CONFIDENCE
    best = max(matches.values())
    winners = [c for c, n in matches.items() if n == best]
    if len(winners) > 1:
        return ThreadCategory.NOTIFICATION, DEFAULT_CATEGORY_CONFIDENCE
    return winners[0], best / total


def categorize_automated_email(
    sender: Optional[str],
    subject: Optional[str],
    body: Optional[str],
    matches: Optional[dict[ThreadCategory, int]] = None,
) -> tuple[ThreadCategory, float]:
    if NEWSLETTER_RE.search(subject or "") or NEWSLETTER_RE.search(sender or ""):
        return ThreadCategory.NEWSLETTER, 1.0
    if matches is None:
        matches = calculate_category_matches(subject, body)
    return determine_category(matches)


def classify_message(sender: Optional[str], subject: Optional[str], body: Optional[str]) -> ClassificationResult:
    """Deterministic classification of one e-mail's (from, subject, body)."""
    analysis = analyze_email(sender, subject, body)
    matches = calculate_category_matches(subject, body)
    if analysis.is_automated:
        category, category_confidence = categorize_automated_email(sender, subject, body, matches)
        # Keep the no-reply / unsubscribe floors on the stored score.
        confidence = max(category_confidence, analysis.automation_confidence)
    else:
        # Placeholder; the LLM path overwrites it.
        category = ThreadCategory.NOTIFICATION
        confidence = analysis.automation_confidence

    reasoning = json.dumps({
        "matched_patterns": analysis.matched_patterns,
        "high_confidence_matches": {
            "noreply": analysis.has_noreply,
            "unsubscribe": analysis.has_unsubscribe,
        },
        "total_matches": analysis.total_matches,
        "category_matches": {c.value: n for c, n in matches.items()},
    })
    return ClassificationResult(
        is_automated=analysis.is_automated,
        category=category,
        confidence_score=round(confidence, 4),
        reasoning=reasoning,
    )


def latest_email(db: Session, thread_id: str) -> Optional[Email]:
    return (
        db.query(Email)
        .filter(Email.thread_id == thread_id)
        .order_by(Email.received_at.desc(), Email.id.desc())
        .first()
    )


def classify_latest_email(db: Session, thread_id: str) -> ClassificationResult:
    email = latest_email(db, thread_id)
    if email is None:
        raise ThreadHasNoEmailsError(f"Thread {thread_id} has no stored e-mails")
    body = email.body_text or email.body_html or ""
    return classify_message(email.from_address, email.subject, body)


def classify_thread(db: Session, thread_id: str) -> ThreadClassification:
    """Classify and persist; an existing classification is returned unchanged."""
    result = classify_latest_email(db, thread_id)
    insert_classifications(db, [result.to_row(thread_id)])
    return db.query(ThreadClassification).filter(ThreadClassification.thread_id == thread_id).one()


def unclassified_threads(db: Session, account_id: int) -> list[Thread]:
    return (
        db.query(Thread)
        .outerjoin(ThreadClassification, ThreadClassification.thread_id == Thread.id)
        .filter(Thread.account_id == account_id, ThreadClassification.id.is_(None))
        .order_by(Thread.last_message_at.desc())
        .all()
    )


def batch_process_threads(db: Session, threads: list[Thread]) -> list[ClassifiedThread]:
    """Classify and persist each thread. Per-thread failures are logged and skipped."""
    results: list[ClassifiedThread] = []
    for thread in threads:
        try:
            classification = classify_thread(db, thread.id)
        except ThreadHasNoEmailsError as e:
            logger.warning(f"Skipping thread {thread.id}: {e}")
            continue
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to classify thread {thread.id}: {e}")
            continue
        logger.info(
            f"Thread {thread.id}: {'automated' if classification.is_automated else 'human'}, "
            f"{classification.category} ({classification.confidence_score})"
        )
        results.append(ClassifiedThread(thread.id, classification))
    return results
