"""Route classified threads: automated ones are final, the rest go to the LLM queue."""
import logging
from dataclasses import asdict, dataclass
from typing import Optional

from sqlalchemy.orm import Session

from ..email_store import insert_classifications
from .classifier import ClassifiedThread, latest_email

logger = logging.getLogger(__name__)

CLASSIFICATION_FIELDS = (
    "is_automated",
    "category",
    "confidence_score",
    "reasoning",
    "summary_points",
    "scheduling_todos",
    "action_todos",
    "processed_by",
)


@dataclass
class EscalationJob:
    email_id: str
    thread_id: str
    account_id: int
    classification_id: int
    user_context: Optional[str] = None

    def to_kwargs(self) -> dict:
        return asdict(self)


def split_classification_results(
    results: list[ClassifiedThread],
) -> tuple[list[ClassifiedThread], list[ClassifiedThread]]:
    """Partition into (automated, non_automated)."""
    automated = [r for r in results if r.classification.is_automated]
    non_automated = [r for r in results if not r.classification.is_automated]
    return automated, non_automated


def persist_automated_classifications(db: Session, automated: list[ClassifiedThread]) -> int:
    """Bulk insert keyed on thread id; rows already stored are left as they are."""
    if not automated:
        return 0
    rows = [
        {"thread_id": r.thread_id, **{f: getattr(r.classification, f) for f in CLASSIFICATION_FIELDS}}
        for r in automated
    ]
    insert_classifications(db, rows)
    return len(automated)


def build_escalation_jobs(
    db: Session,
    non_automated: list[ClassifiedThread],
    account_id: int,
    user_context: Optional[str] = None,
) -> list[EscalationJob]:
    """One job per distinct thread, pointing at the thread's latest e-mail."""
    jobs: list[EscalationJob] = []
    seen: set[str] = set()
    for result in non_automated:
        if result.thread_id in seen:
            continue
        seen.add(result.thread_id)
        email = latest_email(db, result.thread_id)
        if email is None:
            logger.warning(f"Thread {result.thread_id} has no e-mails; not escalating")
            continue
        jobs.append(
            EscalationJob(
                email_id=email.id,
                thread_id=result.thread_id,
                account_id=account_id,
                classification_id=result.classification.id,
                user_context=user_context,
            )
        )
    return jobs
