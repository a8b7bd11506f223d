"""
LangGraph-powered escalation for threads the rule pass marked as human.

Flow per e-mail: build_prompt -> analyze -> normalize. The result overwrites
the content fields of the thread's existing classification row.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from langgraph.graph import END, START, StateGraph
from sqlalchemy.orm import Session, sessionmaker
from typing_extensions import TypedDict

from ..config import settings
from ..database import SessionLocal
from ..errors import ClassificationNotFoundError, EmailNotFoundError
from ..llm_client import generate_structured
from ..models import PROCESSED_BY_RULES, Email, LLMJobMetric, ThreadClassification, utcnow
from ..prompts import build_email_prompt, build_system_prompt
from ..schemas import EmailAnalysis
from .classifier import latest_email

logger = logging.getLogger(__name__)


class EscalationState(TypedDict, total=False):
    """State that flows through the escalation graph."""
    # Input fields
    sender: str
    recipients: List[str]
    subject: str
    date: str
    body: str
    user_context: str

    prompt: str
    system_prompt: str
    analysis: EmailAnalysis


@dataclass
class BatchResult:
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


def build_prompt_node(state: EscalationState) -> dict:
    return {
        "prompt": build_email_prompt(
            state.get("sender", ""),
            state.get("recipients", []),
            state.get("subject", ""),
            state.get("date", ""),
            state.get("body", ""),
        ),
        "system_prompt": build_system_prompt(state.get("user_context", "")),
    }


def normalize_node(state: EscalationState) -> dict:
    """Drop blank summary points and todos the model padded the reply with."""
    analysis = state["analysis"]
    cleaned = analysis.model_copy(
        update={
            "summary_points": [p.strip() for p in analysis.summary_points if p and p.strip()],
            "scheduling_todos": [t for t in analysis.scheduling_todos if t.what.strip()],
            "action_todos": [t for t in analysis.action_todos if t.action.strip()],
        }
    )
    return {"analysis": cleaned}


def create_escalation_graph(generate: Callable = generate_structured) -> Any:
    """
    Build the escalation workflow.

    Flow: START -> build_prompt -> analyze -> normalize -> END
    """

    def analyze_node(state: EscalationState) -> dict:
        return {"analysis": generate(state["prompt"], state["system_prompt"], EmailAnalysis)}

    graph = StateGraph(EscalationState)
    graph.add_node("build_prompt", build_prompt_node)
    graph.add_node("analyze", analyze_node)
    graph.add_node("normalize", normalize_node)

    graph.add_edge(START, "build_prompt")
    graph.add_edge("build_prompt", "analyze")
    graph.add_edge("analyze", "normalize")
    graph.add_edge("normalize", END)
    return graph.compile()


def apply_analysis(classification: ThreadClassification, analysis: EmailAnalysis, model: str) -> None:
    """Overwrite the LLM-owned fields; anything the reply leaves out keeps its value."""
    classification.category = analysis.category.value
    classification.confidence_score = analysis.confidence_score
    classification.reasoning = analysis.reasoning
    classification.summary_points = list(analysis.summary_points)
    classification.scheduling_todos = [t.model_dump(by_alias=True) for t in analysis.scheduling_todos]
    classification.action_todos = [t.model_dump() for t in analysis.action_todos]
    if analysis.email_breakdown is not None:
        classification.email_breakdown = analysis.email_breakdown
    classification.processed_by = f"llm:{model}"
    classification.updated_at = utcnow()


class LLMEscalationService:
    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        user_context: Optional[str] = None,
        generate: Callable = generate_structured,
        model: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.user_context = user_context if user_context is not None else settings.default_user_context
        self.model = model or settings.openai_model
        self.graph = create_escalation_graph(generate)

    def _analyze(self, email: Email) -> EmailAnalysis:
        state: EscalationState = {
            "sender": email.from_address or "",
            "recipients": email.to_addresses or [],
            "subject": email.subject or "",
            "date": email.received_at.isoformat() if email.received_at else "",
            "body": email.body_text or email.body_html or email.snippet or "",
            "user_context": self.user_context,
        }
        return self.graph.invoke(state)["analysis"]

    def process_email(self, email_id: str, db: Optional[Session] = None) -> EmailAnalysis:
        """Analyze one e-mail and update its thread's classification in place."""
        owns_session = db is None
        db = db or self.session_factory()
        try:
            email = db.query(Email).filter(Email.id == email_id).first()
            if email is None:
                raise EmailNotFoundError(f"E-mail {email_id} not found")
            classification = (
                db.query(ThreadClassification)
                .filter(ThreadClassification.thread_id == email.thread_id)
                .first()
            )
            if classification is None:
                raise ClassificationNotFoundError(f"No classification for thread {email.thread_id}")

            analysis = self._analyze(email)
            apply_analysis(classification, analysis, self.model)
            db.commit()
            logger.info(
                f"Escalated {email_id}: {analysis.category.value} ({analysis.confidence_score}), "
                f"{len(analysis.action_todos)} actions, {len(analysis.scheduling_todos)} events"
            )
            return analysis
        except Exception:
            db.rollback()
            raise
        finally:
            if owns_session:
                db.close()

    def process_batch(self, email_ids: List[str], concurrency: Optional[int] = None) -> BatchResult:
        """
        Process e-mails with at most `concurrency` model calls in flight.

        Each item gets its own Session; a failing item is logged and never
        stops its siblings.
        """
        concurrency = concurrency or settings.llm_batch_concurrency
        result = BatchResult()
        if not email_ids:
            return result

        with ThreadPoolExecutor(max_workers=concurrency) as executor:
            futures = {executor.submit(self.process_email, eid): eid for eid in email_ids}
            for future in as_completed(futures):
                eid = futures[future]
                try:
                    future.result()
                    result.succeeded.append(eid)
                except Exception as e:
                    logger.error(f"Escalation failed for {eid}: {e}")
                    result.failed.append(eid)

        logger.info(f"Batch complete: {len(result.succeeded)} succeeded, {len(result.failed)} failed")
        return result

    def pending_email_ids(self, limit: int = 10) -> List[str]:
        """Latest e-mail of each human thread the LLM has not processed yet."""
        db = self.session_factory()
        try:
            thread_ids = [
                tid
                for (tid,) in db.query(ThreadClassification.thread_id)
                .filter(
                    ThreadClassification.is_automated.is_(False),
                    ThreadClassification.processed_by == PROCESSED_BY_RULES,
                )
                .order_by(ThreadClassification.created_at.asc())
                .limit(limit)
                .all()
            ]
            email_ids = []
            for tid in thread_ids:
                email = latest_email(db, tid)
                if email is not None:
                    email_ids.append(email.id)
            return email_ids
        finally:
            db.close()

    def process_unclassified_emails(self, limit: int = 10) -> BatchResult:
        email_ids = self.pending_email_ids(limit)
        if not email_ids:
            logger.info("No e-mails waiting for escalation")
            return BatchResult()
        return self.process_batch(email_ids)


def record_llm_job_metric(
    db: Session,
    email_id: str,
    thread_id: Optional[str],
    success: bool,
    duration_ms: int,
    job_id: Optional[str] = None,
    error: Optional[str] = None,
) -> LLMJobMetric:
    metric = LLMJobMetric(
        job_id=job_id,
        email_id=email_id,
        thread_id=thread_id,
        success=success,
        duration_ms=duration_ms,
        error=error,
    )
    db.add(metric)
    db.commit()
    return metric
