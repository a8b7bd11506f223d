"""LLM escalation: in-place classification update, batch isolation, client error mapping."""
import json
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import httpx
import openai
import pytest

from mailsift.errors import ClassificationNotFoundError, EmailNotFoundError, LLMSchemaError, LLMTransportError
from mailsift.llm_client import generate_structured
from mailsift.models import LLMJobMetric, ThreadCategory, ThreadClassification
from mailsift.schemas import EmailAnalysis
from mailsift.services.classifier import batch_process_threads, unclassified_threads
from mailsift.services.llm_service import LLMEscalationService, record_llm_job_metric
from mailsift.services.sync_engine import MailboxSyncEngine

ANALYSIS = {
    "category": "ACTIVE_DISCUSSION",
    "confidence_score": 0.92,
    "reasoning": "Direct question to the user",
    "summary_points": ["Dave asks about the launch date", "  "],
    "scheduling_todos": [{"what": "Launch sync", "when": "Friday 10am", "with": "Dave"}],
    "action_todos": [{"action": "Confirm launch date", "deadline": "Thursday"}, {"action": " "}],
    "email_breakdown": "Dave needs a decision.",
}


class FakeModel:
    def __init__(self, fail_on_subject=None):
        self.fail_on_subject = fail_on_subject
        self.prompts = []

    def __call__(self, prompt, system_prompt, schema):
        self.prompts.append((prompt, system_prompt))
        if self.fail_on_subject and f"Subject: {self.fail_on_subject}\n" in prompt:
            raise LLMSchemaError("unparseable reply")
        return schema.model_validate(ANALYSIS)


def _seed(db, account, make_message, threads=("t1",)):
    engine = MailboxSyncEngine(db, service_factory=lambda db, acc: None)
    for i, tid in enumerate(threads):
        engine.store_thread(
            account,
            {"id": tid, "messages": [make_message(f"m-{tid}", tid, subject=f"Subject {tid}", sender="dave@x.com", offset_min=i)]},
        )
    batch_process_threads(db, unclassified_threads(db, account.id))


def test_process_email_updates_classification_in_place(db_session, session_factory, account, make_message):
    _seed(db_session, account, make_message)
    before = db_session.query(ThreadClassification).one()
    model = FakeModel()
    service = LLMEscalationService(session_factory, user_context="I lead the launch", generate=model, model="gpt-test")

    analysis = service.process_email("m-t1")
    assert analysis.category == ThreadCategory.ACTIVE_DISCUSSION
    assert "I lead the launch" in model.prompts[0][1]
    assert "From: dave@x.com" in model.prompts[0][0]

    db_session.expire_all()
    row = db_session.query(ThreadClassification).one()
    assert row.id == before.id
    assert row.is_automated is False
    assert row.category == "ACTIVE_DISCUSSION"
    assert row.confidence_score == 0.92
    assert row.processed_by == "llm:gpt-test"
    assert row.summary_points == ["Dave asks about the launch date"]
    assert row.scheduling_todos == [{"what": "Launch sync", "when": "Friday 10am", "with": "Dave"}]
    assert row.action_todos == [{"action": "Confirm launch date", "deadline": "Thursday"}]
    assert row.email_breakdown == "Dave needs a decision."


def test_missing_email_and_missing_classification(db_session, session_factory, account, make_message):
    service = LLMEscalationService(session_factory, generate=FakeModel())
    with pytest.raises(EmailNotFoundError):
        service.process_email("nope")

    MailboxSyncEngine(db_session, service_factory=lambda db, acc: None).store_thread(
        account, {"id": "t9", "messages": [make_message("m9", "t9")]}
    )
    with pytest.raises(ClassificationNotFoundError):
        service.process_email("m9")


def test_batch_failure_does_not_stop_siblings(db_session, session_factory, account, make_message):
    _seed(db_session, account, make_message, threads=("a", "b", "c"))
    service = LLMEscalationService(session_factory, generate=FakeModel(fail_on_subject="Subject b"), model="m")

    result = service.process_batch(["m-a", "m-b", "m-c"], concurrency=1)
    assert sorted(result.succeeded) == ["m-a", "m-c"]
    assert result.failed == ["m-b"]

    db_session.expire_all()
    by_thread = {r.thread_id: r.processed_by for r in db_session.query(ThreadClassification)}
    assert by_thread == {"a": "llm:m", "b": "rules", "c": "llm:m"}


def test_pending_ids_and_unclassified_sweep(db_session, session_factory, account, make_message):
    _seed(db_session, account, make_message, threads=("a", "b"))
    service = LLMEscalationService(session_factory, generate=FakeModel(), model="m")

    assert sorted(service.pending_email_ids()) == ["m-a", "m-b"]
    result = service.process_unclassified_emails()
    assert sorted(result.succeeded) == ["m-a", "m-b"]
    assert service.pending_email_ids() == []
    assert service.process_unclassified_emails().succeeded == []


def test_record_llm_job_metric(db_session):
    record_llm_job_metric(db_session, "m1", "t1", success=False, duration_ms=12, job_id="job-1", error="boom")
    row = db_session.query(LLMJobMetric).one()
    assert (row.job_id, row.success, row.duration_ms, row.error) == ("job-1", False, 12, "boom")


def _client_returning(content):
    client = MagicMock()
    client.chat.completions.create.return_value = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))]
    )
    return client


def test_generate_structured_strips_code_fences():
    client = _client_returning("```json\n" + json.dumps(ANALYSIS) + "\n```")
    with patch("mailsift.llm_client._get_openai_client", return_value=client):
        analysis = generate_structured("prompt", "system", EmailAnalysis)
    assert analysis.scheduling_todos[0].with_ == "Dave"
    assert client.chat.completions.create.call_args.kwargs["response_format"] == {"type": "json_object"}


def test_generate_structured_schema_error():
    client = _client_returning('{"category": "SOMETHING_ELSE"}')
    with patch("mailsift.llm_client._get_openai_client", return_value=client):
        with pytest.raises(LLMSchemaError):
            generate_structured("prompt", "system", EmailAnalysis)


def test_generate_structured_transport_error():
    client = MagicMock()
    client.chat.completions.create.side_effect = openai.APIConnectionError(
        request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    )
    with patch("mailsift.llm_client._get_openai_client", return_value=client):
        with pytest.raises(LLMTransportError):
            generate_structured("prompt", "system", EmailAnalysis)
