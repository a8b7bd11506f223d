"""SQLAlchemy models."""
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Text,
    Float,
    Boolean,
    ForeignKey,
    Index,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import JSON

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SyncKind(str, Enum):
    FULL = "full"
    BACKFILL = "backfill"
    INCREMENTAL = "incremental"


class SyncStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ThreadCategory(str, Enum):
    ACTIVE_DISCUSSION = "ACTIVE_DISCUSSION"
    PASSIVE_DISCUSSION = "PASSIVE_DISCUSSION"
    NOTIFICATION = "NOTIFICATION"
    MEETING = "MEETING"
    NEWSLETTER = "NEWSLETTER"
    MARKETING = "MARKETING"
    NOT_RELEVANT = "NOT_RELEVANT"


PROCESSED_BY_RULES = "rules"


class Account(Base):
    __tablename__ = "email_accounts"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    # Credential handles are owned by the token-refresh path (gmail_service.build_gmail_service).
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    sync_states = relationship("SyncState", back_populates="account")


class SyncState(Base):
    """One row per sync attempt; the latest completed row holds the history cursor."""
    __tablename__ = "email_sync_states"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    sync_type = Column(String, nullable=False)  # full, backfill, incremental
    status = Column(String, nullable=False, default=SyncStatus.IN_PROGRESS.value)
    started_at = Column(DateTime, default=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    threads_synced = Column(Integer, default=0, nullable=False)
    emails_synced = Column(Integer, default=0, nullable=False)
    last_history_id = Column(String, nullable=True)
    error = Column(Text, nullable=True)

    account = relationship("Account", back_populates="sync_states")


class Thread(Base):
    __tablename__ = "email_threads"

    id = Column(String, primary_key=True)  # Gmail thread id
    account_id = Column(Integer, ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    subject = Column(String, nullable=True)
    history_id = Column(String, nullable=True)
    last_message_at = Column(DateTime, nullable=True, index=True)
    thread_summary = Column(JSON, nullable=True)  # latest_email, participants, unread_count
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    emails = relationship("Email", back_populates="thread", order_by="Email.received_at")
    classification = relationship("ThreadClassification", back_populates="thread", uselist=False)


class Email(Base):
    __tablename__ = "emails"

    id = Column(String, primary_key=True)  # Gmail message id
    thread_id = Column(String, ForeignKey("email_threads.id", ondelete="CASCADE"), nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    from_address = Column(String, nullable=True)
    to_addresses = Column(JSON, nullable=True)
    cc_addresses = Column(JSON, nullable=True)
    bcc_addresses = Column(JSON, nullable=True)
    subject = Column(String, nullable=True)
    body_text = Column(Text, nullable=True)
    body_html = Column(Text, nullable=True)
    snippet = Column(Text, nullable=True)
    is_read = Column(Boolean, default=True)
    labels = Column(JSON, nullable=True)  # Gmail system labels only
    received_at = Column(DateTime, nullable=True)
    content_hash = Column(String(64), unique=True, index=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    thread = relationship("Thread", back_populates="emails")


class ThreadClassification(Base):
    __tablename__ = "thread_classifications"

    id = Column(Integer, primary_key=True, index=True)
    thread_id = Column(String, ForeignKey("email_threads.id", ondelete="CASCADE"), unique=True, nullable=False)
    is_automated = Column(Boolean, nullable=False)
    category = Column(String, nullable=False, index=True)
    confidence_score = Column(Float, nullable=False)
    reasoning = Column(Text, nullable=True)
    summary_points = Column(JSON, nullable=True)
    scheduling_todos = Column(JSON, nullable=True)  # [{what, when, with}]
    action_todos = Column(JSON, nullable=True)  # [{action, deadline}]
    email_breakdown = Column(Text, nullable=True)
    processed_by = Column(String, nullable=True, default=PROCESSED_BY_RULES)  # rules | llm:<model>
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    thread = relationship("Thread", back_populates="classification")


class LLMJobMetric(Base):
    """Outcome of one escalation attempt."""
    __tablename__ = "llm_job_metrics"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(String, nullable=True, index=True)
    email_id = Column(String, nullable=False, index=True)
    thread_id = Column(String, nullable=True, index=True)
    success = Column(Boolean, nullable=False)
    duration_ms = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)


Index("ix_sync_states_account_status_completed", SyncState.account_id, SyncState.status, SyncState.completed_at)
Index("ix_emails_thread_received", Email.thread_id, Email.received_at)
Index("ix_classifications_automated_processed", ThreadClassification.is_automated, ThreadClassification.processed_by)
