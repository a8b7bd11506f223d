"""Initial schema: accounts, sync states, threads, e-mails, classifications, LLM job metrics.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "email_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index(op.f("ix_email_accounts_id"), "email_accounts", ["id"])
    op.create_index(op.f("ix_email_accounts_email"), "email_accounts", ["email"], unique=True)

    op.create_table(
        "email_sync_states",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sync_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("threads_synced", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("emails_synced", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_history_id", sa.String(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
    )
    op.create_index(op.f("ix_email_sync_states_id"), "email_sync_states", ["id"])
    op.create_index(op.f("ix_email_sync_states_account_id"), "email_sync_states", ["account_id"])
    op.create_index(
        "ix_sync_states_account_status_completed",
        "email_sync_states",
        ["account_id", "status", "completed_at"],
    )

    op.create_table(
        "email_threads",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("subject", sa.String(), nullable=True),
        sa.Column("history_id", sa.String(), nullable=True),
        sa.Column("last_message_at", sa.DateTime(), nullable=True),
        sa.Column("thread_summary", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index(op.f("ix_email_threads_account_id"), "email_threads", ["account_id"])
    op.create_index(op.f("ix_email_threads_last_message_at"), "email_threads", ["last_message_at"])

    op.create_table(
        "emails",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("thread_id", sa.String(), sa.ForeignKey("email_threads.id", ondelete="CASCADE"), nullable=False),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("from_address", sa.String(), nullable=True),
        sa.Column("to_addresses", sa.JSON(), nullable=True),
        sa.Column("cc_addresses", sa.JSON(), nullable=True),
        sa.Column("bcc_addresses", sa.JSON(), nullable=True),
        sa.Column("subject", sa.String(), nullable=True),
        sa.Column("body_text", sa.Text(), nullable=True),
        sa.Column("body_html", sa.Text(), nullable=True),
        sa.Column("snippet", sa.Text(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=True),
        sa.Column("labels", sa.JSON(), nullable=True),
        sa.Column("received_at", sa.DateTime(), nullable=True),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index(op.f("ix_emails_thread_id"), "emails", ["thread_id"])
    op.create_index(op.f("ix_emails_account_id"), "emails", ["account_id"])
    op.create_index(op.f("ix_emails_content_hash"), "emails", ["content_hash"], unique=True)
    op.create_index("ix_emails_thread_received", "emails", ["thread_id", "received_at"])

    op.create_table(
        "thread_classifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("thread_id", sa.String(), sa.ForeignKey("email_threads.id", ondelete="CASCADE"), nullable=False),
        sa.Column("is_automated", sa.Boolean(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("confidence_score", sa.Float(), nullable=False),
        sa.Column("reasoning", sa.Text(), nullable=True),
        sa.Column("summary_points", sa.JSON(), nullable=True),
        sa.Column("scheduling_todos", sa.JSON(), nullable=True),
        sa.Column("action_todos", sa.JSON(), nullable=True),
        sa.Column("email_breakdown", sa.Text(), nullable=True),
        sa.Column("processed_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("thread_id"),
    )
    op.create_index(op.f("ix_thread_classifications_id"), "thread_classifications", ["id"])
    op.create_index(op.f("ix_thread_classifications_category"), "thread_classifications", ["category"])
    op.create_index(
        "ix_classifications_automated_processed",
        "thread_classifications",
        ["is_automated", "processed_by"],
    )

    op.create_table(
        "llm_job_metrics",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("email_id", sa.String(), nullable=False),
        sa.Column("thread_id", sa.String(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index(op.f("ix_llm_job_metrics_id"), "llm_job_metrics", ["id"])
    op.create_index(op.f("ix_llm_job_metrics_job_id"), "llm_job_metrics", ["job_id"])
    op.create_index(op.f("ix_llm_job_metrics_email_id"), "llm_job_metrics", ["email_id"])
    op.create_index(op.f("ix_llm_job_metrics_thread_id"), "llm_job_metrics", ["thread_id"])


def downgrade() -> None:
    op.drop_table("llm_job_metrics")
    op.drop_table("thread_classifications")
    op.drop_table("emails")
    op.drop_table("email_threads")
    op.drop_table("email_sync_states")
    op.drop_table("email_accounts")
