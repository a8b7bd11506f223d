"""Pydantic schemas for the API and the LLM structured-output contract."""
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import SyncKind, ThreadCategory


# LLM contract
class SchedulingTodo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    what: str
    when: str
    with_: str = Field(alias="with")


class ActionTodo(BaseModel):
    action: str
    deadline: Optional[str] = None


class EmailAnalysis(BaseModel):
    category: ThreadCategory
    confidence_score: float = Field(ge=0.0, le=1.0)
    reasoning: str
    summary_points: List[str]
    scheduling_todos: List[SchedulingTodo] = Field(default_factory=list)
    action_todos: List[ActionTodo] = Field(default_factory=list)
    email_breakdown: Optional[str] = None


# Sync API
class SyncRequest(BaseModel):
    email: str
    sync_type: SyncKind = SyncKind.INCREMENTAL
    days_to_sync: Optional[int] = Field(default=None, ge=1, le=365)
    user_context: Optional[str] = None


class SyncEnqueued(BaseModel):
    job_id: str
    status: str = "enqueued"


class JobStatus(BaseModel):
    job_id: str
    state: str
    progress: int = 0
    result: Optional[Any] = None


class SyncStateResponse(BaseModel):
    id: int
    sync_type: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    threads_synced: int
    emails_synced: int
    last_history_id: Optional[str] = None
    error: Optional[str] = None

    class Config:
        from_attributes = True


class HealthResponse(BaseModel):
    status: str
    database: str
    broker: str
