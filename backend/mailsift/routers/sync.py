"""Sync API: enqueue sync jobs, job status, SSE progress, sync history."""
import asyncio
import json

from celery.result import AsyncResult
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sse_starlette.sse import EventSourceResponse

from ..celery_app import celery_app
from ..database import get_db
from ..models import Account, SyncState
from ..schemas import JobStatus, SyncEnqueued, SyncRequest, SyncStateResponse
from ..tasks import run_sync_job

router = APIRouter(prefix="/api/sync", tags=["sync"])

TERMINAL_STATES = {"SUCCESS", "FAILURE", "REVOKED"}


def get_job_status(job_id: str) -> JobStatus:
    result = AsyncResult(job_id, app=celery_app)
    state = result.state
    info = result.info
    progress = 0
    payload = None
    if state == "PROGRESS" and isinstance(info, dict):
        progress = int(info.get("progress", 0))
    elif state == "SUCCESS":
        progress = 100
        payload = info
    elif state == "FAILURE":
        payload = {"error": str(info)}
    return JobStatus(job_id=job_id, state=state, progress=progress, result=payload)


@router.post("", response_model=SyncEnqueued, status_code=202)
def trigger_sync(request: SyncRequest):
    """Enqueue a sync job. Poll GET /api/sync/jobs/{job_id} or stream /events for progress."""
    job = run_sync_job.apply_async(
        kwargs={
            "email": request.email,
            "sync_type": request.sync_type.value,
            "days_to_sync": request.days_to_sync,
            "user_context": request.user_context,
        }
    )
    return SyncEnqueued(job_id=job.id)


@router.get("/jobs/{job_id}", response_model=JobStatus)
def job_status(job_id: str):
    return get_job_status(job_id)


async def _sse_generator(job_id: str, interval_s: float = 0.5):
    """Yield job status events until the job reaches a terminal state."""
    while True:
        status = get_job_status(job_id)
        yield {"data": json.dumps(status.model_dump(), default=str)}
        if status.state in TERMINAL_STATES:
            break
        await asyncio.sleep(interval_s)


@router.get("/jobs/{job_id}/events")
async def job_events(job_id: str):
    """SSE stream of job progress."""
    return EventSourceResponse(_sse_generator(job_id))


@router.get("/accounts/{email}/states", response_model=list[SyncStateResponse])
async def account_sync_states(email: str, limit: int = 20, db: AsyncSession = Depends(get_db)):
    account_id = (await db.execute(select(Account.id).where(Account.email == email))).scalar_one_or_none()
    if account_id is None:
        raise HTTPException(status_code=404, detail=f"No account for {email}")
    rows = await db.execute(
        select(SyncState)
        .where(SyncState.account_id == account_id)
        .order_by(SyncState.id.desc())
        .limit(min(max(limit, 1), 100))
    )
    return rows.scalars().all()
