"""FastAPI application entrypoint."""
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .config import configure_logging, settings
from .database import get_db, init_db
from .routers import sync
from .services.account_lock import get_redis_client
from .services.monitor import get_database_metrics, get_queue_metrics


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_db()
    yield


app = FastAPI(
    title="mailsift API",
    description="Gmail sync, rule-based thread classification and LLM escalation",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sync.router)


@app.get("/api/health")
async def health(db: AsyncSession = Depends(get_db)):
    """Readiness: database reachable and broker reachable."""
    database = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        database = f"error: {e}"
    broker = "ok" if get_redis_client() is not None else "unavailable"
    body = {
        "status": "ok" if database == "ok" and broker == "ok" else "degraded",
        "database": database,
        "broker": broker,
    }
    return JSONResponse(body, status_code=200 if body["status"] == "ok" else 503)


@app.get("/api/pipeline/metrics")
async def pipeline_metrics(db: AsyncSession = Depends(get_db)):
    return {
        "queues": get_queue_metrics(get_redis_client()),
        "classifications": await get_database_metrics(db),
    }
