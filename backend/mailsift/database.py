"""Database engines and sessions.

- API request handlers use AsyncSession (asyncpg / aiosqlite).
- Celery workers, the LLM batch pool and Alembic use sync Session (psycopg / sqlite).
"""

from __future__ import annotations

from typing import AsyncGenerator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from .config import settings


def _is_sqlite(url: URL) -> bool:
    return url.drivername.startswith("sqlite")


def _with_driver(url: URL, drivername: str) -> URL:
    """Return a copy of URL with a different drivername."""
    return url.set(drivername=drivername)


def _pool_kwargs() -> dict:
    return {
        "pool_size": max(1, int(settings.db_pool_size)),
        "max_overflow": max(0, int(settings.db_max_overflow)),
        "pool_timeout": max(1, int(settings.db_pool_timeout_s)),
        "pool_recycle": max(0, int(settings.db_pool_recycle_s)),
    }


raw_url: URL = make_url(settings.database_url)

# ----------------------------
# Sync engine/session (workers)
# ----------------------------

if _is_sqlite(raw_url):
    # NullPool so each worker thread gets its own connection.
    timeout_s = max(0.0, float(settings.sqlite_busy_timeout_ms) / 1000.0)
    sync_engine = create_engine(
        raw_url,
        connect_args={"check_same_thread": False, "timeout": timeout_s},
        poolclass=NullPool,
    )

    @event.listens_for(sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):
        """
        WAL lets the API read while a sync worker writes; busy_timeout waits on
        locks instead of failing immediately.
        """
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.execute(f"PRAGMA busy_timeout={int(settings.sqlite_busy_timeout_ms)};")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()
else:
    # Plain postgresql://... gets psycopg for sync usage.
    sync_url = raw_url
    if sync_url.drivername == "postgresql":
        sync_url = _with_driver(sync_url, "postgresql+psycopg")
    sync_engine = create_engine(sync_url, pool_pre_ping=True, **_pool_kwargs())

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=sync_engine)

# ----------------------------
# Async engine/session (API)
# ----------------------------

async_url = raw_url
async_engine_kwargs: dict = {"pool_pre_ping": True}
if _is_sqlite(async_url):
    if async_url.drivername == "sqlite":
        async_url = _with_driver(async_url, "sqlite+aiosqlite")
else:
    if async_url.drivername == "postgresql":
        async_url = _with_driver(async_url, "postgresql+asyncpg")
    async_engine_kwargs.update(_pool_kwargs())

async_engine = create_async_engine(async_url, **async_engine_kwargs)
AsyncSessionLocal = async_sessionmaker(async_engine, expire_on_commit=False, autoflush=False)

# ----------------------------
# Helpers
# ----------------------------


def init_db():
    """
    Create tables for local SQLite only.

    Postgres schema is managed via Alembic.
    """
    if not _is_sqlite(raw_url):
        return
    from .models import Base
    Base.metadata.create_all(bind=sync_engine)


def dispose_engines() -> None:
    """Release pooled sync connections (worker shutdown)."""
    sync_engine.dispose()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an AsyncSession."""
    async with AsyncSessionLocal() as session:
        yield session
