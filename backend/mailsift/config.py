"""Application configuration. All sensitive config from .env."""
import logging
from typing import Optional

from pydantic_settings import BaseSettings

from .errors import ConfigurationError


class Settings(BaseSettings):
    """App settings from environment."""

    # Database - default SQLite for easy local dev; use DATABASE_URL for PostgreSQL
    database_url: str = "sqlite:///./mailsift.db"

    # SQLAlchemy pooling (Postgres only).
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout_s: int = 30
    db_pool_recycle_s: int = 1800
    sqlite_busy_timeout_ms: int = 5000

    # Gmail OAuth client; per-account tokens live on the Account row.
    gmail_client_id: str = ""
    gmail_client_secret: str = ""
    gmail_token_uri: str = "https://oauth2.googleapis.com/token"

    # Gmail paging / rate limiting
    gmail_messages_max_results: int = 100
    gmail_history_max_results: int = 100
    gmail_page_delay_s: float = 1.0
    email_upsert_chunk_size: int = 100

    # Sync window (days) per sync kind. "fallback" is used when an incremental
    # sync has no usable cursor.
    sync_window_days: dict[str, int] = {"full": 7, "backfill": 30, "fallback": 14}

    # Per-call retry (Gmail, store writes)
    retry_max_attempts: int = 3
    retry_initial_delay_s: float = 1.0

    # AI - set OPENAI_API_KEY for LLM escalation
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_temperature: float = 0.2
    default_user_context: str = ""

    # Redis (for Celery, account locks and the dead-letter lists)
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: Optional[str] = None  # defaults to redis_url if not set

    # Orchestration
    recent_sync_threshold_s: int = 60
    periodic_sync_interval_s: int = 15 * 60
    escalation_sweep_interval_s: int = 60 * 60
    sync_job_max_retries: int = 3
    llm_job_max_retries: int = 3
    job_retry_backoff_max_s: int = 600
    sync_task_soft_time_limit_s: int = 25 * 60
    sync_task_time_limit_s: int = 30 * 60
    llm_task_time_limit_s: int = 2 * 60
    stalled_job_timeout_s: int = 60 * 60
    sync_worker_concurrency: int = 2
    llm_queue_concurrency: int = 5
    llm_queue_rate_limit: str = "10/s"
    llm_batch_concurrency: int = 4

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def celery_broker(self) -> str:
        return self.celery_broker_url or self.redis_url

    def window_for(self, kind: str) -> int:
        """Days to look back for a sync kind (full, backfill, fallback)."""
        try:
            return int(self.sync_window_days[kind])
        except KeyError:
            raise ConfigurationError(f"No sync window configured for '{kind}'") from None


settings = Settings()


REQUIRED_BY_ROLE = {
    "sync": ("database_url", "celery_broker", "gmail_client_id", "gmail_client_secret"),
    "llm": ("database_url", "celery_broker", "openai_api_key"),
    "beat": ("database_url", "celery_broker"),
    "api": ("database_url", "celery_broker"),
}


def missing_settings(role: str, current: Optional[Settings] = None) -> list[str]:
    current = current or settings
    names = REQUIRED_BY_ROLE.get(role)
    if names is None:
        raise ConfigurationError(f"Unknown worker role '{role}'")
    return [name for name in names if not getattr(current, name)]


def validate_settings(role: str, current: Optional[Settings] = None) -> None:
    """Raise ConfigurationError if any setting the role needs is empty."""
    missing = missing_settings(role, current)
    if missing:
        raise ConfigurationError(
            f"Missing required settings for {role}: {', '.join(n.upper() for n in missing)}"
        )


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
