"""Pipeline metrics: queue backlog, dead-letter sizes, recent classification mix."""
import logging
from collections import Counter
from typing import Optional

import redis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import ThreadClassification

logger = logging.getLogger(__name__)

SYNC_QUEUE = "sync"
LLM_QUEUE = "llm-escalation"
QUEUES = (SYNC_QUEUE, LLM_QUEUE)
DEAD_LETTER_PREFIX = "mailsift:dead:"


def dead_letter_key(queue: str) -> str:
    return f"{DEAD_LETTER_PREFIX}{queue}"


def get_queue_metrics(client: Optional[redis.Redis]) -> dict:
    """Pending messages per Celery queue (Redis list length) and dead-letter sizes."""
    if client is None:
        return {"status": "unavailable", "queues": {}}
    queues = {}
    for name in QUEUES:
        try:
            queues[name] = {
                "pending": client.llen(name),
                "failed": client.llen(dead_letter_key(name)),
            }
        except redis.RedisError as e:
            logger.warning(f"Could not read metrics for queue {name}: {e}")
            queues[name] = {"error": str(e)}
    return {"status": "connected", "queues": queues}


def summarize_classifications(rows: list[tuple[bool, str]]) -> dict:
    return {
        "automated": sum(1 for is_automated, _ in rows if is_automated),
        "human": sum(1 for is_automated, _ in rows if not is_automated),
        "categories": dict(Counter(category for _, category in rows)),
    }


async def get_database_metrics(db: AsyncSession, limit: int = 100) -> dict:
    """Automated/human split and category counts over the most recent classifications."""
    result = await db.execute(
        select(ThreadClassification.is_automated, ThreadClassification.category)
        .order_by(ThreadClassification.created_at.desc(), ThreadClassification.id.desc())
        .limit(limit)
    )
    return summarize_classifications([(r[0], r[1]) for r in result.all()])
