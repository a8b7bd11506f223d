"""
Redis client and per-account sync locks.

A sync job holds `mailsift:lock:sync:<account_id>` while it runs so two
workers never sync the same mailbox at once. If Redis is unreachable the
lock degrades to a no-op and the recent-sync guard is the only protection.
"""
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

import redis

from ..config import settings

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "mailsift:lock:sync:"

_redis_client: Optional[redis.Redis] = None
_redis_unavailable = False  # Track if Redis connection failed


def get_redis_client() -> Optional[redis.Redis]:
    """
    Get or create Redis client.
    Returns None if Redis unavailable (connection failed).
    """
    global _redis_client, _redis_unavailable

    # If we already know Redis is unavailable, skip connection attempts
    if _redis_unavailable:
        return None

    if _redis_client is not None:
        return _redis_client

    try:
        client = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        client.ping()
        logger.debug("Redis connected successfully")
        _redis_client = client
        return _redis_client
    except redis.RedisError as e:
        logger.warning(f"Redis unavailable: {e}. Account locks disabled.")
        _redis_unavailable = True
        return None


def close_redis_client() -> None:
    global _redis_client, _redis_unavailable
    if _redis_client is not None:
        _redis_client.close()
    _redis_client = None
    _redis_unavailable = False


def lock_key(account_id: int) -> str:
    return f"{LOCK_KEY_PREFIX}{account_id}"


@contextmanager
def account_lock(account_id: int, client: Optional[redis.Redis] = None) -> Iterator[bool]:
    """
    Try to take the account's sync lock without blocking.

    Yields True when the caller owns the lock (or Redis is down), False when
    another job holds it. The lock expires after the sync hard time limit so a
    crashed worker cannot wedge the account.
    """
    client = client if client is not None else get_redis_client()
    if client is None:
        yield True
        return

    lock = client.lock(lock_key(account_id), timeout=settings.sync_task_time_limit_s, blocking=False)
    acquired = lock.acquire(blocking=False)
    try:
        yield acquired
    finally:
        if acquired:
            try:
                lock.release()
            except redis.exceptions.LockError as e:
                # Expired while we held it; another job may own it now.
                logger.warning(f"Sync lock for account {account_id} expired before release: {e}")
