"""Redis client for sessions, advisory locks and rate limiting"""
import logging
from contextlib import contextmanager
from typing import Optional

import redis
from redis.exceptions import LockError

from app.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def set_redis_client(client) -> None:
    """Replace the Redis client (used by tests and alternative deployments)"""
    global _client
    _client = client


# Session TTL (30 days)
SESSION_TTL = 30 * 24 * 60 * 60


def set_session(session_id: str, user_id: int) -> None:
    """Store session in Redis"""
    key = f"session:{session_id}"
    get_redis_client().setex(key, SESSION_TTL, user_id)


def get_session(session_id: str) -> Optional[int]:
    """Get user_id from session"""
    key = f"session:{session_id}"
    user_id = get_redis_client().get(key)
    return int(user_id) if user_id else None


def delete_session(session_id: str) -> None:
    """Delete session from Redis"""
    get_redis_client().delete(f"session:{session_id}")


def increment_rate_limit(identifier: str, window: int) -> int:
    """Increment a fixed-window rate limit counter and return the current count"""
    key = f"ratelimit:{identifier}"
    client = get_redis_client()
    count = client.incr(key)
    if count == 1:
        client.expire(key, window)
    return int(count)


def get_rate_limit_count(identifier: str) -> int:
    """Get current rate limit count"""
    count = get_redis_client().get(f"ratelimit:{identifier}")
    return int(count) if count else 0


class LockUnavailable(Exception):
    """Raised when an advisory lock is already held by someone else"""


@contextmanager
def advisory_lock(lock_key: str, timeout: int = 30):
    """Hold a non-blocking distributed lock for the duration of the block.

    The lock expires after ``timeout`` seconds so a crashed holder cannot
    block the key forever. Only the owner token can release it.

    Raises:
        LockUnavailable: If the lock is held by another request
    """
    lock = get_redis_client().lock(lock_key, timeout=timeout, blocking=False)
    if not lock.acquire():
        raise LockUnavailable(lock_key)
    try:
        yield lock
    finally:
        try:
            lock.release()
        except LockError:
            # Expired mid-operation and possibly re-acquired by another request
            logger.warning(f"Advisory lock {lock_key} expired before release")
