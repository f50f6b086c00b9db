import logging
from contextlib import contextmanager

import redis

from entitlements.errors import SweepAlreadyRunning
from entitlements.extensions import get_redis_client

logger = logging.getLogger(__name__)


@contextmanager
def redis_lock(key: str, ttl: int = 300):
    """
    Non-blocking distributed lock. Raises SweepAlreadyRunning when another
    process holds key. Without a Redis connection the body runs unlocked.
    """
    client = get_redis_client()
    if client is None:
        logger.warning("Redis unavailable, running without single-runner lock", extra={"lock": key})
        yield
        return

    lock = client.lock(f"lock:{key}", timeout=ttl)
    if not lock.acquire(blocking=False):
        raise SweepAlreadyRunning(f"{key} is already running elsewhere", lock=key)

    try:
        yield
    finally:
        try:
            lock.release()
        except redis.exceptions.LockError:
            logger.warning("Lock expired before release", extra={"lock": key, "ttl": ttl})
