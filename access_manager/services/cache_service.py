"""Redis service: health check and the orchestration run lock."""

import logging
from typing import Optional

import redis
from redis.exceptions import LockError

from access_manager.core.config import settings
from access_manager.core.exceptions import JobLockedError

logger = logging.getLogger("access_manager.redis")

JOB_LOCK_NAME = "access_manager:job_lock"


class RunLock:
    """Non-blocking Redis lock held for the duration of one job run.

    ``acquire`` raises ``JobLockedError`` when another run holds the lock and
    lets ``redis.RedisError`` through when Redis cannot be reached.
    """

    def __init__(self, client: redis.Redis, name: str = JOB_LOCK_NAME, ttl_seconds: Optional[int] = None):
        self.name = name
        self.ttl_seconds = ttl_seconds or settings.JOB_LOCK_TTL_SECONDS
        self._lock = client.lock(name, timeout=self.ttl_seconds, blocking=False)

    def acquire(self) -> None:
        if not self._lock.acquire():
            raise JobLockedError(f"Another run holds {self.name}")
        logger.debug("Acquired %s (ttl %ss)", self.name, self.ttl_seconds)

    def release(self) -> None:
        try:
            self._lock.release()
        except LockError:
            # TTL ran out mid-run; another run may already own the key.
            logger.warning("Run lock %s expired before release", self.name)


class NullLock:
    """Stand-in when locking is disabled (single-instance deployments, CLI --no-lock)."""

    def acquire(self) -> None:
        pass

    def release(self) -> None:
        pass


class CacheService:
    """Redis-backed coordination service."""

    def __init__(self):
        self._client: Optional[redis.Redis] = None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                settings.REDIS_URL,
                decode_responses=True,
                max_connections=100,
            )
        return self._client

    def run_lock(self, name: str = JOB_LOCK_NAME, ttl_seconds: Optional[int] = None) -> RunLock:
        return RunLock(self.client, name=name, ttl_seconds=ttl_seconds)

    def health_check(self) -> bool:
        """Check if Redis is reachable."""
        try:
            return self.client.ping()
        except redis.ConnectionError:
            return False


cache_service = CacheService()
