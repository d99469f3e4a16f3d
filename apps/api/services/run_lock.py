"""Named single-flight locks for background runs (Redis-backed, in-process fallback)."""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Tuple

import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)

RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

EXTEND_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('expire', KEYS[1], ARGV[2])
end
return 0
"""

# key -> (owner token, monotonic expiry)
_local_locks: Dict[str, Tuple[str, float]] = {}


def _acquire_local(key: str, token: str, ttl_seconds: int) -> bool:
    now = time.monotonic()
    entry = _local_locks.get(key)
    if entry is not None and entry[1] > now:
        return False
    _local_locks[key] = (token, now + ttl_seconds)
    return True


def _extend_local(key: str, token: str, ttl_seconds: int) -> bool:
    entry = _local_locks.get(key)
    if entry is None or entry[0] != token:
        return False
    _local_locks[key] = (token, time.monotonic() + ttl_seconds)
    return True


def _release_local(key: str, token: str) -> None:
    entry = _local_locks.get(key)
    if entry is not None and entry[0] == token:
        _local_locks.pop(key, None)


def reset_local_run_locks() -> None:
    _local_locks.clear()


class RunLock:
    """Handle on a run lock; truthy while this caller holds it."""

    def __init__(
        self,
        name: str,
        key: str,
        token: str,
        ttl_seconds: int,
        redis_client: Optional[redis.Redis],
        acquired: bool,
    ) -> None:
        self.name = name
        self.key = key
        self.token = token
        self.ttl_seconds = ttl_seconds
        self._redis = redis_client
        self.acquired = acquired

    def __bool__(self) -> bool:
        return self.acquired

    async def extend(self) -> bool:
        """Push the expiry out by another TTL. False means the lock is no longer ours."""
        if not self.acquired:
            return False
        if self._redis is not None:
            try:
                extended = bool(await self._redis.eval(EXTEND_SCRIPT, 1, self.key, self.token, self.ttl_seconds))
            except Exception as exc:
                logger.warning("Could not extend run lock %s: %s", self.name, exc)
                extended = False
        else:
            extended = _extend_local(self.key, self.token, self.ttl_seconds)
        if not extended:
            logger.warning("Run lock %s was lost", self.name)
            self.acquired = False
        return extended


@asynccontextmanager
async def single_flight(name: str, ttl_seconds: int = 300) -> AsyncIterator[RunLock]:
    """Yield a ``RunLock`` that is truthy when this caller holds the lock for ``name``.

    The lock lives in Redis (``SET NX EX``) so runs serialize across processes; when
    Redis is unreachable an in-process lock keeps a single process from overlapping
    itself. Callers that get a falsy lock must skip their run. Long runs call
    ``extend()`` before each external side effect and stop once it returns False.
    """
    key = f"truth:run-lock:{name}"
    token = uuid.uuid4().hex
    ttl_seconds = max(int(ttl_seconds), 1)
    redis_client = None
    try:
        redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        acquired = bool(await redis_client.set(key, token, nx=True, ex=ttl_seconds))
    except Exception as exc:
        logger.debug("Redis run lock unavailable for %s, using local lock: %s", name, exc)
        if redis_client is not None:
            await redis_client.aclose()
            redis_client = None
        acquired = _acquire_local(key, token, ttl_seconds)

    lock = RunLock(name, key, token, ttl_seconds, redis_client, acquired)
    try:
        yield lock
    finally:
        if redis_client is not None:
            try:
                if lock.acquired:
                    await redis_client.eval(RELEASE_SCRIPT, 1, key, token)
            except Exception as exc:
                logger.warning("Could not release run lock %s: %s", name, exc)
            finally:
                await redis_client.aclose()
        elif lock.acquired:
            _release_local(key, token)
