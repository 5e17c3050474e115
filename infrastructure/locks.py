"""
Keyed locks serialising work on one transaction.

``InProcessKeyedLock`` covers a single worker process; ``RedisKeyedLock``
extends the guarantee across processes using redis-py's asyncio lock.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from redis import asyncio as aioredis
from redis.exceptions import LockError, RedisError

from core.config import settings
from core.logging_config import get_logger


logger = get_logger(__name__)


class LockAcquireTimeout(TimeoutError):
    pass


class InProcessKeyedLock:
    """Per-key asyncio locks with reference counting so idle keys are freed."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class RedisKeyedLock:
    """Distributed keyed lock backed by ``redis.asyncio.lock.Lock``."""

    def __init__(
        self,
        client: aioredis.Redis,
        *,
        namespace: str = "settlement-ledger",
        timeout: float = 30.0,
        blocking_timeout: float = 10.0,
    ) -> None:
        self._client = client
        self._namespace = namespace
        self._timeout = timeout
        self._blocking_timeout = blocking_timeout

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        lock_key = f"{self._namespace}:lock:{key}"
        lock = self._client.lock(
            lock_key,
            timeout=self._timeout,
            blocking_timeout=self._blocking_timeout,
        )
        acquired = await lock.acquire()
        if not acquired:
            raise LockAcquireTimeout(f"获取锁失败: {lock_key}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except (LockError, RedisError) as exc:
                # 锁已过期或被其他持有者释放
                logger.error("lock_release_failed", key=lock_key, error=str(exc))

    async def aclose(self) -> None:
        await self._client.aclose()


def build_keyed_lock(redis_url: Optional[str] = None):
    """配置了 Redis 时使用分布式锁，否则使用进程内锁"""
    url = redis_url if redis_url is not None else settings.redis.url
    if not url:
        logger.info("keyed_lock_backend", backend="in_process")
        return InProcessKeyedLock()
    client = aioredis.from_url(url, max_connections=settings.redis.max_connections)
    logger.info("keyed_lock_backend", backend="redis")
    return RedisKeyedLock(
        client,
        namespace=settings.redis.namespace,
        timeout=settings.redis.lock_timeout,
        blocking_timeout=settings.redis.lock_blocking_timeout,
    )
