"""
Per-payer locks serializing entitlement read-modify-write.

LocalPayerLocks covers a single process; RedisPayerLocks spans workers that
share one Redis.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Tuple

from redis import asyncio as aioredis
from redis.exceptions import LockError, RedisError

from core.logging_config import get_logger
from domain.common.exceptions import StorageUnavailableException


logger = get_logger(__name__)


class LocalPayerLocks:
    """One asyncio.Lock per payer, dropped once no task holds or waits on it."""

    def __init__(self) -> None:
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def hold(self, payer_email: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(payer_email, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[payer_email] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[payer_email]
            if users <= 1:
                del self._locks[payer_email]
            else:
                self._locks[payer_email] = (lock, users - 1)

    def __len__(self) -> int:
        return len(self._locks)


class RedisPayerLocks:
    def __init__(
        self,
        client: aioredis.Redis,
        *,
        namespace: str = "premium-billing",
        timeout: float = 15.0,
        blocking_timeout: float = 5.0,
    ) -> None:
        self._client = client
        self._namespace = namespace
        self._timeout = timeout
        self._blocking_timeout = blocking_timeout

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisPayerLocks":
        client = aioredis.from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client, **kwargs)

    def _key(self, payer_email: str) -> str:
        return f"{self._namespace}:lock:payer:{payer_email}"

    @asynccontextmanager
    async def hold(self, payer_email: str) -> AsyncIterator[None]:
        lock_key = self._key(payer_email)
        lock = self._client.lock(
            lock_key,
            timeout=self._timeout,
            blocking_timeout=self._blocking_timeout,
            thread_local=False,
        )
        acquired = await lock.acquire()
        if not acquired:
            logger.warning("payer_lock_timeout", lock_key=lock_key, blocking_timeout=self._blocking_timeout)
            raise StorageUnavailableException("payer_lock")
        try:
            yield
        finally:
            try:
                await lock.release()
            except (LockError, RedisError) as e:
                # lock expired before release
                logger.error("payer_lock_release_failed", lock_key=lock_key, error=str(e))

    async def aclose(self) -> None:
        await self._client.aclose()
