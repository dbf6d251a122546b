# contact_api/services/store.py
"""
Key-value state shared by the security and de-duplication components.

CSRF tokens, rate-limit counters and the submission cache all live behind
``KeyValueStore`` so the in-process ``MemoryStore`` and the cross-process
``RedisStore`` are interchangeable.
"""
from __future__ import annotations

import asyncio
import json
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis

from contact_api.core.config import Settings
from contact_api.core.exceptions import ServiceUnavailableError
from contact_api.core.logging import get_structlog_logger
from contact_api.services.redis import RedisLock, get_redis_client

logger = get_structlog_logger(__name__)

Clock = Callable[[], float]


class KeyValueStore(ABC):
    """Async key-value store with per-entry expiry."""

    @abstractmethod
    async def get(self, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store ``value``; ``ttl`` is in seconds, ``None`` means no expiry."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def pop(self, key: str) -> Any:
        """Atomically read and delete ``key``; ``None`` when absent."""

    @abstractmethod
    def lock(self, key: str, timeout: Optional[float] = None):
        """Async context manager serializing check-then-act on ``key``.

        ``timeout`` bounds how long a holder may keep a distributed lock.
        """

    async def purge_expired(self) -> int:
        return 0

    async def close(self) -> None:
        return None


class MemoryStore(KeyValueStore):
    """Single-process store. Expired entries are evicted lazily on access."""

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._locks: Dict[str, List[Any]] = {}

    def _live_entry(self, key: str) -> Optional[Tuple[Any, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return entry

    async def get(self, key: str, default: Any = None) -> Any:
        entry = self._live_entry(key)
        return default if entry is None else entry[0]

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        if ttl is not None and ttl <= 0:
            self._data.pop(key, None)
            return
        expires_at = self._clock() + ttl if ttl is not None else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def pop(self, key: str) -> Any:
        entry = self._live_entry(key)
        if entry is None:
            return None
        del self._data[key]
        return entry[0]

    @asynccontextmanager
    async def lock(self, key: str, timeout: Optional[float] = None) -> AsyncIterator[None]:
        # [lock, holders]; dropped once nobody holds or waits on it
        slot = self._locks.get(key)
        if slot is None:
            slot = self._locks[key] = [asyncio.Lock(), 0]
        slot[1] += 1
        try:
            async with slot[0]:
                yield
        finally:
            slot[1] -= 1
            if slot[1] == 0:
                self._locks.pop(key, None)

    async def purge_expired(self) -> int:
        now = self._clock()
        expired = [
            key for key, (_, expires_at) in self._data.items()
            if expires_at is not None and now >= expires_at
        ]
        for key in expired:
            del self._data[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._data)


class RedisStore(KeyValueStore):
    """Redis-backed store; values are JSON encoded and expire server-side."""

    def __init__(self, redis_client: redis.Redis, prefix: str = "contact", lock_timeout: float = 5.0):
        self.redis = redis_client
        self.prefix = prefix
        self.lock_timeout = lock_timeout

    def _make_key(self, key: str) -> str:
        """Create namespaced key."""
        return f"{self.prefix}:{key}"

    @staticmethod
    def _decode(raw: Any) -> Any:
        if raw is None:
            return None
        return json.loads(raw)

    async def get(self, key: str, default: Any = None) -> Any:
        try:
            raw = await self.redis.get(self._make_key(key))
        except redis.RedisError as e:
            logger.error("store.get_error", key=key, error=str(e))
            raise ServiceUnavailableError(message="State store unavailable") from e
        value = self._decode(raw)
        return default if value is None else value

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        full_key = self._make_key(key)
        try:
            if ttl is None:
                await self.redis.set(full_key, json.dumps(value))
            elif ttl <= 0:
                await self.redis.delete(full_key)
            else:
                await self.redis.set(full_key, json.dumps(value), px=max(1, int(ttl * 1000)))
        except redis.RedisError as e:
            logger.error("store.set_error", key=key, error=str(e))
            raise ServiceUnavailableError(message="State store unavailable") from e

    async def delete(self, key: str) -> bool:
        try:
            return await self.redis.delete(self._make_key(key)) > 0
        except redis.RedisError as e:
            logger.error("store.delete_error", key=key, error=str(e))
            raise ServiceUnavailableError(message="State store unavailable") from e

    async def pop(self, key: str) -> Any:
        try:
            raw = await self.redis.getdel(self._make_key(key))
        except redis.RedisError as e:
            logger.error("store.pop_error", key=key, error=str(e))
            raise ServiceUnavailableError(message="State store unavailable") from e
        return self._decode(raw)

    def lock(self, key: str, timeout: Optional[float] = None) -> RedisLock:
        hold = timeout or self.lock_timeout
        return RedisLock(self.redis, self._make_key(key), timeout=hold, blocking_timeout=hold)


async def build_store(settings: Settings, clock: Clock = time.time) -> KeyValueStore:
    """Create the state store selected by ``STATE_BACKEND``."""
    if settings.state_backend == "redis":
        client = await get_redis_client()
        logger.info("store.initialized", backend="redis")
        return RedisStore(client)

    logger.info("store.initialized", backend="memory")
    return MemoryStore(clock=clock)
