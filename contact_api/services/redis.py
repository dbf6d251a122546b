# contact_api/services/redis.py
"""Shared Redis client for the state store, plus a lock for check-then-act."""
from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any, Dict, Optional

import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff

from contact_api.core.config import Settings, settings
from contact_api.core.exceptions import ServiceUnavailableError
from contact_api.core.logging import get_structlog_logger

logger = get_structlog_logger(__name__)

_redis_client: Optional[redis.Redis] = None


def build_redis_client(config: Settings) -> redis.Redis:
    return redis.from_url(
        config.redis_url,
        max_connections=config.redis_max_connections,
        socket_timeout=config.redis_socket_timeout,
        socket_connect_timeout=config.redis_socket_connect_timeout,
        retry=Retry(ExponentialBackoff(cap=1.0), retries=3),
        retry_on_error=[redis.ConnectionError, redis.TimeoutError],
        health_check_interval=30,
        decode_responses=True,
    )


async def init_redis_pool(config: Settings = settings) -> redis.Redis:
    """Connect once and keep the client for the life of the process."""
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    client = build_redis_client(config)
    try:
        await client.ping()
    except redis.RedisError as e:
        await client.aclose()
        logger.error("store.redis_connect_failed", error=str(e))
        raise ServiceUnavailableError(
            message="State store unavailable",
            details={"backend": "redis"},
        ) from e

    _redis_client = client
    logger.info("store.redis_connected", max_connections=config.redis_max_connections)
    return client


async def get_redis_client() -> redis.Redis:
    if _redis_client is None:
        return await init_redis_pool()
    return _redis_client


async def close_redis_pool() -> None:
    global _redis_client

    if _redis_client is None:
        return
    # from_url clients own their pool, so this also disconnects it
    await _redis_client.aclose()
    _redis_client = None
    logger.info("store.redis_closed")


class RedisLock:
    """Distributed lock using Redis.

    ``acquire`` polls until ``blocking_timeout`` elapses; the lock itself
    expires after ``timeout`` seconds so a crashed holder cannot wedge a key.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        key: str,
        timeout: float = 5.0,
        blocking_timeout: float = 5.0,
        retry_interval: float = 0.01,
    ):
        self.redis = redis_client
        self.key = f"lock:{key}"
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout
        self.retry_interval = retry_interval
        self.identifier: Optional[str] = None

    async def acquire(self) -> bool:
        """Acquire distributed lock."""
        self.identifier = str(uuid.uuid4())
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.blocking_timeout

        while True:
            acquired = await self.redis.set(
                self.key,
                self.identifier,
                px=int(self.timeout * 1000),
                nx=True,
            )
            if acquired:
                logger.debug("lock.acquired", key=self.key, identifier=self.identifier[:8])
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(self.retry_interval)

    async def release(self) -> bool:
        """Release distributed lock."""
        if not self.identifier:
            return False

        # Only delete the lock if we still own it
        lua_script = """
            if redis.call("get", KEYS[1]) == ARGV[1] then
                return redis.call("del", KEYS[1])
            else
                return 0
            end
        """

        result = await self.redis.eval(lua_script, 1, self.key, self.identifier)
        released = result > 0

        if released:
            logger.debug("lock.released", key=self.key, identifier=self.identifier[:8])

        return released

    async def __aenter__(self):
        try:
            acquired = await self.acquire()
        except redis.RedisError as e:
            logger.error("lock.acquire_error", key=self.key, error=str(e))
            raise ServiceUnavailableError(message="State store unavailable") from e
        if not acquired:
            logger.warning("lock.acquire_timeout", key=self.key)
            raise ServiceUnavailableError(message="State store busy")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        try:
            await self.release()
        except redis.RedisError as e:
            logger.error("lock.release_error", key=self.key, error=str(e))


async def health_check() -> Dict[str, Any]:
    """Ping the state store and report the round trip."""
    started = time.perf_counter()
    try:
        client = await get_redis_client()
        await client.ping()
    except (ServiceUnavailableError, redis.RedisError) as e:
        logger.warning("store.health_check_failed", error=str(e))
        return {"status": "unhealthy", "error": "unreachable"}

    return {
        "status": "healthy",
        "latency_ms": round((time.perf_counter() - started) * 1000, 2),
    }
