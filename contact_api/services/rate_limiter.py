# contact_api/services/rate_limiter.py
from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from contact_api.core.exceptions import RateLimitExceeded
from contact_api.core.logging import get_structlog_logger
from contact_api.services.store import Clock, KeyValueStore

logger = get_structlog_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RateLimitStatus:
    limit: int
    remaining: int
    reset_at: float


class FixedWindowRateLimiter:
    """Fixed-window request counter per identifier.

    The first request of a window stores ``count=1`` and the window end;
    later requests increment until ``max_requests`` is reached, after which
    they are rejected without touching the counter.
    """

    def __init__(
        self,
        store: KeyValueStore,
        max_requests: int,
        window_seconds: float,
        prefix: str = "ratelimit",
        clock: Clock = time.time,
    ):
        self.store = store
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.prefix = prefix
        self.clock = clock

    def _key(self, identifier: str) -> str:
        return f"{self.prefix}:{identifier}"

    async def check(self, identifier: str) -> RateLimitStatus:
        key = self._key(identifier)

        async with self.store.lock(key):
            now = self.clock()
            record = await self.store.get(key)

            if record is None or now >= record["reset_at"]:
                record = {"count": 1, "reset_at": now + self.window_seconds}
            elif record["count"] >= self.max_requests:
                retry_after = max(1, math.ceil(record["reset_at"] - now))
                raise RateLimitExceeded(
                    retry_after=retry_after,
                    details={
                        "limit": self.max_requests,
                        "period": self.window_seconds,
                        "retry_after": retry_after,
                    },
                )
            else:
                record = {"count": record["count"] + 1, "reset_at": record["reset_at"]}

            await self.store.set(key, record, ttl=record["reset_at"] - now)

        return RateLimitStatus(
            limit=self.max_requests,
            remaining=max(0, self.max_requests - record["count"]),
            reset_at=record["reset_at"],
        )

    async def reset(self, identifier: str) -> None:
        await self.store.delete(self._key(identifier))


class OutboundRateLimiter:
    """Caps outbound calls per window by suspending callers, never rejecting.

    A caller that finds the window full sleeps until the window ends once,
    then opens a fresh window. Waiters queue on the lock, so each re-check
    happens exactly once per suspension.
    """

    def __init__(
        self,
        max_calls: int = 10,
        window_seconds: float = 1.0,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self.clock = clock
        self.sleep = sleep
        self._count = 0
        self._reset_at = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            now = self.clock()
            if now >= self._reset_at:
                self._count = 0
                self._reset_at = now + self.window_seconds

            if self._count >= self.max_calls:
                wait = self._reset_at - now
                logger.debug("crm.rate_limit_wait", wait_seconds=round(wait, 3))
                await self.sleep(wait)
                self._count = 0
                self._reset_at = self.clock() + self.window_seconds

            self._count += 1

    @property
    def window_count(self) -> int:
        return self._count
