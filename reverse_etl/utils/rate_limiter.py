"""Rate limiting for outbound destination calls."""

import asyncio
import logging
import time
import uuid
from typing import Optional

import redis.asyncio as redis
from aiolimiter import AsyncLimiter

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Blocking rate limiter for destination API calls.

    Every call to ``acquire`` waits until a slot is available. Slots are
    handed out by an in-process ``AsyncLimiter``; when a Redis URL is given
    the caller additionally waits on a sliding window shared by every
    process using the same prefix (several loaders writing to one base).
    """

    def __init__(
        self,
        calls: int,
        window: float,
        redis_url: Optional[str] = None,
        prefix: str = "rate_limit",
        poll_interval: float = 0.05,
    ):
        self.calls = calls
        self.window = window
        self.prefix = prefix
        self.poll_interval = poll_interval
        self._limiter = AsyncLimiter(calls, window)
        self.redis_client = (
            redis.from_url(redis_url, decode_responses=True) if redis_url else None
        )

    async def acquire(self, key: str = "default") -> None:
        """Wait until a request slot is available."""
        await self._limiter.acquire()
        if self.redis_client is None:
            return
        while not await self.check_rate_limit(key):
            await asyncio.sleep(self.poll_interval)

    async def check_rate_limit(self, key: str) -> bool:
        """Record a request in the shared window if it still has room."""
        full_key = f"{self.prefix}:{key}"
        now = time.time()
        window_start = now - self.window

        # Remove old entries
        await self.redis_client.zremrangebyscore(full_key, 0, window_start)

        count = await self.redis_client.zcard(full_key)
        if count >= self.calls:
            return False

        await self.redis_client.zadd(full_key, {f"{now}:{uuid.uuid4().hex}": now})
        await self.redis_client.expire(full_key, max(1, int(self.window) + 1))
        return True

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()
            logger.debug("Closed rate limiter redis connection for %s", self.prefix)
