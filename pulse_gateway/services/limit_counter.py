from __future__ import annotations

import logging
import math
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from redis.exceptions import RedisError

from pulse_gateway.models.errors import RateLimitError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitStatus:
    limit: int
    remaining: int
    reset_at: int


class RateLimiter:
    """Per-key requests-per-minute gate over a rolling window.

    Accepted requests are stored as timestamps in a Redis sorted set keyed by
    key id, or in an in-process list when no Redis client is configured. The
    check reads the window then records; concurrent requests may both pass.
    """

    def __init__(
        self,
        redis_client: Any | None = None,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.redis = redis_client
        self.window_seconds = window_seconds
        self.clock = clock
        self._windows: dict[str, list[float]] = {}

    @staticmethod
    def _key(key_id: str) -> str:
        return f"ratelimit:key_rpm:{key_id}"

    async def check(self, key_id: str, limit: int | None) -> RateLimitStatus | None:
        if limit is None or limit <= 0:
            return None

        now = self.clock()
        cutoff = now - self.window_seconds
        bucket = self._key(key_id)
        try:
            count, oldest = await self._read_window(bucket, cutoff, now)
        except RedisError:
            # Store outages fail open; the request is not recorded.
            logger.exception("rate limit store unavailable", extra={"key_id": key_id})
            return None

        if count + 1 > limit:
            retry_after = max(1, math.ceil(oldest + self.window_seconds - now))
            logger.info("rate limit exceeded", extra={"key_id": key_id, "limit": limit, "retry_after": retry_after})
            raise RateLimitError(
                message=f"Rate limit of {limit} requests per minute exceeded",
                retry_after=retry_after,
                limit=limit,
            )

        try:
            await self._record(bucket, now)
        except RedisError:
            logger.exception("rate limit store unavailable", extra={"key_id": key_id})
        return RateLimitStatus(limit=limit, remaining=limit - count - 1, reset_at=math.ceil(oldest + self.window_seconds))

    async def _read_window(self, bucket: str, cutoff: float, now: float) -> tuple[int, float]:
        if self.redis is None:
            window = [ts for ts in self._windows.get(bucket, []) if ts > cutoff]
            if window:
                self._windows[bucket] = window
            else:
                self._windows.pop(bucket, None)
            return len(window), window[0] if window else now

        pipe = self.redis.pipeline()
        pipe.zremrangebyscore(bucket, 0, cutoff)
        pipe.zrange(bucket, 0, 0, withscores=True)
        pipe.zcard(bucket)
        _, oldest, count = await pipe.execute()
        oldest_ts = float(oldest[0][1]) if oldest else now
        return int(count), oldest_ts

    async def _record(self, bucket: str, now: float) -> None:
        if self.redis is None:
            self._windows.setdefault(bucket, []).append(now)
            return

        pipe = self.redis.pipeline()
        pipe.zadd(bucket, {f"{now:.6f}:{uuid.uuid4().hex[:8]}": now})
        pipe.expire(bucket, self.window_seconds + 1)
        await pipe.execute()
