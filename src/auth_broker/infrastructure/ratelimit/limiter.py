"""Rate Limiter

Sliding-window request counting per endpoint class and client.

- Redis: one sorted set per key holding request timestamps, trimmed and
  counted in a single MULTI/EXEC pipeline
- Fallback: in-process fixed-window counter under the same key

Backend errors are logged at warning level and the request is allowed
(fail open).
"""

import logging
import math
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import HTTPException, Request, Response

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    window_seconds: int
    max_requests: int
    message: str


RATE_LIMITS: dict[str, RateLimitConfig] = {
    "auth": RateLimitConfig(60, 100, "Too many authentication attempts, please try again later"),
    "api": RateLimitConfig(900, 100, "Too many API requests, please try again later"),
    "search": RateLimitConfig(60, 60, "Too many search requests, please slow down"),
    "admin": RateLimitConfig(600, 200, "Too many admin requests, please try again later"),
    "upload": RateLimitConfig(3600, 10, "Upload limit exceeded, please try again later"),
    "default": RateLimitConfig(900, 50, "Too many requests, please try again later"),
}


def get_limit_config(limit_type: str) -> RateLimitConfig:
    return RATE_LIMITS.get(limit_type, RATE_LIMITS["default"])


def make_key(limit_type: str, client_id: str) -> str:
    return f"rate_limit:{limit_type}:{client_id}"


def get_client_ip(request: Request) -> str:
    """Client address, honouring reverse-proxy headers"""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    count: int
    remaining: int
    reset_at: float  # epoch seconds
    retry_after: int = 0

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "limit": self.limit,
            "count": self.count,
            "remaining": self.remaining,
            "reset_at": math.ceil(self.reset_at),
            "retry_after": self.retry_after,
        }


class RateLimiter:
    """Dual-backend rate limiter

    Args:
        redis_client: Async Redis client, or None for in-memory only
        clock: Time source in epoch seconds
    """

    def __init__(self, redis_client=None, clock: Callable[[], float] = time.time):
        self._redis = redis_client
        self._clock = clock
        # key -> [count, reset_at]
        self._memory: dict[str, list] = {}

    async def check(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        """Count one request against key"""
        if self._redis is not None:
            try:
                return await self._check_redis(key, config)
            except Exception as e:
                logger.warning(f"Redis rate limiting failed, falling back to memory: {e}")
        return self._check_memory(key, config)

    async def _check_redis(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        now = self._clock()
        window_start = now - config.window_seconds
        member = f"{now}-{uuid.uuid4().hex[:8]}"

        pipe = self._redis.pipeline(transaction=True)
        pipe.zremrangebyscore(key, 0, window_start)
        pipe.zcard(key)
        pipe.zrange(key, 0, 0, withscores=True)
        pipe.zadd(key, {member: now})
        pipe.expire(key, config.window_seconds)
        results = await pipe.execute()

        count = int(results[1])
        oldest = results[2][0][1] if results[2] else now
        reset_at = oldest + config.window_seconds

        if count >= config.max_requests:
            # Rejected requests do not occupy a slot
            await self._redis.zrem(key, member)
            return RateLimitResult(
                allowed=False,
                limit=config.max_requests,
                count=count + 1,
                remaining=0,
                reset_at=reset_at,
                retry_after=self._retry_after(reset_at, now, config),
            )

        return RateLimitResult(
            allowed=True,
            limit=config.max_requests,
            count=count + 1,
            remaining=max(0, config.max_requests - count - 1),
            reset_at=reset_at,
        )

    def _check_memory(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        now = self._clock()
        entry = self._memory.get(key)
        if entry is None or now >= entry[1]:
            self._purge_expired(now)
            entry = [0, now + config.window_seconds]
            self._memory[key] = entry

        entry[0] += 1
        count, reset_at = entry
        allowed = count <= config.max_requests
        return RateLimitResult(
            allowed=allowed,
            limit=config.max_requests,
            count=count,
            remaining=max(0, config.max_requests - count),
            reset_at=reset_at,
            retry_after=0 if allowed else self._retry_after(reset_at, now, config),
        )

    def _purge_expired(self, now: float) -> None:
        expired = [k for k, (_, reset_at) in self._memory.items() if now >= reset_at]
        for k in expired:
            del self._memory[k]

    @staticmethod
    def _retry_after(reset_at: float, now: float, config: RateLimitConfig) -> int:
        return max(1, min(config.window_seconds, math.ceil(reset_at - now)))

    async def get_status(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        """Current usage of key without counting a request"""
        now = self._clock()
        if self._redis is not None:
            try:
                window_start = now - config.window_seconds
                count = int(await self._redis.zcount(key, f"({window_start}", "+inf"))
                oldest = await self._redis.zrangebyscore(key, f"({window_start}", "+inf", start=0, num=1, withscores=True)
                reset_at = (oldest[0][1] if oldest else now) + config.window_seconds
                return self._status(count, reset_at, now, config)
            except Exception as e:
                logger.warning(f"Redis rate limit status failed, reading memory: {e}")

        entry = self._memory.get(key)
        if entry is None or now >= entry[1]:
            return self._status(0, now + config.window_seconds, now, config)
        return self._status(entry[0], entry[1], now, config)

    def _status(self, count: int, reset_at: float, now: float, config: RateLimitConfig) -> RateLimitResult:
        allowed = count < config.max_requests
        return RateLimitResult(
            allowed=allowed,
            limit=config.max_requests,
            count=count,
            remaining=max(0, config.max_requests - count),
            reset_at=reset_at,
            retry_after=0 if allowed else self._retry_after(reset_at, now, config),
        )

    async def clear(self, key: str) -> bool:
        """Drop all recorded requests for key"""
        cleared = False
        if self._redis is not None:
            try:
                cleared = await self._redis.delete(key) > 0
                logger.info(f"Cleared Redis rate limit for {key}")
            except Exception as e:
                logger.warning(f"Redis clear failed, clearing memory: {e}")
        if self._memory.pop(key, None) is not None:
            cleared = True
        return cleared


class RateLimit:
    """FastAPI dependency applying one endpoint class's limit

    Usage:
        @router.post("/credentials", dependencies=[Depends(RateLimit("auth"))])
    """

    def __init__(self, limit_type: str = "default", config: Optional[RateLimitConfig] = None):
        self.limit_type = limit_type
        self.config = config or get_limit_config(limit_type)

    async def __call__(self, request: Request, response: Response) -> None:
        if request.method == "OPTIONS":
            return

        broker = request.app.state.broker
        if not broker.settings.rate_limit_enabled:
            return

        client_ip = get_client_ip(request)
        try:
            result = await broker.rate_limiter.check(make_key(self.limit_type, client_ip), self.config)
        except Exception as e:
            logger.warning(f"Rate limiting error, allowing request: {e}")
            return

        if not result.allowed:
            logger.warning(
                f"Rate limit exceeded for {client_ip} on {self.limit_type}: {result.count}/{result.limit}"
            )
            raise HTTPException(
                status_code=429,
                detail={
                    "error": "Rate limit exceeded",
                    "message": self.config.message,
                    "retry_after": result.retry_after,
                },
                headers={**result.headers(), "Retry-After": str(result.retry_after)},
            )

        response.headers.update(result.headers())
