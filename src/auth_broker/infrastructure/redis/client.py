"""Redis Client for Auth Broker

Provides async Redis client management for the session cache, token
revocation, webhook delivery ledger and rate limiting. Every consumer has
an in-memory fallback, so the broker keeps serving when Redis is down.
"""

import logging
from typing import Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class RedisClient:
    """Async Redis client wrapper"""

    def __init__(self, url: str):
        self.url = url
        self._client: Optional[redis.Redis] = None

    async def connect(self) -> bool:
        """Establish Redis connection

        Returns:
            True if Redis answered a ping, False otherwise
        """
        if self._client:
            return True

        client = redis.from_url(self.url, decode_responses=True)
        try:
            await client.ping()
        except Exception as e:
            logger.warning(f"Redis unavailable at {self.url}, using in-memory fallbacks: {e}")
            await client.aclose()
            return False

        self._client = client
        logger.info(f"Connected to Redis: {self.url}")
        return True

    async def disconnect(self):
        """Close Redis connection"""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Disconnected from Redis")

    def get_optional_client(self) -> Optional[redis.Redis]:
        return self._client

    async def health_check(self) -> bool:
        """Check Redis connection health

        Returns:
            True if Redis is responsive, False otherwise
        """
        try:
            if not self._client:
                return False
            await self._client.ping()
            return True
        except Exception as e:
            logger.error(f"Redis health check failed: {e}")
            return False
