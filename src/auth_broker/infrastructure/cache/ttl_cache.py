"""Short-lived caches used by the auth manager

- BoundedTTLCache: in-process map with a per-entry TTL and a size cap
- SessionCache: session-verification results, shared through Redis when
  available so every instance sees the same entries, with a per-user index
  so deactivating a user can evict all of that user's cached sessions
"""

import json
import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Optional

from auth_broker.domain.models.auth import Session

logger = logging.getLogger(__name__)


class BoundedTTLCache:
    """In-process cache with expiry and least-recently-inserted eviction

    Args:
        max_entries: Size cap; the oldest entry is evicted past it
        ttl_seconds: Lifetime of every entry
        clock: Monotonic time source
        on_evict: Called with (key, value) whenever an entry leaves the cache
    """

    def __init__(
        self,
        max_entries: int = 1000,
        ttl_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
        on_evict: Optional[Callable[[str, Any], None]] = None,
    ):
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._on_evict = on_evict
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()

    def _evict(self, key: str) -> None:
        _, value = self._entries.pop(key)
        if self._on_evict is not None:
            self._on_evict(key, value)

    def _purge_expired(self) -> None:
        # Entries share one TTL, so insertion order is expiry order
        now = self._clock()
        while self._entries:
            key, (expires_at, _) = next(iter(self._entries.items()))
            if expires_at > now:
                break
            self._evict(key)

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            self._evict(key)
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        if key in self._entries:
            self._evict(key)
        self._purge_expired()
        self._entries[key] = (self._clock() + self.ttl_seconds, value)
        while len(self._entries) > self.max_entries:
            self._evict(next(iter(self._entries)))

    def delete(self, key: str) -> None:
        if key in self._entries:
            self._evict(key)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class SessionCache:
    """Session-verification cache (Redis preferred, in-memory fallback)"""

    KEY_PREFIX = "session_cache:"
    USER_INDEX_PREFIX = "session_cache_user:"

    def __init__(self, redis_client=None, ttl_seconds: int = 60, max_entries: int = 1000, clock=time.monotonic):
        self._redis = redis_client
        self.ttl_seconds = ttl_seconds
        self._memory = BoundedTTLCache(
            max_entries=max_entries, ttl_seconds=ttl_seconds, clock=clock, on_evict=self._unindex,
        )
        self._user_index: dict[str, set[str]] = {}

    def _unindex(self, key: str, session: Session) -> None:
        keys = self._user_index.get(session.local_user_id)
        if keys is None:
            return
        keys.discard(key)
        if not keys:
            del self._user_index[session.local_user_id]

    async def get(self, key: str) -> Optional[Session]:
        if self._redis is not None:
            try:
                raw = await self._redis.get(f"{self.KEY_PREFIX}{key}")
                return Session.from_dict(json.loads(raw)) if raw else None
            except Exception as e:
                logger.debug(f"Redis unavailable for session cache read, using in-memory: {e}")
        return self._memory.get(key)

    async def set(self, key: str, session: Session) -> None:
        if self._redis is not None:
            try:
                pipe = self._redis.pipeline(transaction=True)
                payload = json.dumps(session.to_dict(include_upstream=True))
                pipe.setex(f"{self.KEY_PREFIX}{key}", self.ttl_seconds, payload)
                if session.local_user_id:
                    index_key = f"{self.USER_INDEX_PREFIX}{session.local_user_id}"
                    pipe.sadd(index_key, key)
                    pipe.expire(index_key, self.ttl_seconds)
                await pipe.execute()
                return
            except Exception as e:
                logger.warning(f"Redis unavailable for session cache write, using in-memory: {e}")

        self._memory.set(key, session)
        if session.local_user_id:
            self._user_index.setdefault(session.local_user_id, set()).add(key)

    async def delete(self, key: str) -> None:
        if self._redis is not None:
            try:
                await self._redis.delete(f"{self.KEY_PREFIX}{key}")
            except Exception as e:
                logger.debug(f"Redis unavailable for session cache delete: {e}")
        self._memory.delete(key)

    async def invalidate_user(self, local_user_id: str) -> int:
        """Evict every cached session of one user

        Returns:
            Number of cache keys evicted
        """
        evicted = 0
        if self._redis is not None:
            try:
                index_key = f"{self.USER_INDEX_PREFIX}{local_user_id}"
                keys = await self._redis.smembers(index_key)
                if keys:
                    await self._redis.delete(*[f"{self.KEY_PREFIX}{k}" for k in keys])
                await self._redis.delete(index_key)
                evicted += len(keys)
            except Exception as e:
                logger.warning(f"Redis unavailable for session cache invalidation: {e}")

        for key in self._user_index.pop(local_user_id, set()):
            self._memory.delete(key)
            evicted += 1
        return evicted

    async def clear(self) -> None:
        if self._redis is not None:
            try:
                async for key in self._redis.scan_iter(match=f"{self.KEY_PREFIX}*"):
                    await self._redis.delete(key)
                async for key in self._redis.scan_iter(match=f"{self.USER_INDEX_PREFIX}*"):
                    await self._redis.delete(key)
            except Exception as e:
                logger.warning(f"Redis unavailable for session cache clear: {e}")
        self._memory.clear()
        self._user_index.clear()

    def __len__(self) -> int:
        return len(self._memory)
