"""Cache service with Redis (production) or in-process memory backend.

A single-process deployment runs without Redis; enabling REDIS_ENABLED moves
the run locks and the cache-backed step log to Redis so several worker
processes can share them.
"""

import json
import time
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from core.config import Settings
from core.logging import get_logger

logger = get_logger(__name__)


class CacheError(Exception):
    """The cache backend failed to serve a request."""


class CacheService:
    """Async key/value cache with TTLs.

    Backend selection:
    - Redis: When REDIS_ENABLED=true and REDIS_URL is reachable
    - Memory: Otherwise (single process only)

    Values are stored as JSON. Backend failures surface as ``CacheError`` so
    callers that need durability can react to them.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.redis: Optional[redis.Redis] = None
        self.use_redis = settings.redis_enabled and bool(settings.redis_url)
        # key -> (value, expires_at or None)
        self._memory: Dict[str, Tuple[Any, Optional[float]]] = {}

    async def startup(self) -> None:
        """Initialize cache connection."""
        if not self.use_redis:
            logger.info("Using in-memory cache", redis_enabled=self.settings.redis_enabled)
            return

        self.redis = redis.from_url(
            self.settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
            retry_on_timeout=True,
        )
        try:
            await self.redis.ping()
        except RedisError as e:
            logger.warning("Redis connection failed, falling back to memory", error=str(e))
            await self.redis.aclose()
            self.redis = None
            self.use_redis = False
            return
        logger.info("Redis cache initialized", url=self.settings.redis_url)

    async def shutdown(self) -> None:
        """Close cache connections."""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            logger.info("Redis cache connections closed")
        self._memory.clear()

    def is_redis_available(self) -> bool:
        return self.use_redis and self.redis is not None

    @property
    def backend(self) -> str:
        return "redis" if self.is_redis_available() else "memory"

    # ------------------------------------------------------------------ memory

    def _memory_get(self, key: str) -> Optional[Any]:
        entry = self._memory.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._memory[key]
            return None
        return value

    def _memory_set(self, key: str, value: Any, ttl: Optional[int]) -> None:
        expires_at = time.monotonic() + ttl if ttl else None
        self._memory[key] = (value, expires_at)

    # --------------------------------------------------------------------- api

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache, None when absent or expired."""
        if not self.is_redis_available():
            return self._memory_get(key)
        try:
            raw = await self.redis.get(key)
        except RedisError as e:
            raise CacheError(f"get {key}: {e}") from e
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Set value in cache with optional TTL (defaults to CACHE_TTL)."""
        ttl = ttl or self.settings.cache_ttl
        if not self.is_redis_available():
            self._memory_set(key, value, ttl)
            return
        try:
            await self.redis.set(key, json.dumps(value), ex=ttl)
        except RedisError as e:
            raise CacheError(f"set {key}: {e}") from e

    async def set_if_absent(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Atomically set ``key`` only if it does not exist. True if set."""
        ttl = ttl or self.settings.cache_ttl
        if not self.is_redis_available():
            if self._memory_get(key) is not None:
                return False
            self._memory_set(key, value, ttl)
            return True
        try:
            return bool(await self.redis.set(key, json.dumps(value), ex=ttl, nx=True))
        except RedisError as e:
            raise CacheError(f"set_if_absent {key}: {e}") from e

    async def delete(self, key: str) -> bool:
        """Delete value from cache."""
        if not self.is_redis_available():
            return self._memory.pop(key, None) is not None
        try:
            return bool(await self.redis.delete(key))
        except RedisError as e:
            raise CacheError(f"delete {key}: {e}") from e

    async def delete_if_equals(self, key: str, expected: Any) -> bool:
        """Delete ``key`` only while it still holds ``expected`` (lock release)."""
        if not self.is_redis_available():
            if self._memory_get(key) == expected:
                del self._memory[key]
                return True
            return False
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                current = await pipe.get(key)
                if current is None or json.loads(current) != expected:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(key)
                await pipe.execute()
                return True
        except RedisError as e:
            raise CacheError(f"delete_if_equals {key}: {e}") from e

    async def expire_if_equals(self, key: str, expected: Any, ttl: float) -> bool:
        """Reset the TTL of ``key`` only while it still holds ``expected`` (lock renewal)."""
        if not self.is_redis_available():
            if self._memory_get(key) == expected:
                self._memory_set(key, expected, ttl)
                return True
            return False
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                current = await pipe.get(key)
                if current is None or json.loads(current) != expected:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.pexpire(key, int(ttl * 1000))
                await pipe.execute()
                return True
        except RedisError as e:
            raise CacheError(f"expire_if_equals {key}: {e}") from e

    async def exists(self, key: str) -> bool:
        if not self.is_redis_available():
            return self._memory_get(key) is not None
        try:
            return bool(await self.redis.exists(key))
        except RedisError as e:
            raise CacheError(f"exists {key}: {e}") from e
