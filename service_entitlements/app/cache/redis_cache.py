"""
Redis client wrapper for the Entitlements Service cache.

Only transport concerns live here: key prefixing, TTLs and translating
driver failures into ``UnavailableError``. Deciding what to do when the
cache is down is the cached store's job.
"""

import asyncio
from typing import Any, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import UnavailableError
from shared.logging import get_logger


CACHE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


class RedisCache:
    """Redis caching layer for entitlements."""

    def __init__(
        self,
        redis_url: str,
        *,
        key_prefix: str = "entitlement:",
        socket_timeout: float = 5.0,
        client: Optional[redis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.socket_timeout = socket_timeout
        self.logger = get_logger("entitlements.cache.redis")
        self.redis: Optional[redis.Redis] = client

    async def start(self) -> bool:
        """Start the Redis cache.

        Returns whether the server answered. A dead cache is not fatal: the
        client reconnects lazily and callers fall back to the store meanwhile.
        """
        if self.redis is None:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.socket_timeout,
                socket_timeout=self.socket_timeout,
                retry_on_timeout=False,
                health_check_interval=30
            )

        try:
            await self.redis.ping()
        except CACHE_ERRORS as e:
            self.logger.warning("Redis cache unreachable at startup, continuing degraded", error=str(e))
            return False

        self.logger.info("Redis cache started")
        return True

    async def stop(self):
        """Stop the Redis cache."""
        if self.redis is not None:
            try:
                await self.redis.aclose()
            except CACHE_ERRORS as e:
                self.logger.warning("Error closing Redis connection", error=str(e))
            self.redis = None
            self.logger.info("Redis cache stopped")

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _client(self) -> redis.Redis:
        if self.redis is None:
            raise UnavailableError("redis", "Cache not started")
        return self.redis

    async def get(self, key: str) -> Optional[str]:
        """Get a raw cached value; a value that is not UTF-8 reads as a miss."""
        try:
            return await self._client().get(self._key(key))
        except UnicodeDecodeError as e:
            self.logger.warning("Undecodable cache value", key=key, error=str(e))
            return None
        except CACHE_ERRORS as e:
            raise UnavailableError("redis", f"GET failed: {e}") from e

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store a raw value with an expiry."""
        try:
            await self._client().setex(self._key(key), max(1, int(ttl_seconds)), value)
        except CACHE_ERRORS as e:
            raise UnavailableError("redis", f"SETEX failed: {e}") from e

    async def delete(self, *keys: str) -> int:
        """Delete keys in a single round trip; returns how many existed."""
        if not keys:
            return 0
        try:
            return await self._client().delete(*(self._key(k) for k in keys))
        except CACHE_ERRORS as e:
            raise UnavailableError("redis", f"DEL failed: {e}") from e

    async def clear(self) -> int:
        """Delete every key under this cache's prefix."""
        client = self._client()
        deleted = 0
        try:
            batch = []
            async for key in client.scan_iter(match=f"{self.key_prefix}*", count=500):
                batch.append(key)
                if len(batch) >= 500:
                    deleted += await client.delete(*batch)
                    batch = []
            if batch:
                deleted += await client.delete(*batch)
        except CACHE_ERRORS as e:
            raise UnavailableError("redis", f"Cache clear failed: {e}") from e

        self.logger.info("Cache cleared", deleted=deleted)
        return deleted

    async def get_server_info(self) -> Dict[str, Any]:
        """Server-side cache statistics."""
        try:
            info = await self._client().info()
        except CACHE_ERRORS as e:
            raise UnavailableError("redis", f"INFO failed: {e}") from e

        return {
            "redis_version": info.get("redis_version"),
            "used_memory": info.get("used_memory_human"),
            "connected_clients": info.get("connected_clients"),
            "keyspace_hits": info.get("keyspace_hits"),
            "keyspace_misses": info.get("keyspace_misses"),
        }

    async def health_check(self) -> bool:
        """Check Redis health."""
        try:
            await self._client().ping()
            return True
        except (UnavailableError,) + CACHE_ERRORS:
            return False
