"""
Optional Redis read-through cache.

Never authoritative: writes invalidate entries instead of updating them, and
every operation degrades to a miss/no-op when Redis is unset or unreachable.
"""
from typing import Any, Awaitable, Callable, Optional
import asyncio
import json
import logging

import redis.asyncio as aioredis

import config

logger = logging.getLogger(__name__)


def cart_key(user_id) -> str:
    return f"cart:{user_id}"


def orders_key(user_id) -> str:
    return f"orders:{user_id}"


def orders_pattern(user_id) -> str:
    return f"orders:{user_id}*"


def order_key(order_id) -> str:
    return f"order:{order_id}"


def product_key(product_id) -> str:
    return f"product:{product_id}"


def vendor_key(vendor_id) -> str:
    return f"vendor:{vendor_id}"


def category_key(category_id) -> str:
    return f"category:{category_id}"


class CacheService:
    def __init__(
        self,
        url: Optional[str] = None,
        key_prefix: str = config.CACHE_KEY_PREFIX,
        timeout: float = config.CACHE_TIMEOUT_SECONDS,
        client: Optional[Any] = None,
    ):
        self.url = url
        self.key_prefix = key_prefix
        self.timeout = timeout
        self._client = client
        self._ready = client is not None

    async def connect(self) -> None:
        if self._client is not None or not self.url:
            if not self.url and self._client is None:
                logger.info("Cache disabled: no CACHE_URL configured")
            return
        try:
            self._client = aioredis.from_url(
                self.url,
                socket_timeout=self.timeout,
                socket_connect_timeout=self.timeout,
                decode_responses=True,
            )
            await asyncio.wait_for(self._client.ping(), timeout=self.timeout)
            self._ready = True
            logger.info("Redis cache connected")
        except Exception as e:
            logger.warning(f"Redis cache unavailable, continuing without it: {e}")
            self._ready = False

    async def close(self) -> None:
        if self._client is not None and self.url:
            await self._client.aclose()
        self._client = None
        self._ready = False

    def is_ready(self) -> bool:
        return self._ready and self._client is not None

    def _full_key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        if not self.is_ready():
            return None
        try:
            raw = await asyncio.wait_for(self._client.get(self._full_key(key)), timeout=self.timeout)
            return json.loads(raw) if raw is not None else None
        except Exception as e:
            logger.warning(f"Cache GET failed for '{key}': {e}")
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if not self.is_ready():
            return
        try:
            payload = json.dumps(value, default=str)
            await asyncio.wait_for(
                self._client.set(self._full_key(key), payload, ex=ttl_seconds), timeout=self.timeout
            )
        except Exception as e:
            logger.warning(f"Cache SET failed for '{key}': {e}")

    async def invalidate(self, key_or_pattern: str) -> int:
        """Delete one key, or every key matching a glob pattern (``*``, ``?``)."""
        if not self.is_ready():
            return 0
        try:
            if any(char in key_or_pattern for char in "*?["):
                keys = [key async for key in self._client.scan_iter(match=self._full_key(key_or_pattern))]
            else:
                keys = [self._full_key(key_or_pattern)]
            if not keys:
                return 0
            return await asyncio.wait_for(self._client.delete(*keys), timeout=self.timeout)
        except Exception as e:
            logger.warning(f"Cache invalidation failed for '{key_or_pattern}': {e}")
            return 0

    async def invalidate_many(self, *keys: str) -> None:
        for key in keys:
            await self.invalidate(key)

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[Any]], ttl_seconds: int) -> Any:
        """Read-through: return the cached value or load, store and return it."""
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await loader()
        if value is not None:
            await self.set(key, value, ttl_seconds)
        return value


cache = CacheService(url=config.CACHE_URL)
