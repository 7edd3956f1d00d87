"""Cache-aside layer.

Every method on a ``CacheClient`` degrades instead of raising: an unreachable
or unconfigured backend reads as a miss and writes report ``False``. The rest
of the application stays correct with no cache at all.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from config import Settings
from errors import CacheUnavailable

logger = logging.getLogger(__name__)


class CacheClient(Protocol):
    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl_seconds: int) -> bool: ...

    async def delete(self, key: str) -> bool: ...

    async def close(self) -> None: ...


class NullCache:
    """Used when no cache backend is configured."""

    async def get(self, key: str) -> Optional[Any]:
        return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        return False

    async def delete(self, key: str) -> bool:
        return False

    async def close(self) -> None:
        return None


class RedisCache:
    def __init__(self, client: Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str, *, timeout: float = 2.0) -> "RedisCache":
        client = Redis.from_url(
            url,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
            decode_responses=True,
        )
        return cls(client)

    async def _call(self, op: str, key: str, coro: Awaitable[Any]) -> Any:
        try:
            return await coro
        except (RedisError, OSError) as exc:
            raise CacheUnavailable(f"cache {op} failed for {key!r}: {exc}") from exc

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self._call("get", key, self.client.get(key))
        except CacheUnavailable as exc:
            logger.warning(str(exc))
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"cache get: dropping undecodable value for {key!r}")
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        payload = json.dumps(value)
        try:
            await self._call("set", key, self.client.setex(key, ttl_seconds, payload))
        except CacheUnavailable as exc:
            logger.warning(str(exc))
            return False
        return True

    async def delete(self, key: str) -> bool:
        try:
            await self._call("delete", key, self.client.delete(key))
        except CacheUnavailable as exc:
            logger.warning(str(exc))
            return False
        return True

    async def close(self) -> None:
        try:
            await self.client.aclose()
        except (RedisError, OSError) as exc:
            logger.warning(f"cache close failed: {exc}")


def create_cache(settings: Settings) -> CacheClient:
    if not settings.redis_url:
        logger.warning("FINANCE_REDIS_URL not set; caching is disabled")
        return NullCache()
    logger.info("cache: using redis backend")
    return RedisCache.from_url(settings.redis_url, timeout=settings.cache_timeout_secs)


async def cached(
    cache: CacheClient,
    key: str,
    ttl_seconds: int,
    compute: Callable[[], Awaitable[Any]],
) -> Any:
    hit = await cache.get(key)
    if hit is not None:
        return hit
    value = await compute()
    await cache.set(key, value, ttl_seconds)
    return value
