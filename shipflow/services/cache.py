"""Best-effort read-through cache for rate quotes and carrier metadata.

Keys are ``{namespace}:{sha256(canonical JSON of the key object)}`` so any
JSON-serializable request can be used directly as a cache key. Every
failure is logged and treated as a miss: the cache only ever changes
latency, never results.
"""

import hashlib
import json
import logging
from typing import Any

import redis.asyncio as redis

logger = logging.getLogger(__name__)


def cache_key(namespace: str, key_obj: Any) -> str:
    """Build a namespaced key from any JSON-serializable object."""
    canonical = json.dumps(key_obj, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{namespace}:{digest}"


class NullCache:
    """Cache that never stores anything. Used when Redis is not configured."""

    namespace = "null"

    async def get(self, key_obj: Any) -> Any | None:
        return None

    async def set(self, key_obj: Any, value: Any, ttl_seconds: int | None = None) -> None:
        return None

    async def clear_all(self) -> int:
        return 0

    async def close(self) -> None:
        return None


class RedisCache:
    """Redis-backed JSON cache with per-entry expiry.

    Args:
        client: A ``redis.asyncio`` client.
        namespace: Key prefix shared by every entry.
        default_ttl_seconds: Expiry used when ``set`` gets no explicit TTL.
    """

    def __init__(
        self,
        client: redis.Redis,
        namespace: str = "easypost-cache",
        default_ttl_seconds: int = 7200,
    ) -> None:
        self._client = client
        self.namespace = namespace
        self._default_ttl = default_ttl_seconds

    @classmethod
    def from_url(
        cls,
        url: str,
        namespace: str = "easypost-cache",
        default_ttl_seconds: int = 7200,
    ) -> "RedisCache":
        client = redis.from_url(url, decode_responses=True)
        return cls(client, namespace=namespace, default_ttl_seconds=default_ttl_seconds)

    async def get(self, key_obj: Any) -> Any | None:
        key = cache_key(self.namespace, key_obj)
        try:
            raw = await self._client.get(key)
        except redis.RedisError as e:
            logger.warning("Cache read failed for %s: %s", key, e)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable cache entry %s", key)
            return None

    async def set(self, key_obj: Any, value: Any, ttl_seconds: int | None = None) -> None:
        key = cache_key(self.namespace, key_obj)
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        try:
            await self._client.set(key, json.dumps(value, default=str), ex=ttl)
        except redis.RedisError as e:
            logger.warning("Cache write failed for %s: %s", key, e)

    async def clear_all(self) -> int:
        """Delete every key in this namespace.

        Returns:
            Number of keys deleted.
        """
        deleted = 0
        try:
            async for key in self._client.scan_iter(match=f"{self.namespace}:*"):
                deleted += await self._client.delete(key)
        except redis.RedisError as e:
            logger.error("Cache clear failed for namespace %s: %s", self.namespace, e)
        logger.info("Cleared %d cache entries from %s", deleted, self.namespace)
        return deleted

    async def close(self) -> None:
        await self._client.aclose()
