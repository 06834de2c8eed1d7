"""Single owner of process-global provider handles.

API routes, the CLI and webhook handlers import the EasyPost client and
the cache from HERE and pass them into services explicitly. Never
instantiate EasyPostClient or RedisCache elsewhere.
"""

import asyncio
import logging

from shipflow.config import get_config
from shipflow.services.cache import NullCache, RedisCache
from shipflow.services.easypost_client import EasyPostClient

logger = logging.getLogger(__name__)

# -- EasyPostClient singleton ------------------------------------------------
_easypost_client: EasyPostClient | None = None
_easypost_lock = asyncio.Lock()


def _build_easypost_client() -> EasyPostClient:
    """Build an EasyPostClient from configuration.

    Raises:
        RuntimeError: If no API key is configured.
    """
    cfg = get_config().easypost
    if not cfg.api_key:
        raise RuntimeError(
            "No EasyPost API key configured. Set easypost.api_key or "
            "SHIPFLOW_EASYPOST_API_KEY."
        )
    return EasyPostClient(
        api_key=cfg.api_key,
        base_url=cfg.base_url,
        timeout=cfg.timeout_seconds,
    )


async def get_easypost_client() -> EasyPostClient:
    """Get or create the process-global EasyPostClient.

    Double-checked locking so concurrent first callers share one instance.

    Returns:
        The shared EasyPostClient instance.
    """
    global _easypost_client
    if _easypost_client is not None:
        return _easypost_client
    async with _easypost_lock:
        if _easypost_client is None:
            _easypost_client = _build_easypost_client()
            logger.info("EasyPostClient singleton initialized")
    return _easypost_client


# -- Cache singleton -----------------------------------------------------------
_cache: RedisCache | NullCache | None = None
_cache_lock = asyncio.Lock()


async def get_cache() -> RedisCache | NullCache:
    """Get or create the process-global rate cache.

    Falls back to NullCache when no Redis URL is configured.
    """
    global _cache
    if _cache is not None:
        return _cache
    async with _cache_lock:
        if _cache is None:
            cfg = get_config().cache
            if cfg.redis_url:
                _cache = RedisCache.from_url(
                    cfg.redis_url,
                    namespace=cfg.namespace,
                    default_ttl_seconds=cfg.expire_seconds,
                )
                logger.info("RedisCache singleton initialized (namespace=%s)", cfg.namespace)
            else:
                _cache = NullCache()
                logger.info("No redis_url configured; rate caching disabled")
    return _cache


async def shutdown_gateways() -> None:
    """Shutdown hook: close the cache connection. Call from FastAPI lifespan."""
    global _easypost_client, _cache
    if _cache is not None:
        try:
            await _cache.close()
        except Exception as e:
            logger.warning("Failed to close cache: %s", e)
        _cache = None
    _easypost_client = None
