# ==============================================================================
# Valkey Cache Implementation
# ==============================================================================
"""
Valkey/Redis cache (redis.asyncio) backing the ip-api lookup cache.

Values are dicts stored as JSON strings. Keys are namespaced by the
caller (see CachedAddressLookup), so delete_pattern() can purge one
namespace without touching anything else in the database.
"""

import json
import logging

import redis.asyncio as aioredis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from visitor_telemetry.base.cache import Cache
from visitor_telemetry.utils.config import get_settings
from visitor_telemetry.utils.retry import VALKEY_RETRIES

logger = logging.getLogger(__name__)


class ValkeyCache(Cache):
    """
    Async Cache over a single redis.asyncio client.

    Transient timeouts and dropped connections are retried by the client
    itself (exponential backoff, VALKEY_RETRIES attempts). Anything that
    still fails surfaces as a RedisError; CachedAddressLookup treats that
    as a cache miss.
    """

    def __init__(
        self,
        url: str | None = None,
        socket_timeout: int = 10,
        retries: int | None = None,
        health_check_interval: int = 30,
        client: aioredis.Redis | None = None,
    ):
        """
        Initialize Valkey cache.

        Args:
            url: Valkey/Redis connection URL. If None, uses settings.
            socket_timeout: Socket timeout in seconds (default: 10)
            retries: Number of retries for transient failures (default: from settings)
            health_check_interval: Health check interval in seconds (default: 30)
            client: Pre-built async client (tests). Must use decode_responses=True.
        """
        if url is None:
            settings = get_settings()
            url = settings.valkey.url
        self._url = url

        if client is not None:
            self._client = client
            return

        retry_count = retries if retries is not None else VALKEY_RETRIES
        retry_strategy = Retry(ExponentialBackoff(cap=32, base=1), retries=retry_count)

        self._client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            retry=retry_strategy,
            retry_on_error=[RedisTimeoutError, RedisConnectionError],
            health_check_interval=health_check_interval,
        )

    @property
    def client(self) -> aioredis.Redis:
        """Get the underlying Redis client for advanced operations."""
        return self._client

    async def get(self, key: str) -> dict | None:
        value = await self._client.get(key)
        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            logger.warning("Failed to decode JSON for key %s", key)
            return None

    async def set(self, key: str, value: dict, ttl_seconds: int | None = None) -> None:
        json_value = json.dumps(value)
        if ttl_seconds is not None:
            await self._client.setex(key, ttl_seconds, json_value)
        else:
            await self._client.set(key, json_value)

    async def delete(self, key: str) -> bool:
        return await self._client.delete(key) > 0

    async def delete_pattern(self, pattern: str) -> int:
        keys = [key async for key in self._client.scan_iter(match=pattern)]
        if keys:
            return await self._client.delete(*keys)
        return 0

    async def ping(self) -> bool:
        """
        Check if the cache is reachable.

        Returns:
            True if ping succeeds, False otherwise
        """
        try:
            return bool(await self._client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        """Close the connection."""
        await self._client.aclose()


def get_valkey_cache() -> ValkeyCache:
    """
    Get a ValkeyCache instance configured from settings.

    Returns:
        Configured ValkeyCache instance
    """
    return ValkeyCache()


async def check_valkey_connection() -> bool:
    """
    Ping the configured Valkey server with a throwaway client.

    Used by `telemetry status`; never raises.

    Returns:
        True if Valkey responds to ping, False otherwise
    """
    settings = get_settings()
    client = aioredis.from_url(
        settings.valkey.url,
        decode_responses=True,
        socket_timeout=5,
        socket_connect_timeout=5,
    )
    try:
        return bool(await client.ping())
    except (RedisError, OSError):
        return False
    finally:
        await client.aclose()
