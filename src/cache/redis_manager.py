# coding: utf-8
"""
Redis Manager for centralized cache management

Provides async Redis client with connection pooling and two families of
operations:

- Graceful (get/set/delete): for non-critical data such as node probe
  snapshots. Failures are logged and swallowed.
- Strict (hgetall/hset_many/acquire_lock/release_lock): for counter snapshots
  and settlement locks. Failures raise CacheUnavailableError so the caller can
  pick its own degraded behaviour.
"""
import json
from typing import Any, Dict, Mapping, Optional, Union

from redis.asyncio import Redis, ConnectionPool
from redis.exceptions import RedisError, ConnectionError as RedisConnectionError
from loguru import logger

from config.cache_config import CacheConfig, CacheTTL
from src.core.exceptions import CacheUnavailableError


class RedisManager:
    """
    Centralized Redis manager with connection pooling

    Usage:
        >>> redis_mgr = RedisManager()
        >>> await redis_mgr.initialize()
        >>> await redis_mgr.set("key", {"data": "value"}, ttl=300)
        >>> data = await redis_mgr.get("key")
        >>> await redis_mgr.close()

    A ready client can be injected instead of calling initialize():
        >>> redis_mgr = RedisManager(client=Redis.from_url(url, decode_responses=True))
    """

    def __init__(self, client: Optional[Redis] = None):
        """Initialize Redis manager"""
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = client
        self._is_available = client is not None

    async def initialize(self) -> bool:
        """
        Initialize Redis connection pool

        Returns:
            True if Redis is available, False otherwise

        Note:
            Failures are handled gracefully - metering and settlement run
            degraded without Redis
        """
        if not CacheConfig.CACHE_ENABLED:
            logger.info("Redis is disabled in configuration")
            return False

        try:
            url = CacheConfig.REDIS_URL

            self._pool = ConnectionPool.from_url(
                url,
                max_connections=CacheConfig.REDIS_MAX_CONNECTIONS,
                decode_responses=True,  # Auto-decode bytes to strings
                socket_connect_timeout=CacheConfig.REDIS_SOCKET_CONNECT_TIMEOUT,
                socket_timeout=CacheConfig.REDIS_SOCKET_TIMEOUT,
            )

            self._client = Redis(connection_pool=self._pool)

            # Test connection
            await self._client.ping()

            self._is_available = True
            logger.info(
                f"Redis initialized successfully (url={url}, max_connections={CacheConfig.REDIS_MAX_CONNECTIONS})"
            )
            return True

        except RedisConnectionError as e:
            logger.warning(f"Redis connection failed: {e}. Running without cache.")
            self._is_available = False
            return False

        except Exception as e:
            logger.error(f"Unexpected error initializing Redis: {e}")
            self._is_available = False
            return False

    async def close(self):
        """Close Redis connections gracefully"""
        if self._client:
            try:
                await self._client.aclose()  # type: ignore
                logger.info("Redis connection closed")
            except Exception as e:
                logger.error(f"Error closing Redis connection: {e}")

        if self._pool:
            try:
                await self._pool.aclose()  # type: ignore
                logger.debug("Redis connection pool closed")
            except Exception as e:
                logger.error(f"Error closing Redis pool: {e}")

        self._is_available = False

    # ===========================
    # GRACEFUL OPERATIONS
    # ===========================

    async def get(
        self, key: str, default: Any = None
    ) -> Optional[Union[str, dict, list]]:
        """
        Get value from cache

        Args:
            key: Cache key
            default: Default value if key not found

        Returns:
            Cached value (deserialized from JSON) or default
        """
        if not self._is_available:
            return default

        try:
            value = await self._client.get(key)  # type: ignore

            if value is None:
                return default

            try:
                return json.loads(value)
            except json.JSONDecodeError:
                # Value is not JSON, return as-is
                return value

        except RedisError as e:
            logger.warning(f"Redis GET error for key '{key}': {e}")
            return default

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
    ) -> bool:
        """
        Set value in cache with TTL

        Args:
            key: Cache key
            value: Value to cache (will be JSON-serialized)
            ttl: Time-to-live in seconds (default: CacheTTL.DEFAULT)

        Returns:
            True if successful, False otherwise
        """
        if not self._is_available:
            return False

        if ttl is None:
            ttl = CacheTTL.DEFAULT

        try:
            if isinstance(value, str):
                serialized = value
            else:
                serialized = json.dumps(value, ensure_ascii=False)

            await self._client.setex(key, ttl, serialized)  # type: ignore
            logger.debug(f"Cache SET: {key} (TTL={ttl}s)")
            return True

        except (RedisError, TypeError) as e:
            logger.warning(f"Redis SET error for key '{key}': {e}")
            return False

    async def delete(self, key: str) -> bool:
        """
        Delete key from cache

        Returns:
            True if key was deleted, False otherwise
        """
        if not self._is_available:
            return False

        try:
            result = await self._client.delete(key)  # type: ignore
            return result > 0

        except RedisError as e:
            logger.warning(f"Redis DELETE error for key '{key}': {e}")
            return False

    # ===========================
    # STRICT OPERATIONS
    # ===========================

    def _require_client(self) -> Redis:
        if not self._is_available or self._client is None:
            raise CacheUnavailableError("Redis is not available")
        return self._client

    async def hgetall(self, key: str) -> Dict[str, str]:
        """
        Read a whole hash

        Raises:
            CacheUnavailableError: Redis is down or the call failed
        """
        client = self._require_client()
        try:
            return await client.hgetall(key)  # type: ignore
        except RedisError as e:
            raise CacheUnavailableError(f"HGETALL {key} failed: {e}") from e

    async def hset_many(self, key: str, mapping: Mapping[str, Any], ttl: int) -> None:
        """
        Write hash fields and refresh the hash TTL in one pipeline

        Raises:
            CacheUnavailableError: Redis is down or the call failed
        """
        client = self._require_client()
        if not mapping:
            return
        try:
            async with client.pipeline(transaction=False) as pipe:
                pipe.hset(key, mapping=dict(mapping))
                pipe.expire(key, ttl)
                await pipe.execute()
        except RedisError as e:
            raise CacheUnavailableError(f"HSET {key} failed: {e}") from e

    async def acquire_lock(self, key: str, ttl: int, token: str = "1") -> bool:
        """
        Atomic SET NX EX

        Returns:
            True if the lock was taken, False if someone else holds it

        Raises:
            CacheUnavailableError: Redis is down or the call failed
        """
        client = self._require_client()
        try:
            result = await client.set(key, token, nx=True, ex=ttl)
            return bool(result)
        except RedisError as e:
            raise CacheUnavailableError(f"SET NX {key} failed: {e}") from e

    async def release_lock(self, key: str) -> None:
        """
        Release a lock taken with acquire_lock

        Errors are logged only; the lock TTL covers a failed release.
        """
        if not self._is_available or self._client is None:
            return
        try:
            await self._client.delete(key)
        except RedisError as e:
            logger.warning(f"Redis lock release failed for '{key}': {e}")

    def is_available(self) -> bool:
        """Check if Redis is available"""
        return self._is_available


# Global Redis manager instance
_redis_manager: Optional[RedisManager] = None


def get_redis_manager() -> RedisManager:
    """
    Get global Redis manager instance (singleton)

    Examples:
        >>> redis_mgr = get_redis_manager()
        >>> await redis_mgr.initialize()
    """
    global _redis_manager
    if _redis_manager is None:
        _redis_manager = RedisManager()
    return _redis_manager
