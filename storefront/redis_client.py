"""
Async Redis client wrapper with connection pooling, retry logic, and error handling.
"""
import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import redis.asyncio as redis
from redis.exceptions import (
    ConnectionError,
    TimeoutError,
    RedisError,
)

from storefront.config import Config
from storefront.exceptions import RedisConnectionError

logger = logging.getLogger(__name__)


class RedisClient:
    """Redis client with connection pooling and retry logic"""

    def __init__(self, client: Optional[redis.Redis] = None):
        self.pool: Optional[redis.ConnectionPool] = None
        self.client: Optional[redis.Redis] = client
        if self.client is None:
            self._connect()

    def _connect(self):
        """Initialize Redis connection pool"""
        scheme = "rediss" if Config.REDIS_SSL else "redis"
        auth = f":{Config.REDIS_AUTH_TOKEN}@" if Config.REDIS_AUTH_TOKEN else ""
        redis_url = f"{scheme}://{auth}{Config.REDIS_HOST}:{Config.REDIS_PORT}/{Config.REDIS_DB}"

        options: Dict[str, Any] = dict(
            max_connections=Config.REDIS_MAX_CONNECTIONS,
            socket_connect_timeout=Config.REDIS_SOCKET_CONNECT_TIMEOUT,
            socket_timeout=Config.REDIS_SOCKET_TIMEOUT,
            retry_on_timeout=Config.REDIS_RETRY_ON_TIMEOUT,
            decode_responses=True,
        )
        if Config.REDIS_SSL:
            # ElastiCache uses self-signed certs
            options["ssl_cert_reqs"] = None

        self.pool = redis.ConnectionPool.from_url(redis_url, **options)
        self.client = redis.Redis(connection_pool=self.pool)

    async def _retry_with_backoff(
        self,
        func: Callable[[], Awaitable[Any]],
        max_retries: int = 3,
        initial_backoff: float = 0.1,
        max_backoff: float = 2.0
    ) -> Any:
        """
        Execute coroutine function with exponential backoff retry.

        Args:
            func: Zero-argument callable returning an awaitable
            max_retries: Maximum number of attempts
            initial_backoff: Initial backoff delay in seconds
            max_backoff: Maximum backoff delay in seconds

        Returns:
            Result of function execution

        Raises:
            RedisConnectionError: If all retries fail
        """
        backoff = initial_backoff

        for attempt in range(max_retries):
            try:
                return await func()
            except (ConnectionError, TimeoutError) as e:
                if attempt == max_retries - 1:
                    raise RedisConnectionError(f"Redis operation failed after {max_retries} attempts: {e}")

                # Exponential backoff with jitter
                jitter = random.uniform(0, backoff * 0.1)
                logger.warning(f"Redis call failed ({e}), retrying in {backoff + jitter:.2f}s")
                await asyncio.sleep(backoff + jitter)
                backoff = min(backoff * 2, max_backoff)

            except RedisError as e:
                # Non-retryable errors
                raise RedisConnectionError(f"Redis error: {e}")

    async def get(self, key: str) -> Optional[str]:
        """Get value from Redis"""
        return await self._retry_with_backoff(lambda: self.client.get(key))

    async def set(self, key: str, value: Any, ex: Optional[int] = None, nx: bool = False) -> bool:
        """Set value in Redis with optional TTL; with nx=True only if the key is absent"""
        result = await self._retry_with_backoff(lambda: self.client.set(key, value, ex=ex, nx=nx))
        return bool(result)

    async def delete(self, *keys: str) -> int:
        """Delete one or more keys"""
        return await self._retry_with_backoff(lambda: self.client.delete(*keys))

    async def exists(self, *keys: str) -> int:
        """Check if keys exist"""
        return await self._retry_with_backoff(lambda: self.client.exists(*keys))

    async def incr(self, key: str) -> int:
        """Increment a counter"""
        return await self._retry_with_backoff(lambda: self.client.incr(key))

    async def hget(self, key: str, field: str) -> Optional[str]:
        """Get field from hash"""
        return await self._retry_with_backoff(lambda: self.client.hget(key, field))

    async def hset(self, key: str, mapping: Dict[str, Any]) -> int:
        """Set fields in hash"""
        return await self._retry_with_backoff(lambda: self.client.hset(key, mapping=mapping))

    async def hgetall(self, key: str) -> dict:
        """Get all fields from hash"""
        return await self._retry_with_backoff(lambda: self.client.hgetall(key))

    async def hgetall_many(self, keys: Iterable[str]) -> List[dict]:
        """Get several hashes in one round trip"""
        keys = list(keys)
        if not keys:
            return []

        async def _hgetall_many():
            async with self.client.pipeline(transaction=False) as pipe:
                for key in keys:
                    pipe.hgetall(key)
                return await pipe.execute()
        return await self._retry_with_backoff(_hgetall_many)

    async def hset_many(self, updates: Dict[str, Dict[str, Any]]) -> None:
        """Apply field updates to several hashes atomically (MULTI/EXEC)"""
        if not updates:
            return

        async def _hset_many():
            async with self.client.pipeline(transaction=True) as pipe:
                for key, mapping in updates.items():
                    pipe.hset(key, mapping=mapping)
                await pipe.execute()
        # Not retried: a timeout after EXEC was sent leaves the outcome unknown
        await self._retry_with_backoff(_hset_many, max_retries=1)

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        """Increment field in hash"""
        return await self._retry_with_backoff(lambda: self.client.hincrby(key, field, amount))

    async def smembers(self, key: str) -> set:
        """Get all members of a set"""
        return await self._retry_with_backoff(lambda: self.client.smembers(key))

    async def zrevrange(self, key: str, start: int = 0, end: int = -1) -> List[str]:
        """Get sorted set members, highest score first"""
        return await self._retry_with_backoff(lambda: self.client.zrevrange(key, start, end))

    async def eval(self, script: str, num_keys: int, *keys_and_args, retry: bool = True) -> Any:
        """Execute Lua script; pass retry=False for scripts that are not safe to replay"""
        return await self._retry_with_backoff(
            lambda: self.client.eval(script, num_keys, *keys_and_args),
            max_retries=3 if retry else 1,
        )

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            return await self.client.ping()
        except Exception:
            return False

    async def close(self):
        """Close client and connection pool"""
        await self.client.aclose()
        if self.pool:
            await self.pool.disconnect()


# Global Redis client instance
_redis_client: Optional[RedisClient] = None

def get_redis_client() -> RedisClient:
    """Get or create Redis client instance (singleton)"""
    global _redis_client
    if _redis_client is None:
        _redis_client = RedisClient()
    return _redis_client
