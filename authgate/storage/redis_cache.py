from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from authgate.logging import get_logger, sanitize_error_message
from authgate.storage.errors import CacheUnavailable

logger = get_logger(__name__)


class RedisCache:
    """Thin Redis wrapper used as the shared coordination store.

    Every command is bounded by ``operation_timeout``; timeouts and driver
    errors surface as :class:`CacheUnavailable` so callers can decide whether
    the failure is fatal or best-effort.
    """

    DEFAULT_OPERATION_TIMEOUT = 2.0

    # INCR and set the window on the first hit only, so the TTL is never extended
    _INCR_WITH_EXPIRY_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return count
"""

    # Delete only when the stored value is the one the caller observed
    _DELETE_IF_EQUALS_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(
        self,
        redis_url: str,
        *,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=operation_timeout,
            socket_connect_timeout=operation_timeout,
        )
        self._incr_with_expiry = self.client.register_script(
            self._INCR_WITH_EXPIRY_SCRIPT
        )
        self._delete_if_equals = self.client.register_script(
            self._DELETE_IF_EQUALS_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving traffic."""
        # A short-lived synchronous client avoids binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.operation_timeout,
            socket_connect_timeout=self.operation_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _run(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, self.operation_timeout)
        except (asyncio.TimeoutError, RedisError, OSError) as exc:
            logger.warning(
                "cache_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise CacheUnavailable(operation, exc) from exc

    async def get(self, key: str) -> Optional[str]:
        return await self._run("get", self.client.get(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._run("set", self.client.set(key, value, ex=max(1, int(ttl_seconds))))

    async def delete(self, key: str) -> int:
        return int(await self._run("delete", self.client.delete(key)))

    async def exists(self, key: str) -> bool:
        return bool(await self._run("exists", self.client.exists(key)))

    async def ttl(self, key: str) -> int:
        """Remaining lifetime in seconds; -2 when missing, -1 without expiry."""
        return int(await self._run("ttl", self.client.ttl(key)))

    async def incr_with_expiry(self, key: str, ttl_seconds: int) -> int:
        result = await self._run(
            "incr_with_expiry",
            self._incr_with_expiry(keys=[key], args=[max(1, int(ttl_seconds))]),
        )
        return int(result)

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        result = await self._run(
            "delete_if_equals", self._delete_if_equals(keys=[key], args=[expected])
        )
        return bool(int(result))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
