"""Unit tests for RedisCache error mapping, without a Redis server."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from authgate.storage.errors import CacheUnavailable
from authgate.storage.redis_cache import RedisCache


@pytest.fixture
def redis_cache():
    cache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://localhost:6379/0"
    cache.operation_timeout = 0.05
    cache.client = MagicMock()
    cache._incr_with_expiry = AsyncMock(return_value=1)
    cache._delete_if_equals = AsyncMock(return_value=1)
    return cache


async def test_set_applies_expiry(redis_cache):
    redis_cache.client.set = AsyncMock(return_value=True)

    await redis_cache.set("mfa:login:u1", "042", 120)

    redis_cache.client.set.assert_awaited_once_with("mfa:login:u1", "042", ex=120)


async def test_incr_with_expiry_runs_script(redis_cache):
    redis_cache._incr_with_expiry.return_value = 3

    assert await redis_cache.incr_with_expiry("auth:login:alice:attempts", 300) == 3
    redis_cache._incr_with_expiry.assert_awaited_once_with(
        keys=["auth:login:alice:attempts"], args=[300]
    )


async def test_delete_if_equals_reports_outcome(redis_cache):
    assert await redis_cache.delete_if_equals("k", "042") is True
    redis_cache._delete_if_equals.return_value = 0
    assert await redis_cache.delete_if_equals("k", "042") is False


async def test_exists_and_ttl_are_normalized(redis_cache):
    redis_cache.client.exists = AsyncMock(return_value=1)
    redis_cache.client.ttl = AsyncMock(return_value=42)

    assert await redis_cache.exists("k") is True
    assert await redis_cache.ttl("k") == 42


async def test_driver_error_becomes_cache_unavailable(redis_cache):
    redis_cache.client.get = AsyncMock(side_effect=RedisConnectionError("refused"))

    with pytest.raises(CacheUnavailable) as excinfo:
        await redis_cache.get("k")

    assert excinfo.value.operation == "get"


async def test_slow_command_times_out(redis_cache):
    async def _hang(*args, **kwargs):
        await asyncio.sleep(1)

    redis_cache.client.exists = _hang

    with pytest.raises(CacheUnavailable):
        await redis_cache.exists("k")
