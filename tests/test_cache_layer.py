"""
Tests for the two-tier cache.

Redis is replaced with AsyncMock so failure modes can be exercised without a
running server.
"""
import json
from unittest.mock import AsyncMock, patch

import pytest
from redis.asyncio import Redis, RedisError

from app.cache.invalidation import CacheInvalidator, projects_key, stats_key
from app.cache.layer import CacheLayer
from app.core.config import Settings


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **{"redis_enabled": False, **overrides})


@pytest.fixture
async def l1_cache():
    cache = CacheLayer(_settings())
    await cache.connect()
    yield cache
    await cache.close()


@pytest.fixture
async def redis_cache():
    """Cache whose L2 is a mock Redis client."""
    cache = CacheLayer(_settings())
    await cache.connect()
    cache._redis = AsyncMock()
    cache._redis.get.return_value = None
    yield cache
    cache._redis = None
    await cache.close()


def _counting_loader(value):
    calls = []

    async def loader():
        calls.append(1)
        return value

    return loader, calls


class TestL1Only:
    async def test__get__loader_called_once(self, l1_cache) -> None:
        loader, calls = _counting_loader({"total": 3})

        first = await l1_cache.get("stats:1:1", loader=loader)
        second = await l1_cache.get("stats:1:1", loader=loader)

        assert first == second == {"total": 3}
        assert len(calls) == 1
        assert l1_cache.stats["misses"] == 1
        assert l1_cache.stats["l1_hits"] == 1
        assert l1_cache.get_stats()["hit_rate"] == 0.5

    async def test__get__no_loader_miss_returns_none(self, l1_cache) -> None:
        assert await l1_cache.get("missing") is None

    async def test__get__loader_returning_none_not_cached(self, l1_cache) -> None:
        loader, calls = _counting_loader(None)

        await l1_cache.get("k", loader=loader)
        await l1_cache.get("k", loader=loader)

        assert len(calls) == 2

    async def test__delete__forces_reload(self, l1_cache) -> None:
        loader, calls = _counting_loader([1, 2])
        await l1_cache.get("projects:1", loader=loader)

        await l1_cache.delete("projects:1")
        await l1_cache.get("projects:1", loader=loader)

        assert len(calls) == 2

    async def test__delete_pattern__only_matching_keys(self, l1_cache) -> None:
        for key, value in [("stats:7:1", 1), ("stats:7:2", 2), ("stats:8:1", 3)]:
            loader, _ = _counting_loader({"a": value})
            await l1_cache.get(key, loader=loader)

        await l1_cache.delete_pattern("stats:7:*")

        assert await l1_cache.get("stats:7:1") is None
        assert await l1_cache.get("stats:7:2") is None
        assert await l1_cache.get("stats:8:1") == {"a": 3}

    async def test__ping__false_without_redis(self, l1_cache) -> None:
        assert await l1_cache.ping() is False
        assert l1_cache.is_connected is False


class TestDisabled:
    async def test__get__always_calls_loader(self) -> None:
        cache = CacheLayer(_settings(cache_enabled=False))
        loader, calls = _counting_loader("fresh")

        assert await cache.get("k", loader=loader) == "fresh"
        assert await cache.get("k", loader=loader) == "fresh"
        assert len(calls) == 2
        assert cache.l1 is None

    async def test__writes__are_noops(self) -> None:
        cache = CacheLayer(_settings(cache_enabled=False))

        await cache.delete("k")
        await cache.delete_pattern("*")

        assert await cache.get("k") is None


class TestRedis:
    async def test__get__l2_hit_populates_l1(self, redis_cache) -> None:
        redis_cache._redis.get.return_value = json.dumps({"total": 5})
        loader, calls = _counting_loader({"total": 0})

        assert await redis_cache.get("stats:1:1", loader=loader) == {"total": 5}
        assert await redis_cache.get("stats:1:1", loader=loader) == {"total": 5}

        assert calls == []
        assert redis_cache.stats["l2_hits"] == 1
        assert redis_cache.stats["l1_hits"] == 1
        redis_cache._redis.get.assert_awaited_once_with("taskboard:l2:stats:1:1")

    async def test__get__miss_writes_both_layers(self, redis_cache) -> None:
        loader, _ = _counting_loader({"total": 2})

        await redis_cache.get("stats:1:1", loader=loader, ttl=30)

        redis_cache._redis.set.assert_awaited_once_with(
            "taskboard:l2:stats:1:1", json.dumps({"total": 2}), ex=30,
        )
        assert redis_cache.l1["taskboard:l1:stats:1:1"] == {"total": 2}

    async def test__get__redis_error_falls_through_to_loader(self, redis_cache) -> None:
        redis_cache._redis.get.side_effect = RedisError("connection reset")
        redis_cache._redis.set.side_effect = RedisError("connection reset")
        loader, calls = _counting_loader({"total": 1})

        assert await redis_cache.get("stats:1:1", loader=loader) == {"total": 1}

        assert len(calls) == 1
        assert redis_cache.stats["errors"] == 1
        redis_cache._redis.set.assert_not_awaited()
        assert redis_cache.is_connected is False

    async def test__get__redis_used_again_after_retry_window(self) -> None:
        cache = CacheLayer(_settings(redis_retry_seconds=0))
        await cache.connect()
        cache._redis = AsyncMock()
        cache._redis.get.side_effect = [RedisError("connection reset"), None]
        loader, _ = _counting_loader({"total": 1})

        # the re-check under the per-key lock reaches Redis again
        assert await cache.get("stats:1:1", loader=loader) == {"total": 1}

        assert cache._redis.get.await_count == 2
        cache._redis.set.assert_awaited_once()
        assert cache.is_connected is True
        cache._redis = None

    async def test__delete_many__single_round_trip(self, redis_cache) -> None:
        await redis_cache.delete_many(["projects:1", "projects:2", "projects:1"])

        redis_cache._redis.delete.assert_awaited_once_with(
            "taskboard:l2:projects:1", "taskboard:l2:projects:2",
        )

    async def test__delete__redis_error_swallowed(self, redis_cache) -> None:
        loader, _ = _counting_loader([])
        await redis_cache.get("projects:1", loader=loader)
        redis_cache._redis.delete.side_effect = RedisError("down")

        await redis_cache.delete("projects:1")

        assert "taskboard:l1:projects:1" not in redis_cache.l1
        assert redis_cache.stats["errors"] == 1

    async def test__delete_pattern__scans_until_cursor_zero(self, redis_cache) -> None:
        redis_cache._redis.scan.side_effect = [
            (5, ["taskboard:l2:stats:3:1"]),
            (0, ["taskboard:l2:stats:3:2"]),
        ]

        await redis_cache.delete_pattern("stats:3:*")

        assert redis_cache._redis.scan.await_count == 2
        assert redis_cache._redis.delete.await_count == 2
        redis_cache._redis.scan.assert_any_await(
            0, match="taskboard:l2:stats:3:*", count=100,
        )

    async def test__delete_pattern__redis_error_swallowed(self, redis_cache) -> None:
        redis_cache._redis.scan.side_effect = RedisError("down")

        await redis_cache.delete_pattern("stats:3:*")

        assert redis_cache.stats["errors"] == 1

    async def test__ping__redis_error_reports_false(self, redis_cache) -> None:
        redis_cache._redis.ping.side_effect = RedisError("down")

        assert await redis_cache.ping() is False


class TestConnect:
    async def test__connect__ping_failure_degrades_to_l1(self) -> None:
        client = AsyncMock()
        client.ping.side_effect = RedisError("refused")
        cache = CacheLayer(_settings(redis_enabled=True))

        with patch.object(Redis, "from_url", return_value=client):
            await cache.connect()

        assert cache.is_connected is False
        assert cache.l1 is not None
        client.get.assert_not_awaited()

        loader, calls = _counting_loader("value")
        assert await cache.get("k", loader=loader) == "value"
        assert await cache.get("k", loader=loader) == "value"
        assert len(calls) == 1
        await cache.close()
        client.aclose.assert_awaited_once()

    async def test__ping__recovers_after_failed_startup(self) -> None:
        client = AsyncMock()
        client.ping.side_effect = RedisError("refused")
        cache = CacheLayer(_settings(redis_enabled=True))

        with patch.object(Redis, "from_url", return_value=client):
            await cache.connect()
        assert cache.is_connected is False

        client.ping.side_effect = None
        client.ping.return_value = True
        client.get.return_value = json.dumps("from redis")

        assert await cache.ping() is True
        assert cache.is_connected is True
        assert await cache.get("k") == "from redis"
        await cache.close()

    async def test__connect__success(self) -> None:
        client = AsyncMock()
        client.ping.return_value = True
        cache = CacheLayer(_settings(redis_enabled=True))

        with patch.object(Redis, "from_url", return_value=client):
            await cache.connect()

        assert cache.is_connected is True
        assert await cache.ping() is True
        await cache.close()
        client.aclose.assert_awaited_once()


class TestInvalidator:
    async def test__invalidate_for_users__both_key_kinds(self, redis_cache) -> None:
        invalidator = CacheInvalidator(redis_cache)

        await invalidator.invalidate_for_users(4, [1, None, 2, 1])

        redis_cache._redis.delete.assert_awaited_once_with(
            *(
                f"taskboard:l2:{key}"
                for key in [stats_key(4, 1), stats_key(4, 2), projects_key(1), projects_key(2)]
            )
        )

    async def test__invalidate_project_lists__empty_is_noop(self, redis_cache) -> None:
        await CacheInvalidator(redis_cache).invalidate_project_lists([])

        redis_cache._redis.delete.assert_not_awaited()
