import asyncio
import fnmatch
import json
import time
from typing import Any, Awaitable, Callable, Iterable, Optional

from cachetools import TTLCache
from redis.asyncio import Redis, RedisError

from app.core.config import Settings

import logging

logger = logging.getLogger(__name__)

# Atomic fixed-window counter: expiry is set by the first hit of a window
WINDOW_COUNTER_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
    redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return {count, redis.call('TTL', KEYS[1])}
"""


class CacheLayer:
    """
    Two-tier advisory cache for derived aggregates.

    L1 is a per-worker TTLCache, L2 is Redis shared by every worker. Either
    tier may be switched off. Keys are namespaced per tier, and concurrent
    misses on one key run the loader once.

    Nothing here is authoritative. Every Redis failure is logged and
    treated as a miss, so callers never see a cache error. After a failure
    Redis is skipped for ``redis_retry_seconds``, then tried again; the
    client reconnects on its own once the server is back.
    """

    def __init__(self, settings: Settings):
        self._settings = settings
        self._redis: Redis | None = None
        self._redis_down_until = 0.0
        self.l1: TTLCache | None = None
        self._initialized = False

        # Lock management for cache stampede protection: concurrent misses
        # on the same key share one lock so only one of them hits the store.
        # Bounded and expiring so idle keys do not accumulate.
        self._locks: TTLCache = TTLCache(maxsize=10_000, ttl=300)

        # Stats tracking
        self.stats = {
            "l1_hits": 0,
            "l2_hits": 0,
            "misses": 0,
            "errors": 0,
        }

    @property
    def enabled(self) -> bool:
        return self._settings.cache_enabled

    @property
    def redis_enabled(self) -> bool:
        return self._settings.cache_enabled and self._settings.redis_enabled

    @property
    def is_connected(self) -> bool:
        """True while Redis is configured and answered its last call."""
        return self._redis is not None and self._redis_down_until == 0.0

    async def connect(self):
        """Initialize L1 cache and the Redis client."""
        if self._initialized:
            return

        settings = self._settings
        if not settings.cache_enabled:
            logger.info("Cache disabled by configuration")
            self._initialized = True
            return

        self.l1 = TTLCache(maxsize=settings.l1_maxsize, ttl=settings.l1_ttl_seconds)

        if settings.redis_enabled:
            self._redis = Redis.from_url(
                settings.redis_dsn,
                encoding="utf-8",
                decode_responses=True,
                max_connections=settings.redis_pool_size,
                socket_connect_timeout=5,
                socket_keepalive=True,
                health_check_interval=30,
            )
            # A failed first ping leaves the client in place for later retries
            if await self.ping():
                logger.info("Redis connection established")
            else:
                logger.error("Redis unreachable at startup, serving from L1 until it recovers")
        else:
            logger.info("Redis disabled by configuration, using L1 only")

        self._initialized = True
        logger.info("Cache layer initialized")

    def _redis_available(self) -> bool:
        return self._redis is not None and time.monotonic() >= self._redis_down_until

    def _redis_failed(self, operation: str, target: Any, error: Exception) -> None:
        logger.error("Redis %s error for %s: %s", operation, target, error)
        self.stats["errors"] += 1
        self._redis_down_until = time.monotonic() + self._settings.redis_retry_seconds

    def _redis_ok(self) -> None:
        if self._redis_down_until:
            logger.info("Redis reachable again")
        self._redis_down_until = 0.0

    def _l1_key(self, key: str) -> str:
        """Physical key in the process-local tier."""
        return f"{self._settings.cache_namespace}l1:{key}"

    def _l2_key(self, key: str) -> str:
        """Physical key in Redis."""
        return f"{self._settings.cache_namespace}l2:{key}"

    def _serialize(self, value: Any) -> str:
        return json.dumps(value, default=str)

    def _deserialize(self, raw: str) -> Any:
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw

    def _get_lock_for_key(self, key: str) -> asyncio.Lock:
        return self._locks.setdefault(key, asyncio.Lock())

    async def _read(self, key: str) -> Any:
        l1_key = self._l1_key(key)
        if self.l1 is not None and l1_key in self.l1:
            self.stats["l1_hits"] += 1
            logger.debug("L1 hit: %s", key)
            return self.l1[l1_key]

        if self._redis_available():
            try:
                raw = await self._redis.get(self._l2_key(key))
            except (RedisError, OSError) as e:
                self._redis_failed("GET", key, e)
                return None
            self._redis_ok()
            if raw is not None:
                self.stats["l2_hits"] += 1
                logger.debug("L2 hit: %s", key)
                value = self._deserialize(raw)
                if self.l1 is not None:
                    self.l1[l1_key] = value
                return value
        return None

    async def get(
        self,
        key: str,
        loader: Optional[Callable[[], Awaitable[Any]]] = None,
        ttl: Optional[int] = None,
    ):
        """
        Read through L1, then Redis, then ``loader``.

        Args:
            key: Logical key such as ``stats:3:7``
            loader: Coroutine function producing the value on a miss
            ttl: Redis expiry in seconds, ``cache_ttl_seconds`` when omitted

        Returns:
            The cached or freshly loaded value. None on a miss without a
            loader, or when the loader itself returns None.
        """
        await self.connect()

        if not self.enabled:
            return await loader() if loader is not None else None

        value = await self._read(key)
        if value is not None:
            return value

        if loader is None:
            self.stats["misses"] += 1
            logger.debug("Cache miss, no loader: %s", key)
            return None

        lock = self._get_lock_for_key(key)
        async with lock:
            # Another waiter may have loaded it while we queued
            value = await self._read(key)
            if value is not None:
                return value

            self.stats["misses"] += 1
            logger.debug("Loading from source: %s", key)
            value = await loader()

            if value is None:
                return None

            await self._set_both_layers(key, value, ttl)
            return value

    async def _set_both_layers(self, key: str, value: Any, ttl: int | None = None):
        if self.l1 is not None:
            self.l1[self._l1_key(key)] = value

        if self._redis_available():
            try:
                await self._redis.set(
                    self._l2_key(key),
                    self._serialize(value),
                    ex=ttl or self._settings.cache_ttl_seconds,
                )
            except (RedisError, OSError) as e:
                self._redis_failed("SET", key, e)
                return
            self._redis_ok()
            logger.debug("Stored in L2: %s", key)

    async def delete(self, key: str):
        """Delete a key from both cache layers."""
        await self.delete_many([key])

    async def delete_many(self, keys: Iterable[str]):
        """
        Delete keys from both cache layers in one Redis round trip.

        Deleting from Redis is what keeps other workers from serving stale
        data; a failure is logged only.
        """
        await self.connect()
        keys = list(dict.fromkeys(keys))
        if not keys or not self.enabled:
            return

        if self.l1 is not None:
            for key in keys:
                self.l1.pop(self._l1_key(key), None)

        if self._redis_available():
            try:
                await self._redis.delete(*(self._l2_key(k) for k in keys))
            except (RedisError, OSError) as e:
                self._redis_failed("DELETE", keys, e)
                return
            self._redis_ok()
            logger.debug("Deleted from both layers: %s", keys)

    async def delete_pattern(self, pattern: str):
        """Delete all keys matching a glob pattern from both layers."""
        await self.connect()
        if not self.enabled:
            return

        if self.l1 is not None:
            l1_pattern = self._l1_key(pattern)
            for l1_key in [k for k in list(self.l1.keys()) if fnmatch.fnmatchcase(k, l1_pattern)]:
                self.l1.pop(l1_key, None)

        if not self._redis_available():
            return

        try:
            cursor = 0
            deleted = 0
            while True:
                cursor, keys = await self._redis.scan(
                    cursor, match=self._l2_key(pattern), count=100
                )
                if keys:
                    await self._redis.delete(*keys)
                    deleted += len(keys)
                if cursor == 0:
                    break
        except (RedisError, OSError) as e:
            self._redis_failed("pattern delete", pattern, e)
            return

        self._redis_ok()
        logger.info("Pattern delete completed: %s (%d keys)", pattern, deleted)

    async def count_in_window(self, key: str, window_seconds: int) -> tuple[int, int] | None:
        """
        Increment a shared fixed-window counter in Redis.

        Returns ``(count, seconds_left)``, or None when Redis is not usable
        so the caller can count locally instead.
        """
        await self.connect()
        if not self._redis_available():
            return None
        try:
            count, ttl = await self._redis.eval(
                WINDOW_COUNTER_SCRIPT,
                1,
                f"{self._settings.cache_namespace}window:{key}",
                window_seconds,
            )
        except (RedisError, OSError) as e:
            self._redis_failed("window counter", key, e)
            return None
        self._redis_ok()
        ttl = int(ttl)
        return int(count), (ttl if ttl > 0 else window_seconds)

    async def ping(self) -> bool:
        """Check Redis connectivity. Always tries, regardless of backoff."""
        if self._redis is None:
            return False
        try:
            await self._redis.ping()
        except (RedisError, OSError) as e:
            self._redis_failed("PING", "server", e)
            return False
        self._redis_ok()
        return True

    async def close(self):
        """Release the Redis pool. L1 entries are kept until expiry."""
        logger.info("Closing cache layer, stats: %s", self.get_stats())
        if self._redis is not None:
            try:
                await self._redis.aclose()
                logger.info("Redis connection closed")
            except (RedisError, OSError) as e:
                logger.error("Error closing Redis: %s", e)
            self._redis = None
        self._initialized = False

    def get_stats(self) -> dict:
        """Counters plus L1 occupancy, exposed for debugging."""
        hits = self.stats["l1_hits"] + self.stats["l2_hits"]
        lookups = hits + self.stats["misses"]
        return {
            **self.stats,
            "l1_size": len(self.l1) if self.l1 is not None else 0,
            "hit_rate": hits / lookups if lookups else 0.0,
        }
