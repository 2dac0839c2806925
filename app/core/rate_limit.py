"""
Per-client request limiting.

A fixed window per client IP, counted in Redis so every worker shares one
budget. When Redis is off or failing the count is kept in this process.
"""
import logging
import time
from dataclasses import dataclass

from cachetools import TTLCache

from app.cache.layer import CacheLayer
from app.core.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    """Outcome of one check with everything the response headers need."""

    allowed: bool
    limit: int
    remaining: int
    reset: int  # Unix timestamp when the window resets
    retry_after: int  # 0 when allowed


class RateLimitExceededError(Exception):
    def __init__(self, result: RateLimitResult) -> None:
        self.result = result
        super().__init__("Rate limit exceeded")


class RateLimiter:
    def __init__(self, settings: Settings, cache: CacheLayer):
        self._settings = settings
        self._cache = cache
        self._local: TTLCache = TTLCache(
            maxsize=10_000, ttl=settings.rate_limit_window_seconds
        )

    @property
    def enabled(self) -> bool:
        return self._settings.rate_limit_enabled

    def _count_locally(self, key: str, window_seconds: int) -> tuple[int, int]:
        now = time.monotonic()
        entry = self._local.get(key)
        if entry is None or entry[1] <= now:
            entry = [0, now + window_seconds]
            self._local[key] = entry
        entry[0] += 1
        return entry[0], max(1, int(entry[1] - now))

    async def check(self, client_id: str) -> RateLimitResult | None:
        """
        Count one request for ``client_id``.

        Returns None when limiting is switched off.
        """
        if not self.enabled:
            return None

        limit = self._settings.rate_limit_requests
        window = self._settings.rate_limit_window_seconds
        key = f"ratelimit:{client_id}"

        counted = await self._cache.count_in_window(key, window)
        if counted is None:
            counted = self._count_locally(key, window)
        count, seconds_left = counted

        allowed = count <= limit
        result = RateLimitResult(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            reset=int(time.time()) + seconds_left,
            retry_after=0 if allowed else seconds_left,
        )
        if not allowed:
            logger.warning("Rate limit exceeded for %s (%d/%d)", client_id, count, limit)
        return result
