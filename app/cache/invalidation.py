"""Cache keys for derived aggregates and their invalidation."""
from typing import Iterable

from app.cache.layer import CacheLayer


def projects_key(user_id: int) -> str:
    return f"projects:{user_id}"


def stats_key(project_id: int, user_id: int) -> str:
    return f"stats:{project_id}:{user_id}"


def stats_pattern(project_id: int) -> str:
    return f"stats:{project_id}:*"


def unique_user_ids(user_ids: Iterable[int | None]) -> list[int]:
    """Drop missing ids and duplicates, keeping first-seen order."""
    return list(dict.fromkeys(uid for uid in user_ids if uid is not None))


class CacheInvalidator:
    """
    Delete-based invalidation shared by the project and task services.

    The next read after an invalidation recomputes and repopulates the
    entry. Failures are absorbed by the cache layer.
    """

    def __init__(self, cache: CacheLayer):
        self._cache = cache

    async def invalidate(self, keys: Iterable[str]) -> None:
        await self._cache.delete_many(keys)

    async def invalidate_project_lists(self, user_ids: Iterable[int | None]) -> None:
        await self.invalidate(projects_key(uid) for uid in unique_user_ids(user_ids))

    async def invalidate_for_users(
        self, project_id: int, user_ids: Iterable[int | None]
    ) -> None:
        """Stats for the project and project lists of every named user."""
        uids = unique_user_ids(user_ids)
        await self.invalidate(
            [stats_key(project_id, uid) for uid in uids]
            + [projects_key(uid) for uid in uids]
        )

    async def invalidate_project_stats(self, project_id: int) -> None:
        """Every member's stats entry for one project."""
        await self._cache.delete_pattern(stats_pattern(project_id))
