"""Queries shared by the project and task services."""
from typing import Iterable

from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.cache.invalidation import unique_user_ids
from app.core.exceptions import ValidationFailedError
from app.models import ProjectMember, Task, TaskAssignee, User, UserSummary


async def member_ids(db: AsyncSession, project_id: int) -> list[int]:
    result = await db.exec(
        select(ProjectMember.user_id).where(ProjectMember.project_id == project_id)
    )
    return list(result.all())


async def is_member(db: AsyncSession, project_id: int, user_id: int) -> bool:
    result = await db.exec(
        select(ProjectMember.user_id).where(
            ProjectMember.project_id == project_id,
            ProjectMember.user_id == user_id,
        )
    )
    return result.first() is not None


async def add_members(
    db: AsyncSession, project_id: int, user_ids: Iterable[int]
) -> list[int]:
    """Union ``user_ids`` into the members set. Returns the ids actually added."""
    current = set(await member_ids(db, project_id))
    added = [uid for uid in unique_user_ids(user_ids) if uid not in current]
    db.add_all(ProjectMember(project_id=project_id, user_id=uid) for uid in added)
    return added


async def ensure_users_exist(db: AsyncSession, user_ids: Iterable[int]) -> None:
    wanted = set(user_ids)
    if not wanted:
        return
    result = await db.exec(select(User.id).where(col(User.id).in_(wanted)))
    missing = wanted - set(result.all())
    if missing:
        raise ValidationFailedError(
            f"Unknown user id(s): {', '.join(str(m) for m in sorted(missing))}"
        )


async def user_summaries(
    db: AsyncSession, user_ids: Iterable[int]
) -> dict[int, UserSummary]:
    wanted = set(user_ids)
    if not wanted:
        return {}
    result = await db.exec(select(User).where(col(User.id).in_(wanted)))
    return {u.id: UserSummary.model_validate(u) for u in result.all()}


async def assignee_ids(db: AsyncSession, task_ids: Iterable[int]) -> dict[int, list[int]]:
    """Map each task id to its assignee ids."""
    ids = list(task_ids)
    assigned: dict[int, list[int]] = {tid: [] for tid in ids}
    if not ids:
        return assigned
    result = await db.exec(
        select(TaskAssignee)
        .where(col(TaskAssignee.task_id).in_(ids))
        .order_by(TaskAssignee.task_id, TaskAssignee.user_id)
    )
    for row in result.all():
        assigned[row.task_id].append(row.user_id)
    return assigned


async def project_assignee_ids(db: AsyncSession, project_id: int) -> list[int]:
    """Every user assigned to any task of the project."""
    result = await db.exec(
        select(TaskAssignee.user_id)
        .join(Task, col(Task.id) == col(TaskAssignee.task_id))
        .where(Task.project_id == project_id)
        .distinct()
    )
    return list(result.all())
