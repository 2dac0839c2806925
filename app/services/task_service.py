import asyncio
import logging
import math
from datetime import datetime, timezone

from sqlalchemy import delete, func, or_
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.cache.invalidation import CacheInvalidator, stats_key, unique_user_ids
from app.cache.layer import CacheLayer
from app.core.exceptions import ForbiddenError, NotFoundError, ValidationFailedError
from app.database import SessionFactory
from app.models import (
    Pagination,
    Project,
    Task,
    TaskAssignee,
    TaskCreate,
    TaskPage,
    TaskResponse,
    TaskStats,
    TaskUpdate,
)
from app.services import membership

logger = logging.getLogger(__name__)


def to_response(task: Task, assigned_to: list[int]) -> TaskResponse:
    return TaskResponse(
        id=task.id,
        title=task.title,
        description=task.description,
        status=task.status,
        priority=task.priority,
        deadline=task.deadline,
        tags=list(task.tags or []),
        project_id=task.project_id,
        created_by=task.created_by,
        assigned_to=assigned_to,
        created_at=task.created_at,
        updated_at=task.updated_at,
    )


class TaskService:
    """Task permissions, the assignee-is-member invariant and cached stats."""

    def __init__(
        self,
        session_factory: SessionFactory,
        cache: CacheLayer,
        invalidator: CacheInvalidator,
        cache_ttl: int = 60,
        max_page_size: int | None = None,
    ):
        self._session_factory = session_factory
        self._cache = cache
        self._invalidator = invalidator
        self._cache_ttl = cache_ttl
        self._max_page_size = max_page_size

    async def create_task(
        self, actor_id: int, project_id: int, task_data: TaskCreate
    ) -> TaskResponse:
        assignees = unique_user_ids(task_data.assigned_to)

        async with self._session_factory() as db:
            project = await db.get(Project, project_id)
            if project is None or not await membership.is_member(db, project_id, actor_id):
                raise NotFoundError("Project not found")
            await membership.ensure_users_exist(db, assignees)

            task = Task.model_validate(
                task_data.model_dump(exclude={"assigned_to"}),
                update={"project_id": project_id, "created_by": actor_id},
            )
            db.add(task)
            await db.flush()
            db.add_all(TaskAssignee(task_id=task.id, user_id=uid) for uid in assignees)
            # Assignees become project members
            await membership.add_members(db, project_id, assignees)
            await db.commit()
            await db.refresh(task)

        logger.info("Task %s created in project %s by user %s", task.id, project_id, actor_id)
        await self._invalidator.invalidate_for_users(project_id, [actor_id, *assignees])
        return to_response(task, assignees)

    async def get_all_tasks(
        self, actor_id: int, project_id: int, page: int = 1, limit: int = 10
    ) -> TaskPage:
        """Page through a project's tasks, newest first."""
        async with self._session_factory() as db:
            if not await membership.is_member(db, project_id, actor_id):
                raise NotFoundError("Project not found")
            return await self._paginate(db, Task.project_id == project_id, page, limit)

    async def get_all_user_tasks(
        self, actor_id: int, page: int = 1, limit: int = 10
    ) -> TaskPage:
        """Tasks in any project that the actor created or is assigned to."""
        assigned = select(TaskAssignee.task_id).where(TaskAssignee.user_id == actor_id)
        condition = or_(
            col(Task.created_by) == actor_id,
            col(Task.id).in_(assigned),
        )
        async with self._session_factory() as db:
            return await self._paginate(db, condition, page, limit)

    async def get_task(self, actor_id: int, project_id: int, task_id: int) -> TaskResponse:
        async with self._session_factory() as db:
            project = await db.get(Project, project_id)
            if project is None:
                raise NotFoundError("Project not found")
            if not await membership.is_member(db, project_id, actor_id):
                raise ForbiddenError("Not authorized: Project membership required")

            task = await db.get(Task, task_id)
            if task is None or task.project_id != project_id:
                raise NotFoundError("Task not found")
            assigned = await membership.assignee_ids(db, [task.id])
            return to_response(task, assigned[task.id])

    async def update_task(
        self, actor_id: int, project_id: int, task_id: int, task_data: TaskUpdate
    ) -> TaskResponse:
        update_data = task_data.model_dump(exclude_unset=True)
        if not update_data:
            raise ValidationFailedError("Please provide fields to update")

        project, task, current_assignees = await self._load_project_and_task(
            project_id, task_id
        )
        is_owner = project.owner_id == actor_id
        is_creator = task.created_by == actor_id
        is_assignee = actor_id in current_assignees
        if not (is_owner or is_creator or is_assignee):
            raise ForbiddenError("Not authorized to update this task")

        async with self._session_factory() as db:
            task = await db.get(Task, task_id)
            if task is None or task.project_id != project_id:
                raise NotFoundError("Task not found")

            assignees = current_assignees
            if "assigned_to" in update_data:
                assignees = unique_user_ids(update_data.pop("assigned_to"))
                await membership.ensure_users_exist(db, assignees)
                await self._replace_assignees(db, task_id, current_assignees, assignees)

            task.sqlmodel_update(update_data)
            task.updated_at = datetime.now(timezone.utc)
            db.add(task)
            if assignees:
                await membership.add_members(db, project_id, assignees)
            await db.commit()
            await db.refresh(task)

        await self._invalidator.invalidate_for_users(
            project_id, [actor_id, *assignees, task.created_by]
        )
        return to_response(task, assignees)

    async def delete_task(
        self, actor_id: int, project_id: int, task_id: int
    ) -> TaskResponse:
        project, task, assignees = await self._load_project_and_task(project_id, task_id)
        if project.owner_id != actor_id and task.created_by != actor_id:
            raise ForbiddenError("Not authorized to delete this task")

        async with self._session_factory() as db:
            await db.execute(
                delete(TaskAssignee)
                .where(col(TaskAssignee.task_id) == task_id)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(
                delete(Task)
                .where(col(Task.id) == task_id, col(Task.project_id) == project_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await db.rollback()
                raise NotFoundError("Task not found")
            await db.commit()

        logger.info("Task %s deleted from project %s by user %s", task_id, project_id, actor_id)
        await self._invalidator.invalidate_for_users(
            project_id, [actor_id, *assignees, task.created_by]
        )
        return to_response(task, assignees)

    async def get_task_stats(self, actor_id: int, project_id: int) -> dict:
        """
        Count the project's tasks per status.

        Every member sees the same project-wide numbers; the result is cached
        per (project, member) for ``cache_ttl`` seconds.
        """
        async with self._session_factory() as db:
            if not await membership.is_member(db, project_id, actor_id):
                raise ForbiddenError("Not authorized to view statistics for this project")

        async def loader():
            async with self._session_factory() as db:
                result = await db.exec(
                    select(Task.status, func.count())
                    .where(Task.project_id == project_id)
                    .group_by(Task.status)
                    .order_by(Task.status)
                )
                rows = result.all()
            payload = TaskStats(
                stats=[{"status": status, "count": count} for status, count in rows],
                summary={
                    "total_tasks": sum(count for _, count in rows),
                    "last_updated": datetime.now(timezone.utc),
                },
            )
            return payload.model_dump(mode="json", by_alias=True)

        return await self._cache.get(
            stats_key(project_id, actor_id), loader=loader, ttl=self._cache_ttl
        )

    async def _load_project_and_task(
        self, project_id: int, task_id: int
    ) -> tuple[Project, Task, list[int]]:
        """Fetch project and task concurrently, each on its own session."""

        async def load_project():
            async with self._session_factory() as db:
                return await db.get(Project, project_id)

        async def load_task():
            async with self._session_factory() as db:
                task = await db.get(Task, task_id)
                if task is None:
                    return None, []
                assigned = await membership.assignee_ids(db, [task.id])
                return task, assigned[task.id]

        project, (task, assignees) = await asyncio.gather(load_project(), load_task())
        if task is None or (project is not None and task.project_id != project_id):
            raise NotFoundError("Task not found")
        if project is None:
            raise NotFoundError("Project not found")
        return project, task, assignees

    async def _replace_assignees(
        self, db: AsyncSession, task_id: int, former: list[int], resulting: list[int]
    ) -> None:
        removed = set(former) - set(resulting)
        if removed:
            await db.execute(
                delete(TaskAssignee)
                .where(
                    col(TaskAssignee.task_id) == task_id,
                    col(TaskAssignee.user_id).in_(removed),
                )
                .execution_options(synchronize_session=False)
            )
        db.add_all(
            TaskAssignee(task_id=task_id, user_id=uid)
            for uid in resulting
            if uid not in former
        )

    async def _paginate(self, db: AsyncSession, condition, page: int, limit: int) -> TaskPage:
        page = max(page, 1)
        limit = max(limit, 1)
        if self._max_page_size:
            limit = min(limit, self._max_page_size)
        skip = (page - 1) * limit

        total = (
            await db.exec(select(func.count()).select_from(Task).where(condition))
        ).one()
        query = (
            select(Task)
            .where(condition)
            .order_by(col(Task.created_at).desc(), col(Task.id).desc())
            .offset(skip)
            .limit(limit)
        )
        tasks = list((await db.exec(query)).all())
        assigned = await membership.assignee_ids(db, [t.id for t in tasks])

        return TaskPage(
            count=len(tasks),
            pagination=Pagination(total=total, page=page, pages=math.ceil(total / limit)),
            data=[to_response(t, assigned[t.id]) for t in tasks],
        )
