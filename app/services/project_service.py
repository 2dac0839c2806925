import logging
from datetime import datetime, timezone

from sqlalchemy import delete
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.cache.invalidation import CacheInvalidator, projects_key, unique_user_ids
from app.cache.layer import CacheLayer
from app.core.exceptions import ForbiddenError, NotFoundError, ValidationFailedError
from app.database import SessionFactory
from app.models import (
    Project,
    ProjectCreate,
    ProjectMember,
    ProjectResponse,
    ProjectUpdate,
    Task,
    TaskAssignee,
)
from app.services import membership

logger = logging.getLogger(__name__)


class ProjectService:
    """Who can see and change a project, and the owner-is-member invariant."""

    def __init__(
        self,
        session_factory: SessionFactory,
        cache: CacheLayer,
        invalidator: CacheInvalidator,
        cache_ttl: int = 60,
    ):
        self._session_factory = session_factory
        self._cache = cache
        self._invalidator = invalidator
        self._cache_ttl = cache_ttl

    async def list_projects(self, actor_id: int) -> list[ProjectResponse]:
        """Projects where the actor is a member, newest first."""

        async def loader():
            async with self._session_factory() as db:
                result = await db.exec(
                    select(Project)
                    .join(ProjectMember, col(ProjectMember.project_id) == col(Project.id))
                    .where(ProjectMember.user_id == actor_id)
                    .order_by(col(Project.created_at).desc(), col(Project.id).desc())
                )
                projects = await self._to_responses(db, list(result.all()))
            return [p.model_dump(mode="json", by_alias=True) for p in projects]

        cached = await self._cache.get(
            projects_key(actor_id), loader=loader, ttl=self._cache_ttl
        )
        return [ProjectResponse.model_validate(p) for p in cached or []]

    async def get_project(self, actor_id: int, project_id: int) -> ProjectResponse:
        async with self._session_factory() as db:
            project = await db.get(Project, project_id)
            if project is None:
                raise NotFoundError("Project not found")

            members = await membership.member_ids(db, project_id)
            if actor_id not in members:
                raise ForbiddenError("Not authorized: Project membership required")

            return (await self._to_responses(db, [project]))[0]

    async def create_project(self, actor_id: int, data: ProjectCreate) -> ProjectResponse:
        members = unique_user_ids([*data.members, actor_id])

        async with self._session_factory() as db:
            await membership.ensure_users_exist(db, members)

            project = Project(
                name=data.name,
                description=data.description,
                status=data.status,
                owner_id=actor_id,
            )
            db.add(project)
            await db.flush()
            db.add_all(ProjectMember(project_id=project.id, user_id=uid) for uid in members)
            await db.commit()
            await db.refresh(project)
            response = (await self._to_responses(db, [project]))[0]

        logger.info("Project %s created by user %s", project.id, actor_id)
        await self._invalidator.invalidate_project_lists(members)
        return response

    async def update_project(
        self, actor_id: int, project_id: int, patch: ProjectUpdate
    ) -> ProjectResponse:
        update_data = patch.model_dump(exclude_unset=True)
        if not update_data:
            raise ValidationFailedError("Please provide fields to update")

        async with self._session_factory() as db:
            project = await self._get_owned(db, actor_id, project_id)

            former = await membership.member_ids(db, project_id)
            resulting = former
            if "members" in update_data:
                # Owner and anyone holding an assignment stay members
                resulting = unique_user_ids(
                    [
                        project.owner_id,
                        *update_data.pop("members"),
                        *await membership.project_assignee_ids(db, project_id),
                    ]
                )
                await membership.ensure_users_exist(db, resulting)
                await self._replace_members(db, project_id, former, resulting)

            project.sqlmodel_update(update_data)
            project.updated_at = datetime.now(timezone.utc)
            db.add(project)
            await db.commit()
            await db.refresh(project)
            response = (await self._to_responses(db, [project]))[0]

        await self._invalidator.invalidate_project_lists([*former, *resulting])
        return response

    async def delete_project(self, actor_id: int, project_id: int) -> ProjectResponse:
        """Delete the project and cascade to its tasks in one transaction."""
        async with self._session_factory() as db:
            project = await self._get_owned(db, actor_id, project_id)
            response = (await self._to_responses(db, [project]))[0]
            former = [m.id for m in response.members]

            task_ids = select(Task.id).where(Task.project_id == project_id)
            await db.execute(
                delete(TaskAssignee)
                .where(col(TaskAssignee.task_id).in_(task_ids))
                .execution_options(synchronize_session=False)
            )
            await db.execute(
                delete(Task)
                .where(col(Task.project_id) == project_id)
                .execution_options(synchronize_session=False)
            )
            await db.execute(
                delete(ProjectMember)
                .where(col(ProjectMember.project_id) == project_id)
                .execution_options(synchronize_session=False)
            )
            await db.delete(project)
            await db.commit()

        logger.info("Project %s deleted by user %s", project_id, actor_id)
        await self._invalidator.invalidate_project_lists(former)
        await self._invalidator.invalidate_project_stats(project_id)
        return response

    async def _get_owned(
        self, db: AsyncSession, actor_id: int, project_id: int
    ) -> Project:
        project = await db.get(Project, project_id)
        if project is None:
            raise NotFoundError("Project not found")
        if project.owner_id != actor_id:
            raise ForbiddenError("Not authorized: Owner access required")
        return project

    async def _replace_members(
        self, db: AsyncSession, project_id: int, former: list[int], resulting: list[int]
    ) -> None:
        removed = set(former) - set(resulting)
        if removed:
            await db.execute(
                delete(ProjectMember)
                .where(
                    col(ProjectMember.project_id) == project_id,
                    col(ProjectMember.user_id).in_(removed),
                )
                .execution_options(synchronize_session=False)
            )
        db.add_all(
            ProjectMember(project_id=project_id, user_id=uid)
            for uid in resulting
            if uid not in former
        )

    async def _to_responses(
        self, db: AsyncSession, projects: list[Project]
    ) -> list[ProjectResponse]:
        """Expand owner and members to summary identities."""
        if not projects:
            return []
        ids = [p.id for p in projects]
        result = await db.exec(
            select(ProjectMember)
            .where(col(ProjectMember.project_id).in_(ids))
            .order_by(ProjectMember.project_id, ProjectMember.user_id)
        )
        members_by_project: dict[int, list[int]] = {pid: [] for pid in ids}
        for row in result.all():
            members_by_project[row.project_id].append(row.user_id)

        users = await membership.user_summaries(
            db,
            [p.owner_id for p in projects]
            + [uid for uids in members_by_project.values() for uid in uids],
        )
        return [
            ProjectResponse(
                id=p.id,
                name=p.name,
                description=p.description,
                status=p.status,
                owner=users[p.owner_id],
                members=[users[uid] for uid in members_by_project[p.id] if uid in users],
                created_at=p.created_at,
                updated_at=p.updated_at,
            )
            for p in projects
        ]
