"""Tests for project visibility, ownership and membership rules."""
import pytest

from app.cache.invalidation import projects_key
from app.core.exceptions import ForbiddenError, NotFoundError, ValidationFailedError
from app.models import ProjectCreate, ProjectMember, ProjectUpdate, TaskCreate


def _member_ids(project) -> set[int]:
    return {m.id for m in project.members}


async def _create(project_service, actor_id: int, **overrides):
    data = {"name": "Launch", "description": "Q3 launch plan", **overrides}
    return await project_service.create_project(actor_id, ProjectCreate(**data))


class TestCreateProject:
    async def test__create_project__owner_is_member(self, project_service, owner) -> None:
        project = await _create(project_service, owner.id)

        assert project.owner.id == owner.id
        assert _member_ids(project) == {owner.id}
        assert project.status == "active"

    async def test__create_project__dedupes_listed_members(
        self, project_service, owner, member,
    ) -> None:
        project = await _create(
            project_service, owner.id, members=[member.id, member.id, owner.id],
        )

        assert sorted(m.id for m in project.members) == sorted([owner.id, member.id])

    async def test__create_project__unknown_member_rejected(
        self, project_service, owner,
    ) -> None:
        with pytest.raises(ValidationFailedError, match="Unknown user id"):
            await _create(project_service, owner.id, members=[9999])

    async def test__create_project__appears_in_cached_member_list(
        self, project_service, owner, member,
    ) -> None:
        # Prime the member's cached list before they are added anywhere
        assert await project_service.list_projects(member.id) == []

        project = await _create(project_service, owner.id, members=[member.id])

        listed = await project_service.list_projects(member.id)
        assert [p.id for p in listed] == [project.id]


class TestListProjects:
    async def test__list_projects__only_member_projects(
        self, project_service, owner, member, outsider,
    ) -> None:
        shared = await _create(project_service, owner.id, name="Shared", members=[member.id])
        await _create(project_service, owner.id, name="Private")

        assert [p.id for p in await project_service.list_projects(member.id)] == [shared.id]
        assert await project_service.list_projects(outsider.id) == []
        assert len(await project_service.list_projects(owner.id)) == 2

    async def test__list_projects__served_from_cache_until_invalidated(
        self, project_service, session_factory, cache, owner, member,
    ) -> None:
        project = await _create(project_service, owner.id)
        assert await project_service.list_projects(member.id) == []

        # A write that bypasses the services leaves the cached list in place
        async with session_factory() as db:
            db.add(ProjectMember(project_id=project.id, user_id=member.id))
            await db.commit()
        assert await project_service.list_projects(member.id) == []

        await cache.delete(projects_key(member.id))
        assert [p.id for p in await project_service.list_projects(member.id)] == [project.id]


class TestGetProject:
    async def test__get_project__missing(self, project_service, owner) -> None:
        with pytest.raises(NotFoundError, match="Project not found"):
            await project_service.get_project(owner.id, 12345)

    async def test__get_project__non_member_forbidden(
        self, project_service, owner, outsider,
    ) -> None:
        project = await _create(project_service, owner.id)

        with pytest.raises(ForbiddenError, match="membership required"):
            await project_service.get_project(outsider.id, project.id)

    async def test__get_project__member_sees_expanded_identities(
        self, project_service, owner, member,
    ) -> None:
        project = await _create(project_service, owner.id, members=[member.id])

        fetched = await project_service.get_project(member.id, project.id)

        assert fetched.owner.email == owner.email
        assert {m.name for m in fetched.members} == {owner.name, member.name}


class TestUpdateProject:
    async def test__update_project__owner_changes_fields(
        self, project_service, owner,
    ) -> None:
        project = await _create(project_service, owner.id)

        updated = await project_service.update_project(
            owner.id, project.id, ProjectUpdate(name="Relaunch", status="completed"),
        )

        assert updated.name == "Relaunch"
        assert updated.status == "completed"
        assert updated.description == "Q3 launch plan"
        assert updated.updated_at is not None

    async def test__update_project__member_forbidden(
        self, project_service, owner, member,
    ) -> None:
        project = await _create(project_service, owner.id, members=[member.id])

        with pytest.raises(ForbiddenError, match="Owner access required"):
            await project_service.update_project(
                member.id, project.id, ProjectUpdate(name="Mine now"),
            )

    async def test__update_project__empty_patch_rejected(
        self, project_service, owner,
    ) -> None:
        project = await _create(project_service, owner.id)

        with pytest.raises(ValidationFailedError, match="provide fields"):
            await project_service.update_project(owner.id, project.id, ProjectUpdate())

    async def test__update_project__members_replacement_keeps_owner(
        self, project_service, owner, member, outsider,
    ) -> None:
        project = await _create(project_service, owner.id, members=[member.id])

        updated = await project_service.update_project(
            owner.id, project.id, ProjectUpdate(members=[outsider.id]),
        )

        assert _member_ids(updated) == {owner.id, outsider.id}

    async def test__update_project__members_replacement_keeps_assignees(
        self, project_service, task_service, owner, member, outsider,
    ) -> None:
        project = await _create(project_service, owner.id)
        await task_service.create_task(
            owner.id, project.id, TaskCreate(title="Write brief", assigned_to=[member.id]),
        )

        updated = await project_service.update_project(
            owner.id, project.id, ProjectUpdate(members=[outsider.id]),
        )

        assert _member_ids(updated) == {owner.id, member.id, outsider.id}

    async def test__update_project__removed_member_list_invalidated(
        self, project_service, owner, member,
    ) -> None:
        project = await _create(project_service, owner.id, members=[member.id])
        assert len(await project_service.list_projects(member.id)) == 1

        await project_service.update_project(
            owner.id, project.id, ProjectUpdate(members=[]),
        )

        assert await project_service.list_projects(member.id) == []


class TestDeleteProject:
    async def test__delete_project__cascades_to_tasks(
        self, project_service, task_service, owner, member,
    ) -> None:
        project = await _create(project_service, owner.id, members=[member.id])
        task = await task_service.create_task(
            owner.id, project.id, TaskCreate(title="Write brief", assigned_to=[member.id]),
        )

        deleted = await project_service.delete_project(owner.id, project.id)

        assert deleted.id == project.id
        with pytest.raises(NotFoundError):
            await task_service.get_task(owner.id, project.id, task.id)
        with pytest.raises(NotFoundError):
            await project_service.get_project(owner.id, project.id)
        assert (await task_service.get_all_user_tasks(member.id)).pagination.total == 0

    async def test__delete_project__clears_member_lists_and_stats(
        self, project_service, task_service, owner, member,
    ) -> None:
        project = await _create(project_service, owner.id, members=[member.id])
        assert len(await project_service.list_projects(member.id)) == 1
        await task_service.get_task_stats(member.id, project.id)

        await project_service.delete_project(owner.id, project.id)

        assert await project_service.list_projects(member.id) == []
        with pytest.raises(ForbiddenError):
            await task_service.get_task_stats(member.id, project.id)

    async def test__delete_project__member_forbidden(
        self, project_service, owner, member,
    ) -> None:
        project = await _create(project_service, owner.id, members=[member.id])

        with pytest.raises(ForbiddenError):
            await project_service.delete_project(member.id, project.id)

        assert (await project_service.get_project(owner.id, project.id)).id == project.id

    async def test__delete_project__missing(self, project_service, owner) -> None:
        with pytest.raises(NotFoundError):
            await project_service.delete_project(owner.id, 4242)
