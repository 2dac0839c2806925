from fastapi import APIRouter, status

from app.dependencies import CurrentUser, ProjectServiceDep
from app.models import ProjectCreate, ProjectResponse, ProjectUpdate

router = APIRouter(prefix="/api/projects", tags=["projects"])


@router.get("", response_model=list[ProjectResponse])
async def get_projects(user: CurrentUser, project_service: ProjectServiceDep):
    """Projects the caller is a member of"""
    return await project_service.list_projects(user.id)


@router.post("", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
async def create_project(
    project_data: ProjectCreate, user: CurrentUser, project_service: ProjectServiceDep
):
    return await project_service.create_project(user.id, project_data)


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: int, user: CurrentUser, project_service: ProjectServiceDep
):
    return await project_service.get_project(user.id, project_id)


@router.put("/{project_id}", response_model=ProjectResponse)
async def update_project(
    project_id: int,
    project_data: ProjectUpdate,
    user: CurrentUser,
    project_service: ProjectServiceDep,
):
    """Owner only"""
    return await project_service.update_project(user.id, project_id, project_data)


@router.delete("/{project_id}", response_model=ProjectResponse)
async def delete_project(
    project_id: int, user: CurrentUser, project_service: ProjectServiceDep
):
    """Owner only. Removes every task of the project as well."""
    return await project_service.delete_project(user.id, project_id)
