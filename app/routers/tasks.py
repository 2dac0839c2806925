from fastapi import APIRouter, status

from app.dependencies import CurrentUser, PageDep, TaskServiceDep
from app.models import TaskCreate, TaskPage, TaskResponse, TaskStats, TaskUpdate

router = APIRouter(prefix="/api/projects/{project_id}/tasks", tags=["tasks"])

user_tasks_router = APIRouter(prefix="/api/tasks", tags=["tasks"])


@user_tasks_router.get("/all", response_model=TaskPage)
async def get_all_user_tasks(user: CurrentUser, page: PageDep, task_service: TaskServiceDep):
    """Tasks the caller created or is assigned to, across projects"""
    return await task_service.get_all_user_tasks(user.id, page.page, page.limit)


@router.post("", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(
    project_id: int, task_data: TaskCreate, user: CurrentUser, task_service: TaskServiceDep
):
    """Create a new task"""
    return await task_service.create_task(user.id, project_id, task_data)


@router.get("", response_model=TaskPage)
async def get_tasks(
    project_id: int, user: CurrentUser, page: PageDep, task_service: TaskServiceDep
):
    return await task_service.get_all_tasks(user.id, project_id, page.page, page.limit)


# Registered before /{task_id} so "stats" is never parsed as an id
@router.get("/stats", response_model=TaskStats)
async def get_task_stats(project_id: int, user: CurrentUser, task_service: TaskServiceDep):
    return await task_service.get_task_stats(user.id, project_id)


@router.get("/{task_id}", response_model=TaskResponse)
async def get_task(
    project_id: int, task_id: int, user: CurrentUser, task_service: TaskServiceDep
):
    """Get a specific task by ID"""
    return await task_service.get_task(user.id, project_id, task_id)


@router.put("/{task_id}", response_model=TaskResponse)
async def update_task(
    project_id: int,
    task_id: int,
    task_data: TaskUpdate,
    user: CurrentUser,
    task_service: TaskServiceDep,
):
    return await task_service.update_task(user.id, project_id, task_id, task_data)


@router.delete("/{task_id}", response_model=TaskResponse)
async def delete_task(
    project_id: int, task_id: int, user: CurrentUser, task_service: TaskServiceDep
):
    """Delete a task"""
    return await task_service.delete_task(user.id, project_id, task_id)
