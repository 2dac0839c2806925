"""Request-scoped dependencies shared by the routers."""
from dataclasses import dataclass

from fastapi import Depends, Query, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from typing_extensions import Annotated

from app.core import security
from app.core.config import Settings
from app.core.exceptions import UnauthenticatedError
from app.core.rate_limit import RateLimiter, RateLimitExceededError
from app.models import User
from app.services.auth_service import AuthService
from app.services.project_service import ProjectService
from app.services.task_service import TaskService

ACCESS_COOKIE = "token"
REFRESH_COOKIE = "refreshToken"

bearer_scheme = HTTPBearer(auto_error=False)


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_project_service(request: Request) -> ProjectService:
    return request.app.state.project_service


def get_task_service(request: Request) -> TaskService:
    return request.app.state.task_service


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


AppSettings = Annotated[Settings, Depends(get_app_settings)]
AuthServiceDep = Annotated[AuthService, Depends(get_auth_service)]
ProjectServiceDep = Annotated[ProjectService, Depends(get_project_service)]
TaskServiceDep = Annotated[TaskService, Depends(get_task_service)]
RateLimiterDep = Annotated[RateLimiter, Depends(get_rate_limiter)]


async def enforce_rate_limit(request: Request, limiter: RateLimiterDep) -> None:
    """Count the request against its client IP; headers are added by middleware."""
    client_ip = request.client.host if request.client else "unknown"
    result = await limiter.check(client_ip)
    if result is None:
        return
    if not result.allowed:
        raise RateLimitExceededError(result)
    request.state.rate_limit_info = {
        "limit": result.limit,
        "remaining": result.remaining,
        "reset": result.reset,
    }


async def get_current_user(
    request: Request,
    settings: AppSettings,
    auth_service: AuthServiceDep,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> User:
    """Resolve the actor from the bearer header, falling back to the cookie."""
    token = credentials.credentials if credentials else request.cookies.get(ACCESS_COOKIE)
    if not token:
        raise UnauthenticatedError("Not authorized, no token")

    user_id = security.decode_token(token, security.ACCESS_TOKEN_TYPE, settings)
    user = await auth_service.get_user(user_id)
    if user is None:
        raise UnauthenticatedError("User not found")
    return user


CurrentUser = Annotated[User, Depends(get_current_user)]


def _positive_int(raw: str | None, default: int) -> int:
    try:
        value = int(raw) if raw is not None else default
    except ValueError:
        return default
    return value if value >= 1 else default


@dataclass
class PageParams:
    page: int
    limit: int


def get_page_params(
    settings: AppSettings,
    page: str | None = Query(default=None),
    limit: str | None = Query(default=None),
) -> PageParams:
    """Non-numeric or non-positive values fall back to the defaults."""
    return PageParams(
        page=_positive_int(page, 1),
        limit=_positive_int(limit, settings.default_page_size),
    )


PageDep = Annotated[PageParams, Depends(get_page_params)]
