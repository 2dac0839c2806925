import logging

from fastapi import APIRouter, Request, Response, status

from app.core.config import Settings
from app.dependencies import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    AppSettings,
    AuthServiceDep,
    CurrentUser,
)
from app.models import (
    AuthResponse,
    LoginRequest,
    RefreshResponse,
    RegisterRequest,
    UserResponse,
)
from app.services.auth_service import AuthResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _cookie_options(settings: Settings) -> dict:
    return {"httponly": True, "secure": settings.is_production, "samesite": "strict"}


def set_access_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        ACCESS_COOKIE,
        token,
        max_age=settings.access_token_expire_minutes * 60,
        **_cookie_options(settings),
    )


def clear_auth_cookies(response: Response, settings: Settings) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(name, **_cookie_options(settings))


def _token_response(result: AuthResult, response: Response, settings: Settings) -> AuthResponse:
    set_access_cookie(response, result.access_token, settings)
    response.set_cookie(
        REFRESH_COOKIE,
        result.refresh_token,
        max_age=settings.refresh_token_expire_days * 24 * 60 * 60,
        **_cookie_options(settings),
    )
    return AuthResponse(user=result.user, access_token=result.access_token)


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    data: RegisterRequest,
    response: Response,
    auth_service: AuthServiceDep,
    settings: AppSettings,
):
    """Register a new user"""
    result = await auth_service.register_user(data)
    return _token_response(result, response, settings)


@router.post("/login", response_model=AuthResponse)
async def login(
    data: LoginRequest,
    response: Response,
    auth_service: AuthServiceDep,
    settings: AppSettings,
):
    result = await auth_service.login_user(data)
    return _token_response(result, response, settings)


@router.post("/refresh", response_model=RefreshResponse)
async def refresh(
    request: Request,
    response: Response,
    auth_service: AuthServiceDep,
    settings: AppSettings,
):
    """Issue a new access token from the refresh cookie"""
    access_token = await auth_service.refresh_access_token(
        request.cookies.get(REFRESH_COOKIE)
    )
    set_access_cookie(response, access_token, settings)
    return RefreshResponse(access_token=access_token)


@router.post("/logout")
async def logout(user: CurrentUser, response: Response, settings: AppSettings):
    clear_auth_cookies(response, settings)
    logger.info("User %s logged out", user.id)
    return {"message": "Logged out"}


@router.get("/me", response_model=UserResponse)
async def me(user: CurrentUser):
    return user
