import logging
import time
import traceback
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from app import database
from app.cache.invalidation import CacheInvalidator
from app.cache.layer import CacheLayer
from app.core.config import Settings, get_settings
from app.core.exceptions import TaskboardError, UnauthenticatedError
from app.core.logging_config import configure_logging
from app.core.rate_limit import RateLimiter, RateLimitExceededError
from app.dependencies import ACCESS_COOKIE, REFRESH_COOKIE, enforce_rate_limit
from app.routers import auth, health, projects, tasks
from app.services.auth_service import AuthService
from app.services.project_service import ProjectService
from app.services.task_service import TaskService

logger = logging.getLogger(__name__)


async def init_resources(app: FastAPI, settings: Settings) -> None:
    """Open the process-wide store and cache handles and build the services."""
    engine = database.create_engine(settings)
    if settings.create_tables_on_startup:
        await database.create_db_and_tables(engine)
    session_factory = database.create_session_factory(engine)

    cache = CacheLayer(settings)
    await cache.connect()
    invalidator = CacheInvalidator(cache)

    app.state.engine = engine
    app.state.cache = cache
    app.state.rate_limiter = RateLimiter(settings, cache)
    app.state.auth_service = AuthService(session_factory, settings)
    app.state.project_service = ProjectService(
        session_factory, cache, invalidator, cache_ttl=settings.cache_ttl_seconds
    )
    app.state.task_service = TaskService(
        session_factory,
        cache,
        invalidator,
        cache_ttl=settings.cache_ttl_seconds,
        max_page_size=settings.max_page_size,
    )


async def close_resources(app: FastAPI) -> None:
    await app.state.cache.close()
    await app.state.engine.dispose()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log one line per request with status and duration."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ):
        start = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "%s %s %s %.1fms",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - start) * 1000,
        )
        return response


class RateLimitHeadersMiddleware(BaseHTTPMiddleware):
    """Add rate limit headers to responses of requests that were counted."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ):
        response = await call_next(request)
        info = getattr(request.state, "rate_limit_info", None)
        if info:
            response.headers["X-RateLimit-Limit"] = str(info["limit"])
            response.headers["X-RateLimit-Remaining"] = str(info["remaining"])
            response.headers["X-RateLimit-Reset"] = str(info["reset"])
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        return response


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_resources(app, settings)
        yield
        await close_resources(app)

    app = FastAPI(
        title="Taskboard API",
        description="Multi-tenant project and task tracker with cached aggregates",
        swagger_ui_parameters={"displayRequestDuration": True},
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    @app.exception_handler(TaskboardError)
    async def taskboard_error_handler(_request: Request, exc: TaskboardError):
        response = JSONResponse(status_code=exc.status_code, content={"detail": exc.message})
        if isinstance(exc, UnauthenticatedError):
            for name in (ACCESS_COOKIE, REFRESH_COOKIE):
                response.delete_cookie(name, httponly=True, samesite="strict")
        return response

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_error_handler(_request: Request, exc: RateLimitExceededError):
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={"detail": "Rate limit exceeded. Please try again later."},
            headers={
                "Retry-After": str(exc.result.retry_after),
                "X-RateLimit-Limit": str(exc.result.limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(exc.result.reset),
            },
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(_request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "detail": "Validation failed",
                "errors": [
                    {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
                    for err in exc.errors()
                ],
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        content = {"detail": "Internal server error"}
        if settings.is_development:
            content["error"] = str(exc)
            content["stack"] = traceback.format_exception(exc)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content)

    app.add_middleware(RateLimitHeadersMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers; /health stays outside the per-IP limit
    app.include_router(health.router)
    limited = [Depends(enforce_rate_limit)]
    app.include_router(auth.router, dependencies=limited)
    app.include_router(projects.router, dependencies=limited)
    app.include_router(tasks.user_tasks_router, dependencies=limited)
    app.include_router(tasks.router, dependencies=limited)

    @app.get("/")
    async def root():
        return {
            "message": "Welcome to Taskboard API",
            "docs": "/docs",
            "version": "1.0.0",
        }

    return app


app = create_app()
