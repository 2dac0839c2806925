"""Pytest fixtures for testing."""
from collections.abc import AsyncGenerator, Awaitable, Callable

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine

from app import database
from app.cache.invalidation import CacheInvalidator
from app.cache.layer import CacheLayer
from app.core.config import Settings
from app.core.security import hash_password
from app.database import SessionFactory
from app.main import close_resources, create_app, init_resources
from app.models import User
from app.services.project_service import ProjectService
from app.services.task_service import TaskService


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Throw-away SQLite file per test, Redis off so the cache is L1 only."""
    return Settings(
        _env_file=None,
        environment="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'taskboard.db'}",
        redis_enabled=False,
        jwt_access_secret="test-access-secret-0123456789abcdef",
        jwt_refresh_secret="test-refresh-secret-0123456789abcdef",
    )


@pytest.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine]:
    engine = database.create_engine(settings)
    await database.create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> SessionFactory:
    return database.create_session_factory(engine)


@pytest.fixture
async def cache(settings: Settings) -> AsyncGenerator[CacheLayer]:
    cache = CacheLayer(settings)
    await cache.connect()
    yield cache
    await cache.close()


@pytest.fixture
def project_service(session_factory: SessionFactory, cache: CacheLayer) -> ProjectService:
    return ProjectService(session_factory, cache, CacheInvalidator(cache))


@pytest.fixture
def task_service(session_factory: SessionFactory, cache: CacheLayer) -> TaskService:
    return TaskService(session_factory, cache, CacheInvalidator(cache), max_page_size=100)


@pytest.fixture
def make_user(session_factory: SessionFactory) -> Callable[[str, str], Awaitable[User]]:
    async def _make_user(name: str, email: str) -> User:
        async with session_factory() as db:
            user = User(name=name, email=email, hashed_password=hash_password("secret123"))
            db.add(user)
            await db.commit()
            await db.refresh(user)
            return user

    return _make_user


@pytest.fixture
async def owner(make_user) -> User:
    return await make_user("Uma Owner", "uma@example.com")


@pytest.fixture
async def member(make_user) -> User:
    return await make_user("Vic Member", "vic@example.com")


@pytest.fixture
async def outsider(make_user) -> User:
    return await make_user("Wes Outsider", "wes@example.com")


# =============================================================================
# API
# =============================================================================


@pytest.fixture
async def app(settings: Settings):
    """Application with resources opened the way the lifespan opens them."""
    app = create_app(settings)
    await init_resources(app, settings)
    yield app
    await close_resources(app)


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient]:
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as test_client:
        yield test_client


@pytest.fixture
def register(client: AsyncClient) -> Callable[..., Awaitable[dict]]:
    """
    Register a user through the API and return its bearer headers.

    Cookies set by the response are dropped so each request authenticates
    only with the headers it is given.
    """

    async def _register(name: str, email: str, password: str = "secret123") -> dict:
        response = await client.post(
            "/api/auth/register",
            json={"name": name, "email": email, "password": password},
        )
        assert response.status_code == 201, response.text
        body = response.json()
        client.cookies.clear()
        return {
            "headers": {"Authorization": f"Bearer {body['accessToken']}"},
            "user": body["user"],
        }

    return _register
