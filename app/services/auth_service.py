import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from app.core import security
from app.core.config import Settings
from app.core.exceptions import UnauthenticatedError, ValidationFailedError
from app.database import SessionFactory
from app.models import LoginRequest, RegisterRequest, User, UserResponse

logger = logging.getLogger(__name__)


@dataclass
class AuthResult:
    user: UserResponse
    access_token: str
    refresh_token: str


class AuthService:
    def __init__(self, session_factory: SessionFactory, settings: Settings):
        self._session_factory = session_factory
        self._settings = settings

    async def register_user(self, data: RegisterRequest) -> AuthResult:
        async with self._session_factory() as db:
            existing = (
                await db.exec(select(User).where(User.email == data.email))
            ).first()
            if existing is not None:
                raise ValidationFailedError("User already exists")

            user = User(
                name=data.name,
                email=data.email,
                hashed_password=security.hash_password(data.password),
            )
            db.add(user)
            try:
                await db.commit()
            except IntegrityError:
                # Lost a race with a concurrent registration
                await db.rollback()
                raise ValidationFailedError("User already exists")
            await db.refresh(user)

        logger.info("User %s registered", user.id)
        return self._auth_result(user)

    async def login_user(self, data: LoginRequest) -> AuthResult:
        async with self._session_factory() as db:
            user = (await db.exec(select(User).where(User.email == data.email))).first()

        if user is None or not security.verify_password(data.password, user.hashed_password):
            raise UnauthenticatedError("Invalid email or password")
        return self._auth_result(user)

    async def refresh_access_token(self, refresh_token: str | None) -> str:
        if not refresh_token:
            raise UnauthenticatedError("Not authorized, no refresh token")

        try:
            user_id = security.decode_token(
                refresh_token, security.REFRESH_TOKEN_TYPE, self._settings
            )
        except UnauthenticatedError:
            raise UnauthenticatedError("Not authorized, token failed")

        if await self.get_user(user_id) is None:
            raise UnauthenticatedError("Not authorized, token failed")
        return security.create_access_token(user_id, self._settings)

    async def get_user(self, user_id: int) -> User | None:
        async with self._session_factory() as db:
            return await db.get(User, user_id)

    def _auth_result(self, user: User) -> AuthResult:
        return AuthResult(
            user=UserResponse.model_validate(user),
            access_token=security.create_access_token(user.id, self._settings),
            refresh_token=security.create_refresh_token(user.id, self._settings),
        )
