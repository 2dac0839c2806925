"""Password hashing and signed session tokens."""
import logging
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt

from app.core.config import Settings
from app.core.exceptions import UnauthenticatedError

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


def _encode(user_id: int, token_type: str, secret: str, ttl: timedelta, settings: Settings) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "type": token_type,
        "iat": now,
        "exp": now + ttl,
    }
    return jwt.encode(payload, secret, algorithm=settings.jwt_algorithm)


def create_access_token(user_id: int, settings: Settings) -> str:
    return _encode(
        user_id,
        ACCESS_TOKEN_TYPE,
        settings.jwt_access_secret,
        timedelta(minutes=settings.access_token_expire_minutes),
        settings,
    )


def create_refresh_token(user_id: int, settings: Settings) -> str:
    return _encode(
        user_id,
        REFRESH_TOKEN_TYPE,
        settings.jwt_refresh_secret,
        timedelta(days=settings.refresh_token_expire_days),
        settings,
    )


def decode_token(token: str, token_type: str, settings: Settings) -> int:
    """
    Validate a token and return the user id it was issued for.

    Raises:
        UnauthenticatedError: If the token is expired, tampered with, or of
            the wrong type.
    """
    secret = (
        settings.jwt_access_secret
        if token_type == ACCESS_TOKEN_TYPE
        else settings.jwt_refresh_secret
    )
    try:
        payload = jwt.decode(token, secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise UnauthenticatedError("Not authorized, token expired")
    except jwt.PyJWTError as e:
        logger.warning("Token validation failed: %s", e)
        raise UnauthenticatedError("Not authorized, token failed")

    if payload.get("type") != token_type:
        raise UnauthenticatedError("Not authorized, token failed")
    try:
        return int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise UnauthenticatedError("Not authorized, token failed")
