"""Authentication service: JWT bearer token management.

Sign-up and login live in the wider platform; this service only issues
and decodes the tokens that identify the acting user.
"""

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from sublease_platform.app.config import get_settings

settings = get_settings()


def create_access_token(user_id: str) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expiration_minutes)
    payload = {"sub": user_id, "exp": expire}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict | None:
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
