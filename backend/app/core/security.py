from datetime import datetime, timedelta, timezone
import logging
import secrets
from typing import Any
from uuid import uuid4

from jose import JWTError, jwt

from app.core.config import settings

_dev_logger = logging.getLogger("giftregistry.security")
_insecure_keys = {"CHANGE_ME", "your-secret-key-here-change-in-production", "secret", "jwt_secret", "changeme", ""}

if not settings.jwt_secret_key or settings.jwt_secret_key in _insecure_keys or len(settings.jwt_secret_key) < 32:
    env = getattr(settings, "environment", "local") or "local"
    if env.lower() == "local":
        settings.jwt_secret_key = secrets.token_urlsafe(64)
        _dev_logger.warning("JWT_SECRET_KEY was missing/insecure; generated ephemeral key for local dev")
    else:
        raise RuntimeError("JWT_SECRET_KEY must be set to a secure value (32+ chars) in production")


def create_access_token(subject: str, expires_delta_minutes: int | None = None) -> str:
    """Issue a bearer token. Login lives in the identity service; this is used by tooling and tests."""
    expire_minutes = expires_delta_minutes or settings.access_token_expire_minutes
    expire = datetime.now(timezone.utc) + timedelta(minutes=expire_minutes)
    to_encode: dict[str, Any] = {"sub": subject, "exp": expire, "type": "access", "jti": str(uuid4())}
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict[str, Any] | None:
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        return None
    if payload.get("type", "access") != "access":
        return None
    return payload
