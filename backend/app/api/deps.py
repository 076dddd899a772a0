from typing import Annotated
import logging

from fastapi import Cookie, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.notifications import ReservationNotifier, email_notifier
from app.core.pii import get_cipher
from app.core.reservation_engine import ReservationEngine
from app.core.security import decode_access_token
from app.db.session import get_db
from app.models.models import User


DbSessionDep = Annotated[AsyncSession, Depends(get_db)]
logger = logging.getLogger("giftregistry.auth")


def _extract_token(request: Request, access_token: str | None) -> str | None:
    if access_token:
        return access_token
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.removeprefix("Bearer ").strip()
    return None


def _subject_user_id(payload: dict | None) -> int | None:
    if not payload or "sub" not in payload:
        return None
    try:
        return int(payload["sub"])
    except (TypeError, ValueError):
        return None


async def get_current_user(
    request: Request,
    db: DbSessionDep,
    access_token: str | None = Cookie(default=None, alias="access_token"),
) -> User:
    token = _extract_token(request, access_token)
    if not token:
        logger.info(
            "Auth token missing path=%s ip=%s",
            request.url.path,
            request.client.host if request.client else None,
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    user_id = _subject_user_id(decode_access_token(token))
    if user_id is None:
        logger.info("Auth token invalid path=%s", request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    try:
        result = await db.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
    except Exception:
        logger.exception("get_current_user: DB error when fetching user_id=%s", user_id)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Database error")

    if not user:
        logger.info("Auth user missing path=%s user_id=%s", request.url.path, user_id)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


async def get_optional_user(
    request: Request,
    db: DbSessionDep,
    access_token: str | None = Cookie(default=None, alias="access_token"),
) -> User | None:
    """Resolve the caller if a valid token is present; anonymous callers get None."""
    token = _extract_token(request, access_token)
    if not token:
        return None
    user_id = _subject_user_id(decode_access_token(token))
    if user_id is None:
        return None
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


def get_notifier() -> ReservationNotifier:
    return email_notifier


async def get_reservation_engine(
    db: DbSessionDep,
    notifier: ReservationNotifier = Depends(get_notifier),
) -> ReservationEngine:
    return ReservationEngine(db, get_cipher(), notifier)


CurrentUserDep = Annotated[User, Depends(get_current_user)]
OptionalUserDep = Annotated[User | None, Depends(get_optional_user)]
EngineDep = Annotated[ReservationEngine, Depends(get_reservation_engine)]
