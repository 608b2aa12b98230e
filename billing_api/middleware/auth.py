"""Session authentication dependencies."""

from fastapi import Security, Depends
from fastapi.security import APIKeyHeader
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_api.config import get_settings
from billing_api.database import get_db
from billing_api.models import User
from billing_api.errors import ErrorCode, Unauthenticated

settings = get_settings()

session_header = APIKeyHeader(name=settings.session_header, auto_error=False)


async def _user_by_token(db: AsyncSession, token: str) -> User | None:
    stmt = select(User).where(User.session_token == token).where(User.is_active == True)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_current_user(
    token: str = Security(session_header),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Resolve the session token to an active user."""
    if not token:
        raise Unauthenticated()

    user = await _user_by_token(db, token)
    if not user:
        raise Unauthenticated(code=ErrorCode.INVALID_SESSION)

    return user


async def get_optional_user(
    token: str = Security(session_header),
    db: AsyncSession = Depends(get_db),
) -> User | None:
    """Like get_current_user, but anonymous callers get None instead of a 401."""
    if not token:
        return None
    return await _user_by_token(db, token)
