"""User registration endpoints."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_api.database import get_db, unit_of_work
from billing_api.middleware.auth import get_current_user
from billing_api.models import User
from billing_api.schemas import UserCreate, UserResponse, UserPublic, ErrorResponse
from billing_api.errors import ErrorCode, make_error

router = APIRouter(prefix="/users", tags=["Users"], responses={401: {"model": ErrorResponse}})


@router.post("", response_model=UserResponse, status_code=201)
async def create_user(
    user_data: UserCreate,
    db: AsyncSession = Depends(get_db),
):
    """
    Register a user.

    Returns the user including the generated session token.
    **Important**: Store the token securely - it cannot be retrieved again.
    """
    email = user_data.email.lower()
    stmt = select(User).where(User.email == email)
    result = await db.execute(stmt)
    if result.scalar_one_or_none():
        raise HTTPException(
            status_code=409,
            detail=make_error(ErrorCode.USER_EXISTS),
        )

    user = User(email=email, name=user_data.name)
    async with unit_of_work(db):
        db.add(user)

    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        session_token=user.session_token,
        created_at=user.created_at,
    )


@router.get("/me", response_model=UserPublic)
async def get_me(user: User = Depends(get_current_user)):
    """Return the user behind the session token."""
    return UserPublic(
        id=user.id,
        email=user.email,
        name=user.name,
        is_active=user.is_active,
        created_at=user.created_at,
    )
