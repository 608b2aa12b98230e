"""Pydantic schemas for users."""

from datetime import datetime
from pydantic import BaseModel, Field


class UserCreate(BaseModel):
    """Schema for registering a user."""

    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", description="Login email")
    name: str = Field(..., min_length=1, description="Display name")

    model_config = {
        "json_schema_extra": {
            "example": {"email": "sara@example.com", "name": "Sara"}
        }
    }


class UserResponse(BaseModel):
    """Response schema for a newly registered user, including the session token."""

    id: str
    email: str
    name: str
    session_token: str = Field(..., description="Send in the X-Session-Token header")
    created_at: datetime


class UserPublic(BaseModel):
    """User details without the session token."""

    id: str
    email: str
    name: str
    is_active: bool
    created_at: datetime
