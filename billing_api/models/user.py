"""User model - an authenticated account that owns payment methods."""

import secrets
import uuid
from datetime import datetime
from sqlalchemy import String, DateTime, Boolean
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_api.database import Base, utcnow


def generate_user_id() -> str:
    return str(uuid.uuid4())


def generate_session_token() -> str:
    """Generate a secure session token."""
    return f"bd_{secrets.token_urlsafe(32)}"


class User(Base):
    """User model - sessions are resolved to a user through its token."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_user_id)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    session_token: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False, default=generate_session_token
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    # Relationships
    payment_methods: Mapped[list["PaymentMethod"]] = relationship(
        "PaymentMethod", back_populates="user", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<User {self.id}: {self.email}>"
