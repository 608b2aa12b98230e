"""PaymentMethod model - one row per direct-debit contract attempt or contract."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import String, DateTime, ForeignKey, Boolean, Integer, BigInteger, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_api.database import Base, utcnow

DIRECT_DEBIT_CONTRACT = "direct_debit_contract"


class ContractStatus(str, Enum):
    """Lifecycle states of a direct-debit contract.

    no_contract -> pending -> active -> (cancelled | expired)
    pending -> invalid
    """

    NO_CONTRACT = "no_contract"
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    INVALID = "invalid"


def generate_payment_method_id() -> str:
    return str(uuid.uuid4())


class PaymentMethod(Base):
    """PaymentMethod model.

    The contract signature is only ever stored encrypted. Its SHA-256 hash is
    kept alongside so duplicate verifications can be detected without
    decrypting anything.
    """

    __tablename__ = "payment_methods"
    __table_args__ = (
        UniqueConstraint("user_id", "contract_signature_hash", name="uq_payment_method_user_signature"),
        Index("ix_payment_method_user_status", "user_id", "contract_status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_payment_method_id)
    user_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True
    )
    contract_type: Mapped[str] = mapped_column(String(32), nullable=False, default=DIRECT_DEBIT_CONTRACT)
    contract_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ContractStatus.PENDING.value
    )
    payman_authority: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    contract_signature_encrypted: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    contract_signature_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Contract details
    contract_display_name: Mapped[str] = mapped_column(
        String(255), nullable=False, default="Direct Debit Contract"
    )
    contract_mobile: Mapped[str | None] = mapped_column(String(20), nullable=True)
    max_daily_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    max_daily_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_monthly_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    contract_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    contract_verified_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Status flags
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="payment_methods")

    @property
    def has_signature(self) -> bool:
        return bool(self.contract_signature_encrypted)

    def __repr__(self) -> str:
        return f"<PaymentMethod {self.id}: {self.contract_status} primary={self.is_primary}>"
