"""BillingEvent model - append-only audit log of contract lifecycle changes."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import String, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column

from billing_api.database import Base, utcnow


class BillingEventType(str, Enum):
    CONTRACT_REQUESTED = "direct_debit_contract_requested"
    CONTRACT_VERIFIED = "direct_debit_contract_verified"
    CONTRACT_DECLINED = "direct_debit_contract_declined"
    CONTRACT_VERIFICATION_FAILED = "direct_debit_contract_verification_failed"
    PAYMENT_METHOD_HARD_DELETED = "payment_method_hard_deleted"
    DEFAULT_PAYMENT_METHOD_CHANGED = "default_payment_method_changed"
    PAYMENT_METHOD_RECOVERED = "payment_method_recovered"
    PAYMENT_METHOD_RECOVERY_IDEMPOTENT = "payment_method_recovery_idempotent"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


def generate_event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


class BillingEvent(Base):
    """BillingEvent model - immutable record written at every state transition.

    ``payment_method_id`` deliberately carries no foreign key: a hard delete
    writes its event and removes the referenced row in the same transaction.
    """

    __tablename__ = "billing_events"

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=generate_event_id)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    payment_method_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    severity: Mapped[str] = mapped_column(String(16), nullable=False, default=Severity.INFO.value)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False, index=True
    )

    def __repr__(self) -> str:
        return f"<BillingEvent {self.id}: {self.event_type}>"
