"""Database models package."""

from billing_api.models.user import User
from billing_api.models.payment_method import PaymentMethod, ContractStatus, DIRECT_DEBIT_CONTRACT
from billing_api.models.billing_event import BillingEvent, BillingEventType, Severity
from billing_api.models.subscription import Subscription

__all__ = [
    "User",
    "PaymentMethod",
    "ContractStatus",
    "DIRECT_DEBIT_CONTRACT",
    "BillingEvent",
    "BillingEventType",
    "Severity",
    "Subscription",
]
