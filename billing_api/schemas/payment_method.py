"""Pydantic schemas for payment methods."""

from datetime import datetime
from pydantic import BaseModel, Field


class PaymentMethodResponse(BaseModel):
    """A payment method as exposed over the API. The encrypted signature never leaves the server."""

    id: str = Field(..., description="Payment method identifier")
    contract_type: str = Field(..., description="Always direct_debit_contract")
    contract_status: str = Field(..., description="Contract lifecycle state")
    contract_display_name: str
    contract_mobile: str | None = None
    max_daily_amount: int | None = None
    max_daily_count: int | None = None
    max_monthly_count: int | None = None
    is_primary: bool
    is_active: bool
    contract_expires_at: datetime | None = None
    contract_verified_at: datetime | None = None
    last_used_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {
        "from_attributes": True,
        "json_schema_extra": {
            "example": {
                "id": "0b6c3a9e-4f43-4d43-9d2a-3a53c1f0a6d1",
                "contract_type": "direct_debit_contract",
                "contract_status": "active",
                "contract_display_name": "Direct Debit Contract",
                "contract_mobile": "09123456789",
                "is_primary": True,
                "is_active": True,
                "created_at": "2026-01-01T10:00:00Z",
                "updated_at": "2026-01-01T10:05:00Z",
            }
        },
    }


class PaymentMethodList(BaseModel):
    items: list[PaymentMethodResponse]
    total: int


class SetDefaultResponse(BaseModel):
    success: bool
    changed: bool = Field(..., description="False when the method already was the default")
    payment_method_id: str
    previous_default_id: str | None = None
    message: str
