"""Pydantic schemas for direct debit contracts."""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from billing_api.schemas.payment_method import PaymentMethodResponse

MOBILE_PATTERN = r"^(?:\+98|0)?9\d{9}$"
NATIONAL_ID_PATTERN = r"^\d{10}$"
EXPIRE_AT_FORMAT = "%Y-%m-%d %H:%M:%S"


class BankResponse(BaseModel):
    """A bank available for contract signing."""

    name: str = Field(..., description="Bank display name")
    slug: str = Field(..., description="Bank slug identifier")
    bank_code: str = Field(..., description="Bank code for the signing URL")
    max_daily_amount: int = Field(..., description="Maximum daily amount in IRR")
    max_daily_count: int | None = Field(None, description="Maximum daily transaction count (null = unlimited)")


class BankListResponse(BaseModel):
    banks: list[BankResponse]


class CreateContractRequest(BaseModel):
    """Schema for requesting a new direct debit contract."""

    mobile: str = Field(..., pattern=MOBILE_PATTERN, description="Customer mobile number (09xxxxxxxxx)")
    national_id: str | None = Field(None, pattern=NATIONAL_ID_PATTERN, description="Customer national ID (10 digits)")
    expire_at: datetime = Field(..., description="Contract expiry, 'YYYY-MM-DD HH:MM:SS', at least 30 days ahead")
    max_daily_count: int = Field(..., gt=0, description="Maximum daily transactions")
    max_monthly_count: int = Field(..., gt=0, description="Maximum monthly transactions")
    max_amount: int = Field(..., gt=0, description="Maximum transaction amount in IRR")

    @field_validator("expire_at", mode="before")
    @classmethod
    def parse_expire_at(cls, value):
        if isinstance(value, str):
            try:
                return datetime.strptime(value, EXPIRE_AT_FORMAT)
            except ValueError:
                raise ValueError("Date must be in 'YYYY-MM-DD HH:MM:SS' format")
        return value

    model_config = {
        "json_schema_extra": {
            "example": {
                "mobile": "09123456789",
                "national_id": "0480123456",
                "expire_at": "2027-12-31 23:59:59",
                "max_daily_count": 10,
                "max_monthly_count": 100,
                "max_amount": 50000000,
            }
        }
    }


class CreateContractResponse(BaseModel):
    """Response for a newly requested contract."""

    contract_id: str = Field(..., description="Id of the pending payment method tracking this contract")
    payman_authority: str = Field(..., description="ZarinPal Payman authority for signing")
    banks: list[BankResponse] = Field(..., description="Available banks for contract signing")
    signing_url_template: str = Field(..., description="Signing URL - replace {bank_code} with the selected bank code")

    model_config = {
        "json_schema_extra": {
            "example": {
                "contract_id": "0b6c3a9e-4f43-4d43-9d2a-3a53c1f0a6d1",
                "payman_authority": "payman_6moa",
                "banks": [
                    {
                        "name": "Bank Melli Iran",
                        "slug": "bmi",
                        "bank_code": "017",
                        "max_daily_amount": 500000000,
                        "max_daily_count": 10,
                    }
                ],
                "signing_url_template": "https://www.zarinpal.com/pg/StartPayman/payman_6moa/{bank_code}",
            }
        }
    }


class VerifyContractRequest(BaseModel):
    """Schema for verifying a signed contract after the bank redirect."""

    payman_authority: str = Field(..., min_length=1, description="Contract authority received from the callback")
    status: str = Field(..., pattern=r"^(OK|NOK)$", description="Status from the contract signing callback")


class VerifyContractResponse(BaseModel):
    signature: str = Field(..., description="Contract signature, returned once for client confirmation")
    payment_method: PaymentMethodResponse
    idempotent: bool = Field(False, description="True when the contract was already stored")


class CancelContractResponse(BaseModel):
    cancelled: bool = Field(..., description="Whether the contract was removed")
    payment_method_id: str
    gateway_cancelled: bool = Field(..., description="Whether ZarinPal confirmed the cancellation")
    message: str


class ContractCallbackResponse(BaseModel):
    """Public callback result. Always returned with HTTP 200."""

    success: bool
    persisted: bool = False
    payment_method_id: str | None = None
    message: str


class RecoverContractRequest(BaseModel):
    payman_authority: str = Field(..., min_length=1, description="Authority of the contract to recover")


class RecoverContractResponse(BaseModel):
    success: bool
    recovered: bool = Field(..., description="True when a missing payment method was created")
    payment_method: PaymentMethodResponse
    message: str


class ContractStatusResponse(BaseModel):
    """Summary of the user's direct debit setup."""

    status: str = Field(..., description="no_contract, pending, active, expired, cancelled or invalid")
    contract_id: str | None = None
    can_make_payments: bool
    needs_setup: bool
    message: str
    expires_at: datetime | None = None
    verified_at: datetime | None = None
