"""Pydantic schemas package."""

from billing_api.schemas.contract import (
    BankResponse,
    BankListResponse,
    CreateContractRequest,
    CreateContractResponse,
    VerifyContractRequest,
    VerifyContractResponse,
    CancelContractResponse,
    ContractCallbackResponse,
    RecoverContractRequest,
    RecoverContractResponse,
    ContractStatusResponse,
)
from billing_api.schemas.payment_method import PaymentMethodResponse, PaymentMethodList, SetDefaultResponse
from billing_api.schemas.user import UserCreate, UserResponse, UserPublic
from billing_api.schemas.errors import ErrorResponse, ValidationErrorResponse

__all__ = [
    "BankResponse",
    "BankListResponse",
    "CreateContractRequest",
    "CreateContractResponse",
    "VerifyContractRequest",
    "VerifyContractResponse",
    "CancelContractResponse",
    "ContractCallbackResponse",
    "RecoverContractRequest",
    "RecoverContractResponse",
    "ContractStatusResponse",
    "PaymentMethodResponse",
    "PaymentMethodList",
    "SetDefaultResponse",
    "UserCreate",
    "UserResponse",
    "UserPublic",
    "ErrorResponse",
    "ValidationErrorResponse",
]
