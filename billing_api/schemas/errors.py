"""Pydantic schemas for error responses."""

from pydantic import BaseModel, Field


class ErrorDetail(BaseModel):
    """Detailed error information with actionable guidance."""

    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    hint: str | None = Field(None, description="Actionable guidance to fix the error")
    field: str | None = Field(None, description="Field name for validation errors")
    zarinpal_code: int | None = Field(None, description="Gateway error code, when the gateway reported one")

    model_config = {
        "json_schema_extra": {
            "example": {
                "code": "limit_exceeded",
                "message": "max_amount exceeds the highest bank limit of 500000000",
                "hint": "Use GET /payment-methods/contracts/banks to see the maximum daily amount and count per bank.",
                "field": "max_amount",
            }
        }
    }


class ErrorResponse(BaseModel):
    """Standard error response wrapper."""

    error: ErrorDetail

    model_config = {
        "json_schema_extra": {
            "example": {
                "error": {
                    "code": "unauthenticated",
                    "message": "User authentication required",
                    "hint": "Include your session token in the X-Session-Token header.",
                }
            }
        }
    }


class ValidationErrorDetail(BaseModel):
    """Validation error for a specific field."""

    code: str = Field(default="invalid_field", description="Error code")
    message: str = Field(..., description="Error message")
    field: str = Field(..., description="Field path that caused the error")
    hint: str | None = Field(None, description="How to fix the error")


class ValidationErrorResponse(BaseModel):
    """Response for request validation errors (422)."""

    errors: list[ValidationErrorDetail]

    model_config = {
        "json_schema_extra": {
            "example": {
                "errors": [
                    {
                        "code": "invalid_field",
                        "message": "Field required",
                        "field": "body.mobile",
                        "hint": "Check the 'mobile' field in your request.",
                    }
                ]
            }
        }
    }
