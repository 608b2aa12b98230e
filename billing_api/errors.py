"""Error codes, message catalog and domain exceptions for billing operations."""

from enum import Enum


class ErrorCode(str, Enum):
    """Machine-readable error codes."""

    # Authentication (401)
    UNAUTHENTICATED = "unauthenticated"
    INVALID_SESSION = "invalid_session"

    # Not Found (404)
    PAYMENT_METHOD_NOT_FOUND = "payment_method_not_found"
    CONTRACT_NOT_FOUND = "contract_not_found"

    # Conflict (409)
    USER_EXISTS = "user_exists"
    ACTIVE_SUBSCRIPTIONS = "active_subscriptions"

    # Validation (400/422)
    VALIDATION_FAILED = "validation_failed"
    LIMIT_EXCEEDED = "limit_exceeded"
    SIGNING_NOT_SUCCESSFUL = "signing_not_successful"
    NOT_DIRECT_DEBIT = "not_direct_debit"
    CONTRACT_NOT_ACTIVE = "contract_not_active"
    INVALID_FIELD = "invalid_field"

    # Upstream (502)
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    GATEWAY_MISCONFIGURED = "gateway_misconfigured"


# Error message templates with hints
ERROR_MESSAGES: dict[ErrorCode, dict] = {
    ErrorCode.UNAUTHENTICATED: {
        "message": "User authentication required",
        "hint": "Include your session token in the X-Session-Token header. You receive one when registering via POST /users.",
    },
    ErrorCode.INVALID_SESSION: {
        "message": "The provided session token is invalid",
        "hint": "Session tokens start with 'bd_'. Log in again to obtain a fresh token.",
    },
    ErrorCode.PAYMENT_METHOD_NOT_FOUND: {
        "message": "Payment method not found",
        "hint": "List your payment methods with GET /payment-methods and use one of the returned ids.",
    },
    ErrorCode.CONTRACT_NOT_FOUND: {
        "message": "Direct debit contract request not found",
        "hint": "Start a new contract with POST /payment-methods/contracts.",
    },
    ErrorCode.USER_EXISTS: {
        "message": "A user with this email already exists",
    },
    ErrorCode.ACTIVE_SUBSCRIPTIONS: {
        "message": "Cannot delete payment method: active subscriptions exist",
        "hint": "Cancel or move the subscriptions that use this payment method first.",
    },
    ErrorCode.VALIDATION_FAILED: {
        "message": "Request validation failed",
        "hint": "Check the field values against the documented formats.",
    },
    ErrorCode.LIMIT_EXCEEDED: {
        "message": "Requested contract limits exceed what the banks allow",
        "hint": "Use GET /payment-methods/contracts/banks to see the maximum daily amount and count per bank.",
    },
    ErrorCode.SIGNING_NOT_SUCCESSFUL: {
        "message": "Contract signing was not successful",
        "hint": "The bank reported that the contract was not signed. Start a new contract to retry.",
    },
    ErrorCode.NOT_DIRECT_DEBIT: {
        "message": "Not a direct debit contract",
    },
    ErrorCode.CONTRACT_NOT_ACTIVE: {
        "message": "Payment method contract is not active",
        "hint": "Only verified, active contracts can be used as the default payment method.",
    },
    ErrorCode.INVALID_FIELD: {
        "message": "Invalid field value",
        "hint": "Check the field value matches the expected type and format.",
    },
    ErrorCode.UPSTREAM_UNAVAILABLE: {
        "message": "Direct debit service temporarily unavailable",
        "hint": "The payment gateway did not confirm the request. Please retry in a few seconds.",
    },
    ErrorCode.GATEWAY_MISCONFIGURED: {
        "message": "Payment gateway is not configured correctly",
        "hint": "Set ZARINPAL_MERCHANT_ID to the merchant UUID from the ZarinPal panel.",
    },
}


def make_error(code: ErrorCode, **overrides) -> dict:
    """
    Build an error response dict for the given error code.

    Args:
        code: The ErrorCode enum value
        **overrides: Optional field overrides (message, hint, field)

    Returns:
        Dict with {"error": {...}} structure ready to be sent as a response body
    """
    base = ERROR_MESSAGES.get(code, {
        "message": "An error occurred",
        "hint": None,
    })

    error = {
        "code": code.value,
        "message": base.get("message", "An error occurred"),
    }

    if base.get("hint"):
        error["hint"] = base["hint"]

    error.update({k: v for k, v in overrides.items() if v is not None})

    return {"error": error}


class BillingError(Exception):
    """Base class for errors raised by billing operations.

    Carries the HTTP status and error code the API layer should answer with.
    """

    status_code: int = 400
    default_code: ErrorCode = ErrorCode.VALIDATION_FAILED

    def __init__(self, message: str | None = None, code: ErrorCode | None = None, **details):
        self.code = code or self.default_code
        self.message = message
        self.details = details
        super().__init__(message or ERROR_MESSAGES.get(self.code, {}).get("message", self.code.value))

    def to_dict(self) -> dict:
        return make_error(self.code, message=self.message, **self.details)


class Unauthenticated(BillingError):
    status_code = 401
    default_code = ErrorCode.UNAUTHENTICATED


class ValidationFailed(BillingError):
    status_code = 422
    default_code = ErrorCode.VALIDATION_FAILED


class NotFound(BillingError):
    status_code = 404
    default_code = ErrorCode.PAYMENT_METHOD_NOT_FOUND


class Conflict(BillingError):
    status_code = 409
    default_code = ErrorCode.ACTIVE_SUBSCRIPTIONS


class UpstreamUnavailable(BillingError):
    status_code = 502
    default_code = ErrorCode.UPSTREAM_UNAVAILABLE
