"""ZarinPal Payman (direct debit) gateway client.

Implements the four Payman calls the contract lifecycle needs:
request a contract, list banks, verify a signed contract, cancel a contract.
See https://docs.zarinpal.com/paymentGateway/directPayment.html
"""

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Protocol

import httpx

from billing_api.config import get_settings
from billing_api.metrics import record_gateway_call

logger = logging.getLogger(__name__)

ZARINPAL_SUCCESS_CODE = 100
SIGNING_URL_TEMPLATE = "https://www.zarinpal.com/pg/StartPayman/{authority}/{bank_code}"

# ZarinPal codes that mean the merchant itself is rejected
_AUTH_ERROR_CODES = {-74, -80}

_MERCHANT_ID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
_PLACEHOLDER_MERCHANT_IDS = (
    "YOUR_",
    "your-merchant-id",
    "REPLACE_",
    "PLACEHOLDER",
    "xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx",
)


class GatewayError(Exception):
    """A Payman call failed, timed out, or returned a non-success code."""

    def __init__(
        self,
        operation: str,
        message: str,
        code: int | None = None,
        http_status: int | None = None,
    ):
        self.operation = operation
        self.message = message
        self.code = code
        self.http_status = http_status
        super().__init__(f"ZarinPal {operation} failed: {message}")

    @property
    def is_auth_error(self) -> bool:
        return self.code in _AUTH_ERROR_CODES


class GatewayConfigurationError(GatewayError):
    """The merchant id is missing or obviously not a real one."""

    def __init__(self, message: str):
        super().__init__("configure", message)


@dataclass(frozen=True)
class Bank:
    """A bank that can sign Payman contracts."""

    name: str
    slug: str
    bank_code: str
    max_daily_amount: int
    max_daily_count: int | None

    @classmethod
    def from_api(cls, data: dict) -> "Bank":
        max_daily_count = data.get("max_daily_count")
        return cls(
            name=data["name"],
            slug=data["slug"],
            bank_code=str(data["bank_code"]),
            max_daily_amount=int(data["max_daily_amount"]),
            max_daily_count=int(max_daily_count) if max_daily_count is not None else None,
        )


class GatewayClient(Protocol):
    """Contract the orchestrator relies on. Every method raises GatewayError on failure."""

    async def request_contract(
        self,
        mobile: str,
        national_id: str | None,
        expire_at: str,
        max_daily_count: int,
        max_monthly_count: int,
        max_amount: int,
        callback_url: str,
    ) -> str:
        ...

    async def get_bank_list(self) -> list[Bank]:
        ...

    async def verify_contract(self, payman_authority: str) -> str:
        ...

    async def cancel_contract(self, signature: str) -> int:
        ...


def validate_merchant_id(merchant_id: str) -> None:
    """Raise GatewayConfigurationError unless merchant_id looks like a real merchant UUID."""
    if not merchant_id:
        raise GatewayConfigurationError("ZarinPal merchant ID not configured. Set ZARINPAL_MERCHANT_ID.")
    if any(pattern in merchant_id for pattern in _PLACEHOLDER_MERCHANT_IDS):
        raise GatewayConfigurationError("ZarinPal merchant ID is a placeholder value.")
    if not _MERCHANT_ID_RE.match(merchant_id):
        raise GatewayConfigurationError("Invalid ZarinPal merchant ID format. Must be a valid UUID.")


def _error_from_body(body: dict) -> tuple[int | None, str | None]:
    """Pull (code, message) out of a ZarinPal error envelope."""
    errors = body.get("errors")
    if isinstance(errors, dict) and errors.get("code") is not None:
        return errors.get("code"), errors.get("message")
    data = body.get("data")
    if isinstance(data, dict) and data.get("code") is not None:
        return data.get("code"), data.get("message")
    return None, None


class ZarinPalGatewayClient:
    """Async HTTP client for the ZarinPal Payman API."""

    def __init__(
        self,
        merchant_id: str,
        base_url: str = "https://api.zarinpal.com",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.merchant_id = merchant_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "Accept": "application/json",
                "User-Agent": "BillingDashboard/1.0",
            },
        )

    async def _call(self, operation: str, method: str, path: str, payload: dict | None = None) -> dict:
        """Perform one Payman call and return its ``data`` object.

        Raises GatewayError on transport failure, timeout, non-2xx status,
        an unparseable body, or a ``data.code`` other than 100.
        """
        start = time.perf_counter()
        outcome = "error"
        try:
            validate_merchant_id(self.merchant_id)
            async with self._client() as client:
                try:
                    response = await client.request(method, path, json=payload)
                except httpx.TimeoutException as e:
                    outcome = "timeout"
                    raise GatewayError(operation, f"request timed out after {self.timeout}s") from e
                except httpx.RequestError as e:
                    raise GatewayError(operation, f"request failed: {e}") from e

            try:
                body = response.json()
            except (json.JSONDecodeError, ValueError) as e:
                raise GatewayError(
                    operation, "invalid JSON response", http_status=response.status_code
                ) from e

            if not isinstance(body, dict):
                raise GatewayError(operation, "unexpected response shape", http_status=response.status_code)

            code, message = _error_from_body(body)
            data = body.get("data")

            if response.is_error or not isinstance(data, dict) or data.get("code") != ZARINPAL_SUCCESS_CODE:
                raise GatewayError(
                    operation,
                    message or f"HTTP {response.status_code}",
                    code=code,
                    http_status=response.status_code,
                )

            outcome = "success"
            return data
        except GatewayError as e:
            logger.warning(
                "ZarinPal call failed",
                extra={
                    "operation": operation,
                    "zarinpal_code": e.code,
                    "http_status": e.http_status,
                    "error": e.message,
                },
            )
            raise
        finally:
            record_gateway_call(operation, outcome, time.perf_counter() - start)

    async def request_contract(
        self,
        mobile: str,
        national_id: str | None,
        expire_at: str,
        max_daily_count: int,
        max_monthly_count: int,
        max_amount: int,
        callback_url: str,
    ) -> str:
        payload = {
            "merchant_id": self.merchant_id,
            "mobile": mobile,
            "expire_at": expire_at,
            "max_daily_count": str(max_daily_count),
            "max_monthly_count": str(max_monthly_count),
            "max_amount": str(max_amount),
            "callback_url": callback_url,
        }
        if national_id:
            payload["ssn"] = national_id

        data = await self._call("contract request", "POST", "/pg/v4/payman/request.json", payload)
        authority = data.get("payman_authority")
        if not authority:
            raise GatewayError("contract request", "response did not include payman_authority")
        return authority

    async def get_bank_list(self) -> list[Bank]:
        data = await self._call("bank list", "GET", "/pg/v4/payman/banksList.json")
        try:
            return [Bank.from_api(bank) for bank in data.get("banks") or []]
        except (KeyError, TypeError, ValueError) as e:
            raise GatewayError("bank list", f"malformed bank entry: {e}") from e

    async def verify_contract(self, payman_authority: str) -> str:
        payload = {"merchant_id": self.merchant_id, "payman_authority": payman_authority}
        data = await self._call("contract verification", "POST", "/pg/v4/payman/verify.json", payload)
        signature = data.get("signature")
        if not signature:
            raise GatewayError("contract verification", "response did not include a signature")
        return signature

    async def cancel_contract(self, signature: str) -> int:
        payload = {"merchant_id": self.merchant_id, "signature": signature}
        data = await self._call("contract cancellation", "POST", "/pg/v4/payman/cancelContract.json", payload)
        return data["code"]


def signing_url_template(payman_authority: str) -> str:
    """Signing URL with the authority filled in and ``{bank_code}`` left for the client."""
    return SIGNING_URL_TEMPLATE.replace("{authority}", payman_authority)


_gateway_client: GatewayClient | None = None


def get_gateway_client() -> GatewayClient:
    """Get or create the gateway client for the configured mode.

    ``ZARINPAL_MODE=mock`` swaps in the in-process fake so non-production
    flows run through exactly the same orchestration code.
    """
    global _gateway_client
    if _gateway_client is None:
        settings = get_settings()
        if settings.zarinpal_mode == "mock":
            from billing_api.services.fake_gateway import FakeGatewayClient

            _gateway_client = FakeGatewayClient()
        else:
            _gateway_client = ZarinPalGatewayClient(
                merchant_id=settings.zarinpal_merchant_id,
                base_url=settings.zarinpal_base_url,
                timeout=settings.zarinpal_timeout,
            )
    return _gateway_client
