"""In-process stand-in for the ZarinPal Payman API.

Used when ``ZARINPAL_MODE=mock`` and by the test-suite. Signatures are derived
from the authority, so verifying the same authority twice yields the same
signature exactly like the real gateway does.
"""

import hashlib
import logging
import uuid

from billing_api.metrics import record_gateway_call
from billing_api.services.gateway import Bank, GatewayError, ZARINPAL_SUCCESS_CODE

logger = logging.getLogger(__name__)

DEFAULT_BANKS = [
    Bank(name="Bank Melli Iran", slug="bmi", bank_code="017", max_daily_amount=500_000_000, max_daily_count=10),
    Bank(name="Bank Mellat", slug="mellat", bank_code="012", max_daily_amount=300_000_000, max_daily_count=20),
    Bank(name="Saman Bank", slug="saman", bank_code="056", max_daily_amount=200_000_000, max_daily_count=None),
]

# ZarinPal answers cancelContract for an already inactive contract with this code
CONTRACT_NOT_ACTIVE_CODE = -63


def mock_signature(payman_authority: str) -> str:
    """Deterministic 200-character signature for an authority."""
    digest = hashlib.sha256(payman_authority.encode("utf-8")).hexdigest()
    return (digest * 4)[:200]


class FakeGatewayClient:
    """Gateway client that never leaves the process.

    ``failing`` holds operation names ("request_contract", "get_bank_list",
    "verify_contract", "cancel_contract") that should raise GatewayError.
    Every call is appended to ``calls`` as ``(operation, argument)``.
    """

    def __init__(self, banks: list[Bank] | None = None, failing: set[str] | None = None):
        self.banks = list(DEFAULT_BANKS) if banks is None else banks
        self.failing = set(failing or ())
        self.calls: list[tuple[str, object]] = []
        self.cancelled_signatures: set[str] = set()

    def _enter(self, operation: str, argument: object = None) -> None:
        self.calls.append((operation, argument))
        if operation in self.failing:
            record_gateway_call(operation, "error", 0.0)
            raise GatewayError(operation, "simulated gateway failure", http_status=503)
        record_gateway_call(operation, "success", 0.0)

    def calls_to(self, operation: str) -> list[object]:
        return [argument for name, argument in self.calls if name == operation]

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
        self._enter("request_contract", {
            "mobile": mobile,
            "national_id": national_id,
            "expire_at": expire_at,
            "max_daily_count": max_daily_count,
            "max_monthly_count": max_monthly_count,
            "max_amount": max_amount,
            "callback_url": callback_url,
        })
        return f"payman_mock_{uuid.uuid4().hex[:16]}"

    async def get_bank_list(self) -> list[Bank]:
        self._enter("get_bank_list")
        return list(self.banks)

    async def verify_contract(self, payman_authority: str) -> str:
        self._enter("verify_contract", payman_authority)
        return mock_signature(payman_authority)

    async def cancel_contract(self, signature: str) -> int:
        self._enter("cancel_contract", signature)
        if signature in self.cancelled_signatures:
            raise GatewayError("contract cancellation", "contract is not active", code=CONTRACT_NOT_ACTIVE_CODE)
        self.cancelled_signatures.add(signature)
        logger.debug("Mock contract cancelled")
        return ZARINPAL_SUCCESS_CODE
