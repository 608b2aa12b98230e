"""Business logic services package."""

from billing_api.services.contracts import ContractService
from billing_api.services.gateway import GatewayClient, GatewayError, ZarinPalGatewayClient, get_gateway_client
from billing_api.services.signature_cipher import SignatureCipher, get_signature_cipher
from billing_api.services.contract_cookie import ContractCookieCodec, get_contract_cookie_codec

__all__ = [
    "ContractService",
    "GatewayClient",
    "GatewayError",
    "ZarinPalGatewayClient",
    "get_gateway_client",
    "SignatureCipher",
    "get_signature_cipher",
    "ContractCookieCodec",
    "get_contract_cookie_codec",
]
