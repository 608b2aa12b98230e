"""Short-lived ``pending-contract`` cookie used to recover the user on bank callbacks.

The bank redirects the browser back to the public callback endpoint, where a
session may not exist. At contract creation we hand the browser a Fernet token
binding the authority to the user id; the callback only trusts that user id if
the token is authentic, fresh, and names the same authority.
"""

import base64
import hashlib
import json
import logging
import time
from dataclasses import dataclass

from cryptography.fernet import Fernet, InvalidToken

from billing_api.config import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingContract:
    payman_authority: str
    user_id: str
    timestamp: int


class ContractCookieCodec:
    """Seals and opens pending-contract cookie values."""

    def __init__(self, secret: str, max_age: int):
        # Separate key from the signature cipher; both derive from the same secret
        key = hashlib.sha256(f"pending-contract:{secret}".encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(key))
        self.max_age = max_age

    def encode(self, payman_authority: str, user_id: str) -> str:
        payload = {
            "payman_authority": payman_authority,
            "user_id": user_id,
            "timestamp": int(time.time()),
        }
        return self._fernet.encrypt(json.dumps(payload).encode("utf-8")).decode("ascii")

    def decode(self, value: str | None) -> PendingContract | None:
        """Return the cookie contents, or None if absent, tampered, expired or malformed."""
        if not value:
            return None
        try:
            raw = self._fernet.decrypt(value.encode("ascii"), ttl=self.max_age)
            data = json.loads(raw)
            return PendingContract(
                payman_authority=str(data["payman_authority"]),
                user_id=str(data["user_id"]),
                timestamp=int(data["timestamp"]),
            )
        except (InvalidToken, ValueError, KeyError, TypeError):
            logger.info("Ignoring invalid pending-contract cookie")
            return None

    def resolve_user_id(self, value: str | None, payman_authority: str) -> str | None:
        """User id from the cookie, only if it was issued for ``payman_authority``."""
        pending = self.decode(value)
        if pending is None:
            return None
        if pending.payman_authority != payman_authority:
            logger.warning(
                "Pending-contract cookie authority mismatch",
                extra={"cookie_user_id": pending.user_id},
            )
            return None
        return pending.user_id


_codec: ContractCookieCodec | None = None


def get_contract_cookie_codec() -> ContractCookieCodec:
    """Get or create the cookie codec singleton."""
    global _codec
    if _codec is None:
        settings = get_settings()
        _codec = ContractCookieCodec(settings.signature_secret, settings.contract_cookie_max_age)
    return _codec
