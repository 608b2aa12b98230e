"""Encryption and hashing for ZarinPal contract signatures.

Signatures are long-lived secrets that authorise charging a user's bank
account, so they are stored AES-GCM encrypted. A SHA-256 hex digest of the
plaintext is stored next to the ciphertext and used for duplicate lookups.
"""

import base64
import hashlib
import logging
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from billing_api.config import get_settings

logger = logging.getLogger(__name__)

_KEY_SALT = b"zarinpal-signature-salt"
_KDF_ITERATIONS = 100_000
_NONCE_SIZE = 12
_LEGACY_SIGNATURE_LENGTH = 200


class SignatureCipherError(Exception):
    """Raised when a signature cannot be encrypted or decrypted."""


@dataclass(frozen=True)
class EncryptedSignature:
    encrypted: str
    hash: str


def _check_signature(signature: str) -> None:
    # ZarinPal issues either 200-character signatures or JWT tokens
    if len(signature) != _LEGACY_SIGNATURE_LENGTH and not signature.startswith("eyJ"):
        raise SignatureCipherError(
            "ZarinPal signature must be exactly 200 characters or a JWT token"
        )


class SignatureCipher:
    """Encrypts, decrypts and hashes contract signatures."""

    def __init__(self, secret: str):
        if not secret:
            raise SignatureCipherError("Signature secret is not configured")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=_KEY_SALT,
            iterations=_KDF_ITERATIONS,
        )
        self._aead = AESGCM(kdf.derive(secret.encode("utf-8")))

    @staticmethod
    def hash(signature: str) -> str:
        """Deterministic lookup key for a plaintext signature."""
        return hashlib.sha256(signature.encode("utf-8")).hexdigest()

    def encrypt(self, signature: str) -> EncryptedSignature:
        _check_signature(signature)
        nonce = os.urandom(_NONCE_SIZE)
        ciphertext = self._aead.encrypt(nonce, signature.encode("utf-8"), None)
        return EncryptedSignature(
            encrypted=base64.b64encode(nonce + ciphertext).decode("ascii"),
            hash=self.hash(signature),
        )

    def decrypt(self, encrypted: str) -> str:
        try:
            combined = base64.b64decode(encrypted.encode("ascii"), validate=True)
            nonce, ciphertext = combined[:_NONCE_SIZE], combined[_NONCE_SIZE:]
            signature = self._aead.decrypt(nonce, ciphertext, None).decode("utf-8")
        except (InvalidTag, ValueError) as e:
            logger.error("Failed to decrypt contract signature", extra={"error": type(e).__name__})
            raise SignatureCipherError("Failed to decrypt signature") from e

        _check_signature(signature)
        return signature


_cipher: SignatureCipher | None = None


def get_signature_cipher() -> SignatureCipher:
    """Get or create the signature cipher singleton."""
    global _cipher
    if _cipher is None:
        _cipher = SignatureCipher(get_settings().signature_secret)
    return _cipher
