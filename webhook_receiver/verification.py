"""Webhook signature verification: constant-time HMAC-SHA256.

The platform signs the raw request body with the plugin instance's signing
key and sends the lowercase hex digest in ``x-webhook-signature``.

Security contract:
- The digest is computed over the bytes as received, never over re-serialized JSON
- Comparison uses hmac.compare_digest() (constant-time)
- Malformed hex in the header raises AuthenticationError (fail-closed)
- A missing header verifies vacuously; the receiver only builds a verifier
  when a signing key is configured, so unsigned input is its decision
"""

from __future__ import annotations

import hashlib
import hmac
import re

from webhook_receiver.errors import AuthenticationError

SIGNATURE_HEADER = "x-webhook-signature"

_HEX_RE = re.compile(r"[0-9a-fA-F]+")


class SignatureVerifier:
    """Verifies and computes HMAC-SHA256 webhook signatures."""

    def __init__(self, signing_key: str):
        self._key = signing_key.encode("utf-8")

    def _digest(self, payload: bytes) -> bytes:
        return hmac.new(self._key, payload, hashlib.sha256).digest()

    def sign(self, payload: bytes) -> str:
        """Compute the hex signature for a payload (tests and local replay)."""
        return self._digest(payload).hex()

    def verify(self, payload: bytes, signature: str | None) -> bool:
        """Verify a webhook signature.

        Args:
            payload: Raw request body bytes, before any parsing
            signature: Value of the x-webhook-signature header, or None

        Returns:
            True if the signature matches, or if no signature was supplied

        Raises:
            AuthenticationError: signature is not valid hex
        """
        if signature is None or not signature.strip():
            return True

        signature = signature.strip()
        if len(signature) % 2 or not _HEX_RE.fullmatch(signature):
            raise AuthenticationError("Malformed signature: not hex")
        expected = bytes.fromhex(signature)

        return hmac.compare_digest(self._digest(payload), expected)


def verify_or_raise(verifier: SignatureVerifier, payload: bytes, signature: str | None) -> None:
    """Raise AuthenticationError unless ``signature`` is valid for ``payload``."""
    if not verifier.verify(payload, signature):
        raise AuthenticationError("Signature mismatch")


__all__ = [
    "SIGNATURE_HEADER",
    "SignatureVerifier",
    "verify_or_raise",
]
