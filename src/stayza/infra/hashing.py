"""Keyed hashing for payment gateway webhook signatures.

Paystack signs every notification with HMAC-SHA512 of the raw request body,
keyed with the account secret key, hex encoded in x-paystack-signature.
"""

import hashlib
import hmac
import os


def get_gateway_secret() -> bytes:
    """Get the gateway secret key used for webhook signatures.

    Raises:
        RuntimeError: If PAYSTACK_SECRET_KEY is not configured.
    """
    secret = os.environ.get("PAYSTACK_SECRET_KEY")
    if not secret:
        raise RuntimeError("PAYSTACK_SECRET_KEY not configured")
    return secret.encode()


def compute_signature(payload: bytes, secret: bytes) -> str:
    """Hex HMAC-SHA512 of payload keyed with secret."""
    return hmac.new(secret, payload, hashlib.sha512).hexdigest()


def signature_matches(payload: bytes, signature: str | None, secret: bytes) -> bool:
    """Constant-time comparison of a received signature against the payload."""
    if not signature:
        return False
    expected = compute_signature(payload, secret)
    return hmac.compare_digest(expected, signature.strip().lower())
