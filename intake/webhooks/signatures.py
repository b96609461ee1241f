"""HMAC-SHA256 signature verification for partner webhooks.

The signature is computed over the raw request body with the shared webhook
secret and sent hex-encoded, optionally prefixed ``sha256=``.  Verification
runs before the body is parsed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Mapping, Optional

from intake.errors import AuthenticationError

log = logging.getLogger("intake.webhooks.signatures")

SIGNATURE_HEADER_CANDIDATES = ("x-thumbtack-signature", "thumbtack-signature")


def get_signature(headers: Mapping[str, str]) -> Optional[str]:
    """First non-empty signature header, or None."""
    for header in SIGNATURE_HEADER_CANDIDATES:
        value = headers.get(header)
        if value:
            return value
    return None


def compute_signature(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def signature_matches(payload: bytes, signature: Optional[str], secret: str) -> bool:
    if not signature or not secret:
        return False
    received = signature.strip()
    if received.lower().startswith("sha256="):
        received = received[len("sha256="):]
    expected = compute_signature(secret, payload)
    return hmac.compare_digest(expected.encode("ascii"), received.lower().encode("utf-8"))


def verify_hmac_signature(payload: bytes, signature: Optional[str], secret: str) -> None:
    """Raise AuthenticationError unless ``signature`` signs ``payload``."""
    if not signature:
        log.warning("Webhook rejected: no signature header")
        raise AuthenticationError("Missing webhook signature")
    if not signature_matches(payload, signature, secret):
        log.warning("Webhook rejected: signature mismatch")
        raise AuthenticationError("Invalid webhook signature")
