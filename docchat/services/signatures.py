"""
Webhook Signature Verification

Job deliveries carry an HMAC-SHA256 signature of the raw request body.
The queue rotates its signing key, so a delivery is accepted when it
matches either the current or the next key.

Accepted header formats: ``v1=<hex>``, ``sha256=<hex>``, bare hex, or
(url-safe) base64 of the digest.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from collections.abc import Sequence

from docchat.core.exceptions import InvalidSignatureError

SIGNATURE_HEADER = "Upstash-Signature"


def sign(body: bytes, key: str) -> str:
    """Signature header value for ``body`` under ``key``."""
    digest = hmac.new(key.encode(), body, hashlib.sha256).hexdigest()
    return f"v1={digest}"


def _decode(signature: str) -> bytes | None:
    value = signature.strip()
    for prefix in ("v1=", "sha256="):
        if value.startswith(prefix):
            value = value[len(prefix) :]
            break
    try:
        return bytes.fromhex(value)
    except ValueError:
        pass
    try:
        padded = value + "=" * (-len(value) % 4)
        return base64.urlsafe_b64decode(padded.replace("+", "-").replace("/", "_"))
    except (binascii.Error, ValueError):
        return None


def verify_signature(body: bytes, signature: str | None, keys: Sequence[str]) -> int:
    """
    Check ``signature`` against every configured key.

    Returns:
        Index of the key that matched (0 = current, 1 = next).

    Raises:
        InvalidSignatureError: Missing signature, no keys configured,
            or no key matches.
    """
    if not keys:
        raise InvalidSignatureError("No signing keys configured")
    if not signature:
        raise InvalidSignatureError("Missing signature")

    provided = _decode(signature)
    if provided is None:
        raise InvalidSignatureError("Malformed signature")

    for index, key in enumerate(keys):
        expected = hmac.new(key.encode(), body, hashlib.sha256).digest()
        if hmac.compare_digest(expected, provided):
            return index
    raise InvalidSignatureError("Invalid signature")
