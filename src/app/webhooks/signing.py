"""HMAC-SHA256 signing for outbound webhook bodies.

The signature covers the exact bytes sent, so subscribers verify by
recomputing the HMAC over the raw request body with their endpoint secret.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any


def serialize_payload(payload: dict[str, Any]) -> bytes:
    """Compact UTF-8 JSON, the wire form that gets signed and sent."""
    return json.dumps(
        payload,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    ).encode("utf-8")


def compute_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the body keyed by the endpoint secret."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, secret: str, signature: str) -> bool:
    """Constant-time check of a received signature."""
    return hmac.compare_digest(compute_signature(body, secret), signature)
