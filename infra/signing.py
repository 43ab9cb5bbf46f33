"""HMAC signing for outbound webhooks and inbound settlement confirmations."""

import hashlib
import hmac
import json
from typing import Any, Dict, Union

SIGNATURE_HEADER = "X-Webhook-Signature"
SIGNATURE_PREFIX = "sha256="


def canonical_json(payload: Dict[str, Any]) -> bytes:
    """Compact JSON, the byte form every signature is computed over."""
    return json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")


def sign_payload(payload: Union[Dict[str, Any], bytes], secret: str) -> str:
    body = payload if isinstance(payload, (bytes, bytearray)) else canonical_json(payload)
    digest = hmac.new(secret.encode("utf-8"), bytes(body), hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def signed_headers(payload: Dict[str, Any], secret: str, **extra: str) -> Dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: sign_payload(payload, secret),
    }
    headers.update(extra)
    return headers


def verify_signature(payload: Union[Dict[str, Any], bytes], signature: str, secret: str) -> bool:
    """
    Constant-time check of a received signature.

    Prefer passing the raw request body; a parsed dict is re-serialised in the
    canonical form, which only matches senders that sign compact JSON.
    """
    if not signature or not secret:
        return False
    expected = sign_payload(payload, secret)
    received = signature.strip()
    if not received.startswith(SIGNATURE_PREFIX):
        received = f"{SIGNATURE_PREFIX}{received}"
    return hmac.compare_digest(expected, received)
