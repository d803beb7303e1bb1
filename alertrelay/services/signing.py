"""
Webhook payload signing.

Receivers verify deliveries by recomputing HMAC-SHA256 over the exact
raw request body with the shared secret:

    expected = "sha256=" + hmac.new(secret, body, sha256).hexdigest()
    hmac.compare_digest(expected, request.headers["X-Signature-256"])

Replay protection is left to receivers, keyed on X-Webhook-Event-Id.
"""
import hashlib
import hmac
import json

SIGNATURE_HEADER = "X-Signature-256"
SIGNATURE_PREFIX = "sha256="


def canonical_body(payload: dict) -> bytes:
    """Serialize a payload once; these exact bytes are signed and sent."""
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    ).encode("utf-8")


def generate_signature(body: bytes, secret: str) -> str:
    """Generate the X-Signature-256 header value for a raw body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Constant-time check of a received signature header."""
    if not signature or not signature.startswith(SIGNATURE_PREFIX):
        return False
    expected = generate_signature(body, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("ascii", "replace"))
