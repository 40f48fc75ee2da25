"""Push signature verification.

Senders sign the raw request body with HMAC-SHA256 using the shared secret
from SIFT_INGEST_SECRET and put the hex digest in the X-Sift-Signature
header. A "sha256=" prefix (GitHub style) is accepted.

The HTTP handler must call verify_signature() on the raw bytes before any
JSON parsing, since the HMAC is computed over the exact bytes sent.
"""

import hashlib
import hmac

SIGNATURE_HEADER = "x-sift-signature"


def sign(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of body. Used by senders and tests."""
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=body,
        digestmod=hashlib.sha256,
    ).hexdigest()


def verify_signature(body: bytes, header_signature: str | None, secret: str) -> bool:
    """Check a request signature in constant time.

    Args:
        body: Raw request body bytes.
        header_signature: Value of the signature header, or None if absent.
        secret: Shared secret.

    Returns:
        True if the signature matches, False otherwise (including when the
        header is missing).
    """
    if not header_signature:
        return False
    provided = header_signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    return hmac.compare_digest(sign(body, secret), provided)
