"""
HMAC-SHA256 webhook signatures in the ``t={timestamp},v1={hex}`` header format.

The signed payload is ``{timestamp}.{raw_body}``. Anything missing, malformed
or outside the tolerance window fails closed.
"""
import hashlib
import hmac
import time
from typing import Optional

DEFAULT_TOLERANCE = 300


def parse_signature_header(header: Optional[str]) -> tuple[Optional[int], list[str]]:
    if not header:
        return None, []
    timestamp = None
    signatures = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def compute_signature(raw_body: bytes, timestamp: int, secret: str) -> str:
    signed = f"{timestamp}.".encode() + raw_body
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def sign(raw_body: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},v1={compute_signature(raw_body, timestamp, secret)}"


def verify_signature(
    raw_body: bytes,
    header: Optional[str],
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE,
    now: Optional[float] = None,
) -> bool:
    timestamp, signatures = parse_signature_header(header)
    if timestamp is None or not signatures or not secret:
        return False
    now = time.time() if now is None else now
    if tolerance and abs(now - timestamp) > tolerance:
        return False
    expected = compute_signature(raw_body, timestamp, secret)
    return any(hmac.compare_digest(expected, candidate) for candidate in signatures)
