"""Polar webhook signature verification

Polar signs each request with an X-Polar-Signature header:

    t=<unix-seconds>,v1=<hex HMAC-SHA256(secret, timestamp + raw body)>

Verification is pure: it reads the header, body and secret and never touches
the database.
"""
import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Optional

from provisioner.core.exceptions import MalformedSignature, TimestampOutOfRange

DEFAULT_TOLERANCE_SECONDS = 300


@dataclass(frozen=True)
class ParsedSignature:
    timestamp: int
    signature: str


def parse_signature_header(signature_header: Optional[str]) -> ParsedSignature:
    """Split 't=...,v1=...' into its parts.

    Raises:
        MalformedSignature: header empty, t or v1 missing, or t not an integer
    """
    if not signature_header:
        raise MalformedSignature("Empty signature header")

    timestamp = None
    signature = None
    for part in signature_header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise MalformedSignature(f"Non-numeric signature timestamp: {value!r}")
        elif key == "v1" and value:
            signature = value

    if not timestamp or not signature:
        raise MalformedSignature("Invalid signature format")

    return ParsedSignature(timestamp=timestamp, signature=signature)


def compute_signature(secret: str, timestamp: int, body: bytes) -> str:
    """HMAC-SHA256(secret, timestamp || body) as lowercase hex"""
    signed_payload = str(timestamp).encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def build_signature_header(secret: str, body: bytes, timestamp: Optional[int] = None) -> str:
    """Produce a header in Polar's format (used by tests and the local replay tooling)"""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},v1={compute_signature(secret, ts, body)}"


def verify_signature(
    signature_header: Optional[str],
    body: bytes,
    secret: str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> bool:
    """Verify a Polar signature header against the raw request body.

    Args:
        signature_header: Value of X-Polar-Signature
        body: Raw request body bytes (must not be re-serialized)
        secret: Shared webhook secret
        tolerance_seconds: Maximum |now - t| accepted (replay window)
        now: Override for the current unix time

    Returns:
        True if the signature matches

    Raises:
        MalformedSignature: header cannot be parsed
        TimestampOutOfRange: timestamp outside the tolerance window
    """
    parsed = parse_signature_header(signature_header)

    current = int(time.time() if now is None else now)
    difference = abs(current - parsed.timestamp)
    if difference > tolerance_seconds:
        raise TimestampOutOfRange(difference, tolerance_seconds)

    expected = compute_signature(secret, parsed.timestamp, body)
    if len(expected) != len(parsed.signature):
        return False
    return hmac.compare_digest(expected.encode("utf-8"), parsed.signature.encode("utf-8"))
