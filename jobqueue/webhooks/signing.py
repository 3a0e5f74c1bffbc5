"""
Webhook signatures.

A signed request carries `X-Webhook-Signature: t=<unix-seconds>,v1=<hex>`
where the hex digest is HMAC-SHA256(secret, "<unix-seconds>.<body>"). Binding
the timestamp into the MAC lets receivers reject replays outside a
tolerance window.
"""

import hashlib
import hmac

from jobqueue.constants import WEBHOOK_SIGNATURE_VERSION
from jobqueue.errors import InvalidSignature


def _as_bytes(value: str | bytes) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def compute_signature(secret: str | bytes, timestamp: int, body: bytes) -> str:
    """
    Hex HMAC-SHA256 of "<timestamp>.<body>".

    Args:
        secret: Shared webhook secret.
        timestamp: Unix seconds sent in the timestamp header.
        body: Exact request body bytes.

    Returns:
        Lowercase hex digest.
    """
    message = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(_as_bytes(secret), message, hashlib.sha256).hexdigest()


def sign_payload(secret: str | bytes, timestamp: int, body: bytes) -> str:
    """Build the signature header value `t=<ts>,v1=<hex>`."""
    signature = compute_signature(secret, timestamp, body)
    return f"t={timestamp},{WEBHOOK_SIGNATURE_VERSION}={signature}"


def parse_signature_header(header: str) -> tuple[int, list[str]]:
    """
    Split a signature header into its timestamp and v1 signatures.

    Unknown schemes are ignored so senders can add new versions.

    Raises:
        InvalidSignature: If the header has no timestamp or no v1 signature.
    """
    timestamp: int | None = None
    signatures: list[str] = []

    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError as exc:
                raise InvalidSignature(f"Malformed timestamp: {value!r}") from exc
        elif key == WEBHOOK_SIGNATURE_VERSION:
            signatures.append(value)

    if timestamp is None:
        raise InvalidSignature("Signature header has no timestamp")
    if not signatures:
        raise InvalidSignature(
            f"Signature header has no {WEBHOOK_SIGNATURE_VERSION} signature"
        )
    return timestamp, signatures


def verify_signature(
    secret: str | bytes,
    header: str,
    body: bytes,
    tolerance_seconds: float,
    now: float,
) -> int:
    """
    Verify a received signature header.

    Args:
        secret: Shared webhook secret.
        header: Value of the signature header.
        body: Raw request body bytes as received.
        tolerance_seconds: Maximum accepted age (and clock skew) in seconds.
        now: Current Unix time in seconds.

    Returns:
        The signed timestamp.

    Raises:
        InvalidSignature: If the header is malformed, the timestamp is outside
            the tolerance window, or no signature matches.
    """
    timestamp, signatures = parse_signature_header(header)

    if abs(now - timestamp) > tolerance_seconds:
        raise InvalidSignature(
            f"Timestamp {timestamp} outside tolerance of {tolerance_seconds}s"
        )

    expected = compute_signature(secret, timestamp, body)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise InvalidSignature("No matching signature")

    return timestamp
