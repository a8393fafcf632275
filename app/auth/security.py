"""
============================================================================
Project Stable Bridge v1.0.0
Security Module - Processor Webhook Signature Verification
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: Raw request body bytes, Stripe-Signature header
Side Effects: None (pure verification)

SOVEREIGN MANDATE:
- Every processor webhook MUST be verified via HMAC-SHA256
- The signed content is "{timestamp}.{raw body}", never re-serialized JSON
- Timestamps outside the tolerance window are rejected (replay guard)
- No silent failures - explicit error codes

HEADER FORMAT:
    t=1700000000,v1=<hex>,v1=<hex>,v0=<ignored>

ERROR CODES:
    - SEC-001: Missing signature header
    - SEC-002: Missing webhook secret
    - SEC-003: Signature mismatch
    - SEC-004: Malformed signature header
    - SEC-005: Timestamp outside tolerance

============================================================================
"""

import hmac
import hashlib
import json
import time
from typing import Any, Dict, List, Optional, Tuple

from services.settlement_errors import AuthenticationError


# ============================================================================
# CONSTANTS
# ============================================================================

# Header name set by the payment processor
SIGNATURE_HEADER = "Stripe-Signature"

# Only v1 signatures are HMAC-SHA256
SIGNATURE_SCHEME = "v1"

DEFAULT_TOLERANCE_SECONDS = 300


# ============================================================================
# EXCEPTIONS
# ============================================================================

class WebhookSignatureError(AuthenticationError):
    """
    Exception raised when webhook signature verification fails.

    Reliability Level: SOVEREIGN TIER

    Error Codes:
        SEC-001: Missing signature header
        SEC-002: Missing webhook secret
        SEC-003: Signature mismatch
        SEC-004: Malformed signature header
        SEC-005: Timestamp outside tolerance
    """

    def __init__(self, error_code: str, message: str):
        super().__init__(message, error_code=error_code)


# ============================================================================
# HEADER PARSING
# ============================================================================

def parse_signature_header(header: str) -> Tuple[int, List[str]]:
    """
    Split a signature header into its timestamp and v1 signatures.

    Raises:
        WebhookSignatureError: SEC-004 when t= or v1= is absent or malformed
    """
    timestamp: Optional[int] = None
    signatures: List[str] = []

    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise WebhookSignatureError(
                    "SEC-004",
                    f"Invalid timestamp in signature header: {value!r}"
                )
        elif key == SIGNATURE_SCHEME:
            signatures.append(value.strip())

    if timestamp is None:
        raise WebhookSignatureError(
            "SEC-004",
            "Signature header has no timestamp (t=)."
        )
    if not signatures:
        raise WebhookSignatureError(
            "SEC-004",
            f"Signature header has no {SIGNATURE_SCHEME} signature."
        )

    return timestamp, signatures


# ============================================================================
# HMAC VERIFICATION
# ============================================================================

def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    """
    Compute the v1 signature for a payload.

    Returns:
        str: Hexadecimal HMAC-SHA256 over "{timestamp}.{payload}"
    """
    signed_payload = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=signed_payload,
        digestmod=hashlib.sha256
    ).hexdigest()


def verify_webhook_signature(
    payload: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> bool:
    """
    Verify a processor webhook signature.

    Reliability Level: SOVEREIGN TIER (Mission-Critical)
    Input Constraints:
        - payload: Raw request body as bytes (exact bytes received)
        - signature_header: Value of the Stripe-Signature header
        - secret: Webhook signing secret
    Side Effects: None

    Returns:
        bool: True if the signature is valid

    Raises:
        WebhookSignatureError: If verification fails with specific error code
    """
    if not signature_header:
        raise WebhookSignatureError(
            "SEC-001",
            f"Missing {SIGNATURE_HEADER} header. "
            f"All processor webhooks must be signed."
        )

    if not secret:
        raise WebhookSignatureError(
            "SEC-002",
            "Webhook secret is not configured. "
            "Unverifiable webhooks are never treated as authentic."
        )

    timestamp, signatures = parse_signature_header(signature_header)

    expected = compute_signature(payload, secret, timestamp)

    # Timing-safe comparison against every v1 candidate
    if not any(hmac.compare_digest(expected, candidate.lower()) for candidate in signatures):
        raise WebhookSignatureError(
            "SEC-003",
            "Signature mismatch. Webhook payload may have been tampered with."
        )

    current = time.time() if now is None else now
    if tolerance_seconds > 0 and abs(current - timestamp) > tolerance_seconds:
        raise WebhookSignatureError(
            "SEC-005",
            f"Webhook timestamp outside tolerance ({tolerance_seconds}s). "
            f"Possible replay."
        )

    return True


def construct_event(
    payload: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> Dict[str, Any]:
    """
    Verify the signature, then parse the payload into an event dict.

    Parsing happens only after verification succeeds.

    Raises:
        WebhookSignatureError: On any verification failure
        ValueError: If the authenticated payload is not a JSON object
    """
    verify_webhook_signature(payload, signature_header, secret, tolerance_seconds)

    event = json.loads(payload.decode("utf-8"))
    if not isinstance(event, dict) or "type" not in event:
        raise ValueError("Webhook payload is not an event object")
    return event


def generate_test_signature_header(
    payload: bytes,
    secret: str,
    timestamp: Optional[int] = None,
) -> str:
    """
    Generate a valid signature header for testing purposes.

    Reliability Level: DEVELOPMENT ONLY

    WARNING: This function is for testing only.
    """
    if timestamp is None:
        timestamp = int(time.time())
    return f"t={timestamp},{SIGNATURE_SCHEME}={compute_signature(payload, secret, timestamp)}"


# ============================================================================
# END OF SECURITY MODULE
# ============================================================================
