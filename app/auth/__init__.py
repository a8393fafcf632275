# ============================================================================
# Project Stable Bridge v1.0.0
# Authentication & Security Module
# ============================================================================

from app.auth.security import (
    verify_webhook_signature,
    construct_event,
    WebhookSignatureError,
)
from app.auth.wallet_signature import (
    build_cashout_message,
    validate_cashout_message,
    verify_wallet_signature,
    assert_cashout_authorized,
)

__all__ = [
    "verify_webhook_signature",
    "construct_event",
    "WebhookSignatureError",
    "build_cashout_message",
    "validate_cashout_message",
    "verify_wallet_signature",
    "assert_cashout_authorized",
]
