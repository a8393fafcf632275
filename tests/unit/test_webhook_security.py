"""
Unit Tests for Processor Webhook Signature Verification

Reliability Level: SOVEREIGN TIER

Tests:
- Valid signatures accepted (byte-perfect payload)
- Missing header / secret, mismatch, malformed header, stale timestamp
- construct_event() parses only after verification
"""

import json
import time

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from app.auth.security import (
    WebhookSignatureError,
    compute_signature,
    construct_event,
    generate_test_signature_header,
    parse_signature_header,
    verify_webhook_signature,
)
from services.settlement_errors import AuthenticationError

SECRET = "whsec_unit"
PAYLOAD = json.dumps({"id": "evt_1", "type": "payout.paid", "data": {"object": {"id": "po_1"}}}).encode()


class TestVerifyWebhookSignature:

    def test_valid_signature(self) -> None:
        header = generate_test_signature_header(PAYLOAD, SECRET)
        assert verify_webhook_signature(PAYLOAD, header, SECRET) is True

    def test_any_matching_v1_candidate_accepted(self) -> None:
        timestamp = int(time.time())
        good = compute_signature(PAYLOAD, SECRET, timestamp)
        header = f"t={timestamp},v1={'0' * 64},v1={good}"
        assert verify_webhook_signature(PAYLOAD, header, SECRET) is True

    def test_missing_header(self) -> None:
        with pytest.raises(WebhookSignatureError) as exc_info:
            verify_webhook_signature(PAYLOAD, None, SECRET)
        assert exc_info.value.error_code == "SEC-001"

    def test_missing_secret(self) -> None:
        header = generate_test_signature_header(PAYLOAD, SECRET)
        with pytest.raises(WebhookSignatureError) as exc_info:
            verify_webhook_signature(PAYLOAD, header, "")
        assert exc_info.value.error_code == "SEC-002"

    def test_tampered_payload(self) -> None:
        header = generate_test_signature_header(PAYLOAD, SECRET)
        with pytest.raises(WebhookSignatureError) as exc_info:
            verify_webhook_signature(PAYLOAD + b" ", header, SECRET)
        assert exc_info.value.error_code == "SEC-003"

    def test_wrong_secret(self) -> None:
        header = generate_test_signature_header(PAYLOAD, "whsec_other")
        with pytest.raises(WebhookSignatureError) as exc_info:
            verify_webhook_signature(PAYLOAD, header, SECRET)
        assert exc_info.value.error_code == "SEC-003"

    def test_stale_timestamp(self) -> None:
        old = int(time.time()) - 3600
        header = generate_test_signature_header(PAYLOAD, SECRET, timestamp=old)
        with pytest.raises(WebhookSignatureError) as exc_info:
            verify_webhook_signature(PAYLOAD, header, SECRET, tolerance_seconds=300)
        assert exc_info.value.error_code == "SEC-005"

    def test_zero_tolerance_skips_timestamp_check(self) -> None:
        header = generate_test_signature_header(PAYLOAD, SECRET, timestamp=1)
        assert verify_webhook_signature(PAYLOAD, header, SECRET, tolerance_seconds=0) is True

    def test_error_is_authentication_kind(self) -> None:
        with pytest.raises(AuthenticationError) as exc_info:
            verify_webhook_signature(PAYLOAD, None, SECRET)
        assert exc_info.value.error_kind == "AuthenticationError"


class TestParseSignatureHeader:

    def test_parses_timestamp_and_signatures(self) -> None:
        timestamp, signatures = parse_signature_header("t=123, v1=abc, v0=ignored")
        assert timestamp == 123
        assert signatures == ["abc"]

    @pytest.mark.parametrize("header", ["v1=abc", "t=123", "t=abc,v1=def", "garbage"])
    def test_malformed(self, header) -> None:
        with pytest.raises(WebhookSignatureError) as exc_info:
            parse_signature_header(header)
        assert exc_info.value.error_code == "SEC-004"


class TestConstructEvent:

    def test_returns_parsed_event(self) -> None:
        header = generate_test_signature_header(PAYLOAD, SECRET)
        event = construct_event(PAYLOAD, header, SECRET)
        assert event["type"] == "payout.paid"

    def test_authenticated_non_event_rejected(self) -> None:
        payload = b"[1, 2, 3]"
        header = generate_test_signature_header(payload, SECRET)
        with pytest.raises(ValueError):
            construct_event(payload, header, SECRET)

    def test_unauthenticated_payload_never_parsed(self) -> None:
        with pytest.raises(WebhookSignatureError):
            construct_event(b"not json", "t=1,v1=00", SECRET)
