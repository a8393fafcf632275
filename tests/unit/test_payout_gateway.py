"""
Unit Tests for PayoutGateway

Reliability Level: SOVEREIGN TIER

The requests session is mocked; no network traffic.

Tests:
- Minor-unit amounts and flattened form encoding
- Idempotency-Key and Stripe-Account headers
- PAY-001 / PAY-002 / PAY-003 error mapping
- Balance parsing
- Webhook verification delegates to construct_event
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from app.auth.security import WebhookSignatureError, generate_test_signature_header
from app.processor.payout_gateway import PayoutGateway, flatten_form
from services.settlement_errors import ExternalProcessorError


def _response(status_code=200, body=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    if body is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = body
    response.text = text
    return response


def _gateway(response=None, side_effect=None):
    session = MagicMock(spec=requests.Session)
    if side_effect is not None:
        session.request.side_effect = side_effect
    else:
        session.request.return_value = response
    gateway = PayoutGateway(
        secret_key="sk_test_123",
        webhook_secret="whsec_gw",
        session=session,
    )
    return gateway, session


class TestFlattenForm:

    def test_nested_metadata(self) -> None:
        flat = flatten_form({
            "amount": 100,
            "metadata": {"wallet": "0x1", "skip": None},
            "automatic_payment_methods": {"enabled": True},
        })
        assert flat == {
            "amount": "100",
            "metadata[wallet]": "0x1",
            "automatic_payment_methods[enabled]": "true",
        }


class TestPaymentIntents:

    def test_create_sends_cents_and_idempotency_key(self) -> None:
        gateway, session = _gateway(_response(body={"id": "pi_1", "client_secret": "s"}))

        intent = gateway.create_payment_intent(
            Decimal("100.00"), "USD", {"wallet_address": "0xabc"}, idempotency_key="onramp-1"
        )

        assert intent["id"] == "pi_1"
        method, url = session.request.call_args[0]
        kwargs = session.request.call_args[1]
        assert method == "POST"
        assert url == "https://api.stripe.com/v1/payment_intents"
        assert kwargs["data"]["amount"] == "10000"
        assert kwargs["data"]["currency"] == "usd"
        assert kwargs["data"]["metadata[wallet_address]"] == "0xabc"
        assert kwargs["headers"]["Idempotency-Key"] == "onramp-1"
        assert session.auth == ("sk_test_123", "")

    def test_generated_idempotency_key_when_absent(self) -> None:
        gateway, session = _gateway(_response(body={"id": "pi_2"}))
        gateway.create_payment_intent(Decimal("1"), "usd")
        assert session.request.call_args[1]["headers"]["Idempotency-Key"]

    def test_retrieve_uses_get(self) -> None:
        gateway, session = _gateway(_response(body={"id": "pi_1", "status": "succeeded"}))
        assert gateway.retrieve_payment_intent("pi_1")["status"] == "succeeded"
        assert session.request.call_args[0] == ("GET", "https://api.stripe.com/v1/payment_intents/pi_1")


class TestPayouts:

    def test_sub_account_header(self) -> None:
        gateway, session = _gateway(_response(body={"id": "po_1"}))
        gateway.create_payout(
            Decimal("5.00"), "usd", destination="ba_1",
            idempotency_key="cashout-1-payout", sub_account="acct_1",
        )
        headers = session.request.call_args[1]["headers"]
        assert headers["Stripe-Account"] == "acct_1"
        assert headers["Idempotency-Key"] == "cashout-1-payout"
        assert session.request.call_args[1]["data"]["destination"] == "ba_1"

    def test_transfer_to_sub_account(self) -> None:
        gateway, session = _gateway(_response(body={"id": "tr_1"}))
        gateway.transfer_to_sub_account(Decimal("5.00"), "eur", "acct_1", idempotency_key="k")
        data = session.request.call_args[1]["data"]
        assert data["destination"] == "acct_1"
        assert data["amount"] == "500"
        assert "Stripe-Account" not in session.request.call_args[1]["headers"]

    def test_available_balance(self) -> None:
        gateway, _ = _gateway(_response(body={"available": [
            {"currency": "usd", "amount": 1234},
            {"currency": "eur", "amount": 999},
        ]}))
        assert gateway.get_available_balance("usd", sub_account="acct_1") == Decimal("12.34")

    def test_missing_currency_balance_is_zero(self) -> None:
        gateway, _ = _gateway(_response(body={"available": []}))
        assert gateway.get_available_balance("usd") == Decimal("0.00")


class TestErrorMapping:

    def test_rejection_is_pay_001(self) -> None:
        gateway, _ = _gateway(_response(
            status_code=400,
            body={"error": {"code": "balance_insufficient", "message": "Insufficient funds"}},
        ))
        with pytest.raises(ExternalProcessorError) as exc_info:
            gateway.create_payout(Decimal("5"), "usd")
        err = exc_info.value
        assert err.error_code == "PAY-001"
        assert err.processor_code == "balance_insufficient"
        assert err.http_status == 400
        assert err.message == "Stripe error: Insufficient funds"

    def test_unreachable_is_pay_002(self) -> None:
        gateway, _ = _gateway(side_effect=requests.exceptions.ConnectionError("refused"))
        with pytest.raises(ExternalProcessorError) as exc_info:
            gateway.retrieve_payment_intent("pi_1")
        assert exc_info.value.error_code == "PAY-002"

    def test_non_json_is_pay_003(self) -> None:
        gateway, _ = _gateway(_response(status_code=200, body=None, text="<html>"))
        with pytest.raises(ExternalProcessorError) as exc_info:
            gateway.retrieve_payment_intent("pi_1")
        assert exc_info.value.error_code == "PAY-003"


class TestVerifyEvent:

    def test_valid_event(self) -> None:
        gateway, _ = _gateway(_response(body={}))
        payload = b'{"id": "evt_1", "type": "payout.paid"}'
        header = generate_test_signature_header(payload, "whsec_gw")
        assert gateway.verify_event(payload, header)["id"] == "evt_1"

    def test_invalid_event(self) -> None:
        gateway, _ = _gateway(_response(body={}))
        with pytest.raises(WebhookSignatureError):
            gateway.verify_event(b"{}", "t=1,v1=bad")
