"""
Unit Tests for ExchangeRateService

Reliability Level: SOVEREIGN TIER

Tests:
- Cache hit avoids the feed
- Feed result is cached in the ledger
- Degradation: parity for usdt->usd, stale cache otherwise, INF-001 last
- On-ramp quote wired to the live service
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from app.exchange.rate_service import ExchangeRateService
from services.onramp_settlement import OnRampSettlement
from services.settlement_errors import TransientInfraError, ValidationError


def _session(body=None, error=None):
    session = MagicMock(spec=requests.Session)
    if error is not None:
        session.get.side_effect = error
    else:
        response = MagicMock()
        response.json.return_value = body
        response.raise_for_status.return_value = None
        session.get.return_value = response
    return session


class TestGetRate:

    def test_same_currency_is_parity(self, ledger) -> None:
        service = ExchangeRateService(ledger, session=_session(error=AssertionError("no call")))
        assert service.get_rate("usdt", "USDT") == Decimal("1.00000000")

    def test_unsupported_source_currency(self, ledger) -> None:
        service = ExchangeRateService(ledger, session=_session({}))
        with pytest.raises(ValidationError):
            service.get_rate("btc", "usd")

    def test_feed_result_cached(self, ledger) -> None:
        session = _session({"tether": {"eur": 0.92}})
        service = ExchangeRateService(ledger, session=session)

        assert service.get_rate("usdt", "eur") == Decimal("0.92000000")
        assert service.get_rate("usdt", "eur") == Decimal("0.92000000")

        assert session.get.call_count == 1
        assert ledger.get_latest_rate("usdt", "eur").source == "coingecko"

    def test_feed_down_usd_uses_parity(self, ledger) -> None:
        service = ExchangeRateService(ledger, session=_session(error=requests.exceptions.Timeout()))
        assert service.get_rate("usdt", "usd") == Decimal("1.00000000")

    def test_feed_down_uses_stale_cache(self, ledger) -> None:
        ledger.save_rate("usdt", "eur", Decimal("0.90000000"), "coingecko")
        service = ExchangeRateService(
            ledger, session=_session(error=requests.exceptions.ConnectionError()), cache_seconds=600
        )
        service.store = MagicMock(wraps=ledger)
        service.store.get_cached_rate.return_value = None
        assert service.get_rate("usdt", "eur") == Decimal("0.90000000")

    def test_feed_down_without_cache_raises(self, ledger) -> None:
        service = ExchangeRateService(ledger, session=_session(error=requests.exceptions.Timeout()))
        with pytest.raises(TransientInfraError) as exc_info:
            service.get_rate("usdt", "eur")
        assert exc_info.value.error_kind == "TransientInfraError"

    def test_invalid_feed_rate_treated_as_failure(self, ledger) -> None:
        service = ExchangeRateService(ledger, session=_session({"tether": {"eur": 0}}))
        with pytest.raises(TransientInfraError):
            service.get_rate("usdt", "eur")


class TestOnRampQuote:

    def test_quote_is_inverse_of_feed_rate(self, bridge_config, ledger, chain, gateway) -> None:
        service = ExchangeRateService(ledger, session=_session({"tether": {"eur": "0.5"}}))
        onramp = OnRampSettlement(bridge_config, ledger, chain, None, gateway, service)

        assert onramp.quote_rate("eur") == Decimal("2.00000000")

    def test_feed_outage_quotes_parity(self, bridge_config, ledger, chain, gateway) -> None:
        service = ExchangeRateService(ledger, session=_session(error=requests.exceptions.Timeout()))
        onramp = OnRampSettlement(bridge_config, ledger, chain, None, gateway, service)

        assert onramp.quote_rate("eur") == Decimal("1.00000000")
