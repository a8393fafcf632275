# ============================================================================
# Project Stable Bridge v1.0.0
# Exchange Module - Decimal Precision & Token/Fiat Rates
# ============================================================================
#
# Reliability Level: SOVEREIGN TIER (Mission-Critical)
# Purpose: Decimal conversion for every financial value, cached rate feed
#
# Components:
#   - DecimalGateway: Ensures all financial data uses decimal.Decimal
#   - ExchangeRateService: Token -> fiat rates with ledger-backed cache
#
# SOVEREIGN MANDATE:
#   - All numeric values converted via DecimalGateway
#   - Rate feed failure degrades to parity or cached rate, never a float
#
# ============================================================================

from app.exchange.decimal_gateway import DecimalGateway
from app.exchange.rate_service import ExchangeRateService

__all__ = [
    'DecimalGateway',
    'ExchangeRateService',
]

# Version tracking
__version__ = '1.0.0'
