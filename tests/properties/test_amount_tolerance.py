"""
============================================================================
Property-Based Tests for Transfer Amount Tolerance
============================================================================

Reliability Level: SOVEREIGN TIER

Tests ChainVerifier.verify_single_transfer amount matching using Hypothesis.
Minimum 100 iterations per property.

Properties tested:
- An observed amount within tolerance of the expected amount is accepted
- An observed amount outside tolerance raises AmountMismatch carrying both
  amounts
- Decoding is exact for any 6dp amount at 18 and 6 token decimals

============================================================================
"""

from decimal import Decimal

import pytest
from hypothesis import given, settings, assume
from hypothesis import strategies as st

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from conftest import CUSTODY_ACCOUNT, TOKEN_ADDRESS, USER_ACCOUNT, FakeChainClient, tx_hash_for
from app.chain.verifier import ChainVerifier
from services.settlement_errors import AmountMismatch

USER = USER_ACCOUNT.address
CUSTODY = CUSTODY_ACCOUNT.address
TX = tx_hash_for(0x701)


# =============================================================================
# HYPOTHESIS STRATEGIES
# =============================================================================

# Strategy for expected token amounts (ledger precision)
amount_strategy = st.decimals(
    min_value=Decimal("0.100000"),
    max_value=Decimal("1000000.000000"),
    places=6
)

# Strategy for deviations from the expected amount
delta_strategy = st.decimals(
    min_value=Decimal("-0.050000"),
    max_value=Decimal("0.050000"),
    places=6
)

# Strategy for tolerances
tolerance_strategy = st.sampled_from([Decimal("0"), Decimal("0.000001"), Decimal("0.01"), Decimal("0.02")])

# Strategy for token decimals
decimals_strategy = st.sampled_from([6, 18])


def _verify(decimals, expected, observed, tolerance):
    chain = FakeChainClient(decimals=decimals)
    chain.add_transfers(TX, [(USER, CUSTODY, observed)])
    return ChainVerifier(chain, TOKEN_ADDRESS).verify_single_transfer(
        TX, USER, CUSTODY, expected, tolerance=tolerance
    )


# =============================================================================
# PROPERTY: Tolerance boundary
# =============================================================================

class TestToleranceBoundary:

    @settings(max_examples=100)
    @given(
        expected=amount_strategy,
        delta=delta_strategy,
        tolerance=tolerance_strategy,
        decimals=decimals_strategy,
    )
    def test_accepts_iff_within_tolerance(
        self,
        expected: Decimal,
        delta: Decimal,
        tolerance: Decimal,
        decimals: int,
    ) -> None:
        observed = expected + delta
        assume(observed > 0)

        if abs(delta) <= tolerance:
            proof = _verify(decimals, expected, observed, tolerance)
            assert proof.amount == observed
        else:
            with pytest.raises(AmountMismatch) as exc_info:
                _verify(decimals, expected, observed, tolerance)
            assert exc_info.value.expected == expected
            assert exc_info.value.observed == observed

    @settings(max_examples=100)
    @given(expected=amount_strategy, decimals=decimals_strategy)
    def test_exact_amount_always_accepted(self, expected: Decimal, decimals: int) -> None:
        proof = _verify(decimals, expected, expected, Decimal("0"))
        assert proof.amount == expected
        assert proof.raw_amount == int(expected.scaleb(decimals))
