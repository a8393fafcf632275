"""
============================================================================
Property-Based Tests for Settlement State Machines
============================================================================

Reliability Level: SOVEREIGN TIER

Tests the payment, cashout and payroll transition tables and the ledger's
conditional updates using Hypothesis.
Minimum 100 iterations per property.

Properties tested:
- validate_transition() agrees with the transition tables
- Terminal states have no outbound transitions
- LedgerStore applies a transition iff the table allows it

Error Codes:
- STL-001: Invalid state transition attempted

============================================================================
"""

from decimal import Decimal
from typing import List, Tuple

from hypothesis import given, settings
from hypothesis import strategies as st
from sqlalchemy.orm import sessionmaker

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from conftest import USER_ACCOUNT, make_engine
from services.ledger_store import LedgerStore
from services.settlement_state_machine import (
    MACHINES,
    PAYMENT_TRANSITIONS,
    is_terminal_state,
    terminal_states,
    validate_transition,
)


# =============================================================================
# CONSTANTS
# =============================================================================

ALL_PAIRS: List[Tuple[str, str, str]] = [
    (machine, current, target)
    for machine, table in MACHINES.items()
    for current in table
    for target in table
]

PAYMENT_STATES = list(PAYMENT_TRANSITIONS)


# =============================================================================
# HYPOTHESIS STRATEGIES
# =============================================================================

# Strategy for (machine, current, target) triples
pair_strategy = st.sampled_from(ALL_PAIRS)

# Strategy for machine names
machine_strategy = st.sampled_from(sorted(MACHINES))

# Strategy for requested payment transition sequences
payment_walk_strategy = st.lists(st.sampled_from(PAYMENT_STATES), min_size=1, max_size=6)


# =============================================================================
# PROPERTY: Table consistency
# =============================================================================

class TestTransitionTables:

    @settings(max_examples=100)
    @given(pair=pair_strategy)
    def test_validate_matches_table(self, pair) -> None:
        machine, current, target = pair
        valid, code = validate_transition(machine, current, target)
        assert valid == (target in MACHINES[machine][current])
        assert code == (None if valid else "STL-001")

    @settings(max_examples=100)
    @given(machine=machine_strategy)
    def test_terminal_states_are_sinks(self, machine: str) -> None:
        for state in terminal_states(machine):
            assert MACHINES[machine][state] == []
            assert is_terminal_state(machine, state)


# =============================================================================
# PROPERTY: Ledger enforces the table
# =============================================================================

class TestLedgerTransitions:

    @settings(max_examples=100, deadline=None)
    @given(walk=payment_walk_strategy)
    def test_payment_walk(self, walk) -> None:
        db = make_engine()
        store = LedgerStore(sessionmaker(bind=db, autoflush=False))
        payment = store.create_payment(
            payment_intent_id="pi_walk",
            wallet_address=USER_ACCOUNT.address,
            amount_fiat=Decimal("10.00"),
            fiat_currency="usd",
            amount_token=Decimal("10"),
            exchange_rate=Decimal("1"),
        )

        current = payment.status
        for target in walk:
            applied = store.transition_payment(payment.id, target)
            allowed = target in PAYMENT_TRANSITIONS[current]
            assert (applied is not None) == allowed
            if applied is not None:
                current = applied.status
            assert store.get_payment(payment.id).status == current

        db.dispose()
