"""
============================================================================
Property-Based Tests for Batch Settlement Atomicity
============================================================================

Reliability Level: SOVEREIGN TIER

Tests verify_batch_and_settle using Hypothesis.
Minimum 100 iterations per property.

Properties tested:
- A batch completes iff every recipient is paid within tolerance
- Rows of one batch never disagree: all completed with the same tx hash,
  or all pending with no tx hash

============================================================================
"""

from decimal import Decimal

from hypothesis import given, settings
from hypothesis import strategies as st

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from conftest import USER_ACCOUNT, make_stack, tx_hash_for

EMPLOYER = USER_ACCOUNT.address
RECIPIENTS = ["0x" + format(index + 1, "02x") * 20 for index in range(6)]


# =============================================================================
# HYPOTHESIS STRATEGIES
# =============================================================================

# Strategy for per-recipient token amounts
amount_strategy = st.decimals(
    min_value=Decimal("1.000000"),
    max_value=Decimal("5000.000000"),
    places=6
)

# Strategy for what the employer actually sent each recipient
payment_strategy = st.sampled_from(["exact", "within", "short", "omitted"])

# Strategy for a batch: (amount, payment kind) per recipient
batch_strategy = st.lists(
    st.tuples(amount_strategy, payment_strategy),
    min_size=1,
    max_size=len(RECIPIENTS)
)


def _sent(amount: Decimal, kind: str):
    if kind == "exact":
        return amount
    if kind == "within":
        return amount + Decimal("0.005")
    if kind == "short":
        return amount - Decimal("0.5")
    return None


# =============================================================================
# PROPERTY: All or nothing
# =============================================================================

class TestBatchAtomicity:

    @settings(max_examples=100, deadline=None)
    @given(batch=batch_strategy)
    def test_completes_iff_every_recipient_satisfied(self, batch) -> None:
        stack = make_stack()
        stack.chain.balances[EMPLOYER.lower()] = Decimal("1000000")

        entries = [(RECIPIENTS[i], amount) for i, (amount, _) in enumerate(batch)]
        prepared = stack.engine.prepare_payroll_batch(EMPLOYER, entries)
        payroll_id = prepared.data["payroll_id"]

        transfers = []
        for i, (amount, kind) in enumerate(batch):
            sent = _sent(amount, kind)
            if sent is not None:
                transfers.append((EMPLOYER, RECIPIENTS[i], sent))
        tx = tx_hash_for(0xB000 + len(batch))
        stack.chain.add_transfers(tx, transfers, sender=EMPLOYER)

        result = stack.engine.verify_batch_and_settle(payroll_id, tx)

        satisfied = all(kind in ("exact", "within") for _, kind in batch)
        rows = stack.ledger.get_payroll_batch(payroll_id)
        statuses = {row.status for row in rows}
        hashes = {row.tx_hash for row in rows}

        if satisfied:
            assert result.status == "completed"
            assert statuses == {"completed"}
            assert hashes == {tx}
        else:
            assert result.status == "pending"
            assert result.error_kind == "ChainVerificationError"
            assert statuses == {"pending"}
            assert hashes == {None}

        stack.db.dispose()
