"""
============================================================================
Stable Bridge - Settlement State Machines
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Traceability: All rejected transitions are logged with correlation_id

ON-RAMP (Payment):
    pending -> processing (charge confirmed, before token transfer)
    processing -> completed (transfer receipt observed successful)
    pending | processing -> failed | canceled

OFF-RAMP (Cashout):
    pending_transfer -> pending_payout (payout accepted by processor)
    pending_payout -> in_transit (processor reports payout in transit)
    pending_payout | in_transit -> paid
    any non-terminal -> failed | canceled

BATCH (Payroll):
    pending -> completed (every recipient satisfied)
    pending -> failed

OPERATOR RECONCILIATION (Payment, separate table):
    processing | failed -> completed (transfer proven on-chain)

    Terminal States: completed, paid, failed, canceled

Every LedgerStore transition is a conditional update keyed on
permitted_sources(machine, target), so two concurrent deliveries of the
same event can never both perform the transition, and no flow can apply
an edge its table does not list.

ERROR CODES:
    - STL-001: Invalid state transition attempted

============================================================================
"""

from typing import Dict, List, Optional, Sequence, Tuple
import logging

from services.settlement_models import CashoutStatus, PaymentStatus, PayrollStatus

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class SettlementStateErrorCode:
    """State machine error codes for audit logging."""
    INVALID_TRANSITION = "STL-001"


# =============================================================================
# Transition Tables
# =============================================================================

PAYMENT_TRANSITIONS: Dict[str, List[str]] = {
    PaymentStatus.PENDING.value: [
        PaymentStatus.PROCESSING.value,
        PaymentStatus.FAILED.value,
        PaymentStatus.CANCELED.value,
    ],
    PaymentStatus.PROCESSING.value: [
        PaymentStatus.COMPLETED.value,
        PaymentStatus.FAILED.value,
        PaymentStatus.CANCELED.value,
    ],
    PaymentStatus.COMPLETED.value: [],
    PaymentStatus.FAILED.value: [],
    PaymentStatus.CANCELED.value: [],
}

CASHOUT_TRANSITIONS: Dict[str, List[str]] = {
    CashoutStatus.PENDING_TRANSFER.value: [
        CashoutStatus.PENDING_PAYOUT.value,
        CashoutStatus.FAILED.value,
        CashoutStatus.CANCELED.value,
    ],
    CashoutStatus.PENDING_PAYOUT.value: [
        CashoutStatus.IN_TRANSIT.value,
        CashoutStatus.PAID.value,
        CashoutStatus.FAILED.value,
        CashoutStatus.CANCELED.value,
    ],
    CashoutStatus.IN_TRANSIT.value: [
        CashoutStatus.PAID.value,
        CashoutStatus.FAILED.value,
        CashoutStatus.CANCELED.value,
    ],
    CashoutStatus.PAID.value: [],
    CashoutStatus.FAILED.value: [],
    CashoutStatus.CANCELED.value: [],
}

PAYROLL_TRANSITIONS: Dict[str, List[str]] = {
    PayrollStatus.PENDING.value: [
        PayrollStatus.COMPLETED.value,
        PayrollStatus.FAILED.value,
    ],
    PayrollStatus.COMPLETED.value: [],
    PayrollStatus.FAILED.value: [],
}

# Operator reconciliation only: a broadcast transfer later proven on-chain
# may complete a row that was marked failed while its receipt was unknown.
PAYMENT_RECONCILE_TRANSITIONS: Dict[str, List[str]] = {
    PaymentStatus.PROCESSING.value: [PaymentStatus.COMPLETED.value],
    PaymentStatus.FAILED.value: [PaymentStatus.COMPLETED.value],
    PaymentStatus.COMPLETED.value: [],
}

PAYMENT_MACHINE = "payment"
PAYMENT_RECONCILE_MACHINE = "payment_reconcile"
CASHOUT_MACHINE = "cashout"
PAYROLL_MACHINE = "payroll"

MACHINES: Dict[str, Dict[str, List[str]]] = {
    PAYMENT_MACHINE: PAYMENT_TRANSITIONS,
    PAYMENT_RECONCILE_MACHINE: PAYMENT_RECONCILE_TRANSITIONS,
    CASHOUT_MACHINE: CASHOUT_TRANSITIONS,
    PAYROLL_MACHINE: PAYROLL_TRANSITIONS,
}

RECONCILABLE_PAYMENT_STATES: List[str] = [
    state for state, targets in PAYMENT_RECONCILE_TRANSITIONS.items()
    if PaymentStatus.COMPLETED.value in targets
]

# Forward order used to answer "already in or past the target state"
PAYMENT_PROGRESS: List[str] = [
    PaymentStatus.PENDING.value,
    PaymentStatus.PROCESSING.value,
    PaymentStatus.COMPLETED.value,
]

CASHOUT_PROGRESS: List[str] = [
    CashoutStatus.PENDING_TRANSFER.value,
    CashoutStatus.PENDING_PAYOUT.value,
    CashoutStatus.IN_TRANSIT.value,
    CashoutStatus.PAID.value,
]


# =============================================================================
# Query Helpers
# =============================================================================

def _table(machine: str) -> Dict[str, List[str]]:
    try:
        return MACHINES[machine]
    except KeyError:
        raise ValueError(f"Unknown state machine: {machine}")


def terminal_states(machine: str) -> List[str]:
    """States with no outbound transitions."""
    return [state for state, targets in _table(machine).items() if not targets]


def is_terminal_state(machine: str, state: str) -> bool:
    return state in terminal_states(machine)


def allowed_from_states(machine: str, target_state: str) -> List[str]:
    """Every state from which target_state is directly reachable."""
    return [
        state for state, targets in _table(machine).items()
        if target_state in targets
    ]


def is_at_or_past(progress: List[str], current_state: str, target_state: str) -> bool:
    """
    True when current_state is target_state or further along the happy path.

    States outside the progress order (failed, canceled) are never "past"
    a happy-path target.
    """
    if current_state not in progress or target_state not in progress:
        return current_state == target_state
    return progress.index(current_state) >= progress.index(target_state)


# =============================================================================
# validate_transition() Function
# =============================================================================

def validate_transition(
    machine: str,
    current_state: str,
    target_state: str,
    correlation_id: Optional[str] = None
) -> Tuple[bool, Optional[str]]:
    """
    Validate a transition against the named machine's table.

    Args:
        machine: "payment", "payment_reconcile", "cashout" or "payroll"
        current_state: Current ledger status
        target_state: Requested ledger status
        correlation_id: Optional correlation ID for audit logging

    Returns:
        Tuple of (is_valid, error_code). error_code is STL-001 when invalid.
    """
    table = _table(machine)

    if current_state not in table or target_state not in table:
        logger.error(
            f"[{SettlementStateErrorCode.INVALID_TRANSITION}] Unknown state | "
            f"machine={machine} | current={current_state} | target={target_state} | "
            f"correlation_id={correlation_id}"
        )
        return False, SettlementStateErrorCode.INVALID_TRANSITION

    if target_state not in table[current_state]:
        logger.warning(
            f"[{SettlementStateErrorCode.INVALID_TRANSITION}] Invalid transition | "
            f"machine={machine} | {current_state} -> {target_state} | "
            f"allowed={table[current_state]} | correlation_id={correlation_id}"
        )
        return False, SettlementStateErrorCode.INVALID_TRANSITION

    return True, None


# =============================================================================
# permitted_sources() Function
# =============================================================================

def permitted_sources(
    machine: str,
    target_state: str,
    requested: Optional[Sequence[str]] = None,
    correlation_id: Optional[str] = None
) -> List[str]:
    """
    Source states a conditional ledger update may match for target_state.

    Without requested, every source the table allows. With requested, the
    caller's narrower set, minus any state the table does not allow to
    reach target_state (each such state is logged as STL-001).
    """
    if requested is None:
        return allowed_from_states(machine, target_state)

    return [
        state for state in requested
        if validate_transition(machine, state, target_state, correlation_id)[0]
    ]
