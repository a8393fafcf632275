"""
============================================================================
Project Stable Bridge - Services Layer
============================================================================

Settlement core: configuration, error taxonomy, ledger models, state
machines and the ledger store.

The settlement flows (onramp_settlement, offramp_settlement,
batch_settlement, settlement_engine, event_ingress) depend on the app/
adapters and are imported from their modules directly.

Reliability Level: L6 Critical
============================================================================
"""

from services.bridge_config import (
    BridgeConfig,
    BridgeConfigurationError,
    get_bridge_config,
    reset_bridge_config,
)

from services.settlement_errors import (
    SettlementError,
    ValidationError,
    AuthenticationError,
    InvalidSignature,
    MessageMismatch,
    NotFoundError,
    ChainVerificationError,
    TransactionNotFound,
    ChainFailure,
    NoTransferFound,
    PartyMismatch,
    AmountMismatch,
    BatchReconciliationError,
    TransientInfraError,
    ChainTransferError,
    InsufficientCustodyBalance,
    ExternalProcessorError,
    InvalidStateTransition,
)

from services.settlement_models import (
    Payment,
    Cashout,
    PayrollEntry,
    ExchangeRateSnapshot,
    Page,
    SettlementResult,
    PaymentStatus,
    CashoutStatus,
    PayrollStatus,
)

from services.settlement_state_machine import (
    validate_transition,
    allowed_from_states,
    is_terminal_state,
    permitted_sources,
)

from services.ledger_store import LedgerStore

__all__ = [
    # Configuration
    "BridgeConfig",
    "BridgeConfigurationError",
    "get_bridge_config",
    "reset_bridge_config",
    # Errors
    "SettlementError",
    "ValidationError",
    "AuthenticationError",
    "InvalidSignature",
    "MessageMismatch",
    "NotFoundError",
    "ChainVerificationError",
    "TransactionNotFound",
    "ChainFailure",
    "NoTransferFound",
    "PartyMismatch",
    "AmountMismatch",
    "BatchReconciliationError",
    "TransientInfraError",
    "ChainTransferError",
    "InsufficientCustodyBalance",
    "ExternalProcessorError",
    "InvalidStateTransition",
    # Models
    "Payment",
    "Cashout",
    "PayrollEntry",
    "ExchangeRateSnapshot",
    "Page",
    "SettlementResult",
    "PaymentStatus",
    "CashoutStatus",
    "PayrollStatus",
    # State machine
    "validate_transition",
    "allowed_from_states",
    "is_terminal_state",
    "permitted_sources",
    # Ledger
    "LedgerStore",
]
