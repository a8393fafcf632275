"""
============================================================================
Stable Bridge - Off-Ramp Settlement (token -> fiat)
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: Token 6dp, fiat 2dp via DecimalGateway
Traceability: correlation_id threaded through signature, chain and payout logs

OFF-RAMP FLOW:
    1. Validate input (currency, wallet, amount, tx hash, bank reference)
    2. Wallet signature recovers to the source wallet (SIG-001)
    3. Signed message authorizes this wallet and amount (SIG-002)
    4. Duplicate inbound tx hash -> idempotent replay of the existing row
    5. ChainVerifier proves wallet -> custody transfer of the amount
    6. Cashout row inserted (pending_transfer), unique on the inbound hash
    7. Payout created, direct or via sub-account transfer + payout
    8. pending_payout with payout reference, or failed with the cause

Payout outcomes arrive asynchronously through report_payout_outcome.
A row left in pending_transfer by a crash between steps 6 and 8 is
replayed as-is by request_cashout; an operator finishes it with
resume_payout, which repeats the payout under the same idempotency keys.

ERROR CODES:
    - STL-002: Idempotent replay (no side effects)
    - OFR-001: Payout creation failed
    - OFR-002: Payout event references an unknown payout
    - PAY-STEP-1: Sub-account transfer step
    - PAY-STEP-2: Sub-account payout step

============================================================================
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional
import logging
import re
import time
import uuid

from app.auth.wallet_signature import assert_cashout_authorized
from app.chain.client import is_valid_address
from app.exchange.decimal_gateway import DecimalGateway
from app.observability.metrics import (
    record_idempotent_replay,
    record_settlement,
    record_settlement_failure,
)
from services.bridge_config import BridgeConfig
from services.settlement_errors import (
    ExternalProcessorError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from services.settlement_models import (
    DIRECTION_OFFRAMP,
    Cashout,
    CashoutStatus,
    SettlementResult,
)
from services.settlement_state_machine import CASHOUT_PROGRESS, is_at_or_past

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

TOKEN_CURRENCY = "usdt"
TX_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")

PAYOUT_PAID = "paid"
PAYOUT_FAILED = "failed"
PAYOUT_CANCELED = "canceled"
PAYOUT_IN_TRANSIT = "in_transit"

PAYOUT_OUTCOMES = (PAYOUT_PAID, PAYOUT_FAILED, PAYOUT_CANCELED, PAYOUT_IN_TRANSIT)


class OffRampErrorCode:
    """Off-ramp error codes for audit logging."""
    IDEMPOTENT_REPLAY = "STL-002"
    PAYOUT_FAILED = "OFR-001"
    UNKNOWN_PAYOUT = "OFR-002"
    STEP_TRANSFER = "PAY-STEP-1"
    STEP_PAYOUT = "PAY-STEP-2"


# =============================================================================
# OffRampSettlement Class
# =============================================================================

class OffRampSettlement:
    """
    Token deposit in, bank payout out.

    Reliability Level: L6 Critical (Sovereign Tier)
    Input Constraints: Injected store, chain client, verifier, gateway, rates
    Side Effects: Processor transfers and payouts, ledger writes
    """

    def __init__(
        self,
        config: BridgeConfig,
        store: Any,
        chain_client: Any,
        verifier: Any,
        gateway: Any,
        rate_provider: Any,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.store = store
        self.chain = chain_client
        self.verifier = verifier
        self.gateway = gateway
        self.rates = rate_provider
        self._sleep = sleep
        self.decimal_gateway = DecimalGateway()

    # -------------------------------------------------------------------------
    # request_cashout()
    # -------------------------------------------------------------------------

    def request_cashout(
        self,
        wallet_address: str,
        token_amount: Any,
        currency: str,
        bank_account_ref: str,
        tx_hash: str,
        signature: str,
        message: str,
        sub_account_ref: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> SettlementResult:
        """
        Settle an on-chain deposit with a fiat payout.

        Raises:
            ValidationError: Malformed input, or the hash belongs to another wallet
            InvalidSignature / MessageMismatch: Request not authorized by the wallet
            ChainVerificationError: The deposit is not proven on-chain
            TransientInfraError: No exchange rate available
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        currency = (currency or "").strip().lower()

        if not self.config.is_supported_currency(currency):
            raise ValidationError(
                f"Invalid currency. Supported: {', '.join(self.config.supported_currencies)}",
                details={"currency": currency},
            )
        if not is_valid_address(wallet_address):
            raise ValidationError("Invalid wallet address", details={"wallet_address": wallet_address})
        if not tx_hash or not TX_HASH_PATTERN.match(tx_hash):
            raise ValidationError("Invalid transaction hash", details={"tx_hash": tx_hash})
        if not bank_account_ref:
            raise ValidationError("Bank account reference is required")
        try:
            amount = self.decimal_gateway.to_token(token_amount, correlation_id)
        except ValueError:
            raise ValidationError("Invalid amount", details={"amount": str(token_amount)})
        if amount <= 0:
            raise ValidationError("Invalid amount", details={"amount": str(token_amount)})

        # Authorization precedes any chain lookup
        assert_cashout_authorized(message, signature, wallet_address, amount, correlation_id)

        existing = self.store.get_cashout_by_tx_hash(tx_hash)
        if existing is not None:
            return self._existing(existing, wallet_address, correlation_id)

        proof = self.verifier.verify_single_transfer(
            tx_hash,
            expected_sender=wallet_address,
            expected_recipient=self.chain.custody_address,
            expected_amount=amount,
            tolerance=self.config.amount_tolerance,
            correlation_id=correlation_id,
        )

        rate = self.decimal_gateway.to_rate(self.rates.get_rate(TOKEN_CURRENCY, currency))
        fiat_amount = self.decimal_gateway.to_fiat(amount * rate)

        cashout, created = self.store.insert_cashout_if_absent(
            wallet_address=wallet_address,
            amount_token=amount,
            fiat_currency=currency,
            fiat_amount=fiat_amount,
            exchange_rate=rate,
            tx_hash_onchain=tx_hash,
            bank_account_ref=bank_account_ref,
            sub_account_ref=sub_account_ref,
            correlation_id=correlation_id,
        )
        if not created:
            return self._existing(cashout, wallet_address, correlation_id)

        logger.info(
            f"[OFFRAMP] Cashout verified | id={cashout.id} | tx_hash={tx_hash} | "
            f"block_number={proof.block_number} | amount_token={amount} | "
            f"fiat={fiat_amount} {currency} | correlation_id={correlation_id}"
        )
        return self._create_payout(cashout, correlation_id)

    def _create_payout(self, cashout: Cashout, correlation_id: str) -> SettlementResult:
        """
        Create the payout for a pending_transfer row and record its reference.

        Idempotency keys derive from the cashout id only, so a repeated call
        for the same row gets the processor's original payout back.
        """
        try:
            if cashout.sub_account_ref:
                payout = self._payout_via_sub_account(cashout, correlation_id)
            else:
                payout = self.gateway.create_payout(
                    cashout.fiat_amount,
                    cashout.fiat_currency,
                    destination=cashout.bank_account_ref,
                    metadata=self._payout_metadata(cashout, correlation_id),
                    idempotency_key=f"cashout-{cashout.id}-payout",
                )
        except ExternalProcessorError as e:
            return self._fail(cashout, f"Failed to create payout: {e.message}", e.error_kind, correlation_id)

        updated = self.store.transition_cashout(
            cashout.id,
            CashoutStatus.PENDING_PAYOUT.value,
            allowed_from=[CashoutStatus.PENDING_TRANSFER.value],
            correlation_id=correlation_id,
            payout_id=payout["id"],
        )
        if updated is None:
            current = self.store.get_cashout(cashout.id)
            if current.payout_id == payout["id"]:
                return self._replay(current, "create_payout", correlation_id)
            raise InvalidStateTransition(
                f"Cashout moved to {current.status} while the payout was created",
                details={"cashout_id": cashout.id, "payout_id": payout["id"]},
            )

        logger.info(
            f"[OFFRAMP] Payout created | cashout_id={updated.id} | payout_id={updated.payout_id} | "
            f"amount={updated.fiat_amount} {updated.fiat_currency} | correlation_id={correlation_id}"
        )
        record_settlement(DIRECTION_OFFRAMP, updated.status, correlation_id)
        return SettlementResult(status=updated.status, cashout=updated)

    def _existing(self, cashout: Cashout, wallet_address: str, correlation_id: str) -> SettlementResult:
        if cashout.wallet_address.lower() != wallet_address.lower():
            raise ValidationError(
                "Transaction already used for another cashout",
                details={"tx_hash": cashout.tx_hash_onchain},
            )
        return self._replay(cashout, "request_cashout", correlation_id)

    def _replay(self, cashout: Cashout, operation: str, correlation_id: str) -> SettlementResult:
        logger.info(
            f"[{OffRampErrorCode.IDEMPOTENT_REPLAY}] Idempotent replay | operation={operation} | "
            f"cashout_id={cashout.id} | status={cashout.status} | correlation_id={correlation_id}"
        )
        record_idempotent_replay(DIRECTION_OFFRAMP, operation, correlation_id)
        return SettlementResult(status=cashout.status, idempotent_replay=True, cashout=cashout)

    @staticmethod
    def _payout_metadata(cashout: Cashout, correlation_id: str) -> Dict[str, str]:
        return {
            "cashout_id": cashout.id,
            "wallet_address": cashout.wallet_address,
            "tx_hash": cashout.tx_hash_onchain,
            "correlation_id": correlation_id,
        }

    def _payout_via_sub_account(self, cashout: Cashout, correlation_id: str) -> Dict[str, Any]:
        """
        Platform -> sub-account transfer, settle delay, then sub-account payout.

        A payout failure right after the delay is retried exactly once,
        after re-checking the sub-account balance.
        """
        sub_account = cashout.sub_account_ref
        metadata = self._payout_metadata(cashout, correlation_id)

        logger.info(
            f"[{OffRampErrorCode.STEP_TRANSFER}] Transferring to sub-account | "
            f"cashout_id={cashout.id} | sub_account={sub_account} | "
            f"amount={cashout.fiat_amount} {cashout.fiat_currency} | correlation_id={correlation_id}"
        )
        try:
            transfer = self.gateway.transfer_to_sub_account(
                cashout.fiat_amount,
                cashout.fiat_currency,
                sub_account,
                description=f"Cashout {cashout.id}",
                metadata=metadata,
                idempotency_key=f"cashout-{cashout.id}-transfer",
            )
        except ExternalProcessorError as e:
            logger.error(
                f"[{OffRampErrorCode.STEP_TRANSFER}] Sub-account transfer failed | "
                f"cashout_id={cashout.id} | error={e.message} | correlation_id={correlation_id}"
            )
            raise ExternalProcessorError(
                f"Transfer to sub-account failed: {e.message}",
                processor_code=e.processor_code,
                http_status=e.http_status,
            ) from e

        logger.info(
            f"[{OffRampErrorCode.STEP_TRANSFER}] Sub-account transfer created | "
            f"cashout_id={cashout.id} | transfer_id={transfer.get('id')} | "
            f"correlation_id={correlation_id}"
        )
        self._sleep(self.config.subaccount_settle_delay_seconds)

        try:
            return self._sub_account_payout(cashout, metadata, "payout", correlation_id)
        except ExternalProcessorError as first:
            logger.warning(
                f"[{OffRampErrorCode.STEP_PAYOUT}] Sub-account payout failed, re-checking balance | "
                f"cashout_id={cashout.id} | error={first.message} | correlation_id={correlation_id}"
            )

        try:
            available = self.gateway.get_available_balance(cashout.fiat_currency, sub_account=sub_account)
        except ExternalProcessorError as e:
            logger.warning(
                f"[{OffRampErrorCode.STEP_PAYOUT}] Balance re-check failed | cashout_id={cashout.id} | "
                f"error={e.message} | correlation_id={correlation_id}"
            )
            available = None

        if available is not None and available < cashout.fiat_amount:
            raise ExternalProcessorError(
                f"Sub-account balance {available} below payout amount {cashout.fiat_amount}",
                error_code="PAY-004",
            )

        self._sleep(self.config.subaccount_settle_delay_seconds)
        return self._sub_account_payout(cashout, metadata, "payout-retry", correlation_id)

    def _sub_account_payout(
        self,
        cashout: Cashout,
        metadata: Dict[str, str],
        key_suffix: str,
        correlation_id: str,
    ) -> Dict[str, Any]:
        logger.info(
            f"[{OffRampErrorCode.STEP_PAYOUT}] Creating sub-account payout | "
            f"cashout_id={cashout.id} | sub_account={cashout.sub_account_ref} | "
            f"attempt={key_suffix} | correlation_id={correlation_id}"
        )
        payout = self.gateway.create_payout(
            cashout.fiat_amount,
            cashout.fiat_currency,
            destination=cashout.bank_account_ref,
            metadata=metadata,
            idempotency_key=f"cashout-{cashout.id}-{key_suffix}",
            sub_account=cashout.sub_account_ref,
        )
        logger.info(
            f"[{OffRampErrorCode.STEP_PAYOUT}] Sub-account payout created | "
            f"cashout_id={cashout.id} | payout_id={payout.get('id')} | correlation_id={correlation_id}"
        )
        return payout

    def _fail(self, cashout: Cashout, message: str, error_kind: str, correlation_id: str) -> SettlementResult:
        failed = self.store.transition_cashout(
            cashout.id,
            CashoutStatus.FAILED.value,
            allowed_from=[CashoutStatus.PENDING_TRANSFER.value],
            correlation_id=correlation_id,
            error_message=message,
        )
        row = failed or self.store.get_cashout(cashout.id)
        logger.error(
            f"[{OffRampErrorCode.PAYOUT_FAILED}] Cashout failed | cashout_id={cashout.id} | "
            f"error_kind={error_kind} | error={message} | correlation_id={correlation_id}"
        )
        record_settlement_failure(DIRECTION_OFFRAMP, error_kind, correlation_id)
        return SettlementResult(status=row.status, error_kind=error_kind, detail=message, cashout=row)

    # -------------------------------------------------------------------------
    # report_payout_outcome()
    # -------------------------------------------------------------------------

    def report_payout_outcome(
        self,
        payout_id: str,
        outcome: str,
        failure_code: Optional[str] = None,
        failure_message: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> SettlementResult:
        """
        Apply an asynchronous payout result to its Cashout.

        An unknown payout reference is logged and dropped: the result has
        status "ignored" and no error.

        Raises:
            ValidationError: Unknown outcome
            InvalidStateTransition: Outcome contradicts a terminal row
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        if outcome not in PAYOUT_OUTCOMES:
            raise ValidationError(f"Unknown payout outcome: {outcome}", details={"outcome": outcome})

        cashout = self.store.get_cashout_by_payout_id(payout_id)
        if cashout is None:
            logger.warning(
                f"[{OffRampErrorCode.UNKNOWN_PAYOUT}] Payout not in ledger, dropping event | "
                f"payout_id={payout_id} | outcome={outcome} | correlation_id={correlation_id}"
            )
            return SettlementResult(status="ignored", data={"payout_id": payout_id})

        if outcome == PAYOUT_PAID:
            target, fields = CashoutStatus.PAID.value, {"completed_at": datetime.now(timezone.utc)}
        elif outcome == PAYOUT_IN_TRANSIT:
            target, fields = CashoutStatus.IN_TRANSIT.value, {}
        elif outcome == PAYOUT_FAILED:
            reason = f"Stripe payout failed: {failure_code or 'unknown'} - {failure_message or 'no message'}"
            target, fields = CashoutStatus.FAILED.value, {"error_message": reason}
        else:
            target, fields = CashoutStatus.CANCELED.value, {"error_message": "Stripe payout was canceled"}

        # Sources come from the cashout transition table
        updated = self.store.transition_cashout(
            cashout.id, target, correlation_id=correlation_id, **fields
        )
        if updated is None:
            current = self.store.get_cashout(cashout.id)
            if is_at_or_past(CASHOUT_PROGRESS, current.status, target):
                logger.info(
                    f"[{OffRampErrorCode.IDEMPOTENT_REPLAY}] Idempotent replay | "
                    f"operation=report_payout_outcome | cashout_id={current.id} | "
                    f"status={current.status} | outcome={outcome} | correlation_id={correlation_id}"
                )
                record_idempotent_replay(DIRECTION_OFFRAMP, "report_payout_outcome", correlation_id)
                return SettlementResult(status=current.status, idempotent_replay=True, cashout=current)
            raise InvalidStateTransition(
                f"Cashout is {current.status}, cannot apply payout outcome {outcome}",
                details={"cashout_id": current.id, "status": current.status, "outcome": outcome},
            )

        log = logger.warning if target in (CashoutStatus.FAILED.value, CashoutStatus.CANCELED.value) else logger.info
        log(
            f"[OFFRAMP] Payout outcome applied | cashout_id={updated.id} | payout_id={payout_id} | "
            f"status={updated.status} | correlation_id={correlation_id}"
        )
        if target == CashoutStatus.FAILED.value:
            record_settlement_failure(DIRECTION_OFFRAMP, ExternalProcessorError.error_kind, correlation_id)
        else:
            record_settlement(DIRECTION_OFFRAMP, updated.status, correlation_id)
        return SettlementResult(status=updated.status, cashout=updated)

    # -------------------------------------------------------------------------
    # resume_payout() (operator)
    # -------------------------------------------------------------------------

    def resume_payout(self, cashout_id: str, correlation_id: Optional[str] = None) -> SettlementResult:
        """
        Finish a cashout left in pending_transfer by an interrupted payout step.

        The payout call is repeated with the row's original idempotency
        keys: a payout the processor already created is returned instead of
        a new one. The row ends pending_payout, or failed with the
        processor's error. A row already past pending_transfer is a replay.

        Raises:
            NotFoundError: Unknown cashout
            InvalidStateTransition: Row is failed or canceled
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        cashout = self.get_cashout(cashout_id)

        if cashout.status != CashoutStatus.PENDING_TRANSFER.value:
            if is_at_or_past(CASHOUT_PROGRESS, cashout.status, CashoutStatus.PENDING_PAYOUT.value):
                return self._replay(cashout, "resume_payout", correlation_id)
            raise InvalidStateTransition(
                f"Cashout is {cashout.status}, nothing to resume",
                details={"cashout_id": cashout_id, "status": cashout.status},
            )

        logger.warning(
            f"[OFFRAMP] Resuming interrupted payout | cashout_id={cashout_id} | "
            f"tx_hash={cashout.tx_hash_onchain} | correlation_id={correlation_id}"
        )
        return self._create_payout(cashout, correlation_id)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_cashout(self, cashout_id: str) -> Cashout:
        cashout = self.store.get_cashout(cashout_id)
        if cashout is None:
            raise NotFoundError("Cashout not found", details={"cashout_id": cashout_id})
        return cashout
