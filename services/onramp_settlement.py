"""
============================================================================
Stable Bridge - On-Ramp Settlement (fiat -> token)
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: Fiat 2dp, token 6dp, rate 8dp, ROUND_HALF_EVEN
Traceability: correlation_id threaded through chain, processor and ledger logs

ON-RAMP FLOW:
    1. initiate: validate -> quote -> cap -> liquidity -> charge -> pending row
    2. confirm_charge (charge-confirmed event):
         idempotency gate -> pending->processing -> custody transfer (bounded
         retry on transient RPC errors only) -> receipt -> atomic completion
    3. fail_charge / cancel_charge (charge failure events)
    4. reconcile_transfer (operator): prove a broadcast transfer on-chain and
       complete a processing/failed row

A transfer is signed once per settlement and only its bytes are re-sent.
A failed or missing receipt marks the row failed with the tx hash in the
error text, and the transfer is never signed again.

ERROR CODES:
    - STL-002: Idempotent replay (no side effects)
    - ONR-001: Rate lookup failed, parity used
    - ONR-002: Custody transfer failed
    - ONR-003: Receipt failed or not observed

============================================================================
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional
import logging
import time
import uuid

from app.chain.client import is_transient_error, is_valid_address
from app.exchange.decimal_gateway import DecimalGateway
from app.observability.metrics import (
    record_idempotent_replay,
    record_settlement,
    record_settlement_failure,
    record_transfer_duration,
    record_transfer_retry,
)
from services.bridge_config import BridgeConfig
from services.settlement_errors import (
    ChainTransferError,
    ChainVerificationError,
    ExternalProcessorError,
    InsufficientCustodyBalance,
    InvalidStateTransition,
    NotFoundError,
    SettlementError,
    TransientInfraError,
    ValidationError,
)
from services.settlement_models import (
    DIRECTION_ONRAMP,
    Payment,
    PaymentStatus,
    SettlementResult,
)
from services.settlement_state_machine import (
    PAYMENT_MACHINE,
    PAYMENT_PROGRESS,
    PAYMENT_RECONCILE_MACHINE,
    RECONCILABLE_PAYMENT_STATES,
    is_at_or_past,
    is_terminal_state,
)

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

TOKEN_CURRENCY = "usdt"
PARITY_RATE = Decimal("1")

# Processor intent statuses that settle a pending row during a status read
INTENT_CANCELED = "canceled"
INTENT_REQUIRES_PAYMENT_METHOD = "requires_payment_method"


class OnRampErrorCode:
    """On-ramp error codes for audit logging."""
    IDEMPOTENT_REPLAY = "STL-002"
    RATE_FALLBACK = "ONR-001"
    TRANSFER_FAILED = "ONR-002"
    RECEIPT_FAILED = "ONR-003"


# =============================================================================
# OnRampSettlement Class
# =============================================================================

class OnRampSettlement:
    """
    Fiat charge in, token transfer out.

    Reliability Level: L6 Critical (Sovereign Tier)
    Input Constraints: Injected store, chain client, verifier, gateway, rates
    Side Effects: Processor charges, custody token transfers, ledger writes
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
    # Quote
    # -------------------------------------------------------------------------

    def quote_rate(self, currency: str, correlation_id: Optional[str] = None) -> Decimal:
        """
        Tokens per unit of fiat.

        The rate provider returns fiat per token, so the quote is its
        inverse. Any lookup failure or non-positive rate yields parity.
        """
        try:
            rate = Decimal(str(self.rates.get_rate(TOKEN_CURRENCY, currency)))
        except Exception as e:
            logger.warning(
                f"[{OnRampErrorCode.RATE_FALLBACK}] Rate lookup failed, using 1:1 | "
                f"currency={currency} | error={e} | correlation_id={correlation_id}"
            )
            return self.decimal_gateway.to_rate(PARITY_RATE)

        if not rate.is_finite() or rate <= 0:
            logger.warning(
                f"[{OnRampErrorCode.RATE_FALLBACK}] Non-positive rate, using 1:1 | "
                f"currency={currency} | rate={rate} | correlation_id={correlation_id}"
            )
            return self.decimal_gateway.to_rate(PARITY_RATE)

        return self.decimal_gateway.to_rate(PARITY_RATE / rate)

    # -------------------------------------------------------------------------
    # initiate()
    # -------------------------------------------------------------------------

    def initiate(
        self,
        fiat_amount: Any,
        currency: str,
        wallet_address: str,
        correlation_id: Optional[str] = None,
    ) -> SettlementResult:
        """
        Create the external charge and its pending Payment row.

        Raises:
            ValidationError: Bad currency, wallet or amount; token cap exceeded
            InsufficientCustodyBalance: Custody cannot cover the token amount
            ExternalProcessorError: Charge creation rejected
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
        try:
            fiat = self.decimal_gateway.to_fiat(fiat_amount, correlation_id)
        except ValueError:
            raise ValidationError("Invalid amount", details={"amount": str(fiat_amount)})
        if fiat <= 0:
            raise ValidationError("Invalid amount", details={"amount": str(fiat_amount)})

        exchange_rate = self.quote_rate(currency, correlation_id)
        amount_token = self.decimal_gateway.to_token(fiat * exchange_rate)

        # Cap is enforced before any external charge exists
        cap = self.config.max_onramp_token_amount
        if amount_token > cap:
            raise ValidationError(
                f"Maximum purchase limit is {format(cap.normalize(), 'f')} USDT",
                details={"max_amount": cap, "requested": amount_token},
            )

        if self.config.check_custody_balance:
            self._check_custody_liquidity(amount_token, correlation_id)

        intent = self.gateway.create_payment_intent(
            fiat,
            currency,
            metadata={
                "wallet_address": wallet_address.lower(),
                "amount_usdt": str(amount_token),
                "exchange_rate": str(exchange_rate),
                "correlation_id": correlation_id,
            },
            idempotency_key=f"onramp-{correlation_id}",
        )

        payment = self.store.create_payment(
            payment_intent_id=intent["id"],
            wallet_address=wallet_address,
            amount_fiat=fiat,
            fiat_currency=currency,
            amount_token=amount_token,
            exchange_rate=exchange_rate,
            correlation_id=correlation_id,
        )

        logger.info(
            f"[ONRAMP] Charge initiated | payment_intent_id={payment.payment_intent_id} | "
            f"fiat={fiat} {currency} | amount_token={amount_token} | rate={exchange_rate} | "
            f"correlation_id={correlation_id}"
        )
        record_settlement(DIRECTION_ONRAMP, PaymentStatus.PENDING.value, correlation_id)

        return SettlementResult(
            status=payment.status,
            payment=payment,
            data={"client_secret": intent.get("client_secret")},
        )

    def _check_custody_liquidity(self, amount_token: Decimal, correlation_id: str) -> None:
        try:
            available = self.chain.balance_of(self.chain.custody_address)
        except Exception as e:
            # Re-checked at transfer time
            logger.warning(
                f"[ONRAMP] Custody balance check failed, continuing | error={e} | "
                f"correlation_id={correlation_id}"
            )
            return

        if available < amount_token:
            raise InsufficientCustodyBalance(
                "Insufficient balance in custody wallet",
                details={"available": available, "required": amount_token},
            )

    # -------------------------------------------------------------------------
    # confirm_charge()
    # -------------------------------------------------------------------------

    def confirm_charge(
        self,
        payment_intent_id: str,
        correlation_id: Optional[str] = None,
    ) -> SettlementResult:
        """
        Settle a confirmed charge by transferring tokens from custody.

        Safe under duplicate and concurrent delivery: only the caller that
        performs pending -> processing ever broadcasts a transfer.

        Raises:
            NotFoundError: Unknown charge reference
            InvalidStateTransition: Row already failed or canceled
        """
        correlation_id = correlation_id or str(uuid.uuid4())

        payment = self.store.get_payment_by_ref(payment_intent_id)
        if payment is None:
            raise NotFoundError(
                f"Payment not found for payment intent {payment_intent_id}",
                details={"payment_intent_id": payment_intent_id},
            )

        if payment.is_settled:
            return self._replay(payment, "confirm_charge", correlation_id)

        if is_terminal_state(PAYMENT_MACHINE, payment.status):
            raise InvalidStateTransition(
                f"Payment is {payment.status}, cannot settle charge",
                details={"payment_intent_id": payment_intent_id, "status": payment.status},
            )

        claimed = self.store.transition_payment(
            payment.id,
            PaymentStatus.PROCESSING.value,
            allowed_from=[PaymentStatus.PENDING.value],
            correlation_id=correlation_id,
        )
        if claimed is None:
            # Another delivery owns the transfer
            current = self.store.get_payment(payment.id)
            if is_at_or_past(PAYMENT_PROGRESS, current.status, PaymentStatus.PROCESSING.value):
                return self._replay(current, "confirm_charge", correlation_id)
            raise InvalidStateTransition(
                f"Payment is {current.status}, cannot settle charge",
                details={"payment_intent_id": payment_intent_id, "status": current.status},
            )

        started = time.monotonic()

        try:
            tx_hash = self._transfer_with_retry(claimed, correlation_id)
        except SettlementError as e:
            return self._fail(claimed, f"Failed to transfer USDT from custody wallet: {e.message}",
                              e.error_kind, correlation_id)
        except Exception as e:
            kind = (TransientInfraError.error_kind if is_transient_error(e)
                    else ChainTransferError.error_kind)
            return self._fail(claimed, f"Failed to transfer USDT from custody wallet: {e}",
                              kind, correlation_id)

        try:
            receipt = self.chain.wait_for_receipt(tx_hash, self.config.receipt_timeout_seconds)
        except Exception as e:
            return self._fail(
                claimed,
                f"Failed to confirm transaction {tx_hash}: {e}",
                TransientInfraError.error_kind,
                correlation_id,
            )

        if receipt is None:
            return self._fail(
                claimed,
                f"Receipt not observed within {self.config.receipt_timeout_seconds}s "
                f"for transaction {tx_hash}",
                TransientInfraError.error_kind,
                correlation_id,
            )
        if int(receipt.get("status", 0)) != 1:
            return self._fail(
                claimed,
                f"Transaction failed on-chain. Status: {receipt.get('status')} | tx_hash={tx_hash}",
                ChainVerificationError.error_kind,
                correlation_id,
            )

        completed = self.store.complete_payment(
            claimed.id,
            tx_hash=receipt.get("transaction_hash") or tx_hash,
            block_number=receipt.get("block_number"),
            allowed_from=[PaymentStatus.PROCESSING.value],
            correlation_id=correlation_id,
        )
        record_transfer_duration(time.monotonic() - started)

        if completed is None:
            current = self.store.get_payment(claimed.id)
            detail = (
                f"Transfer {tx_hash} succeeded but payment moved to {current.status}; "
                f"reconcile manually"
            )
            if not current.is_settled:
                # Keep the broadcast hash on the row for reconcile_transfer
                prior = f"{current.error_message}; " if current.error_message else ""
                current = self.store.annotate_payment(
                    current.id, f"{prior}{detail}", correlation_id=correlation_id
                )
            logger.error(
                f"[{OnRampErrorCode.RECEIPT_FAILED}] {detail} | "
                f"payment_intent_id={payment_intent_id} | correlation_id={correlation_id}"
            )
            record_settlement_failure(DIRECTION_ONRAMP, InvalidStateTransition.error_kind, correlation_id)
            return SettlementResult(
                status=current.status,
                error_kind=InvalidStateTransition.error_kind,
                detail=detail,
                payment=current,
            )

        logger.info(
            f"[ONRAMP] Payment completed | payment_intent_id={payment_intent_id} | "
            f"tx_hash={completed.tx_hash} | block_number={completed.block_number} | "
            f"correlation_id={correlation_id}"
        )
        record_settlement(DIRECTION_ONRAMP, PaymentStatus.COMPLETED.value, correlation_id)
        return SettlementResult(status=completed.status, payment=completed)

    def _transfer_with_retry(self, payment: Payment, correlation_id: str) -> str:
        """
        Sign the custody transfer once and send it, retrying transient RPC
        failures only.

        A retry after signing re-sends the same signed bytes, so a send
        whose response was lost cannot become a second transfer. Delay
        before retry n is backoff_seconds * n. Permanent failures and the
        last transient failure are re-raised; once signed, the raised error
        carries the transaction hash.
        """
        max_attempts = self.config.transfer_max_attempts
        signed = None

        for attempt in range(1, max_attempts + 1):
            try:
                if signed is None:
                    signed = self.chain.prepare_transfer(payment.wallet_address, payment.amount_token)
                return self.chain.broadcast_transfer(signed)
            except Exception as e:
                transient = is_transient_error(e)
                if not transient or attempt >= max_attempts:
                    logger.error(
                        f"[{OnRampErrorCode.TRANSFER_FAILED}] Custody transfer failed | "
                        f"attempt={attempt}/{max_attempts} | transient={transient} | "
                        f"tx_hash={signed.tx_hash if signed else None} | "
                        f"error={e} | correlation_id={correlation_id}"
                    )
                    if signed is None:
                        raise
                    error_type = TransientInfraError if transient else ChainTransferError
                    raise error_type(
                        f"{getattr(e, 'message', e)} | tx_hash={signed.tx_hash}",
                        details={"tx_hash": signed.tx_hash, "nonce": signed.nonce},
                    ) from e
                delay = self.config.transfer_backoff_seconds * attempt
                logger.warning(
                    f"[ONRAMP] RPC error on attempt {attempt}/{max_attempts}, "
                    f"retrying in {delay}s | error={e} | correlation_id={correlation_id}"
                )
                record_transfer_retry(correlation_id)
                self._sleep(delay)

        raise TransientInfraError("Transfer attempts exhausted")

    def _fail(
        self,
        payment: Payment,
        message: str,
        error_kind: str,
        correlation_id: str,
    ) -> SettlementResult:
        failed = self.store.transition_payment(
            payment.id,
            PaymentStatus.FAILED.value,
            allowed_from=[PaymentStatus.PROCESSING.value],
            correlation_id=correlation_id,
            error_message=message,
        )
        row = failed or self.store.get_payment(payment.id)
        logger.error(
            f"[ONRAMP] Payment failed | payment_intent_id={payment.payment_intent_id} | "
            f"error_kind={error_kind} | error={message} | correlation_id={correlation_id}"
        )
        record_settlement_failure(DIRECTION_ONRAMP, error_kind, correlation_id)
        return SettlementResult(
            status=row.status,
            error_kind=error_kind,
            detail=message,
            payment=row,
        )

    def _replay(self, payment: Payment, operation: str, correlation_id: str) -> SettlementResult:
        logger.info(
            f"[{OnRampErrorCode.IDEMPOTENT_REPLAY}] Idempotent replay | operation={operation} | "
            f"payment_intent_id={payment.payment_intent_id} | status={payment.status} | "
            f"correlation_id={correlation_id}"
        )
        record_idempotent_replay(DIRECTION_ONRAMP, operation, correlation_id)
        return SettlementResult(status=payment.status, idempotent_replay=True, payment=payment)

    # -------------------------------------------------------------------------
    # Charge failure events
    # -------------------------------------------------------------------------

    def fail_charge(
        self,
        payment_intent_id: str,
        reason: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> SettlementResult:
        """Record a failed charge. A row already terminal is a replay."""
        return self._close_charge(
            payment_intent_id,
            PaymentStatus.FAILED.value,
            f"Stripe payment failed: {reason or 'unknown error'}",
            "fail_charge",
            correlation_id,
        )

    def cancel_charge(
        self,
        payment_intent_id: str,
        correlation_id: Optional[str] = None,
    ) -> SettlementResult:
        return self._close_charge(
            payment_intent_id,
            PaymentStatus.CANCELED.value,
            "Stripe payment was canceled",
            "cancel_charge",
            correlation_id,
        )

    def _close_charge(
        self,
        payment_intent_id: str,
        target: str,
        message: str,
        operation: str,
        correlation_id: Optional[str],
    ) -> SettlementResult:
        correlation_id = correlation_id or str(uuid.uuid4())
        payment = self.store.get_payment_by_ref(payment_intent_id)
        if payment is None:
            raise NotFoundError(
                f"Payment not found for payment intent {payment_intent_id}",
                details={"payment_intent_id": payment_intent_id},
            )

        updated = self.store.transition_payment(
            payment.id,
            target,
            allowed_from=[PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value],
            correlation_id=correlation_id,
            error_message=message,
        )
        if updated is None:
            return self._replay(self.store.get_payment(payment.id), operation, correlation_id)

        logger.warning(
            f"[ONRAMP] Charge closed | payment_intent_id={payment_intent_id} | "
            f"status={target} | reason={message} | correlation_id={correlation_id}"
        )
        record_settlement(DIRECTION_ONRAMP, target, correlation_id)
        return SettlementResult(status=updated.status, payment=updated)

    # -------------------------------------------------------------------------
    # Manual reconciliation
    # -------------------------------------------------------------------------

    def reconcile_transfer(
        self,
        payment_intent_id: str,
        tx_hash: str,
        correlation_id: Optional[str] = None,
    ) -> SettlementResult:
        """
        Complete a processing/failed row from an on-chain proven transfer.

        Raises:
            NotFoundError: Unknown charge reference
            InvalidStateTransition: Row is pending/canceled or settled by another tx
            ChainVerificationError: The transfer does not prove this payment
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        payment = self.store.get_payment_by_ref(payment_intent_id)
        if payment is None:
            raise NotFoundError(
                f"Payment not found for payment intent {payment_intent_id}",
                details={"payment_intent_id": payment_intent_id},
            )

        if payment.is_settled:
            if (payment.tx_hash or "").lower() == tx_hash.lower():
                return self._replay(payment, "reconcile_transfer", correlation_id)
            raise InvalidStateTransition(
                "Payment already settled by a different transaction",
                details={"tx_hash": payment.tx_hash},
            )
        if payment.status not in RECONCILABLE_PAYMENT_STATES:
            raise InvalidStateTransition(
                f"Payment is {payment.status}, nothing to reconcile",
                details={"status": payment.status},
            )

        proof = self.verifier.verify_single_transfer(
            tx_hash,
            expected_sender=self.chain.custody_address,
            expected_recipient=payment.wallet_address,
            expected_amount=payment.amount_token,
            tolerance=self.config.amount_tolerance,
            correlation_id=correlation_id,
        )

        completed = self.store.complete_payment(
            payment.id,
            tx_hash=tx_hash,
            block_number=proof.block_number,
            machine=PAYMENT_RECONCILE_MACHINE,
            correlation_id=correlation_id,
        )
        if completed is None:
            current = self.store.get_payment(payment.id)
            if current.is_settled:
                return self._replay(current, "reconcile_transfer", correlation_id)
            raise InvalidStateTransition(
                f"Payment is {current.status}, nothing to reconcile",
                details={"status": current.status},
            )

        logger.warning(
            f"[ONRAMP] Payment reconciled manually | payment_intent_id={payment_intent_id} | "
            f"tx_hash={tx_hash} | correlation_id={correlation_id}"
        )
        record_settlement(DIRECTION_ONRAMP, "reconciled", correlation_id)
        return SettlementResult(status=completed.status, payment=completed)

    # -------------------------------------------------------------------------
    # Status read
    # -------------------------------------------------------------------------

    def get_payment_status(
        self,
        payment_intent_id: str,
        sync: bool = True,
        correlation_id: Optional[str] = None,
    ) -> Payment:
        """
        Current best-known Payment state.

        With sync, a pending row follows a canceled or failed processor
        intent. A succeeded intent never changes the row: only the
        charge-confirmed event starts the transfer.
        """
        payment = self.store.get_payment_by_ref(payment_intent_id)
        if payment is None:
            raise NotFoundError(
                f"Payment not found for payment intent {payment_intent_id}",
                details={"payment_intent_id": payment_intent_id},
            )

        if not sync or payment.status != PaymentStatus.PENDING.value:
            return payment

        try:
            intent = self.gateway.retrieve_payment_intent(payment_intent_id)
        except ExternalProcessorError as e:
            logger.warning(
                f"[ONRAMP] Processor status sync failed, returning ledger state | "
                f"payment_intent_id={payment_intent_id} | error={e.message} | "
                f"correlation_id={correlation_id}"
            )
            return payment

        intent_status = intent.get("status")
        if intent_status == INTENT_CANCELED:
            updated = self.store.transition_payment(
                payment.id,
                PaymentStatus.CANCELED.value,
                allowed_from=[PaymentStatus.PENDING.value],
                correlation_id=correlation_id,
                error_message="Stripe payment was canceled",
            )
            return updated or self.store.get_payment(payment.id)

        last_error = intent.get("last_payment_error")
        if intent_status == INTENT_REQUIRES_PAYMENT_METHOD and last_error:
            reason = last_error.get("message") if isinstance(last_error, dict) else str(last_error)
            updated = self.store.transition_payment(
                payment.id,
                PaymentStatus.FAILED.value,
                allowed_from=[PaymentStatus.PENDING.value],
                correlation_id=correlation_id,
                error_message=f"Stripe payment failed: {reason}",
            )
            return updated or self.store.get_payment(payment.id)

        return payment
