"""
============================================================================
Stable Bridge - Batch Settlement (payroll-style disbursement)
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: Token amounts 6dp, tolerance compared as Decimal

One employer transaction pays N recipients. The batch settles all or
nothing: every expected recipient must be paid the expected amount
(within tolerance) by the same transaction before any row completes.

BATCH FLOW:
    1. prepare_payroll_batch: validate recipients, optional employer balance
       check, insert pending rows under a new payroll_id
    2. Employer broadcasts one transaction from their own wallet
    3. verify_batch_and_settle: decode Transfer logs sent by the employer,
       reconcile against the expected set, complete every row atomically

A failed reconciliation leaves every row pending with the error text, so
a corrected transaction can be submitted for the same batch.

============================================================================
"""

from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import logging
import re
import uuid

from app.chain.client import is_valid_address
from app.exchange.decimal_gateway import DecimalGateway
from app.observability.metrics import (
    record_idempotent_replay,
    record_settlement,
    record_settlement_failure,
)
from services.bridge_config import BridgeConfig
from services.settlement_errors import (
    BatchReconciliationError,
    ChainVerificationError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from services.settlement_models import (
    DIRECTION_BATCH,
    PayrollEntry,
    PayrollStatus,
    SettlementResult,
)

# Configure module logger
logger = logging.getLogger(__name__)

TX_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")


# =============================================================================
# Reconciliation
# =============================================================================

def reconcile_batch(
    expected: Dict[str, Decimal],
    observed: Iterable[Any],
    tolerance: Decimal,
) -> Tuple[List[str], List[Dict[str, Any]]]:
    """
    Compare observed transfers with the expected recipient -> amount map.

    Transfers to recipients outside the batch are ignored. Any transfer to
    an expected recipient outside tolerance is a mismatch for the whole
    batch.

    Returns:
        (missing recipients, mismatched transfers). Both empty means the
        batch is fully satisfied.
    """
    expected = {address.lower(): amount for address, amount in expected.items()}
    satisfied = set()
    mismatched: List[Dict[str, Any]] = []

    for transfer in observed:
        recipient = transfer.recipient.lower()
        if recipient not in expected:
            continue
        want = expected[recipient]
        if abs(transfer.amount - want) > tolerance:
            mismatched.append({
                "recipient": recipient,
                "expected": want,
                "observed": transfer.amount,
            })
            continue
        satisfied.add(recipient)

    missing = sorted(address for address in expected if address not in satisfied)
    return missing, mismatched


# =============================================================================
# BatchSettlement Class
# =============================================================================

class BatchSettlement:
    """
    All-or-nothing settlement of multi-recipient transactions.

    Reliability Level: L6 Critical (Sovereign Tier)
    Side Effects: Ledger writes only; the employer sends the transaction
    """

    def __init__(
        self,
        config: BridgeConfig,
        store: Any,
        chain_client: Any,
        verifier: Any,
        check_employer_balance: bool = True,
    ):
        self.config = config
        self.store = store
        self.chain = chain_client
        self.verifier = verifier
        self.check_employer_balance = check_employer_balance
        self.decimal_gateway = DecimalGateway()

    # -------------------------------------------------------------------------
    # prepare_payroll_batch()
    # -------------------------------------------------------------------------

    def prepare_payroll_batch(
        self,
        employer_address: str,
        entries: Sequence[Tuple[str, Any]],
        correlation_id: Optional[str] = None,
    ) -> SettlementResult:
        """
        Record a batch of pending disbursements.

        Args:
            employer_address: Wallet that will send the batch transaction
            entries: (recipient address, token amount) pairs

        Raises:
            ValidationError: Bad address, duplicate or self recipient,
                non-positive amount, or insufficient employer balance
        """
        correlation_id = correlation_id or str(uuid.uuid4())

        if not is_valid_address(employer_address):
            raise ValidationError("Invalid employer address", details={"employer_address": employer_address})
        if not entries:
            raise ValidationError("Payroll must contain at least one recipient")

        employer = employer_address.lower()
        seen = set()
        normalized: List[Tuple[str, Decimal]] = []

        for address, raw_amount in entries:
            if not is_valid_address(address):
                raise ValidationError(f"Invalid employee address: {address}", details={"address": address})
            recipient = address.lower()
            if recipient == employer:
                raise ValidationError("Employer cannot pay themselves", details={"address": address})
            if recipient in seen:
                raise ValidationError(f"Duplicate employee address: {address}", details={"address": address})
            try:
                amount = self.decimal_gateway.to_token(raw_amount, correlation_id)
            except ValueError:
                raise ValidationError(f"Invalid amount for {address}", details={"amount": str(raw_amount)})
            if amount <= 0:
                raise ValidationError(f"Invalid amount for {address}", details={"amount": str(raw_amount)})
            seen.add(recipient)
            normalized.append((recipient, amount))

        total = self.decimal_gateway.to_token(sum((amount for _, amount in normalized), Decimal("0")))

        if self.check_employer_balance:
            self._check_employer_balance(employer, total, correlation_id)

        rows = self.store.create_payroll_batch(employer, normalized, correlation_id=correlation_id)
        payroll_id = rows[0].payroll_id

        logger.info(
            f"[BATCH] Payroll prepared | payroll_id={payroll_id} | employer={employer} | "
            f"recipients={len(rows)} | total={total} | correlation_id={correlation_id}"
        )
        record_settlement(DIRECTION_BATCH, PayrollStatus.PENDING.value, correlation_id)
        return SettlementResult(
            status=PayrollStatus.PENDING.value,
            payroll=rows,
            data={"payroll_id": payroll_id, "total_amount": total},
        )

    def _check_employer_balance(self, employer: str, total: Decimal, correlation_id: str) -> None:
        try:
            balance = self.chain.balance_of(employer)
        except Exception as e:
            logger.warning(
                f"[BATCH] Employer balance check failed, continuing | employer={employer} | "
                f"error={e} | correlation_id={correlation_id}"
            )
            return

        if balance < total:
            raise ValidationError(
                "Insufficient balance for payroll",
                details={
                    "balance": balance,
                    "required": total,
                    "shortfall": self.decimal_gateway.to_token(total - balance),
                },
            )

    # -------------------------------------------------------------------------
    # verify_batch_and_settle()
    # -------------------------------------------------------------------------

    def verify_batch_and_settle(
        self,
        payroll_id: str,
        tx_hash: str,
        correlation_id: Optional[str] = None,
    ) -> SettlementResult:
        """
        Settle every row of the batch from one employer transaction.

        Returns a result with error_kind set when the transaction does not
        satisfy the batch; the rows then stay pending with the error text.

        Raises:
            ValidationError: Malformed tx hash
            NotFoundError: Unknown batch
            InvalidStateTransition: Batch already settled by another tx, or
                the tx already settled another batch
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        if not tx_hash or not TX_HASH_PATTERN.match(tx_hash):
            raise ValidationError("Invalid transaction hash", details={"tx_hash": tx_hash})

        rows = self.store.get_payroll_batch(payroll_id)
        if not rows:
            raise NotFoundError("Payroll not found", details={"payroll_id": payroll_id})

        if all(row.status == PayrollStatus.COMPLETED.value for row in rows):
            return self._settled(rows, tx_hash, correlation_id)

        self._ensure_tx_unclaimed(payroll_id, tx_hash)

        employer = rows[0].employer_address
        pending = [row for row in rows if row.status == PayrollStatus.PENDING.value]
        expected = {row.employee_address: row.amount_token for row in pending}

        try:
            observed = self.verifier.verify_batch_transfer(tx_hash, employer, correlation_id=correlation_id)
            missing, mismatched = reconcile_batch(
                expected, observed, Decimal(str(self.config.amount_tolerance))
            )
            if mismatched or missing:
                raise BatchReconciliationError(
                    self._reconciliation_message(missing, mismatched),
                    missing=missing,
                    mismatched=mismatched,
                )
        except ChainVerificationError as e:
            return self._unsettled(payroll_id, tx_hash, e, correlation_id)

        completed = self.store.complete_payroll_batch(
            payroll_id,
            tx_hash=tx_hash,
            block_number=observed[0].block_number,
            correlation_id=correlation_id,
        )
        if not all(row.status == PayrollStatus.COMPLETED.value for row in completed):
            self._ensure_tx_unclaimed(payroll_id, tx_hash)
            raise InvalidStateTransition(
                "Payroll batch could not be completed",
                details={"payroll_id": payroll_id},
            )
        if any((row.tx_hash or "").lower() != tx_hash.lower() for row in completed):
            # A concurrent call settled the batch first
            return self._settled(completed, tx_hash, correlation_id)

        logger.info(
            f"[BATCH] Payroll settled | payroll_id={payroll_id} | tx_hash={tx_hash} | "
            f"recipients={len(completed)} | correlation_id={correlation_id}"
        )
        record_settlement(DIRECTION_BATCH, PayrollStatus.COMPLETED.value, correlation_id)
        return SettlementResult(
            status=PayrollStatus.COMPLETED.value,
            payroll=completed,
            data={"payroll_id": payroll_id, "tx_hash": tx_hash.lower()},
        )

    def _ensure_tx_unclaimed(self, payroll_id: str, tx_hash: str) -> None:
        """One employer transaction settles at most one batch."""
        claimed_by = [pid for pid in self.store.payroll_ids_for_tx_hash(tx_hash) if pid != payroll_id]
        if claimed_by:
            raise InvalidStateTransition(
                "Transaction already settled a different payroll batch",
                details={"payroll_id": payroll_id, "settled_payroll_id": claimed_by[0],
                         "tx_hash": tx_hash.lower()},
            )

    @staticmethod
    def _reconciliation_message(missing: List[str], mismatched: List[Dict[str, Any]]) -> str:
        parts = []
        if missing:
            parts.append(f"Missing transfers to: {', '.join(missing)}")
        for item in mismatched:
            parts.append(
                f"Amount mismatch for {item['recipient']}: "
                f"expected {item['expected']}, got {item['observed']}"
            )
        return "; ".join(parts)

    def _settled(self, rows: List[PayrollEntry], tx_hash: str, correlation_id: str) -> SettlementResult:
        settled_hash = (rows[0].tx_hash or "").lower()
        if settled_hash != tx_hash.lower():
            raise InvalidStateTransition(
                "Payroll already settled by a different transaction",
                details={"payroll_id": rows[0].payroll_id, "tx_hash": settled_hash},
            )
        logger.info(
            f"[STL-002] Idempotent replay | operation=verify_batch_and_settle | "
            f"payroll_id={rows[0].payroll_id} | tx_hash={tx_hash} | correlation_id={correlation_id}"
        )
        record_idempotent_replay(DIRECTION_BATCH, "verify_batch_and_settle", correlation_id)
        return SettlementResult(
            status=PayrollStatus.COMPLETED.value,
            idempotent_replay=True,
            payroll=rows,
            data={"payroll_id": rows[0].payroll_id, "tx_hash": settled_hash},
        )

    def _unsettled(
        self,
        payroll_id: str,
        tx_hash: str,
        error: ChainVerificationError,
        correlation_id: str,
    ) -> SettlementResult:
        detail = f"Payroll verification failed for {tx_hash}: {error.message}"
        self.store.annotate_payroll_batch(payroll_id, detail, correlation_id=correlation_id)
        logger.error(
            f"[{error.error_code}] Payroll not settled | payroll_id={payroll_id} | "
            f"tx_hash={tx_hash} | reason={error.reason} | correlation_id={correlation_id}"
        )
        record_settlement_failure(DIRECTION_BATCH, error.error_kind, correlation_id)
        return SettlementResult(
            status=PayrollStatus.PENDING.value,
            error_kind=error.error_kind,
            detail=detail,
            payroll=self.store.get_payroll_batch(payroll_id),
            data={"payroll_id": payroll_id, **error.details},
        )
