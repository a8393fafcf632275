"""
============================================================================
Stable Bridge - Settlement Engine
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)

Single entry point for the HTTP layer, the event ingress and operators.
Holds no mutable state of its own: every step round-trips through the
ledger, so a restarted process recovers from ledger rows plus replayed
external signals.

OPERATIONS:
    On-ramp:  initiate_onramp, confirm_onramp_charge, fail_onramp_charge,
              cancel_onramp_charge, reconcile_onramp_transfer,
              get_payment_status
    Off-ramp: initiate_offramp_cashout, report_payout_outcome,
              resume_offramp_payout, get_cashout
    Batch:    prepare_payroll_batch, verify_batch_and_settle
    Reads:    custody_balance, token_balance, payment/cashout/payroll history,
              exchange_quote

============================================================================
"""

from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Sequence, Tuple
import logging
import time

from app.chain.client import is_valid_address
from services.batch_settlement import BatchSettlement
from services.bridge_config import BridgeConfig
from services.offramp_settlement import OffRampSettlement
from services.onramp_settlement import OnRampSettlement
from services.settlement_errors import ValidationError
from services.settlement_models import Cashout, Page, Payment, SettlementResult

# Configure module logger
logger = logging.getLogger(__name__)


class SettlementEngine:
    """
    Facade over the on-ramp, off-ramp and batch state machines.

    Collaborators are injected so tests can substitute fakes for the
    chain client, the processor gateway and the rate provider.
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
        self.rates = rate_provider

        self.onramp = OnRampSettlement(
            config, store, chain_client, verifier, gateway, rate_provider, sleep=sleep
        )
        self.offramp = OffRampSettlement(
            config, store, chain_client, verifier, gateway, rate_provider, sleep=sleep
        )
        self.batch = BatchSettlement(config, store, chain_client, verifier)

        logger.info(f"[ENGINE] Settlement engine initialized | config={config.to_dict()}")

    # -------------------------------------------------------------------------
    # On-ramp
    # -------------------------------------------------------------------------

    def initiate_onramp(
        self,
        fiat_amount: Any,
        currency: str,
        wallet_address: str,
        correlation_id: Optional[str] = None,
    ) -> SettlementResult:
        return self.onramp.initiate(fiat_amount, currency, wallet_address, correlation_id)

    def confirm_onramp_charge(
        self,
        payment_intent_id: str,
        correlation_id: Optional[str] = None,
    ) -> SettlementResult:
        return self.onramp.confirm_charge(payment_intent_id, correlation_id)

    def fail_onramp_charge(
        self,
        payment_intent_id: str,
        reason: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> SettlementResult:
        return self.onramp.fail_charge(payment_intent_id, reason, correlation_id)

    def cancel_onramp_charge(
        self,
        payment_intent_id: str,
        correlation_id: Optional[str] = None,
    ) -> SettlementResult:
        return self.onramp.cancel_charge(payment_intent_id, correlation_id)

    def reconcile_onramp_transfer(
        self,
        payment_intent_id: str,
        tx_hash: str,
        correlation_id: Optional[str] = None,
    ) -> SettlementResult:
        return self.onramp.reconcile_transfer(payment_intent_id, tx_hash, correlation_id)

    def get_payment_status(
        self,
        payment_intent_id: str,
        sync: bool = True,
        correlation_id: Optional[str] = None,
    ) -> Payment:
        return self.onramp.get_payment_status(payment_intent_id, sync, correlation_id)

    # -------------------------------------------------------------------------
    # Off-ramp
    # -------------------------------------------------------------------------

    def initiate_offramp_cashout(
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
        return self.offramp.request_cashout(
            wallet_address,
            token_amount,
            currency,
            bank_account_ref,
            tx_hash,
            signature,
            message,
            sub_account_ref=sub_account_ref,
            correlation_id=correlation_id,
        )

    def report_payout_outcome(
        self,
        payout_id: str,
        outcome: str,
        failure_code: Optional[str] = None,
        failure_message: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> SettlementResult:
        return self.offramp.report_payout_outcome(
            payout_id, outcome, failure_code, failure_message, correlation_id
        )

    def resume_offramp_payout(
        self,
        cashout_id: str,
        correlation_id: Optional[str] = None,
    ) -> SettlementResult:
        return self.offramp.resume_payout(cashout_id, correlation_id)

    def get_cashout(self, cashout_id: str) -> Cashout:
        return self.offramp.get_cashout(cashout_id)

    # -------------------------------------------------------------------------
    # Batch
    # -------------------------------------------------------------------------

    def prepare_payroll_batch(
        self,
        employer_address: str,
        entries: Sequence[Tuple[str, Any]],
        correlation_id: Optional[str] = None,
    ) -> SettlementResult:
        return self.batch.prepare_payroll_batch(employer_address, entries, correlation_id)

    def verify_batch_and_settle(
        self,
        payroll_id: str,
        tx_hash: str,
        correlation_id: Optional[str] = None,
    ) -> SettlementResult:
        return self.batch.verify_batch_and_settle(payroll_id, tx_hash, correlation_id)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def custody_balance(self) -> Dict[str, Any]:
        address = self.chain.custody_address
        return {"address": address, "balance": self.chain.balance_of(address)}

    def token_balance(self, address: str) -> Decimal:
        if not is_valid_address(address):
            raise ValidationError("Invalid wallet address", details={"address": address})
        return self.chain.balance_of(address)

    def exchange_quote(self, currency: str) -> Decimal:
        """Tokens per unit of fiat, 1.0 when no rate is available."""
        currency = (currency or "").strip().lower()
        if not self.config.is_supported_currency(currency):
            raise ValidationError(
                f"Invalid currency. Supported: {', '.join(self.config.supported_currencies)}",
                details={"currency": currency},
            )
        return self.onramp.quote_rate(currency)

    def payment_history(self, wallet_address: str, page: int = 1, limit: int = 20) -> Page:
        self._require_address(wallet_address)
        return self.store.list_payments_by_wallet(wallet_address, page, limit)

    def cashout_history(self, wallet_address: str, page: int = 1, limit: int = 20) -> Page:
        self._require_address(wallet_address)
        return self.store.list_cashouts_by_wallet(wallet_address, page, limit)

    def payroll_history(
        self,
        employer_address: Optional[str] = None,
        employee_address: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page:
        if employer_address:
            self._require_address(employer_address)
            return self.store.list_payrolls_by_employer(employer_address, page, limit)
        if employee_address:
            self._require_address(employee_address)
            return self.store.list_payrolls_by_employee(employee_address, page, limit)
        raise ValidationError("Employer or employee address is required")

    @staticmethod
    def _require_address(address: str) -> None:
        if not is_valid_address(address):
            raise ValidationError("Invalid wallet address", details={"address": address})
