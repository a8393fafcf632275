"""
Unit Tests for LedgerStore

Reliability Level: SOVEREIGN TIER

Runs against in-memory SQLite with the production DDL.

Tests:
- Insert-then-read round trip keeps Decimal precision
- Conditional transitions apply at most once
- Duplicate inbound tx hash returns the existing cashout
- Batch completion writes every row, never reusing another batch's tx hash
- Payment annotation leaves status untouched
- Rate cache freshness window
- History pagination
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.ledger_store import LedgerStore
from services.settlement_models import CashoutStatus, PaymentStatus, PayrollStatus

WALLET = "0x" + "ab" * 20
OTHER_WALLET = "0x" + "cd" * 20
EMPLOYER = "0x" + "ee" * 20
TX_HASH = "0x" + "12" * 32


def _payment(ledger, ref="pi_1", wallet=WALLET):
    return ledger.create_payment(
        payment_intent_id=ref,
        wallet_address=wallet,
        amount_fiat=Decimal("100.00"),
        fiat_currency="USD",
        amount_token=Decimal("99.999999"),
        exchange_rate=Decimal("0.99999999"),
    )


def _cashout(ledger, tx_hash=TX_HASH, wallet=WALLET):
    return ledger.insert_cashout_if_absent(
        wallet_address=wallet,
        amount_token=Decimal("5.000000"),
        fiat_currency="usd",
        fiat_amount=Decimal("5.00"),
        exchange_rate=Decimal("1.00000000"),
        tx_hash_onchain=tx_hash,
        bank_account_ref="ba_123",
    )


class TestPayments:

    def test_create_and_read_back(self, ledger) -> None:
        payment = _payment(ledger)
        assert payment.status == PaymentStatus.PENDING.value
        assert payment.amount_token == Decimal("99.999999")
        assert payment.amount_fiat == Decimal("100.00")
        assert payment.exchange_rate == Decimal("0.99999999")
        assert payment.fiat_currency == "usd"
        assert payment.wallet_address == WALLET
        assert payment.tx_hash is None
        assert ledger.get_payment_by_ref("pi_1").id == payment.id

    def test_unknown_reference(self, ledger) -> None:
        assert ledger.get_payment_by_ref("pi_missing") is None
        assert ledger.get_payment("missing") is None

    def test_conditional_transition_applies_once(self, ledger) -> None:
        payment = _payment(ledger)
        first = ledger.transition_payment(payment.id, "processing", allowed_from=["pending"])
        second = ledger.transition_payment(payment.id, "processing", allowed_from=["pending"])
        assert first is not None and first.status == "processing"
        assert second is None

    def test_default_allowed_from_uses_transition_table(self, ledger) -> None:
        payment = _payment(ledger)
        assert ledger.transition_payment(payment.id, "completed") is None
        ledger.transition_payment(payment.id, "processing")
        assert ledger.transition_payment(payment.id, "completed").status == "completed"

    def test_requested_sources_cannot_widen_table(self, ledger) -> None:
        payment = _payment(ledger)
        ledger.transition_payment(payment.id, "failed")

        widened = ledger.complete_payment(
            payment.id, tx_hash=TX_HASH, block_number=42, allowed_from=["failed"]
        )

        assert widened is None
        assert ledger.get_payment(payment.id).status == "failed"

    def test_reconcile_machine_completes_failed_row(self, ledger) -> None:
        payment = _payment(ledger)
        ledger.transition_payment(payment.id, "failed", error_message="receipt timeout")

        done = ledger.complete_payment(
            payment.id, tx_hash=TX_HASH, block_number=42, machine="payment_reconcile"
        )

        assert done.status == "completed"
        assert done.error_message is None

    def test_complete_payment_is_atomic(self, ledger) -> None:
        payment = _payment(ledger)
        ledger.transition_payment(payment.id, "processing")
        done = ledger.complete_payment(
            payment.id, tx_hash=TX_HASH, block_number=42, allowed_from=["processing"]
        )
        assert done.status == "completed"
        assert done.tx_hash == TX_HASH
        assert done.block_number == 42
        assert done.completed_at is not None
        assert done.is_settled is True

    def test_annotate_payment_keeps_status_and_hash(self, ledger) -> None:
        payment = _payment(ledger)
        ledger.transition_payment(payment.id, "canceled", error_message="Stripe payment was canceled")

        noted = ledger.annotate_payment(payment.id, f"Transfer {TX_HASH} succeeded")

        assert noted.status == "canceled"
        assert noted.tx_hash is None
        assert noted.is_settled is False
        assert noted.error_message == f"Transfer {TX_HASH} succeeded"

    def test_immutable_columns_rejected(self, ledger) -> None:
        payment = _payment(ledger)
        with pytest.raises(ValueError):
            ledger.transition_payment(payment.id, "failed", amount_token=Decimal("1"))

    def test_history_pagination(self, ledger) -> None:
        for index in range(5):
            _payment(ledger, ref=f"pi_{index}")
        _payment(ledger, ref="pi_other", wallet=OTHER_WALLET)

        page = ledger.list_payments_by_wallet(WALLET.upper().replace("0X", "0x"), page=2, limit=2)
        assert page.total == 5
        assert page.total_pages == 3
        assert len(page.items) == 2
        assert all(item.wallet_address == WALLET for item in page.items)

    def test_limit_clamped(self, ledger) -> None:
        page = ledger.list_payments_by_wallet(WALLET, page=0, limit=1000)
        assert page.page == 1
        assert page.limit == 100


class TestCashouts:

    def test_insert_if_absent(self, ledger) -> None:
        cashout, created = _cashout(ledger)
        assert created is True
        assert cashout.status == CashoutStatus.PENDING_TRANSFER.value
        assert cashout.fiat_amount == Decimal("5.00")

    def test_duplicate_tx_hash_returns_existing(self, ledger) -> None:
        first, _ = _cashout(ledger)
        second, created = _cashout(ledger, tx_hash=TX_HASH.upper().replace("0X", "0x"))
        assert created is False
        assert second.id == first.id

    def test_lookup_by_payout_id(self, ledger) -> None:
        cashout, _ = _cashout(ledger)
        ledger.transition_cashout(cashout.id, "pending_payout", payout_id="po_1")
        found = ledger.get_cashout_by_payout_id("po_1")
        assert found.id == cashout.id
        assert found.status == "pending_payout"

    def test_terminal_cashout_does_not_move(self, ledger) -> None:
        cashout, _ = _cashout(ledger)
        ledger.transition_cashout(cashout.id, "pending_payout", payout_id="po_1")
        ledger.transition_cashout(cashout.id, "paid")
        assert ledger.transition_cashout(cashout.id, "failed", error_message="late") is None
        assert ledger.get_cashout(cashout.id).status == "paid"


class TestPayrollBatches:

    def test_batch_rows_share_payroll_id(self, ledger) -> None:
        rows = ledger.create_payroll_batch(
            EMPLOYER, [(WALLET, Decimal("10")), (OTHER_WALLET, Decimal("20"))]
        )
        assert len(rows) == 2
        assert len({row.payroll_id for row in rows}) == 1
        assert all(row.status == PayrollStatus.PENDING.value for row in rows)

    def test_complete_sets_every_row(self, ledger) -> None:
        rows = ledger.create_payroll_batch(
            EMPLOYER, [(WALLET, Decimal("10")), (OTHER_WALLET, Decimal("20"))]
        )
        completed = ledger.complete_payroll_batch(rows[0].payroll_id, TX_HASH, 7)
        assert all(row.status == "completed" for row in completed)
        assert all(row.tx_hash == TX_HASH and row.block_number == 7 for row in completed)

    def test_tx_hash_held_by_another_batch_blocks_completion(self, ledger) -> None:
        first = ledger.create_payroll_batch(EMPLOYER, [(WALLET, Decimal("10"))])
        second = ledger.create_payroll_batch(EMPLOYER, [(WALLET, Decimal("10"))])
        ledger.complete_payroll_batch(first[0].payroll_id, TX_HASH, 7)

        rows = ledger.complete_payroll_batch(second[0].payroll_id, TX_HASH, 7)

        assert all(row.status == "pending" and row.tx_hash is None for row in rows)
        assert ledger.payroll_ids_for_tx_hash(TX_HASH.upper().replace("0X", "0x")) == [first[0].payroll_id]

    def test_annotate_keeps_rows_pending(self, ledger) -> None:
        rows = ledger.create_payroll_batch(EMPLOYER, [(WALLET, Decimal("10"))])
        ledger.annotate_payroll_batch(rows[0].payroll_id, "Missing transfers")
        row = ledger.get_payroll_batch(rows[0].payroll_id)[0]
        assert row.status == "pending"
        assert row.error_message == "Missing transfers"

    def test_history_by_employee(self, ledger) -> None:
        ledger.create_payroll_batch(EMPLOYER, [(WALLET, Decimal("10"))])
        ledger.create_payroll_batch(EMPLOYER, [(WALLET, Decimal("11"))])
        assert ledger.list_payrolls_by_employee(WALLET).total == 2
        assert ledger.list_payrolls_by_employer(EMPLOYER).total == 2


class TestRateCache:

    def test_fresh_and_expired_snapshots(self, db_engine) -> None:
        now = [datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)]
        store = LedgerStore(sessionmaker(bind=db_engine), clock=lambda: now[0])

        store.save_rate("usdt", "eur", Decimal("0.92000000"), "coingecko")
        assert store.get_cached_rate("usdt", "eur", 600).rate == Decimal("0.92000000")

        now[0] = now[0] + timedelta(seconds=601)
        assert store.get_cached_rate("usdt", "eur", 600) is None
        assert store.get_latest_rate("usdt", "eur").rate == Decimal("0.92000000")

    def test_no_snapshot(self, ledger) -> None:
        assert ledger.get_latest_rate("usdt", "gbp") is None
