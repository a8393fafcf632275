"""
============================================================================
Stable Bridge - Ledger Store
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: Amounts written as strings, read back via Decimal(str(...))
Traceability: Every mutation logged with correlation_id

LEDGER CONTRACT:
    - Insert-then-read for every created row
    - Conditional transitions: UPDATE ... WHERE id = :id AND status IN (...)
      so "already in or past the target" is detected without locks
    - Point lookups by external reference (charge, payout, inbound tx hash)
    - Duplicate detection on the unique inbound tx hash, including a
      concurrent insert that loses the race on the unique constraint

The store receives a sessionmaker by injection and never branches on the
database backend; the DDL in app.database.schema is dialect-neutral.

============================================================================
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
import logging
import uuid

from sqlalchemy import bindparam, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from services.settlement_models import (
    Cashout,
    CashoutStatus,
    ExchangeRateSnapshot,
    Page,
    Payment,
    PaymentStatus,
    PayrollEntry,
    PayrollStatus,
    PRECISION_RATE,
    quantize,
    parse_timestamp,
)
from services.settlement_state_machine import (
    CASHOUT_MACHINE,
    PAYMENT_MACHINE,
    PAYROLL_MACHINE,
    permitted_sources,
)

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

PAYMENT_COLUMNS = (
    "id", "payment_intent_id", "wallet_address", "amount_fiat", "fiat_currency",
    "amount_token", "exchange_rate", "tx_hash", "block_number", "status",
    "error_message", "created_at", "updated_at", "completed_at",
)

CASHOUT_COLUMNS = (
    "id", "wallet_address", "amount_token", "fiat_currency", "fiat_amount",
    "exchange_rate", "tx_hash_onchain", "payout_id", "bank_account_ref",
    "sub_account_ref", "status", "error_message", "created_at", "updated_at",
    "completed_at",
)

PAYROLL_COLUMNS = (
    "id", "payroll_id", "employer_address", "employee_address", "amount_token",
    "tx_hash", "block_number", "status", "error_message", "created_at",
    "updated_at",
)

# Columns a transition may set alongside status
PAYMENT_MUTABLE = {"tx_hash", "block_number", "error_message", "completed_at"}
CASHOUT_MUTABLE = {"payout_id", "error_message", "completed_at"}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width ISO timestamps sort lexicographically on every backend."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dec(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _bind(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return _ts(value)
    return value


def _clamp_page(page: int, limit: int) -> Tuple[int, int]:
    page = max(int(page or 1), 1)
    limit = int(limit or DEFAULT_PAGE_SIZE)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)
    return page, limit


# =============================================================================
# LedgerStore Class
# =============================================================================

class LedgerStore:
    """
    Durable record of Payment, Cashout, PayrollEntry and rate snapshots.

    Reliability Level: L6 Critical (Sovereign Tier)
    Input Constraints: session_factory bound to a schema-initialized engine
    Side Effects: Database reads/writes, one transaction per operation
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self._session_factory = session_factory
        self._clock = clock

    # ------------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------------

    def _fetch_one(self, sql: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._session_factory() as session:
            row = session.execute(text(sql), params).mappings().fetchone()
            return dict(row) if row is not None else None

    def _fetch_all(self, sql: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._session_factory() as session:
            rows = session.execute(text(sql), params).mappings().fetchall()
            return [dict(row) for row in rows]

    def _count(self, sql: str, params: Dict[str, Any]) -> int:
        with self._session_factory() as session:
            return int(session.execute(text(sql), params).scalar() or 0)

    def _conditional_update(
        self,
        table: str,
        row_id: str,
        target_status: str,
        allowed_from: Sequence[str],
        fields: Dict[str, Any],
        mutable: Iterable[str],
    ) -> bool:
        """
        Apply status + fields only if the row is still in an allowed state.

        Returns:
            True when exactly this call performed the transition.
        """
        unknown = set(fields) - set(mutable)
        if unknown:
            raise ValueError(f"Columns not mutable on {table}: {sorted(unknown)}")
        if not allowed_from:
            return False

        assignments = ["status = :target_status", "updated_at = :updated_at"]
        params: Dict[str, Any] = {
            "row_id": row_id,
            "target_status": target_status,
            "updated_at": _ts(self._clock()),
            "allowed": list(allowed_from),
        }
        for column, value in fields.items():
            assignments.append(f"{column} = :{column}")
            params[column] = _bind(value)

        stmt = text(
            f"UPDATE {table} SET {', '.join(assignments)} "
            f"WHERE id = :row_id AND status IN :allowed"
        ).bindparams(bindparam("allowed", expanding=True))

        with self._session_factory() as session:
            result = session.execute(stmt, params)
            session.commit()
            return result.rowcount == 1

    # ------------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------------

    def create_payment(
        self,
        payment_intent_id: str,
        wallet_address: str,
        amount_fiat: Decimal,
        fiat_currency: str,
        amount_token: Decimal,
        exchange_rate: Decimal,
        correlation_id: Optional[str] = None,
    ) -> Payment:
        """Insert a pending Payment keyed by the external charge reference."""
        now = _ts(self._clock())
        payment_id = str(uuid.uuid4())

        with self._session_factory() as session:
            session.execute(text("""
                INSERT INTO payments (
                    id, payment_intent_id, wallet_address, amount_fiat,
                    fiat_currency, amount_token, exchange_rate, status,
                    created_at, updated_at
                ) VALUES (
                    :id, :payment_intent_id, :wallet_address, :amount_fiat,
                    :fiat_currency, :amount_token, :exchange_rate, :status,
                    :created_at, :updated_at
                )
            """), {
                "id": payment_id,
                "payment_intent_id": payment_intent_id,
                "wallet_address": wallet_address.lower(),
                "amount_fiat": _dec(amount_fiat),
                "fiat_currency": fiat_currency.lower(),
                "amount_token": _dec(amount_token),
                "exchange_rate": _dec(exchange_rate),
                "status": PaymentStatus.PENDING.value,
                "created_at": now,
                "updated_at": now,
            })
            session.commit()

        logger.info(
            f"[LEDGER] Payment created | id={payment_id} | "
            f"payment_intent_id={payment_intent_id} | amount_token={amount_token} | "
            f"correlation_id={correlation_id}"
        )
        return self.get_payment(payment_id)

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        row = self._fetch_one(
            f"SELECT {', '.join(PAYMENT_COLUMNS)} FROM payments WHERE id = :id",
            {"id": payment_id},
        )
        return Payment.from_row(row) if row else None

    def get_payment_by_ref(self, payment_intent_id: str) -> Optional[Payment]:
        row = self._fetch_one(
            f"SELECT {', '.join(PAYMENT_COLUMNS)} FROM payments "
            f"WHERE payment_intent_id = :ref",
            {"ref": payment_intent_id},
        )
        return Payment.from_row(row) if row else None

    def transition_payment(
        self,
        payment_id: str,
        target_status: str,
        allowed_from: Optional[Sequence[str]] = None,
        correlation_id: Optional[str] = None,
        machine: str = PAYMENT_MACHINE,
        **fields: Any,
    ) -> Optional[Payment]:
        """
        Conditionally move a Payment to target_status.

        allowed_from narrows the sources the machine's table allows; it
        can never widen them.

        Returns:
            The re-read Payment if this call performed the transition,
            None if the row was not in an allowed state.
        """
        allowed_from = permitted_sources(machine, target_status, allowed_from, correlation_id)

        applied = self._conditional_update(
            "payments", payment_id, target_status, allowed_from, fields, PAYMENT_MUTABLE
        )
        if not applied:
            logger.info(
                f"[LEDGER] Payment transition not applied | id={payment_id} | "
                f"target={target_status} | allowed_from={list(allowed_from)} | "
                f"correlation_id={correlation_id}"
            )
            return None

        logger.info(
            f"[LEDGER] Payment transitioned | id={payment_id} | "
            f"status={target_status} | correlation_id={correlation_id}"
        )
        return self.get_payment(payment_id)

    def complete_payment(
        self,
        payment_id: str,
        tx_hash: str,
        block_number: Optional[int],
        allowed_from: Optional[Sequence[str]] = None,
        correlation_id: Optional[str] = None,
        machine: str = PAYMENT_MACHINE,
    ) -> Optional[Payment]:
        """
        Record the settled transfer in one atomic update.

        tx hash, block number, completed status and completion time are
        written together so the idempotency gate never sees a partial write.
        Operator reconciliation passes the payment_reconcile machine.
        """
        return self.transition_payment(
            payment_id,
            PaymentStatus.COMPLETED.value,
            allowed_from=allowed_from,
            correlation_id=correlation_id,
            machine=machine,
            tx_hash=tx_hash,
            block_number=block_number,
            completed_at=self._clock(),
            error_message=None,
        )

    def annotate_payment(
        self,
        payment_id: str,
        error_message: str,
        correlation_id: Optional[str] = None,
    ) -> Optional[Payment]:
        """Overwrite error_message only. Status and tx hash are left as they are."""
        with self._session_factory() as session:
            session.execute(text("""
                UPDATE payments
                SET error_message = :error_message, updated_at = :updated_at
                WHERE id = :id
            """), {
                "error_message": error_message,
                "updated_at": _ts(self._clock()),
                "id": payment_id,
            })
            session.commit()

        logger.warning(
            f"[LEDGER] Payment annotated | id={payment_id} | "
            f"error={error_message} | correlation_id={correlation_id}"
        )
        return self.get_payment(payment_id)

    def list_payments_by_wallet(
        self,
        wallet_address: str,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page:
        page, limit = _clamp_page(page, limit)
        params = {
            "wallet": wallet_address.lower(),
            "limit": limit,
            "offset": (page - 1) * limit,
        }
        rows = self._fetch_all(
            f"SELECT {', '.join(PAYMENT_COLUMNS)} FROM payments "
            f"WHERE wallet_address = :wallet "
            f"ORDER BY created_at DESC LIMIT :limit OFFSET :offset",
            params,
        )
        total = self._count(
            "SELECT COUNT(*) FROM payments WHERE wallet_address = :wallet",
            {"wallet": params["wallet"]},
        )
        return Page([Payment.from_row(r) for r in rows], total, page, limit)

    # ------------------------------------------------------------------------
    # Cashouts
    # ------------------------------------------------------------------------

    def insert_cashout_if_absent(
        self,
        wallet_address: str,
        amount_token: Decimal,
        fiat_currency: str,
        fiat_amount: Decimal,
        exchange_rate: Decimal,
        tx_hash_onchain: str,
        bank_account_ref: str,
        sub_account_ref: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Tuple[Cashout, bool]:
        """
        Insert a pending_transfer Cashout unless the inbound tx hash is known.

        Returns:
            (cashout, created). created is False when a row for the same
            inbound transaction already existed or won a concurrent insert.
        """
        tx_hash = tx_hash_onchain.lower()
        existing = self.get_cashout_by_tx_hash(tx_hash)
        if existing is not None:
            return existing, False

        now = _ts(self._clock())
        cashout_id = str(uuid.uuid4())

        with self._session_factory() as session:
            try:
                session.execute(text("""
                    INSERT INTO cashouts (
                        id, wallet_address, amount_token, fiat_currency,
                        fiat_amount, exchange_rate, tx_hash_onchain,
                        bank_account_ref, sub_account_ref, status,
                        created_at, updated_at
                    ) VALUES (
                        :id, :wallet_address, :amount_token, :fiat_currency,
                        :fiat_amount, :exchange_rate, :tx_hash_onchain,
                        :bank_account_ref, :sub_account_ref, :status,
                        :created_at, :updated_at
                    )
                """), {
                    "id": cashout_id,
                    "wallet_address": wallet_address.lower(),
                    "amount_token": _dec(amount_token),
                    "fiat_currency": fiat_currency.lower(),
                    "fiat_amount": _dec(fiat_amount),
                    "exchange_rate": _dec(exchange_rate),
                    "tx_hash_onchain": tx_hash,
                    "bank_account_ref": bank_account_ref,
                    "sub_account_ref": sub_account_ref,
                    "status": CashoutStatus.PENDING_TRANSFER.value,
                    "created_at": now,
                    "updated_at": now,
                })
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.warning(
                    f"[LEDGER] Concurrent cashout insert lost unique race | "
                    f"tx_hash={tx_hash} | correlation_id={correlation_id}"
                )
                winner = self.get_cashout_by_tx_hash(tx_hash)
                if winner is None:
                    raise
                return winner, False

        logger.info(
            f"[LEDGER] Cashout created | id={cashout_id} | tx_hash={tx_hash} | "
            f"amount_token={amount_token} | correlation_id={correlation_id}"
        )
        return self.get_cashout(cashout_id), True

    def get_cashout(self, cashout_id: str) -> Optional[Cashout]:
        row = self._fetch_one(
            f"SELECT {', '.join(CASHOUT_COLUMNS)} FROM cashouts WHERE id = :id",
            {"id": cashout_id},
        )
        return Cashout.from_row(row) if row else None

    def get_cashout_by_tx_hash(self, tx_hash: str) -> Optional[Cashout]:
        row = self._fetch_one(
            f"SELECT {', '.join(CASHOUT_COLUMNS)} FROM cashouts "
            f"WHERE tx_hash_onchain = :tx_hash",
            {"tx_hash": tx_hash.lower()},
        )
        return Cashout.from_row(row) if row else None

    def get_cashout_by_payout_id(self, payout_id: str) -> Optional[Cashout]:
        row = self._fetch_one(
            f"SELECT {', '.join(CASHOUT_COLUMNS)} FROM cashouts "
            f"WHERE payout_id = :payout_id",
            {"payout_id": payout_id},
        )
        return Cashout.from_row(row) if row else None

    def transition_cashout(
        self,
        cashout_id: str,
        target_status: str,
        allowed_from: Optional[Sequence[str]] = None,
        correlation_id: Optional[str] = None,
        **fields: Any,
    ) -> Optional[Cashout]:
        """Conditionally move a Cashout to target_status (see transition_payment)."""
        allowed_from = permitted_sources(CASHOUT_MACHINE, target_status, allowed_from, correlation_id)

        applied = self._conditional_update(
            "cashouts", cashout_id, target_status, allowed_from, fields, CASHOUT_MUTABLE
        )
        if not applied:
            logger.info(
                f"[LEDGER] Cashout transition not applied | id={cashout_id} | "
                f"target={target_status} | correlation_id={correlation_id}"
            )
            return None

        logger.info(
            f"[LEDGER] Cashout transitioned | id={cashout_id} | "
            f"status={target_status} | correlation_id={correlation_id}"
        )
        return self.get_cashout(cashout_id)

    def list_cashouts_by_wallet(
        self,
        wallet_address: str,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page:
        page, limit = _clamp_page(page, limit)
        wallet = wallet_address.lower()
        rows = self._fetch_all(
            f"SELECT {', '.join(CASHOUT_COLUMNS)} FROM cashouts "
            f"WHERE wallet_address = :wallet "
            f"ORDER BY created_at DESC LIMIT :limit OFFSET :offset",
            {"wallet": wallet, "limit": limit, "offset": (page - 1) * limit},
        )
        total = self._count(
            "SELECT COUNT(*) FROM cashouts WHERE wallet_address = :wallet",
            {"wallet": wallet},
        )
        return Page([Cashout.from_row(r) for r in rows], total, page, limit)

    # ------------------------------------------------------------------------
    # Payroll batches
    # ------------------------------------------------------------------------

    def create_payroll_batch(
        self,
        employer_address: str,
        entries: Sequence[Tuple[str, Decimal]],
        correlation_id: Optional[str] = None,
    ) -> List[PayrollEntry]:
        """Insert every recipient row of a new batch in one transaction."""
        payroll_id = str(uuid.uuid4())
        now = _ts(self._clock())

        with self._session_factory() as session:
            for employee_address, amount in entries:
                session.execute(text("""
                    INSERT INTO payrolls (
                        id, payroll_id, employer_address, employee_address,
                        amount_token, status, created_at, updated_at
                    ) VALUES (
                        :id, :payroll_id, :employer_address, :employee_address,
                        :amount_token, :status, :created_at, :updated_at
                    )
                """), {
                    "id": str(uuid.uuid4()),
                    "payroll_id": payroll_id,
                    "employer_address": employer_address.lower(),
                    "employee_address": employee_address.lower(),
                    "amount_token": _dec(amount),
                    "status": PayrollStatus.PENDING.value,
                    "created_at": now,
                    "updated_at": now,
                })
            session.commit()

        logger.info(
            f"[LEDGER] Payroll batch created | payroll_id={payroll_id} | "
            f"entries={len(entries)} | correlation_id={correlation_id}"
        )
        return self.get_payroll_batch(payroll_id)

    def get_payroll_batch(self, payroll_id: str) -> List[PayrollEntry]:
        rows = self._fetch_all(
            f"SELECT {', '.join(PAYROLL_COLUMNS)} FROM payrolls "
            f"WHERE payroll_id = :payroll_id ORDER BY employee_address",
            {"payroll_id": payroll_id},
        )
        return [PayrollEntry.from_row(r) for r in rows]

    def payroll_ids_for_tx_hash(self, tx_hash: str) -> List[str]:
        """Batches already settled by tx_hash (normally zero or one)."""
        rows = self._fetch_all(
            "SELECT DISTINCT payroll_id FROM payrolls WHERE tx_hash = :tx_hash",
            {"tx_hash": tx_hash.lower()},
        )
        return [row["payroll_id"] for row in rows]

    def complete_payroll_batch(
        self,
        payroll_id: str,
        tx_hash: str,
        block_number: Optional[int],
        correlation_id: Optional[str] = None,
    ) -> List[PayrollEntry]:
        """
        Mark every row of the batch completed in a single statement.

        All rows get the same tx hash and block number, or none do. Nothing
        is written while another batch already holds the tx hash.
        """
        stmt = text("""
            UPDATE payrolls
            SET status = :status,
                tx_hash = :tx_hash,
                block_number = :block_number,
                error_message = NULL,
                updated_at = :updated_at
            WHERE payroll_id = :payroll_id AND status IN :allowed
              AND NOT EXISTS (
                  SELECT 1 FROM payrolls AS other
                  WHERE other.tx_hash = :tx_hash AND other.payroll_id <> :payroll_id
              )
        """).bindparams(bindparam("allowed", expanding=True))

        with self._session_factory() as session:
            result = session.execute(stmt, {
                "status": PayrollStatus.COMPLETED.value,
                "tx_hash": tx_hash.lower(),
                "block_number": block_number,
                "updated_at": _ts(self._clock()),
                "payroll_id": payroll_id,
                "allowed": permitted_sources(PAYROLL_MACHINE, PayrollStatus.COMPLETED.value),
            })
            session.commit()
            updated = result.rowcount

        logger.info(
            f"[LEDGER] Payroll batch completed | payroll_id={payroll_id} | "
            f"rows={updated} | tx_hash={tx_hash} | correlation_id={correlation_id}"
        )
        return self.get_payroll_batch(payroll_id)

    def annotate_payroll_batch(
        self,
        payroll_id: str,
        error_message: str,
        correlation_id: Optional[str] = None,
    ) -> None:
        """Record a reconciliation failure on every unsettled row, status unchanged."""
        with self._session_factory() as session:
            session.execute(text("""
                UPDATE payrolls
                SET error_message = :error_message, updated_at = :updated_at
                WHERE payroll_id = :payroll_id AND status = :status
            """), {
                "error_message": error_message,
                "updated_at": _ts(self._clock()),
                "payroll_id": payroll_id,
                "status": PayrollStatus.PENDING.value,
            })
            session.commit()

        logger.warning(
            f"[LEDGER] Payroll batch annotated | payroll_id={payroll_id} | "
            f"error={error_message} | correlation_id={correlation_id}"
        )

    def list_payrolls_by_employer(
        self,
        employer_address: str,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page:
        return self._list_payrolls("employer_address", employer_address, page, limit)

    def list_payrolls_by_employee(
        self,
        employee_address: str,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page:
        return self._list_payrolls("employee_address", employee_address, page, limit)

    def _list_payrolls(self, column: str, address: str, page: int, limit: int) -> Page:
        page, limit = _clamp_page(page, limit)
        address = address.lower()
        rows = self._fetch_all(
            f"SELECT {', '.join(PAYROLL_COLUMNS)} FROM payrolls "
            f"WHERE {column} = :address "
            f"ORDER BY created_at DESC LIMIT :limit OFFSET :offset",
            {"address": address, "limit": limit, "offset": (page - 1) * limit},
        )
        total = self._count(
            f"SELECT COUNT(*) FROM payrolls WHERE {column} = :address",
            {"address": address},
        )
        return Page([PayrollEntry.from_row(r) for r in rows], total, page, limit)

    # ------------------------------------------------------------------------
    # Exchange-rate cache
    # ------------------------------------------------------------------------

    def get_cached_rate(
        self,
        from_currency: str,
        to_currency: str,
        max_age_seconds: int,
    ) -> Optional[ExchangeRateSnapshot]:
        """Newest snapshot younger than max_age_seconds, if any."""
        cutoff = self._clock() - timedelta(seconds=max_age_seconds)
        row = self._fetch_one("""
            SELECT from_currency, to_currency, rate, source, timestamp
            FROM exchange_rates
            WHERE from_currency = :from_currency AND to_currency = :to_currency
              AND timestamp > :cutoff
            ORDER BY timestamp DESC
            LIMIT 1
        """, {
            "from_currency": from_currency.lower(),
            "to_currency": to_currency.lower(),
            "cutoff": _ts(cutoff),
        })
        return self._snapshot(row)

    def get_latest_rate(
        self,
        from_currency: str,
        to_currency: str,
    ) -> Optional[ExchangeRateSnapshot]:
        """Newest snapshot of any age, if any."""
        row = self._fetch_one("""
            SELECT from_currency, to_currency, rate, source, timestamp
            FROM exchange_rates
            WHERE from_currency = :from_currency AND to_currency = :to_currency
            ORDER BY timestamp DESC
            LIMIT 1
        """, {
            "from_currency": from_currency.lower(),
            "to_currency": to_currency.lower(),
        })
        return self._snapshot(row)

    def save_rate(
        self,
        from_currency: str,
        to_currency: str,
        rate: Decimal,
        source: str,
    ) -> ExchangeRateSnapshot:
        timestamp = self._clock()
        with self._session_factory() as session:
            session.execute(text("""
                INSERT INTO exchange_rates (id, from_currency, to_currency, rate, source, timestamp)
                VALUES (:id, :from_currency, :to_currency, :rate, :source, :timestamp)
            """), {
                "id": str(uuid.uuid4()),
                "from_currency": from_currency.lower(),
                "to_currency": to_currency.lower(),
                "rate": _dec(rate),
                "source": source,
                "timestamp": _ts(timestamp),
            })
            session.commit()
        return ExchangeRateSnapshot(
            from_currency=from_currency.lower(),
            to_currency=to_currency.lower(),
            rate=rate,
            source=source,
            timestamp=timestamp,
        )

    @staticmethod
    def _snapshot(row: Optional[Dict[str, Any]]) -> Optional[ExchangeRateSnapshot]:
        if row is None:
            return None
        return ExchangeRateSnapshot(
            from_currency=row["from_currency"],
            to_currency=row["to_currency"],
            rate=quantize(row["rate"], PRECISION_RATE),
            source=row["source"],
            timestamp=parse_timestamp(row["timestamp"]),
        )
