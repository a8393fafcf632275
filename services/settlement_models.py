"""
============================================================================
Stable Bridge - Ledger Data Models
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: All financial values use decimal.Decimal with ROUND_HALF_EVEN
Traceability: Every record carries its natural external key

LEDGER ENTITIES:
    - Payment: one fiat -> token conversion (on-ramp)
    - Cashout: one token -> fiat conversion (off-ramp)
    - PayrollEntry: one recipient row of a batch disbursement
    - ExchangeRateSnapshot: cached (from, to) -> rate fact

PRECISION:
    - Fiat: 2 decimal places
    - Token: 6 decimal places
    - Rate: 8 decimal places

============================================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN
from enum import Enum
from typing import Any, Dict, List, Optional
import math


# =============================================================================
# Constants
# =============================================================================

PRECISION_FIAT = Decimal("0.01")
PRECISION_TOKEN = Decimal("0.000001")
PRECISION_RATE = Decimal("0.00000001")

DIRECTION_ONRAMP = "onramp"
DIRECTION_OFFRAMP = "offramp"
DIRECTION_BATCH = "batch"


# =============================================================================
# Enums
# =============================================================================

class PaymentStatus(Enum):
    """
    On-ramp settlement states.

    pending -> processing -> completed
    failed / canceled reachable from pending or processing
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


class CashoutStatus(Enum):
    """
    Off-ramp settlement states.

    pending_transfer -> pending_payout -> in_transit -> paid
    failed / canceled reachable from any non-terminal state
    """
    PENDING_TRANSFER = "pending_transfer"
    PENDING_PAYOUT = "pending_payout"
    IN_TRANSIT = "in_transit"
    PAID = "paid"
    FAILED = "failed"
    CANCELED = "canceled"


class PayrollStatus(Enum):
    """Batch disbursement row states."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


# =============================================================================
# Helpers
# =============================================================================

def quantize(value: Any, precision: Decimal) -> Optional[Decimal]:
    """Convert a stored value back to Decimal at ledger precision."""
    if value is None:
        return None
    return Decimal(str(value)).quantize(precision, rounding=ROUND_HALF_EVEN)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept datetime objects (PostgreSQL) or ISO strings (SQLite)."""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _str(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _plain(value: Any) -> Any:
    """Decimals become strings so JSON encoders never see a float."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


# =============================================================================
# Payment Dataclass
# =============================================================================

@dataclass
class Payment:
    """
    On-ramp ledger entry.

    Invariants:
        - tx_hash is set only once the on-chain transfer succeeded
        - once COMPLETED, tx_hash and status never change
    """

    id: str
    payment_intent_id: str
    wallet_address: str
    amount_fiat: Decimal
    fiat_currency: str
    amount_token: Decimal
    exchange_rate: Decimal
    status: str
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_settled(self) -> bool:
        return self.status == PaymentStatus.COMPLETED.value or self.tx_hash is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "payment_intent_id": self.payment_intent_id,
            "wallet_address": self.wallet_address,
            "amount_fiat": _str(self.amount_fiat),
            "fiat_currency": self.fiat_currency,
            "amount_token": _str(self.amount_token),
            "exchange_rate": _str(self.exchange_rate),
            "status": self.status,
            "tx_hash": self.tx_hash,
            "block_number": self.block_number,
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Payment":
        return cls(
            id=row["id"],
            payment_intent_id=row["payment_intent_id"],
            wallet_address=row["wallet_address"],
            amount_fiat=quantize(row["amount_fiat"], PRECISION_FIAT),
            fiat_currency=row["fiat_currency"],
            amount_token=quantize(row["amount_token"], PRECISION_TOKEN),
            exchange_rate=quantize(row["exchange_rate"], PRECISION_RATE),
            status=row["status"],
            tx_hash=row.get("tx_hash"),
            block_number=int(row["block_number"]) if row.get("block_number") is not None else None,
            error_message=row.get("error_message"),
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
            completed_at=parse_timestamp(row.get("completed_at")),
        )


# =============================================================================
# Cashout Dataclass
# =============================================================================

@dataclass
class Cashout:
    """
    Off-ramp ledger entry.

    Invariant: tx_hash_onchain is unique across all cashouts, so one
    on-chain deposit settles at most once.
    """

    id: str
    wallet_address: str
    amount_token: Decimal
    fiat_currency: str
    fiat_amount: Decimal
    exchange_rate: Decimal
    tx_hash_onchain: str
    bank_account_ref: str
    status: str
    payout_id: Optional[str] = None
    sub_account_ref: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "wallet_address": self.wallet_address,
            "amount_token": _str(self.amount_token),
            "fiat_currency": self.fiat_currency,
            "fiat_amount": _str(self.fiat_amount),
            "exchange_rate": _str(self.exchange_rate),
            "tx_hash_onchain": self.tx_hash_onchain,
            "payout_id": self.payout_id,
            "bank_account_ref": self.bank_account_ref,
            "sub_account_ref": self.sub_account_ref,
            "status": self.status,
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Cashout":
        return cls(
            id=row["id"],
            wallet_address=row["wallet_address"],
            amount_token=quantize(row["amount_token"], PRECISION_TOKEN),
            fiat_currency=row["fiat_currency"],
            fiat_amount=quantize(row["fiat_amount"], PRECISION_FIAT),
            exchange_rate=quantize(row["exchange_rate"], PRECISION_RATE),
            tx_hash_onchain=row["tx_hash_onchain"],
            bank_account_ref=row["bank_account_ref"],
            status=row["status"],
            payout_id=row.get("payout_id"),
            sub_account_ref=row.get("sub_account_ref"),
            error_message=row.get("error_message"),
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
            completed_at=parse_timestamp(row.get("completed_at")),
        )


# =============================================================================
# PayrollEntry Dataclass
# =============================================================================

@dataclass
class PayrollEntry:
    """One recipient of a batch disbursement. Rows share payroll_id."""

    id: str
    payroll_id: str
    employer_address: str
    employee_address: str
    amount_token: Decimal
    status: str
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "payroll_id": self.payroll_id,
            "employer_address": self.employer_address,
            "employee_address": self.employee_address,
            "amount_token": _str(self.amount_token),
            "status": self.status,
            "tx_hash": self.tx_hash,
            "block_number": self.block_number,
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PayrollEntry":
        return cls(
            id=row["id"],
            payroll_id=row["payroll_id"],
            employer_address=row["employer_address"],
            employee_address=row["employee_address"],
            amount_token=quantize(row["amount_token"], PRECISION_TOKEN),
            status=row["status"],
            tx_hash=row.get("tx_hash"),
            block_number=int(row["block_number"]) if row.get("block_number") is not None else None,
            error_message=row.get("error_message"),
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
        )


# =============================================================================
# ExchangeRateSnapshot Dataclass
# =============================================================================

@dataclass(frozen=True)
class ExchangeRateSnapshot:
    """Read-only (from, to) -> rate fact."""

    from_currency: str
    to_currency: str
    rate: Decimal
    source: str
    timestamp: datetime


# =============================================================================
# Result Containers
# =============================================================================

@dataclass
class Page:
    """One page of a history query."""

    items: List[Any]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return int(math.ceil(self.total / float(self.limit)))

    def to_dict(self, key: str) -> Dict[str, Any]:
        return {
            key: [item.to_dict() for item in self.items],
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
            "total_pages": self.total_pages,
        }


@dataclass
class SettlementResult:
    """
    Structured outcome of a settlement operation.

    error_kind is None on success. idempotent_replay marks a call that
    found the work already done and performed no side effects.
    """

    status: str
    error_kind: Optional[str] = None
    detail: Optional[str] = None
    idempotent_replay: bool = False
    payment: Optional[Payment] = None
    cashout: Optional[Cashout] = None
    payroll: Optional[List[PayrollEntry]] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "status": self.status,
            "idempotent_replay": self.idempotent_replay,
        }
        if self.error_kind is not None:
            result["error_kind"] = self.error_kind
        if self.detail is not None:
            result["detail"] = self.detail
        if self.payment is not None:
            result["payment"] = self.payment.to_dict()
        if self.cashout is not None:
            result["cashout"] = self.cashout.to_dict()
        if self.payroll is not None:
            result["payroll"] = [entry.to_dict() for entry in self.payroll]
        if self.data:
            result.update(_plain(self.data))
        return result
