"""
============================================================================
Project Stable Bridge v1.0.0
Shared Test Fixtures - In-Memory Ledger & Collaborator Fakes
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Side Effects: None (in-memory SQLite, no network)

The fakes record every call so tests can assert on side effects
(number of on-chain transfers, payouts, idempotency keys).

============================================================================
"""

import itertools
import os
import sys
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from web3 import Web3

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from app.auth.security import construct_event
from app.auth.wallet_signature import build_cashout_message
from app.chain.client import SignedTransfer
from app.chain.verifier import ChainVerifier, TRANSFER_TOPIC
from app.database.schema import create_schema
from services.bridge_config import BridgeConfig
from services.ledger_store import LedgerStore
from services.settlement_engine import SettlementEngine
from services.settlement_errors import ExternalProcessorError


# ============================================================================
# CONSTANTS
# ============================================================================

TOKEN_ADDRESS = "0x0000000000000000000000000000000000001000"
TOKEN_DECIMALS = 18
WEBHOOK_SECRET = "whsec_test_secret"

CUSTODY_ACCOUNT = Account.from_key("0x" + "11" * 32)
USER_ACCOUNT = Account.from_key("0x" + "22" * 32)
OTHER_ACCOUNT = Account.from_key("0x" + "33" * 32)

EMPLOYEE_A = "0x" + "a1" * 20
EMPLOYEE_B = "0x" + "b2" * 20
EMPLOYEE_C = "0x" + "c3" * 20


def tx_hash_for(seed: int) -> str:
    return "0x" + format(seed, "064x")


def sign_message(account: Any, message: str) -> str:
    signed = account.sign_message(encode_defunct(text=message))
    return Web3.to_hex(signed.signature)


def signed_cashout(account: Any, amount: str, timestamp: str = "2024-01-01T00:00:00Z") -> Tuple[str, str]:
    """(message, signature) authorizing a cashout of amount by account."""
    message = build_cashout_message(amount, timestamp, account.address)
    return message, sign_message(account, message)


# ============================================================================
# CHAIN FAKE
# ============================================================================

class FakeChainClient:
    """
    In-memory token chain.

    Receipts are stored in the normalized dict format produced by
    normalize_receipt, so the real ChainVerifier decodes them.

    transfer_failures are raised by a send before the node records the
    transaction; lost_responses are raised after it was recorded.
    """

    def __init__(self, custody: Any = CUSTODY_ACCOUNT, decimals: int = TOKEN_DECIMALS):
        self._custody = custody
        self.decimals = decimals
        self.balances: Dict[str, Decimal] = {custody.address.lower(): Decimal("1000000")}
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.transactions: Dict[str, Dict[str, Any]] = {}

        # transfer_calls: one entry per signed transfer
        # broadcasts: (tx_hash, nonce) for every send of signed bytes
        self.transfer_calls: List[Tuple[str, Decimal]] = []
        self.broadcasts: List[Tuple[str, int]] = []
        self.prepare_failures: List[Exception] = []
        self.transfer_failures: List[Exception] = []
        self.lost_responses: List[Exception] = []
        self.receipt_status = 1
        self.receipt_missing = False
        self.balance_error: Optional[Exception] = None
        self._hashes = itertools.count(0xC0FFEE)
        self._nonces = itertools.count(0)

    @property
    def custody_address(self) -> str:
        return self._custody.address

    def token_decimals(self) -> int:
        return self.decimals

    def balance_of(self, address: str) -> Decimal:
        if self.balance_error is not None:
            raise self.balance_error
        return self.balances.get(address.lower(), Decimal("0"))

    def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return self.receipts.get(tx_hash.lower())

    def get_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return self.transactions.get(tx_hash.lower())

    def add_transfers(
        self,
        tx_hash: str,
        transfers: List[Tuple[str, str, Any]],
        status: int = 1,
        sender: Optional[str] = None,
        block_number: int = 100,
    ) -> Dict[str, Any]:
        """Register a mined transaction emitting the given (from, to, amount) Transfers."""
        logs = []
        for index, (source, destination, amount) in enumerate(transfers):
            raw = int(Decimal(str(amount)).scaleb(self.decimals))
            logs.append({
                "address": TOKEN_ADDRESS,
                "topics": [
                    TRANSFER_TOPIC,
                    "0x" + "0" * 24 + source[2:].lower(),
                    "0x" + "0" * 24 + destination[2:].lower(),
                ],
                "data": "0x" + format(raw, "064x"),
                "log_index": index,
            })
        tx_from = sender or (transfers[0][0] if transfers else self.custody_address)
        receipt = {
            "transaction_hash": tx_hash.lower(),
            "status": status,
            "block_number": block_number,
            "from": tx_from,
            "to": TOKEN_ADDRESS,
            "logs": logs,
        }
        self.receipts[tx_hash.lower()] = receipt
        self.transactions[tx_hash.lower()] = {
            "hash": tx_hash.lower(),
            "from": tx_from,
            "to": TOKEN_ADDRESS,
            "block_number": block_number,
        }
        return receipt

    def prepare_transfer(self, to_address: str, amount: Decimal) -> SignedTransfer:
        self.transfer_calls.append((to_address, amount))
        if self.prepare_failures:
            raise self.prepare_failures.pop(0)
        nonce = next(self._nonces)
        return SignedTransfer(
            tx_hash=tx_hash_for(next(self._hashes)),
            raw_transaction=b"signed:" + str(nonce).encode(),
            nonce=nonce,
            to_address=to_address,
            amount=amount,
        )

    def broadcast_transfer(self, transfer: SignedTransfer) -> str:
        self.broadcasts.append((transfer.tx_hash, transfer.nonce))
        if self.transfer_failures:
            raise self.transfer_failures.pop(0)
        # The node keeps one transaction per hash
        if transfer.tx_hash.lower() not in self.receipts:
            self.add_transfers(
                transfer.tx_hash,
                [(self.custody_address, transfer.to_address, transfer.amount)],
                status=self.receipt_status,
                block_number=200,
            )
        if self.lost_responses:
            raise self.lost_responses.pop(0)
        return transfer.tx_hash

    def wait_for_receipt(self, tx_hash: str, timeout: int = 120) -> Optional[Dict[str, Any]]:
        if self.receipt_missing:
            return None
        return self.receipts.get(tx_hash.lower())


# ============================================================================
# PROCESSOR FAKE
# ============================================================================

class FakeGateway:
    """Payment processor double with call recording and scripted failures."""

    def __init__(self, webhook_secret: str = WEBHOOK_SECRET):
        self.webhook_secret = webhook_secret
        self.intents: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.payout_failures: List[Exception] = []
        self.transfer_failures: List[Exception] = []
        self.intent_failure: Optional[Exception] = None
        self.retrieve_failure: Optional[Exception] = None
        self.available_balance = Decimal("1000000.00")
        self._ids = itertools.count(1)

    def calls_to(self, name: str) -> List[Dict[str, Any]]:
        return [kwargs for call, kwargs in self.calls if call == name]

    def create_payment_intent(self, amount, currency, metadata=None, idempotency_key=None):
        self.calls.append(("create_payment_intent", {
            "amount": amount, "currency": currency,
            "metadata": metadata, "idempotency_key": idempotency_key,
        }))
        if self.intent_failure is not None:
            raise self.intent_failure
        intent_id = f"pi_test_{next(self._ids)}"
        intent = {
            "id": intent_id,
            "client_secret": f"{intent_id}_secret",
            "status": "requires_payment_method",
            "last_payment_error": None,
        }
        self.intents[intent_id] = intent
        return intent

    def retrieve_payment_intent(self, payment_intent_id):
        self.calls.append(("retrieve_payment_intent", {"id": payment_intent_id}))
        if self.retrieve_failure is not None:
            raise self.retrieve_failure
        return self.intents[payment_intent_id]

    def create_payout(self, amount, currency, destination=None, method="standard",
                      metadata=None, idempotency_key=None, sub_account=None):
        self.calls.append(("create_payout", {
            "amount": amount, "currency": currency, "destination": destination,
            "idempotency_key": idempotency_key, "sub_account": sub_account,
        }))
        if self.payout_failures:
            raise self.payout_failures.pop(0)
        return {"id": f"po_test_{next(self._ids)}", "status": "pending"}

    def transfer_to_sub_account(self, amount, currency, destination_account,
                                description=None, metadata=None, idempotency_key=None):
        self.calls.append(("transfer_to_sub_account", {
            "amount": amount, "currency": currency,
            "destination": destination_account, "idempotency_key": idempotency_key,
        }))
        if self.transfer_failures:
            raise self.transfer_failures.pop(0)
        return {"id": f"tr_test_{next(self._ids)}"}

    def get_available_balance(self, currency, sub_account=None):
        self.calls.append(("get_available_balance", {"currency": currency, "sub_account": sub_account}))
        return self.available_balance

    def verify_event(self, payload, signature_header):
        return construct_event(payload, signature_header, self.webhook_secret)


def processor_error(message: str = "Insufficient funds", code: str = "balance_insufficient") -> ExternalProcessorError:
    return ExternalProcessorError(f"Stripe error: {message}", processor_code=code, http_status=400)


# ============================================================================
# RATE FAKE
# ============================================================================

class FakeRates:
    """Rate provider returning fiat per token, or raising on demand."""

    def __init__(self, rate: Decimal = Decimal("1")):
        self.rate = rate
        self.error: Optional[Exception] = None
        self.calls: List[Tuple[str, str]] = []

    def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        self.calls.append((from_currency, to_currency))
        if self.error is not None:
            raise self.error
        return self.rate


# ============================================================================
# BUILDERS (usable outside fixtures, e.g. inside Hypothesis examples)
# ============================================================================

def make_config(**overrides: Any) -> BridgeConfig:
    values: Dict[str, Any] = {
        "database_url": "sqlite://",
        "token_contract_address": TOKEN_ADDRESS,
        "custody_private_key": "0x" + "11" * 32,
        "processor_secret_key": "sk_test_123",
        "processor_webhook_secret": WEBHOOK_SECRET,
        "max_onramp_token_amount": Decimal("10000"),
        "transfer_backoff_seconds": 0,
        "subaccount_settle_delay_seconds": 0,
        "operator_api_token": "operator-token",
    }
    values.update(overrides)
    return BridgeConfig(**values)


def make_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_schema(engine)
    return engine


def make_stack(**config_overrides: Any) -> SimpleNamespace:
    """Fresh ledger, fakes and SettlementEngine wired together."""
    db = make_engine()
    stack = SimpleNamespace(
        config=make_config(**config_overrides),
        db=db,
        ledger=LedgerStore(sessionmaker(bind=db, autoflush=False)),
        chain=FakeChainClient(),
        gateway=FakeGateway(),
        rates=FakeRates(),
        sleeps=[],
    )
    stack.engine = SettlementEngine(
        stack.config,
        stack.ledger,
        stack.chain,
        ChainVerifier(stack.chain, TOKEN_ADDRESS),
        stack.gateway,
        stack.rates,
        sleep=stack.sleeps.append,
    )
    return stack


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def bridge_config() -> BridgeConfig:
    return make_config()


@pytest.fixture
def db_engine():
    engine = make_engine()
    yield engine
    engine.dispose()


@pytest.fixture
def ledger(db_engine) -> LedgerStore:
    return LedgerStore(sessionmaker(bind=db_engine, autoflush=False))


@pytest.fixture
def chain() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def rates() -> FakeRates:
    return FakeRates()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def settlement_engine(bridge_config, ledger, chain, gateway, rates, sleeps) -> SettlementEngine:
    verifier = ChainVerifier(chain, TOKEN_ADDRESS)
    return SettlementEngine(
        bridge_config, ledger, chain, verifier, gateway, rates, sleep=sleeps.append
    )
