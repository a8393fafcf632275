"""
============================================================================
Project Stable Bridge v1.0.0
Chain Client - Token Contract Access over JSON-RPC
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: RPC URL, token contract address, custody key (for sends)
Side Effects: Network I/O to the chain node; signs and broadcasts transfers

SOVEREIGN MANDATE:
- Custody balance is checked before every outbound transfer
- Receipts and logs are normalized to plain dicts with 0x-hex strings
- A transfer is signed once; only its raw bytes are ever re-sent
- Transient RPC failures are classified, never retried here
  (retry policy belongs to the settlement flow that owns the row)

ERROR CODES:
    - CHN-010: Transfer rejected (permanent)
    - CHN-011: Insufficient custody balance
    - INF-001: Transient RPC failure

============================================================================
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound as Web3TransactionNotFound

from app.exchange.decimal_gateway import from_raw_units, to_raw_units
from services.settlement_errors import (
    ChainTransferError,
    InsufficientCustodyBalance,
    TransientInfraError,
)

logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

# Minimal ERC-20 surface: transfer, balanceOf, decimals
ERC20_ABI: List[Dict[str, Any]] = [
    {
        "constant": False,
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
]

# Substrings that mark a retryable RPC failure
TRANSIENT_ERROR_MARKERS = (
    "502",
    "503",
    "Bad Gateway",
    "Service Unavailable",
    "timeout",
    "timed out",
    "ECONNRESET",
    "ETIMEDOUT",
)

# Node answers to a re-sent signed transaction that was already accepted
ALREADY_BROADCAST_MARKERS = (
    "already known",
    "known transaction",
    "nonce too low",
)


@dataclass(frozen=True)
class SignedTransfer:
    """A custody transfer signed once, with its hash and nonce fixed."""
    tx_hash: str
    raw_transaction: bytes
    nonce: int
    to_address: str
    amount: Decimal


# ============================================================================
# HELPERS
# ============================================================================

def is_valid_address(address: Optional[str]) -> bool:
    """True for a 20-byte 0x-prefixed hex address (checksum not required)."""
    if not address or not isinstance(address, str):
        return False
    return Web3.is_address(address)


def is_transient_error(exc: BaseException) -> bool:
    """
    Classify an RPC failure as transient (retryable) or permanent.

    Transient: gateway errors, unavailability, timeouts, connection resets.
    Everything else (reverts, insufficient balance, bad address) is permanent.
    """
    if isinstance(exc, TransientInfraError):
        return True
    if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return True
    if isinstance(exc, (ChainTransferError,)):
        return False
    text = str(exc)
    return any(marker.lower() in text.lower() for marker in TRANSIENT_ERROR_MARKERS)


def is_already_broadcast_error(exc: BaseException) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in ALREADY_BROADCAST_MARKERS)


def _hex(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    return Web3.to_hex(value)


def normalize_receipt(receipt: Any) -> Dict[str, Any]:
    """Convert a web3 receipt into a plain dict the verifier can consume."""
    return {
        "transaction_hash": _hex(receipt["transactionHash"]),
        "status": int(receipt["status"]),
        "block_number": int(receipt["blockNumber"]),
        "from": receipt.get("from"),
        "to": receipt.get("to"),
        "logs": [
            {
                "address": log["address"],
                "topics": [_hex(topic) for topic in log["topics"]],
                "data": _hex(log["data"]),
                "log_index": int(log.get("logIndex", 0)),
            }
            for log in receipt["logs"]
        ],
    }


# ============================================================================
# WEB3 CHAIN CLIENT
# ============================================================================

class Web3ChainClient:
    """
    Token contract access for verification and custody transfers.

    Reliability Level: SOVEREIGN TIER
    Input Constraints: Reachable RPC endpoint
    Side Effects: Network I/O; broadcast_transfer sends a signed transaction
    """

    def __init__(
        self,
        rpc_url: str,
        token_address: str,
        custody_private_key: Optional[str] = None,
        request_timeout: int = 30,
    ):
        self.rpc_url = rpc_url
        self.web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        self.token_address = Web3.to_checksum_address(token_address)
        self.contract = self.web3.eth.contract(address=self.token_address, abi=ERC20_ABI)
        self._account = Account.from_key(custody_private_key) if custody_private_key else None
        self._decimals: Optional[int] = None

        logger.info(
            f"[CHAIN] Client initialized | rpc_url={rpc_url} | "
            f"token={self.token_address} | custody_configured={self._account is not None}"
        )

    # ------------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------------

    @property
    def custody_address(self) -> str:
        if self._account is None:
            raise ChainTransferError("Custody wallet not configured")
        return self._account.address

    def token_decimals(self) -> int:
        """Token decimals, read once per client."""
        if self._decimals is None:
            self._decimals = int(self.contract.functions.decimals().call())
        return self._decimals

    def balance_of(self, address: str) -> Decimal:
        raw = self.contract.functions.balanceOf(Web3.to_checksum_address(address)).call()
        return from_raw_units(int(raw), self.token_decimals())

    def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """Normalized receipt, or None if the node does not know the hash."""
        try:
            receipt = self.web3.eth.get_transaction_receipt(tx_hash)
        except Web3TransactionNotFound:
            return None
        return normalize_receipt(receipt)

    def get_transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        try:
            tx = self.web3.eth.get_transaction(tx_hash)
        except Web3TransactionNotFound:
            return None
        return {
            "hash": _hex(tx["hash"]),
            "from": tx["from"],
            "to": tx.get("to"),
            "block_number": tx.get("blockNumber"),
        }

    # ------------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------------

    def prepare_transfer(self, to_address: str, amount: Decimal) -> SignedTransfer:
        """
        Build and sign a token transfer from the custody wallet.

        Nothing is sent. The returned bytes carry a fixed nonce, so every
        later broadcast of them is the same transaction.

        Raises:
            InsufficientCustodyBalance: Custody holds less than amount (CHN-011)
            ChainTransferError: Invalid recipient or amount (CHN-010)
        """
        if not is_valid_address(to_address):
            raise ChainTransferError(f"Invalid recipient address: {to_address}")

        decimals = self.token_decimals()
        try:
            raw_amount = to_raw_units(amount, decimals)
        except ValueError as e:
            raise ChainTransferError(str(e))

        sender = self.custody_address
        raw_balance = int(self.contract.functions.balanceOf(sender).call())
        if raw_balance < raw_amount:
            available = from_raw_units(raw_balance, decimals)
            raise InsufficientCustodyBalance(
                f"Insufficient custody balance. Required: {amount}, Available: {available}",
                details={"required": amount, "available": available},
            )

        nonce = self.web3.eth.get_transaction_count(sender, "pending")
        tx = self.contract.functions.transfer(
            Web3.to_checksum_address(to_address), raw_amount
        ).build_transaction({
            "from": sender,
            "nonce": nonce,
            "chainId": self.web3.eth.chain_id,
        })
        signed = self._account.sign_transaction(tx)

        return SignedTransfer(
            tx_hash=_hex(signed.hash),
            raw_transaction=bytes(signed.raw_transaction),
            nonce=int(nonce),
            to_address=to_address,
            amount=amount,
        )

    def broadcast_transfer(self, transfer: SignedTransfer) -> str:
        """
        Send previously signed bytes. Safe to call again after a timeout.

        A node that already holds the transaction, or has mined its nonce,
        answers with an error; that answer means the broadcast landed.

        Returns:
            str: the hash fixed at signing time
        """
        try:
            self.web3.eth.send_raw_transaction(transfer.raw_transaction)
        except Exception as e:
            if not is_already_broadcast_error(e):
                raise
            logger.warning(
                f"[CHAIN] Transfer already broadcast | tx_hash={transfer.tx_hash} | "
                f"nonce={transfer.nonce} | response={e}"
            )
            return transfer.tx_hash

        logger.info(
            f"[CHAIN] Transfer broadcast | to={transfer.to_address} | amount={transfer.amount} | "
            f"nonce={transfer.nonce} | tx_hash={transfer.tx_hash}"
        )
        return transfer.tx_hash

    def wait_for_receipt(self, tx_hash: str, timeout: int = 120) -> Optional[Dict[str, Any]]:
        """Block until the transaction is mined. None on timeout."""
        try:
            receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted:
            logger.warning(f"[CHAIN] Receipt wait timed out | tx_hash={tx_hash} | timeout={timeout}")
            return None
        return normalize_receipt(receipt)


# ============================================================================
# END OF CHAIN CLIENT MODULE
# ============================================================================
