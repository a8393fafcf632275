"""
============================================================================
Project Stable Bridge v1.0.0
Chain Verifier - Proof of Token Movement
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: Transaction hash, expected parties and amounts
Side Effects: Read-only RPC calls

SOVEREIGN MANDATE:
- A transfer is proven only by a decoded Transfer event from the token
  contract in a successful receipt; a client-supplied hash proves nothing
- Events from any other contract are ignored
- Amounts are compared as Decimal, |observed - expected| <= tolerance

ERROR CODES:
    - CHN-001: Receipt not found
    - CHN-002: Transaction reverted
    - CHN-003: No Transfer event from the token contract
    - CHN-004: Sender/recipient mismatch
    - CHN-005: Amount outside tolerance

============================================================================
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from app.exchange.decimal_gateway import TOKEN_PRECISION, from_raw_units, to_decimal
from services.settlement_errors import (
    AmountMismatch,
    ChainFailure,
    NoTransferFound,
    PartyMismatch,
    TransactionNotFound,
)

logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

DEFAULT_TOLERANCE = Decimal("0.01")


# ============================================================================
# DATA CLASSES
# ============================================================================

@dataclass(frozen=True)
class TransferProof:
    """One decoded Transfer event."""

    tx_hash: str
    sender: str
    recipient: str
    amount: Decimal
    raw_amount: int
    block_number: Optional[int] = None
    log_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "from": self.sender,
            "to": self.recipient,
            "amount": str(self.amount),
            "block_number": self.block_number,
        }


# ============================================================================
# LOG DECODING
# ============================================================================

def _topic_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


def decode_transfer_logs(
    receipt: Dict[str, Any],
    token_address: str,
    decimals: int,
) -> List[TransferProof]:
    """Decode every Transfer event emitted by token_address in the receipt."""
    token = token_address.lower()
    tx_hash = (receipt.get("transaction_hash") or "").lower()
    proofs: List[TransferProof] = []

    for log in receipt.get("logs", []):
        if (log.get("address") or "").lower() != token:
            continue
        topics = log.get("topics") or []
        if len(topics) < 3 or topics[0].lower() != TRANSFER_TOPIC:
            continue

        data = log.get("data") or "0x0"
        try:
            raw_amount = int(data, 16)
        except ValueError:
            logger.warning(f"[CHAIN-VERIFY] Undecodable Transfer data | tx_hash={tx_hash}")
            continue

        proofs.append(TransferProof(
            tx_hash=tx_hash,
            sender=_topic_address(topics[1]),
            recipient=_topic_address(topics[2]),
            amount=from_raw_units(raw_amount, decimals),
            raw_amount=raw_amount,
            block_number=receipt.get("block_number"),
            log_index=log.get("log_index"),
        ))

    return proofs


# ============================================================================
# CHAIN VERIFIER
# ============================================================================

class ChainVerifier:
    """
    Confirms on-chain token movements against expected parties and amounts.

    Reliability Level: SOVEREIGN TIER
    Input Constraints: Client exposing get_transaction_receipt,
        get_transaction and token_decimals
    Side Effects: Read-only RPC calls
    """

    def __init__(self, client: Any, token_address: str):
        self.client = client
        self.token_address = token_address.lower()

    def _successful_receipt(self, tx_hash: str) -> Dict[str, Any]:
        receipt = self.client.get_transaction_receipt(tx_hash)
        if receipt is None:
            raise TransactionNotFound(
                f"Transaction not found: {tx_hash}",
                details={"tx_hash": tx_hash},
            )
        if int(receipt.get("status", 0)) != 1:
            raise ChainFailure(
                f"Transaction failed on-chain: {tx_hash}",
                details={"tx_hash": tx_hash, "status": receipt.get("status")},
            )
        return receipt

    def decode(self, tx_hash: str) -> List[TransferProof]:
        """Every token Transfer in a successful transaction."""
        receipt = self._successful_receipt(tx_hash)
        return decode_transfer_logs(receipt, self.token_address, self.client.token_decimals())

    def verify_single_transfer(
        self,
        tx_hash: str,
        expected_sender: str,
        expected_recipient: str,
        expected_amount: Any,
        tolerance: Any = DEFAULT_TOLERANCE,
        correlation_id: Optional[str] = None,
    ) -> TransferProof:
        """
        Prove that tx_hash moved expected_amount from sender to recipient.

        Raises (first failing check wins):
            TransactionNotFound, ChainFailure, NoTransferFound,
            PartyMismatch, AmountMismatch
        """
        expected = to_decimal(expected_amount, TOKEN_PRECISION)
        tolerance = to_decimal(tolerance, TOKEN_PRECISION)
        sender = expected_sender.lower()
        recipient = expected_recipient.lower()

        transfers = self.decode(tx_hash)
        if not transfers:
            raise NoTransferFound(
                f"No token Transfer event in transaction {tx_hash}",
                details={"tx_hash": tx_hash, "token": self.token_address},
            )

        matching = [
            t for t in transfers
            if t.sender == sender and t.recipient == recipient
        ]
        if not matching:
            observed = transfers[0]
            raise PartyMismatch(
                "Transfer parties do not match",
                details={
                    "tx_hash": tx_hash,
                    "expected_from": sender,
                    "expected_to": recipient,
                    "observed_from": observed.sender,
                    "observed_to": observed.recipient,
                },
            )

        # Closest amount among party-matching transfers
        proof = min(matching, key=lambda t: abs(t.amount - expected))
        diff = abs(proof.amount - expected)
        if diff > tolerance:
            logger.warning(
                f"[CHN-005] Amount mismatch | tx_hash={tx_hash} | "
                f"expected={expected} | observed={proof.amount} | "
                f"tolerance={tolerance} | correlation_id={correlation_id}"
            )
            raise AmountMismatch(
                f"Amount mismatch. Expected: {expected}, Got: {proof.amount}",
                expected=expected,
                observed=proof.amount,
                details={"tx_hash": tx_hash, "tolerance": tolerance},
            )

        logger.info(
            f"[CHAIN-VERIFY] Transfer verified | tx_hash={tx_hash} | "
            f"from={sender} | to={recipient} | amount={proof.amount} | "
            f"correlation_id={correlation_id}"
        )
        return proof

    def verify_batch_transfer(
        self,
        tx_hash: str,
        expected_sender: str,
        correlation_id: Optional[str] = None,
    ) -> List[TransferProof]:
        """
        Every Transfer from expected_sender in a transaction it sent.

        Raises:
            TransactionNotFound, ChainFailure, PartyMismatch (tx not sent by
            expected_sender), NoTransferFound (no transfer from the sender)
        """
        sender = expected_sender.lower()
        receipt = self._successful_receipt(tx_hash)

        tx = self.client.get_transaction(tx_hash)
        if tx is None:
            raise TransactionNotFound(
                f"Transaction details not found: {tx_hash}",
                details={"tx_hash": tx_hash},
            )
        if (tx.get("from") or "").lower() != sender:
            raise PartyMismatch(
                "Transaction sender does not match employer address",
                details={
                    "tx_hash": tx_hash,
                    "expected_from": sender,
                    "observed_from": (tx.get("from") or "").lower(),
                },
            )

        transfers = [
            t for t in decode_transfer_logs(
                receipt, self.token_address, self.client.token_decimals()
            )
            if t.sender == sender
        ]
        if not transfers:
            raise NoTransferFound(
                f"No payroll transfers found in transaction {tx_hash}",
                details={"tx_hash": tx_hash, "sender": sender},
            )

        logger.info(
            f"[CHAIN-VERIFY] Batch transaction decoded | tx_hash={tx_hash} | "
            f"transfers={len(transfers)} | correlation_id={correlation_id}"
        )
        return transfers


# ============================================================================
# END OF CHAIN VERIFIER MODULE
# ============================================================================
