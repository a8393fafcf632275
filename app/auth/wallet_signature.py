"""
============================================================================
Project Stable Bridge v1.0.0
Wallet Signature Module - Cashout Authorization
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: Personal-sign message, 65-byte hex signature, claimed address
Side Effects: None (pure verification)

SOVEREIGN MANDATE:
- A cashout is authorized only by a signature that recovers to the wallet
- The signed content must name the same amount and the same wallet
- Malformed signatures are rejections, never exceptions to the caller

MESSAGE TEMPLATE:
    I request cashout {amount} USDT at {timestamp}\\n\\nAddress: {address}

    Accepted separators before "Address:" are exactly: blank line,
    single newline, single space. The whole message must match.

ERROR CODES:
    - SIG-001: Signature does not recover to the claimed address
    - SIG-002: Signed message does not authorize this cashout

============================================================================
"""

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from eth_account import Account
from eth_account.messages import encode_defunct

from services.settlement_errors import InvalidSignature, MessageMismatch

logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

MESSAGE_PREFIX = "I request cashout"
TOKEN_SYMBOL = "USDT"

_MESSAGE_BODY = (
    r"I request cashout (?P<amount>[0-9]+(?:\.[0-9]+)?) " + TOKEN_SYMBOL +
    r" at (?P<timestamp>[^\n]+?)"
)
_ADDRESS_TAIL = r"Address: (?P<address>0x[0-9a-fA-F]{40})"

# Three explicit separator variants, nothing looser
CASHOUT_MESSAGE_PATTERNS = [
    re.compile(_MESSAGE_BODY + r"\n\n" + _ADDRESS_TAIL, re.IGNORECASE),
    re.compile(_MESSAGE_BODY + r"\n" + _ADDRESS_TAIL, re.IGNORECASE),
    re.compile(_MESSAGE_BODY + r" " + _ADDRESS_TAIL, re.IGNORECASE),
]


# ============================================================================
# MESSAGE TEMPLATE
# ============================================================================

def build_cashout_message(amount: Union[str, Decimal], timestamp: str, address: str) -> str:
    """Render the canonical message a wallet signs to authorize a cashout."""
    return f"{MESSAGE_PREFIX} {amount} {TOKEN_SYMBOL} at {timestamp}\n\nAddress: {address}"


def validate_cashout_message(
    message: Optional[str],
    address: str,
    amount: Union[str, Decimal],
) -> bool:
    """
    Check that a signed message authorizes exactly this cashout.

    Amount is compared numerically ("5" matches "5.0"); address compared
    case-insensitively. Prefix matching is not enough: the whole message
    must be one of the accepted template variants.
    """
    if not message:
        return False

    try:
        expected_amount = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        return False

    text = message.strip()
    for pattern in CASHOUT_MESSAGE_PATTERNS:
        match = pattern.fullmatch(text)
        if match is None:
            continue
        if match.group("address").lower() != address.lower():
            return False
        try:
            signed_amount = Decimal(match.group("amount"))
        except InvalidOperation:
            return False
        return signed_amount == expected_amount

    return False


# ============================================================================
# SIGNATURE RECOVERY
# ============================================================================

def recover_signer(message: str, signature: str) -> str:
    """
    Recover the address that personal-signed a message.

    Raises:
        InvalidSignature: If the signature is malformed or unrecoverable (SIG-001)
    """
    try:
        signable = encode_defunct(text=message)
        return Account.recover_message(signable, signature=signature)
    except Exception as e:
        raise InvalidSignature(f"Signature could not be recovered: {e}")


def verify_wallet_signature(message: str, signature: str, expected_address: str) -> bool:
    """
    True only when the signature recovers to expected_address.

    Malformed signatures return False.
    """
    if not message or not signature or not expected_address:
        return False

    try:
        recovered = recover_signer(message, signature)
    except InvalidSignature as e:
        logger.warning(f"[SIG-001] Signature recovery failed | reason={e.message}")
        return False

    return recovered.lower() == expected_address.lower()


def assert_cashout_authorized(
    message: str,
    signature: str,
    wallet_address: str,
    amount: Union[str, Decimal],
    correlation_id: Optional[str] = None,
) -> None:
    """
    Raise unless the wallet signed a message authorizing this amount.

    Raises:
        InvalidSignature: Recovery failed or recovered another address (SIG-001)
        MessageMismatch: Message content does not match the request (SIG-002)
    """
    if not verify_wallet_signature(message, signature, wallet_address):
        logger.warning(
            f"[SIG-001] Invalid wallet signature | wallet={wallet_address} | "
            f"correlation_id={correlation_id}"
        )
        raise InvalidSignature(
            "Wallet signature does not match the requesting address",
            details={"wallet_address": wallet_address},
        )

    if not validate_cashout_message(message, wallet_address, amount):
        logger.warning(
            f"[SIG-002] Cashout message mismatch | wallet={wallet_address} | "
            f"amount={amount} | correlation_id={correlation_id}"
        )
        raise MessageMismatch(
            "Signed message does not authorize this cashout",
            details={"wallet_address": wallet_address, "amount": str(amount)},
        )


# ============================================================================
# END OF WALLET SIGNATURE MODULE
# ============================================================================
