# ============================================================================
# Project Stable Bridge v1.0.0
# Chain Module - Token Contract Access & Transfer Verification
# ============================================================================

from app.chain.client import (
    Web3ChainClient,
    is_transient_error,
    is_valid_address,
)
from app.chain.verifier import (
    ChainVerifier,
    TransferProof,
    TRANSFER_TOPIC,
)

__all__ = [
    "Web3ChainClient",
    "is_transient_error",
    "is_valid_address",
    "ChainVerifier",
    "TransferProof",
    "TRANSFER_TOPIC",
]
